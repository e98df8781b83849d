"""
Configuration models for spannerdata core components.
"""
from .connection_string import ConnectionStringBuilder

__all__ = [
    "ConnectionStringBuilder",
]
