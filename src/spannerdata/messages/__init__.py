"""
Message utilities for spannerdata.

- Logger: Human-readable output formatting with colors
"""
from spannerdata.messages.logger import SpannerLogger, get_logger

__all__ = ["SpannerLogger", "get_logger"]
