"""
Session management for spannerdata.

Provides the session transport contract, pooled sessions per database and
the registry that shares pools between connections.

Key components:
- SessionClient: Interface for session-addressed transports
- SessionPool: Bounded, self-maintaining pool of sessions for one database
- SessionPoolManager: Reference-counted registry of shared pools
- CachedTokenProvider: Lazily refreshed access tokens for transports
"""
from .base import SessionClient
from .constants import (
    DEFAULT_POOL_OPTIONS,
    DEFAULT_RETRY_OPTIONS,
    ClientOptions,
    RetryOptions,
    SessionPoolOptions,
)
from .credentials import CachedTokenProvider
from .manager import SessionPoolKey, SessionPoolManager
from .pool import DatabaseStatistics, SessionPool
from .session import Session

__all__ = [
    "SessionClient",
    "ClientOptions",
    "RetryOptions",
    "SessionPoolOptions",
    "DEFAULT_POOL_OPTIONS",
    "DEFAULT_RETRY_OPTIONS",
    "CachedTokenProvider",
    "SessionPoolKey",
    "SessionPoolManager",
    "DatabaseStatistics",
    "SessionPool",
    "Session",
]
