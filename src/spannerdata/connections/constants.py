"""
Shared constants and default configurations for sessions and pools.

Configuration models for the values used across the pool, the manager and
the transaction engine, so every component validates and defaults them the
same way.
"""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_HOST = "spanner.googleapis.com"
DEFAULT_PORT = 443

# Default command and connection timeout, in seconds
DEFAULT_TIMEOUT = 60


class SessionPoolOptions(BaseModel):
    """
    Session pool sizing and maintenance configuration.

    Immutable once a pool is built from it; two connections asking for
    different options get different pools.
    """

    model_config = ConfigDict(frozen=True)

    min_pool_size: int = Field(
        default=10, ge=0, description="Sessions created up front and kept warm"
    )
    max_pool_size: int = Field(
        default=100, ge=1, description="Idle plus checked-out sessions, at most"
    )
    idle_eviction_delay: float = Field(
        default=600.0,
        gt=0,
        description="Seconds an idle session may go unused before eviction",
    )
    health_check_interval: float = Field(
        default=300.0,
        gt=0,
        description="Seconds between pings of the same idle session",
    )
    maintenance_interval: float = Field(
        default=30.0, gt=0, description="Seconds between maintenance passes"
    )
    health_check_batch_size: int = Field(
        default=10, ge=1, description="Idle sessions pinged per maintenance pass"
    )
    session_creation_attempts: int = Field(
        default=3, ge=1, description="Attempts per create call on transient errors"
    )
    session_creation_backoff: float = Field(
        default=0.5, ge=0, description="Initial backoff between create attempts"
    )
    max_batch_create_size: int = Field(
        default=100, ge=1, description="Sessions requested per batch create call"
    )

    @model_validator(mode="after")
    def validate_sizes(self):
        if self.min_pool_size > self.max_pool_size:
            raise ValueError(
                f"min_pool_size ({self.min_pool_size}) must not exceed "
                f"max_pool_size ({self.max_pool_size})"
            )
        return self


class RetryOptions(BaseModel):
    """Backoff policy for retriable read-write transactions."""

    model_config = ConfigDict(frozen=True)

    max_attempts: Optional[int] = Field(
        default=None, ge=1, description="Attempts before giving up (None: no limit)"
    )
    initial_backoff: float = Field(default=0.25, ge=0)
    max_backoff: float = Field(default=32.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(
        default=0.1, ge=0, description="Upper bound of random delay added per retry"
    )
    total_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Overall deadline in seconds across all attempts",
    )


class ClientOptions(BaseModel):
    """
    Settings that decide which transport a pool talks through.

    Part of the pool key: connections whose client options differ never share
    sessions.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(default=DEFAULT_HOST)
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    credential_file: Optional[str] = None
    maximum_grpc_channels: int = Field(default=4, ge=1)
    credential: Optional[Any] = Field(
        default=None,
        description="Token credential object (anything with get_token(*scopes))",
    )

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


DEFAULT_POOL_OPTIONS = SessionPoolOptions()
DEFAULT_RETRY_OPTIONS = RetryOptions()
