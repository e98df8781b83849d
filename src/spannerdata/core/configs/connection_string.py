"""
Connection string parsing and rendering.

A connection string is a list of ``Key=Value`` pairs separated by ``;``.
Keys are matched case-insensitively and ignoring spaces, so ``Data Source``,
``DataSource`` and ``datasource`` are the same key. Keys this module does not
know are kept and rendered back unchanged.

Example:
    ```python
    builder = ConnectionStringBuilder.parse(
        "Data Source=projects/p/instances/i/databases/d;Timeout=30"
    )
    builder.database_name       # DatabaseName(project='p', ...)
    builder.get_pool_options()  # SessionPoolOptions(min_pool_size=10, ...)
    ```
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from spannerdata.connections.constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT,
    ClientOptions,
    SessionPoolOptions,
)
from spannerdata.utility.exceptions import ConfigError
from spannerdata.v1 import DatabaseName, InstanceName

# Rendered key for each field, in rendering order
_KEYWORDS = {
    "data_source": "Data Source",
    "host": "Host",
    "port": "Port",
    "timeout": "Timeout",
    "credential_file": "CredentialFile",
    "maximum_grpc_channels": "MaximumGrpcChannels",
    "minimum_pooled_sessions": "MinimumPooledSessions",
    "maximum_active_sessions": "MaximumActiveSessions",
    "pool_eviction_delay": "PoolEvictionDelay",
    "health_check_interval": "HealthCheckInterval",
    "enlist_in_transaction": "EnlistInTransaction",
}


def _normalize_key(key: str) -> str:
    return key.replace(" ", "").lower()


_FIELDS_BY_KEY = {_normalize_key(k): f for f, k in _KEYWORDS.items()}


class ConnectionStringBuilder(BaseModel):
    """
    Typed view of a connection string.

    Immutable; ``with_database`` and ``model_copy`` return new builders.
    """

    model_config = ConfigDict(frozen=True)

    data_source: Optional[str] = Field(
        default=None,
        description="projects/<p>/instances/<i>[/databases/<d>]",
    )
    host: str = Field(default=DEFAULT_HOST)
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    timeout: int = Field(
        default=DEFAULT_TIMEOUT,
        ge=0,
        description="Seconds for opening and for each command; 0 means no limit",
    )
    credential_file: Optional[str] = None
    maximum_grpc_channels: int = Field(default=4, ge=1)
    minimum_pooled_sessions: int = Field(default=10, ge=0)
    maximum_active_sessions: int = Field(default=100, ge=1)
    pool_eviction_delay: float = Field(
        default=600.0, gt=0, description="Idle seconds before a session is evicted"
    )
    health_check_interval: float = Field(default=300.0, gt=0)
    enlist_in_transaction: bool = Field(
        default=True, description="Join the transaction scope passed to open()"
    )
    extra: Dict[str, str] = Field(
        default_factory=dict, description="Keys this driver does not interpret"
    )

    @field_validator("data_source")
    @classmethod
    def validate_data_source(cls, v):
        """Data source must name a database or an instance (or be empty)."""
        if not v:
            return None
        if DatabaseName.try_parse(v) is None and InstanceName.try_parse(v) is None:
            raise ValueError(
                f"'{v}' is not a valid data source. It should be of the form "
                "projects/<project>/instances/<instance>/databases/<database>"
            )
        return v

    @classmethod
    def parse(cls, connection_string: Optional[str]) -> "ConnectionStringBuilder":
        """
        Parse a connection string.

        Raises:
            ConfigError: On malformed pairs, invalid data sources or
                out-of-range numbers
        """
        values: Dict[str, Any] = {}
        extra: Dict[str, str] = {}
        for part in (connection_string or "").split(";"):
            if not part.strip():
                continue
            key, separator, value = part.partition("=")
            if not separator or not key.strip():
                raise ConfigError(f"Malformed connection string segment: '{part}'")
            field = _FIELDS_BY_KEY.get(_normalize_key(key))
            if field is None:
                extra[key.strip()] = value.strip()
            else:
                values[field] = value.strip()
        if extra:
            values["extra"] = extra

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid connection string: {e}") from e

    def to_connection_string(self) -> str:
        """Render the keys that were set explicitly, then the unknown ones."""
        parts = []
        for field, keyword in _KEYWORDS.items():
            value = getattr(self, field)
            if field in self.model_fields_set and value is not None:
                parts.append(f"{keyword}={value}")
        parts.extend(f"{k}={v}" for k, v in self.extra.items())
        return ";".join(parts)

    def __str__(self) -> str:
        return self.to_connection_string()

    @property
    def database_name(self) -> Optional[DatabaseName]:
        return DatabaseName.try_parse(self.data_source)

    @property
    def instance_name(self) -> Optional[InstanceName]:
        database = self.database_name
        if database is not None:
            return database.instance_name
        return InstanceName.try_parse(self.data_source)

    @property
    def project(self) -> Optional[str]:
        instance = self.instance_name
        return instance.project if instance else None

    @property
    def spanner_instance(self) -> Optional[str]:
        instance = self.instance_name
        return instance.instance if instance else None

    @property
    def spanner_database(self) -> Optional[str]:
        database = self.database_name
        return database.database if database else None

    def with_database(self, database: Optional[str]) -> "ConnectionStringBuilder":
        """Copy of this builder pointing at another database of the same instance."""
        instance = self.instance_name
        if instance is None:
            raise ConfigError("Cannot change database without an instance in the data source")
        data_source = str(instance)
        if database:
            data_source = f"{data_source}/databases/{database}"
        return self.with_data_source(data_source)

    def with_data_source(self, data_source: Optional[str]) -> "ConnectionStringBuilder":
        values = {f: getattr(self, f) for f in self.model_fields_set}
        values["data_source"] = data_source
        try:
            return ConnectionStringBuilder(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid data source: {e}") from e

    def get_client_options(self, credential: Any = None) -> ClientOptions:
        """Transport settings for the session pool key."""
        return ClientOptions(
            host=self.host,
            port=self.port,
            credential_file=self.credential_file,
            maximum_grpc_channels=self.maximum_grpc_channels,
            credential=credential,
        )

    def get_pool_options(self) -> SessionPoolOptions:
        """Session pool settings for the session pool key."""
        try:
            return SessionPoolOptions(
                min_pool_size=self.minimum_pooled_sessions,
                max_pool_size=self.maximum_active_sessions,
                idle_eviction_delay=self.pool_eviction_delay,
                health_check_interval=self.health_check_interval,
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid session pool settings: {e}") from e
