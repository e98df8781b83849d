"""
Resource names for instances, databases and sessions.
"""
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict

from spannerdata.utility.exceptions import InvalidArgumentError

_SEGMENT = r"[^/]+"
_INSTANCE_PATTERN = re.compile(
    rf"^projects/(?P<project>{_SEGMENT})/instances/(?P<instance>{_SEGMENT})$"
)
_DATABASE_PATTERN = re.compile(
    rf"^projects/(?P<project>{_SEGMENT})/instances/(?P<instance>{_SEGMENT})"
    rf"/databases/(?P<database>{_SEGMENT})$"
)
_SESSION_PATTERN = re.compile(
    rf"^(?P<database>projects/{_SEGMENT}/instances/{_SEGMENT}/databases/{_SEGMENT})"
    rf"/sessions/(?P<session>{_SEGMENT})$"
)


class InstanceName(BaseModel):
    """projects/{project}/instances/{instance}"""

    model_config = ConfigDict(frozen=True)

    project: str
    instance: str

    @classmethod
    def try_parse(cls, value: Optional[str]) -> Optional["InstanceName"]:
        match = _INSTANCE_PATTERN.match(value or "")
        if not match:
            return None
        return cls(project=match["project"], instance=match["instance"])

    def __str__(self) -> str:
        return f"projects/{self.project}/instances/{self.instance}"


class DatabaseName(BaseModel):
    """projects/{project}/instances/{instance}/databases/{database}"""

    model_config = ConfigDict(frozen=True)

    project: str
    instance: str
    database: str

    @classmethod
    def try_parse(cls, value: Optional[str]) -> Optional["DatabaseName"]:
        match = _DATABASE_PATTERN.match(value or "")
        if not match:
            return None
        return cls(
            project=match["project"],
            instance=match["instance"],
            database=match["database"],
        )

    @classmethod
    def parse(cls, value: str) -> "DatabaseName":
        name = cls.try_parse(value)
        if name is None:
            raise InvalidArgumentError(
                f"'{value}' is not a database name of the form "
                "projects/<project>/instances/<instance>/databases/<database>"
            )
        return name

    @property
    def instance_name(self) -> InstanceName:
        return InstanceName(project=self.project, instance=self.instance)

    def __str__(self) -> str:
        return (
            f"projects/{self.project}/instances/{self.instance}"
            f"/databases/{self.database}"
        )


def database_of_session(session_name: str) -> DatabaseName:
    """Extract the database a session name belongs to."""
    match = _SESSION_PATTERN.match(session_name)
    if not match:
        raise InvalidArgumentError(f"'{session_name}' is not a session name")
    return DatabaseName.parse(match["database"])
