"""
Session handle: a lease on a server-side session.
"""
from dataclasses import dataclass, field
from typing import Optional

from spannerdata.utility.exceptions import InvalidStateError
from spannerdata.v1 import DatabaseName, TransactionMode


@dataclass(eq=False)
class Session:
    """
    A server session as seen by the pool.

    Identity is the server-assigned name; equality is object identity so a
    pool can track exactly which handle is checked out. Times come from the
    pool's clock (monotonic seconds).

    A detached session references a transaction begun by another process. It
    is never counted, reused or deleted by the pool that reconstructed it.
    """

    name: str
    database: DatabaseName
    created_at: float
    last_used_at: float = field(default=0.0)
    last_checked_at: float = field(default=0.0)
    detached: bool = False
    healthy: bool = True
    transaction_mode: Optional[TransactionMode] = None
    transaction_id: Optional[bytes] = None

    def __post_init__(self):
        if not self.last_used_at:
            self.last_used_at = self.created_at
        if not self.last_checked_at:
            self.last_checked_at = self.created_at

    def begin(self, mode: TransactionMode, transaction_id: bytes) -> None:
        """Associate a multi-use transaction; one at a time per session."""
        if self.transaction_mode is not None:
            raise InvalidStateError(
                f"Session {self.name} already has a {self.transaction_mode.value} "
                "transaction"
            )
        self.transaction_mode = mode
        self.transaction_id = transaction_id

    def end_transaction(self) -> None:
        self.transaction_mode = None
        self.transaction_id = None

    def mark_unhealthy(self) -> None:
        """The session must not go back to the idle set."""
        self.healthy = False

    def touch(self, now: float) -> None:
        self.last_used_at = now

    def idle_time(self, now: float) -> float:
        return now - self.last_used_at

    @property
    def short_name(self) -> str:
        return self.name.rsplit("/", 1)[-1]
