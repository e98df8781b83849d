"""
Custom exceptions for spannerdata - one error type for every RPC failure.

Every failure the driver surfaces is a SpannerError carrying the transport
status code it was derived from, and with it a retry classification. The
subclasses exist so callers can catch the cases they care about without
inspecting codes.

Exception Hierarchy:
    SpannerError (base, carries grpc.StatusCode)
    ├── InvalidStateError - lifecycle misuse (closed connection, shut-down pool)
    ├── InvalidArgumentError - option combinations that cannot be represented
    │   └── ConfigError - invalid connection string or pool configuration
    ├── AbortedError - server detected a transaction conflict (retryable)
    ├── DeadlineExceededError - local or remote timeout
    ├── UnavailableError - transient transport failure (retryable)
    ├── SessionNotFoundError - the server no longer knows the session
    └── BatchDmlError - a statement in a DML batch failed (carries row counts)

Usage Guidelines:
    - Translate at the RPC boundary with ``error_translation`` (or
      ``translate_error``); everything above that boundary only sees
      SpannerError.
    - Always chain (`raise SpannerError(...) from e`) so the transport
      traceback is preserved.
    - Only the retriable transaction acts on AbortedError. The pool retries
      transient errors (``is_transient``) during session creation and health
      checks, and nowhere else.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, List, Optional

import grpc

from spannerdata.messages import SpannerLogger

# INTERNAL errors with these messages are connection resets, safe to retry.
_RETRYABLE_INTERNAL_MESSAGES = (
    "RST_STREAM",
    "Received unexpected EOS on DATA frame from server",
)


class SpannerError(Exception):
    """Base exception for all spannerdata errors."""

    default_code = grpc.StatusCode.UNKNOWN

    def __init__(self, message: str, code: Optional[grpc.StatusCode] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    @property
    def is_retryable(self) -> bool:
        """Whether repeating the whole operation may succeed."""
        if self.code in (grpc.StatusCode.ABORTED, grpc.StatusCode.UNAVAILABLE):
            return True
        if self.code == grpc.StatusCode.INTERNAL:
            return any(m in self.message for m in _RETRYABLE_INTERNAL_MESSAGES)
        return False

    @property
    def is_transient(self) -> bool:
        """Retryable without restarting a transaction (pool-level retries)."""
        return self.is_retryable and self.code != grpc.StatusCode.ABORTED

    def __str__(self) -> str:
        return f"{self.code.name}: {self.message}"


class InvalidStateError(SpannerError, RuntimeError):
    """Operation attempted in an incompatible lifecycle state."""

    default_code = grpc.StatusCode.FAILED_PRECONDITION


class InvalidArgumentError(SpannerError, ValueError):
    """Caller-supplied options cannot be represented."""

    default_code = grpc.StatusCode.INVALID_ARGUMENT


class ConfigError(InvalidArgumentError):
    """Raised when there's an error in connection or pool configuration."""


class AbortedError(SpannerError):
    """Server aborted the transaction because of a conflict."""

    default_code = grpc.StatusCode.ABORTED

    def __init__(
        self,
        message: str,
        code: Optional[grpc.StatusCode] = None,
        retry_delay: Optional[float] = None,
    ):
        super().__init__(message, code)
        # Server-suggested minimum delay before the next attempt, in seconds
        self.retry_delay = retry_delay


class DeadlineExceededError(SpannerError, TimeoutError):
    """Local or remote deadline expired."""

    default_code = grpc.StatusCode.DEADLINE_EXCEEDED


class UnavailableError(SpannerError):
    """Transient transport failure."""

    default_code = grpc.StatusCode.UNAVAILABLE


class SessionNotFoundError(SpannerError):
    """The server has expired or deleted the session."""

    default_code = grpc.StatusCode.NOT_FOUND


class BatchDmlError(SpannerError):
    """
    A statement in a DML batch failed.

    Statements before the failing one ran; ``row_counts`` holds their counts
    in order, so its length is the index of the statement that failed.
    """

    def __init__(
        self,
        message: str,
        code: Optional[grpc.StatusCode] = None,
        row_counts: Optional[List[int]] = None,
    ):
        super().__init__(message, code)
        self.row_counts = list(row_counts or [])


_ERRORS_BY_CODE = {
    grpc.StatusCode.FAILED_PRECONDITION: InvalidStateError,
    grpc.StatusCode.INVALID_ARGUMENT: InvalidArgumentError,
    grpc.StatusCode.ABORTED: AbortedError,
    grpc.StatusCode.DEADLINE_EXCEEDED: DeadlineExceededError,
    grpc.StatusCode.UNAVAILABLE: UnavailableError,
}


def error_for_status(
    code: grpc.StatusCode, message: str, retry_delay: Optional[float] = None
) -> SpannerError:
    """Build the most specific SpannerError for a transport status."""
    if code == grpc.StatusCode.NOT_FOUND and "session not found" in message.lower():
        return SessionNotFoundError(message, code)
    if code == grpc.StatusCode.ABORTED:
        return AbortedError(message, code, retry_delay=retry_delay)
    error_class = _ERRORS_BY_CODE.get(code, SpannerError)
    return error_class(message, code)


def translate_error(exc: BaseException) -> BaseException:
    """
    Translate a transport-level exception into the SpannerError hierarchy.

    SpannerErrors and cancellation pass through unchanged. grpc.RpcError is
    mapped by its status code; TimeoutError becomes DeadlineExceededError.
    Anything else (caller bugs, programming errors) is returned as is.

    Args:
        exc: Exception raised by the transport or by caller code

    Returns:
        The exception to raise in its place
    """
    if isinstance(exc, (SpannerError, asyncio.CancelledError)):
        return exc
    if isinstance(exc, grpc.RpcError):
        code_fn = getattr(exc, "code", None)
        details_fn = getattr(exc, "details", None)
        code = code_fn() if callable(code_fn) else grpc.StatusCode.UNKNOWN
        details = details_fn() if callable(details_fn) else None
        retry_delay = getattr(exc, "retry_delay", None)
        return error_for_status(code, details or str(exc), retry_delay)
    if isinstance(exc, TimeoutError):
        return DeadlineExceededError(str(exc) or "Operation timed out")
    return exc


@asynccontextmanager
async def error_translation(
    operation: str, logger: Optional[SpannerLogger] = None
) -> AsyncIterator[None]:
    """
    Translate errors raised inside the block and log the elapsed time.

    Example:
        ```python
        async with error_translation("SpannerConnection.open", self.logger):
            await self._open_impl()
        ```
    """
    started = time.monotonic()
    try:
        yield
    except BaseException as e:
        translated = translate_error(e)
        if logger and not isinstance(e, asyncio.CancelledError):
            logger.debug(f"{operation} failed: {translated}")
        if translated is e:
            raise
        raise translated from e
    finally:
        if logger:
            logger.rpc(operation, time.monotonic() - started)


class AttemptOutcome(Enum):
    """How one attempt of a retriable unit of work ended."""

    SUCCESS = "success"
    ABORTED = "aborted"
    FAILED = "failed"


def classify_outcome(exc: Optional[BaseException]) -> AttemptOutcome:
    """Classify an attempt by the exception it raised (None for success)."""
    if exc is None:
        return AttemptOutcome.SUCCESS
    translated = translate_error(exc)
    if isinstance(translated, SpannerError) and (
        translated.code == grpc.StatusCode.ABORTED
    ):
        return AttemptOutcome.ABORTED
    return AttemptOutcome.FAILED
