"""
Tests for error translation and classification.
"""
import asyncio

import grpc
import pytest

from spannerdata.messages import get_logger
from spannerdata.utility.exceptions import (
    AbortedError,
    AttemptOutcome,
    BatchDmlError,
    ConfigError,
    DeadlineExceededError,
    InvalidArgumentError,
    InvalidStateError,
    SessionNotFoundError,
    SpannerError,
    UnavailableError,
    classify_outcome,
    error_for_status,
    error_translation,
    translate_error,
)


class FakeRpcError(grpc.RpcError):
    def __init__(self, code, details, retry_delay=None):
        super().__init__(details)
        self._code = code
        self._details = details
        if retry_delay is not None:
            self.retry_delay = retry_delay

    def code(self):
        return self._code

    def details(self):
        return self._details


class TestErrorHierarchy:
    """Test the exception classes."""

    def test_default_codes(self):
        assert SpannerError("x").code == grpc.StatusCode.UNKNOWN
        assert InvalidStateError("x").code == grpc.StatusCode.FAILED_PRECONDITION
        assert AbortedError("x").code == grpc.StatusCode.ABORTED
        assert SessionNotFoundError("x").code == grpc.StatusCode.NOT_FOUND

    def test_builtin_bases(self):
        """Test errors can be caught by the matching builtin type."""
        assert isinstance(InvalidStateError("x"), RuntimeError)
        assert isinstance(ConfigError("x"), ValueError)
        assert isinstance(ConfigError("x"), InvalidArgumentError)
        assert isinstance(DeadlineExceededError("x"), TimeoutError)

    def test_batch_error_keeps_counts(self):
        """Test a failed batch reports the counts of the statements that ran."""
        error = BatchDmlError("bad column", grpc.StatusCode.INVALID_ARGUMENT, [3, 1])

        assert error.row_counts == [3, 1]
        assert not error.is_retryable
        assert BatchDmlError("x").row_counts == []
        assert classify_outcome(
            BatchDmlError("conflict", grpc.StatusCode.ABORTED)
        ) is AttemptOutcome.ABORTED

    def test_str_includes_code(self):
        assert str(UnavailableError("socket closed")) == "UNAVAILABLE: socket closed"

    @pytest.mark.parametrize(
        "error,retryable,transient",
        [
            (AbortedError("aborted"), True, False),
            (UnavailableError("unavailable"), True, True),
            (SpannerError("Received RST_STREAM", grpc.StatusCode.INTERNAL), True, True),
            (SpannerError("internal", grpc.StatusCode.INTERNAL), False, False),
            (InvalidStateError("closed"), False, False),
        ],
    )
    def test_retry_classification(self, error, retryable, transient):
        assert error.is_retryable == retryable
        assert error.is_transient == transient


class TestTranslation:
    """Test translation of transport errors."""

    def test_status_codes_map_to_subclasses(self):
        assert isinstance(
            error_for_status(grpc.StatusCode.UNAVAILABLE, "x"), UnavailableError
        )
        assert isinstance(
            error_for_status(grpc.StatusCode.DEADLINE_EXCEEDED, "x"),
            DeadlineExceededError,
        )
        generic = error_for_status(grpc.StatusCode.PERMISSION_DENIED, "denied")
        assert type(generic) is SpannerError
        assert generic.code == grpc.StatusCode.PERMISSION_DENIED

    def test_session_not_found(self):
        """Test only missing sessions (not other missing things) are recognized."""
        assert isinstance(
            error_for_status(grpc.StatusCode.NOT_FOUND, "Session not found: s1"),
            SessionNotFoundError,
        )
        assert not isinstance(
            error_for_status(grpc.StatusCode.NOT_FOUND, "Table not found"),
            SessionNotFoundError,
        )

    def test_rpc_error_with_retry_delay(self):
        translated = translate_error(
            FakeRpcError(grpc.StatusCode.ABORTED, "conflict", retry_delay=2.5)
        )

        assert isinstance(translated, AbortedError)
        assert translated.retry_delay == 2.5
        assert translated.message == "conflict"

    def test_passthrough(self):
        """Test errors that need no translation come back unchanged."""
        original = UnavailableError("x")
        cancelled = asyncio.CancelledError()
        bug = KeyError("bug")

        assert translate_error(original) is original
        assert translate_error(cancelled) is cancelled
        assert translate_error(bug) is bug

    def test_timeout_becomes_deadline_exceeded(self):
        assert isinstance(translate_error(TimeoutError()), DeadlineExceededError)

    @pytest.mark.asyncio
    async def test_error_translation_context(self):
        """Test errors raised in the block are translated and chained."""
        logger = get_logger("spannerdata.test")

        with pytest.raises(UnavailableError) as exc_info:
            async with error_translation("Test.operation", logger):
                raise FakeRpcError(grpc.StatusCode.UNAVAILABLE, "socket closed")

        assert isinstance(exc_info.value.__cause__, grpc.RpcError)

    @pytest.mark.asyncio
    async def test_error_translation_leaves_other_errors(self):
        with pytest.raises(KeyError):
            async with error_translation("Test.operation"):
                raise KeyError("bug")


@pytest.mark.parametrize(
    "error,outcome",
    [
        (None, AttemptOutcome.SUCCESS),
        (AbortedError("aborted"), AttemptOutcome.ABORTED),
        (FakeRpcError(grpc.StatusCode.ABORTED, "conflict"), AttemptOutcome.ABORTED),
        (UnavailableError("unavailable"), AttemptOutcome.FAILED),
        (ValueError("bug"), AttemptOutcome.FAILED),
    ],
)
def test_classify_outcome(error, outcome):
    assert classify_outcome(error) == outcome
