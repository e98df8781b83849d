"""
Read-write transactions that restart on abort.

The unit of work is run inside a fresh ExplicitTransaction each attempt.
When the server aborts the transaction (a conflict), the whole attempt is
thrown away, session included, and the work runs again from the start after
a backoff. Anything other than an abort ends the loop.
"""
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    wait_exponential,
    wait_random,
)

from spannerdata.connections.constants import DEFAULT_RETRY_OPTIONS, RetryOptions
from spannerdata.messages import get_logger
from spannerdata.utility.clock import SYSTEM_CLOCK, SYSTEM_SCHEDULER, Clock, Scheduler
from spannerdata.utility.exceptions import (
    AttemptOutcome,
    classify_outcome,
    translate_error,
)
from spannerdata.v1 import TransactionOptions

from .base import TransactionKind
from .explicit import DisposeBehavior, ExplicitTransaction

if TYPE_CHECKING:
    from spannerdata.core.connection import SpannerConnection

T = TypeVar("T")

UnitOfWork = Callable[[ExplicitTransaction], Awaitable[T]]


def _is_aborted(exc: BaseException) -> bool:
    return classify_outcome(exc) is AttemptOutcome.ABORTED


class RetriableTransaction:
    """
    Runs a unit of work in a read-write transaction, retrying on abort.

    The unit of work may run more than once, so whatever it does outside the
    transaction must be safe to repeat.

    Features:
    - Exponential backoff with a cap and random jitter between attempts
    - Backoff raised to the server's suggested retry delay when it sends one
    - Stops after ``max_attempts`` or once ``total_timeout`` has elapsed,
      raising the last error unchanged
    - Sleeps through the injected scheduler and reads time from the injected
      clock

    Example:
        ```python
        async def transfer(transaction):
            await transaction.execute_dml(debit)
            await transaction.execute_dml(credit)
            return "done"

        result = await RetriableTransaction(connection).run(transfer)
        ```
    """

    kind = TransactionKind.RETRIABLE

    def __init__(
        self,
        connection: "SpannerConnection",
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        retry_options: Optional[RetryOptions] = None,
    ):
        self.connection = connection
        self.retry_options = retry_options or DEFAULT_RETRY_OPTIONS
        self.attempts = 0
        self._clock = clock or SYSTEM_CLOCK
        self._scheduler = scheduler or SYSTEM_SCHEDULER
        self._started_at = 0.0
        self._backoff = wait_exponential(
            multiplier=self.retry_options.initial_backoff,
            exp_base=self.retry_options.backoff_multiplier,
            max=self.retry_options.max_backoff,
        ) + wait_random(0, self.retry_options.jitter)
        self.logger = get_logger("spannerdata.transaction.retriable")

    async def run(self, work: UnitOfWork, timeout: Optional[float] = None) -> T:
        """
        Run ``work`` until it commits without being aborted.

        Args:
            work: Coroutine function taking the attempt's transaction
            timeout: RPC timeout for begin and commit (connection default)

        Returns:
            Whatever the successful invocation of ``work`` returned

        Raises:
            AbortedError: If aborts continue past the retry bound
            Any other error raised by ``work`` or by the transaction, unchanged
        """
        self.attempts = 0
        self._started_at = self._clock.now()
        retrying = AsyncRetrying(
            stop=self._should_stop,
            wait=self._wait,
            retry=retry_if_exception(_is_aborted),
            before_sleep=before_sleep_log(self.logger.logger, logging.INFO),
            sleep=self._scheduler.delay,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._run_once(work, timeout)

    async def _run_once(self, work: UnitOfWork, timeout: Optional[float]) -> T:
        self.attempts += 1
        transaction = await ExplicitTransaction.begin(
            self.connection, TransactionOptions.read_write(), timeout
        )
        try:
            result = await work(transaction)
            if not transaction.is_committed:
                await transaction.commit(timeout)
        except BaseException as e:
            if _is_aborted(e):
                self.logger.debug(f"Attempt {self.attempts} aborted: {str(e)}")
                transaction.dispose_behavior = DisposeBehavior.DISCARD
                await transaction.dispose(rollback=False)
            else:
                await transaction.dispose()
            raise
        await transaction.dispose()
        return result

    def _should_stop(self, retry_state: RetryCallState) -> bool:
        options = self.retry_options
        if (
            options.max_attempts is not None
            and retry_state.attempt_number >= options.max_attempts
        ):
            return True
        if options.total_timeout is not None:
            elapsed = self._clock.now() - self._started_at
            if elapsed >= options.total_timeout:
                return True
        return False

    def _wait(self, retry_state: RetryCallState) -> float:
        delay = self._backoff(retry_state)
        error = translate_error(retry_state.outcome.exception())
        server_delay = getattr(error, "retry_delay", None)
        if server_delay:
            delay = max(delay, server_delay)
        return delay
