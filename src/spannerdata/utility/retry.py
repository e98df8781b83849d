"""
Bounded retry with exponential backoff for transient transport failures.
"""
import asyncio
import logging
from functools import wraps
from typing import Callable, Optional, Tuple, Type, Union

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from spannerdata.messages import get_logger

from .clock import SYSTEM_SCHEDULER, Scheduler
from .exceptions import SpannerError, translate_error


def is_transient_error(exc: BaseException) -> bool:
    """True for failures worth repeating as-is (UNAVAILABLE, stream resets)."""
    translated = translate_error(exc)
    return isinstance(translated, SpannerError) and translated.is_transient


def transient_retrying(
    attempts: int,
    backoff: float,
    scheduler: Optional[Scheduler] = None,
    logger_name: str = "spannerdata.retry",
    retry_if_func: Callable[[BaseException], bool] = is_transient_error,
) -> AsyncRetrying:
    """
    Build a tenacity AsyncRetrying for transient RPC failures.

    The last error is re-raised unchanged once attempts run out, and sleeps go
    through the scheduler so tests never wait on the wall clock.

    Example:
        ```python
        async for attempt in transient_retrying(3, 0.5, scheduler):
            with attempt:
                names = await client.batch_create_sessions(database, 25)
        ```
    """
    logger = get_logger(logger_name)
    scheduler = scheduler or SYSTEM_SCHEDULER
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff, min=backoff, max=backoff * 8),
        retry=retry_if_exception(retry_if_func),
        before_sleep=before_sleep_log(logger.logger, logging.WARNING),
        sleep=scheduler.delay,
        reraise=True,
    )


def with_retry(
    timeout: Optional[float] = 60,
    retries: int = 3,
    delay: float = 1,
    exceptions: Union[Type[Exception], Tuple[Type[Exception], ...], None] = None,
    logger_name: str = "spannerdata.retry",
):
    """
    Retry decorator with exponential backoff and timeout for async functions.

    Retries failed operations with exponential backoff between attempts and
    enforces a timeout on each attempt so a hung call cannot stall the caller.

    Args:
        timeout: Maximum time in seconds for each attempt (None: no limit)
        retries: Maximum number of attempts (default: 3)
        delay: Initial delay between retries in seconds (default: 1)
        exceptions: Exception types to retry on. When omitted, transient
            SpannerErrors (and the grpc errors that translate to them) retry.
        logger_name: Name for logging retry attempts

    Example:
        @with_retry(retries=3, delay=1, exceptions=(ServiceRequestError,))
        async def _fetch_token(self) -> AccessToken:
            ...

    Raises:
        TimeoutError: If an attempt exceeds the timeout period
        The last exception raised, once all attempts fail
    """
    logger = get_logger(logger_name)

    if exceptions is None:
        retry_condition = retry_if_exception(is_transient_error)
    else:
        retry_condition = retry_if_exception_type(exceptions)

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(retries),
                wait=wait_exponential(multiplier=delay, min=delay, max=delay * 8),
                retry=retry_condition,
                before_sleep=before_sleep_log(logger.logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    try:
                        async with asyncio.timeout(timeout):
                            return await func(*args, **kwargs)
                    except asyncio.TimeoutError:
                        raise TimeoutError(
                            f"Operation {func.__name__} timed out after "
                            f"{timeout} seconds"
                        )

        return wrapper

    return decorator
