"""
Retry helpers for transient source, sink and image-host failures.

Sink writes must be safe to retry (idempotent by identity), so per-item
operations go through `retry_call`. Coroutines such as avatar downloads use
`async_retry_call`, which follows the same contract.
"""

import time
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import httpx

logger = logging.getLogger(__name__)

RetryCallback = Callable[[int, Exception], None]

TRANSIENT_PATTERNS = (
    'timeout',
    'timed out',
    'connection reset',
    'connection refused',
    'network is unreachable',
    'temporary failure',
    'service unavailable',
    'too many requests',
    'rate limited',
)


class RetryableError(Exception):
    """Raised by adapters to mark a failure as transient."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when every attempt of an operation has failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def _notify(on_retry: Optional[RetryCallback], attempt: int, exc: Exception) -> None:
    if not on_retry:
        return
    try:
        on_retry(attempt, exc)
    except Exception as callback_error:
        logger.warning(f"Retry callback failed: {callback_error}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: Optional[dict] = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[RetryCallback] = None
) -> Any:
    """
    Call a function, retrying on the given exception types.

    Args:
        func: Function to call
        args: Positional arguments for the function
        kwargs: Keyword arguments for the function
        max_attempts: Total number of attempts, including the first call
        delay: Seconds to wait before the first retry
        backoff: Multiplier applied to the delay after each retry
        exceptions: Exception types that trigger a retry
        on_retry: Optional callback invoked with (attempt, exception)

    Returns:
        The function's return value

    Raises:
        MaxRetriesExceeded: If all attempts fail
    """
    kwargs = kwargs or {}
    max_attempts = max(1, max_attempts)
    current_delay = delay
    last_exception = None

    for attempt in range(1, max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                logger.info(f"Operation succeeded on attempt {attempt}")
            return result
        except exceptions as e:
            last_exception = e
            if attempt == max_attempts:
                break
            logger.debug(f"Attempt {attempt} failed with {type(e).__name__}: {e}; "
                         f"retrying in {current_delay:.1f}s")
            _notify(on_retry, attempt, e)
            if current_delay > 0:
                time.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


async def async_retry_call(
    func: Callable[..., Awaitable[Any]],
    args: tuple = (),
    kwargs: Optional[dict] = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    should_retry: Callable[[Exception], bool] = lambda e: True,
    on_retry: Optional[RetryCallback] = None
) -> Any:
    """
    Await a coroutine function, retrying failures accepted by `should_retry`.

    Failures rejected by `should_retry` are re-raised immediately. After the
    last attempt, MaxRetriesExceeded is raised.
    """
    kwargs = kwargs or {}
    max_attempts = max(1, max_attempts)
    current_delay = delay
    last_exception = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not should_retry(e):
                raise
            last_exception = e
            if attempt == max_attempts:
                break
            _notify(on_retry, attempt, e)
            if current_delay > 0:
                await asyncio.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def is_retryable_error(exception: Exception) -> bool:
    """
    Decide whether an exception looks like a transient failure.

    Args:
        exception: Exception to check

    Returns:
        True for connection errors, timeouts, HTTP 429/5xx and known transient messages
    """
    if isinstance(exception, MaxRetriesExceeded):
        return is_retryable_error(exception.last_exception)

    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError)):
        return True

    if isinstance(exception, (httpx.TimeoutException, httpx.NetworkError)):
        return True

    status_code = None
    if isinstance(exception, httpx.HTTPStatusError):
        status_code = exception.response.status_code
    elif hasattr(exception, 'status_code'):
        status_code = getattr(exception, 'status_code')

    if isinstance(status_code, int) and (status_code == 429 or 500 <= status_code < 600):
        return True

    error_msg = str(exception).lower()
    return any(pattern in error_msg for pattern in TRANSIENT_PATTERNS)


def create_retry_callback(operation_name: str) -> RetryCallback:
    """Build a callback that logs each retry of the named operation."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
