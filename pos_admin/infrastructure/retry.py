"""
Retry helpers for calls to the backend.

Two strategies wrap a zero-argument coroutine function:
- exponential_backoff: growing delay with up to 10% added jitter
- simple_retry: fixed delay between attempts

Delays are in seconds.
"""
import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from shared.core import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
ShouldRetry = Callable[[BaseException, int], bool]
Sleep = Callable[[float], Awaitable[Any]]

NETWORK_ERROR_MARKERS = (
    "ERR_NETWORK",
    "ERR_FAILED_FETCH",
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "EHOSTUNREACH",
    "Network Error",
)


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0, multiplier: float = 2.0) -> float:
    """Delay before retrying after failed attempt ``attempt`` (1-based), without jitter."""
    return min(base_delay * (multiplier ** (attempt - 1)), max_delay)


async def exponential_backoff(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    multiplier: float = 2.0,
    should_retry: Optional[ShouldRetry] = None,
    sleep: Sleep = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except Exception as err:
            last_error = err
            retry_this = should_retry is None or should_retry(err, attempt)
            if attempt == max_attempts or not retry_this:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, multiplier)
            actual_delay = delay + delay * rand() * 0.1
            logger.info(
                f"Retry {attempt}/{max_attempts} after {actual_delay:.3f}s - {err}",
                extra={'extra_fields': {'attempt': attempt, 'delay_sec': actual_delay}}
            )
            await sleep(actual_delay)
    # max_attempts < 1
    raise last_error if last_error else ValueError("max_attempts must be >= 1")


async def simple_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay: float = 1.0,
    sleep: Sleep = asyncio.sleep,
) -> T:
    last_error: Optional[BaseException] = None
    for i in range(attempts):
        try:
            return await fn()
        except Exception as err:
            last_error = err
            if i < attempts - 1:
                logger.info(f"Retrying after {delay}s (attempt {i + 1}/{attempts - 1}) - {err}")
                await sleep(delay)
    raise last_error if last_error else ValueError("attempts must be >= 1")


def _status_of(err: BaseException) -> Optional[int]:
    if isinstance(err, httpx.HTTPStatusError):
        return err.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(err, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(err, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_network_error(err: Optional[BaseException]) -> bool:
    if err is None:
        return False
    if isinstance(err, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    code = getattr(err, "code", None)
    texts = [str(err), code if isinstance(code, str) else ""]
    return any(marker in text for marker in NETWORK_ERROR_MARKERS for text in texts)


def is_server_error(err: Optional[BaseException]) -> bool:
    if err is None:
        return False
    status = _status_of(err)
    return status is not None and status >= 500


def is_rate_limit_error(err: Optional[BaseException]) -> bool:
    if err is None:
        return False
    return _status_of(err) == 429


def is_retryable_error(err: Optional[BaseException], attempt: int = 0) -> bool:
    return is_network_error(err) or is_server_error(err) or is_rate_limit_error(err)
