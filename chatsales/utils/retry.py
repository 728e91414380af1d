# chatsales/utils/retry.py
"""
Retry helpers with exponential backoff.

- calculate_backoff: the delay schedule shared by every retrying caller
- async_retry: decorator for idempotent side-effect calls (SMTP, dashboard push)

The streamed chat reply does not use the decorator: whether it may retry
depends on how much text was already emitted, so the streaming driver owns
its own loop and only borrows calculate_backoff.
"""

import asyncio
import random
from functools import wraps
from typing import Callable, Tuple, Type, Optional, Any

import httpx

from chatsales.utils.logger import logger


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Optional[Exception] = None, attempts: int = 0):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
)

HTTPX_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Exponential backoff delay for a 0-indexed attempt.

    Jitter scales the delay by a random factor in [0.5, 1.5) and the result
    is capped at max_delay.
    """
    delay = base_delay * (exponential_base ** attempt)
    if jitter:
        delay *= (0.5 + random.random())
    return min(delay, max_delay)


def async_retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Retry an idempotent coroutine on `retryable_exceptions`, sleeping
    calculate_backoff() between attempts. Other exceptions propagate at once;
    running out of attempts raises RetryError carrying the last exception.

        @async_retry(max_attempts=3, retryable_exceptions=HTTPX_RETRYABLE_EXCEPTIONS)
        async def _post(self, payload): ...
    """
    if retryable_exceptions is None:
        retryable_exceptions = DEFAULT_RETRYABLE_EXCEPTIONS + HTTPX_RETRYABLE_EXCEPTIONS

    def decorator(func: Callable) -> Callable:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            last_exception: Optional[Exception] = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)

                except retryable_exceptions as e:
                    last_exception = e

                    if attempt < max_attempts:
                        delay = calculate_backoff(
                            attempt - 1,
                            base_delay=initial_delay,
                            max_delay=max_delay,
                            exponential_base=backoff_factor,
                            jitter=jitter,
                        )
                        logger.warning(
                            f"[{op_name}] Attempt {attempt}/{max_attempts} failed: {type(e).__name__}: {e}. "
                            f"Retrying in {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            f"[{op_name}] Failed after {max_attempts} attempts: {type(e).__name__}: {e}"
                        )

                except Exception as e:
                    logger.error(f"[{op_name}] Non-retryable error: {type(e).__name__}: {e}")
                    raise

            raise RetryError(
                f"[{op_name}] Failed after {max_attempts} attempts",
                last_exception=last_exception,
                attempts=max_attempts,
            )

        return wrapper

    return decorator
