"""
k3snode/utils/async_retry.py

Provides a decorator to retry an async function a bounded number of times.
"""

import asyncio
from typing import Any, Callable, Coroutine, Optional
from typing_extensions import ParamSpec, TypeVar

from k3snode.utils.masking import get_logger

P = ParamSpec("P")
R = TypeVar("R")

logger = get_logger(__name__)

RetryHook = Callable[[int, int, Exception], None]


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    on_retry: Optional[RetryHook] = None,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function is attempted up to `retries` times in total, sleeping
    `delay` seconds between attempts. The last exception is re-raised once the
    attempts are exhausted.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds between attempts. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
        on_retry (Optional[RetryHook]):
            Called as on_retry(attempt_number, retries, exc) after every failed
            attempt that will be followed by another one (never after the last).

    Returns:
        A decorator that wraps an async function with the retry loop.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attempt_number = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for %r failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if attempt_number >= retries:
                        if noisy:
                            logger.error(
                                "All %d attempts failed for %r",
                                retries,
                                func.__qualname__,
                            )
                        raise

                    if on_retry is not None:
                        on_retry(attempt_number, retries, exc)
                    await asyncio.sleep(delay)
                    attempt_number += 1

        return wrapper

    return decorator
