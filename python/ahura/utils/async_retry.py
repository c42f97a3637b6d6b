"""
ahura/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure,
and the capped exponential backoff schedule shared by the readiness pollers.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Iterator, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def backoff_delays(
    base: float = 1.0, factor: float = 2.0, cap: float = 8.0
) -> Iterator[float]:
    """Yield base, base*factor, base*factor**2, ... never exceeding `cap`.

    The sequence is non-decreasing and, once it reaches `cap`, constant.

    Args:
        base (float): First delay in seconds.
        factor (float): Growth factor, at least 1.
        cap (float): Upper bound on any single delay.
    """
    if base < 0 or cap < 0:
        raise ValueError("base and cap must not be negative")
    if factor < 1:
        raise ValueError("factor must be >= 1")
    delay = min(base, cap)
    while True:
        yield delay
        delay = min(delay * factor, cap)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    backoff: float = 1.0,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. The first
    wait is `delay` seconds and each following wait is multiplied by `backoff`,
    capped at `max_delay`. Only exceptions matching `retry_on` are retried;
    anything else propagates on the first occurrence. If `noisy` is True, logs
    warnings on each failure and an error on the final failure.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds before the second attempt. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.
        backoff (float, optional):
            Multiplier applied to the delay after each attempt. Defaults to 1.0.
        max_delay (float, optional):
            Upper bound for any single delay. Defaults to 60.0.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger a retry. Defaults to (Exception,).

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            delays = backoff_delays(delay, backoff, max(delay, max_delay))

            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for function %r failed. Error: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    # If we have remaining attempts, retry
                    if remaining > 1:
                        await asyncio.sleep(next(delays))
                        return await attempt(remaining - 1, attempt_number + 1)

                    if noisy:
                        logger.error(
                            "All %d attempts failed for function %r",
                            retries,
                            func.__qualname__,
                        )
                    raise

            return await attempt(max(retries, 1), 1)

        wrapper.__name__ = getattr(func, "__name__", "wrapper")
        wrapper.__qualname__ = getattr(func, "__qualname__", "wrapper")
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator
