"""
kubestrap/utils/async_retry.py

Provides a decorator that re-invokes an async function a bounded number of times,
sleeping a fixed delay between attempts. Used to absorb the window between a new
instance reporting "active" and its SSH daemon accepting connections.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    Args:
        retries: Total number of attempts (not just failures). Values below 1
            are treated as a single attempt.
        delay: Seconds to sleep between attempts. No sleep follows the last one.
        noisy: If True, log a warning per failed attempt and an error once all
            attempts are used up.
        retry_on: Exception types that trigger another attempt. Anything else
            propagates immediately.

    Returns:
        A decorator producing a wrapper that raises the last exception once the
        attempt budget is spent.
    """
    attempts = max(retries, 1)

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d of %r failed: %s",
                            attempt_number,
                            attempts,
                            func.__qualname__,
                            exc,
                        )
                    if attempt_number < attempts:
                        await asyncio.sleep(delay)
                        return await attempt(attempt_number + 1)

                    if noisy:
                        logger.error(
                            "All %d attempts of %r failed", attempts, func.__qualname__
                        )
                    raise

            return await attempt(1)

        return wrapper

    return decorator
