import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import aiohttp

from nethermind.batchscope.exceptions import (
    UpstreamHostError,
    UpstreamRateLimitError,
    UpstreamUnavailable,
)

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("batchscope").getChild("retry")

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    UpstreamRateLimitError,
    UpstreamHostError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


@dataclass
class RetryPolicy:
    """
    Exponential backoff with jitter, shared by every network call.  Rate limits, host errors, connection errors
    and timeouts are retried.  Any other error is raised immediately.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0

    jitter: float = 0.5
    """ Fraction of each delay that is randomized.  0 disables jitter """

    def backoff(self, attempt: int, error: BaseException | None = None) -> float:
        """
        Returns the number of seconds to wait before the next attempt.  Retry-After values sent with rate limit
        responses take precedence over the exponential schedule.

        :param attempt: Zero indexed number of the attempt that failed
        :param error: Error raised by the failed attempt
        """
        if isinstance(error, UpstreamRateLimitError) and error.retry_after is not None:
            return min(self.max_delay, error.retry_after * 1.25)

        delay = min(self.max_delay, self.base_delay * 2**attempt)
        return delay * (1 - self.jitter * random.random())

    async def run(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Awaits ``func(*args, **kwargs)``, retrying retryable errors until max_attempts is reached

        :raises UpstreamUnavailable: chained to the last error once every attempt failed
        """
        name = getattr(func, "__name__", repr(func))
        last_error: BaseException | None = None
        attempts = max(self.max_attempts, 1)

        for attempt in range(attempts):
            if attempt > 0:
                logger.info(f"Executing {name}() -- Retry {attempt}")
            try:
                return await func(*args, **kwargs)
            except RETRYABLE_ERRORS as exc:
                last_error = exc
                if attempt + 1 >= attempts:
                    break
                delay = self.backoff(attempt, exc)
                logger.warning(f"{type(exc).__name__} in {name}()... retrying in {delay:.2f} seconds")
                await asyncio.sleep(delay)

        raise UpstreamUnavailable(f"Failed to execute {name}() after {attempts} attempts") from last_error
