"""
Retry with exponential backoff and jitter.

Used by the HTTP execution strategy only. Transport failures, 5xx and 429
responses are retried; any other 4xx is returned to the caller at once.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

logger = logging.getLogger("retry")

T = TypeVar("T")


def is_retryable_http_error(error: BaseException) -> bool:
    """Transient network errors, 5xx and 429 are retryable."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status == 429
    return isinstance(error, httpx.TransportError)


@dataclass
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: float = 0.1
    retry_condition: Callable[[BaseException], bool] = is_retryable_http_error

    def calculate_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retry number attempt+1, with +/- jitter fraction."""
        delay = min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
        if self.jitter:
            rng = rng or random
            delay += (rng.random() - 0.5) * 2 * delay * self.jitter
        return max(0.0, delay)

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        description: str = "operation",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        """
        Await fn() until it succeeds or the retry budget runs out.

        Non-retryable errors and the final failure propagate unchanged.
        """
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                result = await fn()
                if attempt > 0:
                    logger.info(f"{description} succeeded on attempt {attempt + 1}/{attempts}")
                return result
            except Exception as e:
                if not self.retry_condition(e):
                    logger.warning(f"{description} failed with non-retryable error: {e}")
                    raise
                if attempt == attempts - 1:
                    logger.error(f"{description} failed after {attempts} attempts: {e}")
                    raise
                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"{description} failed on attempt {attempt + 1}/{attempts}: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await sleep(delay)
        raise RuntimeError("unreachable")
