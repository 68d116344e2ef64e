"""
Retry policy shared by every directory call.

One policy object is built from settings and injected into the services that
talk to the network, so attempts, backoff and timeouts are tuned in one place.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first
        backoff: Delay before the second attempt, doubled after each failure
        timeout: Upper bound for a single attempt, in seconds
    """
    max_attempts: int = 3
    backoff: float = 0.5
    timeout: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)"""
        return self.backoff * (2 ** (attempt - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[BaseException], ...] = (NetworkError,),
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Run an async operation under this policy.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            retry_on: Exceptions worth another attempt
            max_attempts: Override for callers that must not retry

        Returns:
            The operation's result

        Raises:
            NetworkError: If every attempt timed out
            Exception: The last retryable error, or any non-retryable one
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(operation(), timeout=self.timeout)
            except asyncio.TimeoutError:
                error = NetworkError(f"Timed out after {self.timeout}s")
            except retry_on as e:
                error = e

            if attempt >= attempts:
                raise error

            delay = self.delay_for(attempt)
            logger.debug("Attempt %d/%d failed (%s), retrying in %.2fs", attempt, attempts, error, delay)
            await asyncio.sleep(delay)
