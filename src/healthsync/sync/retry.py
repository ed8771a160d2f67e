"""Bounded retry with a linear or exponential backoff schedule."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times to try, and how long to wait between tries.

    delay_for(attempt) is the wait AFTER a failed attempt (1-based):
        linear:      base_delay * attempt
        exponential: base_delay * 2 ** (attempt - 1)
    capped at max_delay. A base_delay of 0 retries immediately.
    """

    max_attempts: int = 3
    base_delay: float = 0.0
    exponential: bool = False
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        if self.base_delay <= 0:
            return 0.0
        if self.exponential:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay * attempt
        return min(delay, self.max_delay)

    async def run(
        self,
        fn: Callable[[int], Awaitable[T]],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_failure: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Call fn(attempt) until it succeeds or attempts run out.

        Args:
            fn: Async callable receiving the 1-based attempt number.
            retry_on: Exception types that trigger another attempt.
            sleep: Awaitable sleep (patched in tests).
            on_failure: Called with (attempt, exc) after each failed attempt.

        Raises:
            The last exception once max_attempts is exhausted.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await fn(attempt)
            except retry_on as exc:
                if on_failure is not None:
                    on_failure(attempt, exc)
                if attempt == attempts:
                    raise
                delay = self.delay_for(attempt)
                if delay > 0:
                    logger.debug("Retrying in %.2fs (attempt %d/%d)", delay, attempt, attempts)
                    await sleep(delay)
        raise AssertionError("unreachable")
