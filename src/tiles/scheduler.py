"""
Retry timing for tile recovery.

Protocol errors are usually transient and get a short linear ramp; every
other category gets exponential backoff with proportional jitter so that
many failing layers do not retry in lockstep. The scheduler only decides
when the next attempt runs; it never fetches anything.
"""
import asyncio
import logging
import math
import random
from typing import Awaitable, Callable, Optional

from tenacity import RetryCallState, wait_exponential, wait_incrementing

from src.config import RecoveryConfig, get_recovery_config
from src.tiles.errors import ErrorCategory

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


def _attempt_state(attempt: int) -> RetryCallState:
    """Minimal tenacity call state carrying only the attempt number."""
    state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
    state.attempt_number = attempt
    return state


class RecoveryScheduler:
    """
    Computes the backoff delay for attempt n (1-indexed) of a category.

    Usage:
        scheduler = RecoveryScheduler()
        scheduler.delay_ms(ErrorCategory.PROTOCOL_ERROR, 3)   # 900
        await scheduler.wait(ErrorCategory.SERVER_ERROR, 2)
    """

    def __init__(
        self,
        config: Optional[RecoveryConfig] = None,
        sleep: Optional[SleepFunc] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or get_recovery_config()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self._protocol_wait = wait_incrementing(
            start=self.config.protocol_base_delay_ms,
            increment=self.config.protocol_delay_step_ms,
            max=self.config.protocol_max_delay_ms,
        )
        self._backoff_wait = wait_exponential(
            multiplier=self.config.base_delay_ms,
            exp_base=self.config.backoff_multiplier,
            max=self.config.max_delay_ms,
        )

    def delay_ms(self, category: ErrorCategory, attempt: int, jitter: bool = True) -> int:
        """
        Delay before the given attempt, in milliseconds.

        Args:
            category: Error category of the failure being recovered
            attempt: 1-indexed attempt number
            jitter: Add up to jitter_ratio of random spread (non-protocol only)

        Returns:
            Delay in whole milliseconds, never above the category cap
        """
        attempt = max(1, attempt)
        retry_state = _attempt_state(attempt)

        if category is ErrorCategory.PROTOCOL_ERROR:
            return int(self._protocol_wait(retry_state))

        delay = self._backoff_wait(retry_state)
        if jitter and self.config.jitter_ratio > 0:
            delay += self._rng.random() * self.config.jitter_ratio * delay
        return int(math.floor(min(delay, self.config.max_delay_ms)))

    async def wait(self, category: ErrorCategory, attempt: int) -> int:
        """Sleep for the attempt's delay. Returns the delay used (ms)."""
        delay = self.delay_ms(category, attempt)
        logger.debug(f"Scheduling attempt {attempt} ({category.value}) in {delay}ms")
        await self._sleep(delay / 1000.0)
        return delay
