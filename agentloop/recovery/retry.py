"""Retry with fixed or exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from agentloop.recovery.base import RecoveryStrategy
from agentloop.recovery.types import (
    RecoveryContext,
    RecoveryResult,
    RecoveryStrategyType,
    RetryConfig,
)

logger = logging.getLogger(__name__)


class RetryStrategy(RecoveryStrategy):
    """Sleeps before every attempt (the first included), then asks the
    error's handler to recover. The delay doubles after each failed attempt
    when ``exponential_backoff`` is set, capped at ``max_delay``.

    Sleeping goes through ``sleep`` so only the calling task waits.
    """

    strategy_type = RecoveryStrategyType.RETRY

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(config or RetryConfig(), clock)
        self._sleep = sleep

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        config: RetryConfig = self.config
        started = self.begin(context)
        delay = min(config.initial_delay, config.max_delay)
        last_delay = 0.0
        last_error: BaseException | None = None

        for attempt in range(1, context.max_attempts + 1):
            context.attempt_count = attempt
            await self._sleep(delay)
            last_delay = delay
            context.last_attempt_time = time.time()

            try:
                outcome = await self.call_handler(context)
            except Exception as e:
                logger.warning("Retry attempt %d/%d raised: %s", attempt, context.max_attempts, e)
                last_error = e
            else:
                if outcome.success:
                    logger.info("Retry succeeded on attempt %d", attempt)
                    return self.result(
                        context, True, started, final_delay=last_delay, **outcome.metadata
                    )
                logger.info("Retry attempt %d/%d failed", attempt, context.max_attempts)

            if config.exponential_backoff:
                delay = min(delay * 2, config.max_delay)

        return self.result(
            context,
            False,
            started,
            error=last_error,
            final_delay=last_delay,
            reason="retries exhausted",
        )
