"""Circuit breaker recovery strategy.

State is shared by every recovery that goes through the same strategy
instance:

    CLOSED --failure_threshold failures--> OPEN
    OPEN --reset_timeout elapsed--> HALF_OPEN (admits half_open_requests probes)
    HALF_OPEN --all probes succeed--> CLOSED
    HALF_OPEN --any probe fails--> OPEN
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable

from agentloop.recovery.base import RecoveryStrategy
from agentloop.recovery.types import (
    CircuitBreakerConfig,
    RecoveryContext,
    RecoveryResult,
    RecoveryStrategyType,
)

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(RuntimeError):
    """Raised into results when the breaker refuses a call."""


class CircuitBreakerStrategy(RecoveryStrategy):
    strategy_type = RecoveryStrategyType.CIRCUIT_BREAKER

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(config or CircuitBreakerConfig(), clock)
        self._lock = asyncio.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._probe_successes = 0
        self._probes_in_flight: set[str] = set()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> float:
        return self._last_failure_time

    @property
    def half_open_probe_count(self) -> int:
        return self._probe_successes

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        config: CircuitBreakerConfig = self.config
        started = self.begin(context)

        async with self._lock:
            refusal = self._admit(context, config)
        if refusal:
            logger.info("Circuit breaker refused recovery %s: %s", context.id, refusal)
            return self.result(
                context,
                False,
                started,
                error=CircuitOpenError(refusal),
                reason=refusal,
                circuit_state=self._state.value,
            )

        context.attempt_count = 1
        context.last_attempt_time = time.time()
        error: BaseException | None = None
        try:
            outcome = await self.call_handler(context)
            success = outcome.success
        except Exception as e:
            logger.warning("Circuit breaker handler raised: %s", e)
            success = False
            error = e

        async with self._lock:
            self._record(context, success, config)
            state = self._state

        return self.result(context, success, started, error=error, circuit_state=state.value)

    def _admit(self, context: RecoveryContext, config: CircuitBreakerConfig) -> str | None:
        """Return a refusal reason, or None when the call may proceed."""
        if self._state == CircuitState.OPEN:
            if self._clock() - self._last_failure_time < config.reset_timeout:
                return "Circuit is OPEN"
            logger.info("Circuit breaker: reset timeout elapsed, moving to HALF_OPEN")
            self._state = CircuitState.HALF_OPEN
            self._probe_successes = 0
            self._probes_in_flight.clear()

        if self._state == CircuitState.HALF_OPEN:
            admitted = self._probe_successes + len(self._probes_in_flight)
            if admitted >= config.half_open_requests:
                return "Circuit is HALF_OPEN and the probe batch is in progress"
            self._probes_in_flight.add(context.id)
        return None

    def _record(self, context: RecoveryContext, success: bool, config: CircuitBreakerConfig) -> None:
        if context.id in self._probes_in_flight:
            self._probes_in_flight.discard(context.id)
            if self._state != CircuitState.HALF_OPEN:
                return
            if success:
                self._probe_successes += 1
                if self._probe_successes >= config.half_open_requests:
                    logger.info("Circuit breaker: probes succeeded, closing circuit")
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    self._probe_successes = 0
            else:
                self._trip()
            return

        if self._state != CircuitState.CLOSED:
            return
        if success:
            self._failure_count = 0
            return
        self._failure_count += 1
        self._last_failure_time = self._clock()
        if self._failure_count >= config.failure_threshold:
            self._trip()

    def _trip(self) -> None:
        logger.warning("Circuit breaker OPEN after %d failure(s)", self._failure_count)
        self._state = CircuitState.OPEN
        self._last_failure_time = self._clock()
        self._probe_successes = 0
        self._probes_in_flight.clear()

    async def cleanup(self, context: RecoveryContext) -> None:
        # A cancelled probe gives its slot back
        async with self._lock:
            self._probes_in_flight.discard(context.id)

    async def reset(self) -> None:
        async with self._lock:
            self._reset_state()
