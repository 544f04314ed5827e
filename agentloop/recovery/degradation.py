"""Graceful degradation recovery strategy.

Keeps a process-wide degradation level (0 = normal). Each recovery picks the
highest configured level whose conditions all hold against the resource
snapshot, applies that level's actions if the level changed, then runs the
error's handler. Handler success steps the level down by one, a handler
exception steps it up by one.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable

from agentloop.recovery.base import RecoveryStrategy
from agentloop.recovery.policy import default_degradation_levels, parse_condition
from agentloop.recovery.types import (
    DegradationConfig,
    DegradationLevel,
    RecoveryContext,
    RecoveryResult,
    RecoveryStrategyType,
    ResourceUsage,
)

logger = logging.getLogger(__name__)

DegradationAction = Callable[[DegradationLevel], Any]


class GracefulDegradationStrategy(RecoveryStrategy):
    strategy_type = RecoveryStrategyType.GRACEFUL_DEGRADATION

    def __init__(
        self,
        config: DegradationConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = config or DegradationConfig()
        if not config.degradation_levels:
            config.degradation_levels = default_degradation_levels()
        super().__init__(config, clock)
        self._lock = asyncio.Lock()
        self._current_level = 0
        self._actions: dict[str, DegradationAction] = {}
        # Actions applied on the most recent level change
        self.applied_actions: list[str] = []

    @property
    def current_level(self) -> int:
        return self._current_level

    @property
    def levels(self) -> list[DegradationLevel]:
        return sorted(self.config.degradation_levels, key=lambda lvl: lvl.level)

    def register_action(self, name: str, func: DegradationAction) -> None:
        """Register the callable applied for degradation action ``name``.

        ``func`` receives the DegradationLevel being entered and may be a
        coroutine function.
        """
        self._actions[name] = func

    def target_level(self, usage: ResourceUsage) -> int:
        """Highest level whose conditions all hold, 0 when none do."""
        for level in reversed(self.levels):
            if level.conditions and all(
                parse_condition(c).holds(usage) for c in level.conditions
            ):
                return level.level
        return 0

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        started = self.begin(context)
        usage = context.resource_usage

        async with self._lock:
            target = self.target_level(usage)
            if target != self._current_level:
                logger.info(
                    "Degradation level %d -> %d for recovery %s",
                    self._current_level,
                    target,
                    context.id,
                )
                self._current_level = target
                await self._apply(target)
            level_used = self._current_level

        context.attempt_count = 1
        context.last_attempt_time = time.time()
        try:
            outcome = await self.call_handler(context)
        except Exception as e:
            logger.warning("Degraded recovery raised, degrading further: %s", e)
            async with self._lock:
                self._current_level = min(len(self.levels), self._current_level + 1)
                level_after = self._current_level
            return self.result(
                context, False, started, error=e, level=level_used, level_after=level_after
            )

        if outcome.success:
            async with self._lock:
                self._current_level = max(0, self._current_level - 1)
        level_after = self._current_level
        return self.result(
            context, outcome.success, started, level=level_used, level_after=level_after
        )

    async def _apply(self, level_number: int) -> None:
        level = next((lvl for lvl in self.levels if lvl.level == level_number), None)
        self.applied_actions = []
        if level is None:
            return
        for name in level.actions:
            func = self._actions.get(name)
            if func is None:
                logger.warning("No handler registered for degradation action %s, skipping", name)
                continue
            try:
                outcome = func(level)
                if inspect.isawaitable(outcome):
                    await outcome
                self.applied_actions.append(name)
            except Exception as e:
                logger.error("Degradation action %s failed: %s", name, e)

    async def reset(self) -> None:
        async with self._lock:
            self._current_level = 0
            self.applied_actions = []
