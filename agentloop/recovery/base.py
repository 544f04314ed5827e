"""Base class for recovery strategies."""

from __future__ import annotations

import abc
import dataclasses
import logging
import time
from typing import Any, Callable, Mapping

from agentloop.recovery.errors import (
    ErrorContext,
    HandlerResult,
    Recoverable,
    RecoveryHandler,
    has_recovery_handler,
)
from agentloop.recovery.types import (
    RecoveryContext,
    RecoveryPhase,
    RecoveryResult,
    RecoveryStrategyType,
    StrategyConfig,
)

logger = logging.getLogger(__name__)


class RecoveryStrategy(abc.ABC):
    """One fault-handling algorithm.

    Subclasses set ``strategy_type`` and implement ``execute``. Strategies
    never perform the recovery themselves: they drive the failing error's
    ``RecoveryHandler`` with named operations.
    """

    strategy_type: RecoveryStrategyType

    def __init__(self, config: StrategyConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock

    @property
    def name(self) -> str:
        return self.strategy_type.value

    def validate(self, error: BaseException, error_context: ErrorContext) -> bool:
        """Whether this strategy applies to ``error``."""
        if not self.config.enabled:
            return False
        if self.config.applicable_errors and error_context.kind not in self.config.applicable_errors:
            return False
        if error_context.severity not in self.config.applicable_severities:
            return False
        return has_recovery_handler(error)

    @abc.abstractmethod
    async def execute(self, context: RecoveryContext) -> RecoveryResult: ...

    async def cleanup(self, context: RecoveryContext) -> None:
        """Release anything ``execute`` left behind for this context."""

    async def reset(self) -> None:
        """Restore initial shared state."""

    def update_config(self, **changes: Any) -> None:
        self.config = dataclasses.replace(self.config, **changes)

    # ============ Helpers for subclasses ============

    @staticmethod
    def handler_for(context: RecoveryContext) -> RecoveryHandler:
        error = context.error
        if not isinstance(error, Recoverable) or error.recovery_handler is None:
            raise TypeError(f"{type(error).__name__} has no recovery handler")
        return error.recovery_handler

    async def call_handler(
        self,
        context: RecoveryContext,
        step: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> HandlerResult:
        """Run one handler operation labelled ``component[:step]``."""
        component = context.error_context.component
        operation = f"{component}:{step}" if step else component
        logger.debug("%s: handler operation %s", self.name, operation)
        return await self.handler_for(context).handle(context.error, operation, details)

    def begin(self, context: RecoveryContext) -> float:
        context.phase = RecoveryPhase.EXECUTING
        return self._clock()

    def result(
        self,
        context: RecoveryContext,
        successful: bool,
        started: float,
        error: BaseException | None = None,
        **metadata: Any,
    ) -> RecoveryResult:
        context.phase = RecoveryPhase.SUCCEEDED if successful else RecoveryPhase.FAILED
        return RecoveryResult(
            successful=successful,
            context=context,
            duration=self._clock() - started,
            error=error if error is not None else (None if successful else context.error),
            metadata={"strategy": self.name, **metadata},
        )
