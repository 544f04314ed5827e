"""Recovery manager: selects, runs, validates and measures recovery strategies.

Usage:
    manager = RecoveryManager()
    manager.register_strategy(RetryStrategy())
    manager.register_strategy(CircuitBreakerStrategy())

    result = await manager.handle(error, error_context)
    if result.successful:
        ...

``handle`` never raises; every internal failure becomes a failed
``RecoveryResult``. Task cancellation is the only exception that
propagates, after the strategy has cleaned up.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
from typing import Any, Callable

from agentloop.recovery.base import RecoveryStrategy
from agentloop.recovery.errors import ErrorContext
from agentloop.recovery.metrics import RecoveryMetrics, StrategyMetricsTracker
from agentloop.recovery.resources import ResourceMonitor
from agentloop.recovery.types import (
    RecoveryContext,
    RecoveryEvent,
    RecoveryEventType,
    RecoveryManagerConfig,
    RecoveryPhase,
    RecoveryResult,
    RecoveryStrategyType,
    ResourceUsage,
)
from agentloop.recovery.validation import PerformanceSnapshot, validate_recovery
from agentloop.telemetry import LoggingTelemetrySink, TelemetryEvent, TelemetrySink, safe_emit

logger = logging.getLogger(__name__)

StrategyPredicate = Callable[[BaseException, ErrorContext], bool]
RecoveryListener = Callable[[RecoveryEvent], Any]

_EVENT_LEVELS = {
    RecoveryEventType.RECOVERY_INITIATED: "info",
    RecoveryEventType.RECOVERY_SUCCEEDED: "info",
    RecoveryEventType.RECOVERY_FAILED: "warning",
    RecoveryEventType.RECOVERY_ABANDONED: "warning",
    RecoveryEventType.METRICS_UPDATED: "debug",
}


class RecoveryManager:
    """Owns the ordered strategy registry and the recovery metrics.

    One instance is shared by every loop in the process; strategies that
    keep state (circuit breaker, degradation) are shared with it.
    """

    def __init__(
        self,
        config: RecoveryManagerConfig | None = None,
        metrics: StrategyMetricsTracker | None = None,
        resource_monitor: ResourceMonitor | None = None,
        telemetry: TelemetrySink | None = None,
        performance_probe: Callable[[], PerformanceSnapshot | None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RecoveryManagerConfig()
        self.metrics = metrics or StrategyMetricsTracker()
        self.resource_monitor = resource_monitor or ResourceMonitor()
        self.telemetry = telemetry if telemetry is not None else LoggingTelemetrySink()
        self.performance_probe = performance_probe
        self._clock = clock
        self._registry: list[tuple[StrategyPredicate, RecoveryStrategy]] = []
        self._listeners: list[RecoveryListener] = []
        self.active_recoveries: dict[str, RecoveryContext] = {}

    # ============ Registry ============

    def register_strategy(
        self,
        strategy: RecoveryStrategy,
        predicate: StrategyPredicate | None = None,
    ) -> None:
        """Append ``strategy``; earlier registrations are tried first."""
        self._registry.append((predicate or strategy.validate, strategy))
        logger.debug("Registered recovery strategy %s", strategy.name)

    def unregister_strategy(self, strategy_type: RecoveryStrategyType) -> bool:
        before = len(self._registry)
        self._registry = [
            (pred, s) for pred, s in self._registry if s.strategy_type != strategy_type
        ]
        return len(self._registry) != before

    @property
    def strategies(self) -> list[RecoveryStrategy]:
        return [strategy for _, strategy in self._registry]

    def get_strategy(self, strategy_type: RecoveryStrategyType) -> RecoveryStrategy | None:
        return next((s for s in self.strategies if s.strategy_type == strategy_type), None)

    def select_strategy(
        self, error: BaseException, error_context: ErrorContext
    ) -> RecoveryStrategy | None:
        for predicate, strategy in self._registry:
            try:
                if predicate(error, error_context):
                    return strategy
            except Exception as e:
                logger.warning("Strategy predicate for %s raised: %s", strategy.name, e)
        return None

    # ============ Listeners ============

    def add_event_listener(self, listener: RecoveryListener) -> None:
        self._listeners.append(listener)

    def remove_event_listener(self, listener: RecoveryListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, event: RecoveryEvent) -> None:
        context = event.context
        message = event.type.value
        if context is not None:
            message = f"{context.strategy_type.value} for {context.error_context.component}"
            if event.result is not None:
                message += f" after {event.result.attempts} attempt(s)"
        safe_emit(
            self.telemetry,
            TelemetryEvent(
                component="RecoveryManager",
                operation=event.type.value,
                level=_EVENT_LEVELS[event.type],
                message=message,
                metadata={
                    "recovery_id": context.id if context else None,
                    **({"result": event.result.to_dict()} if event.result else {}),
                    **event.metadata,
                },
            ),
        )
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning("Recovery event listener failed: %s", e)

    # ============ Handling ============

    def _failed(self, error: BaseException, reason: str) -> RecoveryResult:
        logger.info("Recovery not attempted: %s", reason)
        return RecoveryResult(successful=False, context=None, error=error, metadata={"reason": reason})

    def _resource_usage(self) -> ResourceUsage:
        try:
            usage = self.resource_monitor.snapshot()
        except Exception as e:
            logger.warning("Could not read resource usage: %s", e)
            usage = ResourceUsage()
        snapshot = self.metrics.snapshot()
        usage.error_rate = snapshot.error_rate
        usage.response_time = snapshot.average_recovery_time
        return usage

    def _build_context(
        self,
        error: BaseException,
        error_context: ErrorContext,
        strategy: RecoveryStrategy,
    ) -> RecoveryContext:
        return RecoveryContext(
            error=error,
            error_context=error_context,
            strategy_type=strategy.strategy_type,
            max_attempts=min(strategy.config.max_attempts, self.config.global_max_attempts),
            timeout=min(strategy.config.timeout, self.config.global_timeout),
            metadata={
                "component": error_context.component,
                "operation": error_context.operation,
                "resource_usage": self._resource_usage(),
            },
        )

    async def handle(self, error: BaseException, error_context: ErrorContext) -> RecoveryResult:
        """Recover from ``error``. Never raises except on cancellation."""
        if not self.config.enabled:
            return self._failed(error, "disabled")

        strategy = self.select_strategy(error, error_context)
        if strategy is None:
            return self._failed(error, "no suitable strategy")

        try:
            context = self._build_context(error, error_context, strategy)
        except Exception as e:
            logger.error("Could not build recovery context: %s", e)
            return self._failed(e, "context creation failed")

        self.active_recoveries[context.id] = context
        logger.info(
            "Recovery %s: %s for %s.%s (%s)",
            context.id,
            strategy.name,
            error_context.component,
            error_context.operation,
            error_context.kind.name,
        )
        await self._emit(RecoveryEvent(RecoveryEventType.RECOVERY_INITIATED, context=context))

        started = self._clock()
        try:
            try:
                result = await strategy.execute(context)
            except asyncio.CancelledError:
                context.phase = RecoveryPhase.ABANDONED
                await self._emit(RecoveryEvent(RecoveryEventType.RECOVERY_ABANDONED, context=context))
                raise
            except Exception as e:
                logger.error("Recovery strategy %s raised: %s", strategy.name, e, exc_info=True)
                context.phase = RecoveryPhase.FAILED
                result = RecoveryResult(
                    successful=False,
                    context=context,
                    duration=self._clock() - started,
                    error=e,
                    metadata={"strategy": strategy.name, "reason": str(e)},
                )

            if self.config.validate_after_recovery:
                self._validate(result)

            if self.config.metrics_enabled:
                self.metrics.record(
                    strategy.strategy_type,
                    result.successful,
                    result.duration,
                    kind=error_context.kind,
                    severity=error_context.severity,
                    resource_usage=context.resource_usage,
                )
                await self._emit(
                    RecoveryEvent(RecoveryEventType.METRICS_UPDATED, context=context, result=result)
                )
        finally:
            try:
                await strategy.cleanup(context)
            except Exception as e:
                logger.warning("Cleanup of %s failed: %s", context.id, e)
            self.active_recoveries.pop(context.id, None)

        event_type = (
            RecoveryEventType.RECOVERY_SUCCEEDED
            if result.successful
            else RecoveryEventType.RECOVERY_FAILED
        )
        await self._emit(RecoveryEvent(event_type, context=context, result=result))
        return result

    def _validate(self, result: RecoveryResult) -> None:
        result.context.phase = RecoveryPhase.VALIDATING
        try:
            performance = self.performance_probe() if self.performance_probe else None
            report = validate_recovery(result, self._current_usage(), performance)
        except Exception as e:
            logger.warning("Post-recovery validation could not run: %s", e)
            result.context.phase = (
                RecoveryPhase.SUCCEEDED if result.successful else RecoveryPhase.FAILED
            )
            return

        result.metadata["validation"] = report.to_dict()
        for check in report.failed:
            logger.warning(
                "Post-recovery check %s failed (%s): %s", check.name, check.severity, check.detail
            )
        if result.successful and report.invalidates:
            result.successful = False
            result.error = result.context.error
            result.metadata["reason"] = "post-recovery validation failed"
        result.context.phase = RecoveryPhase.SUCCEEDED if result.successful else RecoveryPhase.FAILED

    def _current_usage(self) -> ResourceUsage:
        try:
            return self.resource_monitor.snapshot()
        except Exception as e:
            logger.warning("Could not read resource usage: %s", e)
            return ResourceUsage()

    # ============ Metrics and configuration ============

    def get_metrics(self) -> RecoveryMetrics:
        return self.metrics.snapshot()

    def update_config(self, **changes: Any) -> None:
        self.config = dataclasses.replace(self.config, **changes)

    async def reset(self) -> None:
        """Reset metrics and every registered strategy's shared state."""
        self.metrics.reset()
        for strategy in self.strategies:
            await strategy.reset()
