"""Tests for the recovery manager."""

import asyncio

import pytest

from agentloop.recovery.agent_strategies import AgentRestartStrategy
from agentloop.recovery.base import RecoveryStrategy
from agentloop.recovery.errors import (
    ErrorContext,
    ErrorKind,
    ErrorSeverity,
    RecoverableError,
)
from agentloop.recovery.manager import RecoveryManager
from agentloop.recovery.retry import RetryStrategy
from agentloop.recovery.types import (
    AgentRecoveryConfig,
    RecoveryEventType,
    RecoveryManagerConfig,
    RecoveryPhase,
    RecoveryStrategyType,
    ResourceUsage,
    RetryConfig,
)
from agentloop.recovery.validation import PerformanceSnapshot
from agentloop.telemetry import NullSink


def network_context():
    return ErrorContext(
        component="AgentLoopController",
        operation="invoke_llm",
        kind=ErrorKind.NETWORK_ERROR,
        severity=ErrorSeverity.ERROR,
    )


def quick_retry(**changes):
    return RetryStrategy(RetryConfig(initial_delay=0, max_delay=0, **changes))


@pytest.fixture
def manager(static_monitor):
    return RecoveryManager(
        config=RecoveryManagerConfig(),
        resource_monitor=static_monitor(),
        telemetry=NullSink(),
    )


class BrokenStrategy(RecoveryStrategy):
    strategy_type = RecoveryStrategyType.RETRY

    def __init__(self):
        super().__init__(RetryConfig())
        self.cleaned = []

    async def execute(self, context):
        raise RuntimeError("strategy bug")

    async def cleanup(self, context):
        self.cleaned.append(context.id)


class HangingStrategy(BrokenStrategy):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()

    async def execute(self, context):
        self.started.set()
        await asyncio.sleep(3600)


# ============ Selection Tests ============

@pytest.mark.asyncio
async def test_first_matching_strategy_wins(manager, make_handler):
    manager.register_strategy(quick_retry())
    manager.register_strategy(AgentRestartStrategy())
    error = RecoverableError("down", handler=make_handler())

    result = await manager.handle(error, network_context())

    assert result.successful is True
    assert result.context.strategy_type == RecoveryStrategyType.RETRY


@pytest.mark.asyncio
async def test_non_applicable_strategy_is_skipped(manager, make_handler):
    manager.register_strategy(quick_retry(applicable_errors={ErrorKind.TIMEOUT}))
    manager.register_strategy(AgentRestartStrategy())
    handler = make_handler()

    result = await manager.handle(RecoverableError("down", handler=handler), network_context())

    assert result.context.strategy_type == RecoveryStrategyType.AGENT_RESTART
    assert "restart" in handler.steps


@pytest.mark.asyncio
async def test_custom_predicate(manager, make_handler):
    manager.register_strategy(quick_retry(), predicate=lambda err, ctx: ctx.operation == "tool")
    manager.register_strategy(AgentRestartStrategy())

    result = await manager.handle(RecoverableError("x", handler=make_handler()), network_context())

    assert result.context.strategy_type == RecoveryStrategyType.AGENT_RESTART


@pytest.mark.asyncio
async def test_raising_predicate_is_skipped(manager, make_handler):
    def broken(err, ctx):
        raise KeyError("oops")

    manager.register_strategy(quick_retry(), predicate=broken)
    manager.register_strategy(AgentRestartStrategy())

    result = await manager.handle(RecoverableError("x", handler=make_handler()), network_context())

    assert result.context.strategy_type == RecoveryStrategyType.AGENT_RESTART


@pytest.mark.asyncio
async def test_disabled_manager(manager, make_handler):
    manager.register_strategy(quick_retry())
    manager.update_config(enabled=False)
    error = RecoverableError("down", handler=make_handler())

    result = await manager.handle(error, network_context())

    assert result.successful is False
    assert result.context is None
    assert result.error is error
    assert result.metadata["reason"] == "disabled"


@pytest.mark.asyncio
async def test_no_suitable_strategy(manager):
    manager.register_strategy(quick_retry())
    error = RuntimeError("plain error without handler")

    result = await manager.handle(error, network_context())

    assert result.successful is False
    assert result.metadata["reason"] == "no suitable strategy"


def test_registry_management():
    manager = RecoveryManager(telemetry=NullSink())
    manager.register_strategy(quick_retry())
    manager.register_strategy(AgentRestartStrategy())

    assert [s.name for s in manager.strategies] == ["RETRY", "AGENT_RESTART"]
    assert manager.get_strategy(RecoveryStrategyType.AGENT_RESTART) is not None
    assert manager.unregister_strategy(RecoveryStrategyType.RETRY) is True
    assert manager.unregister_strategy(RecoveryStrategyType.RETRY) is False
    assert manager.get_strategy(RecoveryStrategyType.RETRY) is None


# ============ Context Tests ============

@pytest.mark.asyncio
async def test_context_clamped_to_global_ceilings(static_monitor, make_handler):
    manager = RecoveryManager(
        config=RecoveryManagerConfig(global_max_attempts=2, global_timeout=3.0),
        resource_monitor=static_monitor(ResourceUsage(cpu=0.25)),
        telemetry=NullSink(),
    )
    manager.register_strategy(AgentRestartStrategy(AgentRecoveryConfig(max_attempts=5, timeout=10.0)))
    handler = make_handler({"restart": [False, False, False]})

    result = await manager.handle(RecoverableError("x", handler=handler), network_context())

    assert result.context.max_attempts == 2
    assert result.context.timeout == 3.0
    assert result.attempts == 2
    assert result.context.resource_usage.cpu == 0.25
    assert result.context.metadata["component"] == "AgentLoopController"


# ============ Failure Semantics Tests ============

@pytest.mark.asyncio
async def test_strategy_exception_becomes_failed_result(manager, make_handler):
    strategy = BrokenStrategy()
    manager.register_strategy(strategy)

    result = await manager.handle(RecoverableError("x", handler=make_handler()), network_context())

    assert result.successful is False
    assert isinstance(result.error, RuntimeError)
    assert str(result.error) == "strategy bug"
    assert result.context.phase == RecoveryPhase.FAILED
    assert strategy.cleaned == [result.context.id]
    assert manager.active_recoveries == {}


@pytest.mark.asyncio
async def test_cancelled_recovery_still_cleans_up(manager, make_handler):
    strategy = HangingStrategy()
    manager.register_strategy(strategy)
    events = []
    manager.add_event_listener(lambda event: events.append(event.type))

    task = asyncio.create_task(
        manager.handle(RecoverableError("x", handler=make_handler()), network_context())
    )
    await strategy.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(strategy.cleaned) == 1
    assert manager.active_recoveries == {}
    assert events == [
        RecoveryEventType.RECOVERY_INITIATED,
        RecoveryEventType.RECOVERY_ABANDONED,
    ]


# ============ Event Tests ============

@pytest.mark.asyncio
async def test_events_emitted_in_order(manager, make_handler, recorder):
    manager.telemetry = recorder
    manager.register_strategy(quick_retry())
    seen = []
    manager.add_event_listener(lambda event: seen.append(event.type))

    await manager.handle(RecoverableError("x", handler=make_handler()), network_context())

    assert seen == [
        RecoveryEventType.RECOVERY_INITIATED,
        RecoveryEventType.METRICS_UPDATED,
        RecoveryEventType.RECOVERY_SUCCEEDED,
    ]
    assert recorder.operations("RecoveryManager") == [t.value for t in seen]


@pytest.mark.asyncio
async def test_failing_and_async_listeners(manager, make_handler):
    manager.register_strategy(quick_retry())
    received = []

    def broken(event):
        raise ValueError("listener bug")

    async def async_listener(event):
        received.append(event.type)

    manager.add_event_listener(broken)
    manager.add_event_listener(async_listener)

    result = await manager.handle(RecoverableError("x", handler=make_handler(default=False)), network_context())

    assert result.successful is False
    assert received[-1] == RecoveryEventType.RECOVERY_FAILED

    manager.remove_event_listener(async_listener)
    await manager.handle(RecoverableError("x", handler=make_handler()), network_context())
    assert received[-1] == RecoveryEventType.RECOVERY_FAILED


# ============ Validation Tests ============

@pytest.mark.asyncio
async def test_high_severity_validation_failure_invalidates(static_monitor, make_handler):
    manager = RecoveryManager(
        resource_monitor=static_monitor(ResourceUsage(cpu=0.99)),
        telemetry=NullSink(),
    )
    manager.register_strategy(quick_retry())
    error = RecoverableError("x", handler=make_handler())

    result = await manager.handle(error, network_context())

    assert result.successful is False
    assert result.error is error
    assert result.metadata["reason"] == "post-recovery validation failed"
    assert result.metadata["validation"]["valid"] is False
    assert result.context.phase == RecoveryPhase.FAILED


@pytest.mark.asyncio
async def test_medium_severity_failure_only_reported(static_monitor, make_handler):
    manager = RecoveryManager(
        resource_monitor=static_monitor(),
        telemetry=NullSink(),
        performance_probe=lambda: PerformanceSnapshot(
            success_rate=0.5, error_rate=0.5, latency=1.0, throughput=50
        ),
    )
    manager.register_strategy(quick_retry())

    result = await manager.handle(RecoverableError("x", handler=make_handler()), network_context())

    assert result.successful is True
    checks = {c["name"]: c["passed"] for c in result.metadata["validation"]["checks"]}
    assert checks == {"Resource Usage": True, "Performance Impact": False, "Recovery Time": True}


@pytest.mark.asyncio
async def test_validation_disabled(static_monitor, make_handler):
    manager = RecoveryManager(
        config=RecoveryManagerConfig(validate_after_recovery=False),
        resource_monitor=static_monitor(ResourceUsage(cpu=0.99)),
        telemetry=NullSink(),
    )
    manager.register_strategy(quick_retry())

    result = await manager.handle(RecoverableError("x", handler=make_handler()), network_context())

    assert result.successful is True
    assert "validation" not in result.metadata


# ============ Metrics Tests ============

@pytest.mark.asyncio
async def test_metrics_updated(manager, make_handler):
    manager.register_strategy(quick_retry(max_attempts=1))

    await manager.handle(RecoverableError("x", handler=make_handler()), network_context())
    await manager.handle(RecoverableError("x", handler=make_handler(default=False)), network_context())

    metrics = manager.get_metrics()
    assert metrics.total_attempts == 2
    assert metrics.successful_recoveries == 1
    assert metrics.recovery_success_rate == 0.5
    retry = metrics.strategy_metrics[RecoveryStrategyType.RETRY]
    assert (retry.attempts, retry.successes, retry.failures) == (2, 1, 1)
    assert metrics.error_distribution == {"NETWORK_ERROR": 1.0}

    await manager.reset()
    assert manager.get_metrics().total_attempts == 0


@pytest.mark.asyncio
async def test_metrics_disabled(static_monitor, make_handler):
    manager = RecoveryManager(
        config=RecoveryManagerConfig(metrics_enabled=False),
        resource_monitor=static_monitor(),
        telemetry=NullSink(),
    )
    manager.register_strategy(quick_retry())

    await manager.handle(RecoverableError("x", handler=make_handler()), network_context())

    assert manager.get_metrics().total_attempts == 0
