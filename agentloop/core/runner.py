'''Host-process wiring: one recovery manager per process, one loop per task.

build_recovery_manager() registers the default strategies in selection order:
Retry, CircuitBreaker, GracefulDegradation, AgentRestart, AgentReassign,
AgentFallbackModel.
'''

from __future__ import annotations

import dataclasses
import logging
from typing import Iterable

from agentloop.activity_log import ActivityLogSink
from agentloop.config import (
    RECOVERY_ENABLED,
    RECOVERY_MAX_ATTEMPTS,
    RECOVERY_POLICY_FILE,
    RECOVERY_TIMEOUT_SECONDS,
    RECOVERY_VALIDATE,
)
from agentloop.core.llm import LLMClient, PydanticAIClient
from agentloop.core.loop import AgentLoopController
from agentloop.core.state import AgentProfile, LoopConfig, LoopResult, Task
from agentloop.core.tools import Tool
from agentloop.recovery.agent_strategies import (
    AgentFallbackModelStrategy,
    AgentReassignStrategy,
    AgentRestartStrategy,
)
from agentloop.recovery.circuit_breaker import CircuitBreakerStrategy
from agentloop.recovery.degradation import GracefulDegradationStrategy
from agentloop.recovery.manager import RecoveryManager
from agentloop.recovery.policy import RecoveryPolicy, load_recovery_policy
from agentloop.recovery.retry import RetryStrategy
from agentloop.recovery.types import (
    AgentRecoveryConfig,
    DegradationConfig,
    RecoveryManagerConfig,
)
from agentloop.telemetry import LoggingTelemetrySink, MultiSink, TelemetrySink

logger = logging.getLogger(__name__)


def default_manager_config() -> RecoveryManagerConfig:
    return RecoveryManagerConfig(
        enabled=RECOVERY_ENABLED,
        global_max_attempts=RECOVERY_MAX_ATTEMPTS,
        global_timeout=RECOVERY_TIMEOUT_SECONDS,
        validate_after_recovery=RECOVERY_VALIDATE,
    )


def load_default_policy() -> RecoveryPolicy:
    """Policy from RECOVERY_POLICY_FILE if set, built-in defaults otherwise."""
    if RECOVERY_POLICY_FILE:
        return load_recovery_policy(RECOVERY_POLICY_FILE)
    return RecoveryPolicy()


def build_recovery_manager(
    config: RecoveryManagerConfig | None = None,
    policy: RecoveryPolicy | None = None,
    telemetry: TelemetrySink | None = None,
) -> RecoveryManager:
    """Build a manager with the six default strategies registered."""
    policy = policy or load_default_policy()
    manager = RecoveryManager(config=config or default_manager_config(), telemetry=telemetry)
    manager.register_strategy(RetryStrategy())
    manager.register_strategy(CircuitBreakerStrategy())
    manager.register_strategy(
        GracefulDegradationStrategy(
            DegradationConfig(degradation_levels=list(policy.degradation_levels))
        )
    )
    manager.register_strategy(AgentRestartStrategy())
    manager.register_strategy(
        AgentReassignStrategy(
            AgentRecoveryConfig(reassignment_rules=list(policy.reassignment_rules))
        )
    )
    manager.register_strategy(
        AgentFallbackModelStrategy(
            AgentRecoveryConfig(fallback_models=dict(policy.fallback_models))
        )
    )
    logger.info(
        "Recovery manager ready: %s",
        ", ".join(s.name for s in manager.strategies),
    )
    return manager


def default_telemetry() -> TelemetrySink:
    return MultiSink([LoggingTelemetrySink(), ActivityLogSink()])


async def run_task(
    description: str,
    tools: Iterable[Tool] = (),
    provider: str | None = None,
    max_iterations: int | None = None,
    client: LLMClient | None = None,
    recovery_manager: RecoveryManager | None = None,
    telemetry: TelemetrySink | None = None,
    profile: AgentProfile | None = None,
    expected_output: str = "",
) -> LoopResult:
    """Run one task to completion.

    Args:
        description: What the agent should do
        tools: Tools available to the agent
        provider: 'vllm' or 'openrouter' (default: from config)
        max_iterations: Override AGENT_MAX_ITERATIONS
        client: Pre-built LM client (default: PydanticAIClient for provider)
        recovery_manager: Shared manager (default: a new one)
        telemetry: Event sink (default: logging + activity log)
        profile: Agent persona for the system message
        expected_output: Expected output description for the prompt

    Returns:
        LoopResult with either ``result`` or ``error`` set

    """
    telemetry = telemetry or default_telemetry()
    config = LoopConfig()
    if max_iterations is not None:
        config = dataclasses.replace(config, max_iterations=max_iterations)

    controller = AgentLoopController(
        client or PydanticAIClient(provider=provider),
        tools=tools,
        recovery_manager=recovery_manager or build_recovery_manager(telemetry=telemetry),
        config=config,
        profile=profile,
        telemetry=telemetry,
    )
    task = Task(description=description, expected_output=expected_output)
    result = await controller.run(task)
    if result.error:
        logger.warning("Task %s ended with %s: %s", task.id, result.status.value, result.error)
    return result
