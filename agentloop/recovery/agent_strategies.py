"""Agent-level recovery strategies: restart, reassign, fallback model.

All three run the same pipeline against the failing error's handler:

    saveState (once, if preserve_state)
    -> core steps, e.g. restart + healthCheck
    -> restoreState (if preserve_state)

A step reporting ``success=False`` spends an attempt and the pipeline starts
over from the first core step. A step that raises ends the strategy with
that error.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from agentloop.recovery.base import RecoveryStrategy
from agentloop.recovery.policy import (
    DEFAULT_FALLBACK_MODELS,
    DEFAULT_REASSIGNMENT_RULES,
    fallback_model_for,
    parse_condition,
)
from agentloop.recovery.types import (
    AgentRecoveryConfig,
    ReassignmentRule,
    RecoveryContext,
    RecoveryResult,
    RecoveryStrategyType,
)

logger = logging.getLogger(__name__)

HIGH_LOAD_THRESHOLD = 0.8
MEMORY_PRESSURE_THRESHOLD = 0.8


class AgentPipelineStrategy(RecoveryStrategy):
    """Template for the agent strategies. Subclasses define ``steps``."""

    steps: tuple[str, ...] = ()
    # Step whose handler metadata may fill in the decision the strategy could not make
    finder_step: str | None = None
    decision_key: str | None = None

    def __init__(
        self,
        config: AgentRecoveryConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(config or AgentRecoveryConfig(), clock)

    def plan(self, context: RecoveryContext) -> dict[str, Any]:
        """Decisions passed to every step as ``details``."""
        return {}

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        config: AgentRecoveryConfig = self.config
        started = self.begin(context)
        details = self.plan(context)

        try:
            state_saved = False
            if config.preserve_state:
                saved = await self.call_handler(context, "saveState", details)
                state_saved = saved.success
                if not state_saved:
                    logger.warning("%s: could not save agent state", self.name)

            for attempt in range(1, context.max_attempts + 1):
                context.attempt_count = attempt
                context.last_attempt_time = time.time()
                failed_step = await self._run_steps(context, details)
                if failed_step is None and state_saved:
                    restored = await self.call_handler(context, "restoreState", details)
                    if not restored.success:
                        failed_step = "restoreState"
                if failed_step is None:
                    logger.info("%s succeeded on attempt %d", self.name, attempt)
                    return self.result(
                        context, True, started, state_preserved=state_saved, **details
                    )
                logger.info(
                    "%s attempt %d/%d failed at %s",
                    self.name,
                    attempt,
                    context.max_attempts,
                    failed_step,
                )
        except Exception as e:
            logger.warning("%s aborted: %s", self.name, e)
            return self.result(context, False, started, error=e, reason=str(e), **details)

        return self.result(
            context, False, started, reason=f"{self.name} attempts exhausted", **details
        )

    async def _run_steps(self, context: RecoveryContext, details: dict[str, Any]) -> str | None:
        """Run the core steps; return the name of the first failing step."""
        for step in self.steps:
            outcome = await self.call_handler(context, step, details)
            if not outcome.success:
                return step
            if step == self.finder_step and details.get(self.decision_key) is None:
                details[self.decision_key] = outcome.metadata.get(self.decision_key)
                if details[self.decision_key] is None:
                    return step
        return None


class AgentRestartStrategy(AgentPipelineStrategy):
    strategy_type = RecoveryStrategyType.AGENT_RESTART
    steps = ("restart", "healthCheck")


class AgentReassignStrategy(AgentPipelineStrategy):
    """Routes the work to another agent type chosen by priority-ordered rules.

    Built-in rule conditions: ``HIGH_LOAD`` (cpu above 0.8),
    ``MEMORY_PRESSURE`` (memory above 0.8) and ``SPECIALIZED_TASK`` (the
    error context metadata has ``specialized_task`` set). Any other condition
    is parsed as a resource predicate such as ``"CPU_USAGE > 0.5"``.
    """

    strategy_type = RecoveryStrategyType.AGENT_REASSIGN
    steps = ("findTargetAgent", "prepareReassignment", "reassign", "verifyReassignment")
    finder_step = "findTargetAgent"
    decision_key = "target_agent_type"

    def __init__(
        self,
        config: AgentRecoveryConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = config or AgentRecoveryConfig()
        if not config.reassignment_rules:
            config.reassignment_rules = list(DEFAULT_REASSIGNMENT_RULES)
        super().__init__(config, clock)

    def plan(self, context: RecoveryContext) -> dict[str, Any]:
        return {"target_agent_type": self.select_target(context)}

    def select_target(self, context: RecoveryContext) -> str | None:
        rules = sorted(self.config.reassignment_rules, key=lambda r: r.priority)
        for rule in rules:
            if self._rule_matches(rule, context):
                return rule.target_agent_type
        return None

    @staticmethod
    def _rule_matches(rule: ReassignmentRule, context: RecoveryContext) -> bool:
        usage = context.resource_usage
        if rule.condition == "HIGH_LOAD":
            return usage.cpu > HIGH_LOAD_THRESHOLD
        if rule.condition == "MEMORY_PRESSURE":
            return usage.memory > MEMORY_PRESSURE_THRESHOLD
        if rule.condition == "SPECIALIZED_TASK":
            return bool(context.error_context.metadata.get("specialized_task"))
        try:
            return parse_condition(rule.condition).holds(usage)
        except ValueError:
            logger.warning("Ignoring unknown reassignment condition %s", rule.condition)
            return False


class AgentFallbackModelStrategy(AgentPipelineStrategy):
    """Switches the agent to a cheaper/faster sibling of its current model.

    The current model comes from ``error_context.metadata["model"]``.
    """

    strategy_type = RecoveryStrategyType.AGENT_FALLBACK_MODEL
    steps = ("findFallbackModel", "prepareModelSwitch", "switchModel", "verifyModelSwitch")
    finder_step = "findFallbackModel"
    decision_key = "fallback_model"

    def __init__(
        self,
        config: AgentRecoveryConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = config or AgentRecoveryConfig()
        if not config.fallback_models:
            config.fallback_models = dict(DEFAULT_FALLBACK_MODELS)
        super().__init__(config, clock)

    def plan(self, context: RecoveryContext) -> dict[str, Any]:
        model = context.error_context.metadata.get("model")
        fallback = fallback_model_for(model, self.config.fallback_models) if model else None
        return {"model": model, "fallback_model": fallback}
