"""Recovery policy: degradation levels, reassignment rules, fallback models.

The built-in defaults can be overridden from a YAML file:

    degradation_levels:
      - level: 1
        conditions: ["ERROR_RATE > 0.1", "RESPONSE_TIME > 1.0"]
        actions: [DISABLE_NON_CRITICAL_FEATURES]
    reassignment_rules:
      - {condition: HIGH_LOAD, target_agent_type: LOAD_BALANCED, priority: 1}
    fallback_models:
      gpt-4o: gpt-4o-mini

Keys that are absent keep their defaults.
"""

from __future__ import annotations

import logging
import operator
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable

import yaml

from agentloop.recovery.types import DegradationLevel, ReassignmentRule, ResourceUsage

logger = logging.getLogger(__name__)

DEFAULT_DEGRADATION_LEVELS = [
    DegradationLevel(
        level=1,
        conditions=["ERROR_RATE > 0.1", "RESPONSE_TIME > 1.0"],
        actions=["DISABLE_NON_CRITICAL_FEATURES", "INCREASE_CACHING"],
    ),
    DegradationLevel(
        level=2,
        conditions=["ERROR_RATE > 0.3", "MEMORY_USAGE > 0.8"],
        actions=["DISABLE_COMPLEX_OPERATIONS", "REDUCE_BATCH_SIZE"],
    ),
    DegradationLevel(
        level=3,
        conditions=["ERROR_RATE > 0.5", "CPU_USAGE > 0.9"],
        actions=["ENABLE_EMERGENCY_MODE", "REJECT_NON_CRITICAL_REQUESTS"],
    ),
]

DEFAULT_REASSIGNMENT_RULES = [
    ReassignmentRule("HIGH_LOAD", "LOAD_BALANCED", 1),
    ReassignmentRule("MEMORY_PRESSURE", "MEMORY_OPTIMIZED", 2),
    ReassignmentRule("SPECIALIZED_TASK", "SPECIALIZED", 3),
]

DEFAULT_FALLBACK_MODELS = {
    "gpt-4": "gpt-3.5-turbo",
    "gpt-4o": "gpt-4o-mini",
    "claude-2": "claude-instant",
    "mistral-medium": "mistral-small",
    "gemini-pro-vision": "gemini-pro",
}

# Condition metric name -> ResourceUsage attribute
CONDITION_METRICS = {
    "ERROR_RATE": "error_rate",
    "RESPONSE_TIME": "response_time",
    "CPU_USAGE": "cpu",
    "MEMORY_USAGE": "memory",
    "IO_USAGE": "io",
    "NETWORK_LATENCY": "network_latency",
}

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    ">": operator.gt,
    "<": operator.lt,
}

_CONDITION_RE = re.compile(r"^\s*([A-Z_]+)\s*(>=|<=|==|>|<)\s*(-?\d+(?:\.\d+)?)\s*$")


@dataclass(frozen=True)
class Condition:
    metric: str
    op: str
    threshold: float

    def holds(self, usage: ResourceUsage) -> bool:
        value = getattr(usage, CONDITION_METRICS[self.metric])
        return _OPERATORS[self.op](float(value), self.threshold)


def parse_condition(text: str) -> Condition:
    """Parse ``"CPU_USAGE > 0.9"`` into a Condition.

    Raises:
        ValueError: Unknown metric or malformed expression

    """
    match = _CONDITION_RE.match(text)
    if not match:
        raise ValueError(f"Malformed condition: {text!r}")
    metric, op, threshold = match.groups()
    if metric not in CONDITION_METRICS:
        raise ValueError(f"Unknown condition metric {metric!r} in {text!r}")
    return Condition(metric, op, float(threshold))


def fallback_model_for(model: str, table: dict[str, str]) -> str | None:
    """Look up a fallback by full name, then by the id after the last '/'."""
    if model in table:
        return table[model]
    return table.get(model.rsplit("/", 1)[-1])


def default_degradation_levels() -> list[DegradationLevel]:
    """Fresh copies of the built-in levels, safe to mutate."""
    return [
        DegradationLevel(lvl.level, list(lvl.conditions), list(lvl.actions))
        for lvl in DEFAULT_DEGRADATION_LEVELS
    ]


@dataclass
class RecoveryPolicy:
    degradation_levels: list[DegradationLevel] = field(default_factory=default_degradation_levels)
    reassignment_rules: list[ReassignmentRule] = field(
        default_factory=lambda: [
            ReassignmentRule(r.condition, r.target_agent_type, r.priority)
            for r in DEFAULT_REASSIGNMENT_RULES
        ]
    )
    fallback_models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FALLBACK_MODELS))


def _require(cond: bool, key: str, problem: str) -> None:
    if not cond:
        raise ValueError(f"Invalid recovery policy '{key}': {problem}")


def _parse_levels(raw: Any) -> list[DegradationLevel]:
    _require(isinstance(raw, list), "degradation_levels", "expected a list")
    levels = []
    for item in raw:
        _require(isinstance(item, dict), "degradation_levels", "each entry must be a mapping")
        _require(isinstance(item.get("level"), int), "degradation_levels", "level must be an int")
        conditions = item.get("conditions", [])
        actions = item.get("actions", [])
        _require(isinstance(conditions, list), "degradation_levels", "conditions must be a list")
        _require(isinstance(actions, list), "degradation_levels", "actions must be a list")
        for cond in conditions:
            try:
                parse_condition(str(cond))
            except ValueError as e:
                raise ValueError(f"Invalid recovery policy 'degradation_levels': {e}") from e
        levels.append(
            DegradationLevel(
                level=item["level"],
                conditions=[str(c) for c in conditions],
                actions=[str(a) for a in actions],
            )
        )
    return sorted(levels, key=lambda lvl: lvl.level)


def _parse_rules(raw: Any) -> list[ReassignmentRule]:
    _require(isinstance(raw, list), "reassignment_rules", "expected a list")
    rules = []
    for item in raw:
        _require(isinstance(item, dict), "reassignment_rules", "each entry must be a mapping")
        _require(
            "condition" in item and "target_agent_type" in item,
            "reassignment_rules",
            "condition and target_agent_type are required",
        )
        rules.append(
            ReassignmentRule(
                condition=str(item["condition"]),
                target_agent_type=str(item["target_agent_type"]),
                priority=int(item.get("priority", len(rules) + 1)),
            )
        )
    return rules


def load_recovery_policy(path: str) -> RecoveryPolicy:
    """Load a recovery policy YAML file.

    Raises:
        FileNotFoundError: The file does not exist
        ValueError: Malformed YAML or a key with the wrong shape

    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Recovery policy not found: {path}")

    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid recovery policy YAML in {path}: {e}") from e

    _require(isinstance(data, dict), "<root>", "expected a mapping")
    policy = RecoveryPolicy()

    if "degradation_levels" in data:
        policy.degradation_levels = _parse_levels(data["degradation_levels"])
    if "reassignment_rules" in data:
        policy.reassignment_rules = _parse_rules(data["reassignment_rules"])
    if "fallback_models" in data:
        raw = data["fallback_models"]
        _require(isinstance(raw, dict), "fallback_models", "expected a mapping")
        policy.fallback_models = {str(k): str(v) for k, v in raw.items()}

    logger.info(
        "Loaded recovery policy from %s (%d levels, %d rules, %d fallback models)",
        path,
        len(policy.degradation_levels),
        len(policy.reassignment_rules),
        len(policy.fallback_models),
    )
    return policy
