"""Recovery data model: strategy types, phases, contexts, results, configs."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentloop.recovery.errors import ErrorContext, ErrorKind, ErrorSeverity


class RecoveryStrategyType(Enum):
    RETRY = "RETRY"
    CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
    GRACEFUL_DEGRADATION = "GRACEFUL_DEGRADATION"
    AGENT_RESTART = "AGENT_RESTART"
    AGENT_REASSIGN = "AGENT_REASSIGN"
    AGENT_FALLBACK_MODEL = "AGENT_FALLBACK_MODEL"


class RecoveryPhase(Enum):
    INITIATED = "INITIATED"
    EXECUTING = "EXECUTING"
    VALIDATING = "VALIDATING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"


class RecoveryEventType(Enum):
    RECOVERY_INITIATED = "RECOVERY_INITIATED"
    RECOVERY_SUCCEEDED = "RECOVERY_SUCCEEDED"
    RECOVERY_FAILED = "RECOVERY_FAILED"
    RECOVERY_ABANDONED = "RECOVERY_ABANDONED"
    METRICS_UPDATED = "METRICS_UPDATED"


@dataclass
class ResourceUsage:
    """Point-in-time resource snapshot.

    Attributes:
        cpu: System-wide cpu utilisation as a fraction (1.0 = fully busy)
        memory: Used memory as a fraction of total
        memory_bytes: Resident memory of this process in bytes
        io: Disk throughput in bytes per second
        network_latency: Last observed network latency in seconds
        error_rate: Fraction of failed recoveries
        response_time: Average recovery time in seconds

    """

    cpu: float = 0.0
    memory: float = 0.0
    memory_bytes: int = 0
    io: float = 0.0
    network_latency: float = 0.0
    error_rate: float = 0.0
    response_time: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "cpu": self.cpu,
            "memory": self.memory,
            "memory_bytes": self.memory_bytes,
            "io": self.io,
            "network_latency": self.network_latency,
            "error_rate": self.error_rate,
            "response_time": self.response_time,
        }


@dataclass
class RecoveryContext:
    """One recovery attempt, created by the manager per failure."""

    error: BaseException
    error_context: ErrorContext
    strategy_type: RecoveryStrategyType
    max_attempts: int
    timeout: float
    id: str = field(default_factory=lambda: f"recovery_{uuid.uuid4().hex[:12]}")
    phase: RecoveryPhase = RecoveryPhase.INITIATED
    start_time: float = field(default_factory=time.time)
    last_attempt_time: float | None = None
    attempt_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def resource_usage(self) -> ResourceUsage:
        usage = self.metadata.get("resource_usage")
        return usage if isinstance(usage, ResourceUsage) else ResourceUsage()


@dataclass
class RecoveryResult:
    """Outcome of one strategy execution."""

    successful: bool
    context: RecoveryContext | None
    duration: float = 0.0
    error: BaseException | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def attempts(self) -> int:
        return self.context.attempt_count if self.context else 0

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict summary used in loop metadata and telemetry."""
        return {
            "successful": self.successful,
            "strategy": self.context.strategy_type.value if self.context else None,
            "attempts": self.attempts,
            "duration": round(self.duration, 4),
            "error": str(self.error) if self.error else None,
            "metadata": {k: v for k, v in self.metadata.items() if k != "response"},
        }


@dataclass
class RecoveryEvent:
    type: RecoveryEventType
    context: RecoveryContext | None = None
    result: RecoveryResult | None = None
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)


# ============ Strategy configuration ============


@dataclass
class StrategyConfig:
    """Settings shared by every strategy.

    An empty ``applicable_errors`` set accepts any error kind.
    """

    enabled: bool = True
    max_attempts: int = 3
    timeout: float = 5.0
    applicable_errors: set[ErrorKind] = field(default_factory=set)
    applicable_severities: set[ErrorSeverity] = field(
        default_factory=lambda: {ErrorSeverity.WARNING, ErrorSeverity.ERROR}
    )


@dataclass
class RetryConfig(StrategyConfig):
    initial_delay: float = 1.0
    max_delay: float = 10.0
    exponential_backoff: bool = True


@dataclass
class CircuitBreakerConfig(StrategyConfig):
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_requests: int = 1
    applicable_severities: set[ErrorSeverity] = field(
        default_factory=lambda: {ErrorSeverity.ERROR, ErrorSeverity.CRITICAL}
    )


@dataclass
class DegradationLevel:
    """One degradation tier.

    ``conditions`` are predicates like ``"CPU_USAGE > 0.9"``; ``actions`` are
    names of registered degradation actions.
    """

    level: int
    conditions: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)


@dataclass
class DegradationConfig(StrategyConfig):
    degradation_levels: list[DegradationLevel] = field(default_factory=list)
    applicable_severities: set[ErrorSeverity] = field(
        default_factory=lambda: {
            ErrorSeverity.WARNING,
            ErrorSeverity.ERROR,
            ErrorSeverity.CRITICAL,
        }
    )


@dataclass
class ReassignmentRule:
    condition: str
    target_agent_type: str
    priority: int


@dataclass
class AgentRecoveryConfig(StrategyConfig):
    preserve_state: bool = True
    fallback_models: dict[str, str] = field(default_factory=dict)
    reassignment_rules: list[ReassignmentRule] = field(default_factory=list)


@dataclass
class RecoveryManagerConfig:
    """Manager-wide settings; ``global_*`` values cap every strategy."""

    enabled: bool = True
    global_max_attempts: int = 3
    global_timeout: float = 30.0
    metrics_enabled: bool = True
    validate_after_recovery: bool = True
