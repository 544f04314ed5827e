"""Recovery subsystem: error classification, strategies and the recovery manager."""

from agentloop.recovery.agent_strategies import (
    AgentFallbackModelStrategy,
    AgentReassignStrategy,
    AgentRestartStrategy,
)
from agentloop.recovery.base import RecoveryStrategy
from agentloop.recovery.circuit_breaker import CircuitBreakerStrategy, CircuitState
from agentloop.recovery.classifier import ClassifiedError, ErrorClassifier
from agentloop.recovery.degradation import GracefulDegradationStrategy
from agentloop.recovery.errors import (
    AgenticLoopError,
    ErrorContext,
    ErrorKind,
    ErrorSeverity,
    HandlerResult,
    LLMInvocationError,
    Recoverable,
    RecoverableError,
    RecoveryHandler,
)
from agentloop.recovery.manager import RecoveryManager
from agentloop.recovery.metrics import RecoveryMetrics, StrategyMetrics, StrategyMetricsTracker
from agentloop.recovery.policy import RecoveryPolicy, load_recovery_policy
from agentloop.recovery.retry import RetryStrategy
from agentloop.recovery.types import (
    AgentRecoveryConfig,
    CircuitBreakerConfig,
    DegradationConfig,
    DegradationLevel,
    RecoveryContext,
    RecoveryEvent,
    RecoveryEventType,
    RecoveryManagerConfig,
    RecoveryPhase,
    RecoveryResult,
    RecoveryStrategyType,
    ResourceUsage,
    RetryConfig,
)

__all__ = [
    "AgentFallbackModelStrategy",
    "AgentReassignStrategy",
    "AgentRecoveryConfig",
    "AgentRestartStrategy",
    "AgenticLoopError",
    "CircuitBreakerConfig",
    "CircuitBreakerStrategy",
    "CircuitState",
    "ClassifiedError",
    "DegradationConfig",
    "DegradationLevel",
    "ErrorClassifier",
    "ErrorContext",
    "ErrorKind",
    "ErrorSeverity",
    "GracefulDegradationStrategy",
    "HandlerResult",
    "LLMInvocationError",
    "Recoverable",
    "RecoverableError",
    "RecoveryContext",
    "RecoveryEvent",
    "RecoveryEventType",
    "RecoveryHandler",
    "RecoveryManager",
    "RecoveryManagerConfig",
    "RecoveryMetrics",
    "RecoveryPhase",
    "RecoveryPolicy",
    "RecoveryResult",
    "RecoveryStrategy",
    "RecoveryStrategyType",
    "ResourceUsage",
    "RetryConfig",
    "RetryStrategy",
    "StrategyMetrics",
    "StrategyMetricsTracker",
    "load_recovery_policy",
]
