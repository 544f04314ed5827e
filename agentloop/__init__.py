"""agentloop: bounded think/act/observe agent loop with pluggable recovery.

This package features:
- AgentLoopController driving one task through LM calls, tool use and feedback
- Pure action classification and tolerant output parsing
- RecoveryManager selecting retry, circuit breaker, degradation and agent strategies
- Structured telemetry to logs, an activity file and SQLite
"""

from agentloop.config import VERSION

__all__ = ["VERSION"]
