"""Error kinds, error context and the recoverable-error capability.

A failure reaches the recovery manager as an exception plus an
``ErrorContext``. Exceptions that can be recovered implement ``Recoverable``
and expose a ``RecoveryHandler``, which strategies drive with named
operations ("restart", "healthCheck", "switchModel", ...).
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Mapping


class ErrorKind(Enum):
    """Classification of failures for strategy selection."""

    RECOVERABLE = auto()  # Can retry with adjusted approach
    CONTEXT_OVERFLOW = auto()  # Context window exceeded
    RATE_LIMIT = auto()  # Need to wait before retry
    USAGE_LIMIT = auto()  # Account/quota limit
    AUTH_ERROR = auto()  # Authentication error
    FATAL = auto()  # Provider-side failure
    NETWORK_ERROR = auto()  # Network issues
    TIMEOUT = auto()  # Request timeout
    TOOL_ERROR = auto()  # Tool raised
    PARSE_ERROR = auto()  # LM output not parseable
    LOOP_ERROR = auto()  # Unexpected error inside the loop
    UNKNOWN = auto()


class ErrorSeverity(Enum):
    INFO = auto()
    WARNING = auto()
    ERROR = auto()
    CRITICAL = auto()


@dataclass
class ErrorContext:
    """Where and how an error happened.

    Attributes:
        component: Component that failed (e.g. "AgentLoopController")
        operation: Operation that failed (e.g. "invoke_llm")
        kind: Classified error kind
        severity: Classified severity
        recoverable: Whether recovery makes sense at all
        retry_count: Retries already spent by the caller
        failure_reason: Short human-readable reason
        metadata: Extra facts (task id, model name, ...)

    """

    component: str
    operation: str
    kind: ErrorKind = ErrorKind.UNKNOWN
    severity: ErrorSeverity = ErrorSeverity.ERROR
    recoverable: bool = True
    retry_count: int = 0
    failure_reason: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class HandlerResult:
    """Outcome of one recovery-handler operation."""

    success: bool
    strategy: str = ""
    attempts: int = 1
    duration: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


class RecoveryHandler(abc.ABC):
    """Performs the concrete recovery operations for one failing error."""

    @abc.abstractmethod
    def can_handle(self, error: BaseException) -> bool: ...

    @abc.abstractmethod
    async def handle(
        self,
        error: BaseException,
        operation: str,
        details: Mapping[str, Any] | None = None,
    ) -> HandlerResult:
        """Run the named operation.

        Args:
            error: The error being recovered
            operation: Label "<component>:<step>" or just "<component>"
            details: Strategy decisions for the step (fallback model, target agent type)

        """


class Recoverable(abc.ABC):
    """Capability implemented by errors that carry a recovery handler."""

    @property
    @abc.abstractmethod
    def recovery_handler(self) -> RecoveryHandler: ...


class RecoverableError(Recoverable, Exception):
    """Exception carrying its own recovery handler and the underlying cause."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        handler: RecoveryHandler | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self._handler = handler
        if cause is not None:
            self.__cause__ = cause

    @property
    def recovery_handler(self) -> RecoveryHandler | None:
        return self._handler


class LLMInvocationError(RecoverableError):
    """The language-model call failed (network, timeout, auth, provider error)."""


class AgenticLoopError(RecoverableError):
    """Any other unexpected failure inside the agent loop."""


def has_recovery_handler(error: BaseException) -> bool:
    """True if ``error`` implements Recoverable with a handler that accepts it."""
    if not isinstance(error, Recoverable):
        return False
    handler = error.recovery_handler
    return handler is not None and handler.can_handle(error)
