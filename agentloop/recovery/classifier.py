"""Error classification for recovery strategy selection.

Classifies errors into kinds and severities:
- CONTEXT_OVERFLOW, RATE_LIMIT, NETWORK_ERROR, TIMEOUT: recoverable
- USAGE_LIMIT, AUTH_ERROR, FATAL: critical, not recoverable by retrying
- anything else: RECOVERABLE
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from agentloop.recovery.errors import ErrorContext, ErrorKind, ErrorSeverity

logger = logging.getLogger(__name__)

_CRITICAL_KINDS = {ErrorKind.AUTH_ERROR, ErrorKind.USAGE_LIMIT, ErrorKind.FATAL}


@dataclass
class ClassifiedError:
    """Classified error with metadata for recovery decisions.

    Attributes:
        kind: Classification of the error
        severity: Severity used for strategy applicability
        original_error: The original exception
        message: Error message
        recoverable: Whether recovery makes sense
        metadata: Additional context (e.g., wait time for rate limits)

    """

    kind: ErrorKind
    severity: ErrorSeverity
    original_error: BaseException
    message: str
    recoverable: bool
    metadata: dict[str, Any] = field(default_factory=dict)


class ErrorClassifier:
    """Classifies errors by exception type and message patterns.

    Example:
        classifier = ErrorClassifier()
        context = classifier.build_context(err, "AgentLoopController", "invoke_llm")
        if context.kind == ErrorKind.RATE_LIMIT:
            ...

    """

    # Error message patterns for classification
    CONTEXT_OVERFLOW_PATTERNS = [
        r"context.*too.*long",
        r"context.*length.*exceed",
        r"token.*limit.*exceed",
        r"max.*context.*length",
        r"context.*window.*exceeded",
        r"prompt.*too.*long",
        r"exceeds.*maximum.*tokens",
    ]

    RATE_LIMIT_PATTERNS = [
        r"rate.*limit",
        r"too.*many.*request",
        r"request.*throttl",
        r"retry.*after",
        r"\b429\b",
        r"requests.*per.*minute",
    ]

    USAGE_LIMIT_PATTERNS = [
        r"usage.*limit.*exceed",
        r"quota.*exceed",
        r"insufficient.*quota",
        r"billing.*limit",
        r"credit.*limit",
    ]

    AUTH_ERROR_PATTERNS = [
        r"invalid.*api.*key",
        r"authentication.*fail",
        r"unauthorized",
        r"\b401\b",
        r"\b403\b",
        r"permission.*denied",
        r"invalid.*credential",
        r"token.*expired",
    ]

    NETWORK_ERROR_PATTERNS = [
        r"connection.*refused",
        r"connection.*reset",
        r"network.*unreachable",
        r"failed.*to.*resolve",
        r"connection.*error",
        r"socket.*error",
        r"ssl.*error",
    ]

    TIMEOUT_PATTERNS = [
        r"timeout.*exceeded",
        r"request.*timeout",
        r"read.*timeout",
        r"connect.*timeout",
        r"timed.*out",
        r"deadline.*exceeded",
    ]

    FATAL_PATTERNS = [
        r"model.*not.*found",
        r"model.*unavailable",
        r"service.*unavailable",
        r"internal.*server.*error",
        r"\b50[0234]\b",
        r"bad.*gateway",
    ]

    # Checked in this order; the first match wins
    _PRIORITY = [
        ErrorKind.CONTEXT_OVERFLOW,
        ErrorKind.USAGE_LIMIT,
        ErrorKind.AUTH_ERROR,
        ErrorKind.NETWORK_ERROR,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMIT,
        ErrorKind.FATAL,
    ]

    def __init__(self):
        """Initialize classifier with compiled patterns."""
        tables = {
            ErrorKind.CONTEXT_OVERFLOW: self.CONTEXT_OVERFLOW_PATTERNS,
            ErrorKind.RATE_LIMIT: self.RATE_LIMIT_PATTERNS,
            ErrorKind.USAGE_LIMIT: self.USAGE_LIMIT_PATTERNS,
            ErrorKind.AUTH_ERROR: self.AUTH_ERROR_PATTERNS,
            ErrorKind.NETWORK_ERROR: self.NETWORK_ERROR_PATTERNS,
            ErrorKind.TIMEOUT: self.TIMEOUT_PATTERNS,
            ErrorKind.FATAL: self.FATAL_PATTERNS,
        }
        self._compiled_patterns: dict[ErrorKind, list[re.Pattern]] = {
            kind: [re.compile(p, re.IGNORECASE) for p in patterns]
            for kind, patterns in tables.items()
        }

    def classify(self, error: BaseException) -> ClassifiedError:
        """Classify an error, looking through its ``__cause__`` chain.

        Args:
            error: The exception to classify

        Returns:
            ClassifiedError with kind, severity and recoverability

        """
        kind = self._classify_kind(error)
        severity = self.severity_for(kind)
        metadata: dict[str, Any] = {}
        if kind == ErrorKind.RATE_LIMIT:
            metadata["wait_seconds"] = self._extract_wait_time(self._messages(error))
        return ClassifiedError(
            kind=kind,
            severity=severity,
            original_error=error,
            message=str(error),
            recoverable=kind not in _CRITICAL_KINDS,
            metadata=metadata,
        )

    def build_context(
        self,
        error: BaseException,
        component: str,
        operation: str,
        retry_count: int = 0,
        **metadata: Any,
    ) -> ErrorContext:
        """Classify ``error`` and wrap the result into an ErrorContext."""
        classified = self.classify(error)
        return ErrorContext(
            component=component,
            operation=operation,
            kind=classified.kind,
            severity=classified.severity,
            recoverable=classified.recoverable,
            retry_count=retry_count,
            failure_reason=classified.message,
            metadata={**classified.metadata, **metadata},
        )

    @staticmethod
    def severity_for(kind: ErrorKind) -> ErrorSeverity:
        if kind in _CRITICAL_KINDS:
            return ErrorSeverity.CRITICAL
        if kind == ErrorKind.RATE_LIMIT:
            return ErrorSeverity.WARNING
        return ErrorSeverity.ERROR

    def _classify_kind(self, error: BaseException) -> ErrorKind:
        for err in self._chain(error):
            if isinstance(err, (TimeoutError, asyncio.TimeoutError)):
                return ErrorKind.TIMEOUT
            if isinstance(err, ConnectionError):
                return ErrorKind.NETWORK_ERROR

        message = self._messages(error)
        for kind in self._PRIORITY:
            if self._matches_patterns(message, kind):
                return kind
        return ErrorKind.RECOVERABLE

    @staticmethod
    def _chain(error: BaseException) -> list[BaseException]:
        chain = []
        current: BaseException | None = error
        while current is not None and current not in chain:
            chain.append(current)
            current = current.__cause__
        return chain

    def _messages(self, error: BaseException) -> str:
        return " | ".join(str(err) for err in self._chain(error))

    def _matches_patterns(self, message: str, kind: ErrorKind) -> bool:
        patterns = self._compiled_patterns.get(kind, [])
        return any(pattern.search(message) for pattern in patterns)

    def _extract_wait_time(self, message: str) -> int:
        """Extract wait time from rate limit error message.

        Looks for patterns like "retry after 30 seconds" or "try again in 5 minutes".

        Returns:
            Wait time in seconds (default 30 if not found)

        """
        patterns = [
            r"(\d+)\s*(?:seconds?|s)\b",
            r"(\d+)\s*(?:minutes?|m)\b",
            r"(\d+)\s*(?:hours?|h)\b",
        ]

        for pattern in patterns:
            match = re.search(pattern, message, re.IGNORECASE)
            if match:
                value = int(match.group(1))
                unit = match.group(0).lower()
                if "minute" in unit or unit.endswith("m"):
                    return value * 60
                elif "hour" in unit or unit.endswith("h"):
                    return value * 3600
                return value

        return 30
