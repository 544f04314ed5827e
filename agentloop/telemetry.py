"""Structured telemetry events for the loop and the recovery subsystem.

Sinks are fire-and-forget: ``emit`` never blocks on I/O and never raises into
the caller. Components receive a sink through their constructor; the default
is a ``LoggingTelemetrySink``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass
class TelemetryEvent:
    """One structured log/metric event.

    Attributes:
        component: Emitting component (e.g. "AgentLoopController")
        operation: Operation within the component (e.g. "tool_result")
        level: Log level name ("debug", "info", "warning", "error", "critical")
        message: Human-readable summary
        metadata: Additional structured facts
        timestamp: Unix time of the event

    """

    component: str
    operation: str
    level: str = "info"
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def log_level(self) -> int:
        return _LEVELS.get(self.level.lower(), logging.INFO)

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "operation": self.operation,
            "level": self.level,
            "message": self.message,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp,
        }


@runtime_checkable
class TelemetrySink(Protocol):
    """Accepts telemetry events. Must not block and must not mutate caller state."""

    def emit(self, event: TelemetryEvent) -> None: ...


class NullSink:
    """Discards every event."""

    def emit(self, event: TelemetryEvent) -> None:
        return None


class LoggingTelemetrySink:
    """Forwards events to the standard logging module."""

    def __init__(self, logger_name: str = "agentloop.telemetry"):
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: TelemetryEvent) -> None:
        self._logger.log(
            event.log_level,
            "%s.%s: %s",
            event.component,
            event.operation,
            event.message,
        )


class MultiSink:
    """Fans an event out to several sinks.

    A failing sink is logged and skipped so one broken sink cannot starve
    the others or reach the emitting component.
    """

    def __init__(self, sinks: Iterable[TelemetrySink]):
        self.sinks = list(sinks)

    def emit(self, event: TelemetryEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning("Telemetry sink %s failed: %s", type(sink).__name__, e)


def safe_emit(sink: TelemetrySink | None, event: TelemetryEvent) -> None:
    """Emit through ``sink`` swallowing sink errors (telemetry never breaks callers)."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        logger.warning("Telemetry sink %s failed: %s", type(sink).__name__, e)
