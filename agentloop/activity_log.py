"""Human-readable activity logging for loop and recovery events.

This module provides a separate log that shows what the agent loop is doing
in a format that's easy for users to understand.

Format example:
  2026-02-27 20:09:00 | 🧠 AgentLoopController.thinking: iteration 1/10
  2026-02-27 20:09:01 | 🔧 lookupPrice | {"sku": "X1"}
  2026-02-27 20:09:02 | ✅ lookupPrice → 42.00 (0.50s)
  2026-02-27 20:09:03 | 🛟 RecoveryManager.RECOVERY_SUCCEEDED: RETRY after 2 attempt(s)
"""

from __future__ import annotations

import os
import time
from datetime import datetime

from agentloop.config import ACTIVITY_LOG_FILE
from agentloop.telemetry import TelemetryEvent, TelemetrySink, safe_emit

# Truncation limits for tool input/output in telemetry
INPUT_PREVIEW_CHARS = 300
OUTPUT_PREVIEW_CHARS = 3000

_MARKERS = {
    "tool_start": "🔧",
    "tool_result": "✅",
    "tool_error": "❌",
    "tool_not_found": "❓",
    "thinking": "🧠",
    "final_answer": "🏁",
    "max_iterations": "⏱️",
    "loop_error": "💥",
}


def _timestamp() -> str:
    """Return current timestamp in readable format."""
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _truncate(text: str, max_len: int = 500) -> str:
    """Truncate text with ellipsis if too long."""
    if len(text) > max_len:
        return text[:max_len] + "…"
    return text


def _marker(event: TelemetryEvent) -> str:
    if event.component == "RecoveryManager":
        return "🛟"
    if event.level in ("error", "critical"):
        return "⚠️"
    return _MARKERS.get(event.operation, "•")


class ActivityLogSink:
    """Telemetry sink appending one readable line per event to the activity log."""

    def __init__(self, path: str = ACTIVITY_LOG_FILE):
        self.path = path
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    def emit(self, event: TelemetryEvent) -> None:
        line = (
            f"{_timestamp()} | {_marker(event)} {event.component}.{event.operation}: "
            f"{_truncate(event.message, 300)}\n"
        )
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    def tail(self, n: int = 50) -> str:
        """Get last n lines of activity log."""
        try:
            with open(self.path, encoding="utf-8") as f:
                lines = f.readlines()
        except FileNotFoundError:
            return "📝 Activity log is empty (no actions yet)"

        tail = lines[-n:] if len(lines) > n else lines
        header = f"📝 Last {len(tail)} of {len(lines)} entries:\n\n"
        return header + "".join(tail)


class ToolCallLogger:
    """Context manager emitting tool call telemetry with timing.

    Usage:
        with ToolCallLogger(sink, "lookupPrice", '{"sku": "X1"}', task_id="t1") as call:
            result = await tool.call(payload)
            call.log_result(result)
    """

    def __init__(
        self,
        sink: TelemetrySink | None,
        tool_name: str,
        tool_input: str = "",
        component: str = "ToolInvocation",
        **metadata,
    ):
        self.sink = sink
        self.tool_name = tool_name
        self.tool_input = tool_input
        self.component = component
        self.metadata = metadata
        self.start_time: float | None = None
        self.duration: float = 0.0

    def _emit(self, operation: str, level: str, message: str, **extra) -> None:
        safe_emit(
            self.sink,
            TelemetryEvent(
                component=self.component,
                operation=operation,
                level=level,
                message=message,
                metadata={
                    "tool": self.tool_name,
                    "input": _truncate(self.tool_input, INPUT_PREVIEW_CHARS),
                    **self.metadata,
                    **extra,
                },
            ),
        )

    def __enter__(self):
        self.start_time = time.monotonic()
        self._emit(
            "tool_start",
            "info",
            f"{self.tool_name} | {_truncate(self.tool_input, INPUT_PREVIEW_CHARS)}",
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.monotonic() - self.start_time
        if exc_type:
            self._emit(
                "tool_error",
                "warning",
                f"{self.tool_name} → ERROR: {_truncate(str(exc_val), OUTPUT_PREVIEW_CHARS)} "
                f"({self.duration:.2f}s)",
                error=_truncate(str(exc_val), OUTPUT_PREVIEW_CHARS),
                duration=self.duration,
            )
        return False  # Don't suppress exceptions

    def log_result(self, result: str) -> None:
        """Emit the successful result."""
        self.duration = time.monotonic() - self.start_time
        self._emit(
            "tool_result",
            "info",
            f"{self.tool_name} → {_truncate(result, OUTPUT_PREVIEW_CHARS)} ({self.duration:.2f}s)",
            output=_truncate(result, OUTPUT_PREVIEW_CHARS),
            duration=self.duration,
        )
