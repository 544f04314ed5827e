"""Tools the agent can call, and the invocation step of the loop.

A tool failure never reaches the loop: ``invoke_tool`` turns results and
errors alike into the next feedback message.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Protocol, runtime_checkable

from agentloop.activity_log import ToolCallLogger
from agentloop.core.templates import FeedbackTemplates
from agentloop.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

BLOCK_TASK_ACTION = "BLOCK_TASK"


@runtime_checkable
class Tool(Protocol):
    name: str
    description: str

    async def call(self, input_json: str) -> Any: ...


class FunctionTool:
    """Wraps a plain (sync or async) function as a Tool.

    The JSON input is decoded and passed as keyword arguments when it is an
    object, as a single positional argument otherwise.

    Example:
        async def lookup_price(sku: str) -> str:
            return "42.00"

        registry.register(FunctionTool("lookupPrice", lookup_price, "Price for a SKU"))
    """

    def __init__(self, name: str, func: Callable[..., Any], description: str = ""):
        self.name = name
        self.func = func
        self.description = description or (inspect.getdoc(func) or "").split("\n")[0]

    async def call(self, input_json: str) -> Any:
        payload = json.loads(input_json) if input_json else {}
        if isinstance(payload, dict):
            result = self.func(**payload)
        else:
            result = self.func(payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionTool({self.name!r})"


class ToolRegistry:
    """Tools by exact (case-sensitive) name."""

    def __init__(self, tools: Any = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing already registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: Any) -> Tool | None:
        if not isinstance(name, str):
            return None
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)


@dataclass
class ToolOutcome:
    """Result of one tool invocation as seen by the loop."""

    feedback: str
    result: Any = None
    error: str | None = None
    blocked_reason: str | None = None


def _block_reason(result: Any) -> str | None:
    if isinstance(result, Mapping) and result.get("action") == BLOCK_TASK_ACTION:
        return str(result.get("reason") or "Task blocked by tool")
    return None


async def invoke_tool(
    tool: Tool,
    action_input: Any,
    templates: FeedbackTemplates,
    sink: TelemetrySink | None = None,
    timeout: float | None = None,
    **metadata: Any,
) -> ToolOutcome:
    """Call ``tool`` and render the feedback for the next turn.

    Raises only ``asyncio.CancelledError``.
    """
    input_json = json.dumps(action_input if action_input is not None else {}, default=str)

    try:
        with ToolCallLogger(sink, tool.name, input_json, **metadata) as call:
            if timeout:
                try:
                    result = await asyncio.wait_for(tool.call(input_json), timeout)
                except asyncio.TimeoutError as e:
                    raise TimeoutError(f"Tool {tool.name} timed out after {timeout:.0f}s") from e
            else:
                result = await tool.call(input_json)
            rendered = result if isinstance(result, str) else json.dumps(result, default=str)
            call.log_result(rendered)
    except Exception as e:
        logger.warning("Tool %s failed: %s", tool.name, e)
        return ToolOutcome(feedback=templates.tool_error(tool.name, e), error=str(e))

    reason = _block_reason(result)
    if reason is not None:
        logger.info("Tool %s blocked the task: %s", tool.name, reason)
        return ToolOutcome(feedback=reason, result=result, blocked_reason=reason)
    return ToolOutcome(feedback=templates.tool_result(result), result=result)
