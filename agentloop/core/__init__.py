"""Agent execution loop: state, parsing, classification, tools, LM client."""

from agentloop.core.classifier import classify
from agentloop.core.llm import LLMClient, LLMResponse, PydanticAIClient
from agentloop.core.loop import AgentLoopController, LLMRetryHandler
from agentloop.core.parser import OutputParser
from agentloop.core.state import (
    ActionKind,
    AgentProfile,
    HistoryMessage,
    IterationState,
    LoopConfig,
    LoopResult,
    LoopStatus,
    ParsedOutput,
    Task,
)
from agentloop.core.templates import FeedbackTemplates
from agentloop.core.tools import FunctionTool, Tool, ToolRegistry, invoke_tool

__all__ = [
    "AgentLoopController",
    "LLMRetryHandler",
    "LLMClient",
    "LLMResponse",
    "PydanticAIClient",
    "OutputParser",
    "classify",
    "ActionKind",
    "AgentProfile",
    "HistoryMessage",
    "IterationState",
    "LoopConfig",
    "LoopResult",
    "LoopStatus",
    "ParsedOutput",
    "Task",
    "FeedbackTemplates",
    "FunctionTool",
    "Tool",
    "ToolRegistry",
    "invoke_tool",
]
