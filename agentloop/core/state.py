"""Loop data model: statuses, action kinds, parsed output, iteration state."""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from agentloop.config import (
    FORCE_FINAL_ANSWER,
    LLM_TIMEOUT_SECONDS,
    MAX_ITERATIONS,
    TOOL_TIMEOUT_SECONDS,
)


class LoopStatus(Enum):
    STARTING = "STARTING"
    THINKING = "THINKING"
    THOUGHT = "THOUGHT"
    SELF_QUESTION = "SELF_QUESTION"
    EXECUTING_ACTION = "EXECUTING_ACTION"
    OBSERVATION = "OBSERVATION"
    FINAL_ANSWER = "FINAL_ANSWER"
    WEIRD_OUTPUT = "WEIRD_OUTPUT"
    ISSUES_PARSING_OUTPUT = "ISSUES_PARSING_OUTPUT"
    TASK_COMPLETED = "TASK_COMPLETED"
    MAX_ITERATIONS_ERROR = "MAX_ITERATIONS_ERROR"
    AGENTIC_LOOP_ERROR = "AGENTIC_LOOP_ERROR"
    TASK_ABORTED = "TASK_ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        LoopStatus.TASK_COMPLETED,
        LoopStatus.MAX_ITERATIONS_ERROR,
        LoopStatus.AGENTIC_LOOP_ERROR,
        LoopStatus.TASK_ABORTED,
    }
)


class ActionKind(Enum):
    """What the loop does with one parsed LM turn."""

    FINAL_ANSWER = "FINAL_ANSWER"
    THOUGHT = "THOUGHT"
    SELF_QUESTION = "SELF_QUESTION"
    EXECUTING_ACTION = "EXECUTING_ACTION"
    OBSERVATION = "OBSERVATION"
    WEIRD_OUTPUT = "WEIRD_OUTPUT"
    ISSUES_PARSING_OUTPUT = "ISSUES_PARSING_OUTPUT"

    @property
    def status(self) -> LoopStatus:
        return LoopStatus[self.name]


SELF_QUESTION_ACTION = "self_question"

# JSON key -> ParsedOutput field
_OUTPUT_KEYS = {
    "thought": "thought",
    "action": "action",
    "actionInput": "action_input",
    "observation": "observation",
    "isFinalAnswerReady": "is_final_answer_ready",
    "finalAnswer": "final_answer",
}


def is_present(value: Any) -> bool:
    """A field counts as present unless it is None or an empty string."""
    return value is not None and value != ""


@dataclass(frozen=True)
class ParsedOutput:
    """One LM turn, as produced by the output parser."""

    thought: str | None = None
    action: str | None = None
    action_input: Any = None
    observation: str | None = None
    is_final_answer_ready: bool | None = None
    final_answer: Any = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParsedOutput":
        """Build from parsed JSON; accepts camelCase or snake_case keys."""
        values = {}
        for key, attr in _OUTPUT_KEYS.items():
            if key in data:
                values[attr] = data[key]
            elif attr in data:
                values[attr] = data[attr]
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            key: getattr(self, attr)
            for key, attr in _OUTPUT_KEYS.items()
            if getattr(self, attr) is not None
        }


@dataclass(frozen=True)
class IterationState:
    """Per-task loop state. Each loop step returns a new value via ``advance``."""

    task_id: str
    max_iterations: int
    iteration: int = 0
    status: LoopStatus = LoopStatus.STARTING
    last_feedback_message: str = ""
    final_answer: str | None = None
    error_count: int = 0
    blocked: bool = False

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if not 0 <= self.iteration <= self.max_iterations:
            raise ValueError(
                f"iteration {self.iteration} outside [0, {self.max_iterations}]"
            )

    def advance(self, **changes: Any) -> "IterationState":
        return dataclasses.replace(self, **changes)


@dataclass
class LoopResult:
    """What ``AgentLoopController.run`` returns; exactly one of result/error is set."""

    status: LoopStatus
    result: ParsedOutput | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == LoopStatus.TASK_COMPLETED and self.error is None


@dataclass
class Task:
    description: str
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:8]}")
    expected_output: str = ""
    context: str = ""


@dataclass
class AgentProfile:
    name: str = "Agent"
    role: str = "Autonomous assistant"
    goal: str = "Complete the assigned task accurately"
    background: str = ""


@dataclass
class HistoryMessage:
    role: str  # "system" | "human" | "assistant"
    content: str


@dataclass
class LoopConfig:
    max_iterations: int = MAX_ITERATIONS
    force_final_answer: bool = FORCE_FINAL_ANSWER
    llm_timeout: float = LLM_TIMEOUT_SECONDS
    tool_timeout: float = TOOL_TIMEOUT_SECONDS
    stop_sequences: tuple[str, ...] = ()

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
