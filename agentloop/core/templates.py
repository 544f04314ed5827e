"""Feedback templates: the human-turn messages the loop sends back to the LM.

Every renderer is a pure function of its arguments. Wording can be replaced
per kind by passing ``overrides`` (kind name -> ``str.format`` template).
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

from agentloop.core.state import AgentProfile, Task

SYSTEM_MESSAGE = """\
You are {name}.

Your role: {role}.
Your background: {background}.
Your main goal: {goal}.

Tools available to you:

{tools}

You ONLY have access to the tools above. Never invent tools that are not listed.

Reply with exactly one JSON object, in one of these shapes:

1. Thought + Action (or self question):
{{"thought": "what to do next", "action": "tool name or self_question", "actionInput": {{}}}}

2. Observation:
{{"observation": "what the last result tells you", "isFinalAnswerReady": false}}

3. Final answer (expected output: {expected_output}):
{{"finalAnswer": "the final answer to the task"}}

Return only the JSON object, no comments or markdown."""

DEFAULT_TEMPLATES = {
    "initial_message": (
        "Hi {name}, please complete the following task: {description}.\n"
        'Your expected output should be: "{expected_output}".{context}'
    ),
    "invalid_json": (
        "You returned an invalid JSON object. Reply with a single valid JSON object "
        'and nothing else, e.g. {{"finalAnswer": "The final answer"}}'
    ),
    "thought_with_self_question": (
        'Interesting thought: "{thought}". Now answer your question: {question}. '
        "Keep using the JSON format."
    ),
    "thought": 'Your reasoning is clear: "{thought}". Continue with your next step in JSON.',
    "self_question": "Good question. Please answer it: {question}. Reply in JSON.",
    "tool_result": (
        "You got this result from the tool: {result}. What do you make of it? "
        "Reply in JSON."
    ),
    "tool_error": (
        "An error occurred while using the tool {tool_name}: {error}. "
        "Try a different approach or tool. Reply in JSON."
    ),
    "tool_not_exist": (
        'The tool "{tool_name}" is not available to you. Choose one of the tools '
        "listed in your instructions and reply with your new approach in JSON."
    ),
    "observation": "Good observation. What is your next step? Reply in JSON.",
    "weird_output": (
        "Your response format was incorrect. Reply with a valid JSON object following "
        "the format in your instructions."
    ),
    "force_final_answer": (
        "You have used {iterations} of {max_iterations} allowed iterations. "
        "Provide your final answer now using the finalAnswer JSON format."
    ),
}


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


class FeedbackTemplates:
    """Renders one message per feedback kind."""

    def __init__(self, overrides: Mapping[str, str] | None = None, system: str | None = None):
        unknown = set(overrides or {}) - set(DEFAULT_TEMPLATES)
        if unknown:
            raise ValueError(f"Unknown feedback template(s): {', '.join(sorted(unknown))}")
        self._templates = {**DEFAULT_TEMPLATES, **(overrides or {})}
        self._system = system or SYSTEM_MESSAGE

    def system_message(self, profile: AgentProfile, task: Task, tools: Iterable[Any] = ()) -> str:
        lines = [f"- {t.name}: {getattr(t, 'description', '') or 'no description'}" for t in tools]
        return self._system.format(
            name=profile.name,
            role=profile.role,
            background=profile.background or "not specified",
            goal=profile.goal,
            tools="\n".join(lines) or "No tools available. Answer from your own knowledge.",
            expected_output=task.expected_output or "a concise answer",
        )

    def initial_message(self, profile: AgentProfile, task: Task) -> str:
        context = (
            f'\nUse these findings from previous tasks: "{task.context}"' if task.context else ""
        )
        return self._templates["initial_message"].format(
            name=profile.name,
            description=task.description,
            expected_output=task.expected_output or "a concise answer",
            context=context,
        )

    def invalid_json(self) -> str:
        return self._templates["invalid_json"]

    def thought_with_self_question(self, thought: str, question: Any) -> str:
        return self._templates["thought_with_self_question"].format(
            thought=thought, question=_stringify(question)
        )

    def thought(self, thought: str) -> str:
        return self._templates["thought"].format(thought=thought)

    def self_question(self, question: Any) -> str:
        return self._templates["self_question"].format(question=_stringify(question))

    def tool_result(self, result: Any) -> str:
        return self._templates["tool_result"].format(result=_stringify(result))

    def tool_error(self, tool_name: str, error: BaseException | str) -> str:
        return self._templates["tool_error"].format(tool_name=tool_name, error=str(error))

    def tool_not_exist(self, tool_name: str) -> str:
        return self._templates["tool_not_exist"].format(tool_name=tool_name)

    def observation(self, observation: str = "") -> str:
        return self._templates["observation"].format(observation=observation)

    def weird_output(self) -> str:
        return self._templates["weird_output"]

    def force_final_answer(self, iterations: int, max_iterations: int) -> str:
        return self._templates["force_final_answer"].format(
            iterations=iterations, max_iterations=max_iterations
        )
