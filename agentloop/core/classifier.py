"""Map a parsed LM turn to the action the loop takes."""

from __future__ import annotations

from agentloop.core.state import SELF_QUESTION_ACTION, ActionKind, ParsedOutput, is_present


def classify(parsed: ParsedOutput | None) -> ActionKind:
    """Classify one turn. Pure and total; the first matching rule wins:

    1. no parse                      -> ISSUES_PARSING_OUTPUT
    2. final answer present          -> FINAL_ANSWER
    3. action "self_question"        -> THOUGHT with a thought, else SELF_QUESTION
    4. any other action              -> EXECUTING_ACTION
    5. observation present           -> OBSERVATION
    6. anything else                 -> WEIRD_OUTPUT
    """
    if parsed is None:
        return ActionKind.ISSUES_PARSING_OUTPUT
    if is_present(parsed.final_answer):
        return ActionKind.FINAL_ANSWER
    if parsed.action == SELF_QUESTION_ACTION:
        return ActionKind.THOUGHT if is_present(parsed.thought) else ActionKind.SELF_QUESTION
    if is_present(parsed.action):
        return ActionKind.EXECUTING_ACTION
    if is_present(parsed.observation):
        return ActionKind.OBSERVATION
    return ActionKind.WEIRD_OUTPUT
