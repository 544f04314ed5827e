"""Parse raw LM output into a ParsedOutput.

Models do not always return clean JSON, so parsing falls back step by step:

1. the whole text as JSON
2. the body of a ```json fenced block
3. the outermost ``{...}`` span
4. per-key regex extraction of the known fields

``parse`` returns None when none of these yields a non-empty JSON object.
Objects without any known field parse fine and classify as weird output.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from agentloop.core.state import ParsedOutput

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n?```", re.DOTALL | re.IGNORECASE)

_STRING_FIELD = r'"{key}"\s*:\s*"((?:[^"\\]|\\.)*)"'
_KEY_PATTERNS = {
    "thought": re.compile(_STRING_FIELD.format(key="thought")),
    "action": re.compile(_STRING_FIELD.format(key="action")),
    "observation": re.compile(_STRING_FIELD.format(key="observation")),
    "finalAnswer": re.compile(_STRING_FIELD.format(key="finalAnswer")),
    "actionInput": re.compile(r'"actionInput"\s*:\s*(\{[^{}]*\})'),
    "isFinalAnswerReady": re.compile(r'"isFinalAnswerReady"\s*:\s*(true|false)'),
}


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return value


def _extract_fields(text: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, pattern in _KEY_PATTERNS.items():
        match = pattern.search(text)
        if not match:
            continue
        raw = match.group(1)
        if key == "actionInput":
            result[key] = _loads_object(raw) or _loads_object(raw.replace("'", '"'))
        elif key == "isFinalAnswerReady":
            result[key] = raw == "true"
        else:
            result[key] = _unescape(raw)
    return result


class OutputParser:
    """Turns raw LM text into ParsedOutput, or None on failure."""

    def parse(self, text: str | None) -> ParsedOutput | None:
        if not text or not text.strip():
            return None
        stripped = text.strip()

        # A valid JSON document that is not an object is a parse failure
        try:
            data = json.loads(stripped)
        except (json.JSONDecodeError, ValueError):
            data = self._fallback(stripped)
        else:
            if not isinstance(data, dict):
                logger.debug("LM output is JSON but not an object: %s", type(data).__name__)
                return None

        if not data:
            logger.debug("Could not parse LM output: %.200s", stripped)
            return None
        return ParsedOutput.from_dict(data)

    def _fallback(self, text: str) -> dict[str, Any] | None:
        fence = _FENCE_RE.search(text)
        if fence:
            data = _loads_object(fence.group(1).strip())
            if data is not None:
                return data

        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            data = _loads_object(text[start : end + 1])
            if data is not None:
                return data

        return _extract_fields(text) or None


_default_parser = OutputParser()


def parse(text: str | None) -> ParsedOutput | None:
    """Parse with the module-level parser."""
    return _default_parser.parse(text)
