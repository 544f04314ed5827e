"""Tests for LM output parsing."""

import pytest

from agentloop.core.parser import OutputParser, parse
from agentloop.core.state import ParsedOutput


@pytest.fixture
def parser():
    return OutputParser()


def test_strict_json(parser):
    parsed = parser.parse('{"thought": "look it up", "action": "lookupPrice", "actionInput": {"sku": "X1"}}')

    assert parsed == ParsedOutput(thought="look it up", action="lookupPrice", action_input={"sku": "X1"})


def test_fenced_json(parser):
    text = 'Sure, here you go:\n```json\n{"finalAnswer": "42"}\n```\nAnything else?'

    assert parser.parse(text).final_answer == "42"


def test_json_embedded_in_prose(parser):
    text = 'I think {"observation": "price found", "isFinalAnswerReady": true} is right.'
    parsed = parser.parse(text)

    assert parsed.observation == "price found"
    assert parsed.is_final_answer_ready is True


def test_field_extraction_from_broken_json(parser):
    text = '{"thought": "say \\"hi\\"", "action": "lookupPrice", "actionInput": {"sku": "X1"} oops'
    parsed = parser.parse(text)

    assert parsed.thought == 'say "hi"'
    assert parsed.action == "lookupPrice"
    assert parsed.action_input == {"sku": "X1"}


def test_single_quoted_action_input(parser):
    parsed = parser.parse("""{"action": "lookupPrice", "actionInput": {'sku': 'X1'} ...""")

    assert parsed.action_input == {"sku": "X1"}


@pytest.mark.parametrize("text", ["", "   ", "no json here", "[1, 2, 3]", "42", "null", "{}"])
def test_unparsable_returns_none(parser, text):
    assert parser.parse(text) is None


def test_none_input(parser):
    assert parser.parse(None) is None


def test_unknown_keys_parse_to_empty_output(parser):
    assert parser.parse('{"answer": "42"}') == ParsedOutput()


def test_snake_case_keys(parser):
    parsed = parser.parse('{"action": "lookupPrice", "action_input": {"sku": "X1"}, "final_answer": null}')

    assert parsed.action_input == {"sku": "X1"}
    assert parsed.final_answer is None


def test_non_string_final_answer_kept(parser):
    assert parser.parse('{"finalAnswer": {"price": 42}}').final_answer == {"price": 42}


def test_module_level_parse():
    assert parse('{"action": "x"}').action == "x"


def test_to_dict_round_trip():
    output = ParsedOutput(thought="t", action="a", action_input={"k": 1})

    assert output.to_dict() == {"thought": "t", "action": "a", "actionInput": {"k": 1}}
    assert ParsedOutput.from_dict(output.to_dict()) == output
