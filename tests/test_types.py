"""Tests for shared value types."""

import pytest
from pydantic import ValidationError

from luna.llm.types import GenerationResult, GenerationSettings, Persona, ToolCall

# -- GenerationSettings --


def test_override_wins_field_by_field():
    persona = GenerationSettings(temperature=0.3, max_tokens=200, top_p=0.9)
    request = GenerationSettings(temperature=0.8)

    merged = persona.merged_with(request)
    assert merged.temperature == 0.8
    assert merged.max_tokens == 200
    assert merged.top_p == 0.9


def test_merge_with_none_copies():
    base = GenerationSettings(temperature=0.3)
    merged = base.merged_with(None)
    assert merged == base
    assert merged is not base


def test_merge_does_not_mutate():
    base = GenerationSettings(temperature=0.3)
    base.merged_with(GenerationSettings(temperature=1.0))
    assert base.temperature == 0.3


def test_temperature_bounds():
    with pytest.raises(ValidationError):
        GenerationSettings(temperature=3.0)


# -- Persona --


def test_persona_from_row_keeps_repeat_penalty():
    persona = Persona.from_row({
        "id": "p",
        "name": "P",
        "prompt": "Be kind.",
        "temperature": 0.5,
        "max_tokens": None,
        "top_p": None,
        "repeat_penalty": 1.2,
    })
    assert persona.system_prompt == "Be kind."
    assert persona.defaults.repeat_penalty == 1.2
    assert "frequency_penalty" not in persona.defaults.model_dump()
    assert persona.defaults.max_tokens is None


# -- ToolCall --


def test_parsed_arguments():
    call = ToolCall(id="t1", name="web_search", arguments_json='{"query": "current weather"}')
    assert call.parsed_arguments() == {"query": "current weather"}


def test_parsed_arguments_empty():
    assert ToolCall(id="t1", name="x", arguments_json="").parsed_arguments() == {}


def test_parsed_arguments_rejects_non_object():
    with pytest.raises(ValueError):
        ToolCall(id="t1", name="x", arguments_json="[1, 2]").parsed_arguments()


def test_parsed_arguments_rejects_bad_json():
    with pytest.raises(ValueError):
        ToolCall(id="t1", name="x", arguments_json="{not json").parsed_arguments()


def test_has_tool_calls():
    assert not GenerationResult(reply="hi").has_tool_calls
    assert GenerationResult(reply="", tool_calls=[ToolCall("t", "x", "{}")]).has_tool_calls
