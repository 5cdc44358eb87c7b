import pytest

from libs.core.extraction import extract_json


@pytest.mark.parametrize(
    "text,strategy",
    [
        ('Here you go:\n```json\n{"title": "SRE", "skills": []}\n```\nEnjoy!', "json_fence"),
        ('```\n{"title": "SRE", "skills": []}\n```', "any_fence"),
        ('{"title": "SRE", "skills": []}', "whole_text"),
        ('Sure! The guide is {"title": "SRE", "skills": []} as requested.', "outer_slice"),
    ],
)
def test_extracts_object_from_common_shapes(text, strategy):
    result = extract_json(text)
    assert result.ok
    assert result.strategy == strategy
    assert result.value == {"title": "SRE", "skills": []}


def test_extracts_top_level_array_from_prose():
    result = extract_json('Resources:\n[{"title": "A"}, {"title": "B"}]\nThat is all.')
    assert result.value == [{"title": "A"}, {"title": "B"}]


def test_json_fence_wins_over_other_blocks():
    text = '```python\nprint("x")\n```\n```JSON\n{"a": 1}\n```'
    result = extract_json(text)
    assert result.strategy == "json_fence"
    assert result.value == {"a": 1}


def test_double_encoded_json_is_unwrapped():
    result = extract_json('"{\\"a\\": 1}"')
    assert result.value == {"a": 1}


def test_scalars_are_not_structured_values():
    assert not extract_json("42").ok
    assert not extract_json('"just text"').ok


@pytest.mark.parametrize(
    "text,error",
    [
        (None, "not_text"),
        ("   ", "empty_text"),
        ("I cannot help with that.", "no_structured_value"),
        ("broken { not json ]", "no_structured_value"),
    ],
)
def test_failures_are_reported_not_raised(text, error):
    result = extract_json(text)
    assert not result.ok
    assert result.value is None
    assert result.error == error
