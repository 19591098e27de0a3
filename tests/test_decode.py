from __future__ import annotations

from editcrew.orchestration.decode import ContractSchema, Parsed, ParseFailure, decode_json, extract_first_json_object

SCHEMA = ContractSchema(
    required_fields={"changes": list},
    optional_fields={"summary": (str, ""), "notes": (list, list)},
)


def test_strict_json_decodes_first():
    result = decode_json('{"changes": [], "summary": "ok"}', SCHEMA)
    assert isinstance(result, Parsed)
    assert result.stage == "strict"
    assert result.data["summary"] == "ok"


def test_json_embedded_in_prose_is_extracted():
    raw = 'Here you go:\n{"changes": [{"file_name": "a.css"}], "text": "brace } in string"}\nThanks!'
    result = decode_json(raw, SCHEMA)
    assert isinstance(result, Parsed)
    assert result.stage == "extracted"
    assert result.data["changes"][0]["file_name"] == "a.css"


def test_optional_defaults_are_fresh_per_decode():
    first = decode_json('{"changes": []}', SCHEMA)
    second = decode_json('{"changes": []}', SCHEMA)
    assert isinstance(first, Parsed) and isinstance(second, Parsed)
    first.data["notes"].append("x")
    assert second.data["notes"] == []
    assert first.data["summary"] == ""


def test_missing_required_field_is_a_failure():
    result = decode_json('{"summary": "no changes key"}', SCHEMA)
    assert isinstance(result, ParseFailure)
    assert "changes" in result.message
    assert result.kind == "PARSE_ERROR"


def test_wrong_type_is_a_failure():
    result = decode_json('{"changes": "not a list"}', SCHEMA)
    assert isinstance(result, ParseFailure)


def test_empty_and_non_json_responses_fail():
    assert isinstance(decode_json(""), ParseFailure)
    failure = decode_json("I could not find anything to change.")
    assert isinstance(failure, ParseFailure)
    assert failure.raw == "I could not find anything to change."


def test_top_level_array_is_rejected():
    assert isinstance(decode_json("[1, 2, 3]"), ParseFailure)


def test_extract_first_json_object_returns_trailing_prose():
    json_text, rest = extract_first_json_object('prefix {"a": {"b": 1}} suffix')
    assert json_text == '{"a": {"b": 1}}'
    assert rest == "suffix"
