"""
Two-stage structured-output decoding for LLM responses.

Stage one is a strict JSON decode of the whole response. Stage two
extracts the first brace-balanced JSON object from free text. Callers only
ever see ``Parsed`` or ``ParseFailure``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import PARSE_ERROR


class JsonExtractionError(ValueError):
    """Raised when no complete JSON object can be found in free text."""


@dataclass
class Parsed:
    data: dict[str, Any]
    stage: str = "strict"


@dataclass
class ParseFailure:
    message: str
    raw: str = ""
    kind: str = PARSE_ERROR


DecodeResult = Union[Parsed, ParseFailure]


@dataclass
class ContractSchema:
    required_fields: dict[str, type[Any]] = field(default_factory=dict)
    # Defaults may be callables so mutable values are never shared.
    optional_fields: dict[str, tuple[type[Any], Any]] = field(default_factory=dict)


def extract_first_json_object(raw: str) -> tuple[str, str]:
    """Return the first brace-balanced object and the prose that follows it."""
    start = raw.find("{")
    if start < 0:
        raise JsonExtractionError("No JSON object found in response")
    depth = 0
    in_string = False
    escaped = False
    end = -1
    for idx in range(start, len(raw)):
        ch = raw[idx]
        if in_string:
            if escaped:
                escaped = False
                continue
            if ch == "\\":
                escaped = True
                continue
            if ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                end = idx + 1
                break
    if end < 0:
        raise JsonExtractionError("Unterminated JSON object in response")
    return raw[start:end], raw[end:].strip()


def _matches(value: Any, expected: type[Any]) -> bool:
    if expected is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, expected)


def _validate(data: Any, schema: ContractSchema | None) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise TypeError("Top-level JSON value must be an object")
    if schema is None:
        return data
    validated = dict(data)
    for key, expected in schema.required_fields.items():
        if key not in data:
            raise TypeError(f"Missing required field: {key}")
        if not _matches(data[key], expected):
            raise TypeError(f"Field {key} must be {expected.__name__}")
    for key, (expected, default) in schema.optional_fields.items():
        if key not in data or data[key] is None:
            validated[key] = default() if callable(default) else default
        elif not _matches(data[key], expected):
            raise TypeError(f"Field {key} must be {expected.__name__}")
    return validated


def decode_json(raw: str, schema: ContractSchema | None = None) -> DecodeResult:
    text = (raw or "").strip()
    if not text:
        return ParseFailure("Empty response", raw=raw or "")

    try:
        strict = json.loads(text)
    except json.JSONDecodeError:
        strict = None
    if strict is not None:
        try:
            return Parsed(_validate(strict, schema), stage="strict")
        except TypeError as exc:
            return ParseFailure(f"Schema violation: {exc}", raw=text)

    try:
        json_text, _ = extract_first_json_object(text)
        extracted = json.loads(json_text)
    except JsonExtractionError as exc:
        return ParseFailure(str(exc), raw=text)
    except json.JSONDecodeError as exc:
        return ParseFailure(f"Malformed JSON: {exc}", raw=text)
    try:
        return Parsed(_validate(extracted, schema), stage="extracted")
    except TypeError as exc:
        return ParseFailure(f"Schema violation: {exc}", raw=text)
