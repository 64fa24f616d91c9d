"""Best-effort JSON recovery from free-form model output."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agent_desk.agents.sanitization import sanitize_preview

OUTPUT_PARSER_VERSION = "v1"
RAW_OUTPUT_MAX_CHARS = 2_000
PARSE_FAILED_MESSAGE = "Failed to parse JSON output from LLM"

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_LEADING_ARTIFACTS = re.compile(r"^[\s`\"']*")
_TRAILING_ARTIFACTS = re.compile(r"[\s`\"']*$")
_LEADING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\s*```$")
_UNSAFE_KEYS = frozenset({"__proto__", "constructor", "prototype"})


@dataclass(slots=True)
class ParsedJson:
    """Recovered JSON value and the strategy that produced it."""

    value: Any
    strategy: str


def parse_json_output(text: str) -> ParsedJson | None:
    """Recover a JSON value from model output or return ``None``.

    Strategies run in order: direct parse, fenced code block, balanced
    object, balanced array, then the extracted fragment after safe repairs.
    """

    stripped = text.strip()
    if not stripped:
        return None

    direct = _try_load(stripped)
    if isinstance(direct, (dict, list)):
        return ParsedJson(value=direct, strategy="direct")

    fragment = extract_json_fragment(stripped)
    if fragment is None:
        return None
    candidate, strategy = fragment
    loaded = _try_load(candidate)
    if isinstance(loaded, (dict, list)):
        return ParsedJson(value=loaded, strategy=strategy)

    repaired = _try_load(repair_json_fragment(candidate))
    if isinstance(repaired, (dict, list)):
        return ParsedJson(value=repaired, strategy=f"{strategy}_repaired")
    return None


def extract_json_fragment(text: str) -> tuple[str, str] | None:
    """Locate the most likely JSON substring in ``text``."""

    fenced = _FENCED_JSON.search(text)
    if fenced is not None and fenced.group(1).strip():
        return fenced.group(1).strip(), "fenced"

    for opener, closer, strategy in (("{", "}", "balanced_object"), ("[", "]", "balanced_array")):
        start = text.find(opener)
        if start == -1:
            continue
        end = find_matching_bracket(text, start, opener, closer)
        if end != -1:
            return text[start : end + 1], strategy
    return None


def find_matching_bracket(text: str, start: int, opener: str, closer: str) -> int:
    """Index of the bracket closing ``text[start]``, ignoring string contents."""

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return index
    return -1


def repair_json_fragment(fragment: str) -> str:
    """Apply only transformations that cannot corrupt string content."""

    fixed = _TRAILING_COMMA.sub(r"\1", fragment.strip())
    fixed = _LEADING_ARTIFACTS.sub("", fixed)
    fixed = _TRAILING_ARTIFACTS.sub("", fixed)
    fixed = _LEADING_FENCE.sub("", fixed)
    return _TRAILING_FENCE.sub("", fixed)


def sanitize_payload(value: Any) -> Any:
    """Drop prototype-pollution keys recursively."""

    if isinstance(value, dict):
        return {
            key: sanitize_payload(item)
            for key, item in value.items()
            if key not in _UNSAFE_KEYS
        }
    if isinstance(value, list):
        return [sanitize_payload(item) for item in value]
    return value


def build_output_payload(
    text: str,
    *,
    fallback: dict[str, Any],
    required_fields: tuple[str, ...] = (),
    on_schema_error: Callable[[list[str]], None] | None = None,
) -> dict[str, Any]:
    """Turn model text into a dict payload; never raises on malformed text.

    Missing ``required_fields`` are reported through ``on_schema_error`` when
    given (which may raise), otherwise annotated on the payload.
    """

    parsed = parse_json_output(text)
    if parsed is None:
        return {
            **fallback,
            "raw": True,
            "parse_error": PARSE_FAILED_MESSAGE,
            "raw_output": sanitize_preview(text, max_chars=RAW_OUTPUT_MAX_CHARS),
            "parser_version": OUTPUT_PARSER_VERSION,
        }

    value = sanitize_payload(parsed.value)
    payload: dict[str, Any] = value if isinstance(value, dict) else {"items": value}
    missing = [name for name in required_fields if _is_missing(payload.get(name))]
    if missing:
        if on_schema_error is not None:
            on_schema_error(missing)
        payload = {
            **payload,
            "schema_valid": False,
            "schema_errors": [f"missing required field: {name}" for name in missing],
        }
    if parsed.strategy != "direct":
        payload = {**payload, "parser_strategy": parsed.strategy}
    return payload


def _try_load(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _is_missing(value: Any) -> bool:
    return value is None or value == "" or value == []
