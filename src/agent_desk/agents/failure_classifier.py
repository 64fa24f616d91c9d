"""Deterministic failure classification for job retry policy."""

from __future__ import annotations

import json
from dataclasses import dataclass

import httpx

from agent_desk.agents.base import (
    InvalidJobInputError,
    OutputSchemaError,
    ProviderError,
    ProviderTimeoutError,
    UnknownCapabilityError,
    UnknownProviderError,
)
from agent_desk.jobs.models import PERMANENT_FAILURE_TYPES, FailureStage, FailureType

FAILURE_CLASSIFIER_VERSION = 1

_TIMEOUT_PATTERNS: tuple[str, ...] = ("timeout", "timed out", "deadline exceeded")
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "insufficient_quota",
    "billing",
    "limit exceeded",
    "credits",
    "payment required",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "incorrect api key",
    "api key",
    "authentication",
    "401",
    "403",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "connection",
    "econnrefused",
    "econnreset",
    "enetunreach",
    "could not resolve host",
    "name or service not known",
    "temporarily unavailable",
)
_MODEL_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "does not exist",
)
_CONTENT_FILTER_PATTERNS: tuple[str, ...] = (
    "content filter",
    "content_filter",
    "content policy",
    "content management policy",
    "safety system",
    "blocked",
)
_INTERNAL_ERROR_PATTERNS: tuple[str, ...] = (
    "internal server error",
    "bad gateway",
    "service unavailable",
    "500",
    "502",
    "503",
    "504",
)
_JSON_PATTERNS: tuple[str, ...] = ("json", "unexpected token", "syntax error")
_SCHEMA_PATTERNS: tuple[str, ...] = ("schema", "validation", "mismatch")
_INPUT_PATTERNS: tuple[str, ...] = ("input", "required", "missing")

_MESSAGE_RULES: tuple[tuple[str, tuple[str, ...], FailureStage, FailureType], ...] = (
    ("timeout", _TIMEOUT_PATTERNS, FailureStage.TIMEOUT, FailureType.TIMEOUT),
    ("quota_exceeded", _QUOTA_PATTERNS, FailureStage.LLM_CALL, FailureType.QUOTA_EXCEEDED),
    ("rate_limit", _RATE_LIMIT_PATTERNS, FailureStage.LLM_CALL, FailureType.RATE_LIMIT),
    ("authentication", _AUTH_PATTERNS, FailureStage.LLM_CALL, FailureType.AUTHENTICATION),
    ("network", _NETWORK_PATTERNS, FailureStage.LLM_CALL, FailureType.NETWORK),
    ("model_error", _MODEL_PATTERNS, FailureStage.LLM_CALL, FailureType.MODEL_ERROR),
    ("content_filter", _CONTENT_FILTER_PATTERNS, FailureStage.LLM_CALL, FailureType.CONTENT_FILTER),
    ("internal_error", _INTERNAL_ERROR_PATTERNS, FailureStage.LLM_CALL, FailureType.INTERNAL_ERROR),
    ("invalid_json", _JSON_PATTERNS, FailureStage.PARSE, FailureType.INVALID_JSON),
    ("schema_mismatch", _SCHEMA_PATTERNS, FailureStage.VALIDATION, FailureType.SCHEMA_MISMATCH),
    ("invalid_input", _INPUT_PATTERNS, FailureStage.INPUT, FailureType.INVALID_INPUT),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized (stage, type) classification result."""

    stage: FailureStage
    failure_type: FailureType
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_type not in PERMANENT_FAILURE_TYPES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_stage": self.stage.value,
            "failure_type": self.failure_type.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(
    error: BaseException,
    *,
    stage_hint: FailureStage | None = None,
) -> FailureClassification:
    """Classify an invocation error into a deterministic (stage, type) pair."""

    typed = _classify_by_type(error)
    if typed is not None:
        return typed

    haystack = str(error).lower()
    for rule, patterns, stage, failure_type in _MESSAGE_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                stage=stage,
                failure_type=failure_type,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return FailureClassification(
        stage=stage_hint or FailureStage.UNKNOWN,
        failure_type=FailureType.UNKNOWN,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def _classify_by_type(error: BaseException) -> FailureClassification | None:  # noqa: PLR0911
    if isinstance(error, (ProviderTimeoutError, TimeoutError, httpx.TimeoutException)):
        return _typed(FailureStage.TIMEOUT, FailureType.TIMEOUT, "timeout_exception")
    if isinstance(error, (UnknownCapabilityError, UnknownProviderError, InvalidJobInputError)):
        return _typed(FailureStage.INPUT, FailureType.INVALID_INPUT, "input_exception")
    if isinstance(error, OutputSchemaError):
        return _typed(FailureStage.VALIDATION, FailureType.SCHEMA_MISMATCH, "schema_exception")
    if isinstance(error, json.JSONDecodeError):
        return _typed(FailureStage.PARSE, FailureType.INVALID_JSON, "json_decode_exception")
    if isinstance(error, httpx.TransportError):
        return _typed(FailureStage.LLM_CALL, FailureType.NETWORK, "transport_exception")
    if isinstance(error, ProviderError) and error.status_code is not None:
        return _classify_status(error.status_code, str(error).lower())
    return None


def _classify_status(  # noqa: PLR0911
    status_code: int,
    message: str,
) -> FailureClassification | None:
    rule = f"http_{status_code}"
    if status_code == 429:
        if _first_match(message, _QUOTA_PATTERNS) is not None:
            return _typed(FailureStage.LLM_CALL, FailureType.QUOTA_EXCEEDED, rule)
        return _typed(FailureStage.LLM_CALL, FailureType.RATE_LIMIT, rule)
    if status_code in {401, 403}:
        return _typed(FailureStage.LLM_CALL, FailureType.AUTHENTICATION, rule)
    if status_code == 402:
        return _typed(FailureStage.LLM_CALL, FailureType.QUOTA_EXCEEDED, rule)
    if status_code == 404:
        return _typed(FailureStage.LLM_CALL, FailureType.MODEL_ERROR, rule)
    if status_code in {408, 504}:
        return _typed(FailureStage.TIMEOUT, FailureType.TIMEOUT, rule)
    if status_code >= 500:
        return _typed(FailureStage.LLM_CALL, FailureType.INTERNAL_ERROR, rule)
    if status_code == 400 and _first_match(message, _CONTENT_FILTER_PATTERNS) is not None:
        return _typed(FailureStage.LLM_CALL, FailureType.CONTENT_FILTER, rule)
    return None


def _typed(stage: FailureStage, failure_type: FailureType, rule: str) -> FailureClassification:
    return FailureClassification(
        stage=stage,
        failure_type=failure_type,
        matched_rule=rule,
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
