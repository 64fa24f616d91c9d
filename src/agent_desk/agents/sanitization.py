"""Sanitization helpers for errors and raw outputs persisted in DB."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_PREVIEW_CHARS = 2_000
TRUNCATION_MARKER = "…[truncated]"

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"),
        "sk-[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(agent_desk|openai|anthropic|ollama)[a-z0-9_]*_?(api_)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"://[^/\s:@]+:[^/\s@]+@"),
        "://[redacted]@",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|api_key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)


def redact_secrets(text: str) -> str:
    """Redact API keys, bearer tokens and URL credentials."""

    redacted = text
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def clamp_text(text: str, *, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact obvious secrets and clamp payload size."""

    compact = text.strip()
    if not compact:
        return ""
    redacted = redact_secrets(compact)
    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]
