"""OpenAI-compatible chat-completions adapter (OpenAI, Ollama, vLLM, ...)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from agent_desk.agents.base import (
    CompletionRequest,
    CompletionResult,
    ProviderError,
    ProviderTimeoutError,
)
from agent_desk.agents.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_TRANSPORT_RETRIES = 1
_ERROR_BODY_PREVIEW_CHARS = 500


class OpenAICompatibleProvider:
    """Calls ``POST {base_url}/chat/completions`` over httpx."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        transport_retries: int = DEFAULT_TRANSPORT_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=transport_retries),
        )

    def close(self) -> None:
        self._client.close()

    def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run one chat completion and return text plus token counts."""

        url = f"{self.base_url}/chat/completions"
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [message.to_payload() for message in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        timeout = httpx.Timeout(
            request.timeout_seconds,
            connect=min(DEFAULT_CONNECT_TIMEOUT_SECONDS, request.timeout_seconds),
        )
        try:
            response = self._client.post(url, json=payload, timeout=timeout)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s model=%s", url, request.model)
            raise ProviderTimeoutError(
                f"{request.provider} request timed out after {request.timeout_seconds:.0f}s",
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s: %s", url, error)
            raise ProviderError(f"{request.provider} network error: {error}") from error

        if not response.is_success:
            body = sanitize_preview(response.text, max_chars=_ERROR_BODY_PREVIEW_CHARS)
            logger.warning("Provider %s returned HTTP %s", request.provider, response.status_code)
            raise ProviderError(
                f"{request.provider} HTTP {response.status_code}: {body}",
                status_code=response.status_code,
            )
        return _parse_completion(response.json(), provider=request.provider)


def _parse_completion(body: Any, *, provider: str) -> CompletionResult:
    if not isinstance(body, dict):
        raise ProviderError(f"{provider} returned a non-object completion body")
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ProviderError(f"{provider} returned no completion choices")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise ProviderError(f"{provider} returned a completion without text content")
    usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
    return CompletionResult(
        text=content,
        prompt_tokens=_as_int(usage.get("prompt_tokens")),
        completion_tokens=_as_int(usage.get("completion_tokens")),
    )


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    return 0
