"""Provider interface for capability invocation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(slots=True)
class ChatMessage:
    """One chat turn sent to a provider."""

    role: str
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class CompletionRequest:
    """Inputs required to execute one provider call."""

    provider: str
    model: str
    messages: list[ChatMessage]
    timeout_seconds: float
    temperature: float = 0.7
    max_tokens: int = 4096
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CompletionResult:
    """Raw provider response with token accounting."""

    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


class LlmProvider(Protocol):
    """Protocol implemented by provider adapters."""

    def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run one chat completion and return text plus token counts."""


class ProviderError(RuntimeError):
    """Provider call failed; ``status_code`` is set for HTTP-level failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded its time budget."""


class UnknownProviderError(ValueError):
    """No adapter registered under the requested provider name."""


class UnknownCapabilityError(ValueError):
    """No capability registered under the requested name."""


class InvalidJobInputError(ValueError):
    """Job input cannot be turned into a provider request."""


class OutputSchemaError(ValueError):
    """Parsed output misses fields the capability requires."""
