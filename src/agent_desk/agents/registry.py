"""Explicit capability and provider registries built once at process start."""

from __future__ import annotations

from agent_desk.agents.base import LlmProvider, UnknownCapabilityError, UnknownProviderError
from agent_desk.agents.capabilities import Capability, default_capabilities
from agent_desk.agents.echo import EchoProvider
from agent_desk.agents.openai_compatible import OpenAICompatibleProvider
from agent_desk.config import LlmSettings


class CapabilityRegistry:
    """Name -> capability lookup passed into the invoker."""

    def __init__(self, capabilities: list[Capability] | None = None) -> None:
        self._items: dict[str, Capability] = {}
        for capability in capabilities or []:
            self.register(capability)

    def register(self, capability: Capability) -> None:
        if capability.name in self._items:
            raise ValueError(f"Capability already registered: {capability.name}")
        self._items[capability.name] = capability

    def get(self, name: str) -> Capability:
        try:
            return self._items[name]
        except KeyError:
            raise UnknownCapabilityError(f"Unknown capability: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._items)

    def __contains__(self, name: object) -> bool:
        return name in self._items


class ProviderRegistry:
    """Name -> provider adapter lookup."""

    def __init__(self, providers: dict[str, LlmProvider] | None = None) -> None:
        self._items: dict[str, LlmProvider] = dict(providers or {})

    def register(self, name: str, provider: LlmProvider) -> None:
        self._items[name.lower()] = provider

    def get(self, name: str) -> LlmProvider:
        try:
            return self._items[name.lower()]
        except KeyError:
            raise UnknownProviderError(f"Unknown provider: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._items)

    def close(self) -> None:
        """Release HTTP clients held by adapters."""

        for provider in self._items.values():
            close = getattr(provider, "close", None)
            if callable(close):
                close()


def build_default_capabilities() -> CapabilityRegistry:
    return CapabilityRegistry(default_capabilities())


def build_default_providers(settings: LlmSettings) -> ProviderRegistry:
    """OpenAI, Ollama and the local echo adapter."""

    return ProviderRegistry(
        {
            "openai": OpenAICompatibleProvider(
                base_url=settings.openai_base_url,
                api_key=settings.openai_api_key,
            ),
            "ollama": OpenAICompatibleProvider(base_url=settings.ollama_base_url),
            "echo": EchoProvider(),
        },
    )
