"""Capability invocation: registries, provider adapters and the agent invoker."""

from agent_desk.agents.base import (
    ChatMessage,
    CompletionRequest,
    CompletionResult,
    LlmProvider,
    ProviderError,
    ProviderTimeoutError,
)
from agent_desk.agents.capabilities import Capability
from agent_desk.agents.invoker import AgentInvoker, InvocationOutcome
from agent_desk.agents.registry import (
    CapabilityRegistry,
    ProviderRegistry,
    build_default_capabilities,
    build_default_providers,
)

__all__ = [
    "AgentInvoker",
    "Capability",
    "CapabilityRegistry",
    "ChatMessage",
    "CompletionRequest",
    "CompletionResult",
    "InvocationOutcome",
    "LlmProvider",
    "ProviderError",
    "ProviderRegistry",
    "ProviderTimeoutError",
    "build_default_capabilities",
    "build_default_providers",
]
