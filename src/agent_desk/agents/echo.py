"""Local deterministic provider for demos and smoke runs (no network)."""

from __future__ import annotations

import json

from agent_desk.agents.base import CompletionRequest, CompletionResult


class EchoProvider:
    """Answers with a fenced JSON block echoing the last user message."""

    def complete(self, request: CompletionRequest) -> CompletionResult:
        user_messages = [message.content for message in request.messages if message.role == "user"]
        prompt = user_messages[-1] if user_messages else ""
        payload = {
            "summary": f"echo of {len(prompt)} chars",
            "content": prompt,
            "provider": "echo",
            "model": request.model,
        }
        text = "```json\n" + json.dumps(payload, ensure_ascii=False) + "\n```"
        prompt_tokens = sum(len(message.content.split()) for message in request.messages)
        return CompletionResult(
            text=text,
            prompt_tokens=prompt_tokens,
            completion_tokens=len(text.split()),
        )
