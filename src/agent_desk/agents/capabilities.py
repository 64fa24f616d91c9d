"""Capability definitions: how a job input becomes messages and how output is read."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from agent_desk.agents.base import ChatMessage, InvalidJobInputError, OutputSchemaError
from agent_desk.agents.output_parser import build_output_payload

REVISION_NOTES_KEY = "revision_notes"

_JSON_INSTRUCTION = (
    "Respond with a single JSON object only. Do not wrap it in prose. "
    "Required fields: {fields}."
)


@dataclass(slots=True)
class Capability:
    """Named executor for one kind of AI work."""

    name: str
    system_prompt: str
    required_fields: tuple[str, ...] = ()
    fallback_output: dict[str, Any] = field(
        default_factory=lambda: {"content": "Failed to parse structured output"},
    )
    required_inputs: tuple[str, ...] = ()
    strict_schema: bool = False
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_seconds: float = 120.0

    def build_messages(self, payload: dict[str, Any]) -> list[ChatMessage]:
        """System prompt plus one user message carrying the JSON input."""

        missing = [key for key in self.required_inputs if payload.get(key) in (None, "")]
        if missing:
            raise InvalidJobInputError(
                f"Capability {self.name} requires input field(s): {', '.join(missing)}",
            )
        system = self.system_prompt
        if self.required_fields:
            instruction = _JSON_INSTRUCTION.format(fields=", ".join(self.required_fields))
            system = f"{system}\n\n{instruction}"

        body = {key: value for key, value in payload.items() if key != REVISION_NOTES_KEY}
        user_content = json.dumps(body, ensure_ascii=False, indent=2, sort_keys=True, default=str)
        revision_notes = payload.get(REVISION_NOTES_KEY)
        if revision_notes:
            user_content = (
                f"{user_content}\n\nA reviewer requested a revision of your previous answer. "
                f"Reviewer notes: {revision_notes}"
            )
        return [
            ChatMessage(role="system", content=system),
            ChatMessage(role="user", content=user_content),
        ]

    def parse_output(self, text: str) -> dict[str, Any]:
        """Parse model text into a dict payload, tolerating malformed output."""

        return build_output_payload(
            text,
            fallback=self.fallback_output,
            required_fields=self.required_fields,
            on_schema_error=self._reject_missing if self.strict_schema else None,
        )

    def _reject_missing(self, missing: list[str]) -> None:
        raise OutputSchemaError(
            f"Output of {self.name} failed schema validation: missing {', '.join(missing)}",
        )


def default_capabilities() -> list[Capability]:
    """Content-production capabilities shipped with the engine."""

    return [
        Capability(
            name="research",
            system_prompt=(
                "You are a research analyst. Investigate the topic in the input and "
                "report findings with supporting data points and sources."
            ),
            required_fields=("summary", "keyFindings"),
            fallback_output={"summary": "Research output could not be parsed", "keyFindings": []},
        ),
        Capability(
            name="writer",
            system_prompt=(
                "You are a professional content writer. Produce the requested piece "
                "using the research and outline available in the input."
            ),
            required_fields=("title", "content"),
            fallback_output={"title": "Untitled", "content": ""},
        ),
        Capability(
            name="editor",
            system_prompt=(
                "You are a meticulous editor. Improve clarity, grammar and flow of the "
                "content in the input and list the issues you fixed."
            ),
            required_fields=("editedContent",),
            fallback_output={"editedContent": "", "issuesFound": []},
        ),
        Capability(
            name="seo",
            system_prompt=(
                "You are an SEO specialist. Analyse the content in the input and return "
                "keyword analysis, meta tags and optimisation recommendations."
            ),
            required_fields=("keywordAnalysis", "metaTags"),
            fallback_output={"keywordAnalysis": {}, "metaTags": {}},
        ),
        Capability(
            name="planner",
            system_prompt=(
                "You are a project planner. Break the request in the input into phases, "
                "tasks, a timeline and risks."
            ),
            required_fields=("projectPlan", "tasks"),
            fallback_output={"projectPlan": {}, "tasks": []},
        ),
    ]
