"""Workflow definitions: an ordered tuple of typed step specs."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar

from agent_desk.workflow.conditions import parse_condition
from agent_desk.workflow.errors import ConditionError, WorkflowDefinitionError

_KIND_ALIASES = {"wait_for_approval": "approval"}


@dataclass(frozen=True, slots=True)
class AiStep:
    """Enqueue one agent job and wait for it."""

    kind: ClassVar[str] = "ai"

    name: str
    capability: str
    provider: str | None = None
    model: str | None = None
    retry_count: int | None = None
    timeout_seconds: float | None = None
    static_input: dict[str, Any] = field(default_factory=dict)
    condition: str | None = None


@dataclass(frozen=True, slots=True)
class ApprovalStep:
    """Pause until a reviewer resolves the approval record."""

    kind: ClassVar[str] = "approval"

    name: str
    timeout_seconds: float | None = None
    instructions: str | None = None
    condition: str | None = None


@dataclass(frozen=True, slots=True)
class PublishStep:
    kind: ClassVar[str] = "publish"

    name: str
    target: str | None = None
    static_input: dict[str, Any] = field(default_factory=dict)
    condition: str | None = None


@dataclass(frozen=True, slots=True)
class CustomStep:
    kind: ClassVar[str] = "custom"

    name: str
    handler: str = "noop"
    static_input: dict[str, Any] = field(default_factory=dict)
    condition: str | None = None


StepSpec = AiStep | ApprovalStep | PublishStep | CustomStep


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    name: str
    steps: tuple[StepSpec, ...]
    description: str = ""

    def __post_init__(self) -> None:
        if not self.steps:
            raise WorkflowDefinitionError(f"Workflow {self.name} must have at least one step.")
        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise WorkflowDefinitionError(
                    f"Workflow {self.name} has duplicate step name: {step.name}",
                )
            seen.add(step.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "steps": [step_to_dict(step) for step in self.steps],
        }

    def sha256(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def step_index(self, name: str) -> int:
        for index, step in enumerate(self.steps):
            if step.name == name:
                return index
        raise KeyError(name)


def step_to_dict(step: StepSpec) -> dict[str, Any]:
    """Canonical JSON form; ``None`` and empty fields are omitted."""

    payload: dict[str, Any] = {"kind": step.kind, "name": step.name}
    for item in fields(step):
        if item.name == "name":
            continue
        value = getattr(step, item.name)
        if value is None or value == {}:
            continue
        payload[item.name] = value
    return payload


def parse_workflow_definition(payload: Mapping[str, Any]) -> WorkflowDefinition:
    """Build a definition from its JSON form."""

    if not isinstance(payload, Mapping):
        raise WorkflowDefinitionError("Workflow definition must be a JSON object.")
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise WorkflowDefinitionError("Workflow definition requires a non-empty 'name'.")
    raw_steps = payload.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise WorkflowDefinitionError(f"Workflow {name} requires a non-empty 'steps' list.")
    description = payload.get("description") or ""
    if not isinstance(description, str):
        raise WorkflowDefinitionError(f"Workflow {name} description must be a string.")
    steps = tuple(_parse_step(raw, index=index) for index, raw in enumerate(raw_steps))
    return WorkflowDefinition(name=name.strip(), steps=steps, description=description)


def load_workflow_file(path: Path) -> WorkflowDefinition:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as error:
        raise WorkflowDefinitionError(f"{path} is not valid JSON: {error}") from error
    return parse_workflow_definition(payload)


def _parse_step(raw: Any, *, index: int) -> StepSpec:  # noqa: C901
    if not isinstance(raw, Mapping):
        raise WorkflowDefinitionError(f"Step #{index} must be a JSON object.")
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise WorkflowDefinitionError(f"Step #{index} requires a non-empty 'name'.")
    raw_kind = raw.get("kind") or raw.get("type")
    if raw_kind is None and raw.get("wait_for_approval") is True:
        raw_kind = "approval"
    if not isinstance(raw_kind, str):
        raise WorkflowDefinitionError(f"Step {name} requires 'kind'.")
    kind = _KIND_ALIASES.get(raw_kind, raw_kind)
    config = raw.get("config") if isinstance(raw.get("config"), Mapping) else {}
    condition = _optional_condition(raw.get("condition"), step_name=name)

    if kind == "ai":
        capability = raw.get("capability") or _capability_from_agent(raw.get("agent"))
        if not isinstance(capability, str) or not capability:
            raise WorkflowDefinitionError(f"AI step {name} requires 'capability'.")
        return AiStep(
            name=name,
            capability=capability,
            provider=_optional_str(raw.get("provider") or config.get("provider"), "provider", name),
            model=_optional_str(raw.get("model") or config.get("model"), "model", name),
            retry_count=_optional_retry_count(raw.get("retry_count"), step_name=name),
            timeout_seconds=_optional_seconds(raw.get("timeout_seconds"), step_name=name),
            static_input=_static_input(raw, config, step_name=name),
            condition=condition,
        )
    if kind == "approval":
        return ApprovalStep(
            name=name,
            timeout_seconds=_optional_seconds(raw.get("timeout_seconds"), step_name=name),
            instructions=_optional_str(raw.get("instructions"), "instructions", name),
            condition=condition,
        )
    if kind == "publish":
        return PublishStep(
            name=name,
            target=_optional_str(raw.get("target"), "target", name),
            static_input=_static_input(raw, config, step_name=name),
            condition=condition,
        )
    if kind == "custom":
        handler = raw.get("handler") or "noop"
        if not isinstance(handler, str):
            raise WorkflowDefinitionError(f"Custom step {name} 'handler' must be a string.")
        return CustomStep(
            name=name,
            handler=handler,
            static_input=_static_input(raw, config, step_name=name),
            condition=condition,
        )
    raise WorkflowDefinitionError(f"Step {name} has unknown kind: {raw_kind}")


def _capability_from_agent(agent: Any) -> str | None:
    # "ResearchAgent" -> "research", "SeoAgent" -> "seo"
    if not isinstance(agent, str) or not agent:
        return None
    base = agent[: -len("Agent")] if agent.endswith("Agent") else agent
    return base.lower() or None


def _static_input(
    raw: Mapping[str, Any],
    config: Mapping[str, Any],
    *,
    step_name: str,
) -> dict[str, Any]:
    value = raw.get("static_input", raw.get("input", config.get("input")))
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise WorkflowDefinitionError(f"Step {step_name} 'static_input' must be an object.")
    return dict(value)


def _optional_str(value: Any, key: str, step_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise WorkflowDefinitionError(f"Step {step_name} '{key}' must be a string.")
    return value


def _optional_retry_count(value: Any, *, step_name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise WorkflowDefinitionError(f"Step {step_name} 'retry_count' must be an integer >= 1.")
    return value


def _optional_seconds(value: Any, *, step_name: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise WorkflowDefinitionError(f"Step {step_name} 'timeout_seconds' must be > 0.")
    return float(value)


def _optional_condition(value: Any, *, step_name: str) -> str | None:
    if value is None:
        return None
    try:
        parse_condition(value)
    except ConditionError as error:
        raise WorkflowDefinitionError(f"Step {step_name} condition is invalid: {error}") from error
    return value


def _ai(name: str, capability: str, timeout: int, **static_input: Any) -> dict[str, Any]:
    return {
        "name": name,
        "kind": "ai",
        "capability": capability,
        "timeout_seconds": timeout,
        "retry_count": 2,
        "static_input": static_input,
    }


def _approval(timeout: int) -> dict[str, Any]:
    return {"name": "client_approval", "kind": "approval", "timeout_seconds": timeout}


_SEVEN_DAYS = 604_800
_THREE_DAYS = 259_200

_DEFAULT_WORKFLOW_PAYLOADS: dict[str, dict[str, Any]] = {
    "blog_post": {
        "name": "blog_post",
        "description": "Complete blog post creation from research to publishing",
        "steps": [
            _ai("research", "research", 300, depth="comprehensive"),
            _ai("outline", "writer", 120, contentType="blog_post", wordCount=200),
            _ai("writing", "writer", 600, contentType="blog_post", style="professional"),
            _ai("editing", "editor", 300, editType="copyedit"),
            _ai("seo_optimization", "seo", 300, analysisType="full"),
            _approval(_SEVEN_DAYS),
            {"name": "publish", "kind": "publish"},
        ],
    },
    "seo_audit": {
        "name": "seo_audit",
        "description": "Comprehensive SEO analysis and recommendations",
        "steps": [
            _ai("technical_seo", "seo", 300, analysisType="technical"),
            _ai("content_seo", "seo", 300, analysisType="content"),
            _ai("keyword_research", "research", 300, depth="comprehensive"),
            _ai(
                "report_generation",
                "writer",
                300,
                contentType="documentation",
                style="professional",
            ),
            _approval(_SEVEN_DAYS),
        ],
    },
    "landing_page": {
        "name": "landing_page",
        "description": "Create high-converting landing page content",
        "steps": [
            _ai("market_research", "research", 300, depth="comprehensive"),
            _ai("copywriting", "writer", 300, contentType="landing_page", style="persuasive"),
            _ai("seo_optimization", "seo", 180),
            _ai("editing", "editor", 180, editType="copyedit"),
            _approval(_SEVEN_DAYS),
        ],
    },
    "social_media_campaign": {
        "name": "social_media_campaign",
        "description": "Create social media content for multiple platforms",
        "steps": [
            _ai("trend_research", "research", 300, depth="standard"),
            _ai("content_creation", "writer", 300, contentType="social_post", style="casual"),
            _ai("hashtag_research", "seo", 120),
            _approval(_THREE_DAYS),
        ],
    },
    "product_description": {
        "name": "product_description",
        "description": "Create compelling product descriptions",
        "steps": [
            _ai("product_analysis", "research", 180),
            _ai(
                "description_writing",
                "writer",
                180,
                contentType="product_description",
                style="persuasive",
            ),
            _ai("seo_optimization", "seo", 120),
            _approval(_THREE_DAYS),
        ],
    },
    "email_campaign": {
        "name": "email_campaign",
        "description": "Create email sequences for marketing campaigns",
        "steps": [
            _ai("audience_research", "research", 300),
            _ai("email_writing", "writer", 300, contentType="email", style="conversational"),
            _ai("subject_line_optimization", "seo", 120),
            _ai("editing", "editor", 120),
            _approval(_THREE_DAYS),
        ],
    },
}


def default_workflows() -> dict[str, WorkflowDefinition]:
    """Built-in content-production pipelines keyed by task type."""

    return {
        key: parse_workflow_definition(payload)
        for key, payload in _DEFAULT_WORKFLOW_PAYLOADS.items()
    }
