"""Synchronous handlers for publish and custom steps."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agent_desk.storage.common import utc_now
from agent_desk.workflow.definitions import CustomStep, PublishStep
from agent_desk.workflow.errors import WorkflowStateError
from agent_desk.workflow.models import TaskView


@dataclass(slots=True)
class StepContext:
    """What a handler may read: the task and the accumulated context."""

    task: TaskView
    execution_id: str
    step_index: int
    context: dict[str, Any]


CustomHandler = Callable[[CustomStep, StepContext], dict[str, Any]]
PublishHandler = Callable[[PublishStep, StepContext], dict[str, Any]]


def record_publication(step: PublishStep, ctx: StepContext) -> dict[str, Any]:
    """Default publish: mark the deliverable published without external side effects."""

    return {
        "step_type": "publish",
        "target": step.target or "default",
        "published_at": utc_now().isoformat(),
        "published_steps": sorted(ctx.context),
        **step.static_input,
    }


def noop(step: CustomStep, _: StepContext) -> dict[str, Any]:
    return {"step_type": "custom", "handler": step.handler, **step.static_input}


class StepHandlerRegistry:
    """Explicit name -> handler mapping injected into the workflow engine."""

    def __init__(self, *, publish: PublishHandler = record_publication) -> None:
        self.publish = publish
        self._custom: dict[str, CustomHandler] = {"noop": noop}

    def register(self, name: str, handler: CustomHandler) -> None:
        self._custom[name] = handler

    def names(self) -> list[str]:
        return sorted(self._custom)

    def run(self, step: PublishStep | CustomStep, ctx: StepContext) -> dict[str, Any]:
        if isinstance(step, PublishStep):
            output = self.publish(step, ctx)
        else:
            handler = self._custom.get(step.handler)
            if handler is None:
                raise WorkflowStateError(f"Unknown custom step handler: {step.handler}")
            output = handler(step, ctx)
        if not isinstance(output, dict):
            raise WorkflowStateError(f"Step {step.name} handler must return a dict.")
        return output
