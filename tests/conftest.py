"""Shared test fixtures."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from agent_desk.agents import (
    AgentInvoker,
    CompletionRequest,
    CompletionResult,
    ProviderRegistry,
    build_default_capabilities,
)
from agent_desk.config import LlmSettings, RetrySettings
from agent_desk.jobs.repository import JobRepository
from agent_desk.jobs.worker import JobWorker
from agent_desk.workflow.approvals import ApprovalResolutionHandler
from agent_desk.workflow.definitions import WorkflowDefinition, parse_workflow_definition
from agent_desk.workflow.engine import WorkflowEngine
from agent_desk.workflow.models import Actor, TaskCreate, TaskView
from agent_desk.workflow.repository import WorkflowRepository

DEFAULT_REPLY = json.dumps(
    {
        "summary": "Findings about the topic",
        "keyFindings": ["first", "second"],
        "title": "Draft",
        "content": "Body text",
    },
)

Reply = str | BaseException | Callable[[CompletionRequest], str]


class ScriptedProvider:
    """Provider fake: answers with scripted replies, then ``default``."""

    def __init__(self, replies: list[Reply] | None = None, *, default: Reply = DEFAULT_REPLY):
        self.replies = list(replies or [])
        self.default = default
        self.requests: list[CompletionRequest] = []
        self._lock = threading.Lock()

    def complete(self, request: CompletionRequest) -> CompletionResult:
        with self._lock:
            self.requests.append(request)
            reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        text = reply(request) if callable(reply) else reply
        return CompletionResult(text=text, prompt_tokens=12, completion_tokens=7)


@dataclass(slots=True)
class Stack:
    jobs: JobRepository
    workflows: WorkflowRepository
    engine: WorkflowEngine
    approvals: ApprovalResolutionHandler
    invoker: AgentInvoker
    worker: JobWorker
    provider: ScriptedProvider
    actor: Actor

    def register(self, payload: dict[str, Any]) -> WorkflowDefinition:
        definition = parse_workflow_definition(payload)
        self.workflows.register_workflow(definition)
        return definition

    def create_task(self, title: str = "Write about queues", **task_input: Any) -> TaskView:
        return self.workflows.create_task(
            TaskCreate(title=title, input=task_input or {"topic": "job queues"}),
            actor=self.actor,
        )


@pytest.fixture()
def job_repository(tmp_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(tmp_path / "jobs.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture()
def stack(job_repository: JobRepository, provider: ScriptedProvider) -> Stack:
    retry = RetrySettings(max_retries=3, base_seconds=0.0, max_seconds=0.0)
    workflows = WorkflowRepository(job_repository.engine)
    engine = WorkflowEngine(
        repository=workflows,
        jobs=job_repository,
        llm=LlmSettings(default_provider="scripted", default_model="test-model"),
        retry=retry,
    )
    invoker = AgentInvoker(
        repository=job_repository,
        capabilities=build_default_capabilities(),
        providers=ProviderRegistry({"scripted": provider}),
        retry=retry,
        job_timeout_seconds=5.0,
        worker_id="test-worker",
    )
    worker = JobWorker(
        repository=job_repository,
        invoker=invoker,
        worker_id="test-worker",
        listener=engine,
        poll_interval_seconds=0.0,
        max_concurrent_jobs=2,
        heartbeat_seconds=0.0,
    )
    return Stack(
        jobs=job_repository,
        workflows=workflows,
        engine=engine,
        approvals=ApprovalResolutionHandler(engine),
        invoker=invoker,
        worker=worker,
        provider=provider,
        actor=Actor(user_id=job_repository.user_id, role="admin"),
    )


@pytest.fixture()
def review_flow() -> dict[str, Any]:
    return {
        "name": "review_flow",
        "description": "Research, human review, publish",
        "steps": [
            {"name": "research", "kind": "ai", "capability": "research"},
            {"name": "review", "kind": "approval", "instructions": "Check facts"},
            {"name": "publish", "kind": "publish", "target": "blog"},
        ],
    }
