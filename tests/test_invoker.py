from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta

import allure

from agent_desk.agents import (
    AgentInvoker,
    Capability,
    CapabilityRegistry,
    CompletionRequest,
    LlmProvider,
    ProviderError,
    ProviderRegistry,
    build_default_capabilities,
)
from agent_desk.config import RetrySettings
from agent_desk.jobs.models import FailureStage, FailureType, JobCreate, JobStatus, JobView
from agent_desk.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Agent Invocation"),
    allure.feature("Agent Invoker"),
]

WORKER_ID = "invoker-test"


def _invoker(
    repository: JobRepository,
    provider: LlmProvider,
    *,
    capabilities: CapabilityRegistry | None = None,
    job_timeout_seconds: float = 5.0,
) -> AgentInvoker:
    return AgentInvoker(
        repository=repository,
        capabilities=capabilities or build_default_capabilities(),
        providers=ProviderRegistry({"scripted": provider}),
        retry=RetrySettings(max_retries=3, base_seconds=0.0, max_seconds=0.0),
        job_timeout_seconds=job_timeout_seconds,
        worker_id=WORKER_ID,
    )


def _claim(
    repository: JobRepository,
    capability: str = "research",
    **job_input: object,
) -> JobView:
    repository.enqueue(
        JobCreate(
            capability=capability,
            provider="scripted",
            model="test-model",
            input=job_input or {"topic": "job queues"},
        ),
    )
    job = repository.claim(worker_id=WORKER_ID)
    assert job is not None
    return job


def test_successful_invocation_completes_job(job_repository: JobRepository, provider) -> None:
    job = _claim(job_repository)

    outcome = _invoker(job_repository, provider).invoke(job)

    assert outcome.success is True
    assert outcome.recorded is True
    assert outcome.output is not None
    assert outcome.output["summary"] == "Findings about the topic"
    assert outcome.token_usage.total_tokens == 19
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert stored.total_tokens == 19

    request = provider.requests[0]
    assert request.model == "test-model"
    assert request.metadata == {"job_id": job.job_id, "capability": "research"}
    assert [message.role for message in request.messages] == ["system", "user"]
    assert json.loads(request.messages[1].content) == {"topic": "job queues"}


def test_malformed_output_completes_with_fallback(job_repository: JobRepository, provider) -> None:
    provider.replies = ["I am not able to answer in JSON today."]
    job = _claim(job_repository)

    outcome = _invoker(job_repository, provider).invoke(job)

    assert outcome.success is True
    assert outcome.output is not None
    assert outcome.output["raw"] is True
    assert outcome.output["summary"] == "Research output could not be parsed"
    assert outcome.output["raw_output"] == "I am not able to answer in JSON today."


def test_unknown_capability_fails_permanently(job_repository: JobRepository, provider) -> None:
    job = _claim(job_repository, capability="translator")

    outcome = _invoker(job_repository, provider).invoke(job)

    assert outcome.success is False
    assert outcome.retry_scheduled is False
    assert outcome.failure_classification is not None
    assert outcome.failure_classification.failure_type == FailureType.INVALID_INPUT
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.failure_stage == FailureStage.INPUT
    assert "Unknown capability: translator" in (stored.error_message or "")


def test_rate_limit_is_requeued_with_classification_event(
    job_repository: JobRepository,
    provider,
) -> None:
    provider.replies = [ProviderError("slow down", status_code=429)]
    job = _claim(job_repository)

    outcome = _invoker(job_repository, provider).invoke(job)

    assert outcome.success is False
    assert outcome.retry_scheduled is True
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.QUEUED
    assert stored.failure_type == FailureType.RATE_LIMIT
    details = job_repository.get_job_details(job_id=job.job_id)
    assert details is not None
    classified = [event for event in details.events if event.event_type == "failure_classified"]
    assert classified[0].details["matched_rule"] == "http_429"


def test_slow_provider_times_out(job_repository: JobRepository, provider) -> None:
    release = threading.Event()

    def stall(request: CompletionRequest) -> str:
        release.wait(timeout=5)
        return "{}"

    job = _claim(job_repository)
    provider.replies = [stall]
    invoker = _invoker(job_repository, provider, job_timeout_seconds=0.2)
    try:
        outcome = invoker.invoke(job)
    finally:
        release.set()

    assert outcome.success is False
    assert outcome.timed_out is True
    assert outcome.retry_scheduled is True
    assert "timeout" in (outcome.error or "")
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.failure_stage == FailureStage.TIMEOUT


def test_revision_notes_reach_the_prompt(job_repository: JobRepository, provider) -> None:
    job = _claim(job_repository, topic="queues", revision_notes="shorten intro")

    _invoker(job_repository, provider).invoke(job)

    user_message = provider.requests[0].messages[1].content
    assert "Reviewer notes: shorten intro" in user_message
    assert '"revision_notes"' not in user_message


def test_strict_schema_turns_missing_fields_into_failure(
    job_repository: JobRepository,
    provider,
) -> None:
    capabilities = CapabilityRegistry(
        [
            Capability(
                name="research",
                system_prompt="Research.",
                required_fields=("summary", "sources"),
                strict_schema=True,
            ),
        ],
    )
    job = _claim(job_repository)

    outcome = _invoker(job_repository, provider, capabilities=capabilities).invoke(job)

    assert outcome.success is False
    assert outcome.failure_classification is not None
    assert outcome.failure_classification.failure_type == FailureType.SCHEMA_MISMATCH
    assert outcome.retry_scheduled is True


def test_result_after_lost_lease_is_not_recorded(job_repository: JobRepository, provider) -> None:
    job = _claim(job_repository)
    job_repository.reap_stale_jobs(
        stale_after=timedelta(minutes=1),
        now=datetime.now(tz=UTC) + timedelta(hours=1),
    )

    outcome = _invoker(job_repository, provider).invoke(job)

    assert outcome.success is True
    assert outcome.recorded is False
    assert outcome.job is None
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.QUEUED
