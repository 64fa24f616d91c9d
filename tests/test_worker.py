from __future__ import annotations

import signal

import allure
import pytest

from agent_desk.agents import ProviderError
from agent_desk.jobs.models import FailureType, JobCreate, JobStatus, JobView
from agent_desk.jobs.worker import JobWorker

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Worker"),
]


class ExplodingListener:
    def on_job_claimed(self, job: JobView) -> None:
        raise RuntimeError(f"listener down for {job.job_id}")

    def on_job_finished(self, job: JobView) -> bool:
        raise RuntimeError(f"listener down for {job.job_id}")

    def reconcile(self) -> int:
        return 0


def _enqueue(stack, count: int = 1, *, max_retries: int = 3) -> list[str]:
    return [
        stack.jobs.enqueue(
            JobCreate(
                capability="research",
                provider="scripted",
                model="test-model",
                input={"topic": f"topic {index}"},
                max_retries=max_retries,
            ),
        ).job_id
        for index in range(count)
    ]


def test_run_once_reports_idle_poll_on_empty_queue(stack) -> None:
    summary = stack.worker.run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1


def test_run_once_processes_one_job(stack) -> None:
    job_ids = _enqueue(stack, 2)

    summary = stack.worker.run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    first = stack.jobs.get_job(job_id=job_ids[0])
    second = stack.jobs.get_job(job_id=job_ids[1])
    assert first is not None
    assert second is not None
    assert first.status == JobStatus.COMPLETED
    assert second.status == JobStatus.QUEUED


def test_loop_drains_queue_with_bounded_concurrency(stack) -> None:
    job_ids = _enqueue(stack, 5)

    summary = stack.worker.run_loop(max_idle_polls=1)

    assert summary.processed == 5
    assert summary.succeeded == 5
    assert len(stack.provider.requests) == 5
    statuses = {stack.jobs.get_job(job_id=job_id).status for job_id in job_ids}
    assert statuses == {JobStatus.COMPLETED}


def test_loop_respects_max_jobs(stack) -> None:
    _enqueue(stack, 3)

    summary = stack.worker.run_loop(max_jobs=2, max_idle_polls=1)

    assert summary.processed == 2
    assert len(stack.jobs.list_jobs(status=JobStatus.QUEUED)) == 1


def test_transient_failures_exhaust_the_retry_budget(stack) -> None:
    stack.provider.default = ProviderError("upstream unavailable", status_code=503)
    (job_id,) = _enqueue(stack, max_retries=3)

    summary = stack.worker.run_loop(max_idle_polls=1)

    assert summary.processed == 3
    assert summary.retried == 2
    assert summary.failed == 1
    assert len(stack.provider.requests) == 3
    job = stack.jobs.get_job(job_id=job_id)
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 3
    assert job.failure_type == FailureType.INTERNAL_ERROR

    details = stack.jobs.get_job_details(job_id=job_id)
    assert details is not None
    event_types = [event.event_type for event in details.events]
    assert event_types.count("claimed") == 3
    assert event_types.count("retry_scheduled") == 2
    assert event_types.count("failed") == 1


def test_permanent_failure_is_not_retried(stack) -> None:
    stack.provider.default = ProviderError("invalid api key", status_code=401)
    (job_id,) = _enqueue(stack)

    summary = stack.worker.run_loop(max_idle_polls=1)

    assert summary.processed == 1
    assert summary.failed == 1
    job = stack.jobs.get_job(job_id=job_id)
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.failure_type == FailureType.AUTHENTICATION


def test_stop_request_prevents_new_claims(stack) -> None:
    _enqueue(stack)
    stack.worker.request_stop()

    once = stack.worker.run_once()
    loop = stack.worker.run_loop(max_idle_polls=1)

    assert once.processed == 0
    assert loop.processed == 0
    assert len(stack.jobs.list_jobs(status=JobStatus.QUEUED)) == 1


def test_listener_errors_do_not_break_processing(stack) -> None:
    (job_id,) = _enqueue(stack)
    worker = JobWorker(
        repository=stack.jobs,
        invoker=stack.invoker,
        worker_id="test-worker",
        listener=ExplodingListener(),
        poll_interval_seconds=0.0,
    )

    summary = worker.run_once()

    assert summary.succeeded == 1
    job = stack.jobs.get_job(job_id=job_id)
    assert job is not None
    assert job.status == JobStatus.COMPLETED


def test_loop_errors_propagate_and_restore_signal_handlers(stack, monkeypatch) -> None:
    original_sigint = signal.getsignal(signal.SIGINT)

    def broken_claim(**kwargs):
        raise ValueError("claim query failed")

    monkeypatch.setattr(stack.worker.repository, "claim", broken_claim)

    with pytest.raises(ValueError, match="claim query failed"):
        stack.worker.run_loop(max_idle_polls=1)

    assert signal.getsignal(signal.SIGINT) == original_sigint
