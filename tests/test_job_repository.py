from __future__ import annotations

import queue
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from agent_desk.jobs.models import FailureStage, FailureType, JobCreate, JobStatus, TokenUsage
from agent_desk.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Store"),
]


def _job(job_id: str | None = None, **overrides) -> JobCreate:
    return JobCreate(
        capability="research",
        provider="scripted",
        model="test-model",
        input={"topic": "queues"},
        job_id=job_id,
        **overrides,
    )


def _claim_in_thread(
    db_path: Path,
    worker_id: str,
    barrier: threading.Barrier,
    results: queue.Queue[tuple[str, str | None]],
) -> None:
    repository = JobRepository(db_path, sqlite_busy_timeout_ms=10_000)
    try:
        barrier.wait(timeout=5)
        claimed = repository.claim(worker_id=worker_id)
        results.put((worker_id, claimed.job_id if claimed is not None else None))
    finally:
        repository.close()


def test_enqueue_creates_queued_job_with_event(job_repository: JobRepository) -> None:
    job = job_repository.enqueue(_job("job-1"))

    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.input == {"topic": "queues"}
    assert job.locked_by is None

    details = job_repository.get_job_details(job_id="job-1")
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued"]
    assert details.events[0].status_to == JobStatus.QUEUED


def test_enqueue_rejects_empty_retry_budget(job_repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="max_retries"):
        job_repository.enqueue(_job(max_retries=0))


def test_claim_returns_oldest_job_first(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("a-first"))
    job_repository.enqueue(_job("b-second"))

    first = job_repository.claim(worker_id="w1")
    second = job_repository.claim(worker_id="w1")

    assert first is not None
    assert second is not None
    assert first.job_id == "a-first"
    assert second.job_id == "b-second"
    assert first.status == JobStatus.RUNNING
    assert first.locked_by == "w1"
    assert first.locked_at is not None
    assert first.retry_count == 1
    assert job_repository.claim(worker_id="w1") is None


def test_claim_skips_jobs_scheduled_in_the_future(job_repository: JobRepository) -> None:
    later = datetime.now(tz=UTC) + timedelta(minutes=5)
    job_repository.enqueue(_job("delayed", run_after=later))

    assert job_repository.claim(worker_id="w1") is None
    claimed = job_repository.claim(worker_id="w1", now=later + timedelta(seconds=1))
    assert claimed is not None
    assert claimed.job_id == "delayed"


def test_concurrent_claims_hand_a_job_to_exactly_one_worker(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    repository.enqueue(_job("contested"))

    workers = 6
    barrier = threading.Barrier(workers)
    results: queue.Queue[tuple[str, str | None]] = queue.Queue()
    threads = [
        threading.Thread(
            target=_claim_in_thread,
            args=(db_path, f"worker-{index}", barrier, results),
        )
        for index in range(workers)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=15)

    outcomes = [results.get_nowait() for _ in range(workers)]
    winners = [worker_id for worker_id, job_id in outcomes if job_id == "contested"]
    assert len(winners) == 1

    job = repository.get_job(job_id="contested")
    assert job is not None
    assert job.status == JobStatus.RUNNING
    assert job.locked_by == winners[0]
    assert job.retry_count == 1
    repository.close()


def test_complete_requires_the_claiming_worker(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1"))
    job_repository.claim(worker_id="w1")

    stolen = job_repository.complete_job(
        job_id="job-1",
        worker_id="w2",
        output={"summary": "x"},
        usage=TokenUsage(),
        execution_time_ms=5,
    )
    assert stolen is None

    completed = job_repository.complete_job(
        job_id="job-1",
        worker_id="w1",
        output={"summary": "done"},
        usage=TokenUsage(prompt_tokens=10, completion_tokens=4),
        execution_time_ms=25,
    )
    assert completed is not None
    assert completed.status == JobStatus.COMPLETED
    assert completed.output == {"summary": "done"}
    assert completed.total_tokens == 14
    assert completed.execution_time_ms == 25
    assert completed.locked_by is None
    assert completed.completed_at is not None


def test_late_result_after_reap_is_discarded(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1"))
    job_repository.claim(worker_id="w1")

    reaped = job_repository.reap_stale_jobs(
        stale_after=timedelta(minutes=30),
        now=datetime.now(tz=UTC) + timedelta(hours=1),
    )
    assert [job.job_id for job in reaped] == ["job-1"]

    late = job_repository.complete_job(
        job_id="job-1",
        worker_id="w1",
        output={"summary": "too late"},
        usage=TokenUsage(),
        execution_time_ms=1,
    )
    assert late is None
    job = job_repository.get_job(job_id="job-1")
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.output is None


def test_schedule_retry_requeues_with_failure_details(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1"))
    job_repository.claim(worker_id="w1")
    run_after = datetime.now(tz=UTC) + timedelta(seconds=30)

    requeued = job_repository.schedule_retry(
        job_id="job-1",
        worker_id="w1",
        run_after=run_after,
        error_message="rate limited",
        failure_stage=FailureStage.LLM_CALL,
        failure_type=FailureType.RATE_LIMIT,
    )

    assert requeued is not None
    assert requeued.status == JobStatus.QUEUED
    assert requeued.retry_count == 1
    assert requeued.failure_type == FailureType.RATE_LIMIT
    assert requeued.error_message == "rate limited"
    assert requeued.next_run_at >= run_after - timedelta(seconds=1)
    assert job_repository.claim(worker_id="w1") is None


def test_claimer_never_exceeds_retry_budget(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1", max_retries=1))
    claimed = job_repository.claim(worker_id="w1")
    assert claimed is not None

    job_repository.schedule_retry(
        job_id="job-1",
        worker_id="w1",
        run_after=datetime.now(tz=UTC) - timedelta(seconds=1),
        error_message="boom",
        failure_stage=FailureStage.LLM_CALL,
        failure_type=FailureType.NETWORK,
    )

    assert job_repository.claim(worker_id="w1") is None


def test_fail_job_is_terminal(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1"))
    job_repository.claim(worker_id="w1")

    failed = job_repository.fail_job(
        job_id="job-1",
        worker_id="w1",
        error_message="bad key",
        failure_stage=FailureStage.LLM_CALL,
        failure_type=FailureType.AUTHENTICATION,
    )

    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.failure_stage == FailureStage.LLM_CALL
    assert failed.completed_at is not None
    assert job_repository.claim(worker_id="w1") is None


def test_manual_retry_resets_failed_job(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1"))
    job_repository.claim(worker_id="w1")
    job_repository.fail_job(
        job_id="job-1",
        worker_id="w1",
        error_message="bad key",
        failure_stage=FailureStage.LLM_CALL,
        failure_type=FailureType.AUTHENTICATION,
    )

    retried = job_repository.retry_job(job_id="job-1")

    assert retried.status == JobStatus.QUEUED
    assert retried.retry_count == 0
    assert retried.error_message is None
    assert retried.failure_type is None
    claimed = job_repository.claim(worker_id="w2")
    assert claimed is not None
    assert claimed.job_id == "job-1"


def test_manual_retry_rejects_active_job(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1"))

    with pytest.raises(RuntimeError, match="Only failed/cancelled jobs"):
        job_repository.retry_job(job_id="job-1")


def test_cancel_job_stops_queued_job(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1"))

    cancelled = job_repository.cancel_job(job_id="job-1")

    assert cancelled.status == JobStatus.CANCELLED
    assert job_repository.claim(worker_id="w1") is None
    with pytest.raises(RuntimeError, match="cannot be cancelled"):
        job_repository.cancel_job(job_id="job-1")


def test_cancel_unknown_job_raises(job_repository: JobRepository) -> None:
    with pytest.raises(RuntimeError, match="Job not found"):
        job_repository.cancel_job(job_id="missing")


def test_list_jobs_filters_by_status_and_task(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1"))
    job_repository.enqueue(_job("job-2"))
    job_repository.claim(worker_id="w1")

    queued = job_repository.list_jobs(status=JobStatus.QUEUED)
    running = job_repository.list_jobs(status=JobStatus.RUNNING)

    assert [job.job_id for job in queued] == ["job-2"]
    assert [job.job_id for job in running] == ["job-1"]
    assert job_repository.list_jobs(task_id="no-such-task") == []


def test_event_stream_records_full_lifecycle(job_repository: JobRepository) -> None:
    job_repository.enqueue(_job("job-1"))
    job_repository.claim(worker_id="w1")
    job_repository.add_job_event(job_id="job-1", event_type="heartbeat", details={"n": 1})
    job_repository.complete_job(
        job_id="job-1",
        worker_id="w1",
        output={},
        usage=TokenUsage(),
        execution_time_ms=3,
    )

    details = job_repository.get_job_details(job_id="job-1")

    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "heartbeat",
        "completed",
    ]
    assert details.events[1].details["worker_id"] == "w1"
    assert details.events[2].status_to is None
    assert job_repository.get_job_details(job_id="missing") is None
