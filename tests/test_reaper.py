from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta

import allure

from agent_desk.jobs.models import FailureType, JobCreate, JobStatus
from agent_desk.jobs.reaper import Reaper
from agent_desk.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Reaper"),
]

STUCK_AFTER = timedelta(minutes=30)


def _crashed_job(repository: JobRepository, *, max_retries: int = 3) -> str:
    job = repository.enqueue(
        JobCreate(
            capability="research",
            provider="scripted",
            model="test-model",
            max_retries=max_retries,
        ),
    )
    # Claimed by a worker that never reports back.
    claimed = repository.claim(worker_id="crashed-worker")
    assert claimed is not None
    return job.job_id


def _later(minutes: int = 31) -> datetime:
    return datetime.now(tz=UTC) + timedelta(minutes=minutes)


def test_stuck_job_is_requeued(job_repository: JobRepository, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="agent_desk.jobs.repository")
    job_id = _crashed_job(job_repository)
    reaper = Reaper(repository=job_repository, stuck_after=STUCK_AFTER)

    summary = reaper.reap(now=_later())

    assert summary.requeued == 1
    assert summary.failed == 0
    job = job_repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.locked_by is None
    assert job.locked_at is None
    assert job.retry_count == 1
    assert "[Reaped: timeout after 30 minutes]" in (job.error_message or "")

    details = job_repository.get_job_details(job_id=job_id)
    assert details is not None
    reaped = [event for event in details.events if event.event_type == "reaped"]
    assert reaped[0].details["locked_by"] == "crashed-worker"

    assert "locked_by=crashed-worker" in caplog.text

    again = job_repository.claim(worker_id="healthy-worker", now=_later(32))
    assert again is not None
    assert again.job_id == job_id
    assert again.retry_count == 2


def test_second_sweep_changes_nothing(job_repository: JobRepository) -> None:
    _crashed_job(job_repository)
    reaper = Reaper(repository=job_repository, stuck_after=STUCK_AFTER)

    first = reaper.reap(now=_later())
    second = reaper.reap(now=_later())

    assert first.requeued == 1
    assert second.reaped == []
    assert second.requeued == 0


def test_recent_running_job_is_left_alone(job_repository: JobRepository) -> None:
    job_id = _crashed_job(job_repository)
    reaper = Reaper(repository=job_repository, stuck_after=STUCK_AFTER)

    summary = reaper.reap(now=_later(5))

    assert summary.reaped == []
    job = job_repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status == JobStatus.RUNNING


def test_job_without_retries_left_is_failed(job_repository: JobRepository) -> None:
    job_id = _crashed_job(job_repository, max_retries=1)
    reaper = Reaper(repository=job_repository, stuck_after=STUCK_AFTER)

    summary = reaper.reap(now=_later())

    assert summary.failed == 1
    job = job_repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.failure_type == FailureType.TIMEOUT
    assert job.completed_at is not None
    details = job_repository.get_job_details(job_id=job_id)
    assert details is not None
    assert details.events[-1].event_type == "reaped_exhausted"


def test_background_thread_stops_on_event(job_repository: JobRepository) -> None:
    reaper = Reaper(repository=job_repository, stuck_after=STUCK_AFTER, interval_seconds=0.01)
    stop = threading.Event()

    thread = reaper.start_background(stop)
    stop.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
