"""Persistent job store: enqueue, claim, record results and reap."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_desk.jobs.models import (
    FailureStage,
    FailureType,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    TokenUsage,
)
from agent_desk.storage.alembic_runner import upgrade_head
from agent_desk.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_dict,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_desk.storage.sqlmodel_models import DEFAULT_USER_ID, AiJob, AiJobEvent, AppUser

logger = logging.getLogger(__name__)

REAPED_NOTE_TEMPLATE = " [Reaped: timeout after {minutes} minutes]"


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
        user_role: str = "admin",
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.user_role = user_role
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure actor context exists."""

        upgrade_head(self.db_path)
        self._ensure_actor_context()

    def _ensure_actor_context(self) -> None:
        with Session(self.engine) as session:
            user = session.exec(
                select(AppUser).where(AppUser.user_id == self.user_id),
            ).one_or_none()
            if user is not None:
                return
            session.add(
                AppUser(
                    user_id=self.user_id,
                    display_name=self.user_name,
                    role=self.user_role,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def enqueue(self, payload: JobCreate) -> JobView:
        """Create a queued job."""

        with Session(self.engine) as session:
            row = self.add_job(session=session, payload=payload)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def add_job(self, *, session: Session, payload: JobCreate) -> AiJob:
        """Stage a queued job inside the caller's transaction."""

        if payload.max_retries < 1:
            raise ValueError("Job max_retries must be >= 1.")
        now = utc_now()
        row = AiJob(
            job_id=payload.job_id or str(uuid4()),
            task_id=payload.task_id,
            capability=payload.capability,
            provider=payload.provider,
            model=payload.model,
            input_json=dump_json(payload.input),
            status=JobStatus.QUEUED.value,
            retry_count=0,
            max_retries=payload.max_retries,
            next_run_at=to_db_datetime(payload.run_after or now),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        session.add(row)
        self._add_event(
            session=session,
            job_id=row.job_id,
            event_type="enqueued",
            status_from=None,
            status_to=JobStatus.QUEUED,
            details={
                "capability": payload.capability,
                "provider": payload.provider,
                "model": payload.model,
                "max_retries": payload.max_retries,
            },
        )
        return row

    def claim(self, *, worker_id: str, now: datetime | None = None) -> JobView | None:
        """Atomically claim the oldest eligible queued job for ``worker_id``."""

        while True:
            claimed_at = to_db_datetime(now or utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(AiJob)
                    .where(
                        AiJob.status == JobStatus.QUEUED.value,
                        AiJob.next_run_at <= claimed_at,
                        col(AiJob.retry_count) < col(AiJob.max_retries),
                    )
                    .order_by(col(AiJob.created_at).asc(), col(AiJob.job_id).asc())
                    .limit(1)
                    .with_for_update(skip_locked=True),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(AiJob)
                    .where(
                        col(AiJob.job_id) == candidate.job_id,
                        col(AiJob.status) == JobStatus.QUEUED.value,
                        col(AiJob.retry_count) < col(AiJob.max_retries),
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        locked_by=worker_id,
                        locked_at=claimed_at,
                        started_at=claimed_at,
                        retry_count=col(AiJob.retry_count) + 1,
                        updated_at=claimed_at,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(AiJob)
                    .where(AiJob.job_id == candidate.job_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.RUNNING,
                    details={"worker_id": worker_id, "retry_count": claimed.retry_count},
                )
                session.commit()
                return _to_job_view(claimed)

    def complete_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        output: dict[str, Any],
        usage: TokenUsage,
        execution_time_ms: int,
    ) -> JobView | None:
        """Mark a running job held by ``worker_id`` as completed."""

        now = to_db_datetime(utc_now())
        return self._transition_running(
            job_id=job_id,
            worker_id=worker_id,
            status_to=JobStatus.COMPLETED,
            event_type="completed",
            values={
                "status": JobStatus.COMPLETED.value,
                "output_json": dump_json(output),
                "error_message": None,
                "failure_stage": None,
                "failure_type": None,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
                "execution_time_ms": execution_time_ms,
                "locked_by": None,
                "locked_at": None,
                "completed_at": now,
                "updated_at": now,
            },
            details={
                "total_tokens": usage.total_tokens,
                "execution_time_ms": execution_time_ms,
            },
        )

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        run_after: datetime,
        error_message: str,
        failure_stage: FailureStage,
        failure_type: FailureType,
        execution_time_ms: int | None = None,
    ) -> JobView | None:
        """Requeue a running job for an automatic retry at ``run_after``."""

        now = to_db_datetime(utc_now())
        return self._transition_running(
            job_id=job_id,
            worker_id=worker_id,
            status_to=JobStatus.QUEUED,
            event_type="retry_scheduled",
            values={
                "status": JobStatus.QUEUED.value,
                "next_run_at": to_db_datetime(run_after),
                "error_message": error_message,
                "failure_stage": failure_stage.value,
                "failure_type": failure_type.value,
                "execution_time_ms": execution_time_ms,
                "locked_by": None,
                "locked_at": None,
                "started_at": None,
                "updated_at": now,
            },
            details={
                "run_after": to_utc_aware_datetime(run_after).isoformat(),
                "failure_stage": failure_stage.value,
                "failure_type": failure_type.value,
            },
        )

    def fail_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        error_message: str,
        failure_stage: FailureStage,
        failure_type: FailureType,
        execution_time_ms: int | None = None,
    ) -> JobView | None:
        """Mark a running job as terminally failed."""

        now = to_db_datetime(utc_now())
        return self._transition_running(
            job_id=job_id,
            worker_id=worker_id,
            status_to=JobStatus.FAILED,
            event_type="failed",
            values={
                "status": JobStatus.FAILED.value,
                "error_message": error_message,
                "failure_stage": failure_stage.value,
                "failure_type": failure_type.value,
                "execution_time_ms": execution_time_ms,
                "locked_by": None,
                "locked_at": None,
                "completed_at": now,
                "updated_at": now,
            },
            details={
                "failure_stage": failure_stage.value,
                "failure_type": failure_type.value,
                "error_message": error_message,
            },
        )

    def reap_stale_jobs(
        self,
        *,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> list[JobView]:
        """Return jobs stuck in ``running`` past ``stale_after`` to the queue.

        Jobs whose retry budget is already spent are failed instead, since the
        claimer would never pick them up again.
        """

        reaped_at = to_db_datetime(now or utc_now())
        cutoff = reaped_at - stale_after
        minutes = _format_minutes(stale_after)
        note = REAPED_NOTE_TEMPLATE.format(minutes=minutes)
        reaped: list[JobView] = []
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(AiJob)
                .where(
                    AiJob.status == JobStatus.RUNNING.value,
                    col(AiJob.locked_at).is_not(None),
                    col(AiJob.locked_at) < cutoff,
                )
                .order_by(col(AiJob.locked_at).asc()),
            ).all()
            candidates = [(row.job_id, row.locked_by, row.locked_at) for row in stale_rows]

        for job_id, locked_by, locked_at in candidates:
            with Session(self.engine) as session:
                row = session.exec(select(AiJob).where(AiJob.job_id == job_id)).one()
                exhausted = row.retry_count >= row.max_retries
                status_to = JobStatus.FAILED if exhausted else JobStatus.QUEUED
                values: dict[str, Any] = {
                    "status": status_to.value,
                    "locked_by": None,
                    "locked_at": None,
                    "error_message": f"{row.error_message or ''}{note}",
                    "updated_at": reaped_at,
                }
                if exhausted:
                    values.update(
                        failure_stage=FailureStage.TIMEOUT.value,
                        failure_type=FailureType.TIMEOUT.value,
                        completed_at=reaped_at,
                    )
                else:
                    values.update(started_at=None, next_run_at=reaped_at)
                result = session.exec(
                    sa_update(AiJob)
                    .where(
                        col(AiJob.job_id) == job_id,
                        col(AiJob.status) == JobStatus.RUNNING.value,
                        col(AiJob.locked_at) == locked_at,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="reaped_exhausted" if exhausted else "reaped",
                    status_from=JobStatus.RUNNING,
                    status_to=status_to,
                    details={
                        "locked_by": locked_by,
                        "stale_after_minutes": minutes,
                        "retry_count": row.retry_count,
                    },
                )
                session.commit()
                logger.warning(
                    "Reaped job %s (capability=%s, locked_by=%s) -> %s",
                    job_id,
                    row.capability,
                    locked_by,
                    status_to.value,
                )
                refreshed = session.exec(select(AiJob).where(AiJob.job_id == job_id)).one()
                reaped.append(_to_job_view(refreshed))
        return reaped

    def retry_job(self, *, job_id: str) -> JobView:
        """Manual operator retry for failed/cancelled jobs."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous not in {JobStatus.FAILED, JobStatus.CANCELLED}:
                raise RuntimeError(
                    f"Only failed/cancelled jobs can be retried manually, got {row.status}.",
                )
            result = session.exec(
                sa_update(AiJob)
                .where(col(AiJob.job_id) == job_id, col(AiJob.status) == previous.value)
                .values(
                    status=JobStatus.QUEUED.value,
                    retry_count=0,
                    next_run_at=now,
                    locked_by=None,
                    locked_at=None,
                    started_at=None,
                    completed_at=None,
                    failure_stage=None,
                    failure_type=None,
                    error_message=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_retry",
                status_from=previous,
                status_to=JobStatus.QUEUED,
                details={},
            )
            session.commit()
            return _to_job_view(self._get_job_row(session=session, job_id=job_id))

    def cancel_job(self, *, job_id: str) -> JobView:
        """Cancel a queued/running job."""

        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous not in {JobStatus.QUEUED, JobStatus.RUNNING}:
                raise RuntimeError(f"Job cannot be cancelled from status={row.status}")
            if not self.cancel_job_in_session(session=session, job_id=job_id, previous=previous):
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while cancelling; "
                    f"please retry command (job_id={job_id}).",
                )
            session.commit()
            return _to_job_view(self._get_job_row(session=session, job_id=job_id))

    def cancel_job_in_session(
        self,
        *,
        session: Session,
        job_id: str,
        previous: JobStatus,
    ) -> bool:
        now = to_db_datetime(utc_now())
        result = session.exec(
            sa_update(AiJob)
            .where(col(AiJob.job_id) == job_id, col(AiJob.status) == previous.value)
            .values(
                status=JobStatus.CANCELLED.value,
                locked_by=None,
                locked_at=None,
                completed_at=now,
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            return False
        self._add_event(
            session=session,
            job_id=job_id,
            event_type="cancelled",
            status_from=previous,
            status_to=JobStatus.CANCELLED,
            details={},
        )
        return True

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(AiJob).where(AiJob.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and task."""

        with Session(self.engine) as session:
            statement = select(AiJob).order_by(col(AiJob.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(AiJob.status == status.value)
            if task_id is not None:
                statement = statement.where(AiJob.task_id == task_id)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(AiJob).where(AiJob.job_id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(AiJobEvent)
                .where(AiJobEvent.job_id == job_id)
                .order_by(col(AiJobEvent.created_at).asc(), col(AiJobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_dict(row.details_json),
            )
            for row in event_rows
        ]
        return JobDetails(job=_to_job_view(job), events=events)

    def add_job_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append an informational event without changing job state."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def _transition_running(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        status_to: JobStatus,
        event_type: str,
        values: dict[str, Any],
        details: dict[str, object],
    ) -> JobView | None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AiJob)
                .where(
                    col(AiJob.job_id) == job_id,
                    col(AiJob.status) == JobStatus.RUNNING.value,
                    col(AiJob.locked_by) == worker_id,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=JobStatus.RUNNING,
                status_to=status_to,
                details={"worker_id": worker_id, **details},
            )
            session.commit()
            return _to_job_view(self._get_job_row(session=session, job_id=job_id))

    def _get_job_row(self, *, session: Session, job_id: str) -> AiJob:
        row = session.exec(
            select(AiJob)
            .where(AiJob.job_id == job_id)
            .execution_options(populate_existing=True),
        ).one_or_none()
        if row is None:
            raise RuntimeError(f"Job not found: {job_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AiJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _format_minutes(value: timedelta) -> str:
    minutes = value.total_seconds() / 60
    if minutes.is_integer():
        return str(int(minutes))
    return f"{minutes:.1f}"


def to_job_view(row: AiJob) -> JobView:
    """Convert an ORM row into a detached job view."""

    return _to_job_view(row)


def _to_job_view(row: AiJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        task_id=row.task_id,
        capability=row.capability,
        provider=row.provider,
        model=row.model,
        input=load_json_dict(row.input_json),
        status=JobStatus(row.status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        locked_by=row.locked_by,
        locked_at=optional_utc(row.locked_at),
        next_run_at=to_utc_aware_datetime(row.next_run_at),
        output=load_json_dict(row.output_json) if row.output_json is not None else None,
        error_message=row.error_message,
        failure_stage=FailureStage(row.failure_stage) if row.failure_stage is not None else None,
        failure_type=FailureType(row.failure_type) if row.failure_type is not None else None,
        prompt_tokens=row.prompt_tokens,
        completion_tokens=row.completion_tokens,
        total_tokens=row.total_tokens,
        execution_time_ms=row.execution_time_ms,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
