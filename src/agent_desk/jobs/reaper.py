"""Periodic sweep that recovers jobs whose worker stopped updating them."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from agent_desk.jobs.models import JobLifecycleListener, JobStatus, JobView
from agent_desk.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReapSummary:
    """Outcome of one sweep."""

    reaped: list[JobView] = field(default_factory=list)
    reconciled: int = 0

    @property
    def requeued(self) -> int:
        return sum(1 for job in self.reaped if job.status == JobStatus.QUEUED)

    @property
    def failed(self) -> int:
        return sum(1 for job in self.reaped if job.status == JobStatus.FAILED)


class Reaper:
    """Requeues jobs stuck in ``running`` longer than ``stuck_after``."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        stuck_after: timedelta,
        listener: JobLifecycleListener | None = None,
        interval_seconds: float = 300.0,
    ) -> None:
        self.repository = repository
        self.stuck_after = stuck_after
        self.listener = listener
        self.interval_seconds = interval_seconds

    def reap(self, *, now: datetime | None = None) -> ReapSummary:
        """Run one sweep; a second sweep with nothing stale changes nothing."""

        summary = ReapSummary(
            reaped=self.repository.reap_stale_jobs(stale_after=self.stuck_after, now=now),
        )
        for job in summary.reaped:
            self._notify(job)
        if self.listener is not None:
            try:
                summary.reconciled = self.listener.reconcile()
            except Exception:  # noqa: BLE001
                logger.exception("Workflow reconciliation failed during reaper sweep.")
        if summary.reaped or summary.reconciled:
            logger.info(
                "Reaper sweep: requeued=%d failed=%d reconciled=%d",
                summary.requeued,
                summary.failed,
                summary.reconciled,
            )
        return summary

    def run_forever(self, stop_event: threading.Event) -> None:
        """Sweep every ``interval_seconds`` until ``stop_event`` is set."""

        while not stop_event.is_set():
            try:
                self.reap()
            except Exception:  # noqa: BLE001
                logger.exception("Reaper sweep failed; retrying after interval.")
            stop_event.wait(self.interval_seconds)

    def start_background(self, stop_event: threading.Event) -> threading.Thread:
        thread = threading.Thread(
            target=self.run_forever,
            args=(stop_event,),
            name="agent-desk-reaper",
            daemon=True,
        )
        thread.start()
        return thread

    def _notify(self, job: JobView) -> None:
        if self.listener is None:
            return
        try:
            self.listener.on_job_finished(job)
        except Exception:  # noqa: BLE001
            logger.exception("Listener failed for reaped job %s.", job.job_id)
