"""Queue worker that claims jobs and runs them through the agent invoker."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass

from agent_desk.agents.invoker import AgentInvoker, InvocationOutcome
from agent_desk.jobs.models import JobLifecycleListener, JobView
from agent_desk.jobs.reaper import Reaper
from agent_desk.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.idle_polls += other.idle_polls


class JobWorker:
    """Claims queued jobs and executes them, up to ``max_concurrent_jobs`` at once."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        invoker: AgentInvoker,
        worker_id: str,
        listener: JobLifecycleListener | None = None,
        poll_interval_seconds: float = 5.0,
        max_concurrent_jobs: int = 3,
        heartbeat_seconds: float = 60.0,
        graceful_shutdown_seconds: float = 30.0,
        reaper: Reaper | None = None,
    ) -> None:
        self.repository = repository
        self.invoker = invoker
        self.worker_id = worker_id
        self.listener = listener
        self.poll_interval_seconds = poll_interval_seconds
        self.max_concurrent_jobs = max_concurrent_jobs
        self.heartbeat_seconds = heartbeat_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.reaper = reaper
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._last_heartbeat = time.monotonic()

    def run_once(self) -> WorkerRunSummary:
        """Claim and process at most one job synchronously."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        job = self.repository.claim(worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary
        return self._process(job)

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until the queue stays idle, ``max_jobs`` were claimed or a signal arrives.

        Args:
            max_jobs: Stop claiming after this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls, with nothing in flight,
                before exiting (None = poll forever).
        """

        aggregate = WorkerRunSummary()
        claimed = 0
        consecutive_idle = 0
        in_flight: set[Future[WorkerRunSummary]] = set()
        reaper_stop = threading.Event()
        reaper_thread = (
            self.reaper.start_background(reaper_stop) if self.reaper is not None else None
        )
        pool = ThreadPoolExecutor(
            max_workers=self.max_concurrent_jobs,
            thread_name_prefix=f"worker-{self.worker_id}",
        )
        logger.info(
            "Worker %s started (max_concurrent_jobs=%d, poll_interval=%.1fs)",
            self.worker_id,
            self.max_concurrent_jobs,
            self.poll_interval_seconds,
        )
        try:
            with self._signal_handlers():
                while True:
                    self._collect_done(in_flight, aggregate)
                    self._maybe_heartbeat(aggregate, active=len(in_flight))
                    if self._stop_requested:
                        break
                    if max_jobs is not None and claimed >= max_jobs:
                        break
                    if len(in_flight) >= self.max_concurrent_jobs:
                        wait(in_flight, timeout=self._wait_timeout(), return_when=FIRST_COMPLETED)
                        continue

                    job = self.repository.claim(worker_id=self.worker_id)
                    if job is None:
                        aggregate.idle_polls += 1
                        if in_flight:
                            wait(
                                in_flight,
                                timeout=self._wait_timeout(),
                                return_when=FIRST_COMPLETED,
                            )
                            continue
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                        self._sleep_with_stop(self.poll_interval_seconds)
                        continue

                    consecutive_idle = 0
                    claimed += 1
                    in_flight.add(pool.submit(self._process, job))
                self._drain(in_flight, aggregate)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
            reaper_stop.set()
            if reaper_thread is not None:
                reaper_thread.join(timeout=self.graceful_shutdown_seconds)
            logger.info(
                "Worker %s stopped%s: processed=%d succeeded=%d failed=%d retried=%d",
                self.worker_id,
                f" on {self._stop_signal_name}" if self._stop_signal_name else "",
                aggregate.processed,
                aggregate.succeeded,
                aggregate.failed,
                aggregate.retried,
            )
        return aggregate

    def request_stop(self) -> None:
        """Stop claiming; in-flight jobs are drained by ``run_loop``."""

        self._stop_requested = True

    def _process(self, job: JobView) -> WorkerRunSummary:
        summary = WorkerRunSummary(processed=1)
        self._notify("on_job_claimed", job)
        outcome = self.invoker.invoke(job)
        _count_outcome(summary, outcome)
        if outcome.job is not None:
            self._notify("on_job_finished", outcome.job)
        return summary

    def _notify(self, hook: str, job: JobView) -> None:
        if self.listener is None:
            return
        try:
            getattr(self.listener, hook)(job)
        except Exception:  # noqa: BLE001
            logger.exception("Listener %s failed for job %s.", hook, job.job_id)

    def _collect_done(
        self,
        in_flight: set[Future[WorkerRunSummary]],
        aggregate: WorkerRunSummary,
    ) -> None:
        for future in [item for item in in_flight if item.done()]:
            in_flight.discard(future)
            try:
                aggregate.add(future.result())
            except Exception:  # noqa: BLE001
                logger.exception("Job processing crashed; the reaper will recover the job.")
                aggregate.processed += 1
                aggregate.failed += 1

    def _drain(
        self,
        in_flight: set[Future[WorkerRunSummary]],
        aggregate: WorkerRunSummary,
    ) -> None:
        if not in_flight:
            return
        timeout = self.graceful_shutdown_seconds if self._stop_requested else None
        _, pending = wait(in_flight, timeout=timeout)
        self._collect_done(in_flight, aggregate)
        if pending:
            logger.warning(
                "%d job(s) still running after %.0fs graceful shutdown; "
                "the reaper will requeue them.",
                len(pending),
                self.graceful_shutdown_seconds,
            )

    def _maybe_heartbeat(self, aggregate: WorkerRunSummary, *, active: int) -> None:
        if self.heartbeat_seconds <= 0:
            return
        now = time.monotonic()
        if now - self._last_heartbeat < self.heartbeat_seconds:
            return
        self._last_heartbeat = now
        logger.info(
            "Worker %s heartbeat: active=%d processed=%d succeeded=%d failed=%d retried=%d",
            self.worker_id,
            active,
            aggregate.processed,
            aggregate.succeeded,
            aggregate.failed,
            aggregate.retried,
        )

    def _wait_timeout(self) -> float:
        return max(self.poll_interval_seconds, 0.05)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info(
            "Worker %s received %s; draining in-flight jobs (up to %.0fs).",
            self.worker_id,
            signal_name,
            self.graceful_shutdown_seconds,
        )


def _count_outcome(summary: WorkerRunSummary, outcome: InvocationOutcome) -> None:
    if outcome.timed_out:
        summary.timeouts = 1
    if not outcome.recorded:
        return
    if outcome.success:
        summary.succeeded = 1
    elif outcome.retry_scheduled:
        summary.retried = 1
    else:
        summary.failed = 1
