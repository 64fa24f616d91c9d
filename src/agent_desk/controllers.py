"""Controllers for agent-desk CLI commands."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from agent_desk.agents import AgentInvoker, build_default_capabilities, build_default_providers
from agent_desk.config import Settings
from agent_desk.jobs.models import JobStatus
from agent_desk.jobs.reaper import Reaper
from agent_desk.jobs.repository import JobRepository
from agent_desk.jobs.worker import JobWorker
from agent_desk.workflow.approvals import ApprovalResolutionHandler
from agent_desk.workflow.definitions import default_workflows, load_workflow_file
from agent_desk.workflow.engine import WorkflowEngine
from agent_desk.workflow.models import Actor, ApprovalStatus, TaskCreate, TaskStatus
from agent_desk.workflow.repository import WorkflowRepository


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class TaskCreateCommand:
    db_path: Path | None
    title: str
    task_type: str
    input_json: str | None
    user_id: str | None = None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for show/cancel on one task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class WorkflowRegisterCommand:
    db_path: Path | None
    path: Path | None
    defaults: bool


@dataclass(slots=True)
class WorkflowStartCommand:
    db_path: Path | None
    task_id: str
    workflow: str


@dataclass(slots=True)
class ApprovalListCommand:
    db_path: Path | None
    status: str | None
    task_id: str | None
    limit: int


@dataclass(slots=True)
class ApprovalResolveCommand:
    db_path: Path | None
    approval_id: str
    decision: str
    notes: str | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    task_id: str | None
    limit: int


@dataclass(slots=True)
class JobRefCommand:
    """CLI input for inspect/retry/cancel on one job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class ReaperCommand:
    db_path: Path | None
    once: bool


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    jobs: JobRepository
    workflows: WorkflowRepository
    engine: WorkflowEngine
    actor: Actor


class AgentDeskCliController:
    """Coordinates queue, workflow, approval and worker CLI operations."""

    def init_db(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings):
            pass
        return [f"Database ready: {settings.db_path}"]

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_json_object(command.input_json, option="--input")
        with _runtime(settings) as runtime:
            task = runtime.workflows.create_task(
                TaskCreate(
                    title=command.title,
                    input=payload,
                    task_type=command.task_type,
                    user_id=command.user_id,
                ),
                actor=runtime.actor,
            )
        return [
            f"Task created: task_id={task.task_id} type={task.task_type} "
            f"owner={task.user_id} status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with _runtime(settings) as runtime:
            tasks = runtime.workflows.list_tasks(
                user_id=command.user_id,
                status=status,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"owner={task.user_id} title={task.title}",
            )
        return lines

    def show_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.workflows.get_task(task_id=command.task_id)
            if task is None:
                return [f"Task not found: {command.task_id}"]
            executions = runtime.workflows.list_executions(task_id=task.task_id)
            steps_by_execution = {
                execution.execution_id: runtime.workflows.list_step_executions(
                    execution_id=execution.execution_id,
                )
                for execution in executions
            }
            approvals = runtime.workflows.list_approvals(task_id=task.task_id, limit=500)

        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Error: {task.error_summary or '-'}",
            f"Executions: {len(executions)}",
        ]
        for execution in executions:
            lines.append(
                f"  {execution.execution_id} workflow={execution.workflow_id} "
                f"status={execution.status.value} "
                f"step={execution.current_step}/{execution.total_steps}",
            )
            for step in steps_by_execution[execution.execution_id]:
                lines.append(
                    f"    #{step.step_index} {step.step_name} kind={step.step_kind} "
                    f"status={step.status.value} job={step.job_id or '-'}"
                    + (f" error={step.error_summary}" if step.error_summary else ""),
                )
        lines.append(f"Approvals: {len(approvals)}")
        for approval in approvals:
            lines.append(
                f"  {approval.approval_id} step=#{approval.step_index} {approval.step_name} "
                f"status={approval.status.value} by={approval.responded_by or '-'}",
            )
        if task.output is not None:
            lines.append(f"Output: {json.dumps(task.output, sort_keys=True)}")
        return lines

    def cancel_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            if runtime.workflows.get_active_execution(task_id=command.task_id) is None:
                task = runtime.workflows.cancel_pending_task(
                    task_id=command.task_id,
                    actor=runtime.actor,
                )
                return [f"Task cancelled: task_id={task.task_id} status={task.status.value}"]
            execution = runtime.engine.cancel(task_id=command.task_id, actor=runtime.actor)
        return [
            f"Task cancelled: task_id={command.task_id} "
            f"execution={execution.execution_id} status={execution.status.value}",
        ]

    def register_workflows(self, command: WorkflowRegisterCommand) -> list[str]:
        if command.path is None and not command.defaults:
            raise ValueError("Provide a workflow FILE or --defaults.")
        definitions = list(default_workflows().values()) if command.defaults else []
        if command.path is not None:
            definitions.append(load_workflow_file(command.path))
        settings = Settings.from_env(db_path=command.db_path)
        lines: list[str] = []
        with _runtime(settings) as runtime:
            for definition in definitions:
                row, created = runtime.workflows.register_workflow(definition)
                verb = "registered" if created else "unchanged"
                lines.append(
                    f"Workflow {verb}: name={row.name} version={row.version} "
                    f"workflow_id={row.workflow_id} steps={len(definition.steps)}",
                )
        return lines

    def list_workflows(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            rows = runtime.workflows.list_workflows()
        lines = [f"Workflows: {len(rows)}"]
        for row in rows:
            lines.append(
                f"  {row.workflow_id} name={row.name} version={row.version} "
                f"sha256={row.definition_sha256[:12]}",
            )
        return lines

    def default_workflows(self) -> list[str]:
        lines: list[str] = []
        for key, definition in default_workflows().items():
            lines.append(f"{key}: {definition.description}")
            for index, step in enumerate(definition.steps):
                detail = getattr(step, "capability", None) or step.kind
                lines.append(f"  #{index} {step.name} ({detail})")
        return lines

    def start_workflow(self, command: WorkflowStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            execution = runtime.engine.start(
                task_id=command.task_id,
                workflow_ref=command.workflow,
                actor=runtime.actor,
            )
        return [
            f"Workflow started: execution_id={execution.execution_id} "
            f"task_id={execution.task_id} status={execution.status.value} "
            f"step={execution.current_step}/{execution.total_steps}",
        ]

    def list_approvals(self, command: ApprovalListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = ApprovalStatus(command.status) if command.status else None
        with _runtime(settings) as runtime:
            approvals = runtime.workflows.list_approvals(
                status=status,
                task_id=command.task_id,
                limit=command.limit,
            )
        lines = [f"Approvals: {len(approvals)}"]
        for approval in approvals:
            lines.append(
                f"  {approval.approval_id} task={approval.task_id} "
                f"step=#{approval.step_index} {approval.step_name} "
                f"status={approval.status.value}",
            )
        return lines

    def resolve_approval(self, command: ApprovalResolveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            handler = ApprovalResolutionHandler(runtime.engine)
            outcome = handler.resolve(
                command.approval_id,
                command.decision,
                command.notes,
                actor=runtime.actor,
            )
        lines = [
            f"Approval resolved: approval_id={outcome.approval.approval_id} "
            f"decision={outcome.approval.status.value}",
            f"Task status: {outcome.task_status.value}",
            f"Execution status: {outcome.execution_status.value} step={outcome.current_step}",
        ]
        if outcome.job_id is not None:
            lines.append(f"Revision job enqueued: {outcome.job_id}")
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status) if command.status else None
        with _runtime(settings) as runtime:
            jobs = runtime.jobs.list_jobs(
                status=status,
                task_id=command.task_id,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} capability={job.capability} status={job.status.value} "
                f"attempt={job.retry_count}/{job.max_retries} "
                f"provider={job.provider}:{job.model} "
                f"next_run_at={job.next_run_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            details = runtime.jobs.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        failure = (
            f"{job.failure_stage.value}/{job.failure_type.value}"
            if job.failure_stage is not None and job.failure_type is not None
            else "-"
        )
        lines = [
            f"Job: {job.job_id}",
            f"Task: {job.task_id or '-'}",
            f"Capability: {job.capability}",
            f"Provider: {job.provider} model={job.model}",
            f"Status: {job.status.value}",
            f"Attempt: {job.retry_count}/{job.max_retries}",
            f"Locked by: {job.locked_by or '-'}",
            f"Failure: {failure}",
            f"Error: {job.error_message or '-'}",
            f"Tokens: {job.total_tokens if job.total_tokens is not None else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_job(self, command: JobRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            job = runtime.jobs.retry_job(job_id=command.job_id)
        return [f"Job re-queued: job_id={job.job_id} status={job.status.value}"]

    def cancel_job(self, command: JobRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            job = runtime.jobs.cancel_job(job_id=command.job_id)
            runtime.engine.on_job_finished(job)
        return [f"Job cancelled: job_id={job.job_id} status={job.status.value}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        providers = build_default_providers(settings.llm)
        try:
            with _runtime(settings) as runtime:
                invoker = AgentInvoker(
                    repository=runtime.jobs,
                    capabilities=build_default_capabilities(),
                    providers=providers,
                    retry=settings.retry,
                    job_timeout_seconds=settings.worker.job_timeout_seconds,
                    worker_id=settings.worker.worker_id,
                )
                worker = JobWorker(
                    repository=runtime.jobs,
                    invoker=invoker,
                    worker_id=settings.worker.worker_id,
                    listener=runtime.engine,
                    poll_interval_seconds=settings.worker.poll_interval_seconds,
                    max_concurrent_jobs=settings.worker.max_concurrent_jobs,
                    heartbeat_seconds=settings.worker.heartbeat_seconds,
                    graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
                    reaper=None if command.once else _build_reaper(runtime),
                )
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_jobs=command.max_jobs,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
        finally:
            providers.close()

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"timeouts={summary.timeouts} idle_polls={summary.idle_polls}",
        ]

    def run_reaper(self, command: ReaperCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            reaper = _build_reaper(runtime)
            if command.once:
                summary = reaper.reap()
                return [
                    "Reaper summary: "
                    f"requeued={summary.requeued} failed={summary.failed} "
                    f"reconciled={summary.reconciled}",
                ]
            stop_event = threading.Event()
            try:
                reaper.run_forever(stop_event)
            except KeyboardInterrupt:
                stop_event.set()
        return ["Reaper stopped."]


def _build_reaper(runtime: _Runtime) -> Reaper:
    return Reaper(
        repository=runtime.jobs,
        stuck_after=timedelta(minutes=runtime.settings.reaper.stuck_job_timeout_minutes),
        listener=runtime.engine,
        interval_seconds=runtime.settings.reaper.interval_seconds,
    )


def _parse_json_object(raw: str | None, *, option: str) -> dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"{option} must be valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"{option} must be a JSON object.")
    return payload


@contextmanager
def _runtime(settings: Settings) -> Iterator[_Runtime]:
    jobs = JobRepository(
        db_path=settings.db_path,
        user_id=settings.user_context.user_id,
        user_name=settings.user_context.user_name,
        user_role=settings.user_context.role,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    jobs.init_schema()
    workflows = WorkflowRepository(jobs.engine)
    try:
        yield _Runtime(
            settings=settings,
            jobs=jobs,
            workflows=workflows,
            engine=WorkflowEngine(
                repository=workflows,
                jobs=jobs,
                llm=settings.llm,
                retry=settings.retry,
            ),
            actor=Actor(user_id=settings.user_context.user_id, role=settings.user_context.role),
        )
    finally:
        jobs.close()
