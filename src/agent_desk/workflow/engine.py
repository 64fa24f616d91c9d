"""Workflow state machine driving a task through its typed steps.

An execution moves through its steps strictly in index order. AI steps
enqueue a job in the same transaction that records the step and return;
the worker reports the job back through :meth:`WorkflowEngine.on_job_finished`.
Approval steps open a pending approval record and halt. Publish and custom
steps run inline. Every cursor move is a compare-and-set on
``(current_step, status)`` so duplicate job notifications cannot advance an
execution twice.
"""

from __future__ import annotations

import logging
from typing import Any, assert_never
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_desk.config import LlmSettings, RetrySettings
from agent_desk.jobs.models import TERMINAL_JOB_STATUSES, JobCreate, JobStatus, JobView
from agent_desk.jobs.repository import JobRepository
from agent_desk.storage.common import dump_json, load_json_dict, to_db_datetime, utc_now
from agent_desk.storage.sqlmodel_models import (
    AiJob,
    Approval,
    Task,
    WorkflowExecution,
    WorkflowStepExecution,
)
from agent_desk.workflow.conditions import evaluate_condition
from agent_desk.workflow.definitions import (
    AiStep,
    ApprovalStep,
    CustomStep,
    PublishStep,
    StepSpec,
    WorkflowDefinition,
)
from agent_desk.workflow.errors import (
    WorkflowForbiddenError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from agent_desk.workflow.models import (
    ACTIVE_EXECUTION_STATUSES,
    FINAL_STEP_STATUSES,
    Actor,
    ApprovalStatus,
    ExecutionStatus,
    ExecutionView,
    StepStatus,
    TaskStatus,
)
from agent_desk.workflow.repository import WorkflowRepository, to_execution_view, to_task_view
from agent_desk.workflow.steps import StepContext, StepHandlerRegistry

logger = logging.getLogger(__name__)

CANCELLED_NOTE = "cancelled"
_ACTIVE_VALUES = [status.value for status in ACTIVE_EXECUTION_STATUSES]
_OPEN_STEP_VALUES = [StepStatus.PENDING.value, StepStatus.RUNNING.value]


class WorkflowEngine:
    """Owns workflow execution, step execution and approval-opening writes."""

    def __init__(
        self,
        *,
        repository: WorkflowRepository,
        jobs: JobRepository,
        llm: LlmSettings,
        retry: RetrySettings,
        handlers: StepHandlerRegistry | None = None,
    ) -> None:
        self.repository = repository
        self.jobs = jobs
        self.engine = repository.engine
        self.llm = llm
        self.retry = retry
        self.handlers = handlers or StepHandlerRegistry()

    def start(self, *, task_id: str, workflow_ref: str, actor: Actor) -> ExecutionView:
        """Create an execution of ``workflow_ref`` for the task and run its first steps."""

        workflow = self.repository.resolve_workflow(workflow_ref)
        definition = self.repository.load_definition(workflow.workflow_id)
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            task = self.get_task_row(session, task_id)
            if not actor.can_act_on(task.user_id):
                raise WorkflowForbiddenError(
                    f"User {actor.user_id} cannot start workflows for task {task_id}.",
                )
            claimed = session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id, col(Task.status).not_in(_ACTIVE_VALUES))
                .values(
                    status=TaskStatus.RUNNING.value,
                    output_json=None,
                    error_summary=None,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            active = session.exec(
                select(WorkflowExecution.execution_id).where(
                    WorkflowExecution.task_id == task_id,
                    col(WorkflowExecution.status).in_(_ACTIVE_VALUES),
                ),
            ).first()
            if claimed.rowcount != 1 or active is not None:
                session.rollback()
                raise WorkflowStateError(
                    f"Task {task_id} already has an active workflow execution.",
                )

            execution = WorkflowExecution(
                execution_id=str(uuid4()),
                task_id=task_id,
                workflow_id=workflow.workflow_id,
                status=ExecutionStatus.RUNNING.value,
                current_step=0,
                total_steps=len(definition.steps),
                context_json=dump_json({}),
                created_at=now,
                updated_at=now,
            )
            session.add(execution)
            session.flush()
            task = self.get_task_row(session, task_id)
            self.advance(session, execution=execution, task=task, definition=definition)
            session.commit()
            session.refresh(execution)
            view = to_execution_view(execution)
        logger.info(
            "Started workflow %s v%d for task %s (execution %s, status=%s)",
            workflow.name,
            workflow.version,
            task_id,
            view.execution_id,
            view.status.value,
        )
        return view

    def cancel(self, *, task_id: str, actor: Actor) -> ExecutionView:
        """Cancel the active execution, its open jobs and pending approvals."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            task = self.get_task_row(session, task_id)
            if not actor.can_act_on(task.user_id):
                raise WorkflowForbiddenError(f"User {actor.user_id} cannot cancel task {task_id}.")
            execution = session.exec(
                select(WorkflowExecution).where(
                    WorkflowExecution.task_id == task_id,
                    col(WorkflowExecution.status).in_(_ACTIVE_VALUES),
                ),
            ).first()
            if execution is None:
                raise WorkflowStateError(f"Task {task_id} has no active workflow execution.")
            result = session.exec(
                sa_update(WorkflowExecution)
                .where(
                    col(WorkflowExecution.execution_id) == execution.execution_id,
                    col(WorkflowExecution.status).in_(_ACTIVE_VALUES),
                )
                .values(
                    status=ExecutionStatus.CANCELLED.value,
                    error_summary=f"Cancelled by {actor.user_id}",
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise WorkflowStateError(
                    "Execution state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )

            open_jobs = session.exec(
                select(AiJob).where(
                    AiJob.task_id == task_id,
                    col(AiJob.status).in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
                ),
            ).all()
            for job in open_jobs:
                self.jobs.cancel_job_in_session(
                    session=session,
                    job_id=job.job_id,
                    previous=JobStatus(job.status),
                )
            session.exec(
                sa_update(WorkflowStepExecution)
                .where(
                    col(WorkflowStepExecution.execution_id) == execution.execution_id,
                    col(WorkflowStepExecution.status).in_(_OPEN_STEP_VALUES),
                )
                .values(
                    status=StepStatus.FAILED.value,
                    error_summary=CANCELLED_NOTE,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            session.exec(
                sa_update(Approval)
                .where(
                    col(Approval.execution_id) == execution.execution_id,
                    col(Approval.status) == ApprovalStatus.PENDING.value,
                )
                .values(
                    status=ApprovalStatus.REJECTED.value,
                    notes=CANCELLED_NOTE,
                    responded_by=actor.user_id,
                    responded_at=now,
                    updated_at=now,
                ),
            )
            task = self.get_task_row(session, task_id)
            task.status = TaskStatus.CANCELLED.value
            task.completed_at = now
            task.updated_at = now
            session.add(task)
            session.commit()
            view = to_execution_view(self.get_execution_row(session, execution.execution_id))
        logger.info("Cancelled task %s (execution %s)", task_id, view.execution_id)
        return view

    def on_job_claimed(self, job: JobView) -> None:
        """Mirror a claim on the linked step: ``pending`` -> ``running``."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(WorkflowStepExecution)
                .where(
                    col(WorkflowStepExecution.job_id) == job.job_id,
                    col(WorkflowStepExecution.status) == StepStatus.PENDING.value,
                )
                .values(
                    status=StepStatus.RUNNING.value,
                    started_at=now,
                    updated_at=now,
                ),
            )
            session.commit()

    def on_job_finished(self, job: JobView) -> bool:  # noqa: PLR0911
        """Apply a job outcome to its step; return ``False`` when nothing changed.

        The job row is re-read, so stale or duplicate notifications are
        harmless.
        """

        with Session(self.engine) as session:
            step_row = session.exec(
                select(WorkflowStepExecution)
                .where(WorkflowStepExecution.job_id == job.job_id)
                .execution_options(populate_existing=True),
            ).one_or_none()
            if step_row is None or StepStatus(step_row.status) in FINAL_STEP_STATUSES:
                return False
            execution = self.get_execution_row(session, step_row.execution_id)
            if (
                execution.status != ExecutionStatus.RUNNING.value
                or execution.current_step != step_row.step_index
            ):
                return False
            job_row = session.exec(
                select(AiJob)
                .where(AiJob.job_id == job.job_id)
                .execution_options(populate_existing=True),
            ).one()
            status = JobStatus(job_row.status)

            if status == JobStatus.QUEUED:
                return self._requeue_step(session, step_row=step_row, job_row=job_row)
            if status in {JobStatus.FAILED, JobStatus.CANCELLED}:
                return self._fail_step_from_job(
                    session,
                    execution=execution,
                    step_row=step_row,
                    job_row=job_row,
                )
            if status == JobStatus.COMPLETED:
                return self._complete_step_from_job(
                    session,
                    execution=execution,
                    step_row=step_row,
                    job_row=job_row,
                )
            return False

    def reconcile(self) -> int:
        """Replay terminal jobs whose steps were never advanced."""

        with Session(self.engine) as session:
            job_ids = session.exec(
                select(WorkflowStepExecution.job_id)
                .join(AiJob, col(AiJob.job_id) == col(WorkflowStepExecution.job_id))
                .where(
                    col(WorkflowStepExecution.status).in_(_OPEN_STEP_VALUES),
                    col(AiJob.status).in_([status.value for status in TERMINAL_JOB_STATUSES]),
                ),
            ).all()
        applied = 0
        for job_id in job_ids:
            if job_id is None:
                continue
            job = self.jobs.get_job(job_id=job_id)
            if job is not None and self.on_job_finished(job):
                applied += 1
        if applied:
            logger.info("Reconciled %d workflow step(s) with finished jobs.", applied)
        return applied

    def advance(
        self,
        session: Session,
        *,
        execution: WorkflowExecution,
        task: Task,
        definition: WorkflowDefinition | None = None,
    ) -> None:
        """Process steps from ``execution.current_step`` until one must wait.

        Runs inside the caller's transaction; the caller commits.
        """

        definition = definition or self.repository.load_definition(execution.workflow_id)
        now = to_db_datetime(utc_now())
        while execution.current_step < execution.total_steps:
            index = execution.current_step
            step = definition.steps[index]
            context = load_json_dict(execution.context_json)
            execution.updated_at = now

            if step.condition is not None and not evaluate_condition(step.condition, context):
                self.upsert_step(
                    session,
                    execution_id=execution.execution_id,
                    index=index,
                    step=step,
                    status=StepStatus.SKIPPED,
                    completed=True,
                )
                execution.current_step = index + 1
                continue

            if isinstance(step, AiStep):
                self.enqueue_ai_step(
                    session,
                    execution=execution,
                    task=task,
                    index=index,
                    step=step,
                )
                self._set_status(execution, task, ExecutionStatus.RUNNING, TaskStatus.RUNNING)
                return
            if isinstance(step, ApprovalStep):
                self._open_approval(session, execution=execution, task=task, index=index, step=step)
                return
            if isinstance(step, (PublishStep, CustomStep)):
                if not self._run_inline_step(
                    session,
                    execution=execution,
                    task=task,
                    index=index,
                    step=step,
                    context=context,
                ):
                    return
                continue
            assert_never(step)

        execution.status = ExecutionStatus.COMPLETED.value
        execution.completed_at = now
        execution.error_summary = None
        task.status = TaskStatus.COMPLETED.value
        task.output_json = execution.context_json
        task.error_summary = None
        task.completed_at = now
        task.updated_at = now
        session.add(execution)
        session.add(task)
        logger.info("Workflow execution %s completed.", execution.execution_id)

    def enqueue_ai_step(  # noqa: PLR0913
        self,
        session: Session,
        *,
        execution: WorkflowExecution,
        task: Task,
        index: int,
        step: AiStep,
        extra_input: dict[str, Any] | None = None,
    ) -> str:
        """Stage the step's job and link it to the step row; return the job id."""

        payload = {
            **load_json_dict(task.input_json),
            **load_json_dict(execution.context_json),
            **step.static_input,
            **(extra_input or {}),
        }
        job = self.jobs.add_job(
            session=session,
            payload=JobCreate(
                capability=step.capability,
                provider=step.provider or self.llm.default_provider,
                model=step.model or self.llm.default_model,
                input=payload,
                task_id=task.task_id,
                max_retries=step.retry_count or self.retry.max_retries,
            ),
        )
        session.flush()
        self.upsert_step(
            session,
            execution_id=execution.execution_id,
            index=index,
            step=step,
            status=StepStatus.PENDING,
            input_payload=payload,
            job_id=job.job_id,
        )
        return job.job_id

    def upsert_step(  # noqa: PLR0913
        self,
        session: Session,
        *,
        execution_id: str,
        index: int,
        step: StepSpec,
        status: StepStatus,
        input_payload: dict[str, Any] | None = None,
        output: dict[str, Any] | None = None,
        job_id: str | None = None,
        error_summary: str | None = None,
        completed: bool = False,
    ) -> WorkflowStepExecution:
        """Create or reset the single row for ``(execution_id, index)``."""

        now = to_db_datetime(utc_now())
        row = session.exec(
            select(WorkflowStepExecution)
            .where(
                WorkflowStepExecution.execution_id == execution_id,
                WorkflowStepExecution.step_index == index,
            )
            .execution_options(populate_existing=True),
        ).one_or_none()
        if row is None:
            row = WorkflowStepExecution(
                execution_id=execution_id,
                step_index=index,
                step_name=step.name,
                step_kind=step.kind,
                status=status.value,
                input_json=dump_json({}),
                created_at=now,
                updated_at=now,
            )
        row.step_name = step.name
        row.step_kind = step.kind
        row.status = status.value
        row.job_id = job_id
        row.input_json = dump_json(input_payload or {})
        row.output_json = dump_json(output) if output is not None else None
        row.error_summary = error_summary
        row.started_at = now if status == StepStatus.RUNNING or completed else None
        row.completed_at = now if completed else None
        row.updated_at = now
        session.add(row)
        return row

    def mark_failed(
        self,
        execution: WorkflowExecution,
        task: Task,
        message: str,
    ) -> None:
        now = to_db_datetime(utc_now())
        execution.status = ExecutionStatus.FAILED.value
        execution.error_summary = message
        execution.completed_at = now
        execution.updated_at = now
        task.status = TaskStatus.FAILED.value
        task.error_summary = message
        task.updated_at = now

    def get_task_row(self, session: Session, task_id: str) -> Task:
        row = session.exec(
            select(Task).where(Task.task_id == task_id).execution_options(populate_existing=True),
        ).one_or_none()
        if row is None:
            raise WorkflowNotFoundError(f"Task not found: {task_id}")
        return row

    def get_execution_row(self, session: Session, execution_id: str) -> WorkflowExecution:
        row = session.exec(
            select(WorkflowExecution)
            .where(WorkflowExecution.execution_id == execution_id)
            .execution_options(populate_existing=True),
        ).one_or_none()
        if row is None:
            raise WorkflowNotFoundError(f"Workflow execution not found: {execution_id}")
        return row

    def _open_approval(
        self,
        session: Session,
        *,
        execution: WorkflowExecution,
        task: Task,
        index: int,
        step: ApprovalStep,
    ) -> None:
        now = to_db_datetime(utc_now())
        self.upsert_step(
            session,
            execution_id=execution.execution_id,
            index=index,
            step=step,
            status=StepStatus.PENDING,
            input_payload={"instructions": step.instructions} if step.instructions else None,
        )
        session.add(
            Approval(
                approval_id=str(uuid4()),
                task_id=task.task_id,
                execution_id=execution.execution_id,
                step_index=index,
                step_name=step.name,
                status=ApprovalStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            ),
        )
        self._set_status(
            execution,
            task,
            ExecutionStatus.WAITING_APPROVAL,
            TaskStatus.WAITING_APPROVAL,
        )
        logger.info(
            "Execution %s waiting for approval at step %s (#%d)",
            execution.execution_id,
            step.name,
            index,
        )

    def _run_inline_step(  # noqa: PLR0913
        self,
        session: Session,
        *,
        execution: WorkflowExecution,
        task: Task,
        index: int,
        step: PublishStep | CustomStep,
        context: dict[str, Any],
    ) -> bool:
        step_context = StepContext(
            task=to_task_view(task),
            execution_id=execution.execution_id,
            step_index=index,
            context=dict(context),
        )
        try:
            output = self.handlers.run(step, step_context)
        except Exception as error:  # noqa: BLE001
            message = f"Step '{step.name}' (#{index}, {step.kind}) failed: {error}"
            logger.warning("Execution %s: %s", execution.execution_id, message)
            self.upsert_step(
                session,
                execution_id=execution.execution_id,
                index=index,
                step=step,
                status=StepStatus.FAILED,
                input_payload=step.static_input,
                error_summary=message,
                completed=True,
            )
            self.mark_failed(execution, task, message)
            session.add(execution)
            session.add(task)
            return False

        self.upsert_step(
            session,
            execution_id=execution.execution_id,
            index=index,
            step=step,
            status=StepStatus.COMPLETED,
            input_payload=step.static_input,
            output=output,
            completed=True,
        )
        context[step.name] = output
        execution.context_json = dump_json(context)
        execution.current_step = index + 1
        return True

    def _requeue_step(
        self,
        session: Session,
        *,
        step_row: WorkflowStepExecution,
        job_row: AiJob,
    ) -> bool:
        result = session.exec(
            sa_update(WorkflowStepExecution)
            .where(
                col(WorkflowStepExecution.id) == step_row.id,
                col(WorkflowStepExecution.job_id) == job_row.job_id,
                col(WorkflowStepExecution.status).in_(_OPEN_STEP_VALUES),
            )
            .values(
                status=StepStatus.PENDING.value,
                error_summary=job_row.error_message,
                updated_at=to_db_datetime(utc_now()),
            ),
        )
        session.commit()
        return result.rowcount == 1

    def _fail_step_from_job(
        self,
        session: Session,
        *,
        execution: WorkflowExecution,
        step_row: WorkflowStepExecution,
        job_row: AiJob,
    ) -> bool:
        message = _job_failure_summary(step_row, job_row)
        now = to_db_datetime(utc_now())
        result = session.exec(
            sa_update(WorkflowExecution)
            .where(
                col(WorkflowExecution.execution_id) == execution.execution_id,
                col(WorkflowExecution.status) == ExecutionStatus.RUNNING.value,
                col(WorkflowExecution.current_step) == step_row.step_index,
            )
            .values(
                status=ExecutionStatus.FAILED.value,
                error_summary=message,
                completed_at=now,
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        step_row.status = StepStatus.FAILED.value
        step_row.error_summary = job_row.error_message or message
        step_row.completed_at = now
        step_row.updated_at = now
        session.add(step_row)
        task = self.get_task_row(session, execution.task_id)
        task.status = TaskStatus.FAILED.value
        task.error_summary = message
        task.updated_at = now
        session.add(task)
        session.commit()
        logger.warning("Execution %s failed: %s", execution.execution_id, message)
        return True

    def _complete_step_from_job(
        self,
        session: Session,
        *,
        execution: WorkflowExecution,
        step_row: WorkflowStepExecution,
        job_row: AiJob,
    ) -> bool:
        output = load_json_dict(job_row.output_json)
        context = load_json_dict(execution.context_json)
        context[step_row.step_name] = output
        now = to_db_datetime(utc_now())
        result = session.exec(
            sa_update(WorkflowExecution)
            .where(
                col(WorkflowExecution.execution_id) == execution.execution_id,
                col(WorkflowExecution.status) == ExecutionStatus.RUNNING.value,
                col(WorkflowExecution.current_step) == step_row.step_index,
            )
            .values(
                current_step=step_row.step_index + 1,
                context_json=dump_json(context),
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        step_row.status = StepStatus.COMPLETED.value
        step_row.output_json = dump_json(output)
        step_row.error_summary = None
        step_row.completed_at = now
        step_row.updated_at = now
        session.add(step_row)

        execution = self.get_execution_row(session, execution.execution_id)
        task = self.get_task_row(session, execution.task_id)
        self.advance(session, execution=execution, task=task)
        session.commit()
        return True

    def _set_status(
        self,
        execution: WorkflowExecution,
        task: Task,
        execution_status: ExecutionStatus,
        task_status: TaskStatus,
    ) -> None:
        now = to_db_datetime(utc_now())
        execution.status = execution_status.value
        execution.updated_at = now
        task.status = task_status.value
        task.updated_at = now


def _job_failure_summary(step_row: WorkflowStepExecution, job_row: AiJob) -> str:
    stage = job_row.failure_stage or "unknown"
    failure_type = job_row.failure_type or "unknown"
    if job_row.status == JobStatus.CANCELLED.value:
        stage, failure_type = "workflow", "cancelled"
    return (
        f"Step '{step_row.step_name}' (#{step_row.step_index}) failed at "
        f"{stage}/{failure_type}: {job_row.error_message or 'no error message'}"
    )
