"""Persistence facade for tasks, workflow definitions, executions and approvals."""

from __future__ import annotations

import threading
from uuid import uuid4

from sqlalchemy import Engine, func
from sqlmodel import Session, col, select

from agent_desk.storage.common import (
    dump_json,
    load_json_dict,
    load_json_optional,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_desk.storage.sqlmodel_models import (
    AppUser,
    Approval,
    Task,
    WorkflowDefinitionRow,
    WorkflowExecution,
    WorkflowStepExecution,
)
from agent_desk.workflow.definitions import WorkflowDefinition, parse_workflow_definition
from agent_desk.workflow.errors import (
    WorkflowForbiddenError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from agent_desk.workflow.models import (
    ACTIVE_EXECUTION_STATUSES,
    Actor,
    ApprovalStatus,
    ApprovalView,
    ExecutionStatus,
    ExecutionView,
    StepExecutionView,
    StepStatus,
    TaskCreate,
    TaskStatus,
    TaskView,
)

_CANCELLABLE_TASK_STATUSES = frozenset({TaskStatus.PENDING})


class WorkflowRepository:
    """Reads and simple writes for workflow-owned tables.

    Multi-row state transitions live in the engine and the approval handler;
    this class shares their SQLAlchemy engine.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._definitions_lock = threading.Lock()

    def ensure_user(
        self,
        *,
        user_id: str,
        display_name: str | None = None,
        role: str = "client",
    ) -> None:
        with Session(self.engine) as session:
            if session.get(AppUser, user_id) is not None:
                return
            session.add(
                AppUser(
                    user_id=user_id,
                    display_name=display_name or user_id,
                    role=role,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def create_task(self, payload: TaskCreate, *, actor: Actor) -> TaskView:
        """Create a ``pending`` task owned by ``payload.user_id`` or the actor."""

        owner = payload.user_id or actor.user_id
        if not actor.can_act_on(owner):
            raise WorkflowForbiddenError(f"User {actor.user_id} cannot create tasks for {owner}.")
        if not payload.title.strip():
            raise ValueError("Task title must not be empty.")
        self.ensure_user(user_id=owner)
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Task(
                task_id=payload.task_id or str(uuid4()),
                user_id=owner,
                title=payload.title.strip(),
                task_type=payload.task_type,
                status=TaskStatus.PENDING.value,
                input_json=dump_json(payload.input),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return to_task_view(row)

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return to_task_view(row) if row is not None else None

    def require_task(self, *, task_id: str) -> TaskView:
        task = self.get_task(task_id=task_id)
        if task is None:
            raise WorkflowNotFoundError(f"Task not found: {task_id}")
        return task

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if user_id is not None:
                statement = statement.where(Task.user_id == user_id)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [to_task_view(row) for row in rows]

    def cancel_pending_task(self, *, task_id: str, actor: Actor) -> TaskView:
        """Cancel a task that never started a workflow."""

        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise WorkflowNotFoundError(f"Task not found: {task_id}")
            if not actor.can_act_on(row.user_id):
                raise WorkflowForbiddenError(f"User {actor.user_id} cannot cancel task {task_id}.")
            if TaskStatus(row.status) not in _CANCELLABLE_TASK_STATUSES:
                raise WorkflowStateError(f"Task cannot be cancelled from status={row.status}")
            now = to_db_datetime(utc_now())
            row.status = TaskStatus.CANCELLED.value
            row.updated_at = now
            row.completed_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return to_task_view(row)

    def register_workflow(
        self,
        definition: WorkflowDefinition,
    ) -> tuple[WorkflowDefinitionRow, bool]:
        """Store ``definition``; identical content returns the existing row.

        Changed content under the same name becomes ``version + 1``; stored
        rows are never updated, so running executions keep their steps.
        """

        digest = definition.sha256()
        with Session(self.engine) as session:
            existing = session.exec(
                select(WorkflowDefinitionRow).where(
                    WorkflowDefinitionRow.name == definition.name,
                    WorkflowDefinitionRow.definition_sha256 == digest,
                ),
            ).first()
            if existing is not None:
                return existing, False
            latest_version = session.exec(
                select(func.max(WorkflowDefinitionRow.version)).where(
                    WorkflowDefinitionRow.name == definition.name,
                ),
            ).one()
            row = WorkflowDefinitionRow(
                workflow_id=str(uuid4()),
                name=definition.name,
                version=(latest_version or 0) + 1,
                description=definition.description,
                definition_sha256=digest,
                definition_json=dump_json(definition.to_dict()),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row, True

    def resolve_workflow(self, ref: str) -> WorkflowDefinitionRow:
        """Find a workflow by id, or by name (latest version)."""

        with Session(self.engine) as session:
            row = session.get(WorkflowDefinitionRow, ref)
            if row is None:
                row = session.exec(
                    select(WorkflowDefinitionRow)
                    .where(WorkflowDefinitionRow.name == ref)
                    .order_by(col(WorkflowDefinitionRow.version).desc())
                    .limit(1),
                ).first()
            if row is None:
                raise WorkflowNotFoundError(f"Workflow not found: {ref}")
            return row

    def list_workflows(self) -> list[WorkflowDefinitionRow]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(WorkflowDefinitionRow).order_by(
                        col(WorkflowDefinitionRow.name).asc(),
                        col(WorkflowDefinitionRow.version).desc(),
                    ),
                ).all(),
            )

    def load_definition(self, workflow_id: str) -> WorkflowDefinition:
        """Parsed definition for ``workflow_id``; rows are immutable so this caches."""

        with self._definitions_lock:
            cached = self._definitions.get(workflow_id)
        if cached is not None:
            return cached
        with Session(self.engine) as session:
            row = session.get(WorkflowDefinitionRow, workflow_id)
            if row is None:
                raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
            definition = parse_workflow_definition(load_json_dict(row.definition_json))
        with self._definitions_lock:
            self._definitions[workflow_id] = definition
        return definition

    def get_execution(self, *, execution_id: str) -> ExecutionView | None:
        with Session(self.engine) as session:
            row = session.get(WorkflowExecution, execution_id)
            return to_execution_view(row) if row is not None else None

    def get_active_execution(self, *, task_id: str) -> ExecutionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkflowExecution).where(
                    WorkflowExecution.task_id == task_id,
                    col(WorkflowExecution.status).in_(
                        [status.value for status in ACTIVE_EXECUTION_STATUSES],
                    ),
                ),
            ).first()
            return to_execution_view(row) if row is not None else None

    def list_executions(self, *, task_id: str) -> list[ExecutionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkflowExecution)
                .where(WorkflowExecution.task_id == task_id)
                .order_by(col(WorkflowExecution.created_at).asc()),
            ).all()
        return [to_execution_view(row) for row in rows]

    def list_step_executions(self, *, execution_id: str) -> list[StepExecutionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkflowStepExecution)
                .where(WorkflowStepExecution.execution_id == execution_id)
                .order_by(col(WorkflowStepExecution.step_index).asc()),
            ).all()
        return [to_step_view(row) for row in rows]

    def get_approval(self, *, approval_id: str) -> ApprovalView | None:
        with Session(self.engine) as session:
            row = session.get(Approval, approval_id)
            return to_approval_view(row) if row is not None else None

    def list_approvals(
        self,
        *,
        status: ApprovalStatus | None = None,
        task_id: str | None = None,
        execution_id: str | None = None,
        limit: int = 50,
    ) -> list[ApprovalView]:
        with Session(self.engine) as session:
            statement = select(Approval).order_by(col(Approval.created_at).asc()).limit(limit)
            if status is not None:
                statement = statement.where(Approval.status == status.value)
            if task_id is not None:
                statement = statement.where(Approval.task_id == task_id)
            if execution_id is not None:
                statement = statement.where(Approval.execution_id == execution_id)
            rows = session.exec(statement).all()
        return [to_approval_view(row) for row in rows]


def to_task_view(row: Task) -> TaskView:
    output = load_json_optional(row.output_json)
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        title=row.title,
        task_type=row.task_type,
        status=TaskStatus(row.status),
        input=load_json_dict(row.input_json),
        output=output if isinstance(output, dict) else None,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=optional_utc(row.completed_at),
    )


def to_execution_view(row: WorkflowExecution) -> ExecutionView:
    return ExecutionView(
        execution_id=row.execution_id,
        task_id=row.task_id,
        workflow_id=row.workflow_id,
        status=ExecutionStatus(row.status),
        current_step=row.current_step,
        total_steps=row.total_steps,
        context=load_json_dict(row.context_json),
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=optional_utc(row.completed_at),
    )


def to_step_view(row: WorkflowStepExecution) -> StepExecutionView:
    output = load_json_optional(row.output_json)
    return StepExecutionView(
        execution_id=row.execution_id,
        step_index=row.step_index,
        step_name=row.step_name,
        step_kind=row.step_kind,
        job_id=row.job_id,
        status=StepStatus(row.status),
        input=load_json_dict(row.input_json),
        output=output if isinstance(output, dict) else None,
        error_summary=row.error_summary,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def to_approval_view(row: Approval) -> ApprovalView:
    return ApprovalView(
        approval_id=row.approval_id,
        task_id=row.task_id,
        execution_id=row.execution_id,
        step_index=row.step_index,
        step_name=row.step_name,
        status=ApprovalStatus(row.status),
        notes=row.notes,
        responded_by=row.responded_by,
        responded_at=optional_utc(row.responded_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )
