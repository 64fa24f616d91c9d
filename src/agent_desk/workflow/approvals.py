"""Approval Resolution Handler: the only path that moves a paused workflow.

Resolution happens in two phases. Phase 1 flips the approval from
``pending`` to the decision with a compare-and-set and commits, so two
concurrent reviewers cannot both win. Phase 2 applies every downstream
write (step rows, execution cursor, task status, follow-up job) in one
database transaction. If phase 2 raises, its transaction is rolled back and
the approval is put back to ``pending`` so the same request can be retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from agent_desk.agents.capabilities import REVISION_NOTES_KEY
from agent_desk.storage.common import dump_json, load_json_dict, to_db_datetime, utc_now
from agent_desk.storage.sqlmodel_models import Approval, Task, WorkflowExecution
from agent_desk.workflow.definitions import AiStep, WorkflowDefinition
from agent_desk.workflow.engine import WorkflowEngine
from agent_desk.workflow.errors import (
    ApprovalConflictError,
    ApprovalForbiddenError,
    ApprovalNotFoundError,
    ApprovalResolutionError,
    ApprovalValidationError,
    WorkflowStateError,
)
from agent_desk.workflow.models import (
    Actor,
    ApprovalDecision,
    ApprovalOutcome,
    ApprovalStatus,
    ExecutionStatus,
    StepStatus,
    TaskStatus,
)
from agent_desk.workflow.repository import to_approval_view

logger = logging.getLogger(__name__)

NOTES_MAX_CHARS = 2000
REJECTED_REASON = "rejected by reviewer"


@dataclass(slots=True)
class _ResolutionPlan:
    approval_id: str
    task_id: str
    execution_id: str
    step_index: int
    decision: ApprovalDecision
    notes: str | None
    previous_task_status: str
    revision_index: int | None = None


class ApprovalResolutionHandler:
    def __init__(self, engine: WorkflowEngine, *, notes_max_chars: int = NOTES_MAX_CHARS) -> None:
        self.workflow = engine
        self.repository = engine.repository
        self.engine = engine.engine
        self.notes_max_chars = notes_max_chars

    def resolve(
        self,
        approval_id: str,
        decision: ApprovalDecision | str,
        notes: str | None = None,
        *,
        actor: Actor,
    ) -> ApprovalOutcome:
        """Apply a reviewer decision to a pending approval.

        Raises ``ApprovalConflictError`` when the approval is no longer
        pending and ``ApprovalResolutionError`` when downstream writes
        failed and the approval was reverted.
        """

        plan = self._plan(approval_id, decision, notes, actor=actor)
        responded_at = to_db_datetime(utc_now())
        self._mark_resolved(plan, actor=actor, responded_at=responded_at)
        try:
            outcome = self._apply(plan, actor=actor)
        except Exception as error:
            logger.warning(
                "Approval %s: downstream writes failed (%s); reverting to pending.",
                plan.approval_id,
                error,
            )
            self._compensate(plan, responded_at=responded_at)
            raise ApprovalResolutionError(
                f"Could not apply decision {plan.decision.value} for approval "
                f"{plan.approval_id}: {error}; the approval is pending again, retry the request.",
            ) from error
        logger.info(
            "Approval %s resolved as %s by %s (execution %s -> %s at step %d)",
            plan.approval_id,
            plan.decision.value,
            actor.user_id,
            plan.execution_id,
            outcome.execution_status.value,
            outcome.current_step,
        )
        return outcome

    def _plan(
        self,
        approval_id: str,
        decision: ApprovalDecision | str,
        notes: str | None,
        *,
        actor: Actor,
    ) -> _ResolutionPlan:
        try:
            parsed = ApprovalDecision(decision)
        except ValueError as error:
            allowed = ", ".join(item.value for item in ApprovalDecision)
            raise ApprovalValidationError(
                f"Unsupported decision: {decision!r}. Expected one of: {allowed}",
            ) from error
        if notes is not None and len(notes) > self.notes_max_chars:
            raise ApprovalValidationError(
                f"Notes must be at most {self.notes_max_chars} characters.",
            )

        with Session(self.engine) as session:
            approval = session.get(Approval, approval_id)
            if approval is None:
                raise ApprovalNotFoundError(f"Approval not found: {approval_id}")
            task = session.get(Task, approval.task_id)
            if task is None:
                raise ApprovalNotFoundError(f"Task not found: {approval.task_id}")
            if not actor.can_act_on(task.user_id):
                raise ApprovalForbiddenError(
                    f"User {actor.user_id} cannot resolve approvals for task {task.task_id}.",
                )
            if approval.status != ApprovalStatus.PENDING.value:
                raise ApprovalConflictError(
                    f"Approval {approval_id} is already {approval.status}.",
                )
            execution = session.get(WorkflowExecution, approval.execution_id)
            if execution is None:
                raise ApprovalNotFoundError(
                    f"Workflow execution not found: {approval.execution_id}",
                )
            plan = _ResolutionPlan(
                approval_id=approval.approval_id,
                task_id=task.task_id,
                execution_id=execution.execution_id,
                step_index=approval.step_index,
                decision=parsed,
                notes=notes,
                previous_task_status=task.status,
            )
            workflow_id = execution.workflow_id

        if parsed == ApprovalDecision.REVISION_REQUESTED:
            definition = self.repository.load_definition(workflow_id)
            plan.revision_index = _preceding_ai_step(definition, plan.step_index)
            if plan.revision_index is None:
                raise ApprovalValidationError(
                    f"Approval {approval_id} has no preceding ai step to revise.",
                )
        return plan

    def _mark_resolved(
        self,
        plan: _ResolutionPlan,
        *,
        actor: Actor,
        responded_at: datetime,
    ) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Approval)
                .where(
                    col(Approval.approval_id) == plan.approval_id,
                    col(Approval.status) == ApprovalStatus.PENDING.value,
                )
                .values(
                    status=plan.decision.value,
                    notes=plan.notes,
                    responded_by=actor.user_id,
                    responded_at=responded_at,
                    updated_at=responded_at,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ApprovalConflictError(
                    f"Approval {plan.approval_id} was resolved concurrently.",
                )
            session.commit()

    def _apply(self, plan: _ResolutionPlan, *, actor: Actor) -> ApprovalOutcome:
        with Session(self.engine) as session:
            execution = self.workflow.get_execution_row(session, plan.execution_id)
            if (
                execution.status != ExecutionStatus.WAITING_APPROVAL.value
                or execution.current_step != plan.step_index
            ):
                raise WorkflowStateError(
                    f"Execution {plan.execution_id} is not waiting at step {plan.step_index} "
                    f"(status={execution.status}, current_step={execution.current_step}).",
                )
            task = self.workflow.get_task_row(session, plan.task_id)
            definition = self.repository.load_definition(execution.workflow_id)

            job_id: str | None = None
            if plan.decision == ApprovalDecision.REJECTED:
                self._reject(session, plan, execution=execution, task=task, definition=definition)
            elif plan.decision == ApprovalDecision.REVISION_REQUESTED:
                job_id = self._request_revision(
                    session,
                    plan,
                    execution=execution,
                    task=task,
                    definition=definition,
                )
            else:
                self._approve(
                    session,
                    plan,
                    actor=actor,
                    execution=execution,
                    task=task,
                    definition=definition,
                )
            session.commit()

            approval = session.get(Approval, plan.approval_id)
            execution = self.workflow.get_execution_row(session, plan.execution_id)
            task = self.workflow.get_task_row(session, plan.task_id)
            return ApprovalOutcome(
                approval=to_approval_view(approval),
                task_status=TaskStatus(task.status),
                execution_status=ExecutionStatus(execution.status),
                current_step=execution.current_step,
                job_id=job_id,
            )

    def _reject(
        self,
        session: Session,
        plan: _ResolutionPlan,
        *,
        execution: WorkflowExecution,
        task: Task,
        definition: WorkflowDefinition,
    ) -> None:
        gate = definition.steps[plan.step_index]
        message = f"Step '{gate.name}' (#{plan.step_index}) {REJECTED_REASON}"
        if plan.notes:
            message = f"{message}: {plan.notes}"
        self.workflow.upsert_step(
            session,
            execution_id=execution.execution_id,
            index=plan.step_index,
            step=gate,
            status=StepStatus.FAILED,
            error_summary=REJECTED_REASON,
            completed=True,
        )
        self.workflow.mark_failed(execution, task, message)
        session.add(execution)
        session.add(task)

    def _request_revision(
        self,
        session: Session,
        plan: _ResolutionPlan,
        *,
        execution: WorkflowExecution,
        task: Task,
        definition: WorkflowDefinition,
    ) -> str:
        target_index = plan.revision_index
        if target_index is None:
            raise ApprovalValidationError("Revision target step was not resolved.")
        target = definition.steps[target_index]
        if not isinstance(target, AiStep):
            raise ApprovalValidationError(f"Step {target.name} is not an ai step.")

        # Steps between the revised ai step and the gate run again.
        rerun = range(target_index + 1, plan.step_index)
        context = load_json_dict(execution.context_json)
        for index in rerun:
            context.pop(definition.steps[index].name, None)
        self._move_cursor(
            session,
            plan,
            current_step=target_index,
            context_json=dump_json(context),
        )
        execution = self.workflow.get_execution_row(session, plan.execution_id)
        for index in rerun:
            self.workflow.upsert_step(
                session,
                execution_id=execution.execution_id,
                index=index,
                step=definition.steps[index],
                status=StepStatus.PENDING,
            )
        job_id = self.workflow.enqueue_ai_step(
            session,
            execution=execution,
            task=task,
            index=target_index,
            step=target,
            extra_input={REVISION_NOTES_KEY: plan.notes or ""},
        )
        self.workflow.upsert_step(
            session,
            execution_id=execution.execution_id,
            index=plan.step_index,
            step=definition.steps[plan.step_index],
            status=StepStatus.PENDING,
        )
        now = to_db_datetime(utc_now())
        task.status = TaskStatus.RUNNING.value
        task.updated_at = now
        session.add(task)
        return job_id

    def _approve(  # noqa: PLR0913
        self,
        session: Session,
        plan: _ResolutionPlan,
        *,
        actor: Actor,
        execution: WorkflowExecution,
        task: Task,
        definition: WorkflowDefinition,
    ) -> None:
        gate = definition.steps[plan.step_index]
        output = {
            "decision": plan.decision.value,
            "notes": plan.notes,
            "responded_by": actor.user_id,
        }
        context = load_json_dict(execution.context_json)
        context[gate.name] = output
        self._move_cursor(
            session,
            plan,
            current_step=plan.step_index + 1,
            context_json=dump_json(context),
        )
        self.workflow.upsert_step(
            session,
            execution_id=execution.execution_id,
            index=plan.step_index,
            step=gate,
            status=StepStatus.COMPLETED,
            output=output,
            completed=True,
        )
        execution = self.workflow.get_execution_row(session, plan.execution_id)
        task.status = TaskStatus.RUNNING.value
        task.updated_at = to_db_datetime(utc_now())
        self.workflow.advance(session, execution=execution, task=task, definition=definition)
        session.add(execution)
        session.add(task)

    def _move_cursor(
        self,
        session: Session,
        plan: _ResolutionPlan,
        *,
        current_step: int,
        context_json: str,
    ) -> None:
        result = session.exec(
            sa_update(WorkflowExecution)
            .where(
                col(WorkflowExecution.execution_id) == plan.execution_id,
                col(WorkflowExecution.status) == ExecutionStatus.WAITING_APPROVAL.value,
                col(WorkflowExecution.current_step) == plan.step_index,
            )
            .values(
                status=ExecutionStatus.RUNNING.value,
                current_step=current_step,
                context_json=context_json,
                updated_at=to_db_datetime(utc_now()),
            ),
        )
        if result.rowcount != 1:
            raise WorkflowStateError(
                "Execution state changed concurrently while resolving approval; "
                f"please retry command (approval_id={plan.approval_id}).",
            )

    def _compensate(self, plan: _ResolutionPlan, *, responded_at: datetime) -> None:
        with Session(self.engine) as session:
            reverted = session.exec(
                sa_update(Approval)
                .where(
                    col(Approval.approval_id) == plan.approval_id,
                    col(Approval.status) == plan.decision.value,
                    col(Approval.responded_at) == responded_at,
                )
                .values(
                    status=ApprovalStatus.PENDING.value,
                    notes=None,
                    responded_by=None,
                    responded_at=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == plan.task_id,
                    col(Task.status) != plan.previous_task_status,
                )
                .values(status=plan.previous_task_status),
            )
            session.commit()
        if reverted.rowcount != 1:
            logger.error(
                "Approval %s could not be reverted to pending; it changed concurrently.",
                plan.approval_id,
            )


def _preceding_ai_step(definition: WorkflowDefinition, gate_index: int) -> int | None:
    for index in range(gate_index - 1, -1, -1):
        if isinstance(definition.steps[index], AiStep):
            return index
    return None

