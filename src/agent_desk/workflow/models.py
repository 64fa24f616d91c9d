"""Domain models for tasks, workflow executions and approvals."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Lifecycle of a task as seen by its owner."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionStatus(str, Enum):
    """Workflow execution states."""

    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_EXECUTION_STATUSES = frozenset({ExecutionStatus.RUNNING, ExecutionStatus.WAITING_APPROVAL})


class StepStatus(str, Enum):
    """Step execution states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


FINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})


class ApprovalStatus(str, Enum):
    """Approval record states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"


class ApprovalDecision(str, Enum):
    """Decisions an external reviewer can submit."""

    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"


@dataclass(slots=True)
class Actor:
    """Caller identity used for authorization checks."""

    user_id: str
    role: str = "client"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def can_act_on(self, owner_user_id: str) -> bool:
        return self.is_admin or self.user_id == owner_user_id


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    input: dict[str, Any] = field(default_factory=dict)
    task_type: str = "generic"
    user_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    task_id: str
    user_id: str
    title: str
    task_type: str
    status: TaskStatus
    input: dict[str, Any]
    output: dict[str, Any] | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class ExecutionView:
    execution_id: str
    task_id: str
    workflow_id: str
    status: ExecutionStatus
    current_step: int
    total_steps: int
    context: dict[str, Any]
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class StepExecutionView:
    execution_id: str
    step_index: int
    step_name: str
    step_kind: str
    job_id: str | None
    status: StepStatus
    input: dict[str, Any]
    output: dict[str, Any] | None
    error_summary: str | None
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class ApprovalView:
    approval_id: str
    task_id: str
    execution_id: str
    step_index: int
    step_name: str
    status: ApprovalStatus
    notes: str | None
    responded_by: str | None
    responded_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class ApprovalOutcome:
    """Result of a successful approval resolution."""

    approval: ApprovalView
    task_status: TaskStatus
    execution_status: ExecutionStatus
    current_step: int
    job_id: str | None = None
