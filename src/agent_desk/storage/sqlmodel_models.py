"""SQLModel ORM tables for the job queue and workflow state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    role: str = Field(default="admin")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_user_status", "user_id", "status"),)

    task_id: str = Field(primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    title: str
    task_type: str = Field(default="generic", index=True)
    status: str = Field(index=True)
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class WorkflowDefinitionRow(SQLModel, table=True):
    __tablename__ = "workflows"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("name", "version", name="uq_workflows_name_version"),)

    workflow_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    version: int = Field(default=1)
    description: str = Field(default="")
    definition_sha256: str = Field(index=True)
    definition_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiJob(SQLModel, table=True):
    __tablename__ = "ai_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_ai_jobs_status_created", "status", "created_at"),
        Index("idx_ai_jobs_status_next_run", "status", "next_run_at"),
        Index("idx_ai_jobs_status_locked", "status", "locked_at"),
    )

    job_id: str = Field(primary_key=True)
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    capability: str = Field(index=True)
    provider: str
    model: str
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    locked_by: str | None = Field(default=None)
    locked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    next_run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_stage: str | None = Field(default=None, index=True)
    failure_type: str | None = Field(default=None, index=True)
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    execution_time_ms: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiJobEvent(SQLModel, table=True):
    __tablename__ = "ai_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_ai_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("ai_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowExecution(SQLModel, table=True):
    __tablename__ = "workflow_executions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_workflow_executions_status_task", "status", "task_id"),)

    execution_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    workflow_id: str = Field(
        sa_column=Column(
            ForeignKey("workflows.workflow_id"),
            nullable=False,
        ),
    )
    status: str
    current_step: int = Field(default=0)
    total_steps: int
    context_json: str = Field(sa_column=Column(Text, nullable=False))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class WorkflowStepExecution(SQLModel, table=True):
    __tablename__ = "workflow_step_executions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("execution_id", "step_index", name="uq_step_executions_position"),
        Index("idx_step_executions_job", "job_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("workflow_executions.execution_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    step_index: int
    step_name: str
    step_kind: str
    job_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("ai_jobs.job_id", ondelete="SET NULL"), nullable=True),
    )
    status: str
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Approval(SQLModel, table=True):
    __tablename__ = "approvals"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_approvals_status", "status"),
        Index(
            "uq_approvals_pending_gate",
            "execution_id",
            "step_index",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    approval_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("workflow_executions.execution_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    step_index: int
    step_name: str
    status: str
    notes: str | None = Field(default=None, sa_column=Column(Text))
    responded_by: str | None = Field(default=None)
    responded_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
