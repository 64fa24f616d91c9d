"""Domain models for the AI job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class FailureStage(str, Enum):
    """Where in the invocation pipeline a failure happened."""

    LLM_CALL = "llm_call"
    PARSE = "parse"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    INPUT = "input"
    WORKFLOW = "workflow"
    UNKNOWN = "unknown"


class FailureType(str, Enum):
    """Normalized failure types used by retry policy and operator triage."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    INVALID_INPUT = "invalid_input"
    SCHEMA_MISMATCH = "schema_mismatch"
    INVALID_JSON = "invalid_json"
    AUTHENTICATION = "authentication"
    MODEL_ERROR = "model_error"
    CONTENT_FILTER = "content_filter"
    QUOTA_EXCEEDED = "quota_exceeded"
    INTERNAL_ERROR = "internal_error"
    UNKNOWN = "unknown"


PERMANENT_FAILURE_TYPES = frozenset(
    {
        FailureType.AUTHENTICATION,
        FailureType.INVALID_INPUT,
        FailureType.QUOTA_EXCEEDED,
        FailureType.CONTENT_FILTER,
        FailureType.MODEL_ERROR,
    },
)


@dataclass(slots=True)
class TokenUsage:
    """Provider-reported token counts for one invocation."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing an AI job."""

    capability: str
    provider: str
    model: str
    input: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None
    job_id: str | None = None
    max_retries: int = 3
    run_after: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for workers, the workflow engine and the CLI."""

    job_id: str
    task_id: str | None
    capability: str
    provider: str
    model: str
    input: dict[str, Any]
    status: JobStatus
    retry_count: int
    max_retries: int
    locked_by: str | None
    locked_at: datetime | None
    next_run_at: datetime
    output: dict[str, Any] | None
    error_message: str | None
    failure_stage: FailureStage | None
    failure_type: FailureType | None
    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None
    execution_time_ms: int | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @property
    def retries_left(self) -> bool:
        return self.retry_count < self.max_retries


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


class JobLifecycleListener(Protocol):
    """Observer notified by workers and the reaper as jobs change state."""

    def on_job_claimed(self, job: JobView) -> None:
        """A worker took ``job``; it is now running."""

    def on_job_finished(self, job: JobView) -> bool:
        """``job`` was completed, requeued or terminally failed; ``True`` if state moved."""

    def reconcile(self) -> int:
        """Replay missed notifications; return how many were applied."""
