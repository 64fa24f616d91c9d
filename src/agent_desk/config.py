"""Runtime configuration for the job queue, worker and workflow engine."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_ROLES = ("admin", "client")


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop knobs."""

    worker_id: str = ""
    poll_interval_seconds: float = 5.0
    max_concurrent_jobs: int = 3
    job_timeout_seconds: float = 300.0
    heartbeat_seconds: float = 60.0
    graceful_shutdown_seconds: float = 30.0

    def validate(self) -> None:
        if self.poll_interval_seconds < 0:
            raise ValueError("Worker poll interval must be >= 0 seconds.")
        if self.max_concurrent_jobs < 1:
            raise ValueError("Worker max concurrent jobs must be >= 1.")
        if self.job_timeout_seconds <= 0:
            raise ValueError("Worker job timeout must be > 0 seconds.")


@dataclass(slots=True)
class ReaperSettings:
    """Stuck-job sweep knobs."""

    stuck_job_timeout_minutes: float = 30.0
    interval_seconds: float = 300.0

    def validate(self) -> None:
        if self.stuck_job_timeout_minutes <= 0:
            raise ValueError("Reaper stuck job timeout must be > 0 minutes.")
        if self.interval_seconds <= 0:
            raise ValueError("Reaper interval must be > 0 seconds.")


@dataclass(slots=True)
class RetrySettings:
    """Job retry budget and exponential backoff."""

    max_retries: int = 3
    base_seconds: float = 1.0
    max_seconds: float = 600.0

    def validate(self) -> None:
        if self.max_retries < 1:
            raise ValueError("Job max retries must be >= 1.")
        if self.base_seconds < 0 or self.max_seconds < 0:
            raise ValueError("Retry backoff seconds must be >= 0.")


@dataclass(slots=True)
class LlmSettings:
    """Provider routing defaults and adapter endpoints."""

    default_provider: str = "openai"
    default_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str | None = None
    ollama_base_url: str = "http://localhost:11434/v1"
    temperature: float = 0.7
    max_tokens: int = 4096


@dataclass(slots=True)
class UserContextSettings:
    """Actor identity used by CLI commands."""

    user_id: str = "default_user"
    user_name: str = "Default User"
    role: str = "admin"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_desk.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    reaper: ReaperSettings = field(default_factory=ReaperSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            db_path=db_path or Path(os.getenv("AGENT_DESK_DB_PATH", ".agent_desk.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_DESK_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                worker_id=os.getenv("AGENT_DESK_WORKER_ID") or _default_worker_id(),
                poll_interval_seconds=float(
                    os.getenv("AGENT_DESK_WORKER_POLL_INTERVAL_SECONDS", "5.0"),
                ),
                max_concurrent_jobs=int(os.getenv("AGENT_DESK_WORKER_MAX_CONCURRENT_JOBS", "3")),
                job_timeout_seconds=float(
                    os.getenv("AGENT_DESK_WORKER_JOB_TIMEOUT_SECONDS", "300"),
                ),
                heartbeat_seconds=float(os.getenv("AGENT_DESK_WORKER_HEARTBEAT_SECONDS", "60")),
                graceful_shutdown_seconds=float(
                    os.getenv("AGENT_DESK_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
            ),
            reaper=ReaperSettings(
                stuck_job_timeout_minutes=float(
                    os.getenv("AGENT_DESK_REAPER_STUCK_JOB_TIMEOUT_MINUTES", "30"),
                ),
                interval_seconds=float(os.getenv("AGENT_DESK_REAPER_INTERVAL_SECONDS", "300")),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("AGENT_DESK_JOB_MAX_RETRIES", "3")),
                base_seconds=float(os.getenv("AGENT_DESK_RETRY_BASE_SECONDS", "1.0")),
                max_seconds=float(os.getenv("AGENT_DESK_RETRY_MAX_SECONDS", "600")),
            ),
            llm=LlmSettings(
                default_provider=os.getenv("AGENT_DESK_DEFAULT_LLM_PROVIDER", "openai").lower(),
                default_model=os.getenv("AGENT_DESK_DEFAULT_LLM_MODEL", "gpt-4o-mini"),
                openai_base_url=os.getenv(
                    "AGENT_DESK_OPENAI_BASE_URL",
                    "https://api.openai.com/v1",
                ),
                openai_api_key=(
                    os.getenv("AGENT_DESK_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY") or None
                ),
                ollama_base_url=os.getenv(
                    "AGENT_DESK_OLLAMA_BASE_URL",
                    "http://localhost:11434/v1",
                ),
                temperature=float(os.getenv("AGENT_DESK_LLM_TEMPERATURE", "0.7")),
                max_tokens=int(os.getenv("AGENT_DESK_LLM_MAX_TOKENS", "4096")),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("AGENT_DESK_USER_ID", "default_user"),
                user_name=os.getenv("AGENT_DESK_USER_NAME", "Default User"),
                role=os.getenv("AGENT_DESK_USER_ROLE", "admin").lower(),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject configurations the worker and engine cannot run with."""

        if self.sqlite_busy_timeout_ms < 1:
            raise ValueError("SQLite busy timeout must be >= 1 ms.")
        self.worker.validate()
        self.reaper.validate()
        self.retry.validate()
        if self.user_context.role not in SUPPORTED_ROLES:
            raise ValueError(
                f"Unsupported user role: {self.user_context.role}. "
                f"Expected one of: {', '.join(SUPPORTED_ROLES)}.",
            )


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"
