"""CLI entrypoint for agent-desk."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_desk import __version__
from agent_desk.controllers import (
    AgentDeskCliController,
    ApprovalListCommand,
    ApprovalResolveCommand,
    DbCommand,
    JobListCommand,
    JobRefCommand,
    ReaperCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskRefCommand,
    WorkerCommand,
    WorkflowRegisterCommand,
    WorkflowStartCommand,
)
from agent_desk.jobs.models import JobStatus
from agent_desk.workflow.models import ApprovalDecision, ApprovalStatus, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentDeskCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-desk")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for worker, reaper and workflow diagnostics.",
)
def agent_desk(log_level: str) -> None:
    """AI job queue and approval-gated workflow CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@agent_desk.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@db_path_option
def db_init(db_path: Path | None) -> None:
    """Create or migrate the database schema."""

    _run(CONTROLLER.init_db, DbCommand(db_path=db_path))


@agent_desk.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("create")
@db_path_option
@click.option("--title", required=True, help="Task title.")
@click.option("--type", "task_type", default="generic", show_default=True, help="Task type.")
@click.option("--input", "input_json", default=None, help="Task input as a JSON object.")
@click.option("--user-id", default=None, help="Owner user id (admins only for other users).")
def tasks_create(
    db_path: Path | None,
    title: str,
    task_type: str,
    input_json: str | None,
    user_id: str | None,
) -> None:
    """Create a pending task."""

    _run(
        CONTROLLER.create_task,
        TaskCreateCommand(
            db_path=db_path,
            title=title,
            task_type=task_type,
            input_json=input_json,
            user_id=user_id,
        ),
    )


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--user-id", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, user_id: str | None, limit: int) -> None:
    """List tasks."""

    _run(
        CONTROLLER.list_tasks,
        TaskListCommand(
            db_path=db_path,
            status=status.lower() if status else None,
            user_id=user_id,
            limit=limit,
        ),
    )


@tasks.command("show")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with executions, steps and approvals."""

    _run(CONTROLLER.show_task, TaskRefCommand(db_path=db_path, task_id=task_id))


@tasks.command("cancel")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a task and its active workflow execution."""

    _run(CONTROLLER.cancel_task, TaskRefCommand(db_path=db_path, task_id=task_id))


@agent_desk.group()
def workflows() -> None:
    """Workflow definition and execution commands."""


@workflows.command("register")
@db_path_option
@click.argument("path", required=False, type=click.Path(path_type=Path, exists=True))
@click.option(
    "--defaults",
    is_flag=True,
    default=False,
    help="Register the built-in content workflows.",
)
def workflows_register(db_path: Path | None, path: Path | None, defaults: bool) -> None:
    """Register a workflow definition from a JSON FILE."""

    _run(
        CONTROLLER.register_workflows,
        WorkflowRegisterCommand(db_path=db_path, path=path, defaults=defaults),
    )


@workflows.command("list")
@db_path_option
def workflows_list(db_path: Path | None) -> None:
    """List registered workflow definitions."""

    _run(CONTROLLER.list_workflows, DbCommand(db_path=db_path))


@workflows.command("defaults")
def workflows_defaults() -> None:
    """Print the built-in workflow definitions."""

    _emit_lines(CONTROLLER.default_workflows())


@workflows.command("start")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--workflow", required=True, help="Workflow id or name (latest version).")
def workflows_start(db_path: Path | None, task_id: str, workflow: str) -> None:
    """Start a workflow execution for a task."""

    _run(
        CONTROLLER.start_workflow,
        WorkflowStartCommand(db_path=db_path, task_id=task_id, workflow=workflow),
    )


@agent_desk.group()
def approvals() -> None:
    """Approval gate commands."""


@approvals.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in ApprovalStatus], case_sensitive=False),
    default=ApprovalStatus.PENDING.value,
    show_default=True,
    help="Status filter.",
)
@click.option("--task-id", default=None, help="Optional task filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max approvals to print.",
)
def approvals_list(db_path: Path | None, status: str, task_id: str | None, limit: int) -> None:
    """List approvals."""

    _run(
        CONTROLLER.list_approvals,
        ApprovalListCommand(db_path=db_path, status=status.lower(), task_id=task_id, limit=limit),
    )


@approvals.command("resolve")
@db_path_option
@click.option("--approval-id", required=True, help="Approval id.")
@click.option(
    "--decision",
    type=click.Choice([decision.value for decision in ApprovalDecision], case_sensitive=False),
    required=True,
    help="Reviewer decision.",
)
@click.option("--notes", default=None, help="Reviewer notes (revision hint for revisions).")
def approvals_resolve(
    db_path: Path | None,
    approval_id: str,
    decision: str,
    notes: str | None,
) -> None:
    """Approve, reject or request a revision."""

    _run(
        CONTROLLER.resolve_approval,
        ApprovalResolveCommand(
            db_path=db_path,
            approval_id=approval_id,
            decision=decision.lower(),
            notes=notes,
        ),
    )


@agent_desk.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--task-id", default=None, help="Optional task filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, task_id: str | None, limit: int) -> None:
    """List jobs."""

    _run(
        CONTROLLER.list_jobs,
        JobListCommand(
            db_path=db_path,
            status=status.lower() if status else None,
            task_id=task_id,
            limit=limit,
        ),
    )


@jobs.command("inspect")
@db_path_option
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    _run(CONTROLLER.inspect_job, JobRefCommand(db_path=db_path, job_id=job_id))


@jobs.command("retry")
@db_path_option
@click.option("--job-id", required=True, help="Job id.")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Manually re-queue a failed or cancelled job."""

    _run(CONTROLLER.retry_job, JobRefCommand(db_path=db_path, job_id=job_id))


@jobs.command("cancel")
@db_path_option
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a queued or running job."""

    _run(CONTROLLER.cancel_job, JobRefCommand(db_path=db_path, job_id=job_id))


@agent_desk.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@db_path_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for claimed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Empty polls before exiting the loop; 0 polls forever.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run the job worker."""

    _run(
        CONTROLLER.run_worker,
        WorkerCommand(
            db_path=db_path,
            once=once,
            max_jobs=max_jobs,
            max_idle_polls=max_idle_polls or None,
        ),
    )


@agent_desk.group()
def reaper() -> None:
    """Stuck-job reaper commands."""


@reaper.command("run")
@db_path_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one sweep or sweep on an interval until interrupted.",
)
def reaper_run(db_path: Path | None, once: bool) -> None:
    """Requeue jobs stuck in running and reconcile workflow steps."""

    _run(CONTROLLER.run_reaper, ReaperCommand(db_path=db_path, once=once))


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_desk()
