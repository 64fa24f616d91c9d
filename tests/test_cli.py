from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_desk.main import agent_desk

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Tasks, Workflows, Approvals, Jobs"),
]

UUID = r"[a-f0-9-]{36}"


@pytest.fixture
def cli(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("AGENT_DESK_DEFAULT_LLM_PROVIDER", "echo")
    monkeypatch.setenv("AGENT_DESK_WORKER_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("AGENT_DESK_WORKER_ID", "cli-worker")
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    def invoke(*args: str):
        group, command, *rest = args
        return runner.invoke(agent_desk, [group, command, "--db-path", str(db_path), *rest])

    return invoke


def _flow_file(tmp_path: Path) -> Path:
    path = tmp_path / "flow.json"
    path.write_text(
        json.dumps(
            {
                "name": "cli_flow",
                "steps": [
                    {"name": "research", "kind": "ai", "capability": "research"},
                    {"name": "review", "kind": "approval"},
                    {"name": "publish", "kind": "publish", "target": "blog"},
                ],
            },
        ),
        encoding="utf-8",
    )
    return path


def _created_task_id(cli, title: str = "CLI task") -> str:
    created = cli("tasks", "create", "--title", title, "--input", '{"topic": "queues"}')
    assert created.exit_code == 0, created.output
    match = re.search(rf"task_id=({UUID})", created.output)
    assert match is not None
    return match.group(1)


def test_db_init(cli) -> None:
    result = cli("db", "init")

    assert result.exit_code == 0
    assert "Database ready" in result.output


def test_full_approval_flow(cli, tmp_path: Path) -> None:
    register = cli("workflows", "register", str(_flow_file(tmp_path)))
    assert register.exit_code == 0, register.output
    assert "Workflow registered: name=cli_flow version=1" in register.output

    task_id = _created_task_id(cli)
    start = cli("workflows", "start", "--task-id", task_id, "--workflow", "cli_flow")
    assert start.exit_code == 0, start.output
    assert "status=running" in start.output

    worker = cli("worker", "run", "--loop")
    assert worker.exit_code == 0, worker.output
    assert "processed=1" in worker.output
    assert "succeeded=1" in worker.output

    pending = cli("approvals", "list", "--task-id", task_id)
    assert pending.exit_code == 0
    assert "Approvals: 1" in pending.output
    match = re.search(rf"({UUID}) task={task_id}", pending.output)
    assert match is not None

    resolve = cli(
        "approvals",
        "resolve",
        "--approval-id",
        match.group(1),
        "--decision",
        "approved",
        "--notes",
        "ship it",
    )
    assert resolve.exit_code == 0, resolve.output
    assert "Approval resolved" in resolve.output
    assert "decision=approved" in resolve.output
    assert "Task status: completed" in resolve.output

    show = cli("tasks", "show", "--task-id", task_id)
    assert show.exit_code == 0
    assert "Status: completed" in show.output
    assert "#2 publish kind=publish status=completed" in show.output
    assert "Output:" in show.output


def test_defaults_register_idempotently(cli) -> None:
    first = cli("workflows", "register", "--defaults")
    second = cli("workflows", "register", "--defaults")

    assert first.exit_code == 0
    assert first.output.count("Workflow registered") == 6
    assert second.output.count("Workflow unchanged") == 6

    listed = cli("workflows", "list")
    assert "Workflows: 6" in listed.output


def test_register_requires_file_or_defaults(cli) -> None:
    result = cli("workflows", "register")

    assert result.exit_code == 1
    assert "workflow FILE or --defaults" in result.output


def test_job_commands(cli, tmp_path: Path) -> None:
    cli("workflows", "register", str(_flow_file(tmp_path)))
    task_id = _created_task_id(cli)
    cli("workflows", "start", "--task-id", task_id, "--workflow", "cli_flow")

    listed = cli("jobs", "list", "--task-id", task_id)
    assert listed.exit_code == 0
    assert "Jobs: 1" in listed.output
    match = re.search(rf"({UUID}) capability=research status=queued", listed.output)
    assert match is not None
    job_id = match.group(1)

    retry_active = cli("jobs", "retry", "--job-id", job_id)
    assert retry_active.exit_code == 1
    assert "retried manually" in retry_active.output

    cancel = cli("jobs", "cancel", "--job-id", job_id)
    assert cancel.exit_code == 0, cancel.output
    assert "status=cancelled" in cancel.output

    inspect = cli("jobs", "inspect", "--job-id", job_id)
    assert inspect.exit_code == 0
    assert "Status: cancelled" in inspect.output
    assert "Attempt: 0/3" in inspect.output

    show = cli("tasks", "show", "--task-id", task_id)
    assert "Status: failed" in show.output

    cancel_again = cli("jobs", "cancel", "--job-id", job_id)
    assert cancel_again.exit_code == 1
    assert "cannot be cancelled" in cancel_again.output

    missing = cli("jobs", "inspect", "--job-id", "missing")
    assert "Job not found: missing" in missing.output


def test_invalid_task_input_is_reported(cli) -> None:
    result = cli("tasks", "create", "--title", "Broken", "--input", "[1, 2]")

    assert result.exit_code == 1
    assert "must be a JSON object" in result.output


def test_pending_task_cancel_and_listing(cli) -> None:
    task_id = _created_task_id(cli, title="Short lived")

    cancelled = cli("tasks", "cancel", "--task-id", task_id)
    assert cancelled.exit_code == 0, cancelled.output
    assert "status=cancelled" in cancelled.output

    listed = cli("tasks", "list", "--status", "cancelled")
    assert "Tasks: 1" in listed.output
    assert "title=Short lived" in listed.output


def test_reaper_once_on_empty_queue(cli) -> None:
    result = cli("reaper", "run", "--once")

    assert result.exit_code == 0
    assert "Reaper summary: requeued=0 failed=0 reconciled=0" in result.output


def test_worker_once_on_empty_queue(cli) -> None:
    result = cli("worker", "run", "--once")

    assert result.exit_code == 0
    assert "processed=0" in result.output
    assert "idle_polls=1" in result.output
