from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_desk.config import RetrySettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]

_ENV_KEYS = (
    "AGENT_DESK_DB_PATH",
    "AGENT_DESK_WORKER_ID",
    "AGENT_DESK_WORKER_POLL_INTERVAL_SECONDS",
    "AGENT_DESK_WORKER_MAX_CONCURRENT_JOBS",
    "AGENT_DESK_JOB_MAX_RETRIES",
    "AGENT_DESK_DEFAULT_LLM_PROVIDER",
    "AGENT_DESK_OPENAI_API_KEY",
    "OPENAI_API_KEY",
    "AGENT_DESK_USER_ROLE",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_desk.db")
    assert settings.worker.poll_interval_seconds == 5.0
    assert settings.worker.max_concurrent_jobs == 3
    assert settings.worker.worker_id
    assert settings.reaper.stuck_job_timeout_minutes == 30.0
    assert settings.retry.max_retries == 3
    assert settings.llm.default_provider == "openai"
    assert settings.llm.openai_api_key is None
    assert settings.user_context.role == "admin"


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_DESK_WORKER_ID", "worker-7")
    monkeypatch.setenv("AGENT_DESK_WORKER_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("AGENT_DESK_WORKER_MAX_CONCURRENT_JOBS", "8")
    monkeypatch.setenv("AGENT_DESK_JOB_MAX_RETRIES", "5")
    monkeypatch.setenv("AGENT_DESK_DEFAULT_LLM_PROVIDER", "Ollama")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-fallback")

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"
    assert settings.worker.worker_id == "worker-7"
    assert settings.worker.poll_interval_seconds == 0.5
    assert settings.worker.max_concurrent_jobs == 8
    assert settings.retry.max_retries == 5
    assert settings.llm.default_provider == "ollama"
    assert settings.llm.openai_api_key == "sk-fallback"


def test_from_env_rejects_unknown_role(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_DESK_USER_ROLE", "owner")

    with pytest.raises(ValueError, match="Unsupported user role"):
        Settings.from_env()


def test_worker_settings_reject_zero_concurrency() -> None:
    with pytest.raises(ValueError, match="max concurrent jobs"):
        WorkerSettings(max_concurrent_jobs=0).validate()


def test_retry_settings_reject_empty_budget() -> None:
    with pytest.raises(ValueError, match="max retries"):
        RetrySettings(max_retries=0).validate()
