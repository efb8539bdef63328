from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from socket_sliders.config import ENV_PREFIX, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name)


def test_defaults_are_valid() -> None:
    settings = Settings.from_env()

    settings.validate()
    assert settings.db_path == Path(".socket_sliders.db")
    assert settings.worker.concurrency == 2
    assert settings.worker.job_timeout_seconds == 60.0
    assert settings.queue.max_attempts == 3
    assert settings.compiler.executable == "openscad"
    assert settings.storage.artifact_max_age == timedelta(hours=24)


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SOCKET_SLIDERS_DB_PATH", str(tmp_path / "queue.db"))
    monkeypatch.setenv("SOCKET_SLIDERS_LOG_LEVEL", "debug")
    monkeypatch.setenv("SOCKET_SLIDERS_WORKER_CONCURRENCY", "4")
    monkeypatch.setenv("SOCKET_SLIDERS_RATE_LIMIT_WINDOW_SECONDS", "2.5")
    monkeypatch.setenv("SOCKET_SLIDERS_OPENSCAD_BIN", "/opt/openscad/bin/openscad")
    monkeypatch.setenv("SOCKET_SLIDERS_ARTIFACTS_DIR", str(tmp_path / "out"))

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "queue.db"
    assert settings.log_level == "DEBUG"
    assert settings.worker.concurrency == 4
    assert settings.worker.rate_limit_window_seconds == 2.5
    assert settings.compiler.executable == "/opt/openscad/bin/openscad"
    assert settings.storage.artifacts_dir == tmp_path / "out"


def test_explicit_db_path_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("SOCKET_SLIDERS_DB_PATH", "ignored.db")

    assert Settings.from_env(tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_blank_numeric_value_falls_back_to_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOCKET_SLIDERS_MAX_ATTEMPTS", "  ")

    assert Settings.from_env().queue.max_attempts == 3


@pytest.mark.parametrize(
    ("name", "raw", "message"),
    [
        ("WORKER_CONCURRENCY", "two", "must be an integer, got 'two'"),
        ("JOB_TIMEOUT_SECONDS", "1m", "must be a number, got '1m'"),
    ],
)
def test_unparsable_numbers_name_the_variable(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    raw: str,
    message: str,
) -> None:
    monkeypatch.setenv(f"{ENV_PREFIX}{name}", raw)

    with pytest.raises(ValueError, match=f"{ENV_PREFIX}{name} {message}"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("WORKER_CONCURRENCY", "0", "must be >= 1"),
        ("RATE_LIMIT_MAX_STARTS", "0", "must be >= 1"),
        ("JOB_TIMEOUT_SECONDS", "0", "must be > 0"),
        ("RATE_LIMIT_WINDOW_SECONDS", "-1", "must be > 0"),
        ("ARTIFACT_MAX_COUNT", "-1", "must be >= 0"),
        ("OPENSCAD_BIN", " ", "must not be empty"),
        ("LOG_LEVEL", "chatty", "must be one of"),
    ],
)
def test_validate_rejects_out_of_range_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(f"{ENV_PREFIX}{name}", value)
    settings = Settings.from_env()

    with pytest.raises(ValueError, match=f"{ENV_PREFIX}{name} {message}"):
        settings.validate()


def test_heartbeat_must_be_shorter_than_stall_window(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOCKET_SLIDERS_HEARTBEAT_INTERVAL_SECONDS", "30")
    monkeypatch.setenv("SOCKET_SLIDERS_STALL_AFTER_SECONDS", "30")

    with pytest.raises(ValueError, match="HEARTBEAT_INTERVAL_SECONDS must be lower"):
        Settings.from_env().validate()


def test_queue_settings_build_policies(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOCKET_SLIDERS_RETRY_BASE_SECONDS", "1.5")
    monkeypatch.setenv("SOCKET_SLIDERS_RETRY_MAX_SECONDS", "10")
    monkeypatch.setenv("SOCKET_SLIDERS_COMPLETED_JOB_MAX_AGE_HOURS", "2")
    monkeypatch.setenv("SOCKET_SLIDERS_COMPLETED_JOB_MAX_COUNT", "5")
    monkeypatch.setenv("SOCKET_SLIDERS_FAILED_JOB_MAX_AGE_DAYS", "1")
    queue = Settings.from_env().queue

    retry = queue.retry_policy()
    retention = queue.retention_policy()

    assert retry.base_seconds == 1.5
    assert retry.max_seconds == 10.0
    assert retention.completed_max_age == timedelta(hours=2)
    assert retention.completed_max_count == 5
    assert retention.failed_max_age == timedelta(days=1)
