from __future__ import annotations

from pathlib import Path

import allure
import pytest

from scaffolder.config import Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Runtime Settings"),
]


def test_from_env_defaults(monkeypatch) -> None:
    for name in (
        "SCAFFOLDER_DB_PATH",
        "SCAFFOLDER_WORKING_DIRECTORY",
        "SCAFFOLDER_WORKER_ID",
        "SCAFFOLDER_ACTION_MODULES",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".scaffolder.db")
    assert settings.worker.working_directory.name == "scaffolder"
    assert settings.worker.worker_id
    assert settings.worker.heartbeat_interval_seconds == 10.0
    assert settings.store.heartbeat_stale_seconds == 120
    assert settings.store.retry_attempts == 5
    assert settings.worker.action_modules == ()
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SCAFFOLDER_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("SCAFFOLDER_WORKING_DIRECTORY", str(tmp_path / "work"))
    monkeypatch.setenv("SCAFFOLDER_WORKER_ID", "worker-7")
    monkeypatch.setenv("SCAFFOLDER_HEARTBEAT_INTERVAL_SECONDS", "2")
    monkeypatch.setenv("SCAFFOLDER_HEARTBEAT_STALE_SECONDS", "30")
    monkeypatch.setenv("SCAFFOLDER_STEP_LOG_LEVEL", "debug")
    monkeypatch.setenv("SCAFFOLDER_ACTION_MODULES", "pkg.a:make, pkg.b:make,pkg.a:make")

    settings = Settings.from_env()
    explicit = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "env.db"
    assert explicit.db_path == tmp_path / "cli.db"
    assert settings.worker.working_directory == tmp_path / "work"
    assert settings.worker.worker_id == "worker-7"
    assert settings.worker.step_log_level == "DEBUG"
    assert settings.worker.action_modules == ("pkg.a:make", "pkg.b:make")
    settings.validate()


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"SCAFFOLDER_HEARTBEAT_STALE_SECONDS": "20"}, "greater than twice"),
        ({"SCAFFOLDER_POLL_INTERVAL_SECONDS": "0"}, "POLL_INTERVAL"),
        ({"SCAFFOLDER_STORE_RETRY_ATTEMPTS": "0"}, "RETRY_ATTEMPTS"),
        ({"SCAFFOLDER_STEP_LOG_LEVEL": "chatty"}, "STEP_LOG_LEVEL"),
        ({"SCAFFOLDER_ACTION_MODULES": "no_factory"}, "Expected format"),
    ],
)
def test_validate_rejects_out_of_range_values(monkeypatch, env: dict, message: str) -> None:
    for name, value in env.items():
        monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()
