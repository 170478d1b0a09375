from __future__ import annotations

from pathlib import Path

import allure
import pytest

from handoff.config import DroidSettings, NotifierSettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Handoff"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(clean_env) -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".handoff.db")
    assert settings.worker.poll_interval_seconds == 5
    assert settings.worker.max_concurrent == 3
    assert settings.worker.job_types == ()
    assert settings.worker.progress_interval_seconds == 30
    assert settings.worker.grace_seconds == 30
    assert settings.notifier.min_progress_interval_seconds == 30
    assert settings.notifier.percent_threshold == 10
    assert settings.notifier.show_progress_bar is True
    assert settings.locks.max_concurrent_conversations == 10
    assert settings.droid.bin == "droid"
    assert settings.droid.max_timeout_seconds == 900
    assert settings.telegram.enabled is False
    settings.validate()


def test_from_env_reads_overrides(clean_env, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HANDOFF_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("HANDOFF_JOB_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("HANDOFF_JOB_MAX_CONCURRENT", "7")
    monkeypatch.setenv("HANDOFF_JOB_TYPES", "droid_exec, echo,,echo")
    monkeypatch.setenv("HANDOFF_JOB_PROGRESS_INTERVAL_SECONDS", "12")
    monkeypatch.setenv("HANDOFF_JOB_VERBOSE", "yes")
    monkeypatch.setenv("HANDOFF_NOTIFY_SHOW_PROGRESS_BAR", "off")
    monkeypatch.setenv("HANDOFF_MAX_CONCURRENT_CONVERSATIONS", "4")
    monkeypatch.setenv("HANDOFF_TELEGRAM_BOT_TOKEN", "  123:abc  ")
    monkeypatch.setenv("DROID_BIN", "/opt/droid")
    monkeypatch.setenv("DROID_MODEL", "")
    monkeypatch.setenv("DROID_USE_SPEC", "1")
    monkeypatch.setenv("DROID_AUTO", "High")
    monkeypatch.setenv("DROID_MAX_TIMEOUT_MS", "120000")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.worker.poll_interval_seconds == 0.5
    assert settings.worker.max_concurrent == 7
    assert settings.worker.job_types == ("droid_exec", "echo")
    assert settings.worker.progress_interval_seconds == 12
    assert settings.notifier.min_progress_interval_seconds == 12
    assert settings.worker.verbose is True
    assert settings.notifier.show_progress_bar is False
    assert settings.locks.max_concurrent_conversations == 4
    assert settings.telegram.bot_token == "123:abc"
    assert settings.telegram.enabled is True
    assert settings.droid.bin == "/opt/droid"
    assert settings.droid.model is None
    assert settings.droid.use_spec is True
    assert settings.droid.max_timeout_seconds == 120
    settings.validate()

    options = settings.droid.to_options()
    assert options.auto == "high"
    assert options.max_timeout_seconds == 120


def test_explicit_db_path_wins_over_env(clean_env, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HANDOFF_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_names_variable(clean_env, monkeypatch) -> None:
    monkeypatch.setenv("HANDOFF_JOB_VERBOSE", "maybe")

    with pytest.raises(ValueError, match="HANDOFF_JOB_VERBOSE"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "variable"),
    [
        (Settings(worker=WorkerSettings(poll_interval_seconds=0)), "POLL_INTERVAL"),
        (Settings(worker=WorkerSettings(max_concurrent=0)), "HANDOFF_JOB_MAX_CONCURRENT"),
        (Settings(worker=WorkerSettings(grace_seconds=-1)), "HANDOFF_JOB_GRACE_SECONDS"),
        (
            Settings(worker=WorkerSettings(retry_base_seconds=60, retry_max_seconds=10)),
            "HANDOFF_JOB_RETRY_MAX_SECONDS",
        ),
        (Settings(notifier=NotifierSettings(percent_threshold=0)), "PERCENT_THRESHOLD"),
        (Settings(droid=DroidSettings(reasoning_effort="extreme")), "DROID_REASONING_EFFORT"),
        (Settings(droid=DroidSettings(auto="yolo")), "DROID_AUTO"),
    ],
)
def test_validate_rejects_bad_values(settings: Settings, variable: str) -> None:
    with pytest.raises(ValueError, match=variable):
        settings.validate()
