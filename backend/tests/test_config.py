from __future__ import annotations

import os

import pytest

from recur_bot.config import Settings, ensure_runtime_config, get_settings, runtime_config_issues

_CONFIG_KEYS = (
    "BOT_TOKEN",
    "DATABASE_URL",
    "RECUR_STORE_BACKEND",
    "REMINDER_LEDGER_BACKEND",
    "DEFAULT_TZ",
    "DEFAULT_NOTIFY_HOUR",
    "DEFAULT_REMINDERS",
    "ENABLE_REMINDER_SCHEDULER",
    "REMINDER_INTERVAL_SECONDS",
    "REMINDER_ON_THE_HOUR_WINDOW_MINUTES",
    "REMINDER_LEDGER_RETENTION_DAYS",
    "HEALTH_PORT",
)


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _cleared(**overrides: str | None) -> dict[str, str | None]:
    env: dict[str, str | None] = {key: None for key in _CONFIG_KEYS}
    env.update(overrides)
    return env


def test_defaults_when_environment_is_empty() -> None:
    previous = _set_env(_cleared())
    try:
        settings = get_settings()
    finally:
        _restore_env(previous)

    assert settings.store_backend == "inmemory"
    assert settings.ledger_backend == "inmemory"
    assert settings.default_timezone == "Europe/Moscow"
    assert settings.default_notify_hour == 10
    assert settings.default_reminders == (3, 1)
    assert settings.reminder_scheduler_enabled is True
    assert settings.reminder_interval_seconds == 60.0
    assert settings.reminder_on_the_hour_window_minutes == 2
    assert settings.reminder_ledger_retention_days == 30
    assert settings.health_port is None


def test_environment_overrides_are_parsed() -> None:
    previous = _set_env(
        _cleared(
            BOT_TOKEN=" 123:abc ",
            DATABASE_URL="postgresql+psycopg://recur@localhost/recur",
            RECUR_STORE_BACKEND="Postgres",
            DEFAULT_TZ="Asia/Almaty",
            DEFAULT_NOTIFY_HOUR="30",
            DEFAULT_REMINDERS="T-7,T-1",
            ENABLE_REMINDER_SCHEDULER="off",
            REMINDER_INTERVAL_SECONDS="15",
            REMINDER_ON_THE_HOUR_WINDOW_MINUTES="0",
            REMINDER_LEDGER_RETENTION_DAYS="7",
            HEALTH_PORT="8080",
        )
    )
    try:
        settings = get_settings()
    finally:
        _restore_env(previous)

    assert settings.bot_token == "123:abc"
    assert settings.store_backend == "postgres"
    assert settings.ledger_backend == "postgres"
    assert settings.default_timezone == "Asia/Almaty"
    assert settings.default_notify_hour == 23
    assert settings.default_reminders == (1, 7)
    assert settings.reminder_scheduler_enabled is False
    assert settings.reminder_interval_seconds == 15.0
    assert settings.reminder_on_the_hour_window_minutes == 1
    assert settings.reminder_ledger_retention_days == 7
    assert settings.health_port == 8080


def test_ledger_backend_can_differ_from_store_backend() -> None:
    previous = _set_env(_cleared(RECUR_STORE_BACKEND="postgres", REMINDER_LEDGER_BACKEND="inmemory"))
    try:
        settings = get_settings()
    finally:
        _restore_env(previous)

    assert settings.store_backend == "postgres"
    assert settings.ledger_backend == "inmemory"


def test_invalid_numbers_fall_back_to_defaults() -> None:
    previous = _set_env(
        _cleared(
            DEFAULT_NOTIFY_HOUR="noon",
            DEFAULT_REMINDERS="soon",
            REMINDER_INTERVAL_SECONDS="fast",
            HEALTH_PORT="http",
        )
    )
    try:
        settings = get_settings()
    finally:
        _restore_env(previous)

    assert settings.default_notify_hour == 10
    assert settings.default_reminders == (3, 1)
    assert settings.reminder_interval_seconds == 60.0
    assert settings.health_port is None


def test_runtime_config_issues_flags_missing_values() -> None:
    issues = runtime_config_issues(Settings(store_backend="postgres", reminder_interval_seconds=0))

    assert "BOT_TOKEN is required" in issues
    assert any(issue.startswith("DATABASE_URL is required") for issue in issues)
    assert "REMINDER_INTERVAL_SECONDS must be positive" in issues


def test_runtime_config_issues_rejects_unknown_backend() -> None:
    issues = runtime_config_issues(Settings(bot_token="t", ledger_backend="redis"), require_bot_token=True)
    assert issues == ("REMINDER_LEDGER_BACKEND must be one of inmemory, postgres",)


def test_preview_mode_does_not_require_bot_token() -> None:
    assert runtime_config_issues(Settings(), require_bot_token=False) == ()


def test_ensure_runtime_config_blocks_startup() -> None:
    with pytest.raises(RuntimeError, match="configuration blocked startup: BOT_TOKEN is required"):
        ensure_runtime_config(Settings())

    ensure_runtime_config(Settings(bot_token="123:abc"))
