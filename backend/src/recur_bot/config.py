from __future__ import annotations

import os
from dataclasses import dataclass

from .periods import parse_reminder_offsets

STORE_BACKENDS = {"inmemory", "postgres"}


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_offsets(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if value is None:
        return default
    offsets = tuple(item for item in parse_reminder_offsets(value) if item > 0)
    return offsets or default


def _normalize_backend(value: str | None) -> str:
    if value is None:
        return "inmemory"
    return value.strip().lower() or "inmemory"


@dataclass(frozen=True)
class Settings:
    app_name: str = "Recur Reminder Service"
    api_prefix: str = "/api/v1"
    bot_token: str = ""
    database_url: str = ""
    store_backend: str = "inmemory"
    ledger_backend: str = "inmemory"
    default_timezone: str = "Europe/Moscow"
    default_notify_hour: int = 10
    default_reminders: tuple[int, ...] = (3, 1)
    reminder_scheduler_enabled: bool = True
    reminder_interval_seconds: float = 60.0
    reminder_on_the_hour_window_minutes: int = 2
    reminder_ledger_retention_days: int = 30
    health_host: str = "0.0.0.0"
    health_port: int | None = None


def get_settings() -> Settings:
    health_port_raw = os.getenv("HEALTH_PORT", "").strip()
    return Settings(
        app_name=os.getenv("RECUR_APP_NAME", "Recur Reminder Service"),
        api_prefix=os.getenv("RECUR_API_PREFIX", "/api/v1"),
        bot_token=os.getenv("BOT_TOKEN", "").strip(),
        database_url=os.getenv("DATABASE_URL", "").strip(),
        store_backend=_normalize_backend(os.getenv("RECUR_STORE_BACKEND")),
        ledger_backend=_normalize_backend(os.getenv("REMINDER_LEDGER_BACKEND", os.getenv("RECUR_STORE_BACKEND"))),
        default_timezone=os.getenv("DEFAULT_TZ", "Europe/Moscow").strip() or "Europe/Moscow",
        default_notify_hour=max(0, min(23, _as_int(os.getenv("DEFAULT_NOTIFY_HOUR"), 10))),
        default_reminders=_as_offsets(os.getenv("DEFAULT_REMINDERS"), (3, 1)),
        reminder_scheduler_enabled=_as_bool(os.getenv("ENABLE_REMINDER_SCHEDULER"), True),
        reminder_interval_seconds=_as_float(os.getenv("REMINDER_INTERVAL_SECONDS"), 60.0),
        reminder_on_the_hour_window_minutes=max(
            1, min(59, _as_int(os.getenv("REMINDER_ON_THE_HOUR_WINDOW_MINUTES"), 2))
        ),
        reminder_ledger_retention_days=max(1, _as_int(os.getenv("REMINDER_LEDGER_RETENTION_DAYS"), 30)),
        health_host=os.getenv("HEALTH_HOST", "0.0.0.0"),
        health_port=_as_int(health_port_raw, 0) or None,
    )


def runtime_config_issues(settings: Settings, *, require_bot_token: bool = True) -> tuple[str, ...]:
    issues: list[str] = []
    if require_bot_token and not settings.bot_token:
        issues.append("BOT_TOKEN is required")
    if settings.store_backend not in STORE_BACKENDS:
        issues.append(f"RECUR_STORE_BACKEND must be one of {', '.join(sorted(STORE_BACKENDS))}")
    if settings.ledger_backend not in STORE_BACKENDS:
        issues.append(f"REMINDER_LEDGER_BACKEND must be one of {', '.join(sorted(STORE_BACKENDS))}")
    uses_sql = "postgres" in {settings.store_backend, settings.ledger_backend}
    if uses_sql and not settings.database_url:
        issues.append("DATABASE_URL is required when RECUR_STORE_BACKEND or REMINDER_LEDGER_BACKEND is postgres")
    if settings.reminder_interval_seconds <= 0:
        issues.append("REMINDER_INTERVAL_SECONDS must be positive")
    return tuple(issues)


def ensure_runtime_config(settings: Settings, *, require_bot_token: bool = True) -> None:
    issues = runtime_config_issues(settings, require_bot_token=require_bot_token)
    if issues:
        raise RuntimeError("configuration blocked startup: " + "; ".join(issues))
