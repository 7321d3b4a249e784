from __future__ import annotations

import calendar
import json
import re
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import Period

# Safety bound for roll-forward over stalled or corrupted due dates.
MAX_ROLL_FORWARD_ITERATIONS = 24

_LEGACY_OFFSET_RE = re.compile(r"^T-(\d+)$")


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def advance_period(due_date: date, period: Period | str) -> date:
    """Move a due date forward by one billing period.

    Monthly clamps the day to the last valid day of the target month
    (Jan 31 -> Feb 28/29). Yearly maps Feb 29 to Feb 28 in non-leap years.
    Unknown periods return the date unchanged.
    """
    if period == "monthly":
        year = due_date.year + (1 if due_date.month == 12 else 0)
        month = 1 if due_date.month == 12 else due_date.month + 1
        day = min(due_date.day, _last_day_of_month(year, month))
        return date(year, month, day)
    if period == "yearly":
        year = due_date.year + 1
        day = min(due_date.day, _last_day_of_month(year, due_date.month))
        return date(year, due_date.month, day)
    return due_date


def add_days(due_date: date, days: int) -> date:
    return due_date + timedelta(days=days)


def resolve_timezone(zone_name: str | None, default: str = "Europe/Moscow") -> ZoneInfo:
    for candidate in (zone_name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo("UTC")


def is_valid_timezone(zone_name: str) -> bool:
    if not zone_name:
        return False
    try:
        ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def local_now(utc_now: datetime, zone: ZoneInfo) -> datetime:
    return coerce_utc(utc_now).astimezone(zone)


def local_date_key(value: datetime | date) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime("%Y-%m-%d")


def days_between(now_local: datetime | date, due_date: date) -> int:
    """Whole days from the local start of today to the due date (negative when overdue)."""
    today = now_local.date() if isinstance(now_local, datetime) else now_local
    return (due_date - today).days


def roll_forward(
    next_due: date,
    period: Period | str,
    paid_on: date,
    *,
    max_iterations: int = MAX_ROLL_FORWARD_ITERATIONS,
) -> date:
    """Advance next_due past every cycle already covered by a payment on paid_on."""
    current = next_due
    iterations = 0
    while paid_on >= current and iterations < max_iterations:
        advanced = advance_period(current, period)
        if advanced == current:
            break
        current = advanced
        iterations += 1
    return current


def parse_reminder_offsets(raw: object) -> tuple[int, ...]:
    """Decode stored reminder offsets into a sorted tuple of unique non-negative ints.

    Accepts native int lists, JSON-encoded lists, comma-separated strings and the
    legacy ``"T-N"`` encoding. Anything unparseable is dropped.
    """
    if raw is None:
        return ()
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return ()
        if text.startswith("["):
            try:
                raw = json.loads(text)
            except ValueError:
                return ()
        else:
            raw = [item.strip() for item in text.split(",")]
    if not isinstance(raw, (list, tuple, set, frozenset)):
        return ()

    offsets: set[int] = set()
    for item in raw:
        value: int | None = None
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            value = item
        elif isinstance(item, str):
            token = item.strip()
            match = _LEGACY_OFFSET_RE.match(token)
            if match:
                value = int(match.group(1))
            elif token == "T0":
                value = 0
            elif token.isdigit():
                value = int(token)
        if value is not None and value >= 0:
            offsets.add(value)
    return tuple(sorted(offsets))


def encode_reminder_offsets(offsets: tuple[int, ...] | list[int] | None) -> str | None:
    if offsets is None:
        return None
    return json.dumps(sorted({int(value) for value in offsets}))
