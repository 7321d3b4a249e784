from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from recur_bot.periods import resolve_timezone
from recur_bot.policy import (
    build_ledger_key,
    clamp_window,
    evaluate_subscription,
    evaluate_user,
    evaluate_weekly_digest,
    is_on_the_hour,
)
from recur_bot.store import SubscriptionRecord, UserRecord

MOSCOW = resolve_timezone("Europe/Moscow")


def _user(*, notify_hour: int = 10, default_offsets: tuple[int, ...] = (1, 3)) -> UserRecord:
    return UserRecord(user_id=42, timezone="Europe/Moscow", notify_hour=notify_hour, default_offsets=default_offsets)


def _subscription(
    sub_id: int = 7,
    *,
    name: str = "Music",
    next_due: date = date(2025, 3, 13),
    reminder_offsets: tuple[int, ...] | None = None,
) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=sub_id,
        user_id=42,
        name=name,
        amount=Decimal("9.99"),
        currency="USD",
        period="monthly",
        next_due=next_due,
        reminder_offsets=reminder_offsets,
    )


def _local(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=MOSCOW)


def test_on_the_hour_window_is_half_open_and_clamped() -> None:
    assert is_on_the_hour(_local(date(2025, 3, 10), 10, 0)) is True
    assert is_on_the_hour(_local(date(2025, 3, 10), 10, 1)) is True
    assert is_on_the_hour(_local(date(2025, 3, 10), 10, 2)) is False
    assert clamp_window(0) == 1
    assert clamp_window(90) == 59
    assert is_on_the_hour(_local(date(2025, 3, 10), 10, 4), 5) is True


def test_pre_reminder_fires_only_for_matching_offset_at_notify_hour() -> None:
    user = _user()
    subscription = _subscription(next_due=date(2025, 3, 13))

    decisions = evaluate_subscription(user, subscription, _local(date(2025, 3, 10), 10, 0))

    assert [decision.ledger_key for decision in decisions] == ["42|7|pre-3|2025-03-10"]
    assert decisions[0].reminder_class == "pre"
    assert decisions[0].offset_days == 3
    assert decisions[0].due_date == date(2025, 3, 13)


def test_pre_reminder_is_silent_outside_the_window() -> None:
    user = _user()
    subscription = _subscription(next_due=date(2025, 3, 13))

    assert evaluate_subscription(user, subscription, _local(date(2025, 3, 10), 10, 2)) == []
    assert evaluate_subscription(user, subscription, _local(date(2025, 3, 10), 11, 0)) == []
    assert evaluate_subscription(user, subscription, _local(date(2025, 3, 11), 10, 0)) == []


def test_subscription_offsets_override_user_defaults() -> None:
    user = _user(default_offsets=(1, 3))
    subscription = _subscription(next_due=date(2025, 3, 17), reminder_offsets=(7,))

    decisions = evaluate_subscription(user, subscription, _local(date(2025, 3, 10), 10, 0))
    assert [decision.ledger_key for decision in decisions] == ["42|7|pre-7|2025-03-10"]

    no_reminders = _subscription(next_due=date(2025, 3, 13), reminder_offsets=())
    assert evaluate_subscription(user, no_reminders, _local(date(2025, 3, 10), 10, 0)) == []


def test_due_day_produces_morning_then_evening() -> None:
    user = _user()
    subscription = _subscription(next_due=date(2025, 3, 13))

    morning = evaluate_subscription(user, subscription, _local(date(2025, 3, 13), 10, 1))
    evening = evaluate_subscription(user, subscription, _local(date(2025, 3, 13), 20, 0))

    assert [decision.reminder_class for decision in morning] == ["morning"]
    assert [decision.ledger_key for decision in evening] == ["42|7|evening|2025-03-13"]


def test_notify_hour_at_evening_produces_morning_and_evening_together() -> None:
    user = _user(notify_hour=20)
    subscription = _subscription(next_due=date(2025, 3, 13))

    decisions = evaluate_subscription(user, subscription, _local(date(2025, 3, 13), 20, 0))

    assert [decision.reminder_class for decision in decisions] == ["morning", "evening"]
    assert len({decision.ledger_key for decision in decisions}) == 2


def test_overdue_subscription_produces_nothing() -> None:
    user = _user()
    subscription = _subscription(next_due=date(2025, 3, 9))
    assert evaluate_subscription(user, subscription, _local(date(2025, 3, 10), 10, 0)) == []
    assert evaluate_subscription(user, subscription, _local(date(2025, 3, 10), 20, 0)) == []


def test_force_produces_every_class_regardless_of_time() -> None:
    user = _user()
    subscription = _subscription(next_due=date(2025, 4, 30))

    decisions = evaluate_subscription(user, subscription, _local(date(2025, 3, 11), 15, 37), force=True)

    assert [decision.ledger_key for decision in decisions] == [
        "42|7|pre-1|2025-03-11",
        "42|7|pre-3|2025-03-11",
        "42|7|morning|2025-03-11",
        "42|7|evening|2025-03-11",
    ]


def test_weekly_digest_only_on_monday_at_notify_hour() -> None:
    user = _user()
    subscriptions = [
        _subscription(1, name="Video", next_due=date(2025, 3, 16)),
        _subscription(2, name="cloud", next_due=date(2025, 3, 12)),
        _subscription(3, name="Books", next_due=date(2025, 3, 12)),
        _subscription(4, name="Later", next_due=date(2025, 3, 17)),
        _subscription(5, name="Missed", next_due=date(2025, 3, 9)),
    ]

    monday = evaluate_weekly_digest(user, subscriptions, _local(date(2025, 3, 10), 10, 0))
    assert monday is not None
    assert monday.ledger_key == "42|weekly|weekly|2025-03-10"
    assert [value.id for value in monday.digest] == [3, 2, 1]

    assert evaluate_weekly_digest(user, subscriptions, _local(date(2025, 3, 11), 10, 0)) is None
    assert evaluate_weekly_digest(user, subscriptions, _local(date(2025, 3, 10), 10, 5)) is None


def test_weekly_digest_is_suppressed_when_nothing_is_due() -> None:
    user = _user()
    subscriptions = [_subscription(next_due=date(2025, 4, 1))]
    assert evaluate_weekly_digest(user, subscriptions, _local(date(2025, 3, 10), 10, 0)) is None


def test_evaluate_user_puts_weekly_first() -> None:
    user = _user()
    subscriptions = [_subscription(next_due=date(2025, 3, 13))]

    decisions = evaluate_user(user, subscriptions, _local(date(2025, 3, 10), 10, 0))

    assert [decision.reminder_class for decision in decisions] == ["weekly", "pre"]
    assert decisions[0].subscription_id is None


def test_ledger_key_uses_local_day() -> None:
    assert build_ledger_key(42, 7, "pre-1", _local(date(2025, 3, 10), 23, 59)) == "42|7|pre-1|2025-03-10"
