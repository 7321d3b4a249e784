from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from recur_bot.periods import (
    MAX_ROLL_FORWARD_ITERATIONS,
    add_days,
    advance_period,
    coerce_utc,
    days_between,
    encode_reminder_offsets,
    is_valid_timezone,
    local_date_key,
    local_now,
    parse_reminder_offsets,
    resolve_timezone,
    roll_forward,
)


def test_monthly_advance_clamps_to_last_day_of_shorter_month() -> None:
    assert advance_period(date(2024, 1, 31), "monthly") == date(2024, 2, 29)
    assert advance_period(date(2023, 1, 31), "monthly") == date(2023, 2, 28)
    assert advance_period(date(2025, 3, 31), "monthly") == date(2025, 4, 30)
    assert advance_period(date(2025, 4, 30), "monthly") == date(2025, 5, 30)


def test_monthly_advance_rolls_over_the_year() -> None:
    assert advance_period(date(2024, 12, 15), "monthly") == date(2025, 1, 15)
    assert advance_period(date(2024, 12, 31), "monthly") == date(2025, 1, 31)


def test_month_end_advances_to_last_day_of_following_short_month() -> None:
    assert advance_period(date(2025, 5, 31), "monthly") == date(2025, 6, 30)
    assert advance_period(date(2025, 8, 31), "monthly") == date(2025, 9, 30)
    assert advance_period(date(2025, 10, 31), "monthly") == date(2025, 11, 30)


def test_yearly_advance_maps_leap_day_to_february_28() -> None:
    assert advance_period(date(2024, 2, 29), "yearly") == date(2025, 2, 28)
    assert advance_period(date(2025, 6, 1), "yearly") == date(2026, 6, 1)


def test_yearly_advance_from_clamped_date_keeps_the_28th() -> None:
    current = date(2024, 2, 29)
    for _ in range(4):
        current = advance_period(current, "yearly")
    assert current == date(2028, 2, 28)


def test_unknown_period_leaves_date_unchanged() -> None:
    assert advance_period(date(2025, 5, 5), "weekly") == date(2025, 5, 5)


def test_add_days_crosses_month_boundary() -> None:
    assert add_days(date(2025, 1, 30), 3) == date(2025, 2, 2)


def test_days_between_uses_local_calendar_days() -> None:
    zone = resolve_timezone("Europe/Moscow")
    late_evening = local_now(datetime(2025, 3, 10, 20, 59, tzinfo=timezone.utc), zone)
    assert late_evening.date() == date(2025, 3, 10)
    assert days_between(late_evening, date(2025, 3, 13)) == 3

    after_midnight = local_now(datetime(2025, 3, 10, 21, 1, tzinfo=timezone.utc), zone)
    assert after_midnight.date() == date(2025, 3, 11)
    assert days_between(after_midnight, date(2025, 3, 13)) == 2
    assert days_between(after_midnight, date(2025, 3, 9)) == -2


def test_resolve_timezone_falls_back_to_default_then_utc() -> None:
    assert str(resolve_timezone("Asia/Almaty")) == "Asia/Almaty"
    assert str(resolve_timezone("Not/AZone")) == "Europe/Moscow"
    assert str(resolve_timezone(None, default="Europe/Berlin")) == "Europe/Berlin"
    assert str(resolve_timezone("Not/AZone", default="Also/Bad")) == "UTC"


def test_local_date_key_formats_local_day() -> None:
    zone = resolve_timezone("Asia/Tokyo")
    moment = local_now(datetime(2025, 12, 31, 16, 0, tzinfo=timezone.utc), zone)
    assert local_date_key(moment) == "2026-01-01"
    assert local_date_key(date(2025, 7, 4)) == "2025-07-04"


def test_roll_forward_moves_past_payment_date() -> None:
    assert roll_forward(date(2025, 1, 15), "monthly", date(2025, 3, 20)) == date(2025, 4, 15)
    assert roll_forward(date(2025, 1, 15), "monthly", date(2025, 1, 15)) == date(2025, 2, 15)
    assert roll_forward(date(2025, 1, 15), "monthly", date(2025, 1, 14)) == date(2025, 1, 15)


def test_roll_forward_is_bounded() -> None:
    result = roll_forward(date(2000, 1, 1), "monthly", date(2025, 1, 1))
    assert result == date(2002, 1, 1)
    assert MAX_ROLL_FORWARD_ITERATIONS == 24


def test_roll_forward_with_unknown_period_stops_immediately() -> None:
    assert roll_forward(date(2025, 1, 1), "weekly", date(2025, 6, 1)) == date(2025, 1, 1)


def test_parse_reminder_offsets_accepts_native_json_csv_and_legacy_forms() -> None:
    assert parse_reminder_offsets([3, 1, 3]) == (1, 3)
    assert parse_reminder_offsets("[7, 1]") == (1, 7)
    assert parse_reminder_offsets("3,1") == (1, 3)
    assert parse_reminder_offsets('["T-3", "T-1", "T0"]') == (0, 1, 3)
    assert parse_reminder_offsets("T-3,T-1") == (1, 3)


def test_parse_reminder_offsets_drops_garbage() -> None:
    assert parse_reminder_offsets(None) == ()
    assert parse_reminder_offsets("") == ()
    assert parse_reminder_offsets("[not json") == ()
    assert parse_reminder_offsets({"a": 1}) == ()
    assert parse_reminder_offsets(["T-x", -2, True, "5"]) == (5,)


def test_encode_reminder_offsets_writes_sorted_json() -> None:
    assert encode_reminder_offsets((3, 1, 3)) == "[1, 3]"
    assert encode_reminder_offsets(None) is None
    assert parse_reminder_offsets(encode_reminder_offsets([7, 2])) == (2, 7)


def test_coerce_utc_treats_naive_as_utc_and_converts_aware() -> None:
    assert coerce_utc(datetime(2025, 3, 11, 7, 0)) == datetime(2025, 3, 11, 7, 0, tzinfo=timezone.utc)
    moscow = timezone(timedelta(hours=3))
    converted = coerce_utc(datetime(2025, 3, 11, 10, 0, tzinfo=moscow))
    assert converted.tzinfo is timezone.utc
    assert converted.hour == 7


def test_is_valid_timezone() -> None:
    assert is_valid_timezone("Europe/Moscow") is True
    assert is_valid_timezone("Mars/Olympus") is False
    assert is_valid_timezone("") is False
    assert is_valid_timezone("../etc/passwd") is False
