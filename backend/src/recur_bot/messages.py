from __future__ import annotations

from datetime import date
from decimal import Decimal

from .store import SubscriptionRecord, UserRecord

CURRENCY_SYMBOLS = {
    "RUB": "₽",
    "EUR": "€",
    "USD": "$",
    "KZT": "₸",
    "BYN": "Br",
}


def format_amount(amount: Decimal, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())
    if amount == amount.to_integral_value():
        rendered = f"{amount:,.0f}"
    else:
        rendered = f"{amount:,.2f}"
    return f"{rendered.replace(',', ' ')} {symbol}"


def format_day(value: date) -> str:
    return value.strftime("%a %d %b")


def pluralize_days(value: int) -> str:
    return "day" if abs(value) == 1 else "days"


def _describe(subscription: SubscriptionRecord) -> str:
    return f"{subscription.name} — {format_amount(subscription.amount, subscription.currency)}"


def render_pre_reminder(subscription: SubscriptionRecord, offset_days: int) -> str:
    return (
        f"In {offset_days} {pluralize_days(offset_days)}: {_describe(subscription)} "
        f"({format_day(subscription.next_due)})."
    )


def render_morning_reminder(subscription: SubscriptionRecord) -> str:
    return f"Due today: {_describe(subscription)} ({format_day(subscription.next_due)})."


def render_evening_check(subscription: SubscriptionRecord) -> str:
    return f"{_describe(subscription)} was due today. Did the payment go through?"


def render_currency_totals(subscriptions) -> str:
    totals: dict[str, Decimal] = {}
    for value in subscriptions:
        currency = value.currency.upper()
        totals[currency] = totals.get(currency, Decimal("0")) + value.amount
    return ", ".join(format_amount(totals[currency], currency) for currency in sorted(totals))


def render_weekly_digest(subscriptions: tuple[SubscriptionRecord, ...] | list[SubscriptionRecord]) -> str:
    lines = ["This week:", ""]
    lines.extend(f"{format_day(value.next_due)} — {value.name} {format_amount(value.amount, value.currency)}" for value in subscriptions)
    if subscriptions:
        lines.extend(["", f"Total this week: {render_currency_totals(subscriptions)}"])
    return "\n".join(lines)


def render_marked_paid(subscription: SubscriptionRecord) -> str:
    return f"{subscription.name} marked as paid. Next date: {format_day(subscription.next_due)}"


def render_cycle_skipped(subscription: SubscriptionRecord) -> str:
    return f"{subscription.name}: cycle skipped. New date: {format_day(subscription.next_due)}"


def render_snoozed(subscription: SubscriptionRecord) -> str:
    return f"{subscription.name} moved to {format_day(subscription.next_due)}"


def render_manual_payment(subscription: SubscriptionRecord, paid_on: date) -> str:
    return (
        f"{subscription.name}: payment on {format_day(paid_on)} recorded. "
        f"Next date: {format_day(subscription.next_due)}"
    )


def render_subscription_list(subscriptions: list[SubscriptionRecord]) -> str:
    if not subscriptions:
        return "Nothing here yet."
    lines = [
        f"{index}. {value.name} — {format_amount(value.amount, value.currency)} / {value.period}, next {format_day(value.next_due)}"
        for index, value in enumerate(subscriptions, start=1)
    ]
    return "\n".join(lines)


def format_hour(hour: int) -> str:
    return f"{hour:02d}:00"


def render_reminder_settings(user: UserRecord, options: tuple[int, ...]) -> str:
    lines = ["Reminders before a charge:"]
    for offset in options:
        status = "✅" if offset in user.default_offsets else "❌"
        lines.append(f"{status} {offset} {pluralize_days(offset)} before (at {format_hour(user.notify_hour)})")
    lines.extend(
        [
            "",
            f"Advance and morning reminders go out at {format_hour(user.notify_hour)} {user.timezone}, "
            "the evening check at 20:00.",
        ]
    )
    return "\n".join(lines)


def render_notify_hour_updated(hour: int) -> str:
    return f"Reminder time changed to {format_hour(hour)}."


def render_timezone_updated(user: UserRecord) -> str:
    return f"Timezone set to {user.timezone}. Reminders follow your local time there."


def render_timezone_invalid(zone_name: str) -> str:
    return f"Unknown timezone {zone_name!r}. Use a name like Europe/Moscow or America/New_York."


SNOOZE_PROMPT = "Snooze for how many days?"
SNOOZE_INPUT_PROMPT = "Enter how many days to snooze (a number from 1 to 30)."
SNOOZE_INPUT_INVALID = "Please send a whole number from 1 to 30."
SUBSCRIPTION_NOT_FOUND = "Subscription not found. Refresh the list with /list."
TRY_AGAIN_LATER = "Something went wrong. Please try again later."
START_FIRST = "Send /start first."
NOTIFY_HOUR_PROMPT = "Enter the reminder hour (0-23)."
NOTIFY_HOUR_INVALID = "Please send a whole number from 0 to 23."
NOTIFY_HOUR_CANCELLED = "Reminder time unchanged."
TIMEZONE_USAGE = "Usage: /timezone <Area/City>, for example /timezone Europe/Berlin"
