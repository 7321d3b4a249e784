"""Pure reminder decisions for one user at one instant.

Nothing here touches a store, the ledger or the network; the scheduler and the
preview tooling feed in snapshots and act on the returned decisions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

from .models import ReminderClass
from .periods import days_between, local_date_key
from .store import SubscriptionRecord, UserRecord

EVENING_HOUR = 20
DEFAULT_ON_THE_HOUR_WINDOW_MINUTES = 2
WEEKLY_DIGEST_HORIZON_DAYS = 6
MONDAY = 0


@dataclass(frozen=True)
class ReminderDecision:
    user_id: int
    reminder_class: ReminderClass
    ledger_key: str
    local_time: datetime
    subscription: SubscriptionRecord | None = None
    offset_days: int | None = None
    digest: tuple[SubscriptionRecord, ...] = field(default_factory=tuple)

    @property
    def subscription_id(self) -> int | None:
        return self.subscription.id if self.subscription is not None else None

    @property
    def due_date(self) -> date | None:
        return self.subscription.next_due if self.subscription is not None else None


def clamp_window(window_minutes: int) -> int:
    return max(1, min(59, int(window_minutes)))


def is_on_the_hour(local_now: datetime, window_minutes: int = DEFAULT_ON_THE_HOUR_WINDOW_MINUTES) -> bool:
    return 0 <= local_now.minute < clamp_window(window_minutes)


def build_ledger_key(user_id: int, subscription_id: int | str, class_tag: str, local_day: datetime | date) -> str:
    return "|".join([str(user_id), str(subscription_id), class_tag, local_date_key(local_day)])


def class_tag(reminder_class: ReminderClass, offset_days: int | None = None) -> str:
    if reminder_class == "pre":
        return f"pre-{offset_days}"
    return reminder_class


def _at_checkpoint(local_now: datetime, hour: int, window_minutes: int) -> bool:
    return local_now.hour == hour and is_on_the_hour(local_now, window_minutes)


def evaluate_subscription(
    user: UserRecord,
    subscription: SubscriptionRecord,
    local_now: datetime,
    *,
    window_minutes: int = DEFAULT_ON_THE_HOUR_WINDOW_MINUTES,
    force: bool = False,
) -> list[ReminderDecision]:
    """Return the pre-offset, morning and evening decisions due for one subscription.

    ``force`` drops the time-of-day and day-difference gates so every reminder
    class for the subscription is produced, which is what the preview tooling
    uses to exercise delivery on demand.
    """
    diff = days_between(local_now, subscription.next_due)
    at_notify_hour = _at_checkpoint(local_now, user.notify_hour, window_minutes)
    at_evening = _at_checkpoint(local_now, EVENING_HOUR, window_minutes)

    decisions: list[ReminderDecision] = []

    def _decide(reminder_class: ReminderClass, offset: int | None = None) -> None:
        decisions.append(
            ReminderDecision(
                user_id=user.user_id,
                reminder_class=reminder_class,
                ledger_key=build_ledger_key(
                    user.user_id,
                    subscription.id,
                    class_tag(reminder_class, offset),
                    local_now,
                ),
                local_time=local_now,
                subscription=subscription,
                offset_days=offset,
            )
        )

    for offset in subscription.resolved_offsets(user):
        if offset <= 0:
            continue
        if force or (diff == offset and at_notify_hour):
            _decide("pre", offset)

    if force or (diff == 0 and at_notify_hour):
        _decide("morning", 0)

    if force or (diff == 0 and at_evening):
        _decide("evening", 0)

    return decisions


def weekly_digest_items(
    subscriptions: list[SubscriptionRecord],
    local_now: datetime,
) -> tuple[SubscriptionRecord, ...]:
    upcoming = [
        value
        for value in subscriptions
        if 0 <= days_between(local_now, value.next_due) <= WEEKLY_DIGEST_HORIZON_DAYS
    ]
    return tuple(sorted(upcoming, key=lambda value: (value.next_due, value.name.lower())))


def evaluate_weekly_digest(
    user: UserRecord,
    subscriptions: list[SubscriptionRecord],
    local_now: datetime,
    *,
    window_minutes: int = DEFAULT_ON_THE_HOUR_WINDOW_MINUTES,
    force: bool = False,
) -> ReminderDecision | None:
    eligible = local_now.weekday() == MONDAY and _at_checkpoint(local_now, user.notify_hour, window_minutes)
    if not (force or eligible):
        return None
    digest = weekly_digest_items(subscriptions, local_now)
    if not digest:
        return None
    return ReminderDecision(
        user_id=user.user_id,
        reminder_class="weekly",
        ledger_key=build_ledger_key(user.user_id, "weekly", "weekly", local_now),
        local_time=local_now,
        digest=digest,
    )


def evaluate_user(
    user: UserRecord,
    subscriptions: list[SubscriptionRecord],
    local_now: datetime,
    *,
    window_minutes: int = DEFAULT_ON_THE_HOUR_WINDOW_MINUTES,
    force: bool = False,
) -> list[ReminderDecision]:
    decisions: list[ReminderDecision] = []
    weekly = evaluate_weekly_digest(user, subscriptions, local_now, window_minutes=window_minutes, force=force)
    if weekly is not None:
        decisions.append(weekly)
    for subscription in subscriptions:
        decisions.extend(
            evaluate_subscription(user, subscription, local_now, window_minutes=window_minutes, force=force)
        )
    return decisions
