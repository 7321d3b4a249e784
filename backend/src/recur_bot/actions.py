from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum

from pydantic import ValidationError

from . import messages
from .models import SnoozeRequest
from .notifier import ButtonRows
from .periods import add_days, advance_period, is_valid_timezone, local_now, resolve_timezone, roll_forward
from .store import (
    EventLogRepository,
    StoreError,
    SubscriptionRecord,
    SubscriptionRepository,
    UserRecord,
    UserRepository,
)

logger = logging.getLogger(__name__)

SNOOZE_PRESET_DAYS = (1, 2, 3, 7)
ROLL_FORWARD_LOOKBACK_DAYS = 365
REMINDER_OFFSET_OPTIONS = (3, 2, 1)


class ActionDecodeError(ValueError):
    """Raised when callback data does not describe a reminder action."""


class ActionKind(str, Enum):
    MARK_PAID = "pay"
    SKIP_CYCLE = "skip"
    SNOOZE_PROMPT = "snooze"
    SNOOZE = "snooze_option"
    SNOOZE_OTHER = "snooze_other"


_CALLBACK_RE = re.compile(r"^(pay|skip|snooze|snooze_option|snooze_other):(\d+)(?::(\d+))?$")


@dataclass(frozen=True)
class ReminderAction:
    kind: ActionKind
    subscription_id: int
    days: int | None = None

    def encode(self) -> str:
        if self.kind is ActionKind.SNOOZE:
            return f"{self.kind.value}:{self.subscription_id}:{self.days}"
        return f"{self.kind.value}:{self.subscription_id}"

    @classmethod
    def decode(cls, data: str | None) -> ReminderAction:
        match = _CALLBACK_RE.match((data or "").strip())
        if match is None:
            raise ActionDecodeError(f"unrecognized callback data: {data!r}")
        kind = ActionKind(match.group(1))
        days_raw = match.group(3)
        if kind is ActionKind.SNOOZE:
            if days_raw is None:
                raise ActionDecodeError(f"snooze option without days: {data!r}")
            return cls(kind=kind, subscription_id=int(match.group(2)), days=int(days_raw))
        if days_raw is not None:
            raise ActionDecodeError(f"unexpected days in callback data: {data!r}")
        return cls(kind=kind, subscription_id=int(match.group(2)))


def evening_buttons(subscription_id: int) -> ButtonRows:
    return [
        [
            ("Paid", ReminderAction(ActionKind.MARK_PAID, subscription_id).encode()),
            ("Snooze", ReminderAction(ActionKind.SNOOZE_PROMPT, subscription_id).encode()),
        ],
        [("Skip cycle", ReminderAction(ActionKind.SKIP_CYCLE, subscription_id).encode())],
    ]


def snooze_buttons(subscription_id: int) -> ButtonRows:
    return [
        [
            (str(days), ReminderAction(ActionKind.SNOOZE, subscription_id, days).encode())
            for days in SNOOZE_PRESET_DAYS
        ],
        [("Other", ReminderAction(ActionKind.SNOOZE_OTHER, subscription_id).encode())],
    ]


class SettingsKind(str, Enum):
    TOGGLE_OFFSET = "toggle"
    CHANGE_HOUR = "change-time"
    CANCEL_HOUR = "cancel-time"
    CLOSE = "close"


_SETTINGS_CALLBACK_RE = re.compile(r"^reminders:(toggle|change-time|cancel-time|close)(?::(\d+))?$")


@dataclass(frozen=True)
class SettingsAction:
    """Inline button pressed under the /reminders summary."""

    kind: SettingsKind
    offset: int | None = None

    def encode(self) -> str:
        if self.kind is SettingsKind.TOGGLE_OFFSET:
            return f"reminders:{self.kind.value}:{self.offset}"
        return f"reminders:{self.kind.value}"

    @classmethod
    def decode(cls, data: str | None) -> SettingsAction:
        match = _SETTINGS_CALLBACK_RE.match((data or "").strip())
        if match is None:
            raise ActionDecodeError(f"unrecognized settings data: {data!r}")
        kind = SettingsKind(match.group(1))
        offset_raw = match.group(2)
        if kind is SettingsKind.TOGGLE_OFFSET:
            if offset_raw is None or int(offset_raw) not in REMINDER_OFFSET_OPTIONS:
                raise ActionDecodeError(f"unsupported reminder offset: {data!r}")
            return cls(kind=kind, offset=int(offset_raw))
        if offset_raw is not None:
            raise ActionDecodeError(f"unexpected offset in settings data: {data!r}")
        return cls(kind=kind)


def reminder_settings_buttons(active: tuple[int, ...]) -> ButtonRows:
    return [
        [
            (
                f"{'✅' if offset in active else '❌'} {offset} {messages.pluralize_days(offset)}",
                SettingsAction(SettingsKind.TOGGLE_OFFSET, offset).encode(),
            )
            for offset in REMINDER_OFFSET_OPTIONS
        ],
        [("Change time", SettingsAction(SettingsKind.CHANGE_HOUR).encode())],
        [("Close", SettingsAction(SettingsKind.CLOSE).encode())],
    ]


def notify_hour_cancel_buttons() -> ButtonRows:
    return [[("Cancel", SettingsAction(SettingsKind.CANCEL_HOUR).encode())]]


@dataclass(frozen=True)
class ActionOutcome:
    text: str
    subscription: SubscriptionRecord | None = None
    buttons: ButtonRows | None = None
    awaiting_snooze_input: int | None = None
    awaiting_notify_hour: bool = False
    edit_original: bool = False


class ReminderActionService:
    """Applies reminder button presses and payment bookkeeping to the stores.

    Every method returns an ``ActionOutcome`` describing the reply. Store
    failures never escape: they are logged and turned into a retry message.
    next_due moves before the event row is written; when the event write
    fails the previous next_due is restored, so a failed press leaves no trace.
    """

    def __init__(
        self,
        *,
        users: UserRepository,
        subscriptions: SubscriptionRepository,
        events: EventLogRepository,
        default_timezone: str = "Europe/Moscow",
    ) -> None:
        self._users = users
        self._subscriptions = subscriptions
        self._events = events
        self._default_timezone = default_timezone

    def _owned(self, subscription_id: int, user_id: int) -> SubscriptionRecord | None:
        subscription = self._subscriptions.get_by_id(subscription_id)
        if subscription is None or subscription.user_id != user_id:
            return None
        return subscription

    def local_today(self, user_id: int, now: datetime | None = None) -> date:
        user = self._users.get_by_id(user_id)
        zone = resolve_timezone(user.timezone if user is not None else None, self._default_timezone)
        return local_now(now or datetime.now(timezone.utc), zone).date()

    def _log_or_revert(self, previous: SubscriptionRecord, event_date: date, status: str) -> None:
        try:
            self._events.log_event(previous.id, event_date, status)  # type: ignore[arg-type]
        except StoreError:
            try:
                self._subscriptions.update(previous.id, next_due=previous.next_due)
            except StoreError as exc:
                logger.error("could not restore next_due subscription_id=%s error=%s", previous.id, exc)
            raise

    def _advance(self, subscription_id: int, user_id: int, status: str, today: date | None) -> ActionOutcome:
        try:
            subscription = self._owned(subscription_id, user_id)
            if subscription is None:
                return ActionOutcome(text=messages.SUBSCRIPTION_NOT_FOUND)
            event_date = today or self.local_today(user_id)
            next_due = advance_period(subscription.next_due, subscription.period)
            updated = self._subscriptions.update(subscription.id, next_due=next_due)
            if updated is not None:
                self._log_or_revert(subscription, event_date, status)
        except StoreError as exc:
            logger.warning("%s action failed subscription_id=%s error=%s", status, subscription_id, exc)
            return ActionOutcome(text=messages.TRY_AGAIN_LATER)
        if updated is None:
            return ActionOutcome(text=messages.SUBSCRIPTION_NOT_FOUND)
        text = messages.render_marked_paid(updated) if status == "paid" else messages.render_cycle_skipped(updated)
        return ActionOutcome(text=text, subscription=updated, edit_original=True)

    def on_mark_paid(self, subscription_id: int, user_id: int, *, today: date | None = None) -> ActionOutcome:
        return self._advance(subscription_id, user_id, "paid", today)

    def on_skip_cycle(self, subscription_id: int, user_id: int, *, today: date | None = None) -> ActionOutcome:
        return self._advance(subscription_id, user_id, "skipped", today)

    def on_snooze(self, subscription_id: int, user_id: int, days: int | str) -> ActionOutcome:
        try:
            request = SnoozeRequest(days=days)
        except ValidationError:
            return ActionOutcome(text=messages.SNOOZE_INPUT_INVALID, awaiting_snooze_input=subscription_id)
        try:
            subscription = self._owned(subscription_id, user_id)
            if subscription is None:
                return ActionOutcome(text=messages.SUBSCRIPTION_NOT_FOUND)
            updated = self._subscriptions.shift_next_due(
                subscription.id,
                user_id,
                add_days(subscription.next_due, request.days),
            )
        except StoreError as exc:
            logger.warning("snooze failed subscription_id=%s error=%s", subscription_id, exc)
            return ActionOutcome(text=messages.TRY_AGAIN_LATER)
        if updated is None:
            return ActionOutcome(text=messages.SUBSCRIPTION_NOT_FOUND)
        return ActionOutcome(text=messages.render_snoozed(updated), subscription=updated, edit_original=True)

    def on_snooze_prompt(self, subscription_id: int) -> ActionOutcome:
        return ActionOutcome(text=messages.SNOOZE_PROMPT, buttons=snooze_buttons(subscription_id))

    def on_snooze_other(self, subscription_id: int) -> ActionOutcome:
        return ActionOutcome(text=messages.SNOOZE_INPUT_PROMPT, awaiting_snooze_input=subscription_id)

    def log_manual_payment(self, subscription_id: int, user_id: int, paid_on: date) -> ActionOutcome:
        """Record a back-dated payment and restart the cycle from the payment date."""
        try:
            subscription = self._owned(subscription_id, user_id)
            if subscription is None:
                return ActionOutcome(text=messages.SUBSCRIPTION_NOT_FOUND)
            updated = self._subscriptions.update(
                subscription.id,
                next_due=advance_period(paid_on, subscription.period),
            )
            if updated is not None:
                self._log_or_revert(subscription, paid_on, "paid")
        except StoreError as exc:
            logger.warning("manual payment failed subscription_id=%s error=%s", subscription_id, exc)
            return ActionOutcome(text=messages.TRY_AGAIN_LATER)
        if updated is None:
            return ActionOutcome(text=messages.SUBSCRIPTION_NOT_FOUND)
        return ActionOutcome(text=messages.render_manual_payment(updated, paid_on), subscription=updated)

    def roll_forward_paid_subscriptions(self, user_id: int, *, today: date | None = None) -> list[SubscriptionRecord]:
        """Move next_due past recorded payments and return the refreshed list.

        Raises ``StoreError`` when the list itself cannot be loaded; a failed
        write for a single subscription is logged and that row is kept as is.
        """
        subscriptions = self._subscriptions.list_for_user(user_id)
        if not subscriptions:
            return []
        since = (today or self.local_today(user_id)) - timedelta(days=ROLL_FORWARD_LOOKBACK_DAYS)
        latest_paid: dict[int, date] = {}
        for event in self._events.get_latest_paid_events([value.id for value in subscriptions], since):
            current = latest_paid.get(event.subscription_id)
            if current is None or event.event_date > current:
                latest_paid[event.subscription_id] = event.event_date

        refreshed: list[SubscriptionRecord] = []
        for subscription in subscriptions:
            paid_on = latest_paid.get(subscription.id)
            if paid_on is None:
                refreshed.append(subscription)
                continue
            next_due = roll_forward(subscription.next_due, subscription.period, paid_on)
            if next_due == subscription.next_due:
                refreshed.append(subscription)
                continue
            try:
                updated = self._subscriptions.update(subscription.id, next_due=next_due)
            except StoreError as exc:
                logger.warning("roll-forward failed subscription_id=%s error=%s", subscription.id, exc)
                updated = None
            refreshed.append(updated or subscription)
        return sorted(refreshed, key=lambda value: (value.next_due, value.name.lower()))

    # reminder preferences

    def _settings_outcome(self, user: UserRecord, *, edit_original: bool = False, prefix: str = "") -> ActionOutcome:
        return ActionOutcome(
            text=prefix + messages.render_reminder_settings(user, REMINDER_OFFSET_OPTIONS),
            buttons=reminder_settings_buttons(user.default_offsets),
            edit_original=edit_original,
        )

    def on_reminder_settings(self, user_id: int) -> ActionOutcome:
        try:
            user = self._users.get_by_id(user_id)
        except StoreError as exc:
            logger.warning("reminder settings failed user_id=%s error=%s", user_id, exc)
            return ActionOutcome(text=messages.TRY_AGAIN_LATER)
        if user is None:
            return ActionOutcome(text=messages.START_FIRST)
        return self._settings_outcome(user)

    def on_toggle_offset(self, user_id: int, offset: int) -> ActionOutcome:
        """Flip one default reminder offset on or off for the user."""
        try:
            user = self._users.get_by_id(user_id)
            if user is None:
                return ActionOutcome(text=messages.START_FIRST)
            active = set(user.default_offsets) ^ {offset}
            updated = self._users.update(user_id, default_offsets=tuple(sorted(active)))
        except StoreError as exc:
            logger.warning("offset toggle failed user_id=%s offset=%s error=%s", user_id, offset, exc)
            return ActionOutcome(text=messages.TRY_AGAIN_LATER)
        if updated is None:
            return ActionOutcome(text=messages.START_FIRST)
        return self._settings_outcome(updated, edit_original=True)

    def on_notify_hour_prompt(self) -> ActionOutcome:
        return ActionOutcome(
            text=messages.NOTIFY_HOUR_PROMPT,
            buttons=notify_hour_cancel_buttons(),
            awaiting_notify_hour=True,
        )

    def on_notify_hour(self, user_id: int, raw: str | int) -> ActionOutcome:
        text = str(raw).strip()
        hour = int(text) if text.isdigit() else -1
        if not 0 <= hour <= 23:
            return ActionOutcome(
                text=messages.NOTIFY_HOUR_INVALID,
                buttons=notify_hour_cancel_buttons(),
                awaiting_notify_hour=True,
            )
        try:
            updated = self._users.update(user_id, notify_hour=hour)
        except StoreError as exc:
            logger.warning("notify hour update failed user_id=%s error=%s", user_id, exc)
            return ActionOutcome(text=messages.TRY_AGAIN_LATER)
        if updated is None:
            return ActionOutcome(text=messages.START_FIRST)
        return self._settings_outcome(updated, prefix=messages.render_notify_hour_updated(hour) + "\n\n")

    def on_close_settings(self, user_id: int) -> ActionOutcome:
        try:
            user = self._users.get_by_id(user_id)
        except StoreError as exc:
            logger.warning("closing settings failed user_id=%s error=%s", user_id, exc)
            return ActionOutcome(text=messages.TRY_AGAIN_LATER)
        if user is None:
            return ActionOutcome(text=messages.START_FIRST)
        return ActionOutcome(
            text=messages.render_reminder_settings(user, REMINDER_OFFSET_OPTIONS),
            edit_original=True,
        )

    def on_timezone(self, user_id: int, zone_name: str) -> ActionOutcome:
        zone_name = zone_name.strip()
        if not is_valid_timezone(zone_name):
            return ActionOutcome(text=messages.render_timezone_invalid(zone_name))
        try:
            updated = self._users.update(user_id, timezone=zone_name)
        except StoreError as exc:
            logger.warning("timezone update failed user_id=%s error=%s", user_id, exc)
            return ActionOutcome(text=messages.TRY_AGAIN_LATER)
        if updated is None:
            return ActionOutcome(text=messages.START_FIRST)
        return ActionOutcome(text=messages.render_timezone_updated(updated))

    def handle_settings(self, action: SettingsAction, user_id: int) -> ActionOutcome:
        match action.kind:
            case SettingsKind.TOGGLE_OFFSET:
                return self.on_toggle_offset(user_id, action.offset or 0)
            case SettingsKind.CHANGE_HOUR:
                return self.on_notify_hour_prompt()
            case SettingsKind.CANCEL_HOUR:
                return ActionOutcome(text=messages.NOTIFY_HOUR_CANCELLED)
            case SettingsKind.CLOSE:
                return self.on_close_settings(user_id)
        raise ActionDecodeError(f"unhandled settings kind: {action.kind}")

    def handle(self, action: ReminderAction, user_id: int) -> ActionOutcome:
        match action.kind:
            case ActionKind.MARK_PAID:
                return self.on_mark_paid(action.subscription_id, user_id)
            case ActionKind.SKIP_CYCLE:
                return self.on_skip_cycle(action.subscription_id, user_id)
            case ActionKind.SNOOZE_PROMPT:
                return self.on_snooze_prompt(action.subscription_id)
            case ActionKind.SNOOZE:
                return self.on_snooze(action.subscription_id, user_id, action.days or 0)
            case ActionKind.SNOOZE_OTHER:
                return self.on_snooze_other(action.subscription_id)
        raise ActionDecodeError(f"unhandled action kind: {action.kind}")
