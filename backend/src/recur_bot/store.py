from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from itertools import count
from threading import Lock
from typing import Any, Protocol

from .models import PERIODS, EventStatus, Period, normalize_amount
from .periods import parse_reminder_offsets


class StoreError(RuntimeError):
    """Raised when a backing store cannot be read or written."""


class UserNotFoundError(KeyError):
    """Raised when an operation references a user id that does not exist."""


@dataclass(frozen=True)
class UserRecord:
    user_id: int
    timezone: str
    notify_hour: int
    default_offsets: tuple[int, ...]


@dataclass(frozen=True)
class SubscriptionRecord:
    id: int
    user_id: int
    name: str
    amount: Decimal
    currency: str
    period: Period
    next_due: date
    reminder_offsets: tuple[int, ...] | None = None

    def resolved_offsets(self, user: UserRecord) -> tuple[int, ...]:
        if self.reminder_offsets is None:
            return user.default_offsets
        return self.reminder_offsets


@dataclass(frozen=True)
class SubscriptionEventRecord:
    subscription_id: int
    event_date: date
    status: EventStatus
    created_at: datetime


_USER_FIELDS = {"timezone", "notify_hour", "default_offsets"}
_SUBSCRIPTION_FIELDS = {"name", "amount", "currency", "period", "next_due", "reminder_offsets"}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def validate_user_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - _USER_FIELDS
    if unknown:
        raise ValueError(f"unknown user fields: {', '.join(sorted(unknown))}")
    cleaned = dict(fields)
    if "notify_hour" in cleaned:
        hour = int(cleaned["notify_hour"])
        if not 0 <= hour <= 23:
            raise ValueError("notify_hour must be between 0 and 23")
        cleaned["notify_hour"] = hour
    if "default_offsets" in cleaned:
        cleaned["default_offsets"] = tuple(
            value for value in parse_reminder_offsets(cleaned["default_offsets"]) if value > 0
        )
    if "timezone" in cleaned:
        cleaned["timezone"] = str(cleaned["timezone"]).strip()
    return cleaned


def validate_subscription_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - _SUBSCRIPTION_FIELDS
    if unknown:
        raise ValueError(f"unknown subscription fields: {', '.join(sorted(unknown))}")
    cleaned = dict(fields)
    if "name" in cleaned:
        name = str(cleaned["name"]).strip()
        if not name:
            raise ValueError("name cannot be blank")
        cleaned["name"] = name
    if "amount" in cleaned:
        amount = normalize_amount(cleaned["amount"])
        if amount is None:
            raise ValueError("amount must be a positive number")
        cleaned["amount"] = amount
    if "currency" in cleaned:
        cleaned["currency"] = str(cleaned["currency"]).strip().upper()
    if "period" in cleaned and cleaned["period"] not in PERIODS:
        raise ValueError("period must be monthly or yearly")
    if "next_due" in cleaned and not isinstance(cleaned["next_due"], date):
        cleaned["next_due"] = date.fromisoformat(str(cleaned["next_due"]))
    if "reminder_offsets" in cleaned and cleaned["reminder_offsets"] is not None:
        cleaned["reminder_offsets"] = parse_reminder_offsets(cleaned["reminder_offsets"])
    return cleaned


class UserRepository(Protocol):
    def get_all(self) -> list[UserRecord]: ...

    def get_by_id(self, user_id: int) -> UserRecord | None: ...

    def update(self, user_id: int, **fields: Any) -> UserRecord | None: ...

    def ensure_user(
        self,
        user_id: int,
        *,
        timezone: str,
        notify_hour: int,
        default_offsets: tuple[int, ...],
    ) -> UserRecord: ...


class SubscriptionRepository(Protocol):
    def create(
        self,
        *,
        user_id: int,
        name: str,
        amount: Decimal | float | str,
        currency: str,
        period: Period,
        next_due: date,
        reminder_offsets: tuple[int, ...] | None = None,
    ) -> SubscriptionRecord: ...

    def list_for_user(self, user_id: int) -> list[SubscriptionRecord]: ...

    def get_by_id(self, subscription_id: int) -> SubscriptionRecord | None: ...

    def update(self, subscription_id: int, **fields: Any) -> SubscriptionRecord | None: ...

    def shift_next_due(self, subscription_id: int, user_id: int, new_date: date) -> SubscriptionRecord | None: ...

    def delete(self, subscription_id: int, user_id: int) -> bool: ...


class EventLogRepository(Protocol):
    def log_event(self, subscription_id: int, event_date: date, status: EventStatus) -> None: ...

    def get_latest_paid_events(
        self,
        subscription_ids: list[int],
        since: date,
    ) -> list[SubscriptionEventRecord]: ...


class InMemorySubscriptionStore:
    """Users, subscriptions and the event log kept in process memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._users: dict[int, UserRecord] = {}
        self._subscriptions: dict[int, SubscriptionRecord] = {}
        self._events: list[SubscriptionEventRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._users.clear()
            self._subscriptions.clear()
            self._events.clear()

    # users

    def get_all(self) -> list[UserRecord]:
        with self._lock:
            return sorted(self._users.values(), key=lambda value: value.user_id)

    def get_by_id(self, user_id: int) -> UserRecord | None:
        with self._lock:
            return self._users.get(user_id)

    def update(self, user_id: int, **fields: Any) -> UserRecord | None:
        cleaned = validate_user_fields(fields)
        with self._lock:
            existing = self._users.get(user_id)
            if existing is None:
                return None
            updated = replace(existing, **cleaned)
            self._users[user_id] = updated
            return updated

    def ensure_user(
        self,
        user_id: int,
        *,
        timezone: str,
        notify_hour: int,
        default_offsets: tuple[int, ...],
    ) -> UserRecord:
        cleaned = validate_user_fields(
            {"timezone": timezone, "notify_hour": notify_hour, "default_offsets": default_offsets}
        )
        with self._lock:
            existing = self._users.get(user_id)
            if existing is not None:
                return existing
            record = UserRecord(user_id=user_id, **cleaned)
            self._users[user_id] = record
            return record

    # subscriptions

    def create(
        self,
        *,
        user_id: int,
        name: str,
        amount: Decimal | float | str,
        currency: str,
        period: Period,
        next_due: date,
        reminder_offsets: tuple[int, ...] | None = None,
    ) -> SubscriptionRecord:
        cleaned = validate_subscription_fields(
            {
                "name": name,
                "amount": amount,
                "currency": currency,
                "period": period,
                "next_due": next_due,
                "reminder_offsets": reminder_offsets,
            }
        )
        with self._lock:
            if user_id not in self._users:
                raise UserNotFoundError(user_id)
            record = SubscriptionRecord(id=next(self._counter), user_id=user_id, **cleaned)
            self._subscriptions[record.id] = record
            return record

    def list_for_user(self, user_id: int) -> list[SubscriptionRecord]:
        with self._lock:
            owned = [value for value in self._subscriptions.values() if value.user_id == user_id]
        return sorted(owned, key=lambda value: (value.next_due, value.name.lower()))

    def get_subscription(self, subscription_id: int) -> SubscriptionRecord | None:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def update_subscription(self, subscription_id: int, **fields: Any) -> SubscriptionRecord | None:
        cleaned = validate_subscription_fields(fields)
        with self._lock:
            existing = self._subscriptions.get(subscription_id)
            if existing is None:
                return None
            updated = replace(existing, **cleaned)
            self._subscriptions[subscription_id] = updated
            return updated

    def shift_next_due(self, subscription_id: int, user_id: int, new_date: date) -> SubscriptionRecord | None:
        with self._lock:
            existing = self._subscriptions.get(subscription_id)
            if existing is None or existing.user_id != user_id:
                return None
            updated = replace(existing, next_due=new_date)
            self._subscriptions[subscription_id] = updated
            return updated

    def delete(self, subscription_id: int, user_id: int) -> bool:
        with self._lock:
            existing = self._subscriptions.get(subscription_id)
            if existing is None or existing.user_id != user_id:
                return False
            del self._subscriptions[subscription_id]
            self._events = [value for value in self._events if value.subscription_id != subscription_id]
            return True

    # events

    def log_event(self, subscription_id: int, event_date: date, status: EventStatus) -> None:
        with self._lock:
            self._events = [
                value
                for value in self._events
                if (value.subscription_id, value.event_date, value.status) != (subscription_id, event_date, status)
            ]
            self._events.append(
                SubscriptionEventRecord(
                    subscription_id=subscription_id,
                    event_date=event_date,
                    status=status,
                    created_at=_now_utc(),
                )
            )

    def list_events(self, subscription_id: int) -> list[SubscriptionEventRecord]:
        with self._lock:
            return [value for value in self._events if value.subscription_id == subscription_id]

    def get_latest_paid_events(
        self,
        subscription_ids: list[int],
        since: date,
    ) -> list[SubscriptionEventRecord]:
        if not subscription_ids:
            return []
        wanted = set(subscription_ids)
        with self._lock:
            rows = [
                value
                for value in self._events
                if value.subscription_id in wanted and value.status == "paid" and value.event_date >= since
            ]
        return sorted(rows, key=lambda value: (value.subscription_id, value.event_date), reverse=True)


class UserStoreView:
    """Exposes the user half of a combined store under the user repository names."""

    def __init__(self, store: Any) -> None:
        self._store = store

    def get_all(self) -> list[UserRecord]:
        return self._store.get_all()

    def get_by_id(self, user_id: int) -> UserRecord | None:
        return self._store.get_by_id(user_id)

    def update(self, user_id: int, **fields: Any) -> UserRecord | None:
        return self._store.update(user_id, **fields)

    def ensure_user(
        self,
        user_id: int,
        *,
        timezone: str,
        notify_hour: int,
        default_offsets: tuple[int, ...],
    ) -> UserRecord:
        return self._store.ensure_user(
            user_id,
            timezone=timezone,
            notify_hour=notify_hour,
            default_offsets=default_offsets,
        )


class SubscriptionStoreView:
    """Exposes the subscription half of a combined store under the subscription repository names."""

    def __init__(self, store: Any) -> None:
        self._store = store

    def create(self, **kwargs: Any) -> SubscriptionRecord:
        return self._store.create(**kwargs)

    def list_for_user(self, user_id: int) -> list[SubscriptionRecord]:
        return self._store.list_for_user(user_id)

    def get_by_id(self, subscription_id: int) -> SubscriptionRecord | None:
        return self._store.get_subscription(subscription_id)

    def update(self, subscription_id: int, **fields: Any) -> SubscriptionRecord | None:
        return self._store.update_subscription(subscription_id, **fields)

    def shift_next_due(self, subscription_id: int, user_id: int, new_date: date) -> SubscriptionRecord | None:
        return self._store.shift_next_due(subscription_id, user_id, new_date)

    def delete(self, subscription_id: int, user_id: int) -> bool:
        return self._store.delete(subscription_id, user_id)
