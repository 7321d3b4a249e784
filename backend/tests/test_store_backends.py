from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import text, update
from sqlalchemy.exc import OperationalError

from recur_bot.store import InMemorySubscriptionStore, StoreError, UserNotFoundError
from recur_bot.store_backends import (
    SqlAlchemySubscriptionStore,
    _SubscriptionRow,
    create_subscription_store,
)


def _sqlite_store(tmp_path: Path) -> SqlAlchemySubscriptionStore:
    return SqlAlchemySubscriptionStore(f"sqlite:///{tmp_path / 'recur.db'}")


def _seed(store) -> int:
    store.ensure_user(42, timezone="Europe/Moscow", notify_hour=10, default_offsets=(3, 1))
    created = store.create(
        user_id=42,
        name="  Video  ",
        amount="1 299,50",
        currency="rub",
        period="monthly",
        next_due=date(2025, 3, 14),
        reminder_offsets=(7, 1),
    )
    return created.id


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_user_and_subscription_round_trip(backend: str, tmp_path: Path) -> None:
    store = InMemorySubscriptionStore() if backend == "inmemory" else _sqlite_store(tmp_path)
    subscription_id = _seed(store)

    user = store.get_by_id(42)
    assert user is not None
    assert user.default_offsets == (1, 3)
    assert [value.user_id for value in store.get_all()] == [42]

    subscription = store.get_subscription(subscription_id)
    assert subscription is not None
    assert subscription.name == "Video"
    assert subscription.amount == Decimal("1299.50")
    assert subscription.currency == "RUB"
    assert subscription.reminder_offsets == (1, 7)
    assert subscription.resolved_offsets(user) == (1, 7)


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_ensure_user_keeps_existing_settings(backend: str, tmp_path: Path) -> None:
    store = InMemorySubscriptionStore() if backend == "inmemory" else _sqlite_store(tmp_path)
    store.ensure_user(42, timezone="Asia/Almaty", notify_hour=8, default_offsets=(2,))
    again = store.ensure_user(42, timezone="Europe/Moscow", notify_hour=10, default_offsets=(1, 3))

    assert again.timezone == "Asia/Almaty"
    assert again.notify_hour == 8

    updated = store.update(42, notify_hour=21, default_offsets="T-5,T-1")
    assert updated is not None
    assert updated.notify_hour == 21
    assert updated.default_offsets == (1, 5)
    assert store.update(7, notify_hour=9) is None


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_create_validates_input(backend: str, tmp_path: Path) -> None:
    store = InMemorySubscriptionStore() if backend == "inmemory" else _sqlite_store(tmp_path)
    store.ensure_user(42, timezone="UTC", notify_hour=10, default_offsets=())

    with pytest.raises(UserNotFoundError):
        store.create(user_id=1, name="X", amount=1, currency="USD", period="monthly", next_due=date(2025, 1, 1))
    with pytest.raises(ValueError, match="period"):
        store.create(user_id=42, name="X", amount=1, currency="USD", period="weekly", next_due=date(2025, 1, 1))
    with pytest.raises(ValueError, match="amount"):
        store.create(user_id=42, name="X", amount="-5", currency="USD", period="monthly", next_due=date(2025, 1, 1))
    with pytest.raises(ValueError, match="name"):
        store.create(user_id=42, name="  ", amount=1, currency="USD", period="monthly", next_due=date(2025, 1, 1))
    with pytest.raises(ValueError, match="notify_hour"):
        store.update(42, notify_hour=24)


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_list_for_user_orders_by_due_date_then_name(backend: str, tmp_path: Path) -> None:
    store = InMemorySubscriptionStore() if backend == "inmemory" else _sqlite_store(tmp_path)
    store.ensure_user(42, timezone="UTC", notify_hour=10, default_offsets=())
    store.ensure_user(43, timezone="UTC", notify_hour=10, default_offsets=())
    for name, due in (("Zeta", date(2025, 3, 1)), ("Alpha", date(2025, 3, 5)), ("Beta", date(2025, 3, 1))):
        store.create(user_id=42, name=name, amount=1, currency="USD", period="monthly", next_due=due)
    store.create(user_id=43, name="Other", amount=1, currency="USD", period="monthly", next_due=date(2025, 1, 1))

    assert [value.name for value in store.list_for_user(42)] == ["Beta", "Zeta", "Alpha"]


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_log_event_replaces_same_day_same_status(backend: str, tmp_path: Path) -> None:
    store = InMemorySubscriptionStore() if backend == "inmemory" else _sqlite_store(tmp_path)
    subscription_id = _seed(store)

    store.log_event(subscription_id, date(2025, 3, 14), "paid")
    store.log_event(subscription_id, date(2025, 3, 14), "paid")
    store.log_event(subscription_id, date(2025, 3, 14), "skipped")
    store.log_event(subscription_id, date(2025, 2, 14), "paid")

    events = store.list_events(subscription_id)
    assert sorted((event.event_date, event.status) for event in events) == [
        (date(2025, 2, 14), "paid"),
        (date(2025, 3, 14), "paid"),
        (date(2025, 3, 14), "skipped"),
    ]

    latest = store.get_latest_paid_events([subscription_id], date(2025, 3, 1))
    assert [event.event_date for event in latest] == [date(2025, 3, 14)]
    assert store.get_latest_paid_events([], date(2025, 1, 1)) == []


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_shift_and_delete_respect_ownership(backend: str, tmp_path: Path) -> None:
    store = InMemorySubscriptionStore() if backend == "inmemory" else _sqlite_store(tmp_path)
    subscription_id = _seed(store)
    store.log_event(subscription_id, date(2025, 3, 14), "paid")

    assert store.shift_next_due(subscription_id, 99, date(2025, 4, 1)) is None
    shifted = store.shift_next_due(subscription_id, 42, date(2025, 3, 17))
    assert shifted is not None
    assert shifted.next_due == date(2025, 3, 17)

    assert store.delete(subscription_id, 99) is False
    assert store.delete(subscription_id, 42) is True
    assert store.get_subscription(subscription_id) is None
    assert store.list_events(subscription_id) == []


def test_sqlite_reads_legacy_offset_encoding(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    subscription_id = _seed(store)

    with store._session() as session:
        with session.begin():
            session.execute(
                update(_SubscriptionRow)
                .where(_SubscriptionRow.id == subscription_id)
                .values(reminder_offsets_json='["T-3", "T-1"]')
            )

    subscription = store.get_subscription(subscription_id)
    assert subscription is not None
    assert subscription.reminder_offsets == (1, 3)

    cleared = store.update_subscription(subscription_id, reminder_offsets=None)
    assert cleared is not None
    assert cleared.reminder_offsets is None


def test_sqlite_store_persists_across_instances(tmp_path: Path) -> None:
    subscription_id = _seed(_sqlite_store(tmp_path))

    reopened = _sqlite_store(tmp_path)
    subscription = reopened.get_subscription(subscription_id)

    assert subscription is not None
    assert subscription.next_due == date(2025, 3, 14)


def test_sql_errors_surface_as_store_error(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    failure = OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    with patch.object(store, "_session_factory", side_effect=failure):
        with pytest.raises(StoreError, match="get_all failed"):
            store.get_all()


def test_undecodable_row_surfaces_as_store_error(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    _seed(store)
    with store._session() as session:
        with session.begin():
            session.execute(text("UPDATE subscriptions SET next_due = '2025-02-30'"))

    with pytest.raises(StoreError, match="list_for_user failed"):
        store.list_for_user(42)
    assert store.get_by_id(42) is not None


def test_create_subscription_store_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_subscription_store(backend="inmemory", database_url=""), InMemorySubscriptionStore)
    assert isinstance(
        create_subscription_store(backend="postgres", database_url=f"sqlite:///{tmp_path / 'a.db'}"),
        SqlAlchemySubscriptionStore,
    )
    with pytest.raises(RuntimeError, match="unsupported RECUR_STORE_BACKEND"):
        create_subscription_store(backend="mongo", database_url="")
    with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
        create_subscription_store(backend="postgres", database_url="")
