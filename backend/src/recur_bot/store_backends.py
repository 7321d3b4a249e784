from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterator

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import EventStatus, Period
from .periods import coerce_utc, encode_reminder_offsets, parse_reminder_offsets
from .store import (
    InMemorySubscriptionStore,
    StoreError,
    SubscriptionEventRecord,
    SubscriptionRecord,
    UserNotFoundError,
    UserRecord,
    validate_subscription_fields,
    validate_user_fields,
)

_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")


class SubscriptionStoreBase(DeclarativeBase):
    pass


class _UserRow(SubscriptionStoreBase):
    __tablename__ = "users"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    notify_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    default_offsets_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SubscriptionRow(SubscriptionStoreBase):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.user_id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    next_due: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    reminder_offsets_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SubscriptionEventRow(SubscriptionStoreBase):
    __tablename__ = "subscription_events"

    event_id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        _ID_TYPE,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _user_from_row(row: _UserRow) -> UserRecord:
    return UserRecord(
        user_id=row.user_id,
        timezone=row.timezone,
        notify_hour=row.notify_hour,
        default_offsets=tuple(value for value in parse_reminder_offsets(row.default_offsets_json) if value > 0),
    )


def _subscription_from_row(row: _SubscriptionRow) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        amount=Decimal(row.amount),
        currency=row.currency,
        period=row.period,  # type: ignore[arg-type]
        next_due=row.next_due,
        reminder_offsets=(
            parse_reminder_offsets(row.reminder_offsets_json) if row.reminder_offsets_json is not None else None
        ),
    )


def _event_from_row(row: _SubscriptionEventRow) -> SubscriptionEventRecord:
    return SubscriptionEventRecord(
        subscription_id=row.subscription_id,
        event_date=row.event_date,
        status=row.status,  # type: ignore[arg-type]
        created_at=coerce_utc(row.created_at),
    )


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreError(f"{operation} failed: {exc}") from exc
    except (ValueError, TypeError) as exc:
        # Raised while decoding a stored row (e.g. an impossible date).
        raise StoreError(f"{operation} failed: undecodable row: {exc}") from exc


class SqlAlchemySubscriptionStore:
    """Users, subscriptions and the event log persisted through SQLAlchemy."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RECUR_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SubscriptionStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with _store_errors("reset"), self._session() as session:
            with session.begin():
                session.execute(delete(_SubscriptionEventRow))
                session.execute(delete(_SubscriptionRow))
                session.execute(delete(_UserRow))

    # users

    def get_all(self) -> list[UserRecord]:
        with _store_errors("get_all"), self._session() as session:
            rows = session.execute(select(_UserRow).order_by(_UserRow.user_id.asc())).scalars()
            return [_user_from_row(row) for row in rows]

    def get_by_id(self, user_id: int) -> UserRecord | None:
        with _store_errors("get_user"), self._session() as session:
            row = session.get(_UserRow, user_id)
            return _user_from_row(row) if row is not None else None

    def update(self, user_id: int, **fields: Any) -> UserRecord | None:
        cleaned = validate_user_fields(fields)
        with _store_errors("update_user"), self._session() as session:
            with session.begin():
                row = session.get(_UserRow, user_id)
                if row is None:
                    return None
                if "timezone" in cleaned:
                    row.timezone = cleaned["timezone"]
                if "notify_hour" in cleaned:
                    row.notify_hour = cleaned["notify_hour"]
                if "default_offsets" in cleaned:
                    row.default_offsets_json = encode_reminder_offsets(cleaned["default_offsets"]) or "[]"
                return _user_from_row(row)

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
        with _store_errors("ensure_user"), self._session() as session:
            with session.begin():
                row = session.get(_UserRow, user_id)
                if row is None:
                    row = _UserRow(
                        user_id=user_id,
                        timezone=cleaned["timezone"],
                        notify_hour=cleaned["notify_hour"],
                        default_offsets_json=encode_reminder_offsets(cleaned["default_offsets"]) or "[]",
                        created_at=_now_utc(),
                    )
                    session.add(row)
                return _user_from_row(row)

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
        with _store_errors("create_subscription"), self._session() as session:
            with session.begin():
                if session.get(_UserRow, user_id) is None:
                    raise UserNotFoundError(user_id)
                row = _SubscriptionRow(
                    user_id=user_id,
                    name=cleaned["name"],
                    amount=cleaned["amount"],
                    currency=cleaned["currency"],
                    period=cleaned["period"],
                    next_due=cleaned["next_due"],
                    reminder_offsets_json=encode_reminder_offsets(cleaned["reminder_offsets"]),
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return _subscription_from_row(row)

    def list_for_user(self, user_id: int) -> list[SubscriptionRecord]:
        with _store_errors("list_for_user"), self._session() as session:
            rows = session.execute(
                select(_SubscriptionRow)
                .where(_SubscriptionRow.user_id == user_id)
                .order_by(_SubscriptionRow.next_due.asc(), _SubscriptionRow.name.asc())
            ).scalars()
            return [_subscription_from_row(row) for row in rows]

    def get_subscription(self, subscription_id: int) -> SubscriptionRecord | None:
        with _store_errors("get_subscription"), self._session() as session:
            row = session.get(_SubscriptionRow, subscription_id)
            return _subscription_from_row(row) if row is not None else None

    def update_subscription(self, subscription_id: int, **fields: Any) -> SubscriptionRecord | None:
        cleaned = validate_subscription_fields(fields)
        with _store_errors("update_subscription"), self._session() as session:
            with session.begin():
                row = session.get(_SubscriptionRow, subscription_id)
                if row is None:
                    return None
                for key, value in cleaned.items():
                    if key == "reminder_offsets":
                        row.reminder_offsets_json = encode_reminder_offsets(value)
                    else:
                        setattr(row, key, value)
                return _subscription_from_row(row)

    def shift_next_due(self, subscription_id: int, user_id: int, new_date: date) -> SubscriptionRecord | None:
        with _store_errors("shift_next_due"), self._session() as session:
            with session.begin():
                row = session.get(_SubscriptionRow, subscription_id)
                if row is None or row.user_id != user_id:
                    return None
                row.next_due = new_date
                return _subscription_from_row(row)

    def delete(self, subscription_id: int, user_id: int) -> bool:
        with _store_errors("delete_subscription"), self._session() as session:
            with session.begin():
                row = session.get(_SubscriptionRow, subscription_id)
                if row is None or row.user_id != user_id:
                    return False
                session.execute(
                    delete(_SubscriptionEventRow).where(_SubscriptionEventRow.subscription_id == subscription_id)
                )
                session.delete(row)
                return True

    # events

    def log_event(self, subscription_id: int, event_date: date, status: EventStatus) -> None:
        with _store_errors("log_event"), self._session() as session:
            with session.begin():
                session.execute(
                    delete(_SubscriptionEventRow)
                    .where(_SubscriptionEventRow.subscription_id == subscription_id)
                    .where(_SubscriptionEventRow.event_date == event_date)
                    .where(_SubscriptionEventRow.status == status)
                )
                session.add(
                    _SubscriptionEventRow(
                        subscription_id=subscription_id,
                        event_date=event_date,
                        status=status,
                        created_at=_now_utc(),
                    )
                )

    def list_events(self, subscription_id: int) -> list[SubscriptionEventRecord]:
        with _store_errors("list_events"), self._session() as session:
            rows = session.execute(
                select(_SubscriptionEventRow)
                .where(_SubscriptionEventRow.subscription_id == subscription_id)
                .order_by(_SubscriptionEventRow.event_id.asc())
            ).scalars()
            return [_event_from_row(row) for row in rows]

    def get_latest_paid_events(
        self,
        subscription_ids: list[int],
        since: date,
    ) -> list[SubscriptionEventRecord]:
        if not subscription_ids:
            return []
        with _store_errors("get_latest_paid_events"), self._session() as session:
            rows = session.execute(
                select(_SubscriptionEventRow)
                .where(_SubscriptionEventRow.subscription_id.in_(subscription_ids))
                .where(_SubscriptionEventRow.status == "paid")
                .where(_SubscriptionEventRow.event_date >= since)
                .order_by(
                    _SubscriptionEventRow.subscription_id.desc(),
                    _SubscriptionEventRow.event_date.desc(),
                )
            ).scalars()
            return [_event_from_row(row) for row in rows]


def create_subscription_store(*, backend: str, database_url: str):
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemySubscriptionStore(database_url)
    if normalized == "inmemory":
        return InMemorySubscriptionStore()
    raise RuntimeError(f"unsupported RECUR_STORE_BACKEND: {backend}")
