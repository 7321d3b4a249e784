from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, create_engine, delete, insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .periods import coerce_utc
from .store import StoreError

DEFAULT_RETENTION_DAYS = 30


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LedgerEntry:
    key: str
    sent_at: datetime


class ReminderLedger(Protocol):
    def ensure_schema(self) -> None: ...

    def claim(self, key: str) -> bool: ...

    def get(self, key: str) -> LedgerEntry | None: ...

    def purge(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int: ...

    def reset(self) -> None: ...


class InMemoryReminderLedger:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, LedgerEntry] = {}

    def ensure_schema(self) -> None:
        return None

    def claim(self, key: str) -> bool:
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = LedgerEntry(key=key, sent_at=_now_utc())
            return True

    def get(self, key: str) -> LedgerEntry | None:
        with self._lock:
            return self._entries.get(key)

    def purge(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = _now_utc() - timedelta(days=retention_days)
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.sent_at < cutoff]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


class ReminderLedgerBase(DeclarativeBase):
    pass


class _ReminderLogRow(ReminderLedgerBase):
    __tablename__ = "reminder_log"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyReminderLedger:
    """Ledger backed by a primary-keyed table; the first insert for a key wins."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_LEDGER_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)

    def _session(self):
        return self._session_factory()

    def ensure_schema(self) -> None:
        try:
            ReminderLedgerBase.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"reminder_log bootstrap failed: {exc}") from exc

    def _insert_ignoring_conflicts(self, key: str, sent_at: datetime):
        dialect = self._engine.dialect.name
        values = {"key": key, "sent_at": sent_at}
        if dialect == "postgresql":
            return postgresql_insert(_ReminderLogRow).values(**values).on_conflict_do_nothing(index_elements=["key"])
        if dialect == "sqlite":
            return sqlite_insert(_ReminderLogRow).values(**values).on_conflict_do_nothing(index_elements=["key"])
        return None

    def claim(self, key: str) -> bool:
        sent_at = _now_utc()
        statement = self._insert_ignoring_conflicts(key, sent_at)
        try:
            with self._session() as session:
                with session.begin():
                    if statement is not None:
                        result = session.execute(statement)
                        return result.rowcount == 1
                    session.execute(insert(_ReminderLogRow).values(key=key, sent_at=sent_at))
                    return True
        except IntegrityError:
            return False
        except SQLAlchemyError as exc:
            raise StoreError(f"reminder_log claim failed for {key}: {exc}") from exc

    def get(self, key: str) -> LedgerEntry | None:
        try:
            with self._session() as session:
                row = session.get(_ReminderLogRow, key)
                if row is None:
                    return None
                return LedgerEntry(key=row.key, sent_at=coerce_utc(row.sent_at))
        except SQLAlchemyError as exc:
            raise StoreError(f"reminder_log read failed for {key}: {exc}") from exc

    def purge(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = _now_utc() - timedelta(days=retention_days)
        try:
            with self._session() as session:
                with session.begin():
                    result = session.execute(delete(_ReminderLogRow).where(_ReminderLogRow.sent_at < cutoff))
                    return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise StoreError(f"reminder_log purge failed: {exc}") from exc

    def reset(self) -> None:
        try:
            with self._session() as session:
                with session.begin():
                    session.execute(delete(_ReminderLogRow))
        except SQLAlchemyError as exc:
            raise StoreError(f"reminder_log reset failed: {exc}") from exc


def create_reminder_ledger(*, backend: str, database_url: str) -> ReminderLedger:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderLedger(database_url)
    if normalized == "inmemory":
        return InMemoryReminderLedger()
    raise RuntimeError(f"unsupported REMINDER_LEDGER_BACKEND: {backend}")
