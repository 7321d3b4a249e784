from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Literal

from pydantic import BaseModel, Field, field_validator

Period = Literal["monthly", "yearly"]
EventStatus = Literal["paid", "skipped"]
ReminderClass = Literal["pre", "morning", "evening", "weekly"]
DispatchStatus = Literal["sent", "failed"]

PERIODS: frozenset[str] = frozenset({"monthly", "yearly"})
CENTS = Decimal("0.01")


def normalize_amount(value: float | int | str | Decimal) -> Decimal | None:
    """Parse a user or stored amount into a positive two-decimal Decimal."""
    if isinstance(value, str):
        value = value.replace(" ", "").replace(",", ".")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


class DecisionItem(BaseModel):
    user_id: int
    subscription_id: int | None = None
    reminder_class: ReminderClass
    offset_days: int | None = None
    ledger_key: str
    local_time: datetime
    due_date: date | None = None
    already_claimed: bool = False


class ReminderPreviewRequest(BaseModel):
    now_override: datetime | None = None
    user_id: int | None = None
    force: bool = False


class ReminderPreviewResponse(BaseModel):
    run_at: datetime
    evaluated_users: int
    decision_count: int
    decisions: list[DecisionItem] = Field(default_factory=list)


class TickReportModel(BaseModel):
    run_at: datetime
    evaluated_users: int
    failed_users: int
    decision_count: int
    claimed_count: int
    duplicate_count: int
    sent_count: int
    failed_count: int
    aborted: bool


class SchedulerStatusResponse(BaseModel):
    running: bool
    interval_seconds: float
    started_at: datetime | None = None
    last_tick_at: datetime | None = None
    last_tick_finished_at: datetime | None = None
    tick_count: int
    skipped_tick_count: int
    last_report: TickReportModel | None = None


class SnoozeRequest(BaseModel):
    days: int = Field(ge=1, le=30)

    @field_validator("days", mode="before")
    @classmethod
    def _strip_days(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value
