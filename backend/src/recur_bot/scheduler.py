from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import AsyncIterator, Callable

from . import messages
from .actions import evening_buttons
from .models import DecisionItem, ReminderPreviewResponse, SchedulerStatusResponse, TickReportModel
from .notifier import ButtonRows, MessageDispatcher
from .periods import coerce_utc, local_now, resolve_timezone
from .policy import DEFAULT_ON_THE_HOUR_WINDOW_MINUTES, ReminderDecision, clamp_window, evaluate_user
from .reminder_ledger import DEFAULT_RETENTION_DAYS, ReminderLedger
from .store import StoreError, SubscriptionRepository, UserRecord, UserRepository

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickReport:
    run_at: datetime
    evaluated_users: int = 0
    failed_users: int = 0
    decisions: int = 0
    claimed: int = 0
    duplicates: int = 0
    sent: int = 0
    failed: int = 0
    aborted: bool = False

    def to_model(self) -> TickReportModel:
        return TickReportModel(
            run_at=self.run_at,
            evaluated_users=self.evaluated_users,
            failed_users=self.failed_users,
            decision_count=self.decisions,
            claimed_count=self.claimed,
            duplicate_count=self.duplicates,
            sent_count=self.sent,
            failed_count=self.failed,
            aborted=self.aborted,
        )


def render_decision(decision: ReminderDecision) -> tuple[str, ButtonRows | None]:
    subscription = decision.subscription
    if decision.reminder_class == "weekly":
        return messages.render_weekly_digest(decision.digest), None
    if subscription is None:
        raise ValueError(f"{decision.reminder_class} decision without a subscription")
    if decision.reminder_class == "pre":
        return messages.render_pre_reminder(subscription, decision.offset_days or 0), None
    if decision.reminder_class == "morning":
        return messages.render_morning_reminder(subscription), None
    return messages.render_evening_check(subscription), evening_buttons(subscription.id)


class ReminderScheduler:
    """Polls every user on a fixed cadence and delivers due reminders once.

    Each tick claims a ledger key before dispatching, so replays of the same
    tick, restarts and concurrent workers never deliver a reminder twice.
    Ticks never overlap: one that comes due while the previous one is still
    running is skipped and counted.
    """

    def __init__(
        self,
        *,
        users: UserRepository,
        subscriptions: SubscriptionRepository,
        ledger: ReminderLedger,
        dispatcher: MessageDispatcher,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        window_minutes: int = DEFAULT_ON_THE_HOUR_WINDOW_MINUTES,
        default_timezone: str = "Europe/Moscow",
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._users = users
        self._subscriptions = subscriptions
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._interval_seconds = float(interval_seconds)
        self._window_minutes = clamp_window(window_minutes)
        self._default_timezone = default_timezone
        self._retention_days = retention_days
        self._clock = clock

        self._tick_lock = asyncio.Lock()
        self._loop_task: asyncio.Task | None = None
        self._tick_task: asyncio.Task | None = None
        self._started_at: datetime | None = None
        self._last_tick_at: datetime | None = None
        self._last_tick_finished_at: datetime | None = None
        self._tick_count = 0
        self._skipped_tick_count = 0
        self._last_report: TickReport | None = None
        self._last_purge_day: date | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def skipped_tick_count(self) -> int:
        return self._skipped_tick_count

    async def _load_users(self, user_id: int | None) -> list[UserRecord]:
        if user_id is None:
            return await asyncio.to_thread(self._users.get_all)
        user = await asyncio.to_thread(self._users.get_by_id, user_id)
        return [user] if user is not None else []

    async def _evaluate(
        self,
        run_at: datetime,
        report: TickReport,
        *,
        user_id: int | None,
        force: bool,
    ) -> AsyncIterator[list[ReminderDecision]]:
        users = await self._load_users(user_id)
        for user in users:
            report.evaluated_users += 1
            try:
                subscriptions = await asyncio.to_thread(self._subscriptions.list_for_user, user.user_id)
                zone = resolve_timezone(user.timezone, self._default_timezone)
                decisions = evaluate_user(
                    user,
                    subscriptions,
                    local_now(run_at, zone),
                    window_minutes=self._window_minutes,
                    force=force,
                )
            except Exception as exc:
                # One user's unreadable rows never block the rest of the tick.
                report.failed_users += 1
                logger.warning("reminder tick skipped user user_id=%s error=%r", user.user_id, exc)
                continue
            report.decisions += len(decisions)
            yield decisions

    async def _purge_if_due(self, run_at: datetime) -> None:
        today = run_at.date()
        if self._last_purge_day == today:
            return
        self._last_purge_day = today
        try:
            removed = await asyncio.to_thread(self._ledger.purge, self._retention_days)
        except StoreError as exc:
            logger.warning("reminder ledger purge failed: %s", exc)
            return
        if removed:
            logger.info("reminder ledger purged entries=%s retention_days=%s", removed, self._retention_days)

    async def _deliver(self, decision: ReminderDecision, report: TickReport) -> None:
        try:
            claimed = await asyncio.to_thread(self._ledger.claim, decision.ledger_key)
        except StoreError as exc:
            report.failed += 1
            logger.warning("reminder claim failed key=%s error=%s", decision.ledger_key, exc)
            return
        if not claimed:
            report.duplicates += 1
            return
        report.claimed += 1

        try:
            text, buttons = render_decision(decision)
            result = await self._dispatcher.send_message(decision.user_id, text, buttons=buttons)
        except Exception:
            report.failed += 1
            logger.exception("reminder dispatch raised key=%s", decision.ledger_key)
            return
        if result.sent:
            report.sent += 1
            return
        report.failed += 1
        logger.warning(
            "reminder dispatch failed key=%s subscription_id=%s error_code=%s",
            decision.ledger_key,
            decision.subscription_id,
            result.error_code,
        )

    async def tick(
        self,
        now_override: datetime | None = None,
        *,
        user_id: int | None = None,
        force: bool = False,
    ) -> TickReport | None:
        """Run one evaluation pass; returns None when a tick is already in flight."""
        if self._tick_lock.locked():
            self._skipped_tick_count += 1
            logger.warning("reminder tick skipped: previous tick still running")
            return None
        async with self._tick_lock:
            run_at = coerce_utc(now_override) if now_override is not None else self._clock()
            report = TickReport(run_at=run_at)
            self._last_tick_at = run_at
            try:
                await self._purge_if_due(run_at)
                async for decisions in self._evaluate(run_at, report, user_id=user_id, force=force):
                    for decision in decisions:
                        await self._deliver(decision, report)
            except StoreError as exc:
                report.aborted = True
                logger.error("reminder tick aborted: could not load users: %s", exc)
            finally:
                self._tick_count += 1
                self._last_report = report
                self._last_tick_finished_at = self._clock()
            if report.claimed or report.failed or report.aborted:
                logger.info(
                    "reminder tick users=%s decisions=%s claimed=%s duplicates=%s sent=%s failed=%s",
                    report.evaluated_users,
                    report.decisions,
                    report.claimed,
                    report.duplicates,
                    report.sent,
                    report.failed,
                )
            return report

    async def plan(
        self,
        now_override: datetime | None = None,
        *,
        user_id: int | None = None,
        force: bool = False,
    ) -> tuple[TickReport, list[ReminderDecision]]:
        """Evaluate without claiming or sending; StoreError propagates to the caller."""
        run_at = coerce_utc(now_override) if now_override is not None else self._clock()
        report = TickReport(run_at=run_at)
        planned: list[ReminderDecision] = []
        async for decisions in self._evaluate(run_at, report, user_id=user_id, force=force):
            planned.extend(decisions)
        return report, planned

    async def preview(
        self,
        now_override: datetime | None = None,
        *,
        user_id: int | None = None,
        force: bool = False,
    ) -> ReminderPreviewResponse:
        report, decisions = await self.plan(now_override, user_id=user_id, force=force)
        items: list[DecisionItem] = []
        for decision in decisions:
            existing = await asyncio.to_thread(self._ledger.get, decision.ledger_key)
            items.append(
                DecisionItem(
                    user_id=decision.user_id,
                    subscription_id=decision.subscription_id,
                    reminder_class=decision.reminder_class,
                    offset_days=decision.offset_days,
                    ledger_key=decision.ledger_key,
                    local_time=decision.local_time,
                    due_date=decision.due_date,
                    already_claimed=existing is not None,
                )
            )
        return ReminderPreviewResponse(
            run_at=report.run_at,
            evaluated_users=report.evaluated_users,
            decision_count=len(items),
            decisions=items,
        )

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("reminder tick failed")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while True:
            if self._tick_task is not None and not self._tick_task.done():
                self._skipped_tick_count += 1
                logger.warning("reminder tick skipped: previous tick still running")
            else:
                self._tick_task = asyncio.create_task(self._guarded_tick())
            next_at += self._interval_seconds
            await asyncio.sleep(max(0.0, next_at - loop.time()))

    async def start(self) -> None:
        if self.running:
            return
        await asyncio.to_thread(self._ledger.ensure_schema)
        self._started_at = self._clock()
        await self._purge_if_due(self._started_at)
        self._loop_task = asyncio.create_task(self._run())
        logger.info("reminder scheduler started interval_seconds=%s", self._interval_seconds)

    def stop(self) -> None:
        for task in (self._loop_task, self._tick_task):
            if task is not None and not task.done():
                task.cancel()
        if self._loop_task is not None:
            logger.info("reminder scheduler stopped")
        self._loop_task = None
        self._tick_task = None

    def status(self) -> SchedulerStatusResponse:
        return SchedulerStatusResponse(
            running=self.running,
            interval_seconds=self._interval_seconds,
            started_at=self._started_at,
            last_tick_at=self._last_tick_at,
            last_tick_finished_at=self._last_tick_finished_at,
            tick_count=self._tick_count,
            skipped_tick_count=self._skipped_tick_count,
            last_report=self._last_report.to_model() if self._last_report is not None else None,
        )


async def start_reminder_scheduler(
    *,
    users: UserRepository,
    subscriptions: SubscriptionRepository,
    ledger: ReminderLedger,
    dispatcher: MessageDispatcher,
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    window_minutes: int = DEFAULT_ON_THE_HOUR_WINDOW_MINUTES,
    default_timezone: str = "Europe/Moscow",
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> ReminderScheduler:
    scheduler = ReminderScheduler(
        users=users,
        subscriptions=subscriptions,
        ledger=ledger,
        dispatcher=dispatcher,
        interval_seconds=interval_seconds,
        window_minutes=window_minutes,
        default_timezone=default_timezone,
        retention_days=retention_days,
    )
    await scheduler.start()
    return scheduler
