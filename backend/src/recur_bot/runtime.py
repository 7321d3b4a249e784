from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .actions import ReminderActionService
from .config import Settings
from .notifier import MessageDispatcher
from .reminder_ledger import ReminderLedger, create_reminder_ledger
from .scheduler import ReminderScheduler
from .store import SubscriptionStoreView, UserStoreView
from .store_backends import create_subscription_store


@dataclass(frozen=True)
class Runtime:
    settings: Settings
    store: Any
    users: UserStoreView
    subscriptions: SubscriptionStoreView
    ledger: ReminderLedger

    def build_scheduler(self, dispatcher: MessageDispatcher) -> ReminderScheduler:
        return ReminderScheduler(
            users=self.users,
            subscriptions=self.subscriptions,
            ledger=self.ledger,
            dispatcher=dispatcher,
            interval_seconds=self.settings.reminder_interval_seconds,
            window_minutes=self.settings.reminder_on_the_hour_window_minutes,
            default_timezone=self.settings.default_timezone,
            retention_days=self.settings.reminder_ledger_retention_days,
        )

    def build_action_service(self) -> ReminderActionService:
        return ReminderActionService(
            users=self.users,
            subscriptions=self.subscriptions,
            events=self.store,
            default_timezone=self.settings.default_timezone,
        )


def build_runtime(settings: Settings) -> Runtime:
    store = create_subscription_store(backend=settings.store_backend, database_url=settings.database_url)
    ledger = create_reminder_ledger(backend=settings.ledger_backend, database_url=settings.database_url)
    return Runtime(
        settings=settings,
        store=store,
        users=UserStoreView(store),
        subscriptions=SubscriptionStoreView(store),
        ledger=ledger,
    )
