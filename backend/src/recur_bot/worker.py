"""Standalone reminder worker: runs the scheduler, optionally with the health API."""

from __future__ import annotations

import asyncio
import logging
import signal

import uvicorn
from dotenv import load_dotenv
from telegram import Bot

from .config import Settings, ensure_runtime_config, get_settings
from .main import create_app
from .notifier import TelegramMessageDispatcher
from .runtime import build_runtime
from .scheduler import ReminderScheduler, start_reminder_scheduler

logger = logging.getLogger(__name__)


async def _wait_for_signal() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


async def _serve_health(settings: Settings, scheduler: ReminderScheduler) -> None:
    config = uvicorn.Config(
        create_app(scheduler),
        host=settings.health_host,
        port=settings.health_port or 8000,
        log_level="info",
    )
    await uvicorn.Server(config).serve()


async def run_worker(settings: Settings) -> None:
    runtime = build_runtime(settings)
    async with Bot(settings.bot_token) as bot:
        scheduler = await start_reminder_scheduler(
            users=runtime.users,
            subscriptions=runtime.subscriptions,
            ledger=runtime.ledger,
            dispatcher=TelegramMessageDispatcher(bot),
            interval_seconds=settings.reminder_interval_seconds,
            window_minutes=settings.reminder_on_the_hour_window_minutes,
            default_timezone=settings.default_timezone,
            retention_days=settings.reminder_ledger_retention_days,
        )
        try:
            if settings.health_port:
                logger.info("serving health api on %s:%s", settings.health_host, settings.health_port)
                await _serve_health(settings, scheduler)
            else:
                await _wait_for_signal()
        finally:
            scheduler.stop()


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    settings = get_settings()
    ensure_runtime_config(settings)
    try:
        asyncio.run(run_worker(settings))
    except KeyboardInterrupt:
        logger.info("reminder worker interrupted")
    logger.info("reminder worker exited")


if __name__ == "__main__":
    main()
