#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date, datetime, time, timezone
from pathlib import Path

from dotenv import load_dotenv
from telegram import Bot

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from recur_bot.config import ensure_runtime_config, get_settings  # noqa: E402
from recur_bot.notifier import StubMessageDispatcher, TelegramMessageDispatcher  # noqa: E402
from recur_bot.periods import resolve_timezone  # noqa: E402
from recur_bot.runtime import Runtime, build_runtime  # noqa: E402
from recur_bot.scheduler import render_decision  # noqa: E402

TEST_PREFIX = "[TEST] "


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Show which reminders would go out at a given moment, optionally sending them.",
    )
    parser.add_argument("--time", help="Simulated local time HH:MM (default: now).")
    parser.add_argument("--date", help="Simulated local date YYYY-MM-DD (default: today).")
    parser.add_argument("--user", type=int, help="Only evaluate this user id.")
    parser.add_argument("--force", action="store_true", help="Skip time checks and produce every reminder for today.")
    parser.add_argument(
        "--send",
        action="store_true",
        help="Deliver the planned reminders to Telegram, tagged as tests. The ledger is never touched.",
    )
    return parser.parse_args()


def simulated_now(time_arg: str | None, date_arg: str | None, zone_name: str, default_zone: str) -> datetime:
    zone = resolve_timezone(zone_name, default_zone)
    local = datetime.now(timezone.utc).astimezone(zone)
    if date_arg:
        local = datetime.combine(date.fromisoformat(date_arg), local.timetz())
    if time_arg:
        hours, _, minutes = time_arg.partition(":")
        if not (hours.isdigit() and minutes.isdigit()):
            raise ValueError(f"invalid time format: {time_arg}. Use HH:MM")
        local = datetime.combine(local.date(), time(int(hours), int(minutes)), tzinfo=zone)
    return local.astimezone(timezone.utc)


async def _run(runtime: Runtime, args: argparse.Namespace) -> int:
    settings = runtime.settings
    zone_name = settings.default_timezone
    if args.user is not None:
        user = await asyncio.to_thread(runtime.users.get_by_id, args.user)
        if user is None:
            print(f"User {args.user} not found")
            return 1
        zone_name = user.timezone
    now_utc = simulated_now(args.time, args.date, zone_name, settings.default_timezone)

    scheduler = runtime.build_scheduler(StubMessageDispatcher())
    report, decisions = await scheduler.plan(now_utc, user_id=args.user, force=args.force)

    print(f"Mode: {'SEND' if args.send else 'DRY-RUN'}")
    print(f"Simulated UTC time: {now_utc.isoformat()}")
    print(f"Force mode: {'YES' if args.force else 'NO'}")
    print(f"Users evaluated: {report.evaluated_users} (failed: {report.failed_users})")
    print()
    for decision in decisions:
        text, _ = render_decision(decision)
        print(f"{decision.reminder_class.upper():8} key={decision.ledger_key}")
        for line in text.splitlines():
            print(f"    {line}")

    if not args.send:
        print(f"\nTotal: {len(decisions)} reminder(s)")
        return 0

    sent = 0
    failed = 0
    async with Bot(settings.bot_token) as bot:
        dispatcher = TelegramMessageDispatcher(bot)
        for decision in decisions:
            text, buttons = render_decision(decision)
            result = await dispatcher.send_message(decision.user_id, TEST_PREFIX + text, buttons=buttons)
            if result.sent:
                sent += 1
            else:
                failed += 1
                print(f"Failed {decision.ledger_key}: {result.error_code} {result.error_message}")
    print(f"\nTotal: {len(decisions)} reminder(s), sent: {sent}, failed: {failed}")
    return 0 if failed == 0 else 2


def main() -> int:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = parse_args()
    settings = get_settings()
    ensure_runtime_config(settings, require_bot_token=args.send)
    runtime = build_runtime(settings)
    return asyncio.run(_run(runtime, args))


if __name__ == "__main__":
    raise SystemExit(main())
