"""Entrypoint for the Telegram bot process."""

from __future__ import annotations

import asyncio
import logging
from datetime import date

from dotenv import load_dotenv
from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from . import messages
from .actions import ActionDecodeError, ActionOutcome, ReminderAction, ReminderActionService, SettingsAction
from .config import Settings, ensure_runtime_config, get_settings
from .notifier import MessageDispatcher, TelegramMessageDispatcher
from .runtime import Runtime, build_runtime
from .scheduler import start_reminder_scheduler
from .store import StoreError

logger = logging.getLogger(__name__)

CALLBACK_PATTERN = r"^(pay|skip|snooze|snooze_option|snooze_other):"
SETTINGS_CALLBACK_PATTERN = r"^reminders:"
PENDING_SNOOZE_KEY = "pending_snooze"
PENDING_NOTIFY_HOUR_KEY = "pending_notify_hour"


def _runtime(context: ContextTypes.DEFAULT_TYPE) -> Runtime:
    return context.application.bot_data["runtime"]


def _service(context: ContextTypes.DEFAULT_TYPE) -> ReminderActionService:
    return context.application.bot_data["actions"]


def _dispatcher(context: ContextTypes.DEFAULT_TYPE) -> MessageDispatcher:
    return context.application.bot_data["dispatcher"]


async def _ensure_user(context: ContextTypes.DEFAULT_TYPE, user_id: int):
    runtime = _runtime(context)
    return await asyncio.to_thread(
        runtime.users.ensure_user,
        user_id,
        timezone=runtime.settings.default_timezone,
        notify_hour=runtime.settings.default_notify_hour,
        default_offsets=runtime.settings.default_reminders,
    )


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    chat = update.effective_chat
    if not message or not chat:
        return
    try:
        user = await _ensure_user(context, chat.id)
    except StoreError as exc:
        logger.warning("start failed user_id=%s error=%s", chat.id, exc)
        await message.reply_text(messages.TRY_AGAIN_LATER)
        return
    await message.reply_text(
        "Hi, I'm Recur. I keep track of your subscriptions and remind you before each charge.\n\n"
        "/list — all subscriptions\n"
        "/paid <id> [YYYY-MM-DD] — record a payment made outside the reminders\n"
        "/reminders — reminder days and time\n"
        "/timezone <Area/City> — change your timezone\n\n"
        f"Your notification hour: {user.notify_hour}:00, timezone: {user.timezone}."
    )


async def list_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    chat = update.effective_chat
    if not message or not chat:
        return
    try:
        await _ensure_user(context, chat.id)
        subscriptions = await asyncio.to_thread(_service(context).roll_forward_paid_subscriptions, chat.id)
    except StoreError as exc:
        logger.warning("list failed user_id=%s error=%s", chat.id, exc)
        await message.reply_text(messages.TRY_AGAIN_LATER)
        return
    await message.reply_text(messages.render_subscription_list(subscriptions))


async def paid_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /paid <subscription_id> [YYYY-MM-DD]."""
    message = update.effective_message
    chat = update.effective_chat
    if not message or not chat:
        return
    args = context.args or []
    if not args or not args[0].isdigit():
        await message.reply_text("Usage: /paid <subscription id> [YYYY-MM-DD]")
        return
    service = _service(context)
    try:
        paid_on = date.fromisoformat(args[1]) if len(args) > 1 else None
    except ValueError:
        await message.reply_text("Dates look like 2025-01-31.")
        return
    try:
        if paid_on is None:
            paid_on = await asyncio.to_thread(service.local_today, chat.id)
    except StoreError as exc:
        logger.warning("paid failed user_id=%s error=%s", chat.id, exc)
        await message.reply_text(messages.TRY_AGAIN_LATER)
        return
    outcome = await asyncio.to_thread(service.log_manual_payment, int(args[0]), chat.id, paid_on)
    await message.reply_text(outcome.text)


async def _respond(
    context: ContextTypes.DEFAULT_TYPE,
    chat_id: int,
    message_id: int | None,
    outcome: ActionOutcome,
) -> None:
    dispatcher = _dispatcher(context)
    if outcome.edit_original and message_id is not None:
        await dispatcher.edit_message(chat_id, message_id, outcome.text, buttons=outcome.buttons)
        return
    await dispatcher.send_message(chat_id, outcome.text, buttons=outcome.buttons)


def _remember_pending_input(context: ContextTypes.DEFAULT_TYPE, outcome: ActionOutcome) -> None:
    """Track which free-form reply, if any, the next text message answers."""
    if context.user_data is None:
        return
    context.user_data.pop(PENDING_SNOOZE_KEY, None)
    context.user_data.pop(PENDING_NOTIFY_HOUR_KEY, None)
    if outcome.awaiting_snooze_input is not None:
        context.user_data[PENDING_SNOOZE_KEY] = outcome.awaiting_snooze_input
    elif outcome.awaiting_notify_hour:
        context.user_data[PENDING_NOTIFY_HOUR_KEY] = True


async def reminder_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle inline buttons attached to reminders and snooze prompts."""
    query = update.callback_query
    chat = update.effective_chat
    if not query or not chat:
        return
    await query.answer()
    try:
        action = ReminderAction.decode(query.data)
    except ActionDecodeError as exc:
        logger.warning("ignoring callback user_id=%s: %s", chat.id, exc)
        return
    outcome = await asyncio.to_thread(_service(context).handle, action, chat.id)
    _remember_pending_input(context, outcome)
    message_id = query.message.message_id if query.message else None
    await _respond(context, chat.id, message_id, outcome)


async def reminders_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show the default reminder days and hour with toggle buttons."""
    chat = update.effective_chat
    if not chat:
        return
    try:
        await _ensure_user(context, chat.id)
    except StoreError as exc:
        logger.warning("reminders failed user_id=%s error=%s", chat.id, exc)
        await _dispatcher(context).send_message(chat.id, messages.TRY_AGAIN_LATER)
        return
    outcome = await asyncio.to_thread(_service(context).on_reminder_settings, chat.id)
    await _respond(context, chat.id, None, outcome)


async def settings_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the buttons under the /reminders summary."""
    query = update.callback_query
    chat = update.effective_chat
    if not query or not chat:
        return
    await query.answer()
    try:
        action = SettingsAction.decode(query.data)
    except ActionDecodeError as exc:
        logger.warning("ignoring settings callback user_id=%s: %s", chat.id, exc)
        return
    outcome = await asyncio.to_thread(_service(context).handle_settings, action, chat.id)
    _remember_pending_input(context, outcome)
    message_id = query.message.message_id if query.message else None
    await _respond(context, chat.id, message_id, outcome)


async def timezone_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /timezone <Area/City>."""
    message = update.effective_message
    chat = update.effective_chat
    if not message or not chat:
        return
    args = context.args or []
    try:
        user = await _ensure_user(context, chat.id)
    except StoreError as exc:
        logger.warning("timezone failed user_id=%s error=%s", chat.id, exc)
        await message.reply_text(messages.TRY_AGAIN_LATER)
        return
    if not args:
        await message.reply_text(f"Current timezone: {user.timezone}.\n{messages.TIMEZONE_USAGE}")
        return
    outcome = await asyncio.to_thread(_service(context).on_timezone, chat.id, args[0])
    await message.reply_text(outcome.text)


async def snooze_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Consume free-form snooze days after the "Other" button."""
    message = update.effective_message
    chat = update.effective_chat
    if not message or not chat or context.user_data is None:
        return
    subscription_id = context.user_data.get(PENDING_SNOOZE_KEY)
    if subscription_id is None:
        return
    outcome = await asyncio.to_thread(_service(context).on_snooze, subscription_id, chat.id, message.text or "")
    _remember_pending_input(context, outcome)
    await message.reply_text(outcome.text)


async def notify_hour_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Consume the typed hour after the "Change time" button."""
    message = update.effective_message
    chat = update.effective_chat
    if not message or not chat or context.user_data is None:
        return
    if not context.user_data.get(PENDING_NOTIFY_HOUR_KEY):
        return
    outcome = await asyncio.to_thread(_service(context).on_notify_hour, chat.id, message.text or "")
    _remember_pending_input(context, outcome)
    await _respond(context, chat.id, None, outcome)


async def text_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if context.user_data is not None and context.user_data.get(PENDING_NOTIFY_HOUR_KEY):
        await notify_hour_input(update, context)
        return
    await snooze_input(update, context)


def build_handlers() -> list:
    return [
        CommandHandler("start", start_command),
        CommandHandler("list", list_command),
        CommandHandler("paid", paid_command),
        CommandHandler("reminders", reminders_command),
        CommandHandler("timezone", timezone_command),
        CallbackQueryHandler(reminder_callback, pattern=CALLBACK_PATTERN),
        CallbackQueryHandler(settings_callback, pattern=SETTINGS_CALLBACK_PATTERN),
        MessageHandler(filters.TEXT & ~filters.COMMAND, text_input),
    ]


async def _post_init(application: Application) -> None:
    runtime: Runtime = application.bot_data["runtime"]
    dispatcher = TelegramMessageDispatcher(application.bot)
    application.bot_data["dispatcher"] = dispatcher
    if not runtime.settings.reminder_scheduler_enabled:
        logger.info("reminder scheduler disabled for this process")
        return
    application.bot_data["scheduler"] = await start_reminder_scheduler(
        users=runtime.users,
        subscriptions=runtime.subscriptions,
        ledger=runtime.ledger,
        dispatcher=dispatcher,
        interval_seconds=runtime.settings.reminder_interval_seconds,
        window_minutes=runtime.settings.reminder_on_the_hour_window_minutes,
        default_timezone=runtime.settings.default_timezone,
        retention_days=runtime.settings.reminder_ledger_retention_days,
    )


async def _post_shutdown(application: Application) -> None:
    scheduler = application.bot_data.get("scheduler")
    if scheduler is not None:
        scheduler.stop()


def build_application(settings: Settings) -> Application:
    """Construct the telegram.ext Application with all handlers."""
    runtime = build_runtime(settings)
    app = (
        ApplicationBuilder()
        .token(settings.bot_token)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )
    app.bot_data["runtime"] = runtime
    app.bot_data["actions"] = runtime.build_action_service()
    for handler in build_handlers():
        app.add_handler(handler)
    return app


def main() -> None:
    """CLI hook: load config and start polling."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    settings = get_settings()
    ensure_runtime_config(settings)
    application = build_application(settings)
    application.run_polling(close_loop=False)


if __name__ == "__main__":
    main()
