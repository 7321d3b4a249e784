from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

from telegram import InlineKeyboardMarkup
from telegram.error import BadRequest, Forbidden

from recur_bot.actions import evening_buttons
from recur_bot.notifier import StubMessageDispatcher, TelegramMessageDispatcher, build_keyboard


def _bot(message_id: int = 501) -> MagicMock:
    bot = MagicMock()
    bot.send_message = AsyncMock(return_value=MagicMock(message_id=message_id))
    bot.edit_message_text = AsyncMock()
    return bot


def test_build_keyboard_maps_rows_to_inline_buttons() -> None:
    keyboard = build_keyboard(evening_buttons(7))

    assert isinstance(keyboard, InlineKeyboardMarkup)
    rows = keyboard.inline_keyboard
    assert [[button.callback_data for button in row] for row in rows] == [["pay:7", "snooze:7"], ["skip:7"]]
    assert build_keyboard(None) is None
    assert build_keyboard([]) is None


def test_telegram_send_returns_message_id() -> None:
    bot = _bot()
    dispatcher = TelegramMessageDispatcher(bot)

    result = asyncio.run(dispatcher.send_message(42, "hello", buttons=evening_buttons(7)))

    assert result.sent is True
    assert result.message_id == 501
    kwargs = bot.send_message.await_args.kwargs
    assert kwargs["chat_id"] == 42
    assert kwargs["text"] == "hello"
    assert isinstance(kwargs["reply_markup"], InlineKeyboardMarkup)


def test_telegram_send_failure_is_reported_not_raised() -> None:
    bot = _bot()
    bot.send_message.side_effect = Forbidden("bot was blocked by the user")
    dispatcher = TelegramMessageDispatcher(bot)

    result = asyncio.run(dispatcher.send_message(42, "hello"))

    assert result.sent is False
    assert result.status == "failed"
    assert result.error_code == "telegram_forbidden"
    assert "blocked" in (result.error_message or "")


def test_telegram_edit_falls_back_to_new_message() -> None:
    bot = _bot(message_id=777)
    bot.edit_message_text.side_effect = BadRequest("Message to edit not found")
    dispatcher = TelegramMessageDispatcher(bot)

    result = asyncio.run(dispatcher.edit_message(42, 10, "Cloud marked as paid."))

    assert result.sent is True
    assert result.message_id == 777
    bot.send_message.assert_awaited_once()


def test_telegram_edit_success_keeps_message_id() -> None:
    bot = _bot()
    dispatcher = TelegramMessageDispatcher(bot)

    result = asyncio.run(dispatcher.edit_message(42, 10, "updated"))

    assert result.sent is True
    assert result.message_id == 10
    bot.send_message.assert_not_awaited()


def test_stub_dispatcher_records_and_fails_on_request() -> None:
    dispatcher = StubMessageDispatcher(fail_chat_ids={13})

    ok = asyncio.run(dispatcher.send_message(42, "hi", buttons=evening_buttons(1)))
    failed = asyncio.run(dispatcher.send_message(13, "hi"))
    edited = asyncio.run(dispatcher.edit_message(42, ok.message_id or 0, "edited"))

    assert ok.sent is True
    assert failed.sent is False
    assert failed.error_code == "stub_delivery_failed"
    assert edited.sent is True
    assert [message.edited for message in dispatcher.sent] == [False, True]
    assert dispatcher.sent[0].buttons[1] == (("Skip cycle", "skip:1"),)
