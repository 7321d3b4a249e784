from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, Sequence

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import TelegramError

from .models import DispatchStatus

logger = logging.getLogger(__name__)

ButtonRows = Sequence[Sequence[tuple[str, str]]]


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    attempted_at: datetime
    message_id: int | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def sent(self) -> bool:
        return self.status == "sent"


class MessageDispatcher(Protocol):
    async def send_message(self, chat_id: int, text: str, *, buttons: ButtonRows | None = None) -> DispatchResult: ...

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        buttons: ButtonRows | None = None,
    ) -> DispatchResult: ...


def build_keyboard(buttons: ButtonRows | None) -> InlineKeyboardMarkup | None:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(text=label, callback_data=data) for label, data in row] for row in buttons]
    )


@dataclass(frozen=True)
class SentMessage:
    chat_id: int
    text: str
    buttons: tuple[tuple[tuple[str, str], ...], ...] = ()
    message_id: int | None = None
    edited: bool = False


@dataclass
class StubMessageDispatcher:
    """Records outgoing messages instead of delivering them.

    Chats listed in ``fail_chat_ids`` get a failed result, which lets tests
    exercise delivery failures without a network.
    """

    fail_chat_ids: set[int] = field(default_factory=set)
    sent: list[SentMessage] = field(default_factory=list)
    _next_message_id: int = 1

    async def send_message(self, chat_id: int, text: str, *, buttons: ButtonRows | None = None) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)
        if chat_id in self.fail_chat_ids:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub dispatcher forced failure for chat",
            )
        message_id = self._next_message_id
        self._next_message_id += 1
        self.sent.append(
            SentMessage(
                chat_id=chat_id,
                text=text,
                buttons=tuple(tuple(row) for row in buttons or ()),
                message_id=message_id,
            )
        )
        return DispatchResult(status="sent", attempted_at=attempted_at, message_id=message_id)

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        buttons: ButtonRows | None = None,
    ) -> DispatchResult:
        if chat_id in self.fail_chat_ids:
            return await self.send_message(chat_id, text, buttons=buttons)
        self.sent.append(
            SentMessage(
                chat_id=chat_id,
                text=text,
                buttons=tuple(tuple(row) for row in buttons or ()),
                message_id=message_id,
                edited=True,
            )
        )
        return DispatchResult(status="sent", attempted_at=datetime.now(timezone.utc), message_id=message_id)


def _error_code(exc: TelegramError) -> str:
    return f"telegram_{type(exc).__name__.lower()}"


class TelegramMessageDispatcher:
    """Delivers messages through the Bot API."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, chat_id: int, text: str, *, buttons: ButtonRows | None = None) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)
        try:
            message = await self._bot.send_message(chat_id=chat_id, text=text, reply_markup=build_keyboard(buttons))
        except TelegramError as exc:
            logger.warning("telegram send failed chat_id=%s error=%s", chat_id, exc)
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=_error_code(exc),
                error_message=str(exc),
            )
        return DispatchResult(status="sent", attempted_at=attempted_at, message_id=message.message_id)

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        buttons: ButtonRows | None = None,
    ) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)
        try:
            await self._bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=build_keyboard(buttons),
            )
        except TelegramError as exc:
            logger.info("telegram edit failed chat_id=%s message_id=%s, sending instead: %s", chat_id, message_id, exc)
            return await self.send_message(chat_id, text, buttons=buttons)
        return DispatchResult(status="sent", attempted_at=attempted_at, message_id=message_id)
