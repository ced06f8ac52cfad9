"""Notification channels that carry approval cards to a human and decisions back."""

from __future__ import annotations

import html
import uuid
from abc import abstractmethod
from enum import StrEnum
from typing import Any, Awaitable, Callable

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler

from shop_agent.approvals.cards import Card
from shop_agent.config import NotificationConfig
from shop_agent.errors import NotificationError, ShopAgentError
from shop_agent.log import get_logger
from shop_agent.services.base import Service

logger = get_logger(__name__)


class Decision(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"


DecisionCallback = Callable[[str, Decision, str], Awaitable[Any]]


class NotificationChannel(Service):
    """Posts cards, edits them in place and reports button presses.

    ``post_card`` returns an opaque reference unique to that post; the same
    reference comes back with every decision made on the card.
    """

    def __init__(self) -> None:
        self._decision_callback: DecisionCallback | None = None

    @abstractmethod
    async def post_card(self, card: Card) -> str:
        ...

    @abstractmethod
    async def update_card(self, external_ref: str, card: Card) -> None:
        ...

    def on_decision(self, callback: DecisionCallback) -> None:
        """Register the callback invoked for every approve/reject press."""
        self._decision_callback = callback

    async def deliver_decision(self, external_ref: str, decision: Decision, actor: str) -> None:
        if self._decision_callback is None:
            logger.warning("decision_without_handler", external_ref=external_ref)
            return
        await self._decision_callback(external_ref, decision, actor)


class LogChannel(NotificationChannel):
    """Keeps cards in memory and logs them; decisions are fed in via ``deliver_decision``."""

    def __init__(self, ref_factory: Callable[[], str] | None = None):
        super().__init__()
        self._ref_factory = ref_factory or (lambda: f"log-{uuid.uuid4().hex}")
        self.cards: dict[str, Card] = {}

    @property
    def service_name(self) -> str:
        return "log_channel"

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def post_card(self, card: Card) -> str:
        ref = self._ref_factory()
        if ref in self.cards:
            raise NotificationError(f"channel reference {ref} already used")
        self.cards[ref] = card
        logger.info("approval_card_posted", external_ref=ref, card=card.to_text())
        return ref

    async def update_card(self, external_ref: str, card: Card) -> None:
        if external_ref not in self.cards:
            raise NotificationError(f"no card posted under {external_ref}")
        self.cards[external_ref] = card
        logger.info("approval_card_updated", external_ref=external_ref, title=card.title)


def render_html(card: Card) -> str:
    parts = [f"<b>{html.escape(card.title)}</b>", f"<b>Tool:</b> <code>{html.escape(card.tool_name)}</code>"]
    if card.block is not None:
        parts.append(f"<b>{html.escape(card.block_label or '')}:</b>\n<pre>{html.escape(card.block)}</pre>")
    if card.context:
        parts.append(f"<i>{html.escape(card.context)}</i>")
    return "\n\n".join(parts)


def _keyboard(card: Card) -> InlineKeyboardMarkup | None:
    if not card.actions:
        return None
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("Approve", callback_data=str(Decision.APPROVE)),
                InlineKeyboardButton("Reject", callback_data=str(Decision.REJECT)),
            ]
        ]
    )


class TelegramApprovalChannel(NotificationChannel):
    """Approval cards in one Telegram chat, decided with inline keyboard buttons.

    References have the form ``"<chat_id>:<message_id>"``.
    """

    def __init__(self, config: NotificationConfig):
        super().__init__()
        self._config = config
        self._app: Application | None = None  # type: ignore[type-arg]

    @property
    def service_name(self) -> str:
        return "telegram_approvals"

    async def start(self) -> None:
        if not self._config.token:
            raise ValueError("Telegram bot token not configured for approvals")
        if not self._config.chat_id:
            raise ValueError("Telegram approval chat_id not configured")

        self._app = Application.builder().token(self._config.token).build()
        self._app.add_handler(CallbackQueryHandler(self._on_callback_query, block=False))

        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling(drop_pending_updates=True)  # type: ignore[union-attr]
        logger.info("telegram_approvals_started", chat_id=self._config.chat_id)

    async def stop(self) -> None:
        if self._app:
            await self._app.updater.stop()  # type: ignore[union-attr]
            await self._app.stop()
            await self._app.shutdown()
            self._app = None
            logger.info("telegram_approvals_stopped")

    async def health_check(self) -> bool:
        return self._app is not None and self._app.running

    async def post_card(self, card: Card) -> str:
        bot = self._bot()
        try:
            message = await bot.send_message(
                chat_id=self._config.chat_id,
                text=render_html(card),
                parse_mode=ParseMode.HTML,
                reply_markup=_keyboard(card),
            )
        except TelegramError as e:
            raise NotificationError(f"failed to post approval card: {e}") from e
        return f"{message.chat_id}:{message.message_id}"

    async def update_card(self, external_ref: str, card: Card) -> None:
        chat_id, _, message_id = external_ref.partition(":")
        if not message_id:
            raise NotificationError(f"malformed Telegram reference: {external_ref}")
        try:
            await self._bot().edit_message_text(
                chat_id=int(chat_id),
                message_id=int(message_id),
                text=render_html(card),
                parse_mode=ParseMode.HTML,
                reply_markup=_keyboard(card),
            )
        except TelegramError as e:
            raise NotificationError(f"failed to update card {external_ref}: {e}") from e

    def _bot(self):
        if not self._app:
            raise NotificationError("Telegram approval channel is not started")
        return self._app.bot

    async def _on_callback_query(self, update: Update, context: Any) -> None:
        query = update.callback_query
        if query is None or query.message is None:
            return
        try:
            decision = Decision(query.data)
        except ValueError:
            await self._answer(query, "Unknown action")
            return

        # applying the decision can run the tool and a model call
        await self._answer(query, f"{decision.value.capitalize()} received")
        ref = f"{query.message.chat.id}:{query.message.message_id}"
        user = query.from_user
        actor = (user.username or str(user.id)) if user else "unknown"
        try:
            await self.deliver_decision(ref, decision, actor)
        except ShopAgentError as e:
            logger.warning("telegram_decision_failed", external_ref=ref, error=str(e))
            try:
                await query.message.reply_text(f"⚠️ {e}")
            except TelegramError as reply_error:
                logger.warning("telegram_reply_failed", external_ref=ref, error=str(reply_error))

    @staticmethod
    async def _answer(query: Any, text: str) -> None:
        try:
            await query.answer(text)
        except TelegramError as e:
            # Queries expire after a while; the decision still goes through.
            logger.warning("telegram_answer_failed", error=str(e))
