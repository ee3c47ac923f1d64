"""
Notification dispatch for escrow events.

Fire-and-forget: every notifier logs delivery failures and returns, so a
broken notification channel can never fail or roll back a money movement
that has already been committed.

Notifiers:
    - DatabaseNotifier: in-app notifications stored in the ``notifications`` table
    - TelegramNotifier: ops chat alerts through python-telegram-bot
    - LoggingNotifier: writes events to the log (single-process runs)
    - CompositeNotifier: fans an event out to several notifiers
"""

import html
import json
import logging
from typing import Any, Dict, List, Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from escrow_models import NotificationEvent

logger = logging.getLogger(__name__)

EVENT_ICONS = {
    NotificationEvent.ESCROW_FUNDED: "💰",
    NotificationEvent.FUNDS_RELEASED: "✅",
    NotificationEvent.ESCROW_REFUNDED: "↩️",
    NotificationEvent.ESCROW_DISPUTED: "⚠️",
    NotificationEvent.ESCROW_FROZEN: "🧊",
}


class Notifier:
    """
    Base notifier. Subclasses implement ``_deliver``; ``notify`` never raises.
    """

    async def notify(
        self,
        event: NotificationEvent,
        user_id: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            await self._deliver(NotificationEvent(event), str(user_id), title, message, data or {})
        except Exception as e:
            logger.error(
                f"Failed to deliver {NotificationEvent(event).value} notification "
                f"to user {user_id} via {type(self).__name__}: {e}"
            )

    async def _deliver(
        self,
        event: NotificationEvent,
        user_id: str,
        title: str,
        message: str,
        data: Dict[str, Any]
    ) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes notifications to the application log."""

    async def _deliver(self, event, user_id, title, message, data) -> None:
        logger.info(f"[{event.value}] to {user_id}: {title} - {message}")


class DatabaseNotifier(Notifier):
    """Stores in-app notifications for the marketplace frontend."""

    def __init__(self, database):
        self.db = database

    async def _deliver(self, event, user_id, title, message, data) -> None:
        async with self.db.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO notifications (user_id, notification_type, title, message, data)
                VALUES ($1, $2, $3, $4, $5)
                """,
                user_id, event.value, title, message, json.dumps(data, default=str)
            )
        logger.debug(f"Stored {event.value} notification for user {user_id}")


class TelegramNotifier(Notifier):
    """
    Mirrors escrow events into the operations Telegram chat.

    Attributes:
        bot: Telegram bot instance
        chat_id: Operations chat receiving the alerts
    """

    def __init__(self, bot: Bot, chat_id: int):
        self.bot = bot
        self.chat_id = chat_id

    async def _deliver(self, event, user_id, title, message, data) -> None:
        icon = EVENT_ICONS.get(event, "🔔")
        lines = [
            f"{icon} <b>{html.escape(title)}</b>",
            "",
            html.escape(message),
            "",
            f"<b>User:</b> <code>{html.escape(user_id)}</code>",
        ]
        escrow_id = data.get('escrow_id')
        if escrow_id:
            lines.append(f"<b>Escrow:</b> <code>{html.escape(str(escrow_id))}</code>")

        try:
            await self.bot.send_message(
                chat_id=self.chat_id,
                text="\n".join(lines),
                parse_mode=ParseMode.HTML
            )
        except TelegramError as e:
            logger.warning(f"Telegram delivery of {event.value} failed: {e}")


class CompositeNotifier(Notifier):
    """Delivers every event to each wrapped notifier in turn."""

    def __init__(self, notifiers: List[Notifier]):
        self.notifiers = list(notifiers)

    async def notify(self, event, user_id, title, message, data=None) -> None:
        for notifier in self.notifiers:
            await notifier.notify(event, user_id, title, message, data)
