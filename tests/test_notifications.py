import logging
from unittest.mock import AsyncMock, MagicMock

from telegram.constants import ParseMode
from telegram.error import TelegramError

from escrow_models import NotificationEvent
from notifications import CompositeNotifier, DatabaseNotifier, LoggingNotifier, Notifier, TelegramNotifier


class BrokenNotifier(Notifier):

    async def _deliver(self, event, user_id, title, message, data):
        raise RuntimeError("channel down")


class CollectingNotifier(Notifier):

    def __init__(self):
        self.events = []

    async def _deliver(self, event, user_id, title, message, data):
        self.events.append((event, user_id, data))


async def test_delivery_failure_is_logged_not_raised(caplog):
    with caplog.at_level(logging.ERROR, logger='notifications'):
        await BrokenNotifier().notify(NotificationEvent.ESCROW_FUNDED, 'talent-1', 'Funded', 'Escrow funded')

    assert 'channel down' in caplog.text


async def test_composite_reaches_every_notifier_past_a_failure():
    collector = CollectingNotifier()
    composite = CompositeNotifier([BrokenNotifier(), collector])

    await composite.notify('funds_released', 'talent-1', 'Released', '100.00 released', {'escrow_id': 'e-1'})

    assert collector.events == [(NotificationEvent.FUNDS_RELEASED, 'talent-1', {'escrow_id': 'e-1'})]


async def test_logging_notifier(caplog):
    with caplog.at_level(logging.INFO, logger='notifications'):
        await LoggingNotifier().notify(NotificationEvent.ESCROW_FROZEN, 'manager-1', 'Frozen', 'Under review')

    assert '[escrow_frozen] to manager-1' in caplog.text


async def test_telegram_message_is_escaped_html():
    bot = MagicMock()
    bot.send_message = AsyncMock()
    notifier = TelegramNotifier(bot, chat_id=-100123)

    await notifier.notify(
        NotificationEvent.ESCROW_DISPUTED, 'talent-1', 'Dispute <opened>', 'Manager & talent disagree',
        {'escrow_id': 'escrow-1'},
    )

    kwargs = bot.send_message.await_args.kwargs
    assert kwargs['chat_id'] == -100123
    assert kwargs['parse_mode'] == ParseMode.HTML
    assert '&lt;opened&gt;' in kwargs['text']
    assert 'Manager &amp; talent' in kwargs['text']
    assert '<code>escrow-1</code>' in kwargs['text']


async def test_telegram_error_is_swallowed():
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=TelegramError("Chat not found"))

    await TelegramNotifier(bot, chat_id=1).notify(NotificationEvent.ESCROW_FUNDED, 'u', 't', 'm')

    bot.send_message.assert_awaited_once()


async def test_database_notifier_inserts_row():
    conn = MagicMock()
    conn.execute = AsyncMock()
    db = MagicMock()
    db.pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    db.pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)

    await DatabaseNotifier(db).notify(
        NotificationEvent.ESCROW_REFUNDED, 'manager-1', 'Refunded', '300.00 refunded', {'amount': '300.00'}
    )

    args = conn.execute.await_args.args
    assert args[1:5] == ('manager-1', 'escrow_refunded', 'Refunded', '300.00 refunded')
    assert args[5] == '{"amount": "300.00"}'
