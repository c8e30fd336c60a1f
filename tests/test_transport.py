"""Tests for the Telegram transport and update models."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import telegram
from telegram.constants import ParseMode
from telegram.error import BadRequest, InvalidToken, NetworkError

from gappsbot import transport as transport_module
from gappsbot.models import Update
from gappsbot.transport import (
    AuthError,
    SendError,
    SubscribeError,
    TelegramTransport,
    UpdateFeed,
)


def tg_update(update_id: int, text: str | None = "/start", with_message: bool = True):
    """Build a python-telegram-bot Update."""
    if not with_message:
        return telegram.Update(update_id=update_id)
    message = telegram.Message(
        message_id=update_id * 10,
        date=datetime.now(timezone.utc),
        chat=telegram.Chat(id=500, type="private"),
        from_user=telegram.User(id=42, first_name="Ada", is_bot=False),
        text=text,
    )
    return telegram.Update(update_id=update_id, message=message)


async def _block_forever(*args, **kwargs):
    await asyncio.Event().wait()


@pytest.fixture
def bot() -> MagicMock:
    mock = MagicMock(spec=telegram.Bot)
    mock.initialize = AsyncMock()
    mock.shutdown = AsyncMock()
    mock.get_updates = AsyncMock()
    mock.send_message = AsyncMock()
    mock.username = "gapps_test_bot"
    return mock


class TestModels:
    def test_update_from_telegram(self) -> None:
        update = Update.from_telegram(tg_update(3, "/help now"))

        assert update.update_id == 3
        assert update.message is not None
        assert update.message.message_id == 30
        assert update.message.chat_id == 500
        assert update.message.sender_id == 42
        assert update.message.text == "/help now"

    def test_update_without_message(self) -> None:
        update = Update.from_telegram(tg_update(4, with_message=False))
        assert update.message is None

    def test_message_without_text(self) -> None:
        update = Update.from_telegram(tg_update(5, text=None))
        assert update.message is not None
        assert update.message.text == ""


class TestUpdateFeed:
    @pytest.mark.asyncio
    async def test_feed_yields_in_order_until_closed(self) -> None:
        feed = UpdateFeed()
        feed.put(Update(update_id=1))
        feed.put(Update(update_id=2))
        feed.close()
        feed.put(Update(update_id=3))  # Dropped after close

        received = [u.update_id async for u in feed]
        assert received == [1, 2]
        assert feed.closed is True

    @pytest.mark.asyncio
    async def test_closed_feed_stays_closed(self) -> None:
        feed = UpdateFeed()
        feed.close()
        feed.close()

        assert [u async for u in feed] == []
        assert [u async for u in feed] == []


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_initializes_bot(self, bot) -> None:
        transport = TelegramTransport("token", bot=bot)
        await transport.connect()
        bot.initialize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_token_raises_auth_error(self, bot) -> None:
        bot.initialize.side_effect = InvalidToken()
        transport = TelegramTransport("token", bot=bot)

        with pytest.raises(AuthError):
            await transport.connect()

    @pytest.mark.asyncio
    async def test_debug_raises_library_log_level(self, bot) -> None:
        import logging

        logging.getLogger("telegram").setLevel(logging.WARNING)
        transport = TelegramTransport("token", debug=True, bot=bot)
        await transport.connect()

        assert logging.getLogger("telegram").level == logging.DEBUG


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_subscribe_delivers_updates_and_advances_offset(self, bot) -> None:
        bot.get_updates.side_effect = _sequence(
            [(tg_update(5),), (tg_update(6, "/help"),), _block_forever]
        )
        transport = TelegramTransport("token", bot=bot)

        feed = await transport.subscribe(offset=0, timeout=30)
        first = await asyncio.wait_for(feed.__anext__(), timeout=1.0)
        second = await asyncio.wait_for(feed.__anext__(), timeout=1.0)

        assert [first.update_id, second.update_id] == [5, 6]
        calls = bot.get_updates.await_args_list
        assert calls[0].kwargs == {"offset": 0, "timeout": 0}
        assert calls[1].kwargs == {"offset": 6, "timeout": 30}

        await transport.stop_receiving_updates()
        assert [u async for u in feed] == []

    @pytest.mark.asyncio
    async def test_subscribe_failure_raises(self, bot) -> None:
        bot.get_updates.side_effect = NetworkError("unreachable")
        transport = TelegramTransport("token", bot=bot)

        with pytest.raises(SubscribeError):
            await transport.subscribe(offset=0, timeout=30)

    @pytest.mark.asyncio
    async def test_subscribe_twice_raises(self, bot) -> None:
        bot.get_updates.side_effect = _sequence([(), _block_forever])
        transport = TelegramTransport("token", bot=bot)
        await transport.subscribe(offset=0, timeout=30)

        try:
            with pytest.raises(SubscribeError):
                await transport.subscribe(offset=0, timeout=30)
        finally:
            await transport.stop_receiving_updates()

    @pytest.mark.asyncio
    async def test_poll_errors_do_not_stop_polling(self, bot, monkeypatch) -> None:
        monkeypatch.setattr(transport_module, "POLL_ERROR_PAUSE_SECONDS", 0)
        bot.get_updates.side_effect = _sequence(
            [(), NetworkError("flaky"), (tg_update(9),), _block_forever]
        )
        transport = TelegramTransport("token", bot=bot)

        feed = await transport.subscribe(offset=0, timeout=30)
        update = await asyncio.wait_for(feed.__anext__(), timeout=1.0)

        assert update.update_id == 9
        await transport.stop_receiving_updates()

    @pytest.mark.asyncio
    async def test_unexpected_poll_error_is_logged(self, bot) -> None:
        bot.get_updates.side_effect = _sequence([(), RuntimeError("decoder broke")])
        transport = TelegramTransport("token", bot=bot)

        with patch("gappsbot.transport.log") as mock_log:
            feed = await transport.subscribe(offset=0, timeout=30)
            for _ in range(5):
                await asyncio.sleep(0)

        mock_log.exception.assert_called_once_with("updates_poll_crashed", offset=0)

        with pytest.raises(RuntimeError):
            await transport.stop_receiving_updates()
        assert feed.closed is True

    @pytest.mark.asyncio
    async def test_stop_without_subscribe(self, bot) -> None:
        transport = TelegramTransport("token", bot=bot)
        await transport.stop_receiving_updates()


class TestSend:
    @pytest.mark.asyncio
    async def test_send_threads_reply(self, bot) -> None:
        transport = TelegramTransport("token", bot=bot)
        await transport.send(500, "*hi*", reply_to_message_id=12)

        kwargs = bot.send_message.await_args.kwargs
        assert kwargs["chat_id"] == 500
        assert kwargs["text"] == "*hi*"
        assert kwargs["parse_mode"] == ParseMode.MARKDOWN
        assert kwargs["reply_parameters"].message_id == 12

    @pytest.mark.asyncio
    async def test_send_without_reply(self, bot) -> None:
        transport = TelegramTransport("token", bot=bot)
        await transport.send(500, "plain")

        assert bot.send_message.await_args.kwargs["reply_parameters"] is None

    @pytest.mark.asyncio
    async def test_send_failure_raises_send_error(self, bot) -> None:
        bot.send_message.side_effect = BadRequest("chat not found")
        transport = TelegramTransport("token", bot=bot)

        with pytest.raises(SendError):
            await transport.send(500, "hi", reply_to_message_id=1)

    @pytest.mark.asyncio
    async def test_shutdown_releases_bot(self, bot) -> None:
        transport = TelegramTransport("token", bot=bot)
        await transport.shutdown()
        bot.shutdown.assert_awaited_once()


def _sequence(steps):
    """Build an async side effect returning, raising or awaiting each step in turn."""
    steps = iter(steps)

    async def side_effect(*args, **kwargs):
        step = next(steps)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return await step(*args, **kwargs)
        return step

    return side_effect
