"""Telegram transport for gappsbot.

Adapts python-telegram-bot to the four operations the listener needs:
subscribe to an update feed, send a message, stop receiving updates, and
release the HTTP client. Updates are converted to gappsbot.models types
before they reach the feed.
"""

from __future__ import annotations

import asyncio
import logging

from telegram import Bot, ReplyParameters
from telegram.constants import ParseMode
from telegram.error import TelegramError

from gappsbot.logging import get_logger
from gappsbot.models import Update

log = get_logger("transport")

# Pause between failed long-poll requests
POLL_ERROR_PAUSE_SECONDS = 3.0

_FEED_CLOSED = object()


class TransportError(Exception):
    """Base class for transport failures."""


class AuthError(TransportError):
    """The bot token was rejected or the API could not be reached."""


class SubscribeError(TransportError):
    """The update feed could not be started."""


class SendError(TransportError):
    """A message could not be delivered."""


class UpdateFeed:
    """Sequential, unbounded feed of inbound updates.

    Iterating blocks until the next update arrives; iteration ends once the
    feed is closed.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, update: Update) -> None:
        if self._closed:
            return
        self._queue.put_nowait(update)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_FEED_CLOSED)

    def __aiter__(self) -> "UpdateFeed":
        return self

    async def __anext__(self) -> Update:
        item = await self._queue.get()
        if item is _FEED_CLOSED:
            # Leave the marker in place for any other consumer
            self._queue.put_nowait(_FEED_CLOSED)
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class TelegramTransport:
    """Long-polling Telegram client.

    Attributes:
        bot: The underlying python-telegram-bot Bot.
        debug: When True, python-telegram-bot and httpx log at DEBUG.
    """

    def __init__(self, token: str, *, debug: bool = False, bot: Bot | None = None) -> None:
        """Create a transport.

        Args:
            token: Bot API token.
            debug: Enable verbose library logging.
            bot: Pre-built Bot instance (mainly for tests).
        """
        self.bot = bot if bot is not None else Bot(token)
        self.debug = debug
        self._feed: UpdateFeed | None = None
        self._poller: asyncio.Task | None = None

    async def connect(self) -> None:
        """Authenticate against the Bot API.

        Raises:
            AuthError: If the token is invalid or the API is unreachable.
        """
        if self.debug:
            log.debug("telegram_debug_enabled")
            for name in ("telegram", "httpx"):
                logging.getLogger(name).setLevel(logging.DEBUG)

        try:
            await self.bot.initialize()
        except TelegramError as e:
            raise AuthError(f"unable to connect to Telegram: {e}") from e

        log.info("telegram_authorized", username=self.bot.username)

    async def subscribe(self, offset: int, timeout: int) -> UpdateFeed:
        """Start long-polling for updates.

        A first non-blocking request verifies the API is reachable; after
        that, polling runs in a background task and failures are logged.

        Args:
            offset: First update id to receive.
            timeout: Long-poll timeout in seconds.

        Returns:
            The feed that receives updates.

        Raises:
            SubscribeError: If already subscribed or the first request fails.
        """
        if self._poller is not None:
            raise SubscribeError("already subscribed to updates")

        try:
            first = await self.bot.get_updates(offset=offset, timeout=0)
        except TelegramError as e:
            raise SubscribeError(f"unable to start listening to bot updates: {e}") from e

        feed = UpdateFeed()
        self._feed = feed
        offset = self._deliver(feed, first, offset)
        self._poller = asyncio.create_task(self._poll(feed, offset, timeout))
        log.debug("updates_subscribed", offset=offset, timeout=timeout)
        return feed

    async def send(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
    ) -> None:
        """Send a Markdown message, optionally threaded as a reply.

        Raises:
            SendError: If the Bot API call fails.
        """
        reply_parameters = None
        if reply_to_message_id:
            reply_parameters = ReplyParameters(message_id=reply_to_message_id)

        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.MARKDOWN,
                reply_parameters=reply_parameters,
            )
        except TelegramError as e:
            raise SendError(f"unable to send the message to chat {chat_id}: {e}") from e

    async def stop_receiving_updates(self) -> None:
        """Stop polling and close the feed. Safe to call repeatedly.

        The feed is closed even when the poller had crashed; that error is
        re-raised here.
        """
        try:
            if self._poller is not None:
                poller, self._poller = self._poller, None
                poller.cancel()
                try:
                    await poller
                except asyncio.CancelledError:
                    pass
                log.debug("updates_polling_stopped")
        finally:
            if self._feed is not None:
                self._feed.close()

    async def shutdown(self) -> None:
        """Release the HTTP client held by the Bot."""
        await self.bot.shutdown()

    async def _poll(self, feed: UpdateFeed, offset: int, timeout: int) -> None:
        while True:
            try:
                updates = await self.bot.get_updates(offset=offset, timeout=timeout)
            except TelegramError as e:
                log.warning(
                    "updates_poll_failed",
                    error=str(e),
                    retry_in_seconds=POLL_ERROR_PAUSE_SECONDS,
                )
                await asyncio.sleep(POLL_ERROR_PAUSE_SECONDS)
                continue
            except Exception:
                log.exception("updates_poll_crashed", offset=offset)
                raise
            offset = self._deliver(feed, updates, offset)

    @staticmethod
    def _deliver(feed: UpdateFeed, updates, offset: int) -> int:
        for update in updates:
            offset = max(offset, update.update_id + 1)
            feed.put(Update.from_telegram(update))
        return offset
