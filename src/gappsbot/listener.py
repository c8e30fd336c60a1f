"""Update listener for gappsbot.

Consumes the transport's update feed and dispatches messages to handlers
by text prefix. Matching is a linear scan over the command table in
declaration order; the first prefix that the message text starts with wins,
so "/starting" still triggers the "/start" handler. Unmatched text gets no
reply.

Handlers run as fire-and-forget tasks so a slow reply never delays the
dispatch of the next update. A semaphore caps how many run at once; it is
acquired inside the handler task, never by the dispatch loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

from gappsbot.logging import get_logger
from gappsbot.transport import SendError, UpdateFeed

if TYPE_CHECKING:
    from gappsbot.config import Config
    from gappsbot.models import Message, Update

log = get_logger("listener")

# Offset used when no update has been processed yet; the feed then starts
# at offset 0, i.e. every update Telegram has not seen confirmed.
DEFAULT_LAST_OFFSET = -1

# Grace period for in-flight replies at close; stragglers are cancelled
HANDLER_DRAIN_SECONDS = 2.0

Handler = Callable[["Message"], Awaitable[None]]


class Transport(Protocol):
    """The transport operations the listener relies on."""

    async def subscribe(self, offset: int, timeout: int) -> UpdateFeed: ...

    async def send(
        self, chat_id: int, text: str, reply_to_message_id: int | None = None
    ) -> None: ...

    async def stop_receiving_updates(self) -> None: ...

    async def shutdown(self) -> None: ...


class UpdateListener:
    """Background dispatcher for inbound chat updates.

    Attributes:
        name: Component identifier used by the shutdown coordinator.
        last_offset: Id of the last update handed to dispatch.
        commands: Ordered (prefix, handler) table.
    """

    name = "bot"

    def __init__(
        self,
        transport: Transport,
        config: Config,
        last_offset: int | None = None,
    ) -> None:
        """Create a listener.

        Args:
            transport: Chat transport to subscribe to and reply through.
            config: Application configuration (commands, messages, polling).
            last_offset: Last processed update id, if known.
        """
        self.transport = transport
        self.config = config

        if not last_offset:
            log.warning("default_last_offset", offset=DEFAULT_LAST_OFFSET)
            last_offset = DEFAULT_LAST_OFFSET
        self.last_offset = last_offset

        self.commands: list[tuple[str, Handler]] = [
            (config.commands.start, self.hello),
            (config.commands.help, self.help),
        ]

        self._semaphore = asyncio.Semaphore(config.telegram.max_concurrent_handlers)
        self._handler_tasks: set[asyncio.Task] = set()
        self._listen_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Subscribe to the update feed and start dispatching in the background.

        Raises:
            SubscribeError: If the transport cannot start the feed.
        """
        feed = await self.transport.subscribe(
            self.last_offset + 1, self.config.telegram.timeout
        )
        self._listen_task = asyncio.create_task(self._listen(feed))
        log.info("listener_started", offset=self.last_offset + 1)

    async def close(self) -> None:
        """Stop receiving updates and release the transport.

        Waits for the dispatch loop, then gives in-flight replies up to
        HANDLER_DRAIN_SECONDS before cancelling them. The transport is shut
        down even if the close itself is cancelled. Transport failures are
        logged, not raised.
        """
        try:
            try:
                await self.transport.stop_receiving_updates()
            except Exception as e:
                log.warning("stop_receiving_updates_failed", error=str(e))
                # The feed may never close now
                if self._listen_task is not None:
                    self._listen_task.cancel()

            if self._listen_task is not None:
                await asyncio.wait([self._listen_task])
                self._listen_task = None

            if self._handler_tasks:
                log.debug("waiting_for_handlers", count=len(self._handler_tasks))
                await asyncio.wait(self._handler_tasks, timeout=HANDLER_DRAIN_SECONDS)
        finally:
            pending = [t for t in self._handler_tasks if not t.done()]
            if pending:
                log.warning("handlers_cancelled", count=len(pending))
                for task in pending:
                    task.cancel()

            try:
                await self.transport.shutdown()
            except Exception as e:
                log.warning("transport_shutdown_failed", error=str(e))

        log.info("listener_closed")

    def dispatch(self, update: Update) -> asyncio.Task | None:
        """Route an update to the first handler whose prefix matches.

        Args:
            update: Inbound update.

        Returns:
            The handler task, or None if the update was ignored.
        """
        self.last_offset = max(self.last_offset, update.update_id)

        message = update.message
        if message is None:
            return None

        for prefix, handler in self.commands:
            if message.text.startswith(prefix):
                log.debug(
                    "command_matched",
                    command=prefix,
                    user_id=message.sender_id,
                    chat_id=message.chat_id,
                )
                task = asyncio.create_task(self._run(handler, message))
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
                return task

        return None

    # =========================================================================
    # Handlers
    # =========================================================================

    async def hello(self, message: Message) -> None:
        await self.reply(message.chat_id, message.message_id, self.config.messages.hello)

    async def help(self, message: Message) -> None:
        await self.reply(message.chat_id, message.message_id, self.config.messages.help)

    async def reply(self, chat_id: int, message_id: int, text: str) -> None:
        """Send text to a chat, threaded to message_id when it is non-zero.

        Send failures are logged and dropped; the user simply gets no reply.
        """
        log.debug("sending_reply", chat_id=chat_id, msg_id=message_id)
        try:
            await self.transport.send(chat_id, text, message_id or None)
        except SendError as e:
            log.error("reply_failed", chat_id=chat_id, msg_id=message_id, error=str(e))

    # =========================================================================
    # Internals
    # =========================================================================

    async def _listen(self, feed: UpdateFeed) -> None:
        async for update in feed:
            self.dispatch(update)
        log.debug("update_feed_closed", last_offset=self.last_offset)

    async def _run(self, handler: Handler, message: Message) -> None:
        async with self._semaphore:
            try:
                await handler(message)
            except Exception as e:
                log.error(
                    "handler_failed",
                    handler=handler.__name__,
                    chat_id=message.chat_id,
                    error=str(e),
                )
