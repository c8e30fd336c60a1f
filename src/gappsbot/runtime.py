"""Process wiring for gappsbot.

Startup order: open the store, connect the transport, start the listener,
then block until the shutdown coordinator has closed everything. Any
startup failure is fatal and propagates after releasing what was already
acquired.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from gappsbot.listener import UpdateListener
from gappsbot.logging import get_logger
from gappsbot.shutdown import ShutdownCoordinator
from gappsbot.storage import Store
from gappsbot.transport import TelegramTransport

if TYPE_CHECKING:
    from gappsbot.config import Config

log = get_logger("runtime")


class MissingTokenError(Exception):
    """No Telegram bot token was configured."""


async def run_bot(
    config: Config,
    cancel: asyncio.Event | None = None,
    transport: TelegramTransport | None = None,
) -> ShutdownCoordinator:
    """Run the bot until a termination signal or cancellation.

    Args:
        config: Application configuration.
        cancel: Optional event that triggers shutdown when set.
        transport: Transport to use instead of one built from the config.

    Returns:
        The coordinator, after its close sequence has finished.

    Raises:
        MissingTokenError: If no token is configured.
        OpenError: If the store cannot be opened.
        AuthError: If the transport cannot authenticate.
        SubscribeError: If the update feed cannot be started.
    """
    if transport is None:
        token = config.telegram_token
        if not token:
            raise MissingTokenError("telegram.token is not set (or TELEGRAM_TOKEN)")
        transport = TelegramTransport(token, debug=config.telegram.debug)

    store = Store.open(config.db.path, config.db.timeout)
    log.info("db_initiated", path=str(config.db.path))

    try:
        await transport.connect()
        log.info("bot_created")

        listener = UpdateListener(transport, config)
        await listener.start()
    except BaseException:
        await _release(store, transport)
        raise

    coordinator = ShutdownCoordinator(
        [listener, store],
        close_timeout=config.shutdown.close_timeout,
    )
    log.debug("shutdown_watcher_starting")
    await coordinator.run(cancel).wait()
    return coordinator


async def _release(store: Store, transport: TelegramTransport) -> None:
    try:
        await transport.shutdown()
    except Exception as e:
        log.warning("transport_release_failed", error=str(e))
    try:
        await store.close()
    except Exception as e:
        log.warning("db_release_failed", error=str(e))
