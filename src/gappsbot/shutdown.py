"""Graceful shutdown coordination for gappsbot.

The coordinator waits for SIGINT/SIGTERM or a cancellation event, whichever
comes first, then closes a fixed list of named components one after another
in registration order. A failing or slow component is logged and skipped;
it never aborts the sequence.

The coordinator is one-shot: WAITING -> CLOSING -> DONE. Triggers arriving
after the first are ignored.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Sequence
from enum import Enum
from typing import Protocol

from gappsbot.logging import get_logger

log = get_logger("shutdown")

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class NamedCloser(Protocol):
    """A long-lived component released at shutdown."""

    name: str

    async def close(self) -> None: ...


class ShutdownState(str, Enum):
    """Coordinator lifecycle."""

    WAITING = "waiting"
    CLOSING = "closing"
    DONE = "done"


class CloseError(Exception):
    """A component failed to close."""

    def __init__(self, component: str, cause: BaseException) -> None:
        super().__init__(f"unable to close the component {component!r}: {cause}")
        self.component = component
        self.cause = cause


class ShutdownCoordinator:
    """Drives an orderly, best-effort close of registered components.

    Attributes:
        components: Components in the order they are closed.
        close_timeout: Seconds allowed for each close, or None for no bound.
        state: Current lifecycle state.
        done: Set once the close sequence has finished.
        errors: Failures collected during the close sequence.
    """

    def __init__(
        self,
        components: Sequence[NamedCloser],
        close_timeout: float | None = None,
    ) -> None:
        self.components = list(components)
        self.close_timeout = close_timeout
        self.state = ShutdownState.WAITING
        self.done = asyncio.Event()
        self.errors: list[CloseError] = []
        self._close_task: asyncio.Task | None = None
        self._supervisor: asyncio.Task | None = None

    def run(self, cancel: asyncio.Event | None = None) -> asyncio.Event:
        """Start watching for termination signals and cancellation.

        Must be called from within the running event loop.

        Args:
            cancel: Optional event that triggers shutdown when set.

        Returns:
            The completion event.
        """
        loop = asyncio.get_running_loop()
        setup_signal_handlers(self, loop)

        if cancel is not None:
            self._supervisor = loop.create_task(self._supervise(cancel))

        return self.done

    async def wait(self) -> None:
        """Block until the close sequence has finished."""
        await self.done.wait()

    def trigger(self, reason: str) -> bool:
        """Start the close sequence unless it already started.

        Args:
            reason: Why shutdown was requested, for logging.

        Returns:
            True if this call started the sequence.
        """
        if self.state is not ShutdownState.WAITING:
            log.debug("shutdown_trigger_ignored", reason=reason, state=self.state.value)
            return False

        self.state = ShutdownState.CLOSING
        log.warning("shutdown_initiated", reason=reason)
        self._close_task = asyncio.get_running_loop().create_task(self._close_all())
        return True

    async def _supervise(self, cancel: asyncio.Event) -> None:
        await cancel.wait()
        self.trigger("context_cancelled")

    async def _close_all(self) -> None:
        try:
            for component in self.components:
                await self._close_one(component)
        finally:
            self.state = ShutdownState.DONE
            if self._supervisor is not None and not self._supervisor.done():
                self._supervisor.cancel()
            log.info("shutdown_complete", failed=len(self.errors))
            self.done.set()

    async def _close_one(self, component: NamedCloser) -> None:
        log.debug("component_closing", component=component.name)
        try:
            if self.close_timeout is None:
                await component.close()
            else:
                await asyncio.wait_for(component.close(), timeout=self.close_timeout)
        except asyncio.TimeoutError:
            cause = TimeoutError(f"close took longer than {self.close_timeout}s")
            self._record(component, cause)
        except Exception as e:
            self._record(component, e)
        else:
            log.info("component_closed", component=component.name)

    def _record(self, component: NamedCloser, cause: BaseException) -> None:
        error = CloseError(component.name, cause)
        self.errors.append(error)
        log.warning("component_close_failed", component=component.name, error=str(cause))


def setup_signal_handlers(
    coordinator: ShutdownCoordinator, loop: asyncio.AbstractEventLoop
) -> None:
    """Setup graceful shutdown handlers for SIGINT and SIGTERM.

    Args:
        coordinator: The coordinator to trigger.
        loop: The event loop to add signal handlers to.
    """

    def handle_signal(sig: signal.Signals) -> None:
        """Handle shutdown signal."""
        log.warning("signal_received", signal=sig.name)
        coordinator.trigger(f"signal:{sig.name}")

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    log.debug("signal_handlers_registered", signals=[s.name for s in SHUTDOWN_SIGNALS])
