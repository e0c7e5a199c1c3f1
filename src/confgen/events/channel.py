"""Coalescing wake-up channels for the regeneration loop."""

import asyncio
import contextlib
import logging
import threading
from collections.abc import Iterable

logger = logging.getLogger(__name__)


class Channel:
    """A thread-safe, coalescing wake-up source.

    Any number of fire() calls made before the next drain() collapse into a
    single pending notification. fire() may be called from any thread
    (including signal handlers and watchdog observer threads), and before
    the channel has been bound to an event loop; early notifications stay
    pending until someone waits.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._pending = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._event: asyncio.Event | None = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the channel to the event loop that will wait on it.

        Must be called from the loop's own thread.
        """
        with self._lock:
            self._loop = loop
            self._event = asyncio.Event()
            if self._pending:
                self._event.set()

    def unbind(self) -> None:
        """Detach from the event loop; later fires are only counted."""
        with self._lock:
            self._loop = None
            self._event = None

    def fire(self) -> None:
        """Record a notification and wake any waiter."""
        with self._lock:
            self._pending += 1
            loop, event = self._loop, self._event

        if loop is None or event is None:
            return
        with contextlib.suppress(RuntimeError):  # loop already closed
            loop.call_soon_threadsafe(event.set)

    @property
    def pending(self) -> bool:
        """Whether a notification is waiting to be drained."""
        with self._lock:
            return self._pending > 0

    def drain(self) -> int:
        """Consume every pending notification at once.

        Returns:
            How many fire() calls were collapsed by this drain.
        """
        with self._lock:
            count = self._pending
            self._pending = 0
            if self._event is not None:
                self._event.clear()
        if count > 1:
            logger.debug(f"Channel {self.name}: coalesced {count} notifications")
        return count

    async def wait(self) -> None:
        """Block until a notification is pending (does not consume it)."""
        if self._event is None:
            raise RuntimeError(f"Channel {self.name} is not bound to an event loop")

        # The counter is authoritative; the event is only a wake-up hint and
        # may be set late by a call_soon_threadsafe scheduled before a drain.
        while not self.pending:
            self._event.clear()
            if self.pending:
                break
            await self._event.wait()


async def wait_any(channels: Iterable[Channel], timeout: float) -> bool:
    """Wait until any channel is pending, or until timeout seconds pass.

    Returns:
        True if at least one channel is pending on return.
    """
    channels = list(channels)
    if any(c.pending for c in channels):
        return True
    if timeout <= 0:
        return False

    waiters = [asyncio.ensure_future(c.wait()) for c in channels]
    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)

    return any(c.pending for c in channels)
