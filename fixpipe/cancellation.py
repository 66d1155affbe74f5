"""Structured cancellation for long-running pipeline work.

A CancellationToken is passed explicitly into the retry runtime, the
coordinator and the agent executor. Cleanup actions are registered on the
token for the lifetime of a resource and run once when the token is
cancelled. Only the CLI translates process signals into token.cancel().
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager

from fixpipe.errors import FixpipeError

logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], None | Awaitable[None]]


class Cancelled(FixpipeError):
    """Raised when work is interrupted by a cancelled token."""

    pass


class CancellationToken:
    """Cooperative cancellation signal with scoped cleanup callbacks.

    Usage:
        token = CancellationToken()
        with token.on_cancel(process.kill):
            await process.wait()
        ...
        token.cancel("interrupted")
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: dict[int, CleanupCallback] = {}
        self._next_id = 0
        self._pending: list[asyncio.Task] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation and run registered cleanup callbacks.

        Safe to call more than once; only the first call has an effect.
        Coroutine callbacks are scheduled on the running loop and can be
        awaited with drain().
        """
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info(f"Cancellation requested: {reason}")

        callbacks = list(self._callbacks.values())
        self._callbacks.clear()
        for callback in callbacks:
            try:
                result = callback()
                if inspect.isawaitable(result):
                    self._pending.append(asyncio.ensure_future(result))
            except Exception as e:
                logger.warning(f"Cleanup callback failed: {e}")

    def register(self, callback: CleanupCallback) -> Callable[[], None]:
        """Register a cleanup callback and return a function that unregisters it.

        If the token is already cancelled the callback runs immediately.
        """
        if self.cancelled:
            result = callback()
            if inspect.isawaitable(result):
                self._pending.append(asyncio.ensure_future(result))
            return lambda: None

        callback_id = self._next_id
        self._next_id += 1
        self._callbacks[callback_id] = callback

        def unregister() -> None:
            self._callbacks.pop(callback_id, None)

        return unregister

    @contextmanager
    def on_cancel(self, callback: CleanupCallback) -> Iterator[None]:
        """Keep a cleanup callback registered for the duration of a block."""
        unregister = self.register(callback)
        try:
            yield
        finally:
            unregister()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for the given duration, waking early on cancellation.

        Raises:
            Cancelled: If the token is (or becomes) cancelled
        """
        if self.cancelled:
            raise Cancelled(self.reason or "cancelled")
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise Cancelled(self.reason or "cancelled")

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise Cancelled(self.reason or "cancelled")

    async def drain(self) -> None:
        """Wait for coroutine cleanup callbacks scheduled by cancel()."""
        if self._pending:
            pending, self._pending = self._pending, []
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.warning(f"Cleanup callback failed: {result}")
