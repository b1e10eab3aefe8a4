"""
Cooperative cancellation shared by the turn, the scheduler and tools.

One CancelToken is handed to every component taking part in an exchange.
Cancellation is a signal, not an interrupt: holders poll ``is_cancelled``,
block on ``wait()`` from worker threads, or await ``wait_async()`` on the
event loop.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .errors import CancellationError

logger = logging.getLogger(__name__)


class CancelToken:
    """Thread-safe, idempotent cancellation flag with callbacks"""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "User cancelled") -> None:
        """Fire the token. Later calls have no effect."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        logger.info(f"Cancellation requested: {reason}")
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Cancel callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; runs immediately if already cancelled.

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False
        if not registered:
            callback()

        def _remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _remove

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason or "Cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block the calling thread until cancelled. Returns False on timeout."""
        return self._event.wait(timeout)

    async def wait_async(self, timeout: Optional[float] = None) -> bool:
        """Suspend the calling task until cancelled. Returns False on timeout."""
        if self.is_cancelled:
            return True
        loop = asyncio.get_running_loop()
        fut = loop.create_future()

        def _resolve() -> None:
            if not fut.done():
                fut.set_result(True)

        def _wake() -> None:
            try:
                loop.call_soon_threadsafe(_resolve)
            except RuntimeError:
                # Loop already closed; nobody is waiting any more
                pass

        remove = self.on_cancel(_wake)
        try:
            if timeout is None:
                await fut
                return True
            try:
                await asyncio.wait_for(fut, timeout)
                return True
            except asyncio.TimeoutError:
                return False
        finally:
            remove()


def _consume_result(task: "asyncio.Future") -> None:
    # Abandoned tasks still get their outcome retrieved
    if not task.cancelled():
        task.exception()


async def until_cancelled(awaitable: Awaitable[Any], token: CancelToken) -> Tuple[bool, Any]:
    """Await ``awaitable`` unless the token fires first.

    Returns (True, value) when it finished, (False, None) when cancellation
    won. Exceptions raised by the awaitable propagate.
    """
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait_async())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if task in done and not task.cancelled():
        return True, task.result()
    task.cancel()
    task.add_done_callback(_consume_result)
    return False, None
