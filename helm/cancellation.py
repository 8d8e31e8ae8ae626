"""A cancellation token shared from the CLI down to individual tool runs."""

import asyncio
import threading
from collections.abc import Callable

DEFAULT_REASON = "User cancelled the operation."


class CancellationToken:
    """One-shot, thread-safe cancellation flag with callbacks.

    ``cancel`` may be called from a signal handler or another thread;
    callbacks run in the thread that cancels.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = DEFAULT_REASON) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)

    def add_callback(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it.

        If the token already fired, the callback runs immediately.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                fired = False
            else:
                fired = True
        if fired:
            callback(self._reason or DEFAULT_REASON)

        def remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return remove

    async def wait(self) -> str:
        """Suspend until the token fires; returns the reason."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _resolve(reason: str) -> None:
            if not future.done():
                future.set_result(reason)

        remove = self.add_callback(
            lambda reason: loop.call_soon_threadsafe(_resolve, reason)
        )
        try:
            return await future
        finally:
            remove()
