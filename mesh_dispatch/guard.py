import asyncio
import threading
from typing import Any, Callable, Optional


class CompletionGuard:
    """
    Forward only the first completion signal to ``callback``.

    Transports report the end of an exchange through events, and more than
    one can fire for a single attempt: a timeout followed by a late response,
    or an error raised by aborting the request after the timeout. The first
    signal wins; the rest are dropped. The decision is taken under a lock so
    that signals racing from different threads still deliver once.
    """

    def __init__(self, callback: Callable[..., Any]):
        self._callback = callback
        self._lock = threading.Lock()
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def __call__(self, *args, **kwargs) -> bool:
        with self._lock:
            if self._fired:
                return False
            self._fired = True
        self._callback(*args, **kwargs)
        return True


def call_once_only(callback: Callable[..., Any]) -> CompletionGuard:
    return CompletionGuard(callback)


class CompletionLatch:
    """Resolve an asyncio future from the first ``(error, response)`` signal"""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_running_loop()
        self.future: asyncio.Future = self.loop.create_future()
        self.signal = CompletionGuard(self._deliver)

    def _deliver(self, error: Optional[BaseException], response: Any = None):
        # Signals may arrive from transport threads
        self.loop.call_soon_threadsafe(self._resolve, error, response)

    def _resolve(self, error, response):
        if not self.future.done():
            self.future.set_result((error, response))

    async def wait(self):
        """Return the ``(error, response)`` pair of the winning signal"""
        return await self.future
