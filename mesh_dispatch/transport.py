import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[Optional[BaseException], Optional["TransportResponse"]], None]


class TransportTimeout(Exception):
    """The exchange did not complete in time"""
    def __init__(self, url: str, timeout_duration: float):
        self.url = url
        self.timeout_duration = timeout_duration
        super().__init__(f"Request to {url} timed out after {timeout_duration} seconds")


class TransportConnectionError(Exception):
    """The exchange failed below HTTP: refused, reset, unresolvable host"""


class TransportRequest:
    def __init__(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.method = method
        self.headers = headers or {}
        self.body = body
        self.timeout = timeout

    def __repr__(self):
        return f"TransportRequest({self.method} {self.url})"


class TransportResponse:
    def __init__(self, status: int, body: Optional[str]):
        self.status = status
        self.body = body

    def __repr__(self):
        return f"TransportResponse(status={self.status})"


class Transport(ABC):
    """
    One request/response exchange per ``send``.

    ``on_complete(error, response)`` should be called once, with either a
    ``TransportResponse`` or an exception. Callers guard against transports
    that call it more than once.
    """

    async def start(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    def send(self, request: TransportRequest, on_complete: CompletionCallback) -> None:
        ...


class AiohttpTransport(Transport):
    """HTTP transport backed by a shared ``aiohttp.ClientSession``"""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._http_session = session
        self._owns_session = session is None
        self._active_requests: Dict[int, asyncio.Task] = {}

    async def start(self):
        if self._http_session is None or self._http_session.closed:
            # Attempt timeouts are enforced by our own timer
            self._http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_session = True

    async def close(self):
        for task in list(self._active_requests.values()):
            task.cancel()
        if self._http_session and self._owns_session:
            await self._http_session.close()

    def send(self, request: TransportRequest, on_complete: CompletionCallback) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._exchange(request, on_complete))
        self._active_requests[id(task)] = task
        timer = loop.call_later(request.timeout, self._expire, task, request, on_complete)

        def _finished(done: asyncio.Task):
            timer.cancel()
            self._active_requests.pop(id(done), None)

        task.add_done_callback(_finished)

    def _expire(self, task: asyncio.Task, request: TransportRequest, on_complete: CompletionCallback):
        logger.warning("Request %r timed out after %ss", request, request.timeout)
        on_complete(TransportTimeout(request.url, request.timeout), None)
        # Cancelling the task aborts the underlying connection
        task.cancel()

    async def _exchange(self, request: TransportRequest, on_complete: CompletionCallback):
        if self._http_session is None:
            await self.start()
        try:
            async with self._http_session.request(
                method=request.method,
                url=request.url,
                data=request.body,
                headers=request.headers,
            ) as response:
                # Undecodable bytes must not stop the response from being reported
                body = await response.text(errors="replace")
                on_complete(None, TransportResponse(response.status, body))
        except asyncio.CancelledError:
            on_complete(TransportConnectionError(f"Request to {request.url} aborted"), None)
            raise
        except (aiohttp.ClientError, OSError) as e:
            on_complete(TransportConnectionError(str(e) or e.__class__.__name__), None)
        except Exception as e:
            logger.exception("Unexpected error during request %r", request)
            on_complete(TransportConnectionError(f"Request to {request.url} failed: {e!r}"), None)
