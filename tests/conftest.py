import asyncio
import json

import pytest

from mesh_dispatch.config import DispatcherConfig
from mesh_dispatch.dispatcher import Dispatcher
from mesh_dispatch.transport import Transport, TransportConnectionError, TransportResponse

ROUTES = [
    {"type": "users", "port": 8101},
    {"type": "mailer-v2", "port": 8102},
]


def response(status, body=None):
    if body is not None and not isinstance(body, str):
        body = json.dumps(body)
    return TransportResponse(status, body)


class ScriptedTransport(Transport):
    """
    Plays back scripted outcomes per logical name.

    An outcome is a TransportResponse, an exception, or a list of those to
    fire as several completion signals for one request. The last outcome of
    a script repeats; names without a script refuse the connection.
    """

    def __init__(self):
        self.requests = []
        self._scripts = {}

    def script(self, name, *outcomes, replace=False):
        if replace:
            self._scripts.pop(name, None)
        self._scripts.setdefault(name, []).extend(outcomes)

    def sent_to(self, name):
        return [r for r in self.requests if r.url.rsplit("/", 1)[-1] == name]

    def send(self, request, on_complete):
        self.requests.append(request)
        script = self._scripts.get(request.url.rsplit("/", 1)[-1])
        if not script:
            outcome = TransportConnectionError("Connection refused")
        elif len(script) > 1:
            outcome = script.pop(0)
        else:
            outcome = script[0]

        loop = asyncio.get_running_loop()
        for signal in outcome if isinstance(outcome, list) else [outcome]:
            if isinstance(signal, TransportResponse):
                loop.call_soon(on_complete, None, signal)
            else:
                loop.call_soon(on_complete, signal, None)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class CallbackRecorder:
    """Callback for ``dispatch`` that remembers every delivery"""

    def __init__(self):
        self.calls = []
        self._event = None

    def __call__(self, error, result):
        self.calls.append((error, result))
        if self._event:
            self._event.set()

    async def wait(self, timeout=1.0):
        if not self.calls:
            self._event = asyncio.Event()
            await asyncio.wait_for(self._event.wait(), timeout)
        # Let any late duplicate deliveries surface
        await asyncio.sleep(0)
        return self.calls[0]


@pytest.fixture
def transport():
    transport = ScriptedTransport()
    transport.script("--routes", response(200, ROUTES))
    return transport


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def config():
    return DispatcherConfig(service_name="test-service")


@pytest.fixture
def dispatcher(config, transport, sleeps):
    return Dispatcher(config, transport=transport, sleep=sleeps)


@pytest.fixture
def callback():
    return CallbackRecorder()
