import asyncio
from unittest.mock import MagicMock

import pytest

from mesh_dispatch.guard import CompletionLatch
from mesh_dispatch.transport import AiohttpTransport, TransportConnectionError, TransportRequest


@pytest.mark.asyncio
async def test_unexpected_error_still_completes():
    session = MagicMock()
    session.closed = False
    session.request.side_effect = ValueError("cannot build request")
    transport = AiohttpTransport(session=session)
    latch = CompletionLatch()

    transport.send(TransportRequest("http://localhost:8101/users", timeout=5), latch.signal)

    error, response = await asyncio.wait_for(latch.wait(), 1.0)
    assert response is None
    assert isinstance(error, TransportConnectionError)
    assert "cannot build request" in str(error)


@pytest.mark.asyncio
async def test_close_without_start_leaves_foreign_session_open():
    session = MagicMock()
    transport = AiohttpTransport(session=session)

    await transport.close()

    session.close.assert_not_called()
