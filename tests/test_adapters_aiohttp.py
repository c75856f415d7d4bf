from unittest.mock import AsyncMock

import aiohttp
import pytest

from relaypool import AiohttpUpstream, UpstreamTransportError


class FakeContent:
    def __init__(self, chunks):
        self._chunks = chunks

    async def iter_any(self):
        for chunk in self._chunks:
            yield chunk


class FakeResponse:
    def __init__(self, status=200, headers=None, chunks=()):
        self.status = status
        self.headers = headers or {}
        self.content = FakeContent(list(chunks))
        self.closed = False
        self.released = False

    async def release(self):
        self.released = True
        self.closed = True

    def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_aiohttp_send_and_relay():
    session = AsyncMock()
    session.request.return_value = FakeResponse(
        200, {"Content-Type": "text/event-stream"}, [b"data: 1\n\n", b"", b"data: 2\n\n"]
    )
    async with AiohttpUpstream(session=session) as upstream:
        reply = await upstream.send(
            "POST", "https://upstream.test/v1/chat", [("Authorization", "Bearer T")], b"{}"
        )
        assert reply.status_code == 200
        assert reply.header("content-type") == "text/event-stream"
        assert await reply.aread() == b"data: 1\n\ndata: 2\n\n"
        await reply.aclose()

    args, kwargs = session.request.call_args
    assert args == ("POST", "https://upstream.test/v1/chat")
    assert kwargs["headers"] == [("Authorization", "Bearer T")]
    assert kwargs["data"] == b"{}"
    assert kwargs["allow_redirects"] is False
    # fully read: connection goes back to the pool
    assert session.request.return_value.released
    # caller-owned session is left open
    session.close.assert_not_called()


@pytest.mark.asyncio
async def test_aiohttp_abandoned_stream_drops_connection():
    session = AsyncMock()
    resp = FakeResponse(200, {}, [b"a", b"b", b"c"])
    session.request.return_value = resp
    upstream = AiohttpUpstream(session=session)
    reply = await upstream.send("GET", "https://upstream.test/v1/x", [])
    stream = reply.aiter_raw()
    assert await stream.__anext__() == b"a"
    await reply.aclose()
    assert resp.closed
    assert not resp.released


@pytest.mark.asyncio
async def test_aiohttp_transport_error():
    session = AsyncMock()
    session.request.side_effect = aiohttp.ClientConnectionError("refused")
    upstream = AiohttpUpstream(session=session)
    with pytest.raises(UpstreamTransportError):
        await upstream.send("GET", "https://upstream.test/v1/x", [])
