import asyncio
import contextlib
from collections.abc import AsyncIterator

from .errors import UpstreamTransportError

DEFAULT_CONNECT_TIMEOUT = 10.0


class UpstreamReply:
    """Library-neutral view of one upstream response.

    The body is exposed only as raw (undecoded) bytes so it can be relayed
    byte-for-byte alongside the upstream's own Content-Encoding header.
    """

    status_code: int
    headers: list[tuple[str, str]]

    def header(self, name: str) -> str | None:
        name = name.lower()
        for k, v in self.headers:
            if k.lower() == name:
                return v
        return None

    def aiter_raw(self) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def aread(self) -> bytes:
        return b"".join([chunk async for chunk in self.aiter_raw()])

    async def aclose(self) -> None:
        raise NotImplementedError


# ---------- httpx (default) ----------
class _HttpxReply(UpstreamReply):
    def __init__(self, response):
        self._response = response
        self.status_code = response.status_code
        self.headers = list(response.headers.multi_items())

    async def aiter_raw(self):
        import httpx  # noqa: PLC0415

        try:
            async for chunk in self._response.aiter_raw():
                if chunk:
                    yield chunk
        except httpx.TransportError as e:
            raise UpstreamTransportError(f"upstream stream broke: {type(e).__name__}: {e}") from e

    async def aclose(self):
        await self._response.aclose()


class HttpxUpstream:
    def __init__(self, client=None, timeout_seconds: float | None = 600.0):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self._internal_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    def _get_client(self):
        if self.client is not None:
            return self.client
        if self._internal_client is None:
            import httpx  # noqa: PLC0415

            self._internal_client = httpx.AsyncClient(
                timeout=httpx.Timeout(DEFAULT_CONNECT_TIMEOUT, read=self.timeout_seconds),
                follow_redirects=False,
            )
        return self._internal_client

    async def send(self, method: str, url: str, headers, content: bytes = b"") -> UpstreamReply:
        import httpx  # noqa: PLC0415

        client = self._get_client()
        request = client.build_request(method, url, headers=headers, content=content or None)
        try:
            response = await client.send(request, stream=True)
        except (httpx.TransportError, httpx.TimeoutException) as e:
            raise UpstreamTransportError(f"{type(e).__name__}: {e}") from e
        return _HttpxReply(response)

    async def aclose(self):
        if self._internal_client is not None:
            with contextlib.suppress(Exception):
                await self._internal_client.aclose()
            self._internal_client = None


# ---------- aiohttp ----------
class _AiohttpReply(UpstreamReply):
    def __init__(self, response):
        self._response = response
        self._exhausted = False
        self.status_code = response.status
        self.headers = list(response.headers.items())

    async def aiter_raw(self):
        import aiohttp  # noqa: PLC0415

        try:
            async for chunk in self._response.content.iter_any():
                if chunk:
                    yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamTransportError(f"upstream stream broke: {type(e).__name__}: {e}") from e
        self._exhausted = True

    async def aclose(self):
        if self._response.closed:
            return
        if self._exhausted:
            # body fully read: hand the connection back to the pool
            await self._response.release()
        else:
            # abandoned mid-body: drop the connection
            self._response.close()


class AiohttpUpstream:
    def __init__(self, session=None, timeout_seconds: float | None = 600.0):
        self.session = session
        self.timeout_seconds = timeout_seconds
        self._own_session = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    def _get_session(self):
        if self.session is None:
            import aiohttp  # noqa: PLC0415

            self.session = aiohttp.ClientSession(
                auto_decompress=False,
                timeout=aiohttp.ClientTimeout(
                    total=None,
                    sock_connect=DEFAULT_CONNECT_TIMEOUT,
                    sock_read=self.timeout_seconds,
                ),
            )
            self._own_session = True
        return self.session

    async def send(self, method: str, url: str, headers, content: bytes = b"") -> UpstreamReply:
        import aiohttp  # noqa: PLC0415

        session = self._get_session()
        try:
            resp = await session.request(
                method, url, headers=headers, data=content or None, allow_redirects=False
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamTransportError(f"{type(e).__name__}: {e}") from e
        return _AiohttpReply(resp)

    async def aclose(self):
        if self._own_session and self.session is not None:
            await self.session.close()
            self.session = None
            self._own_session = False


def make_upstream(name: str = "httpx", timeout_seconds: float | None = 600.0):
    name = (name or "httpx").lower()
    if name == "httpx":
        return HttpxUpstream(timeout_seconds=timeout_seconds)
    if name == "aiohttp":
        return AiohttpUpstream(timeout_seconds=timeout_seconds)
    raise ValueError("Unknown upstream client. Use 'httpx' or 'aiohttp'.")
