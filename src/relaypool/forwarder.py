import contextlib
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Union

from .adapters import UpstreamReply
from .errors import RateLimitedError, UpstreamTransportError
from .pool import KeyPool
from .state import KeyEntry
from .types import AuthConfig, PoolConfig

STREAMING_CONTENT_MARKERS = ("text/event-stream", "ndjson")

# Host points at us, not the upstream; framing headers are recomputed by the client
DROPPED_REQUEST_HEADERS = frozenset({"host", "content-length", "transfer-encoding", "connection"})

STREAMING_HEADER_OVERRIDES = (("Cache-Control", "no-cache"), ("Connection", "keep-alive"))


def _get(headers: Iterable[tuple[str, str]], name: str) -> str:
    name = name.lower()
    for k, v in headers:
        if k.lower() == name:
            return v
    return ""


def is_streaming_response(headers: Iterable[tuple[str, str]]) -> bool:
    """Classify a response from its metadata alone; the body is never touched."""
    headers = list(headers)
    content_type = _get(headers, "content-type").lower()
    if any(marker in content_type for marker in STREAMING_CONTENT_MARKERS):
        return True
    codings = [c.strip() for c in _get(headers, "transfer-encoding").lower().split(",")]
    return "chunked" in codings


def header_pairs(headers) -> list[tuple[str, str]]:
    if headers is None:
        return []
    items = headers.items() if hasattr(headers, "items") else headers
    return [(str(k), str(v)) for k, v in items]


@dataclass
class ProxiedResponse:
    status_code: int
    headers: list[tuple[str, str]]
    key_index: int
    content: Union[bytes, None] = None
    stream: Union[AsyncIterator[bytes], None] = None
    _reply: Union[UpstreamReply, None] = field(default=None, repr=False)

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None

    def header(self, name: str) -> Union[str, None]:
        return _get(self.headers, name) or None

    async def aclose(self) -> None:
        """Release the upstream connection. Safe to call more than once."""
        if self.stream is not None and hasattr(self.stream, "aclose"):
            await self.stream.aclose()
        if self._reply is not None:
            await self._reply.aclose()


class Forwarder:
    """Relays one inbound request upstream, rotating keys on 429.

    Retries are an explicit loop bounded by the number of keys active when the
    request arrived: every 429 takes one key out of rotation, so K active keys
    allow at most K - 1 retries before the last 429 is handed back unchanged.
    Transport failures are never retried.
    """

    def __init__(
        self,
        pool: KeyPool,
        upstream,
        config: Union[PoolConfig, None] = None,
        auth_config: Union[AuthConfig, None] = None,
        log_level: Union[int, None] = None,
    ):
        self.pool = pool
        self.upstream = upstream
        self.config = config or PoolConfig()
        self._auth_config = auth_config or AuthConfig()
        self._logger = logging.getLogger("relaypool")
        if log_level is not None:
            with contextlib.suppress(Exception):
                self._logger.setLevel(log_level)

    def outbound_headers(self, headers, entry: KeyEntry) -> list[tuple[str, str]]:
        ac = self._auth_config
        skip = DROPPED_REQUEST_HEADERS | {ac.header.lower()}
        out = [(k, v) for k, v in header_pairs(headers) if k.lower() not in skip]
        if not any(k.lower() == "accept-encoding" for k, _ in out):
            # the body is relayed raw; keep the client library from asking for gzip
            out.append(("Accept-Encoding", "identity"))
        out.append((ac.header, f"{ac.scheme} {entry.credential}".strip()))
        return out

    async def _dispatch(
        self, entry: KeyEntry, method: str, url: str, headers, content: bytes
    ) -> UpstreamReply:
        reply = await self.upstream.send(
            method, url, self.outbound_headers(headers, entry), content
        )
        if reply.status_code == 429:  # noqa: PLR2004, http status code can be constant
            raise RateLimitedError(entry, reply)
        return reply

    async def forward(
        self,
        method: str,
        path: str,
        query: str = "",
        headers=None,
        content: bytes = b"",
    ) -> ProxiedResponse:
        """Forward a request and return the upstream answer, buffered or streamed.

        Raises:
            NoAvailableKeysError: every key is cooling down
            UpstreamTransportError: the upstream could not be reached
        """
        url = self.config.url_for(path, query)
        headers = header_pairs(headers)
        max_attempts = max(1, self.pool.active_count())
        attempt = 0
        while True:
            attempt += 1
            entry = await self.pool.take_key()
            try:
                reply = await self._dispatch(entry, method, url, headers, content)
            except UpstreamTransportError as e:
                self._logger.warning(
                    f"transport error method={method} path={path} key={entry.index}: {e}"
                )
                raise
            except RateLimitedError as rl:
                self.pool.mark_rate_limited(rl.entry)
                if attempt < max_attempts and self.pool.active_count() > 0:
                    self._logger.info(
                        f"429 on key={entry.index}; retrying attempt={attempt + 1}/{max_attempts}"
                    )
                    await rl.reply.aclose()
                    continue
                reply = rl.reply
            return await self._relay(reply, entry)

    async def _relay(self, reply: UpstreamReply, entry: KeyEntry) -> ProxiedResponse:
        if is_streaming_response(reply.headers):
            self._logger.debug(f"streaming response key={entry.index} status={reply.status_code}")
            override = {name.lower() for name, _ in STREAMING_HEADER_OVERRIDES}
            headers = [(k, v) for k, v in reply.headers if k.lower() not in override]
            headers.extend(STREAMING_HEADER_OVERRIDES)
            return ProxiedResponse(
                status_code=reply.status_code,
                headers=headers,
                key_index=entry.index,
                stream=_relay_stream(reply),
                _reply=reply,
            )
        try:
            body = await reply.aread()
        finally:
            await reply.aclose()
        self._logger.debug(f"buffered response key={entry.index} status={reply.status_code}")
        return ProxiedResponse(
            status_code=reply.status_code,
            headers=list(reply.headers),
            key_index=entry.index,
            content=body,
        )


async def _relay_stream(reply: UpstreamReply) -> AsyncIterator[bytes]:
    try:
        async for chunk in reply.aiter_raw():
            yield chunk
    finally:
        await reply.aclose()
