import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Union

import anyio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .balancer import KeyBalancer
from .config import Settings
from .errors import (
    ConfigurationError,
    NoAvailableKeysError,
    RelayPoolError,
    UpstreamTransportError,
)
from .forwarder import ProxiedResponse

logger = logging.getLogger("relaypool")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# the server frames the body itself
BUFFERED_SKIP_HEADERS = frozenset(
    {"content-length", "transfer-encoding", "connection", "keep-alive"}
)
STREAMING_SKIP_HEADERS = frozenset({"content-length", "transfer-encoding", "keep-alive"})

ADMIN = "admin"
USER = "user"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse({"error": error, "message": message}, status_code=status_code)


def authenticate(request: Request, settings: Settings) -> Union[str, None]:
    """Return ADMIN, USER or None for the request's bearer token."""
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    token = token.strip()
    if hmac.compare_digest(token.encode(), settings.admin_api_key.encode()):
        return ADMIN
    if hmac.compare_digest(token.encode(), settings.lb_api_key.encode()):
        return USER
    return None


def log_request(request: Request, role: Union[str, None], endpoint: str) -> None:
    client_ip = (
        request.headers.get("x-forwarded-for")
        or request.headers.get("x-real-ip")
        or (request.client.host if request.client else "unknown")
    )
    if role is None:
        ua = request.headers.get("user-agent", "unknown")
        logger.warning(f"unauthorized access ip={client_ip} endpoint={endpoint} ua={ua}")
    else:
        logger.info(f"{role.upper()} ip={client_ip} endpoint={endpoint}")


class RelayStreamingResponse(StreamingResponse):
    """StreamingResponse that always releases the upstream connection.

    Runs on normal completion, on error and when the inbound client goes away
    mid-stream (the cancelled task still reaches the shielded close).
    """

    def __init__(self, proxied: ProxiedResponse):
        super().__init__(proxied.stream, status_code=proxied.status_code)
        for k, v in proxied.headers:
            if k.lower() not in STREAMING_SKIP_HEADERS:
                self.headers.append(k, v)
        self._proxied = proxied

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self._proxied.aclose()


def to_response(proxied: ProxiedResponse) -> Response:
    if proxied.is_streaming:
        return RelayStreamingResponse(proxied)
    response = Response(content=proxied.content or b"", status_code=proxied.status_code)
    for k, v in proxied.headers:
        if k.lower() not in BUFFERED_SKIP_HEADERS:
            response.headers.append(k, v)
    return response


def create_app(settings: Settings, balancer: Union[KeyBalancer, None] = None) -> FastAPI:
    """Build the proxy application.

    When no balancer is given one is built from ``settings`` at startup; either
    way it is closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app_: FastAPI):
        if getattr(app_.state, "balancer", None) is None:
            app_.state.balancer = KeyBalancer.from_settings(settings)
        yield
        await app_.state.balancer.aclose()

    app = FastAPI(title="relaypool", lifespan=lifespan)
    app.state.settings = settings
    app.state.balancer = balancer

    def _balancer(request: Request) -> KeyBalancer:
        return request.app.state.balancer

    def _guard(request: Request, endpoint: str, admin: bool = False):
        role = authenticate(request, settings)
        log_request(request, role, endpoint)
        if role is None:
            return _error(
                401,
                "Unauthorized",
                "Valid API key required. Use Authorization: Bearer <your-key>",
            )
        if admin and role != ADMIN:
            return _error(403, "Forbidden", "Admin API key required for this operation")
        return None

    @app.get("/info")
    async def info():
        return {
            "name": "relaypool",
            "status": "running",
            "authentication": "required",
            "endpoints": {
                "/": "Basic info and stats (requires API key)",
                "/health": "Health check (requires API key)",
                "/stats": "Load balancer statistics (requires API key)",
                "/balance": "Balance check, ?refresh=true to bypass cache (requires API key)",
                "/reload-keys": "Reload API keys (requires admin key)",
                "/*": "Proxy to the upstream API (requires API key)",
            },
        }

    @app.get("/")
    async def root(request: Request):
        denied = _guard(request, "/")
        if denied is not None:
            return denied
        return {"message": "relaypool", "status": "running", "stats": _balancer(request).stats()}

    @app.get("/health")
    async def health(request: Request):
        denied = _guard(request, "/health")
        if denied is not None:
            return denied
        return {"status": "healthy", "timestamp": _timestamp(), "stats": _balancer(request).stats()}

    @app.get("/stats")
    async def stats(request: Request):
        denied = _guard(request, "/stats")
        if denied is not None:
            return denied
        return _balancer(request).stats()

    @app.get("/balance")
    async def balance(request: Request):
        denied = _guard(request, "/balance")
        if denied is not None:
            return denied
        force = request.query_params.get("refresh", "").lower() == "true"
        try:
            snapshot = await _balancer(request).get_total_balance(force_refresh=force)
        except RelayPoolError as e:
            logger.error(f"balance check error: {e}")
            return JSONResponse(
                {"success": False, "error": "Failed to check balance", "message": str(e)},
                status_code=502,
            )
        return {"success": True, "timestamp": _timestamp(), **snapshot.to_dict()}

    @app.post("/reload-keys")
    async def reload_keys(request: Request):
        denied = _guard(request, "/reload-keys", admin=True)
        if denied is not None:
            return denied
        bal = _balancer(request)
        try:
            result = await bal.reload_keys()
        except ConfigurationError as e:
            return JSONResponse(
                {
                    "success": False,
                    "message": str(e),
                    "keyCount": len(bal.pool),
                    "timestamp": _timestamp(),
                },
                status_code=500,
            )
        return {
            "success": True,
            "message": (
                f"Successfully reloaded API keys. Previous: {result.previous_count}, "
                f"New: {result.key_count}"
            ),
            "previousCount": result.previous_count,
            "keyCount": result.key_count,
            "timestamp": _timestamp(),
        }

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, path: str):
        denied = _guard(request, request.url.path)
        if denied is not None:
            return denied
        body = await request.body()
        try:
            proxied = await _balancer(request).forward(
                request.method,
                request.url.path,
                query=request.url.query,
                headers=request.headers,
                content=body,
            )
        except NoAvailableKeysError as e:
            logger.error(f"load balancer error: {e}")
            return _error(503, "Load balancer error", str(e))
        except UpstreamTransportError as e:
            return _error(502, "Upstream error", str(e))
        return to_response(proxied)

    return app
