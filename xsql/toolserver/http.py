"""Streamable-HTTP hosting for the tool server, behind a bearer token."""

from __future__ import annotations

import contextlib
import hmac
import logging
from typing import AsyncIterator

from mcp.server.lowlevel import Server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from starlette.applications import Starlette
from starlette.datastructures import Headers
from starlette.middleware import Middleware
from starlette.responses import PlainTextResponse
from starlette.routing import Mount
from starlette.types import ASGIApp, Receive, Scope, Send

LOG = logging.getLogger(__name__)


class BearerAuthMiddleware:
    """Rejects HTTP requests whose ``Authorization`` is not ``Bearer <token>``.

    Comparison is constant-time and the presented token is never logged.
    """

    def __init__(self, app: ASGIApp, token: str) -> None:
        if not token:
            raise ValueError("bearer token must not be empty")
        self.app = app
        self._token = token.encode("utf-8")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        header = Headers(scope=scope).get("authorization")
        if not header:
            await _unauthorized("authorization header is required")(scope, receive, send)
            return
        if not self._matches(header):
            LOG.info("Rejected request with invalid bearer token from %s", _client(scope))
            await _unauthorized("unauthorized")(scope, receive, send)
            return
        await self.app(scope, receive, send)

    def _matches(self, header: str) -> bool:
        scheme, _, presented = header.partition(" ")
        if scheme.lower() != "bearer":
            return False
        return hmac.compare_digest(presented.strip().encode("utf-8"), self._token)


def _unauthorized(message: str) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=401, headers={"WWW-Authenticate": "Bearer"})


def _client(scope: Scope) -> str:
    client = scope.get("client")
    return f"{client[0]}:{client[1]}" if client else "unknown"


def build_app(server: Server, token: str) -> Starlette:
    """One endpoint for every path, JSON responses, no server-side sessions."""

    session_manager = StreamableHTTPSessionManager(app=server, json_response=True, stateless=True)

    async def handle_mcp(scope: Scope, receive: Receive, send: Send) -> None:
        await session_manager.handle_request(scope, receive, send)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            yield

    return Starlette(
        routes=[Mount("/", app=handle_mcp)],
        middleware=[Middleware(BearerAuthMiddleware, token=token)],
        lifespan=lifespan,
    )


__all__ = ["BearerAuthMiddleware", "build_app"]
