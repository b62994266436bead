"""Tool-server option resolution and the stdio / streamable-HTTP run loops."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

import uvicorn
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from ..config import MCPConfig
from ..errors import ErrorCode, XsqlError
from ..secret import KeyringAPI, resolve_secret
from .http import build_app

LOG = logging.getLogger(__name__)

TRANSPORT_ENV = "XSQL_MCP_TRANSPORT"
ADDR_ENV = "XSQL_MCP_HTTP_ADDR"
TOKEN_ENV = "XSQL_MCP_HTTP_AUTH_TOKEN"
DEFAULT_HTTP_ADDR = "127.0.0.1:8787"


class Transport(str, Enum):
    STDIO = "stdio"
    STREAMABLE_HTTP = "streamable_http"


@dataclass(frozen=True, slots=True)
class ServerOptions:
    transport: Transport = Transport.STDIO
    http_addr: str = DEFAULT_HTTP_ADDR
    auth_token: str = field(default="", repr=False)


def resolve_server_options(
    config: MCPConfig,
    *,
    cli_transport: str | None = None,
    cli_http_addr: str | None = None,
    cli_auth_token: str | None = None,
    environ: dict[str, str] | None = None,
    keyring_api: KeyringAPI | None = None,
) -> ServerOptions:
    """Apply CLI > ENV > config > default for transport, address and token.

    A config-file token goes through the secret resolver and is honoured in
    plaintext only with ``allow_plaintext_token``.
    """

    env = os.environ if environ is None else environ
    raw_transport = cli_transport or env.get(TRANSPORT_ENV) or config.transport or Transport.STDIO.value
    try:
        transport = Transport(raw_transport)
    except ValueError:
        raise XsqlError(
            ErrorCode.CFG_INVALID,
            "invalid mcp transport (stdio|streamable_http)",
            {"transport": raw_transport},
        ) from None
    addr = cli_http_addr or env.get(ADDR_ENV) or config.http.addr or DEFAULT_HTTP_ADDR

    token = cli_auth_token or env.get(TOKEN_ENV) or ""
    if not token and config.http.auth_token:
        token = resolve_secret(
            config.http.auth_token,
            allow_plaintext=config.http.allow_plaintext_token,
            keyring_api=keyring_api,
        )
    if transport is Transport.STREAMABLE_HTTP and not token:
        raise XsqlError(ErrorCode.CFG_INVALID, "streamable_http transport requires an auth token")
    return ServerOptions(transport=transport, http_addr=addr, auth_token=token)


def split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise XsqlError(ErrorCode.CFG_INVALID, "invalid http address (host:port)", {"addr": addr})
    return host.strip("[]") or "127.0.0.1", int(port)


async def serve_stdio(server: Server) -> None:
    """JSON-RPC over stdin/stdout; logging stays on stderr."""

    LOG.info("MCP server (stdio) ready")
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


async def serve_http(server: Server, options: ServerOptions) -> None:
    host, port = split_addr(options.http_addr)
    app = build_app(server, options.auth_token)
    config = uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False)
    LOG.info("MCP server (streamable_http) listening on %s:%s", host, port)
    await uvicorn.Server(config).serve()


async def serve(server: Server, options: ServerOptions) -> None:
    if options.transport is Transport.STREAMABLE_HTTP:
        await serve_http(server, options)
    else:
        await serve_stdio(server)


__all__ = [
    "ADDR_ENV",
    "DEFAULT_HTTP_ADDR",
    "ServerOptions",
    "TOKEN_ENV",
    "TRANSPORT_ENV",
    "Transport",
    "resolve_server_options",
    "serve",
    "serve_http",
    "serve_stdio",
    "split_addr",
]
