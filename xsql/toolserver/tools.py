"""MCP tools: ``query``, ``profile_list`` and ``profile_show``."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from mcp import types
from mcp.server.lowlevel import Server

from .. import __version__, app
from ..config import ConfigFile, resolve_profile
from ..db import DEFAULT_QUERY_TIMEOUT
from ..errors import ErrorCode, XsqlError, as_xsql_error
from ..output import error_envelope, ok_envelope
from ..secret import KeyringAPI

LOG = logging.getLogger(__name__)

SERVER_NAME = "xsql"


class ToolHandler:
    """Answers tool calls against one loaded config.

    Tool schemas enumerate the config's profile names, so a handler is built
    per config and never reloads it.
    """

    def __init__(
        self,
        config: ConfigFile,
        config_path: str = "",
        *,
        keyring_api: KeyringAPI | None = None,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
    ) -> None:
        self._config = config
        self._config_path = config_path
        self._keyring = keyring_api
        self._query_timeout = query_timeout

    def _profile_property(self, description: str) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": "string", "description": description}
        names = self._config.profile_names()
        if names:
            schema["enum"] = names
        return schema

    def list_tools(self) -> list[types.Tool]:
        return [
            types.Tool(
                name="query",
                description="Execute a SQL query against a configured profile (read-only unless the profile allows writes)",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "sql": {"type": "string", "description": "SQL statement to execute"},
                        "profile": self._profile_property("Profile to run the query against"),
                    },
                    "required": ["sql", "profile"],
                },
            ),
            types.Tool(
                name="profile_list",
                description="List configured profiles",
                inputSchema={"type": "object", "properties": {}},
            ),
            types.Tool(
                name="profile_show",
                description="Show profile details (secrets are masked)",
                inputSchema={
                    "type": "object",
                    "properties": {"name": self._profile_property("Profile name")},
                    "required": ["name"],
                },
            ),
        ]

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None) -> types.CallToolResult:
        """Dispatch a tool call; failures come back as ``isError`` envelopes."""

        args = dict(arguments or {})
        try:
            if name == "query":
                data: Any = await self._query(args)
            elif name == "profile_list":
                data = app.profile_list_data(self._config, self._config_path)
            elif name == "profile_show":
                data = app.profile_show_data(self._config, self._config_path, _required(args, "name"))
            else:
                raise XsqlError(ErrorCode.CFG_INVALID, f"unknown tool: {name}", {"tool": name})
        except Exception as exc:
            err = as_xsql_error(exc)
            LOG.warning("Tool %s failed: %s", name, err.code.value)
            return _result(error_envelope(err), is_error=True)
        return _result(ok_envelope(data), is_error=False)

    async def _query(self, args: dict[str, Any]) -> Any:
        sql = _required(args, "sql")
        profile_name = _required(args, "profile")
        profile = resolve_profile(self._config, profile_name)
        if not profile.db:
            raise XsqlError(ErrorCode.CFG_INVALID, "db type is required (mysql|pg)", {"profile": profile_name})
        request = app.ConnectionRequest(profile=profile, allow_plaintext=profile.allow_plaintext)
        return await app.query(
            request,
            sql,
            unsafe_allow_write=profile.unsafe_allow_write,
            timeout=self._query_timeout,
            keyring_api=self._keyring,
        )


def _required(args: Mapping[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise XsqlError(ErrorCode.CFG_INVALID, f"{key} is required", {"argument": key})
    return value


def _result(envelope: Mapping[str, Any], *, is_error: bool) -> types.CallToolResult:
    text = json.dumps(envelope, ensure_ascii=False, indent=2)
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)], isError=is_error)


def build_server(handler: ToolHandler) -> Server:
    """Wire ``handler`` into a low-level MCP server named ``xsql``."""

    server: Server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return handler.list_tools()

    # Arguments are checked by the handler so bad input still yields an envelope.
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        return await handler.call_tool(name, arguments)

    return server


__all__ = ["SERVER_NAME", "ToolHandler", "build_server"]
