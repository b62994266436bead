"""MCP tool server exposing xsql to AI assistants."""

from __future__ import annotations

from .server import ServerOptions, Transport, resolve_server_options, serve
from .tools import ToolHandler, build_server

__all__ = ["ServerOptions", "ToolHandler", "Transport", "build_server", "resolve_server_options", "serve"]
