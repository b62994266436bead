"""Machine-readable description of the CLI for agents (``xsql spec``)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .config import FORMAT_ENV, PROFILE_ENV
from .errors import all_codes
from .output import SCHEMA_VERSION
from .toolserver.server import ADDR_ENV, DEFAULT_HTTP_ADDR, TOKEN_ENV, TRANSPORT_ENV


@dataclass(frozen=True, slots=True)
class FlagSpec:
    name: str
    shorthand: str = ""
    env: str = ""
    default: str = ""
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name}
        for key in ("shorthand", "env", "default", "description"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        return payload


@dataclass(frozen=True, slots=True)
class CommandSpec:
    name: str
    description: str = ""
    flags: tuple[FlagSpec, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name}
        if self.description:
            payload["description"] = self.description
        if self.flags:
            payload["flags"] = [flag.to_dict() for flag in self.flags]
        return payload


GLOBAL_FLAGS = (
    FlagSpec("config", description="Config file path (YAML); default: ./xsql.yaml or $HOME/.config/xsql/xsql.yaml"),
    FlagSpec("profile", shorthand="p", env=PROFILE_ENV, description="Profile name (config: profiles.<name>)"),
    FlagSpec("format", shorthand="f", env=FORMAT_ENV, default="auto", description="Output format: json|yaml|table|csv|auto"),
)
ALLOW_PLAINTEXT = FlagSpec("allow-plaintext", default="false", description="Allow plaintext secrets in config")
SKIP_HOST_KEY = FlagSpec(
    "ssh-skip-known-hosts-check",
    default="false",
    description="Skip SSH known_hosts check (dangerous)",
)


def command_specs() -> list[CommandSpec]:
    return [
        CommandSpec("spec", "Export tool spec for AI/agents", GLOBAL_FLAGS),
        CommandSpec("version", "Print version information", GLOBAL_FLAGS),
        CommandSpec(
            "query",
            "Execute a read-only SQL query",
            GLOBAL_FLAGS
            + (
                FlagSpec("unsafe-allow-write", default="false", description="Bypass read-only check (dangerous)"),
                ALLOW_PLAINTEXT,
                SKIP_HOST_KEY,
            ),
        ),
        CommandSpec("profile list", "List all configured profiles", GLOBAL_FLAGS),
        CommandSpec("profile show", "Show profile details (passwords are masked)", GLOBAL_FLAGS),
        CommandSpec(
            "schema dump",
            "Dump database schema (tables, columns, indexes, foreign keys)",
            GLOBAL_FLAGS
            + (
                FlagSpec("table", description="Table name filter (supports * and ? wildcards)"),
                FlagSpec("include-system", default="false", description="Include system tables"),
                ALLOW_PLAINTEXT,
                SKIP_HOST_KEY,
            ),
        ),
        CommandSpec(
            "proxy",
            "Start a port forwarding proxy (replaces ssh -L)",
            GLOBAL_FLAGS
            + (
                FlagSpec("local-port", default="0", description="Local port to listen on (0 for auto-assign)"),
                FlagSpec("local-host", default="127.0.0.1", description="Local host to bind to"),
                ALLOW_PLAINTEXT,
                SKIP_HOST_KEY,
            ),
        ),
        CommandSpec(
            "mcp server",
            "Run the MCP tool server (stdio or streamable HTTP)",
            GLOBAL_FLAGS
            + (
                FlagSpec("transport", env=TRANSPORT_ENV, default="stdio", description="Transport: stdio|streamable_http"),
                FlagSpec("http-addr", env=ADDR_ENV, default=DEFAULT_HTTP_ADDR, description="Listen address for streamable_http"),
                FlagSpec("http-auth-token", env=TOKEN_ENV, description="Bearer token for streamable_http"),
            ),
        ),
    ]


def build_spec() -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "commands": [command.to_dict() for command in command_specs()],
        "error_codes": [code.value for code in all_codes()],
    }


__all__ = ["CommandSpec", "FlagSpec", "GLOBAL_FLAGS", "build_spec", "command_specs"]
