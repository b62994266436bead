"""Command-line entry point.

Every invocation writes exactly one envelope to stdout (``proxy`` in table
format and ``mcp server`` excepted) and returns the exit code mapped from the
error taxonomy.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Any, Callable, Sequence, TextIO

from . import app, db
from .config import FORMAT_ENV, Resolved, ResolveOptions, require_profile, resolve
from .errors import ErrorCode, ExitCode, XsqlError, as_xsql_error
from .log import configure_logging
from .output import OutputFormat, Writer, parse_format
from .proxy import PortForwarder
from .spec import build_spec
from .toolserver import ToolHandler, build_server, resolve_server_options, serve

LOG = logging.getLogger(__name__)

PROG = "xsql"
_NO_SSH_PROXY = "profile must have ssh_proxy configured for port forwarding"


class ArgumentParser(argparse.ArgumentParser):
    """Reports usage mistakes as ``CFG_INVALID`` instead of exiting."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise XsqlError(ErrorCode.CFG_INVALID, message, {"reason": "usage"})


@dataclass(frozen=True, slots=True)
class Invocation:
    """What every command handler receives besides its own arguments."""

    resolved: Resolved
    writer: Writer
    format: str

    def write(self, data: Any) -> int:
        self.writer.write_ok(self.format, data)
        return ExitCode.OK


Handler = Callable[[argparse.Namespace, Invocation], int]


# -- commands ---------------------------------------------------------------


def cmd_spec(args: argparse.Namespace, ctx: Invocation) -> int:
    return ctx.write(build_spec())


def cmd_version(args: argparse.Namespace, ctx: Invocation) -> int:
    return ctx.write(app.version_info())


def cmd_profile_list(args: argparse.Namespace, ctx: Invocation) -> int:
    return ctx.write(app.profile_list_data(ctx.resolved.config, ctx.resolved.config_path))


def cmd_profile_show(args: argparse.Namespace, ctx: Invocation) -> int:
    return ctx.write(app.profile_show_data(ctx.resolved.config, ctx.resolved.config_path, args.name))


def _connection_request(args: argparse.Namespace, ctx: Invocation) -> app.ConnectionRequest:
    return app.ConnectionRequest(
        profile=require_profile(ctx.resolved),
        allow_plaintext=args.allow_plaintext,
        skip_host_key_check=args.ssh_skip_known_hosts_check,
    )


def cmd_query(args: argparse.Namespace, ctx: Invocation) -> int:
    request = _connection_request(args, ctx)
    result = asyncio.run(
        app.query(
            request,
            args.sql,
            unsafe_allow_write=args.unsafe_allow_write or request.profile.unsafe_allow_write,
        )
    )
    return ctx.write(result)


def cmd_schema_dump(args: argparse.Namespace, ctx: Invocation) -> int:
    request = _connection_request(args, ctx)
    options = db.SchemaOptions(table_pattern=args.table, include_system=args.include_system)
    return ctx.write(asyncio.run(app.dump_schema(request, options)))


def cmd_proxy(args: argparse.Namespace, ctx: Invocation) -> int:
    request = _connection_request(args, ctx)
    asyncio.run(run_proxy(request, ctx, local_host=args.local_host, local_port=args.local_port))
    return ExitCode.OK


async def run_proxy(
    request: app.ConnectionRequest,
    ctx: Invocation,
    *,
    local_host: str,
    local_port: int,
    stop: asyncio.Event | None = None,
) -> None:
    """Forward a local port to the profile's database host until signalled."""

    profile = request.profile
    proxy_config = profile.ssh_config
    if proxy_config is None:
        raise XsqlError(ErrorCode.CFG_INVALID, _NO_SSH_PROXY)
    credentials = app.Credentials(request=request, passphrase=app.resolve_passphrase(request))
    tunnel = await app.open_tunnel(credentials)
    if tunnel is None:
        raise XsqlError(ErrorCode.CFG_INVALID, _NO_SSH_PROXY)
    try:
        forwarder = PortForwarder(
            tunnel,
            profile.host or "127.0.0.1",
            profile.port,
            local_host=local_host,
            local_port=local_port,
        )
        async with forwarder:
            _announce_proxy(ctx, forwarder, proxy_config.host, proxy_config.port)
            await _wait_for_shutdown(stop)
            print("\nShutting down proxy...", file=ctx.writer.err)
    finally:
        tunnel.close()


def _announce_proxy(ctx: Invocation, forwarder: PortForwarder, ssh_host: str, ssh_port: int) -> None:
    name = ctx.resolved.profile_name
    if ctx.writer.resolve(ctx.format) is OutputFormat.TABLE:
        err = ctx.writer.err
        print("Proxy started", file=err)
        print(f"  Local:   {forwarder.local_address}", file=err)
        print(f"  Remote:  {forwarder.remote_address} (via {ssh_host})", file=err)
        print(f"  Profile: {name}", file=err)
        print("\nPress Ctrl+C to stop", file=err)
        err.flush()
        return
    ctx.write(
        {
            "local_address": forwarder.local_address,
            "remote_address": forwarder.remote_address,
            "ssh_proxy": f"{ssh_host}:{ssh_port}",
            "profile": name,
        }
    )


async def _wait_for_shutdown(stop: asyncio.Event | None = None) -> None:
    event = stop if stop is not None else asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C raises instead.
            continue
        installed.append(sig)
    try:
        await event.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def cmd_mcp_server(args: argparse.Namespace, ctx: Invocation) -> int:
    options = resolve_server_options(
        ctx.resolved.config.mcp,
        cli_transport=args.transport,
        cli_http_addr=args.http_addr,
        cli_auth_token=args.http_auth_token,
    )
    handler = ToolHandler(ctx.resolved.config, ctx.resolved.config_path)
    asyncio.run(serve(build_server(handler), options))
    return ExitCode.OK


# -- parser -----------------------------------------------------------------


def _global_flags(parser: argparse.ArgumentParser, default: Any) -> None:
    parser.add_argument("--config", default=default, help="config file path (YAML)")
    parser.add_argument("-p", "--profile", default=default, help="profile name (env: XSQL_PROFILE)")
    parser.add_argument(
        "-f",
        "--format",
        default=default,
        help="output format: json|yaml|table|csv|auto (env: XSQL_FORMAT)",
    )


def _connection_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--allow-plaintext", action="store_true", help="allow plaintext secrets in config")
    parser.add_argument(
        "--ssh-skip-known-hosts-check",
        action="store_true",
        help="skip SSH known_hosts check (dangerous)",
    )


def build_parser() -> ArgumentParser:
    """Build the command tree; global flags work before or after a sub-command."""

    # Sub-commands accept the global flags too; SUPPRESS keeps them from
    # overwriting values given before the sub-command.
    common = ArgumentParser(add_help=False)
    _global_flags(common, argparse.SUPPRESS)

    parser = ArgumentParser(prog=PROG, description="Query MySQL and PostgreSQL safely, for humans and agents.")
    _global_flags(parser, None)
    commands = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    def command(group: Any, name: str, handler: Handler, help_text: str) -> ArgumentParser:
        sub = group.add_parser(name, parents=[common], help=help_text, description=help_text)
        sub.set_defaults(handler=handler)
        return sub

    command(commands, "spec", cmd_spec, "Export tool spec for AI/agents")
    command(commands, "version", cmd_version, "Print version information")

    query = command(commands, "query", cmd_query, "Execute a read-only SQL query")
    query.add_argument("sql", help="SQL statement")
    query.add_argument("--unsafe-allow-write", action="store_true", help="bypass read-only check (dangerous)")
    _connection_flags(query)

    profile = commands.add_parser("profile", parents=[common], help="Profile management")
    profiles = profile.add_subparsers(dest="profile_command", metavar="COMMAND", required=True)
    command(profiles, "list", cmd_profile_list, "List all configured profiles")
    show = command(profiles, "show", cmd_profile_show, "Show profile details (passwords are masked)")
    show.add_argument("name", help="profile name")

    schema = commands.add_parser("schema", parents=[common], help="Database schema operations")
    schemas = schema.add_subparsers(dest="schema_command", metavar="COMMAND", required=True)
    dump = command(schemas, "dump", cmd_schema_dump, "Dump database schema (tables, columns, indexes, foreign keys)")
    dump.add_argument("--table", default="", help="table name filter (supports * and ? wildcards)")
    dump.add_argument("--include-system", action="store_true", help="include system tables")
    _connection_flags(dump)

    proxy = command(commands, "proxy", cmd_proxy, "Start a port forwarding proxy (replaces ssh -L)")
    proxy.add_argument("--local-port", type=int, default=0, help="local port to listen on (0 for auto-assign)")
    proxy.add_argument("--local-host", default="127.0.0.1", help="local host to bind to")
    _connection_flags(proxy)

    mcp = commands.add_parser("mcp", parents=[common], help="MCP tool server")
    servers = mcp.add_subparsers(dest="mcp_command", metavar="COMMAND", required=True)
    server = command(servers, "server", cmd_mcp_server, "Run the MCP tool server (stdio or streamable HTTP)")
    server.add_argument("--transport", default=None, help="transport: stdio|streamable_http")
    server.add_argument("--http-addr", default=None, help="listen address for streamable_http")
    server.add_argument("--http-auth-token", default=None, help="bearer token for streamable_http")

    return parser


# -- entry point ------------------------------------------------------------


def _usable_format(value: str | None) -> str:
    """Fall back to ``auto`` when the requested format is itself the error."""

    try:
        return parse_format(value).value
    except XsqlError:
        return OutputFormat.AUTO.value


def main(argv: Sequence[str] | None = None, *, stdout: TextIO | None = None, stderr: TextIO | None = None) -> int:
    out = stdout or sys.stdout
    err = stderr or sys.stderr
    configure_logging(err)
    writer = Writer(out, err)
    fmt: str | None = os.environ.get(FORMAT_ENV) or None
    try:
        try:
            args = build_parser().parse_args(argv)
        except SystemExit as exc:
            # --help
            return int(exc.code or 0)
        fmt = args.format or fmt
        resolved = resolve(
            ResolveOptions.from_environ(
                config_path=args.config,
                cli_profile=args.profile,
                cli_format=args.format,
            )
        )
        fmt = resolved.format
        parse_format(fmt)
        return int(args.handler(args, Invocation(resolved=resolved, writer=writer, format=fmt)))
    except KeyboardInterrupt:
        LOG.info("Interrupted")
        return ExitCode.OK
    except Exception as exc:
        error = as_xsql_error(exc)
        if error.code is ErrorCode.INTERNAL:
            LOG.debug("Unexpected failure", exc_info=exc)
        writer.write_error(_usable_format(fmt), error)
        return int(error.exit_code)


__all__ = ["ArgumentParser", "Invocation", "build_parser", "main", "run_proxy"]
