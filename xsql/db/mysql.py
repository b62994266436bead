"""MySQL-family driver built on PyMySQL."""

from __future__ import annotations

import asyncio
import functools
import logging
import re
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable
from urllib.parse import parse_qsl, unquote, urlsplit

import pymysql

from ..errors import ErrorCode, XsqlError, wrap
from . import registry
from .registry import ConnOptions, Row
from .schema import Column, SchemaInfo, SchemaOptions, Table, glob_to_like, group_foreign_keys, group_indexes

LOG = logging.getLogger(__name__)

DEFAULT_PORT = 3306
# How long close() waits for a killed statement to give the connection back.
CLOSE_WAIT = 2.0
_NET_RE = re.compile(r"(?P<net>\w+)(?:\((?P<addr>[^)]*)\))?")


def parse_dsn(dsn: str) -> dict[str, Any]:
    """Parse ``mysql://`` URLs and ``user:pass@tcp(host:port)/db?k=v`` DSNs."""

    if "://" in dsn:
        return _parse_url_dsn(dsn)
    slash = dsn.rfind("/")
    if slash < 0:
        raise XsqlError(ErrorCode.CFG_INVALID, "invalid mysql dsn: missing '/dbname'")
    head, tail = dsn[:slash], dsn[slash + 1 :]
    database, _, query = tail.partition("?")
    at = head.rfind("@")
    creds, address = (head[:at], head[at + 1 :]) if at >= 0 else ("", head)
    user, _, password = creds.partition(":")
    kwargs: dict[str, Any] = {"user": user, "password": password, "database": database}
    if address:
        match = _NET_RE.fullmatch(address)
        if match is None:
            raise XsqlError(ErrorCode.CFG_INVALID, "invalid mysql dsn address", {"address": address})
        target = match.group("addr") or ""
        if match.group("net") == "unix":
            kwargs["unix_socket"] = target
        elif target:
            host, sep, port = target.rpartition(":")
            if sep:
                if not port.isdigit():
                    raise XsqlError(ErrorCode.CFG_INVALID, "invalid mysql dsn port", {"address": address})
                kwargs["host"], kwargs["port"] = host, int(port)
            else:
                kwargs["host"] = target
    kwargs.update(_dsn_params(query))
    return kwargs


def _parse_url_dsn(dsn: str) -> dict[str, Any]:
    parts = urlsplit(dsn)
    if parts.scheme not in ("mysql", "mariadb"):
        raise XsqlError(ErrorCode.CFG_INVALID, "invalid mysql dsn scheme", {"scheme": parts.scheme})
    try:
        port = parts.port
    except ValueError as exc:
        raise wrap(ErrorCode.CFG_INVALID, "invalid mysql dsn port", exc) from exc
    kwargs: dict[str, Any] = {
        "user": unquote(parts.username or ""),
        "password": unquote(parts.password or ""),
        "database": unquote(parts.path.lstrip("/")),
    }
    if parts.hostname:
        kwargs["host"] = parts.hostname
    if port:
        kwargs["port"] = port
    kwargs.update(_dsn_params(parts.query))
    return kwargs


def _dsn_params(query: str) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key == "charset":
            params["charset"] = value
        else:
            LOG.debug("Ignoring mysql dsn parameter %s", key)
    return params


def connect_kwargs(options: ConnOptions) -> dict[str, Any]:
    if options.dsn:
        kwargs = parse_dsn(options.dsn)
    else:
        kwargs = {
            "host": options.host or "127.0.0.1",
            "port": options.port or DEFAULT_PORT,
            "user": options.user,
            "password": options.password,
            "database": options.database,
        }
    kwargs.setdefault("host", "127.0.0.1")
    kwargs.setdefault("port", DEFAULT_PORT)
    kwargs.setdefault("charset", "utf8mb4")
    if not kwargs.get("database"):
        kwargs["database"] = None
    kwargs.update(autocommit=True, connect_timeout=options.connect_timeout, defer_connect=True)
    return kwargs


def _in_background(func: Callable[..., None], *args: object) -> None:
    def _run() -> None:
        try:
            func(*args)
        except Exception:
            LOG.warning("Background mysql cleanup failed", exc_info=True)

    threading.Thread(target=_run, name="xsql-mysql-cleanup", daemon=True).start()


class MySQLSession:
    """Wraps one PyMySQL connection; blocking calls run in worker threads.

    A worker thread cannot be interrupted, so cancelling a call asks the
    server to kill the running statement (through ``killer``, which gets the
    connection id) and leaves cleanup that needs the connection to a
    background thread. The cancelled caller never waits for the statement.
    """

    def __init__(self, conn: Any, killer: Callable[[int], None] | None = None) -> None:
        self._conn = conn
        self._lock = threading.Lock()
        self._killer = killer

    async def _call(self, func: Callable[..., Any], *args: object) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except asyncio.CancelledError:
            self.interrupt()
            raise

    def interrupt(self) -> None:
        """Kill the statement this connection is running, without waiting."""

        if self._killer is None:
            return
        thread_id = self._conn.thread_id()
        LOG.debug("Killing query on mysql connection %s", thread_id)
        _in_background(self._killer, thread_id)

    async def fetch(self, sql: str, *params: object) -> tuple[list[str], list[Row]]:
        return await self._call(self._fetch_sync, sql, params)

    def _fetch_sync(self, sql: str, params: tuple[object, ...]) -> tuple[list[str], list[Row]]:
        with self._lock, self._conn.cursor() as cursor:
            # No args means PyMySQL leaves '%' in the statement alone.
            cursor.execute(sql, params or None)
            if cursor.description is None:
                return [], []
            columns = [str(item[0]) for item in cursor.description]
            return columns, [tuple(row) for row in cursor.fetchall()]

    def _run_sync(self, sql: str) -> None:
        with self._lock, self._conn.cursor() as cursor:
            cursor.execute(sql)

    def _rollback_sync(self) -> None:
        with self._lock:
            if self._conn.open:
                self._conn.rollback()

    @asynccontextmanager
    async def read_only_transaction(self) -> AsyncIterator[None]:
        await self._call(self._run_sync, "START TRANSACTION READ ONLY")
        cancelled = False
        try:
            yield
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            if cancelled:
                # The interrupted statement may still hold the connection.
                _in_background(self._rollback_sync)
            else:
                await asyncio.to_thread(self._rollback_sync)

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)

    def _close_sync(self) -> None:
        if not self._lock.acquire(timeout=CLOSE_WAIT):
            LOG.warning("mysql connection is still busy; closing it once the statement ends")
            _in_background(self._close_when_idle)
            return
        try:
            if self._conn.open:
                self._conn.close()
        finally:
            self._lock.release()

    def _close_when_idle(self) -> None:
        with self._lock:
            if self._conn.open:
                self._conn.close()


class MySQLDriver:
    """Opens MySQL sessions, optionally over a dialer-provided stream."""

    async def open(self, options: ConnOptions) -> MySQLSession:
        kwargs = connect_kwargs(options)
        try:
            conn = await asyncio.to_thread(self._connect_sync, kwargs, options)
        except Exception as exc:
            raise wrap(
                ErrorCode.DB_CONNECT_FAILED,
                "failed to connect to mysql",
                exc,
                {"host": kwargs.get("host"), "port": kwargs.get("port")},
            ) from exc
        return MySQLSession(conn, functools.partial(self._kill_sync, kwargs, options))

    def _kill_sync(self, kwargs: dict[str, Any], options: ConnOptions, thread_id: int) -> None:
        """Abort ``thread_id``'s statement from a short-lived second connection."""

        conn = self._connect_sync(dict(kwargs), options)
        try:
            with conn.cursor() as cursor:
                cursor.execute(f"KILL QUERY {int(thread_id)}")
        finally:
            conn.close()

    def _connect_sync(self, kwargs: dict[str, Any], options: ConnOptions) -> Any:
        conn = pymysql.connect(**kwargs)
        sock = None
        if options.dialer is not None:
            sock = options.dialer.dial("tcp", f"{kwargs['host']}:{kwargs['port']}")
        conn.connect(sock)
        try:
            conn.ping(reconnect=False)
        except Exception:
            conn.close()
            raise
        return conn

    async def dump_schema(self, session: MySQLSession, options: SchemaOptions) -> SchemaInfo:
        _, rows = await session.fetch("SELECT DATABASE()")
        database = str(rows[0][0]) if rows and rows[0][0] is not None else ""
        info = SchemaInfo(database=database)
        for table in await self._list_tables(session, database, options):
            table.columns = await self._columns(session, database, table.name)
            _, index_rows = await session.fetch(_INDEXES_SQL, database, table.name)
            table.indexes = group_indexes(index_rows)
            _, fk_rows = await session.fetch(_FOREIGN_KEYS_SQL, database, table.name)
            table.foreign_keys = group_foreign_keys(fk_rows)
            info.tables.append(table)
        return info

    async def _list_tables(self, session: MySQLSession, database: str, options: SchemaOptions) -> list[Table]:
        sql = _TABLES_SQL
        params: list[object] = [database]
        if options.table_pattern:
            sql += " AND table_name LIKE %s"
            params.append(glob_to_like(options.table_pattern))
        sql += " ORDER BY table_name"
        _, rows = await session.fetch(sql, *params)
        return [Table(schema=database, name=str(name), comment=str(comment or "")) for name, comment in rows]

    async def _columns(self, session: MySQLSession, database: str, table: str) -> list[Column]:
        _, rows = await session.fetch(_COLUMNS_SQL, database, table)
        return [
            Column(
                name=str(name),
                type=str(column_type),
                nullable=str(nullable).upper() == "YES",
                default=None if default is None else str(default),
                comment=str(comment or ""),
                primary_key=bool(is_primary),
            )
            for name, column_type, nullable, default, comment, is_primary in rows
        ]


_TABLES_SQL = """
    SELECT table_name, table_comment
    FROM information_schema.tables
    WHERE table_schema = %s AND table_type = 'BASE TABLE'
"""

_COLUMNS_SQL = """
    SELECT
        column_name,
        column_type,
        is_nullable,
        column_default,
        column_comment,
        CASE WHEN column_key = 'PRI' THEN 1 ELSE 0 END AS is_primary
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = %s
    ORDER BY ordinal_position
"""

_INDEXES_SQL = """
    SELECT
        index_name,
        column_name,
        NOT non_unique AS is_unique,
        index_name = 'PRIMARY' AS is_primary,
        seq_in_index
    FROM information_schema.statistics
    WHERE table_schema = %s AND table_name = %s
    ORDER BY index_name, seq_in_index
"""

_FOREIGN_KEYS_SQL = """
    SELECT
        constraint_name,
        column_name,
        referenced_table_name,
        referenced_column_name,
        ordinal_position
    FROM information_schema.key_column_usage
    WHERE table_schema = %s
      AND table_name = %s
      AND referenced_table_name IS NOT NULL
    ORDER BY constraint_name, ordinal_position
"""

registry.register("mysql", MySQLDriver())


__all__ = ["DEFAULT_PORT", "MySQLDriver", "MySQLSession", "connect_kwargs", "parse_dsn"]
