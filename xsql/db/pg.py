"""PostgreSQL-family driver built on asyncpg."""

from __future__ import annotations

import logging
import shlex
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import urlsplit, urlunsplit

import asyncpg

from ..errors import ErrorCode, XsqlError, wrap
from ..proxy import PortForwarder
from . import registry
from .registry import ConnOptions, Row
from .schema import Column, SchemaInfo, SchemaOptions, Table, glob_to_like, group_foreign_keys, group_indexes

LOG = logging.getLogger(__name__)

DEFAULT_PORT = 5432
_KEYWORD_MAP = {
    "host": "host",
    "hostaddr": "host",
    "port": "port",
    "user": "user",
    "password": "password",
    "dbname": "database",
    "sslmode": "ssl",
    "connect_timeout": "timeout",
}


def parse_keyword_dsn(dsn: str) -> dict[str, Any]:
    """Parse a libpq ``key=value`` connection string into asyncpg kwargs."""

    try:
        tokens = shlex.split(dsn)
    except ValueError as exc:
        raise wrap(ErrorCode.CFG_INVALID, "invalid pg dsn", exc) from exc
    kwargs: dict[str, Any] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise XsqlError(ErrorCode.CFG_INVALID, "invalid pg dsn", {"token": key})
        target = _KEYWORD_MAP.get(key)
        if target is None:
            LOG.debug("Ignoring pg dsn parameter %s", key)
            continue
        if target == "port":
            if not value.isdigit():
                raise XsqlError(ErrorCode.CFG_INVALID, "invalid pg dsn port", {"port": value})
            kwargs[target] = int(value)
        elif target == "timeout":
            kwargs[target] = float(value) if value else None
        else:
            kwargs[target] = value
    return {key: value for key, value in kwargs.items() if value is not None}


def connect_kwargs(options: ConnOptions) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if options.dsn:
        if "://" in options.dsn:
            kwargs["dsn"] = options.dsn
        else:
            kwargs.update(parse_keyword_dsn(options.dsn))
    else:
        kwargs["host"] = options.host or "127.0.0.1"
        kwargs["port"] = options.port or DEFAULT_PORT
        if options.user:
            kwargs["user"] = options.user
        if options.password:
            kwargs["password"] = options.password
        if options.database:
            kwargs["database"] = options.database
    kwargs.setdefault("timeout", options.connect_timeout)
    return kwargs


def remote_endpoint(kwargs: dict[str, Any]) -> tuple[str, int]:
    """The server address the connection kwargs point at."""

    if "dsn" in kwargs:
        parts = urlsplit(kwargs["dsn"])
        try:
            port = parts.port
        except ValueError as exc:
            raise wrap(ErrorCode.CFG_INVALID, "invalid pg dsn port", exc) from exc
        return parts.hostname or "127.0.0.1", port or DEFAULT_PORT
    return kwargs.get("host") or "127.0.0.1", int(kwargs.get("port") or DEFAULT_PORT)


def redirect(kwargs: dict[str, Any], host: str, port: int) -> dict[str, Any]:
    """Point the connection kwargs at ``host:port`` (the local tunnel end)."""

    redirected = dict(kwargs)
    if "dsn" in redirected:
        parts = urlsplit(redirected["dsn"])
        userinfo, at, _ = parts.netloc.rpartition("@")
        netloc = f"{userinfo}{at}{host}:{port}"
        redirected["dsn"] = urlunsplit(parts._replace(netloc=netloc))
    else:
        redirected["host"] = host
        redirected["port"] = port
    return redirected


class PostgresSession:
    """One asyncpg connection plus the tunnel it may be riding on."""

    def __init__(self, conn: asyncpg.Connection, forwarder: PortForwarder | None = None) -> None:
        self._conn = conn
        self._forwarder = forwarder

    async def fetch(self, sql: str, *params: object) -> tuple[list[str], list[Row]]:
        statement = await self._conn.prepare(sql)
        columns = [attribute.name for attribute in statement.get_attributes()]
        records = await statement.fetch(*params)
        return columns, [tuple(record) for record in records]

    @asynccontextmanager
    async def read_only_transaction(self) -> AsyncIterator[None]:
        transaction = self._conn.transaction(readonly=True)
        await transaction.start()
        try:
            yield
        finally:
            await transaction.rollback()

    async def close(self) -> None:
        try:
            await self._conn.close()
        finally:
            if self._forwarder is not None:
                await self._forwarder.stop()
                self._forwarder = None


class PostgresDriver:
    """Opens PostgreSQL sessions.

    asyncpg only dials TCP itself, so with a dialer the driver runs a private
    loopback forwarder over it and connects through that.
    """

    async def open(self, options: ConnOptions) -> PostgresSession:
        kwargs = connect_kwargs(options)
        forwarder: PortForwarder | None = None
        try:
            if options.dialer is not None:
                host, port = remote_endpoint(kwargs)
                forwarder = PortForwarder(options.dialer, host, port)
                await forwarder.start()
                local_host, local_port = forwarder.local_endpoint
                kwargs = redirect(kwargs, local_host, local_port)
            conn = await asyncpg.connect(**kwargs)
            try:
                await conn.fetchval("SELECT 1")
            except BaseException:
                await conn.close()
                raise
        except XsqlError as exc:
            if forwarder is not None:
                await forwarder.stop()
            if exc.code is ErrorCode.CFG_INVALID:
                raise
            raise wrap(ErrorCode.DB_CONNECT_FAILED, "failed to connect to pg", exc) from exc
        except Exception as exc:
            if forwarder is not None:
                await forwarder.stop()
            raise wrap(ErrorCode.DB_CONNECT_FAILED, "failed to connect to pg", exc) from exc
        return PostgresSession(conn, forwarder)

    async def dump_schema(self, session: PostgresSession, options: SchemaOptions) -> SchemaInfo:
        _, rows = await session.fetch("SELECT current_database()")
        info = SchemaInfo(database=str(rows[0][0]) if rows else "")
        schemas_sql = _SCHEMAS_SQL
        if not options.include_system:
            schemas_sql += " AND schema_name NOT LIKE 'pg_%'"
        _, schema_rows = await session.fetch(schemas_sql + " ORDER BY schema_name")
        for (schema,) in schema_rows:
            for table in await self._list_tables(session, str(schema), options):
                table.columns = await self._columns(session, table.schema, table.name)
                _, index_rows = await session.fetch(_INDEXES_SQL, table.schema, table.name)
                table.indexes = group_indexes(index_rows)
                _, fk_rows = await session.fetch(_FOREIGN_KEYS_SQL, table.schema, table.name)
                table.foreign_keys = group_foreign_keys(fk_rows)
                info.tables.append(table)
        return info

    async def _list_tables(self, session: PostgresSession, schema: str, options: SchemaOptions) -> list[Table]:
        sql = _TABLES_SQL
        params: list[object] = [schema]
        if options.table_pattern:
            sql += " AND t.table_name LIKE $2"
            params.append(glob_to_like(options.table_pattern))
        sql += " ORDER BY t.table_name"
        _, rows = await session.fetch(sql, *params)
        return [Table(schema=schema, name=str(name), comment=str(comment or "")) for name, comment in rows]

    async def _columns(self, session: PostgresSession, schema: str, table: str) -> list[Column]:
        _, rows = await session.fetch(_COLUMNS_SQL, schema, table)
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


_SCHEMAS_SQL = """
    SELECT schema_name
    FROM information_schema.schemata
    WHERE schema_name NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
"""

_TABLES_SQL = """
    SELECT
        t.table_name,
        obj_description((quote_ident($1) || '.' || quote_ident(t.table_name))::regclass, 'pg_class')
    FROM information_schema.tables t
    WHERE t.table_schema = $1 AND t.table_type = 'BASE TABLE'
"""

_COLUMNS_SQL = """
    SELECT
        c.column_name,
        CASE
            WHEN c.data_type = 'USER-DEFINED' THEN c.udt_name
            WHEN c.character_maximum_length IS NOT NULL THEN
                c.data_type || '(' || c.character_maximum_length || ')'
            WHEN c.numeric_precision IS NOT NULL AND c.numeric_scale IS NOT NULL THEN
                c.data_type || '(' || c.numeric_precision || ',' || c.numeric_scale || ')'
            WHEN c.numeric_precision IS NOT NULL THEN
                c.data_type || '(' || c.numeric_precision || ')'
            ELSE c.data_type
        END,
        c.is_nullable,
        c.column_default,
        col_description((quote_ident(c.table_schema) || '.' || quote_ident(c.table_name))::regclass, c.ordinal_position),
        pk.column_name IS NOT NULL
    FROM information_schema.columns c
    LEFT JOIN (
        SELECT kcu.table_schema, kcu.table_name, kcu.column_name
        FROM information_schema.table_constraints tc
        JOIN information_schema.key_column_usage kcu
            ON tc.constraint_name = kcu.constraint_name
            AND tc.table_schema = kcu.table_schema
        WHERE tc.constraint_type = 'PRIMARY KEY'
    ) pk ON c.table_schema = pk.table_schema
        AND c.table_name = pk.table_name
        AND c.column_name = pk.column_name
    WHERE c.table_schema = $1 AND c.table_name = $2
    ORDER BY c.ordinal_position
"""

_INDEXES_SQL = """
    SELECT
        i.relname,
        a.attname,
        ix.indisunique,
        ix.indisprimary,
        array_position(ix.indkey, a.attnum)
    FROM pg_class t
    JOIN pg_index ix ON t.oid = ix.indrelid
    JOIN pg_class i ON i.oid = ix.indexrelid
    JOIN pg_namespace n ON t.relnamespace = n.oid
    JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
    WHERE n.nspname = $1 AND t.relname = $2
    ORDER BY i.relname, array_position(ix.indkey, a.attnum)
"""

_FOREIGN_KEYS_SQL = """
    SELECT
        tc.constraint_name,
        kcu.column_name,
        ccu.table_name,
        ccu.column_name,
        kcu.ordinal_position
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
        ON tc.constraint_name = kcu.constraint_name
        AND tc.table_schema = kcu.table_schema
    JOIN information_schema.constraint_column_usage ccu
        ON tc.constraint_name = ccu.constraint_name
        AND tc.table_schema = ccu.table_schema
    WHERE tc.constraint_type = 'FOREIGN KEY'
        AND tc.table_schema = $1
        AND tc.table_name = $2
    ORDER BY tc.constraint_name, kcu.ordinal_position
"""

registry.register("pg", PostgresDriver())


__all__ = [
    "DEFAULT_PORT",
    "PostgresDriver",
    "PostgresSession",
    "connect_kwargs",
    "parse_keyword_dsn",
    "redirect",
    "remote_endpoint",
]
