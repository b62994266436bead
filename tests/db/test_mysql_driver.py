"""Tests for the MySQL driver with PyMySQL replaced by fakes."""

from __future__ import annotations

import threading
import time
from typing import Any

import pymysql
import pytest

from xsql.db.mysql import MySQLDriver, MySQLSession, connect_kwargs, parse_dsn
from xsql.db.query import run_query
from xsql.db.registry import ConnOptions
from xsql.db.schema import SchemaOptions
from xsql.errors import ErrorCode, XsqlError


class _Cursor:
    def __init__(self, conn: _Connection) -> None:
        self._conn = conn
        self.description: list[tuple[str, ...]] | None = None

    def __enter__(self) -> _Cursor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def execute(self, sql: str, args: object = None) -> None:
        self._conn.log.append((sql, args))
        if sql.startswith("SELECT"):
            self.description = [("id",), ("name",)]

    def fetchall(self) -> list[tuple[object, ...]]:
        return [(1, "alice")]


class _Connection:
    def __init__(self, *, ping_error: Exception | None = None) -> None:
        self.ping_error = ping_error
        self.log: list[tuple[str, object]] = []
        self.sock: object = "unset"
        self.open = True
        self.rolled_back = 0

    def connect(self, sock: object = None) -> None:
        self.sock = sock

    def ping(self, reconnect: bool = True) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    def thread_id(self) -> int:
        return 42

    def cursor(self) -> _Cursor:
        return _Cursor(self)

    def rollback(self) -> None:
        self.rolled_back += 1

    def close(self) -> None:
        self.open = False


def test_parse_classic_dsn() -> None:
    kwargs = parse_dsn("app:pa:ss@tcp(db.internal:3307)/shop?charset=latin1&parseTime=true")

    assert kwargs == {
        "user": "app",
        "password": "pa:ss",
        "database": "shop",
        "host": "db.internal",
        "port": 3307,
        "charset": "latin1",
    }


def test_parse_unix_socket_dsn() -> None:
    kwargs = parse_dsn("root@unix(/var/run/mysqld.sock)/shop")

    assert kwargs["unix_socket"] == "/var/run/mysqld.sock"
    assert kwargs["user"] == "root"


def test_parse_url_dsn() -> None:
    kwargs = parse_dsn("mysql://app:p%40ss@db:3310/shop")

    assert kwargs == {"user": "app", "password": "p@ss", "database": "shop", "host": "db", "port": 3310}


@pytest.mark.parametrize("dsn", ["app@tcp(db:3306)", "app@tcp(db:port)/shop", "postgres://db/shop"])
def test_invalid_dsn(dsn: str) -> None:
    with pytest.raises(XsqlError) as excinfo:
        parse_dsn(dsn)

    assert excinfo.value.code is ErrorCode.CFG_INVALID


def test_connect_kwargs_defaults() -> None:
    kwargs = connect_kwargs(ConnOptions(user="app", password="pw"))

    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["port"] == 3306
    assert kwargs["charset"] == "utf8mb4"
    assert kwargs["database"] is None
    assert kwargs["autocommit"] is True
    assert kwargs["defer_connect"] is True


@pytest.mark.anyio
async def test_open_connects_directly(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _Connection()
    seen: dict[str, Any] = {}

    def _connect(**kwargs: Any) -> _Connection:
        seen.update(kwargs)
        return conn

    monkeypatch.setattr("xsql.db.mysql.pymysql.connect", _connect)

    await MySQLDriver().open(ConnOptions(host="db", port=3306, user="app", password="hunter2"))

    assert seen["password"] == "hunter2"
    assert conn.sock is None


@pytest.mark.anyio
async def test_open_through_dialer_hands_over_channel(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _Connection()
    dialed: list[str] = []

    class _Dialer:
        def dial(self, network: str, address: str) -> str:
            dialed.append(address)
            return "channel"

    monkeypatch.setattr("xsql.db.mysql.pymysql.connect", lambda **kwargs: conn)

    await MySQLDriver().open(ConnOptions(host="db.internal", port=3306, dialer=_Dialer()))

    assert dialed == ["db.internal:3306"]
    assert conn.sock == "channel"


@pytest.mark.anyio
async def test_open_failure_is_connect_failed(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _Connection(ping_error=OSError("Access denied"))
    monkeypatch.setattr("xsql.db.mysql.pymysql.connect", lambda **kwargs: conn)

    with pytest.raises(XsqlError) as excinfo:
        await MySQLDriver().open(ConnOptions(host="db"))

    assert excinfo.value.code is ErrorCode.DB_CONNECT_FAILED
    assert excinfo.value.details == {"host": "db", "port": 3306}
    assert not conn.open


@pytest.mark.anyio
async def test_session_read_only_transaction_rolls_back() -> None:
    conn = _Connection()
    session = MySQLSession(conn)

    async with session.read_only_transaction():
        columns, rows = await session.fetch("SELECT id, name FROM users")

    assert columns == ["id", "name"]
    assert rows == [(1, "alice")]
    assert conn.log == [("START TRANSACTION READ ONLY", None), ("SELECT id, name FROM users", None)]
    assert conn.rolled_back == 1

    await session.close()
    assert not conn.open


@pytest.mark.anyio
async def test_dump_schema_walks_information_schema(fakes: Any) -> None:
    session = fakes.ScriptedSession(
        [
            ("DATABASE()", [("shop",)]),
            ("key_column_usage", [("fk_user", "user_id", "users", "id", 1)]),
            ("statistics", [("PRIMARY", "id", 1, 1, 1), ("idx_user", "user_id", 0, 0, 1)]),
            ("information_schema.columns", [("id", "int", "NO", None, "", 1), ("user_id", "int", "YES", "0", "owner", 0)]),
            ("information_schema.tables", [("orders", "")]),
        ]
    )

    info = await MySQLDriver().dump_schema(session, SchemaOptions(table_pattern="ord?rs"))

    table = info.to_dict()["tables"][0]
    assert info.database == "shop"
    assert table["schema"] == "shop" and table["name"] == "orders" and "comment" not in table
    assert table["columns"][1] == {
        "name": "user_id",
        "type": "int",
        "nullable": True,
        "default": "0",
        "comment": "owner",
        "primary_key": False,
    }
    assert [index["name"] for index in table["indexes"]] == ["PRIMARY", "idx_user"]
    assert table["foreign_keys"][0]["referenced_table"] == "users"
    tables_call = next(params for sql, params in session.executed if "information_schema.tables" in sql)
    assert tables_call == ("shop", "ord_rs")


class _SleepingCursor(_Cursor):
    """Holds a SELECT until the statement is killed, like ``SELECT SLEEP(n)``."""

    def execute(self, sql: str, args: object = None) -> None:
        super().execute(sql, args)
        if sql.startswith("SELECT") and self._conn.killed.wait(5):
            raise pymysql.err.OperationalError(1317, "Query execution was interrupted")


class _SleepingConnection(_Connection):
    def __init__(self) -> None:
        super().__init__()
        self.killed = threading.Event()

    def cursor(self) -> _Cursor:
        return _SleepingCursor(self)


@pytest.mark.anyio
async def test_timeout_kills_statement_without_waiting_for_it() -> None:
    conn = _SleepingConnection()
    kills: list[int] = []

    def _kill(thread_id: int) -> None:
        kills.append(thread_id)
        conn.killed.set()

    session = MySQLSession(conn, killer=_kill)
    started = time.monotonic()

    with pytest.raises(XsqlError) as excinfo:
        await run_query(session, "SELECT SLEEP(5)", timeout=0.2)

    assert time.monotonic() - started < 1.5
    assert excinfo.value.code is ErrorCode.DB_EXEC_FAILED
    assert excinfo.value.message == "query timed out"
    assert conn.killed.wait(2)
    assert kills == [42]

    await session.close()
    assert not conn.open


@pytest.mark.anyio
async def test_kill_uses_a_second_connection(monkeypatch: pytest.MonkeyPatch) -> None:
    connections = [_Connection(), _Connection()]
    monkeypatch.setattr("xsql.db.mysql.pymysql.connect", lambda **kwargs: connections.pop(0))
    first, second = connections

    session = await MySQLDriver().open(ConnOptions(host="db"))
    await session._call(session._killer, 42)

    assert second.log == [("KILL QUERY 42", None)]
    assert not second.open
    assert first.log == [] and first.open
