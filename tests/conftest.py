"""Shared fakes: an in-memory keychain and a scripted database driver."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

import pytest

from xsql.db import registry
from xsql.db.registry import ConnOptions
from xsql.db.schema import SchemaInfo, SchemaOptions
from xsql.secret import SecretLookupError


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeKeyring:
    def __init__(self, entries: dict[str, str] | None = None) -> None:
        self.entries = dict(entries or {})
        self.lookups: list[str] = []

    def get(self, account: str) -> str:
        self.lookups.append(account)
        try:
            return self.entries[account]
        except KeyError:
            raise SecretLookupError(f"no entry for {account}") from None

    def set(self, account: str, value: str) -> None:
        self.entries[account] = value

    def delete(self, account: str) -> None:
        self.entries.pop(account, None)


class FakeSession:
    def __init__(
        self,
        columns: list[str] | None = None,
        rows: list[tuple[object, ...]] | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.columns = columns if columns is not None else ["n"]
        self.rows = rows if rows is not None else [(1,)]
        self.error = error
        self.delay = delay
        self.executed: list[tuple[str, tuple[object, ...]]] = []
        self.transactions = 0
        self.rollbacks = 0
        self.in_transaction = False
        self.closed = False

    async def fetch(self, sql: str, *params: object) -> tuple[list[str], list[tuple[object, ...]]]:
        self.executed.append((sql, params))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.columns), list(self.rows)

    @asynccontextmanager
    async def read_only_transaction(self) -> AsyncIterator[None]:
        self.transactions += 1
        self.in_transaction = True
        try:
            yield
        finally:
            self.in_transaction = False
            self.rollbacks += 1

    async def close(self) -> None:
        self.closed = True


class ScriptedSession(FakeSession):
    """Answers each statement with the rows of the first matching needle."""

    def __init__(self, script: list[tuple[str, list[tuple[object, ...]]]]) -> None:
        super().__init__()
        self.script = script

    async def fetch(self, sql: str, *params: object) -> tuple[list[str], list[tuple[object, ...]]]:
        self.executed.append((sql, params))
        for needle, rows in self.script:
            if needle in sql:
                return [], list(rows)
        return [], []


class FakeDriver:
    def __init__(self, session: FakeSession | None = None, *, error: Exception | None = None) -> None:
        self.session = session or FakeSession()
        self.error = error
        self.opened: list[ConnOptions] = []

    async def open(self, options: ConnOptions) -> FakeSession:
        self.opened.append(options)
        if self.error is not None:
            raise self.error
        return self.session


class FakeSchemaDriver(FakeDriver):
    def __init__(self, info: SchemaInfo, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.info = info
        self.schema_requests: list[SchemaOptions] = []

    async def dump_schema(self, session: FakeSession, options: SchemaOptions) -> SchemaInfo:
        self.schema_requests.append(options)
        return self.info


@pytest.fixture
def keyring_store(monkeypatch: pytest.MonkeyPatch) -> FakeKeyring:
    """Replace the OS keychain for everything that resolves secrets."""

    store = FakeKeyring()
    monkeypatch.setattr("xsql.secret.default_keyring", lambda platform=None: store)
    return store


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession(columns=["id", "name"], rows=[(1, "alice"), (2, None)])


@pytest.fixture
def install_driver(monkeypatch: pytest.MonkeyPatch) -> Callable[[str, FakeDriver], FakeDriver]:
    """Register a fake under a driver name for the duration of one test."""

    def _install(name: str, driver: FakeDriver) -> FakeDriver:
        monkeypatch.setitem(registry._DRIVERS, name, driver)
        return driver

    return _install


@pytest.fixture
def fakes() -> type:
    """Expose the fake classes to test modules in sub-directories."""

    class _Fakes:
        Keyring = FakeKeyring
        Session = FakeSession
        ScriptedSession = ScriptedSession
        Driver = FakeDriver
        SchemaDriver = FakeSchemaDriver

    return _Fakes


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[[str], Path]:
    def _write(text: str, name: str = "xsql.yaml") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write
