"""Driver contracts and the process-wide name-to-driver registry."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncContextManager, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from .schema import SchemaInfo, SchemaOptions

Row = tuple[object, ...]


@runtime_checkable
class Dialer(Protocol):
    """Opens a stream to ``address`` ("host:port"), e.g. over an SSH tunnel.

    The returned object is socket-like: ``recv``, ``sendall``, ``close``.
    """

    def dial(self, network: str, address: str): ...


@runtime_checkable
class Session(Protocol):
    """An open database connection as seen by the executor."""

    async def fetch(self, sql: str, *params: object) -> tuple[list[str], list[Row]]: ...

    def read_only_transaction(self) -> AsyncContextManager[None]: ...

    async def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class ConnOptions:
    """Everything a driver needs to open a session."""

    dsn: str = ""
    host: str = ""
    port: int = 0
    user: str = ""
    password: str = field(default="", repr=False)
    database: str = ""
    params: dict[str, str] = field(default_factory=dict)
    dialer: Dialer | None = None
    connect_timeout: float = 10.0


@runtime_checkable
class Driver(Protocol):
    async def open(self, options: ConnOptions) -> Session: ...


@runtime_checkable
class SchemaDriver(Protocol):
    """Drivers that can also describe the current database."""

    async def open(self, options: ConnOptions) -> Session: ...

    async def dump_schema(self, session: Session, options: SchemaOptions) -> SchemaInfo: ...


_LOCK = threading.RLock()
_DRIVERS: dict[str, Driver] = {}


def register(name: str, driver: Driver | None) -> None:
    """Register ``driver`` under ``name``. Meant to run once, at import time."""

    with _LOCK:
        if not name:
            raise ValueError("driver name must not be empty")
        if driver is None:
            raise ValueError(f"driver '{name}' is None")
        if name in _DRIVERS:
            raise ValueError(f"driver '{name}' is already registered")
        _DRIVERS[name] = driver


def get(name: str) -> Driver | None:
    with _LOCK:
        return _DRIVERS.get(name)


def registered_names() -> Sequence[str]:
    with _LOCK:
        return sorted(_DRIVERS)


__all__ = [
    "ConnOptions",
    "Dialer",
    "Driver",
    "Row",
    "SchemaDriver",
    "Session",
    "get",
    "register",
    "registered_names",
]
