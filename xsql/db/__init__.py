"""Database drivers, the read-only gate and query execution.

Importing this package registers the built-in ``mysql`` and ``pg`` drivers.
"""

from __future__ import annotations

from .query import DEFAULT_QUERY_TIMEOUT, QueryResult, run_query
from .readonly import Classification, classify, enforce_read_only
from .registry import ConnOptions, Dialer, Driver, SchemaDriver, Session, get, register, registered_names
from .schema import DEFAULT_SCHEMA_TIMEOUT, SchemaInfo, SchemaOptions, dump_schema
from . import mysql as _mysql  # noqa: F401  (registers "mysql")
from . import pg as _pg  # noqa: F401  (registers "pg")

__all__ = [
    "Classification",
    "ConnOptions",
    "DEFAULT_QUERY_TIMEOUT",
    "DEFAULT_SCHEMA_TIMEOUT",
    "Dialer",
    "Driver",
    "QueryResult",
    "SchemaDriver",
    "SchemaInfo",
    "SchemaOptions",
    "Session",
    "classify",
    "dump_schema",
    "enforce_read_only",
    "get",
    "register",
    "registered_names",
    "run_query",
]
