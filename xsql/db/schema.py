"""Schema-introspection result types and the dump entry point."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..errors import ErrorCode, XsqlError, wrap
from . import registry
from .registry import Session

DEFAULT_SCHEMA_TIMEOUT = 60.0


@dataclass(frozen=True, slots=True)
class SchemaOptions:
    table_pattern: str = ""
    include_system: bool = False


@dataclass(slots=True)
class Column:
    name: str
    type: str
    nullable: bool = False
    default: str | None = None
    comment: str = ""
    primary_key: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "type": self.type, "nullable": self.nullable}
        if self.default is not None and self.default != "":
            payload["default"] = self.default
        if self.comment:
            payload["comment"] = self.comment
        payload["primary_key"] = self.primary_key
        return payload


@dataclass(slots=True)
class Index:
    name: str
    columns: list[str] = field(default_factory=list)
    unique: bool = False
    primary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "columns": list(self.columns), "unique": self.unique, "primary": self.primary}


@dataclass(slots=True)
class ForeignKey:
    name: str
    columns: list[str] = field(default_factory=list)
    referenced_table: str = ""
    referenced_columns: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "columns": list(self.columns),
            "referenced_table": self.referenced_table,
            "referenced_columns": list(self.referenced_columns),
        }


@dataclass(slots=True)
class Table:
    schema: str
    name: str
    comment: str = ""
    columns: list[Column] = field(default_factory=list)
    indexes: list[Index] = field(default_factory=list)
    foreign_keys: list[ForeignKey] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"schema": self.schema, "name": self.name}
        if self.comment:
            payload["comment"] = self.comment
        payload["columns"] = [column.to_dict() for column in self.columns]
        if self.indexes:
            payload["indexes"] = [index.to_dict() for index in self.indexes]
        if self.foreign_keys:
            payload["foreign_keys"] = [fk.to_dict() for fk in self.foreign_keys]
        return payload


@dataclass(slots=True)
class SchemaInfo:
    database: str
    tables: list[Table] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"database": self.database, "tables": [table.to_dict() for table in self.tables]}


def glob_to_like(pattern: str) -> str:
    """Translate a shell glob to a LIKE pattern. Literal ``%``/``_`` are not escaped."""

    return pattern.replace("*", "%").replace("?", "_")


def group_indexes(rows: Iterable[tuple[object, ...]]) -> list[Index]:
    """Fold ``(index, column, unique, primary)`` rows into indexes, keeping column order."""

    indexes: dict[str, Index] = {}
    for name, column, unique, primary, *_ in rows:
        key = str(name)
        index = indexes.get(key)
        if index is None:
            index = indexes[key] = Index(name=key, unique=bool(unique), primary=bool(primary))
        index.columns.append(str(column))
    return list(indexes.values())


def group_foreign_keys(rows: Iterable[tuple[object, ...]]) -> list[ForeignKey]:
    """Fold ``(constraint, column, ref_table, ref_column)`` rows into foreign keys."""

    keys: dict[str, ForeignKey] = {}
    for name, column, ref_table, ref_column, *_ in rows:
        key = str(name)
        fk = keys.get(key)
        if fk is None:
            fk = keys[key] = ForeignKey(name=key, referenced_table=str(ref_table))
        fk.columns.append(str(column))
        fk.referenced_columns.append(str(ref_column))
    return list(keys.values())


async def dump_schema(
    driver_name: str,
    session: Session,
    options: SchemaOptions,
    *,
    timeout: float = DEFAULT_SCHEMA_TIMEOUT,
) -> SchemaInfo:
    """Describe the session's current database via the named driver."""

    driver = registry.get(driver_name)
    if driver is None:
        raise XsqlError(ErrorCode.DB_DRIVER_UNSUPPORTED, f"unsupported driver: {driver_name}")
    if not isinstance(driver, registry.SchemaDriver):
        raise XsqlError(ErrorCode.DB_DRIVER_UNSUPPORTED, f"driver does not support schema dump: {driver_name}")
    try:
        async with asyncio.timeout(timeout):
            return await driver.dump_schema(session, options)
    except TimeoutError as exc:
        raise wrap(ErrorCode.DB_EXEC_FAILED, "schema dump timed out", exc) from exc
    except XsqlError:
        raise
    except Exception as exc:
        raise wrap(ErrorCode.DB_EXEC_FAILED, "schema dump failed", exc) from exc


__all__ = [
    "Column",
    "DEFAULT_SCHEMA_TIMEOUT",
    "ForeignKey",
    "Index",
    "SchemaInfo",
    "SchemaOptions",
    "Table",
    "dump_schema",
    "glob_to_like",
    "group_foreign_keys",
    "group_indexes",
]
