"""Statement execution behind the read-only gate."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from ..errors import ErrorCode, XsqlError, wrap
from .readonly import enforce_read_only
from .registry import Row, Session

LOG = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT = 30.0


@dataclass(slots=True)
class QueryResult:
    """Column names in driver order plus one mapping per row."""

    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"columns": list(self.columns), "rows": [dict(row) for row in self.rows]}


def convert_value(value: object) -> object:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


def materialize(columns: Sequence[str], rows: Sequence[Row]) -> QueryResult:
    names = [str(column) for column in columns]
    result = QueryResult(columns=names)
    for row in rows:
        result.rows.append({name: convert_value(value) for name, value in zip(names, row)})
    return result


async def run_query(
    session: Session,
    sql: str,
    *,
    unsafe_allow_write: bool = False,
    timeout: float | None = DEFAULT_QUERY_TIMEOUT,
) -> QueryResult:
    """Run ``sql`` on ``session``.

    Unless writes are explicitly allowed the statement must pass the
    classifier and then runs inside a read-only transaction that is always
    rolled back.
    """

    enforce_read_only(sql, unsafe_allow_write)
    try:
        async with asyncio.timeout(timeout):
            if unsafe_allow_write:
                columns, rows = await session.fetch(sql)
            else:
                async with session.read_only_transaction():
                    columns, rows = await session.fetch(sql)
    except TimeoutError as exc:
        raise wrap(ErrorCode.DB_EXEC_FAILED, "query timed out", exc, {"timeout_seconds": timeout}) from exc
    except XsqlError:
        raise
    except Exception as exc:
        LOG.debug("Query failed: %s", exc)
        raise wrap(ErrorCode.DB_EXEC_FAILED, "query failed", exc) from exc
    return materialize(columns, rows)


__all__ = ["DEFAULT_QUERY_TIMEOUT", "QueryResult", "convert_value", "materialize", "run_query"]
