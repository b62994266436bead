"""Result envelope and its JSON, YAML, table and CSV renderers."""

from __future__ import annotations

import csv
import dataclasses
import io
import json
import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Sequence, TextIO
from uuid import UUID

import yaml
from pydantic import BaseModel

from .errors import ErrorCode, XsqlError

SCHEMA_VERSION = 1


class OutputFormat(str, Enum):
    """Supported renderers; ``auto`` picks table on a terminal, JSON otherwise."""

    AUTO = "auto"
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    CSV = "csv"


def parse_format(value: str | OutputFormat | None) -> OutputFormat:
    """Parse a user-provided format name; an empty value means ``auto``."""

    if isinstance(value, OutputFormat):
        return value
    name = (value or "auto").strip().lower()
    try:
        return OutputFormat(name)
    except ValueError:
        raise XsqlError(ErrorCode.CFG_INVALID, "invalid output format", {"format": value}) from None


def resolve_auto(fmt: OutputFormat, is_tty: bool) -> OutputFormat:
    if fmt is OutputFormat.AUTO:
        return OutputFormat.TABLE if is_tty else OutputFormat.JSON
    return fmt


def ok_envelope(data: Any) -> dict[str, Any]:
    envelope: dict[str, Any] = {"ok": True, "schema_version": SCHEMA_VERSION}
    if data is not None:
        envelope["data"] = to_plain(data)
    return envelope


def error_envelope(err: XsqlError) -> dict[str, Any]:
    return {"ok": False, "schema_version": SCHEMA_VERSION, "error": to_plain(err.to_dict())}


def to_plain(value: Any) -> Any:
    """Convert ``value`` into JSON-compatible builtins.

    Result objects expose ``to_dict()``; dataclasses and pydantic models are
    expanded; driver-native scalars (decimals, temporal values, UUIDs, raw
    bytes) become strings so every renderer sees the same document.
    """

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isfinite(value):
            return value
        return str(value)
    if isinstance(value, Enum):
        return to_plain(value.value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (timedelta, UUID)):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_plain(item) for item in value]
    if hasattr(value, "to_dict"):
        return to_plain(value.to_dict())
    if isinstance(value, BaseModel):
        return to_plain(value.model_dump())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_plain(dataclasses.asdict(value))
    return str(value)


def render(fmt: OutputFormat, envelope: Mapping[str, Any]) -> str:
    """Render an envelope. ``fmt`` must already be resolved (not ``auto``)."""

    if fmt is OutputFormat.JSON:
        return json.dumps(envelope, ensure_ascii=False) + "\n"
    if fmt is OutputFormat.YAML:
        text = yaml.safe_dump(
            _elide_empty(envelope),
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )
        return text if text.endswith("\n") else text + "\n"
    if fmt is OutputFormat.TABLE:
        return _render_table(envelope)
    if fmt is OutputFormat.CSV:
        return _render_csv(envelope)
    raise XsqlError(ErrorCode.CFG_INVALID, "invalid output format", {"format": fmt.value})


class Writer:
    """Writes envelopes to the data stream; diagnostics belong on ``err``."""

    def __init__(self, out: TextIO, err: TextIO) -> None:
        self.out = out
        self.err = err

    def resolve(self, fmt: OutputFormat | str | None) -> OutputFormat:
        return resolve_auto(parse_format(fmt), _is_tty(self.out))

    def write_ok(self, fmt: OutputFormat | str | None, data: Any) -> None:
        self._write(self.resolve(fmt), ok_envelope(data))

    def write_error(self, fmt: OutputFormat | str | None, err: XsqlError) -> None:
        self._write(self.resolve(fmt), error_envelope(err))

    def _write(self, fmt: OutputFormat, envelope: Mapping[str, Any]) -> None:
        self.out.write(render(fmt, envelope))
        self.out.flush()


def _is_tty(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty()) if isatty else False
    except ValueError:
        return False


def _elide_empty(envelope: Mapping[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in envelope.items():
        if isinstance(value, Mapping) and key == "error":
            value = _elide_empty(value)
        if value is None or (isinstance(value, (Mapping, list)) and not value):
            continue
        result[key] = value
    return result


# -- shape tests ------------------------------------------------------------


def _as_query_result(data: Any) -> tuple[list[str], list[Mapping[str, Any]]] | None:
    if not isinstance(data, Mapping):
        return None
    columns = data.get("columns")
    rows = data.get("rows")
    if not isinstance(columns, list) or not isinstance(rows, list):
        return None
    if not all(isinstance(column, str) for column in columns):
        return None
    if not all(isinstance(row, Mapping) for row in rows):
        return None
    return columns, rows


def _as_profile_list(data: Any) -> tuple[str, list[Mapping[str, Any]]] | None:
    if not isinstance(data, Mapping):
        return None
    profiles = data.get("profiles")
    if not isinstance(profiles, list):
        return None
    if not all(isinstance(item, Mapping) and item.get("name") for item in profiles):
        return None
    return str(data.get("config_path") or ""), profiles


def _as_schema(data: Any) -> tuple[str, list[Mapping[str, Any]]] | None:
    if not isinstance(data, Mapping) or set(data) != {"database", "tables"}:
        return None
    tables = data.get("tables")
    if not isinstance(tables, list) or not all(isinstance(table, Mapping) for table in tables):
        return None
    return str(data.get("database") or ""), tables


# -- table ------------------------------------------------------------------


def _render_table(envelope: Mapping[str, Any]) -> str:
    if not envelope.get("ok"):
        error = envelope.get("error") or {}
        return f"Error [{error.get('code', '')}]: {error.get('message', '')}\n"

    data = envelope.get("data")
    query = _as_query_result(data)
    if query is not None:
        return _query_table(*query)
    profiles = _as_profile_list(data)
    if profiles is not None:
        return _profile_table(*profiles)
    schema = _as_schema(data)
    if schema is not None:
        return _schema_table(*schema)
    if isinstance(data, Mapping):
        return _align([[str(key), _cell(value, "")] for key, value in data.items()])
    if data is None:
        return ""
    return json.dumps(data, ensure_ascii=False, indent=2) + "\n"


def _query_table(columns: Sequence[str], rows: Sequence[Mapping[str, Any]]) -> str:
    lines = [list(columns), ["-" * len(column) for column in columns]]
    for row in rows:
        lines.append([_cell(row.get(column), "NULL") for column in columns])
    return _align(lines) + f"\n({len(rows)} rows)\n"


def _profile_table(config_path: str, profiles: Sequence[Mapping[str, Any]]) -> str:
    head = f"Config: {config_path}\n\n" if config_path else ""
    lines = [["NAME", "DESCRIPTION", "DB", "MODE"], ["----", "-----------", "--", "----"]]
    for item in profiles:
        lines.append([_cell(item.get(key), "") for key in ("name", "description", "db", "mode")])
    noun = "profile" if len(profiles) == 1 else "profiles"
    return head + _align(lines) + f"\n({len(profiles)} {noun})\n"


def _schema_table(database: str, tables: Sequence[Mapping[str, Any]]) -> str:
    parts = [f"Database: {database}\n"]
    for table in tables:
        name = ".".join(str(part) for part in (table.get("schema"), table.get("name")) if part)
        parts.append(f"\nTable: {name}\n")
        lines = [["NAME", "TYPE", "NULLABLE", "DEFAULT", "PK"], ["----", "----", "--------", "-------", "--"]]
        for column in table.get("columns") or []:
            lines.append(
                [
                    _cell(column.get("name"), ""),
                    _cell(column.get("type"), ""),
                    _cell(column.get("nullable"), ""),
                    _cell(column.get("default"), ""),
                    _cell(column.get("primary_key"), ""),
                ]
            )
        parts.append(_align(lines))
    noun = "table" if len(tables) == 1 else "tables"
    parts.append(f"\n({len(tables)} {noun})\n")
    return "".join(parts)


def _cell(value: Any, null: str) -> str:
    if value is None:
        return null
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _align(lines: Sequence[Sequence[str]], padding: int = 2) -> str:
    """Pad every cell but the last of each line to its column width."""

    widths: dict[int, int] = {}
    for line in lines:
        for index, cell in enumerate(line[:-1]):
            widths[index] = max(widths.get(index, 0), len(cell))
    out = io.StringIO()
    for line in lines:
        cells = [cell.ljust(widths[index] + padding) for index, cell in enumerate(line[:-1])]
        if line:
            cells.append(line[-1])
        out.write("".join(cells) + "\n")
    return out.getvalue()


# -- csv --------------------------------------------------------------------


def _render_csv(envelope: Mapping[str, Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    if not envelope.get("ok"):
        error = envelope.get("error") or {}
        writer.writerow(["error", error.get("code", ""), error.get("message", "")])
        return buffer.getvalue()

    data = envelope.get("data")
    query = _as_query_result(data)
    if query is not None:
        columns, rows = query
        writer.writerow(columns)
        for row in rows:
            writer.writerow([_cell(row.get(column), "") for column in columns])
    elif isinstance(data, Mapping):
        for key, value in data.items():
            writer.writerow([key, _cell(value, "")])
    return buffer.getvalue()


__all__ = [
    "OutputFormat",
    "SCHEMA_VERSION",
    "Writer",
    "error_envelope",
    "ok_envelope",
    "parse_format",
    "render",
    "resolve_auto",
    "to_plain",
]
