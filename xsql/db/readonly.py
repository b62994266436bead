"""Conservative read-only classifier for a single SQL statement.

This is a heuristic. It is always paired with a server-side read-only
transaction (see :mod:`xsql.db.query`); neither replaces the other.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import ErrorCode, XsqlError

ALLOWED_FIRST_KEYWORDS = frozenset({"SELECT", "SHOW", "DESCRIBE", "DESC", "EXPLAIN", "WITH"})
WRITE_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "CREATE",
    "ALTER",
    "DROP",
    "TRUNCATE",
    "GRANT",
    "REVOKE",
    "CALL",
    "DO",
    "COPY",
    "MERGE",
)
_BOM = "\ufeff"


@dataclass(frozen=True, slots=True)
class Classification:
    allowed: bool
    reason: str


def strip_leading_noise(sql: str) -> str:
    """Drop leading whitespace, BOMs and comments until a token starts."""

    text = sql
    while True:
        text = text.lstrip().lstrip(_BOM)
        if text.startswith("--"):
            newline = text.find("\n")
            if newline < 0:
                return ""
            text = text[newline + 1 :]
            continue
        if text.startswith("/*"):
            end = text.find("*/", 2)
            if end < 0:
                return ""
            text = text[end + 2 :]
            continue
        if text[:1].isspace() or text.startswith(_BOM):
            continue
        return text


def _is_word_char(char: str) -> bool:
    return char == "_" or (char.isascii() and char.isalnum())


def _contains_word(text: str, word: str) -> bool:
    start = 0
    while True:
        index = text.find(word, start)
        if index < 0:
            return False
        before = text[index - 1] if index > 0 else ""
        end = index + len(word)
        after = text[end] if end < len(text) else ""
        if not _is_word_char(before) and not _is_word_char(after):
            return True
        start = index + 1


def classify(sql: str) -> Classification:
    """Decide whether ``sql`` is an allowed read-only statement."""

    body = strip_leading_noise(sql)
    if not body.strip():
        return Classification(False, "empty")
    if len([segment for segment in body.split(";") if segment.strip()]) > 1:
        return Classification(False, "multiple_statements")

    first = body[0]
    if not (first.isascii() and first.isalpha()):
        return Classification(False, "non_letter_start")
    end = 0
    while end < len(body) and body[end].isascii() and body[end].isalpha():
        end += 1
    keyword = body[:end].upper()
    if keyword not in ALLOWED_FIRST_KEYWORDS:
        return Classification(False, f"forbidden_start:{keyword}")

    if keyword == "WITH":
        rest = body[end:].upper()
        for write in WRITE_KEYWORDS:
            if _contains_word(rest, write):
                return Classification(False, f"WITH_{write}")
    return Classification(True, keyword)


def enforce_read_only(sql: str, unsafe_allow_write: bool) -> None:
    """Raise RO_BLOCKED unless writes are allowed or ``sql`` classifies as read-only."""

    if unsafe_allow_write:
        return
    verdict = classify(sql)
    if not verdict.allowed:
        raise XsqlError(ErrorCode.RO_BLOCKED, "write blocked by read-only policy", {"reason": verdict.reason})


__all__ = [
    "ALLOWED_FIRST_KEYWORDS",
    "Classification",
    "WRITE_KEYWORDS",
    "classify",
    "enforce_read_only",
    "strip_leading_noise",
]
