"""Stable error codes, the structured error type and exit-code mapping."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Mapping


class ErrorCode(str, Enum):
    """Machine-facing error codes; the values are part of the output contract."""

    CFG_NOT_FOUND = "XSQL_CFG_NOT_FOUND"
    CFG_INVALID = "XSQL_CFG_INVALID"
    SECRET_NOT_FOUND = "XSQL_SECRET_NOT_FOUND"
    SSH_AUTH_FAILED = "XSQL_SSH_AUTH_FAILED"
    SSH_HOSTKEY_MISMATCH = "XSQL_SSH_HOSTKEY_MISMATCH"
    SSH_DIAL_FAILED = "XSQL_SSH_DIAL_FAILED"
    DB_DRIVER_UNSUPPORTED = "XSQL_DB_DRIVER_UNSUPPORTED"
    DB_CONNECT_FAILED = "XSQL_DB_CONNECT_FAILED"
    DB_AUTH_FAILED = "XSQL_DB_AUTH_FAILED"
    DB_EXEC_FAILED = "XSQL_DB_EXEC_FAILED"
    RO_BLOCKED = "XSQL_RO_BLOCKED"
    INTERNAL = "XSQL_INTERNAL"

    def __str__(self) -> str:
        return self.value


class ExitCode(IntEnum):
    """Process exit statuses."""

    OK = 0
    CONFIG = 2
    CONNECT = 3
    READ_ONLY = 4
    DB_EXEC = 5
    INTERNAL = 10


_EXIT_CODES: dict[ErrorCode, ExitCode] = {
    ErrorCode.CFG_NOT_FOUND: ExitCode.CONFIG,
    ErrorCode.CFG_INVALID: ExitCode.CONFIG,
    ErrorCode.SECRET_NOT_FOUND: ExitCode.CONFIG,
    ErrorCode.SSH_AUTH_FAILED: ExitCode.CONNECT,
    ErrorCode.SSH_HOSTKEY_MISMATCH: ExitCode.CONNECT,
    ErrorCode.SSH_DIAL_FAILED: ExitCode.CONNECT,
    ErrorCode.DB_DRIVER_UNSUPPORTED: ExitCode.CONNECT,
    ErrorCode.DB_CONNECT_FAILED: ExitCode.CONNECT,
    ErrorCode.DB_AUTH_FAILED: ExitCode.CONNECT,
    ErrorCode.RO_BLOCKED: ExitCode.READ_ONLY,
    ErrorCode.DB_EXEC_FAILED: ExitCode.DB_EXEC,
    ErrorCode.INTERNAL: ExitCode.INTERNAL,
}


def all_codes() -> list[ErrorCode]:
    """Return every error code in declaration order."""

    return list(ErrorCode)


def exit_code_for(code: ErrorCode | str | None) -> ExitCode:
    """Map an error code to its exit status; unknown codes map to INTERNAL."""

    try:
        return _EXIT_CODES[ErrorCode(code)]
    except ValueError:
        return ExitCode.INTERNAL


class XsqlError(RuntimeError):
    """Structured error carrying a stable code and optional details.

    The underlying cause, when any, travels as ``__cause__`` (``raise ... from``)
    and is appended to the string form.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        text = f"{self.code.value}: {self.message}"
        if self.__cause__ is not None:
            text = f"{text}: {self.__cause__}"
        return text

    @property
    def exit_code(self) -> ExitCode:
        return exit_code_for(self.code)

    def to_dict(self) -> dict[str, Any]:
        """Return the envelope's ``error`` object."""

        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


def wrap(code: ErrorCode, message: str, cause: BaseException, details: Mapping[str, Any] | None = None) -> XsqlError:
    """Build an error whose cause is ``cause``."""

    err = XsqlError(code, message, details)
    err.__cause__ = cause
    return err


def as_xsql_error(exc: BaseException) -> XsqlError:
    """Return structured errors unchanged and wrap anything else as INTERNAL."""

    if isinstance(exc, XsqlError):
        return exc
    return wrap(ErrorCode.INTERNAL, str(exc) or type(exc).__name__, exc)


__all__ = [
    "ErrorCode",
    "ExitCode",
    "XsqlError",
    "all_codes",
    "as_xsql_error",
    "exit_code_for",
    "wrap",
]
