"""Secret references: ``keyring:<account>`` lookups and the plaintext policy."""

from __future__ import annotations

import logging
import sys
from typing import Protocol, runtime_checkable

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .errors import ErrorCode, XsqlError, wrap

LOG = logging.getLogger(__name__)

KEYRING_PREFIX = "keyring:"
SERVICE_NAME = "xsql"


class SecretLookupError(RuntimeError):
    """Raised by keyring adapters when an entry is absent or unreadable."""


@runtime_checkable
class KeyringAPI(Protocol):
    """Minimal keychain surface; the service is fixed to ``xsql``."""

    def get(self, account: str) -> str: ...

    def set(self, account: str, value: str) -> None: ...

    def delete(self, account: str) -> None: ...


class OSKeyring:
    """Keychain adapter backed by the ``keyring`` package."""

    def __init__(self, service: str = SERVICE_NAME) -> None:
        self._service = service

    def get(self, account: str) -> str:
        try:
            value = keyring.get_password(self._service, account)
        except KeyringError as exc:
            raise SecretLookupError(str(exc)) from exc
        if value is None:
            raise SecretLookupError(f"no keyring entry for {self._service}/{account}")
        return value

    def set(self, account: str, value: str) -> None:
        try:
            keyring.set_password(self._service, account, value)
        except KeyringError as exc:
            raise SecretLookupError(str(exc)) from exc

    def delete(self, account: str) -> None:
        try:
            keyring.delete_password(self._service, account)
        except PasswordDeleteError as exc:
            raise SecretLookupError(f"no keyring entry for {self._service}/{account}") from exc
        except KeyringError as exc:
            raise SecretLookupError(str(exc)) from exc


class WindowsKeyring(OSKeyring):
    """Credential Manager values written by ``cmdkey`` come back NUL-interleaved."""

    def get(self, account: str) -> str:
        return super().get(account).replace("\x00", "")


def default_keyring(platform: str | None = None) -> KeyringAPI:
    name = platform or sys.platform
    if name.startswith("win"):
        return WindowsKeyring()
    return OSKeyring()


def is_keyring_ref(value: str) -> bool:
    return value.startswith(KEYRING_PREFIX)


def resolve_secret(ref: str, *, allow_plaintext: bool = False, keyring_api: KeyringAPI | None = None) -> str:
    """Turn a secret reference into its cleartext value."""

    if is_keyring_ref(ref):
        account = ref[len(KEYRING_PREFIX) :]
        if not account:
            raise XsqlError(ErrorCode.CFG_INVALID, "keyring reference is missing an account", {"key": ref})
        api = keyring_api if keyring_api is not None else default_keyring()
        try:
            return api.get(account)
        except SecretLookupError as exc:
            LOG.debug("Keyring lookup failed for account %s", account)
            raise wrap(
                ErrorCode.SECRET_NOT_FOUND,
                "failed to read secret from keyring",
                exc,
                {"key": account},
            ) from exc
    if allow_plaintext:
        return ref
    raise XsqlError(
        ErrorCode.CFG_INVALID,
        "plaintext secret not allowed; use keyring: reference or enable --allow-plaintext",
    )


__all__ = [
    "KEYRING_PREFIX",
    "KeyringAPI",
    "OSKeyring",
    "SERVICE_NAME",
    "SecretLookupError",
    "WindowsKeyring",
    "default_keyring",
    "is_keyring_ref",
    "resolve_secret",
]
