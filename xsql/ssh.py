"""SSH client used as a network transport for database drivers."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import paramiko

from .config import SSHProxyConfig
from .errors import ErrorCode, XsqlError, wrap

LOG = logging.getLogger(__name__)

DEFAULT_PORT = 22
DEFAULT_KNOWN_HOSTS = "~/.ssh/known_hosts"
DEFAULT_IDENTITY_FILES = ("id_ed25519", "id_rsa", "id_ecdsa")
_AUTH_HINTS = ("unable to authenticate", "authentication failed", "no authentication methods")


@dataclass(frozen=True, slots=True)
class SSHOptions:
    host: str
    port: int = DEFAULT_PORT
    user: str = ""
    identity_file: str = ""
    passphrase: str = field(default="", repr=False)
    known_hosts_file: str = ""
    skip_known_hosts_check: bool = False
    timeout: float = 15.0
    home_dir: str = ""

    @classmethod
    def from_proxy(
        cls,
        proxy: SSHProxyConfig,
        *,
        passphrase: str = "",
        skip_known_hosts_check: bool = False,
    ) -> SSHOptions:
        return cls(
            host=proxy.host,
            port=proxy.port or DEFAULT_PORT,
            user=proxy.user,
            identity_file=proxy.identity_file,
            passphrase=passphrase,
            known_hosts_file=proxy.known_hosts_file,
            skip_known_hosts_check=skip_known_hosts_check or proxy.skip_host_key,
        )


def default_user(environ: dict[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    return env.get("USER") or env.get("USERNAME") or ""


def expand_path(path: str, home_dir: str = "") -> Path:
    if path == "~" or path.startswith("~/"):
        home = Path(home_dir) if home_dir else Path.home()
        return home / path[2:]
    return Path(path)


def _passphrase_bytes(passphrase: str) -> bytes | None:
    return passphrase.encode("utf-8") if passphrase else None


def _load_key(path: Path, passphrase: str) -> paramiko.PKey:
    # Positional: the keyword name differs across paramiko releases.
    return paramiko.PKey.from_path(path, _passphrase_bytes(passphrase))


def load_private_keys(options: SSHOptions) -> list[paramiko.PKey]:
    """Collect the keys to authenticate with, in the order they are offered.

    An explicit identity file must be readable (CFG_INVALID) and parseable
    (SSH_AUTH_FAILED) and is the only key used. Otherwise every default key
    that loads is returned.
    """

    if options.identity_file:
        path = expand_path(options.identity_file, options.home_dir)
        try:
            path.read_bytes()
        except OSError as exc:
            raise wrap(ErrorCode.CFG_INVALID, "failed to read ssh identity file", exc, {"path": str(path)}) from exc
        try:
            return [_load_key(path, options.passphrase)]
        except Exception as exc:
            raise wrap(ErrorCode.SSH_AUTH_FAILED, "failed to parse ssh private key", exc, {"path": str(path)}) from exc

    keys: list[paramiko.PKey] = []
    for name in DEFAULT_IDENTITY_FILES:
        path = expand_path(f"~/.ssh/{name}", options.home_dir)
        if not path.is_file():
            continue
        try:
            keys.append(_load_key(path, options.passphrase))
        except Exception as exc:
            LOG.debug("Skipping default identity %s: %s", path, exc)
    if not keys:
        raise XsqlError(ErrorCode.SSH_AUTH_FAILED, "no ssh authentication method available")
    return keys


def build_client(options: SSHOptions) -> paramiko.SSHClient:
    """Return a paramiko client with the host-key policy applied."""

    client = paramiko.SSHClient()
    if options.skip_known_hosts_check:
        LOG.warning("SSH host key verification is disabled for %s", options.host)
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client
    path = expand_path(options.known_hosts_file or DEFAULT_KNOWN_HOSTS, options.home_dir)
    if not path.is_file():
        raise XsqlError(
            ErrorCode.SSH_HOSTKEY_MISMATCH,
            "known_hosts file not found; use --ssh-skip-known-hosts-check to bypass (not recommended)",
            {"path": str(path)},
        )
    try:
        client.load_host_keys(str(path))
    except (OSError, paramiko.SSHException) as exc:
        raise wrap(ErrorCode.SSH_HOSTKEY_MISMATCH, "failed to parse known_hosts", exc, {"path": str(path)}) from exc
    client.set_missing_host_key_policy(paramiko.RejectPolicy())
    return client


def classify_connect_error(exc: BaseException, host: str) -> XsqlError:
    """Map a paramiko/socket failure onto the SSH error codes."""

    details = {"host": host}
    text = str(exc).lower()
    if isinstance(exc, paramiko.AuthenticationException) or any(hint in text for hint in _AUTH_HINTS):
        return wrap(ErrorCode.SSH_AUTH_FAILED, "ssh authentication failed", exc, details)
    if isinstance(exc, paramiko.BadHostKeyException) or "not found in known_hosts" in text:
        return wrap(ErrorCode.SSH_HOSTKEY_MISMATCH, "ssh host key verification failed", exc, details)
    return wrap(ErrorCode.SSH_DIAL_FAILED, "failed to connect to ssh server", exc, details)


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise XsqlError(ErrorCode.SSH_DIAL_FAILED, "invalid dial address", {"address": address})
    return host.strip("[]"), int(port)


class SSHClient:
    """An authenticated SSH session that can open tunnelled streams."""

    def __init__(self, client: paramiko.SSHClient, options: SSHOptions) -> None:
        self._client = client
        self._options = options
        self._closed = False

    @property
    def address(self) -> str:
        return f"{self._options.host}:{self._options.port}"

    def dial(self, network: str, address: str) -> paramiko.Channel:
        """Open a ``direct-tcpip`` channel to ``address`` through the SSH server."""

        if network not in ("tcp", "tcp4", "tcp6"):
            raise XsqlError(ErrorCode.SSH_DIAL_FAILED, f"unsupported network: {network}")
        host, port = _split_address(address)
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise XsqlError(ErrorCode.SSH_DIAL_FAILED, "ssh connection is closed", {"address": address})
        try:
            return transport.open_channel("direct-tcpip", (host, port), ("127.0.0.1", 0), timeout=self._options.timeout)
        except (paramiko.SSHException, OSError) as exc:
            raise wrap(ErrorCode.SSH_DIAL_FAILED, "ssh dial failed", exc, {"address": address}) from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client.close()


def connect_sync(options: SSHOptions) -> SSHClient:
    if not options.host:
        raise XsqlError(ErrorCode.CFG_INVALID, "ssh host is required")
    resolved = SSHOptions(
        host=options.host,
        port=options.port or DEFAULT_PORT,
        user=options.user or default_user(),
        identity_file=options.identity_file,
        passphrase=options.passphrase,
        known_hosts_file=options.known_hosts_file,
        skip_known_hosts_check=options.skip_known_hosts_check,
        timeout=options.timeout,
        home_dir=options.home_dir,
    )
    keys = load_private_keys(resolved)
    for attempt, pkey in enumerate(keys, start=1):
        client = build_client(resolved)
        try:
            client.connect(
                resolved.host,
                port=resolved.port,
                username=resolved.user,
                pkey=pkey,
                allow_agent=False,
                look_for_keys=False,
                timeout=resolved.timeout,
                banner_timeout=resolved.timeout,
                auth_timeout=resolved.timeout,
            )
        except Exception as exc:
            client.close()
            error = classify_connect_error(exc, resolved.host)
            if error.code is ErrorCode.SSH_AUTH_FAILED and attempt < len(keys):
                LOG.debug("SSH server rejected %s key; trying the next one", pkey.get_name())
                continue
            raise error from exc
        LOG.debug("SSH connected to %s:%s as %s", resolved.host, resolved.port, resolved.user)
        return SSHClient(client, resolved)
    raise XsqlError(ErrorCode.SSH_AUTH_FAILED, "no ssh authentication method available")


async def connect(options: SSHOptions) -> SSHClient:
    """Connect without blocking the event loop; paramiko enforces the timeouts."""

    return await asyncio.to_thread(connect_sync, options)


__all__ = [
    "DEFAULT_IDENTITY_FILES",
    "DEFAULT_KNOWN_HOSTS",
    "DEFAULT_PORT",
    "SSHClient",
    "SSHOptions",
    "build_client",
    "classify_connect_error",
    "connect",
    "connect_sync",
    "default_user",
    "expand_path",
    "load_private_keys",
]
