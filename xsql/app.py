"""Connection pipeline and the profile/version views shared by CLI and tools.

A query flows through discrete stages, each producing an immutable value:
``ConnectionRequest`` -> ``Credentials`` (secrets unlocked) -> SSH tunnel
(optional) -> driver session. :func:`connect` owns the tunnel and session and
releases both on every exit path.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from . import __commit__, __date__, __version__
from . import db, ssh
from .config import ConfigFile, ProfileConfig, resolve_profile
from .db.registry import ConnOptions, Driver, Session
from .errors import ErrorCode, XsqlError
from .secret import KeyringAPI, resolve_secret

LOG = logging.getLogger(__name__)

REDACTED = "***"


@dataclass(frozen=True, slots=True)
class ConnectionRequest:
    """What the caller asked for: a resolved profile plus per-invocation flags."""

    profile: ProfileConfig
    allow_plaintext: bool = False
    skip_host_key_check: bool = False

    @property
    def plaintext_allowed(self) -> bool:
        return self.allow_plaintext or self.profile.allow_plaintext


@dataclass(frozen=True, slots=True)
class Credentials:
    """The request with every secret reference replaced by its cleartext."""

    request: ConnectionRequest
    password: str = field(default="", repr=False)
    passphrase: str = field(default="", repr=False)


@dataclass(slots=True)
class Connection:
    """An open session and the tunnel it rides on, if any."""

    profile: ProfileConfig
    driver_name: str
    session: Session
    ssh_client: ssh.SSHClient | None = None

    async def close(self) -> None:
        try:
            await self.session.close()
        except Exception as exc:
            LOG.warning("Closing %s session failed: %s", self.driver_name, exc)
        finally:
            if self.ssh_client is not None:
                self.ssh_client.close()


def resolve_passphrase(request: ConnectionRequest, keyring_api: KeyringAPI | None = None) -> str:
    proxy = request.profile.ssh_config
    if proxy is None or not proxy.passphrase:
        return ""
    return resolve_secret(proxy.passphrase, allow_plaintext=request.plaintext_allowed, keyring_api=keyring_api)


def resolve_credentials(request: ConnectionRequest, keyring_api: KeyringAPI | None = None) -> Credentials:
    """Unlock the database password and SSH key passphrase."""

    password = ""
    if request.profile.password:
        password = resolve_secret(
            request.profile.password,
            allow_plaintext=request.plaintext_allowed,
            keyring_api=keyring_api,
        )
    return Credentials(request=request, password=password, passphrase=resolve_passphrase(request, keyring_api))


async def open_tunnel(credentials: Credentials) -> ssh.SSHClient | None:
    proxy = credentials.request.profile.ssh_config
    if proxy is None:
        return None
    options = ssh.SSHOptions.from_proxy(
        proxy,
        passphrase=credentials.passphrase,
        skip_known_hosts_check=credentials.request.skip_host_key_check,
    )
    return await ssh.connect(options)


def lookup_driver(profile: ProfileConfig) -> Driver:
    driver = db.get(profile.db)
    if driver is None:
        raise XsqlError(ErrorCode.DB_DRIVER_UNSUPPORTED, "unsupported db driver", {"db": profile.db})
    return driver


def conn_options(credentials: Credentials, dialer: ssh.SSHClient | None) -> ConnOptions:
    profile = credentials.request.profile
    return ConnOptions(
        dsn=profile.dsn,
        host=profile.host,
        port=profile.port,
        user=profile.user,
        password=credentials.password,
        database=profile.database,
        dialer=dialer,
    )


async def open_connection(request: ConnectionRequest, *, keyring_api: KeyringAPI | None = None) -> Connection:
    """Run the pipeline; the caller must ``close()`` the result."""

    if not request.profile.db:
        raise XsqlError(ErrorCode.CFG_INVALID, "db type is required (mysql|pg)")
    credentials = resolve_credentials(request, keyring_api)
    tunnel = await open_tunnel(credentials)
    try:
        driver = lookup_driver(request.profile)
        session = await driver.open(conn_options(credentials, tunnel))
    except BaseException:
        if tunnel is not None:
            tunnel.close()
        raise
    return Connection(profile=request.profile, driver_name=request.profile.db, session=session, ssh_client=tunnel)


@asynccontextmanager
async def connect(request: ConnectionRequest, *, keyring_api: KeyringAPI | None = None) -> AsyncIterator[Connection]:
    connection = await open_connection(request, keyring_api=keyring_api)
    try:
        yield connection
    finally:
        await connection.close()


async def query(
    request: ConnectionRequest,
    sql: str,
    *,
    unsafe_allow_write: bool = False,
    timeout: float = db.DEFAULT_QUERY_TIMEOUT,
    keyring_api: KeyringAPI | None = None,
) -> db.QueryResult:
    # Blocked statements never open a connection.
    db.enforce_read_only(sql, unsafe_allow_write)
    async with connect(request, keyring_api=keyring_api) as connection:
        return await db.run_query(
            connection.session,
            sql,
            unsafe_allow_write=unsafe_allow_write,
            timeout=timeout,
        )


async def dump_schema(
    request: ConnectionRequest,
    options: db.SchemaOptions,
    *,
    timeout: float = db.DEFAULT_SCHEMA_TIMEOUT,
    keyring_api: KeyringAPI | None = None,
) -> db.SchemaInfo:
    async with connect(request, keyring_api=keyring_api) as connection:
        return await db.dump_schema(connection.driver_name, connection.session, options, timeout=timeout)


# -- views ------------------------------------------------------------------


def redact(value: str) -> str:
    return REDACTED if value else ""


def profile_list_data(config: ConfigFile, config_path: str) -> dict[str, Any]:
    profiles = [
        {
            "name": name,
            "description": profile.description,
            "db": profile.db,
            "mode": profile.mode,
        }
        for name, profile in sorted(config.profiles.items())
    ]
    return {"config_path": config_path, "profiles": profiles}


def profile_show_data(config: ConfigFile, config_path: str, name: str) -> dict[str, Any]:
    """Profile details with ``dsn``/``password`` masked and the SSH proxy inlined."""

    if name not in config.profiles:
        raise XsqlError(ErrorCode.CFG_INVALID, "profile not found", {"name": name, "reason": "profile_not_found"})
    profile = resolve_profile(config, name)
    data: dict[str, Any] = {
        "config_path": config_path,
        "name": name,
        "description": profile.description,
        "db": profile.db,
        "host": profile.host,
        "port": profile.port,
        "user": profile.user,
        "database": profile.database,
        "unsafe_allow_write": profile.unsafe_allow_write,
        "allow_plaintext": profile.allow_plaintext,
    }
    if profile.dsn:
        data["dsn"] = redact(profile.dsn)
    if profile.password:
        data["password"] = redact(profile.password)
    if profile.ssh_config is not None:
        data["ssh_proxy"] = profile.ssh_proxy
        data["ssh_host"] = profile.ssh_config.host
        data["ssh_port"] = profile.ssh_config.port
        data["ssh_user"] = profile.ssh_config.user
        if profile.ssh_config.identity_file:
            data["ssh_identity_file"] = profile.ssh_config.identity_file
        if profile.ssh_config.passphrase:
            data["ssh_passphrase"] = redact(profile.ssh_config.passphrase)
    return data


def version_info() -> dict[str, str]:
    return {"version": __version__, "commit": __commit__, "date": __date__}


__all__ = [
    "Connection",
    "ConnectionRequest",
    "Credentials",
    "REDACTED",
    "conn_options",
    "connect",
    "dump_schema",
    "lookup_driver",
    "open_connection",
    "open_tunnel",
    "profile_list_data",
    "profile_show_data",
    "query",
    "redact",
    "resolve_credentials",
    "resolve_passphrase",
    "version_info",
]
