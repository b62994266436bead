"""Config file loading and CLI/environment/file precedence resolution."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ErrorCode, XsqlError, wrap

LOG = logging.getLogger(__name__)

CONFIG_FILENAME = "xsql.yaml"
PROFILE_ENV = "XSQL_PROFILE"
FORMAT_ENV = "XSQL_FORMAT"
DEFAULT_PROFILE = "default"
DEFAULT_PORTS = {"mysql": 3306, "pg": 5432}


class SSHProxyConfig(BaseModel):
    """Reusable SSH endpoint referenced by profiles through ``ssh_proxy``."""

    model_config = ConfigDict(extra="ignore")

    host: str = ""
    port: int = 22
    user: str = ""
    identity_file: str = ""
    passphrase: str = ""
    known_hosts_file: str = ""
    skip_host_key: bool = False


class ProfileConfig(BaseModel):
    """A named database target stored under ``profiles``."""

    model_config = ConfigDict(extra="ignore")

    description: str = ""
    format: str = ""
    db: str = ""
    dsn: str = ""
    host: str = ""
    port: int = 0
    user: str = ""
    password: str = ""
    database: str = ""
    unsafe_allow_write: bool = False
    allow_plaintext: bool = False
    ssh_proxy: str = ""
    # Filled in by resolution; never read from the file.
    ssh_config: SSHProxyConfig | None = Field(default=None, exclude=True)

    @property
    def mode(self) -> str:
        return "read-write" if self.unsafe_allow_write else "read-only"


class MCPHTTPConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    addr: str = ""
    auth_token: str = ""
    allow_plaintext_token: bool = False


class MCPConfig(BaseModel):
    """Tool-server stanza."""

    model_config = ConfigDict(extra="ignore")

    transport: str = ""
    http: MCPHTTPConfig = Field(default_factory=MCPHTTPConfig)


class ConfigFile(BaseModel):
    """Shape of ``xsql.yaml``."""

    model_config = ConfigDict(extra="ignore")

    profiles: dict[str, ProfileConfig] = Field(default_factory=dict)
    ssh_proxies: dict[str, SSHProxyConfig] = Field(default_factory=dict)
    mcp: MCPConfig = Field(default_factory=MCPConfig)

    def profile_names(self) -> list[str]:
        return sorted(self.profiles)


@dataclass(frozen=True, slots=True)
class ResolveOptions:
    """Inputs to :func:`resolve`. ``None`` CLI values mean "flag not given"."""

    config_path: str | None = None
    cli_profile: str | None = None
    cli_format: str | None = None
    env_profile: str = ""
    env_format: str = ""
    work_dir: str = ""
    home_dir: str = ""

    @classmethod
    def from_environ(
        cls,
        *,
        config_path: str | None = None,
        cli_profile: str | None = None,
        cli_format: str | None = None,
        environ: dict[str, str] | None = None,
    ) -> ResolveOptions:
        env = os.environ if environ is None else environ
        return cls(
            config_path=config_path,
            cli_profile=cli_profile,
            cli_format=cli_format,
            env_profile=env.get(PROFILE_ENV, ""),
            env_format=env.get(FORMAT_ENV, ""),
        )


@dataclass(frozen=True, slots=True)
class Resolved:
    """Result of config resolution for one invocation."""

    config: ConfigFile = field(default_factory=ConfigFile)
    config_path: str = ""
    profile_name: str = ""
    format: str = "auto"
    profile: ProfileConfig | None = None


def read_config(path: Path) -> ConfigFile:
    """Read and validate one config file."""

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise XsqlError(ErrorCode.CFG_NOT_FOUND, "config file not found", {"path": str(path)}) from None
    except (OSError, UnicodeDecodeError) as exc:
        raise wrap(ErrorCode.CFG_INVALID, "failed to read config file", exc, {"path": str(path)}) from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise wrap(ErrorCode.CFG_INVALID, "invalid config file", exc, {"path": str(path)}) from exc
    if raw is None:
        return ConfigFile()
    if not isinstance(raw, dict):
        raise XsqlError(ErrorCode.CFG_INVALID, "invalid config file", {"path": str(path)})
    try:
        return ConfigFile.model_validate(_drop_nulls(raw))
    except ValidationError as exc:
        raise wrap(ErrorCode.CFG_INVALID, "invalid config file", exc, {"path": str(path)}) from exc


def default_config_paths(work_dir: str, home_dir: str) -> list[Path]:
    paths: list[Path] = []
    if work_dir:
        paths.append(Path(work_dir) / CONFIG_FILENAME)
    if home_dir:
        paths.append(Path(home_dir) / ".config" / "xsql" / CONFIG_FILENAME)
    return paths


def load_config(config_path: str | None, *, work_dir: str = "", home_dir: str = "") -> tuple[ConfigFile, str]:
    """Load the explicit config file, or probe the default locations.

    Returns the parsed file and its absolute path. Probing finds nothing
    without error, yielding an empty config and an empty path.
    """

    work = work_dir or os.getcwd()
    if config_path is not None:
        if not config_path:
            raise XsqlError(ErrorCode.CFG_INVALID, "config path is empty")
        path = Path(config_path).expanduser()
        if not path.is_absolute():
            path = Path(work) / path
        return read_config(path), str(path)

    home = home_dir or str(Path.home())
    for candidate in default_config_paths(work, home):
        try:
            config = read_config(candidate)
        except XsqlError as exc:
            if exc.code is ErrorCode.CFG_NOT_FOUND:
                continue
            raise
        LOG.debug("Loaded config from %s", candidate)
        return config, str(candidate)
    return ConfigFile(), ""


def resolve_profile(config: ConfigFile, name: str) -> ProfileConfig:
    """Return a copy of profile ``name`` with its SSH proxy inlined and port defaulted."""

    try:
        profile = config.profiles[name]
    except KeyError:
        raise XsqlError(
            ErrorCode.CFG_INVALID,
            "profile not found",
            {"profile": name, "reason": "profile_not_found"},
        ) from None
    updates: dict[str, Any] = {}
    if profile.ssh_proxy:
        proxy = config.ssh_proxies.get(profile.ssh_proxy)
        if proxy is None:
            raise XsqlError(
                ErrorCode.CFG_INVALID,
                "ssh_proxy not found",
                {"profile": name, "ssh_proxy": profile.ssh_proxy},
            )
        updates["ssh_config"] = proxy.model_copy()
    if not profile.port and profile.db in DEFAULT_PORTS:
        updates["port"] = DEFAULT_PORTS[profile.db]
    return profile.model_copy(update=updates)


def resolve(options: ResolveOptions) -> Resolved:
    """Load config and apply CLI > ENV > file > default precedence."""

    config, path = load_config(options.config_path, work_dir=options.work_dir, home_dir=options.home_dir)

    if options.cli_profile is not None:
        name = options.cli_profile
    elif options.env_profile:
        name = options.env_profile
    elif DEFAULT_PROFILE in config.profiles:
        name = DEFAULT_PROFILE
    else:
        name = ""

    profile = resolve_profile(config, name) if name and name in config.profiles else None

    fmt = "auto"
    if profile is not None and profile.format:
        fmt = profile.format
    if options.env_format:
        fmt = options.env_format
    if options.cli_format is not None:
        fmt = options.cli_format

    return Resolved(config=config, config_path=path, profile_name=name, format=fmt, profile=profile)


def require_profile(resolved: Resolved) -> ProfileConfig:
    """Return the selected profile or fail the way database commands expect."""

    if not resolved.profile_name:
        raise XsqlError(ErrorCode.CFG_INVALID, "profile is required", {"reason": "profile_required"})
    if resolved.profile is None:
        raise XsqlError(
            ErrorCode.CFG_INVALID,
            "profile not found",
            {"profile": resolved.profile_name, "reason": "profile_not_found"},
        )
    if not resolved.profile.db:
        raise XsqlError(ErrorCode.CFG_INVALID, "db type is required (mysql|pg)")
    return resolved.profile


def _drop_nulls(value: Any) -> Any:
    # `key:` with no value parses as None; treat it like an absent key.
    if isinstance(value, dict):
        return {key: _drop_nulls(item) for key, item in value.items() if item is not None}
    return value


__all__ = [
    "CONFIG_FILENAME",
    "ConfigFile",
    "DEFAULT_PORTS",
    "FORMAT_ENV",
    "MCPConfig",
    "MCPHTTPConfig",
    "PROFILE_ENV",
    "ProfileConfig",
    "ResolveOptions",
    "Resolved",
    "SSHProxyConfig",
    "default_config_paths",
    "load_config",
    "read_config",
    "require_profile",
    "resolve",
    "resolve_profile",
]
