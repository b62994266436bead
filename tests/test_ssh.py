"""Tests for SSH option handling, key loading and error classification."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import paramiko
import pytest

from xsql import ssh
from xsql.config import SSHProxyConfig
from xsql.errors import ErrorCode, XsqlError


def test_options_from_proxy_merges_host_key_flags() -> None:
    proxy = SSHProxyConfig(host="bastion", port=0, user="ops", skip_host_key=True)

    options = ssh.SSHOptions.from_proxy(proxy, passphrase="pp")

    assert options.port == 22
    assert options.skip_known_hosts_check is True
    assert "pp" not in repr(options)


def test_expand_path_uses_home(tmp_path: Path) -> None:
    assert ssh.expand_path("~/.ssh/id_rsa", str(tmp_path)) == tmp_path / ".ssh" / "id_rsa"
    assert ssh.expand_path("/abs/key") == Path("/abs/key")


def test_unreadable_identity_file_is_config_error(tmp_path: Path) -> None:
    options = ssh.SSHOptions(host="h", identity_file=str(tmp_path / "missing"))

    with pytest.raises(XsqlError) as excinfo:
        ssh.load_private_keys(options)

    assert excinfo.value.code is ErrorCode.CFG_INVALID


def test_unparseable_identity_file_is_auth_error(tmp_path: Path) -> None:
    key = tmp_path / "id_test"
    key.write_text("not a key\n", encoding="utf-8")

    with pytest.raises(XsqlError) as excinfo:
        ssh.load_private_keys(ssh.SSHOptions(host="h", identity_file=str(key)))

    assert excinfo.value.code is ErrorCode.SSH_AUTH_FAILED


def test_no_default_keys(tmp_path: Path) -> None:
    with pytest.raises(XsqlError) as excinfo:
        ssh.load_private_keys(ssh.SSHOptions(host="h", home_dir=str(tmp_path)))

    assert excinfo.value.message == "no ssh authentication method available"


def test_missing_known_hosts_is_hostkey_error(tmp_path: Path) -> None:
    options = ssh.SSHOptions(host="h", home_dir=str(tmp_path))

    with pytest.raises(XsqlError) as excinfo:
        ssh.build_client(options)

    assert excinfo.value.code is ErrorCode.SSH_HOSTKEY_MISMATCH
    assert "--ssh-skip-known-hosts-check" in excinfo.value.message


def test_skip_known_hosts_uses_auto_add(tmp_path: Path) -> None:
    client = ssh.build_client(ssh.SSHOptions(host="h", home_dir=str(tmp_path), skip_known_hosts_check=True))

    assert isinstance(client._policy, paramiko.AutoAddPolicy)


@pytest.mark.parametrize(
    ("exc", "code"),
    [
        (paramiko.AuthenticationException("Authentication failed."), ErrorCode.SSH_AUTH_FAILED),
        (paramiko.SSHException("Server 'h' not found in known_hosts"), ErrorCode.SSH_HOSTKEY_MISMATCH),
        (OSError("connection refused"), ErrorCode.SSH_DIAL_FAILED),
    ],
)
def test_classify_connect_error(exc: Exception, code: ErrorCode) -> None:
    assert ssh.classify_connect_error(exc, "h").code is code


def test_connect_requires_host() -> None:
    with pytest.raises(XsqlError) as excinfo:
        ssh.connect_sync(ssh.SSHOptions(host=""))

    assert excinfo.value.message == "ssh host is required"


class _Transport:
    def __init__(self, active: bool = True) -> None:
        self.active = active
        self.opened: list[tuple[str, tuple[str, int]]] = []

    def is_active(self) -> bool:
        return self.active

    def open_channel(self, kind: str, dest: tuple[str, int], src: tuple[str, int], timeout: float) -> str:
        self.opened.append((kind, dest))
        return "channel"


class _Client:
    def __init__(self, transport: _Transport) -> None:
        self.transport = transport
        self.closed = 0

    def get_transport(self) -> _Transport:
        return self.transport

    def close(self) -> None:
        self.closed += 1


def test_dial_opens_direct_tcpip_channel() -> None:
    transport = _Transport()
    client = ssh.SSHClient(_Client(transport), ssh.SSHOptions(host="h"))  # type: ignore[arg-type]

    assert client.dial("tcp", "db.internal:5432") == "channel"
    assert transport.opened == [("direct-tcpip", ("db.internal", 5432))]


def test_dial_rejects_closed_transport_and_close_is_idempotent() -> None:
    inner = _Client(_Transport(active=False))
    client = ssh.SSHClient(inner, ssh.SSHOptions(host="h"))  # type: ignore[arg-type]

    with pytest.raises(XsqlError) as excinfo:
        client.dial("tcp", "db:3306")
    assert excinfo.value.code is ErrorCode.SSH_DIAL_FAILED

    client.close()
    client.close()
    assert inner.closed == 1


def _write_key(path: Path, key: paramiko.PKey) -> paramiko.PKey:
    path.parent.mkdir(parents=True, exist_ok=True)
    key.write_private_key_file(str(path))
    return key


def _record_connects(monkeypatch: pytest.MonkeyPatch, accept: str | None) -> list[str]:
    """Patch paramiko so only keys of type ``accept`` authenticate."""

    offered: list[str] = []

    def _connect(self: paramiko.SSHClient, hostname: str, **kwargs: Any) -> None:
        pkey = kwargs["pkey"]
        offered.append(pkey.get_name())
        if pkey.get_name() != accept:
            raise paramiko.AuthenticationException("Authentication failed.")

    monkeypatch.setattr(paramiko.SSHClient, "connect", _connect)
    return offered


def test_identity_file_key_reaches_connect(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    key = _write_key(tmp_path / "deploy_key", paramiko.RSAKey.generate(2048))
    seen: list[paramiko.PKey] = []

    def _connect(self: paramiko.SSHClient, hostname: str, **kwargs: Any) -> None:
        seen.append(kwargs["pkey"])

    monkeypatch.setattr(paramiko.SSHClient, "connect", _connect)
    options = ssh.SSHOptions(
        host="bastion",
        user="ops",
        identity_file=str(tmp_path / "deploy_key"),
        skip_known_hosts_check=True,
    )

    client = ssh.connect_sync(options)

    assert isinstance(client, ssh.SSHClient)
    assert client.address == "bastion:22"
    assert [pkey.get_fingerprint() for pkey in seen] == [key.get_fingerprint()]


def test_default_keys_are_tried_in_order(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_key(tmp_path / ".ssh" / "id_rsa", paramiko.RSAKey.generate(2048))
    _write_key(tmp_path / ".ssh" / "id_ecdsa", paramiko.ECDSAKey.generate())
    offered = _record_connects(monkeypatch, accept="ecdsa-sha2-nistp256")

    client = ssh.connect_sync(ssh.SSHOptions(host="bastion", home_dir=str(tmp_path), skip_known_hosts_check=True))

    assert isinstance(client, ssh.SSHClient)
    assert offered == ["ssh-rsa", "ecdsa-sha2-nistp256"]


def test_auth_fails_only_after_every_default_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_key(tmp_path / ".ssh" / "id_rsa", paramiko.RSAKey.generate(2048))
    _write_key(tmp_path / ".ssh" / "id_ecdsa", paramiko.ECDSAKey.generate())
    offered = _record_connects(monkeypatch, accept=None)

    with pytest.raises(XsqlError) as excinfo:
        ssh.connect_sync(ssh.SSHOptions(host="bastion", home_dir=str(tmp_path), skip_known_hosts_check=True))

    assert excinfo.value.code is ErrorCode.SSH_AUTH_FAILED
    assert offered == ["ssh-rsa", "ecdsa-sha2-nistp256"]
