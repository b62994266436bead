"""Tests for the local port forwarder."""

from __future__ import annotations

import asyncio
import socket
import threading

import pytest

from xsql.errors import ErrorCode, XsqlError
from xsql.proxy import PortForwarder


class _Channel:
    """Socket-backed stand-in for an SSH channel."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def recv(self, size: int) -> bytes:
        try:
            return self._sock.recv(size)
        except OSError:
            return b""

    def sendall(self, data: bytes) -> None:
        self._sock.sendall(data)

    def close(self) -> None:
        # Shutdown first so a recv blocked in another thread returns.
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


def _echo(sock: socket.socket) -> None:
    with sock:
        while True:
            try:
                data = sock.recv(1024)
            except OSError:
                return
            if not data:
                return
            sock.sendall(data)


class EchoDialer:
    def __init__(self) -> None:
        self.addresses: list[str] = []

    def dial(self, network: str, address: str) -> _Channel:
        self.addresses.append(address)
        near, far = socket.socketpair()
        threading.Thread(target=_echo, args=(far,), daemon=True).start()
        return _Channel(near)


class FailingDialer:
    def dial(self, network: str, address: str) -> _Channel:
        raise XsqlError(ErrorCode.SSH_DIAL_FAILED, "ssh dial failed", {"address": address})


@pytest.mark.anyio
async def test_forwarder_bridges_bytes() -> None:
    dialer = EchoDialer()

    async with PortForwarder(dialer, "db.internal", 5432) as forwarder:
        host, port = forwarder.local_endpoint
        reader, writer = await asyncio.open_connection(host, port)
        writer.write(b"ping")
        await writer.drain()
        data = await asyncio.wait_for(reader.readexactly(4), timeout=5)
        writer.close()
        await writer.wait_closed()

    assert data == b"ping"
    assert dialer.addresses == ["db.internal:5432"]


@pytest.mark.anyio
async def test_forwarder_reports_assigned_port() -> None:
    forwarder = PortForwarder(EchoDialer(), "db", 3306, local_port=0)
    await forwarder.start()
    try:
        host, port = forwarder.local_endpoint
        assert host == "127.0.0.1"
        assert port != 0
        assert forwarder.local_address == f"127.0.0.1:{port}"
        assert forwarder.remote_address == "db:3306"
    finally:
        await forwarder.stop()


@pytest.mark.anyio
async def test_dial_failure_closes_only_that_client() -> None:
    async with PortForwarder(FailingDialer(), "db", 3306) as forwarder:
        reader, writer = await asyncio.open_connection(*forwarder.local_endpoint)
        assert await asyncio.wait_for(reader.read(), timeout=5) == b""
        writer.close()
        assert forwarder.local_endpoint[1] != 0


@pytest.mark.anyio
async def test_listen_failure_is_internal_error() -> None:
    async with PortForwarder(EchoDialer(), "db", 3306) as first:
        _, port = first.local_endpoint
        second = PortForwarder(EchoDialer(), "db", 3306, local_port=port)
        with pytest.raises(XsqlError) as excinfo:
            await second.start()

    assert excinfo.value.code is ErrorCode.INTERNAL
    assert excinfo.value.details == {"address": f"127.0.0.1:{port}"}


def test_dialer_is_required() -> None:
    with pytest.raises(XsqlError):
        PortForwarder(None, "db", 3306)


class _IdleChannel:
    def __init__(self) -> None:
        self.closed = threading.Event()

    def close(self) -> None:
        self.closed.set()


class GatedDialer:
    """Holds each dial until ``release`` is set."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.channel = _IdleChannel()

    def dial(self, network: str, address: str) -> _IdleChannel:
        self.started.set()
        self.release.wait(5)
        return self.channel


@pytest.mark.anyio
async def test_channel_dialed_after_stop_is_closed() -> None:
    dialer = GatedDialer()
    forwarder = PortForwarder(dialer, "db", 5432)
    await forwarder.start()
    _, writer = await asyncio.open_connection(*forwarder.local_endpoint)
    assert await asyncio.to_thread(dialer.started.wait, 5)

    await forwarder.stop()
    dialer.release.set()

    assert await asyncio.to_thread(dialer.channel.closed.wait, 5)
    writer.close()
