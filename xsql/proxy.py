"""Local TCP listener that bridges each client to a remote address via a dialer."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .errors import ErrorCode, XsqlError, wrap

LOG = logging.getLogger(__name__)

_CHUNK = 32 * 1024


class PortForwarder:
    """Accepts local connections and pipes them through ``dialer.dial``.

    Each bridged connection runs two copy tasks; the bridge ends when either
    side closes. The dialer's channels are blocking socket-likes, so their
    reads and writes run in worker threads.
    """

    def __init__(
        self,
        dialer: Any,
        remote_host: str,
        remote_port: int,
        *,
        local_host: str = "127.0.0.1",
        local_port: int = 0,
    ) -> None:
        if dialer is None:
            raise XsqlError(ErrorCode.INTERNAL, "dialer is required")
        self._dialer = dialer
        self._remote_host = remote_host
        self._remote_port = remote_port
        self._local_host = local_host or "127.0.0.1"
        self._local_port = local_port
        self._server: asyncio.AbstractServer | None = None
        self._bridges: set[asyncio.Task[None]] = set()

    @property
    def remote_address(self) -> str:
        return f"{self._remote_host}:{self._remote_port}"

    @property
    def local_address(self) -> str:
        host, port = self.local_endpoint
        return f"{host}:{port}"

    @property
    def local_endpoint(self) -> tuple[str, int]:
        if self._server is None or not self._server.sockets:
            return self._local_host, self._local_port
        host, port = self._server.sockets[0].getsockname()[:2]
        return str(host), int(port)

    async def start(self) -> None:
        """Bind the listener; port 0 lets the OS pick one."""

        address = f"{self._local_host}:{self._local_port}"
        try:
            self._server = await asyncio.start_server(self._accept, self._local_host, self._local_port)
        except OSError as exc:
            raise wrap(ErrorCode.INTERNAL, "failed to listen on local port", exc, {"address": address}) from exc
        LOG.debug("Forwarding %s -> %s", self.local_address, self.remote_address)

    async def stop(self) -> None:
        """Stop accepting, cancel live bridges and wait for them to finish."""

        server, self._server = self._server, None
        if server is not None:
            server.close()
        bridges = list(self._bridges)
        for task in bridges:
            task.cancel()
        if bridges:
            await asyncio.gather(*bridges, return_exceptions=True)
        if server is not None:
            await server.wait_closed()

    async def __aenter__(self) -> PortForwarder:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._bridges.add(task)
            task.add_done_callback(self._bridges.discard)
        try:
            await self._bridge(reader, writer)
        finally:
            writer.close()

    async def _bridge(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        loop = asyncio.get_running_loop()
        dial = loop.run_in_executor(None, self._dialer.dial, "tcp", self.remote_address)
        try:
            channel = await asyncio.shield(dial)
        except asyncio.CancelledError:
            # The dial keeps running in its thread; close what it returns.
            dial.add_done_callback(_close_late_channel)
            raise
        except Exception as exc:
            LOG.warning("Could not reach %s: %s", self.remote_address, exc)
            return
        upstream = asyncio.create_task(_copy_to_channel(reader, channel))
        downstream = asyncio.create_task(_copy_from_channel(channel, writer))
        try:
            await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Closing the channel unblocks any worker thread still inside recv().
            channel.close()
            upstream.cancel()
            downstream.cancel()
            await asyncio.gather(upstream, downstream, return_exceptions=True)


def _close_late_channel(dial: asyncio.Future[Any]) -> None:
    if dial.cancelled() or dial.exception() is not None:
        return
    LOG.debug("Closing channel dialed after its client went away")
    dial.result().close()


async def _copy_to_channel(reader: asyncio.StreamReader, channel: Any) -> None:
    while True:
        data = await reader.read(_CHUNK)
        if not data:
            return
        await asyncio.to_thread(channel.sendall, data)


async def _copy_from_channel(channel: Any, writer: asyncio.StreamWriter) -> None:
    while True:
        data = await asyncio.to_thread(channel.recv, _CHUNK)
        if not data:
            return
        writer.write(data)
        await writer.drain()


__all__ = ["PortForwarder"]
