"""asyncio transports for the WITS link.

Every transport exposes the same small surface used by ``TelemetryLink``:
``await open(timeout_s)``, ``send(text)``, ``close()`` and three handler
attributes (``on_data``, ``on_binary``, ``on_closed``). ``on_closed`` only
fires for closes the link did not ask for.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Set
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from rig.errors import LinkConnectionError
from rig.wits_link.lib.enums import Protocol
from rig.wits_link.lib.link_config import ConnectionConfig

LOG = logging.getLogger("wits_link.transport")

READ_CHUNK = 4096


def _noop(*_args) -> None:
    return None


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, ConnectionRefusedError):
        return "Connection refused - WITS server not available"
    if isinstance(exc, asyncio.TimeoutError):
        return "Connection timed out"
    return str(exc) or exc.__class__.__name__


class LinkTransport:
    def __init__(self, config: ConnectionConfig):
        self.config = config
        self.on_data: Callable[[str], None] = _noop
        self.on_binary: Callable[[bytes], None] = _noop
        self.on_closed: Callable[[Optional[BaseException]], None] = _noop
        self._closing = False

    @property
    def supports_heartbeat(self) -> bool:
        return False

    @property
    def describe(self) -> str:
        return self.config.protocol.value

    async def open(self, timeout_s: float) -> None:
        raise NotImplementedError

    def send(self, text: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def _closed_underneath(self, exc: Optional[BaseException]) -> None:
        if self._closing:
            return
        self._closing = True
        self.on_closed(exc)


class StreamTransport(LinkTransport):
    """Byte-stream transport shared by TCP sockets and serial lines."""

    def __init__(self, config: ConnectionConfig):
        super().__init__(config)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._task: Optional[asyncio.Task] = None

    async def _open_streams(self):
        raise NotImplementedError

    async def open(self, timeout_s: float) -> None:
        try:
            self._reader, self._writer = await asyncio.wait_for(self._open_streams(), timeout_s)
        except (OSError, asyncio.TimeoutError) as e:
            raise LinkConnectionError(describe_error(e)) from e
        self._task = asyncio.get_running_loop().create_task(self._read_loop())
        LOG.info("%s transport open (%s)", self.config.protocol.value.upper(), self.describe)

    async def _read_loop(self) -> None:
        exc: Optional[BaseException] = None
        try:
            while True:
                chunk = await self._reader.read(READ_CHUNK)
                if not chunk:
                    break
                self.on_data(chunk.decode("ascii", errors="replace"))
        except asyncio.CancelledError:
            raise
        except OSError as e:
            exc = e
        self._closed_underneath(exc)

    def send(self, text: str) -> None:
        if self._writer is None or self._closing:
            raise LinkConnectionError("Cannot send command: Not connected")
        self._writer.write(text.encode("ascii", errors="replace"))

    def close(self) -> None:
        self._closing = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._writer is not None:
            try:
                self._writer.close()
            except (OSError, RuntimeError) as e:
                LOG.debug("Error closing stream writer: %s", e)
        self._writer = None
        self._reader = None


class TcpTransport(StreamTransport):
    @property
    def describe(self) -> str:
        return f"{self.config.ip_address}:{self.config.port}"

    async def _open_streams(self):
        return await asyncio.open_connection(self.config.ip_address, self.config.port)


class SerialTransport(StreamTransport):
    @property
    def describe(self) -> str:
        return f"{self.config.serial_port}@{self.config.baud_rate}"

    async def _open_streams(self):
        import serial_asyncio

        return await serial_asyncio.open_serial_connection(
            url=self.config.serial_port, baudrate=self.config.baud_rate
        )


class _UdpProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: "UdpTransport"):
        self.owner = owner

    def datagram_received(self, data: bytes, addr) -> None:
        self.owner.on_data(data.decode("ascii", errors="replace"))

    def error_received(self, exc: Exception) -> None:
        LOG.warning("UDP error: %s", exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.owner._closed_underneath(exc)


class UdpTransport(LinkTransport):
    """Listens for datagrams on ``port``. Sends go to ``ip_address:port``."""

    def __init__(self, config: ConnectionConfig):
        super().__init__(config)
        self._transport: Optional[asyncio.DatagramTransport] = None

    @property
    def describe(self) -> str:
        return f"udp/{self.config.port}"

    @property
    def local_port(self) -> Optional[int]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[1]

    async def open(self, timeout_s: float) -> None:
        loop = asyncio.get_running_loop()
        try:
            self._transport, _ = await asyncio.wait_for(
                loop.create_datagram_endpoint(
                    lambda: _UdpProtocol(self), local_addr=("0.0.0.0", self.config.port)
                ),
                timeout_s,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise LinkConnectionError(describe_error(e)) from e
        LOG.info("UDP transport listening on port %s", self.local_port)

    def send(self, text: str) -> None:
        if self._transport is None or self._closing:
            raise LinkConnectionError("Cannot send command: Not connected")
        self._transport.sendto(text.encode("ascii", errors="replace"), (self.config.ip_address, self.config.port))

    def close(self) -> None:
        self._closing = True
        if self._transport is not None:
            self._transport.close()
        self._transport = None


def build_ws_url(config: ConnectionConfig) -> str:
    scheme = "ws" if config.is_local else "wss"
    endpoint = config.ws_endpoint or "/wits"
    if not endpoint.startswith("/"):
        endpoint = "/" + endpoint
    url = f"{scheme}://{config.ip_address}:{config.port}{endpoint}"
    params = []
    if config.proxy_mode:
        params += [("host", config.tcp_host or "localhost"), ("port", str(config.tcp_port)), ("protocol", "tcp")]
    if config.noralis_mode:
        params += [("noralis", "true"), ("version", str(config.wits_level.value))]
    if params:
        url += "?" + urlencode(params)
    return url


class WebSocketTransport(LinkTransport):
    def __init__(self, config: ConnectionConfig):
        super().__init__(config)
        self.url = build_ws_url(config)
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def supports_heartbeat(self) -> bool:
        return True

    @property
    def describe(self) -> str:
        return self.url

    async def open(self, timeout_s: float) -> None:
        try:
            self._ws = await websockets.connect(self.url, open_timeout=timeout_s, ping_interval=None)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise LinkConnectionError(describe_error(e)) from e
        self._task = asyncio.get_running_loop().create_task(self._read_loop())
        LOG.info("WebSocket transport open (%s)", self.url)

    async def _read_loop(self) -> None:
        exc: Optional[BaseException] = None
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    self.on_binary(message)
                else:
                    self.on_data(message)
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as e:
            exc = e
        self._closed_underneath(exc)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            LOG.debug("WebSocket write failed: %s", task.exception())

    def send(self, text: str) -> None:
        if self._ws is None or self._closing:
            raise LinkConnectionError("Cannot send command: Not connected")
        self._spawn(self._ws.send(text))

    def close(self) -> None:
        self._closing = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._ws is not None:
            self._spawn(self._ws.close())
        self._ws = None


_TRANSPORTS = {
    Protocol.TCP: TcpTransport,
    Protocol.UDP: UdpTransport,
    Protocol.SERIAL: SerialTransport,
    Protocol.WS: WebSocketTransport,
}


def create_transport(config: ConnectionConfig) -> LinkTransport:
    return _TRANSPORTS[config.protocol](config)
