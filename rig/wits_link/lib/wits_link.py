"""Resilient WITS telemetry link.

``TelemetryLink`` owns one transport at a time and drives it through the
connection state machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> RECEIVING
                         ^             |           |
                         |             v           v
                         +------- RECONNECTING <---+

All work happens on the running asyncio loop. Heartbeat, pong timeout,
reconnect delay and the data watchdog are each a single ``TimerSlot``; arming
one replaces its previous handle.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

from rig.errors import LinkConnectionError, LinkError
from rig.events import TOPIC_CONNECTION_STATE, TOPIC_ERROR, TOPIC_SAMPLE, EventHub
from rig.timers import TickerSlot, TimerSlot
from rig.wits_link.lib.enums import ConnectionState, FrameType
from rig.wits_link.lib.link_config import ConnectionConfig
from rig.wits_link.lib.transports import LinkTransport, create_transport, describe_error
from rig.wits_link.lib.wits_parser import (
    ChannelMap,
    RecordFramer,
    TelemetrySample,
    WitsRecordParser,
    control_frame,
    parse_control_frame,
)

LOG = logging.getLogger("wits_link.link")

TransportFactory = Callable[[ConnectionConfig], LinkTransport]


def _now_ms() -> int:
    return int(time.time() * 1000)


class TelemetryLink:
    def __init__(
        self,
        config: Optional[ConnectionConfig] = None,
        channel_map: Optional[ChannelMap] = None,
        hub: Optional[EventHub] = None,
        transport_factory: TransportFactory = create_transport,
    ):
        self._config = config if config is not None else ConnectionConfig()
        self.channel_map = channel_map if channel_map is not None else ChannelMap()
        self.hub = hub if hub is not None else EventHub()
        self._factory = transport_factory

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[LinkTransport] = None
        self._framer: Optional[RecordFramer] = None
        self._parser: Optional[WitsRecordParser] = None
        self._latest_sample: Optional[TelemetrySample] = None

        self._attempts = 0
        self._missed_pongs = 0
        self._generation = 0
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._last_ping_ms: Optional[int] = None
        self._last_data_ms: Optional[int] = None
        self.last_latency_ms: Optional[int] = None

        self._heartbeat = TickerSlot("heartbeat")
        self._pong_timeout = TimerSlot("pong_timeout")
        self._reconnect = TimerSlot("reconnect")
        self._watchdog = TimerSlot("data_watchdog")

    # ---------------------
    # Read access
    # ---------------------
    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def latest_sample(self) -> Optional[TelemetrySample]:
        return self._latest_sample

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def missed_pongs(self) -> int:
        return self._missed_pongs

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect.active

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "protocol": self._config.protocol.value,
            "attempts": self._attempts,
            "maxAttempts": self._config.max_reconnect_attempts,
            "missedPongs": self._missed_pongs,
            "latencyMs": self.last_latency_ms,
            "lastDataMs": self._last_data_ms,
        }

    # ---------------------
    # Operations
    # ---------------------
    def start(self) -> Optional[asyncio.Task]:
        """Kick off a connect when ``auto_connect`` is set. Needs a running loop."""
        if not self._config.auto_connect:
            return None
        return asyncio.get_running_loop().create_task(self.connect())

    async def connect(self, config: Optional[ConnectionConfig] = None) -> bool:
        if config is not None:
            if not isinstance(config, ConnectionConfig):
                raise TypeError("config must be a ConnectionConfig")
            self._config = config
        if self._state.is_open:
            LOG.debug("connect() ignored, link already %s", self._state.value)
            return True
        if self._state is ConnectionState.CONNECTING:
            LOG.debug("connect() ignored, connection attempt in flight")
            return False
        self._reconnect.cancel()
        self._attempts = 0
        return await self._open()

    def disconnect(self) -> None:
        self._generation += 1
        self._cancel_timers()
        self._reconnect.cancel()
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None

        transport = self._transport
        if transport is not None:
            if transport.supports_heartbeat:
                try:
                    transport.send(control_frame(FrameType.DISCONNECT))
                except LinkConnectionError as e:
                    LOG.debug("Could not send disconnect frame: %s", e)
            self._detach()
            transport.close()

        self._attempts = 0
        self._missed_pongs = 0
        self._set_state(ConnectionState.DISCONNECTED)

    def update_config(self, **changes: Any) -> ConnectionConfig:
        """Merge ``changes`` into a new config, used from the next connect()."""
        self._config = self._config.merged(**changes)
        LOG.info("Link config updated: %s", ", ".join(sorted(changes)) or "no changes")
        return self._config

    async def test_connection(self, timeout_ms: int = 5000) -> bool:
        transport = self._factory(self._config)
        try:
            await transport.open(timeout_ms / 1000.0)
        except LinkConnectionError as e:
            LOG.info("Connection test to %s failed: %s", transport.describe, e)
            return False
        finally:
            transport.close()
        LOG.info("Connection test to %s succeeded", transport.describe)
        return True

    def send_command(self, command: str, params: Optional[Mapping[str, Any]] = None) -> bool:
        if not isinstance(command, str) or not command:
            raise ValueError("command must be a non-empty string")
        transport = self._transport
        if transport is None or not self._state.is_open:
            self._publish_error("command", "Cannot send command: Not connected")
            return False
        payload = json.dumps({"command": command, "params": dict(params or {})}, separators=(",", ":"))
        if not transport.supports_heartbeat:
            payload += self._config.delimiter
        try:
            transport.send(payload)
        except LinkConnectionError as e:
            self._publish_error("command", str(e))
            return False
        LOG.debug("Sent command %s", command)
        return True

    # ---------------------
    # Connection lifecycle
    # ---------------------
    async def _open(self) -> bool:
        self._generation += 1
        gen = self._generation
        cfg = self._config
        self._set_state(ConnectionState.CONNECTING)

        transport = self._factory(cfg)
        task = asyncio.get_running_loop().create_task(transport.open(cfg.timeout_ms / 1000.0))
        self._connect_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            transport.close()
            if gen == self._generation:
                self._connect_task = None
                self._set_state(ConnectionState.DISCONNECTED)
            raise

        if self._connect_task is task:
            self._connect_task = None
        if gen != self._generation or task.cancelled():
            transport.close()
            return False

        exc = task.exception()
        if exc is not None:
            transport.close()
            msg = describe_error(exc)
            LOG.warning("Connection to %s failed: %s", transport.describe, msg)
            self._publish_error("connection", msg)
            self._handle_loss()
            return False

        self._attach(transport)
        return True

    def _attach(self, transport: LinkTransport) -> None:
        cfg = self._config
        self._transport = transport
        self._framer = RecordFramer(cfg.delimiter)
        self._parser = WitsRecordParser.from_config(cfg, self.channel_map)
        transport.on_data = lambda text: self._on_data(transport, text)
        transport.on_binary = lambda data: self._on_binary(transport, data)
        transport.on_closed = lambda exc: self._on_transport_closed(transport, exc)

        self._attempts = 0
        self._missed_pongs = 0
        self._set_state(ConnectionState.CONNECTED)
        if transport.supports_heartbeat:
            self._heartbeat.start(cfg.heartbeat_interval_ms, self._send_ping)
        self._arm_watchdog()

    def _detach(self) -> Optional[LinkTransport]:
        transport = self._transport
        if transport is not None:
            transport.on_data = lambda _text: None
            transport.on_binary = lambda _data: None
            transport.on_closed = lambda _exc: None
        self._transport = None
        self._framer = None
        self._parser = None
        return transport

    def _cancel_timers(self) -> None:
        self._heartbeat.stop()
        self._pong_timeout.cancel()
        self._watchdog.cancel()

    def _on_transport_closed(self, transport: LinkTransport, exc: Optional[BaseException]) -> None:
        if transport is not self._transport:
            return
        if exc is not None:
            self._publish_error("connection", describe_error(exc))
        else:
            LOG.info("Transport %s closed by peer", transport.describe)
        self._detach()
        self._handle_loss()

    def _force_close(self) -> None:
        transport = self._detach()
        if transport is not None:
            transport.close()
        self._handle_loss()

    def _handle_loss(self) -> None:
        self._cancel_timers()
        if self._config.auto_reconnect:
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.DISCONNECTED)

    def _schedule_reconnect(self) -> None:
        if self._reconnect.active:
            LOG.debug("Reconnect already pending")
            return
        cfg = self._config
        if self._attempts >= cfg.max_reconnect_attempts:
            LOG.error("Giving up after %d reconnection attempts", self._attempts)
            self._publish_error("connection", f"Maximum reconnection attempts ({cfg.max_reconnect_attempts}) reached")
            self._attempts = 0
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._attempts += 1
        delay = cfg.retry_delay_ms(self._attempts)
        LOG.info(
            "Reconnecting in %.0f ms (attempt %d/%d)", delay, self._attempts, cfg.max_reconnect_attempts
        )
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect.arm(delay, self._reconnect_due)

    def _reconnect_due(self) -> None:
        if self._state is not ConnectionState.RECONNECTING:
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._open())

    # ---------------------
    # Incoming data
    # ---------------------
    def _on_data(self, transport: LinkTransport, text: str) -> None:
        if transport is not self._transport:
            return
        self._last_data_ms = _now_ms()
        self._arm_watchdog()

        if transport.supports_heartbeat:
            frame = parse_control_frame(text)
            if frame is not None:
                self._on_control(transport, frame)
                return
            if not text.endswith(self._config.delimiter):
                text += self._config.delimiter

        for record in self._framer.feed(text):
            sample = self._parser.parse(record)
            if sample is None:
                continue
            self._latest_sample = sample
            if self._state is ConnectionState.CONNECTED:
                self._set_state(ConnectionState.RECEIVING)
            self.hub.publish(TOPIC_SAMPLE, sample)
            if transport is not self._transport:
                # a subscriber disconnected us mid-batch
                return

    def _on_binary(self, transport: LinkTransport, data: bytes) -> None:
        if transport is not self._transport:
            return
        self._last_data_ms = _now_ms()
        self._arm_watchdog()
        LOG.debug("Ignoring binary frame of %d bytes", len(data))

    def _on_control(self, transport: LinkTransport, frame: Dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == FrameType.PONG.value:
            self._missed_pongs = 0
            self._pong_timeout.cancel()
            if self._last_ping_ms is not None:
                self.last_latency_ms = max(0, _now_ms() - self._last_ping_ms)
            LOG.debug("Pong received, latency %s ms", self.last_latency_ms)
        elif kind == FrameType.PING.value:
            try:
                transport.send(control_frame(FrameType.PONG, _now_ms()))
            except LinkConnectionError as e:
                LOG.debug("Could not answer ping: %s", e)
        elif kind == FrameType.DISCONNECT.value:
            LOG.info("Server requested disconnect")
            self._force_close()

    # ---------------------
    # Timers
    # ---------------------
    def _send_ping(self) -> None:
        transport = self._transport
        if transport is None:
            return
        now = _now_ms()
        try:
            transport.send(control_frame(FrameType.PING, now))
        except LinkConnectionError as e:
            LOG.warning("Failed to send ping: %s", e)
            return
        self._last_ping_ms = now
        self._pong_timeout.arm(self._config.pong_timeout_ms, self._pong_missed)

    def _pong_missed(self) -> None:
        if self._transport is None:
            return
        self._missed_pongs += 1
        limit = self._config.max_missed_pongs
        LOG.warning("Missed pong response (%d/%d)", self._missed_pongs, limit)
        if self._missed_pongs >= limit:
            self._publish_error("heartbeat", f"Connection unstable: Missed {limit} heartbeat responses")
            self._force_close()

    def _arm_watchdog(self) -> None:
        timeout = self._config.data_timeout_ms
        if timeout > 0 and self._transport is not None:
            self._watchdog.arm(timeout, self._data_timed_out)

    def _data_timed_out(self) -> None:
        if self._transport is None:
            return
        self._publish_error("timeout", f"No data received for {self._config.data_timeout_ms} ms")
        self._force_close()

    # ---------------------
    # Events
    # ---------------------
    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        LOG.info("Link state %s -> %s", self._state.value, state.value)
        self._state = state
        self.hub.publish(TOPIC_CONNECTION_STATE, state)

    def _publish_error(self, kind: str, message: str) -> None:
        LOG.warning("Link error (%s): %s", kind, message)
        self.hub.publish(TOPIC_ERROR, LinkError(kind, message))
