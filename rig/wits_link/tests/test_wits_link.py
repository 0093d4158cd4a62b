import asyncio
import json

import pytest

from rig.errors import LinkConnectionError
from rig.events import TOPIC_CONNECTION_STATE, TOPIC_ERROR, TOPIC_SAMPLE, EventHub
from rig.wits_link.lib.enums import ConnectionState
from rig.wits_link.lib.link_config import ConnectionConfig
from rig.wits_link.lib.wits_link import TelemetryLink


class FakeTransport:
    def __init__(self, config, fail=False, heartbeat=False, hang=False):
        self.config = config
        self.fail = fail
        self.hang = hang
        self.supports_heartbeat = heartbeat
        self.describe = "fake"
        self.sent = []
        self.opened = False
        self.closed = False
        self.on_data = lambda text: None
        self.on_binary = lambda data: None
        self.on_closed = lambda exc: None

    async def open(self, timeout_s):
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail:
            raise LinkConnectionError("Connection refused - WITS server not available")
        self.opened = True

    def send(self, text):
        if self.closed:
            raise LinkConnectionError("Cannot send command: Not connected")
        self.sent.append(text)

    def close(self):
        self.closed = True

    # test helpers
    def drop(self, exc=None):
        self.on_closed(exc)


class FakeFactory:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.created = []

    def __call__(self, config):
        t = FakeTransport(config, **self.kwargs)
        self.created.append(t)
        return t

    @property
    def last(self):
        return self.created[-1]


def make_link(factory, **cfg):
    base = dict(timeout_ms=100, retry_interval_ms=30, data_timeout_ms=0)
    base.update(cfg)
    hub = EventHub()
    states, samples, errors = [], [], []
    hub.subscribe(TOPIC_CONNECTION_STATE, states.append)
    hub.subscribe(TOPIC_SAMPLE, samples.append)
    hub.subscribe(TOPIC_ERROR, errors.append)
    link = TelemetryLink(ConnectionConfig(**base), hub=hub, transport_factory=factory)
    return link, states, samples, errors


def test_connect_and_first_sample_moves_to_receiving():
    async def scenario():
        factory = FakeFactory()
        link, states, samples, _ = make_link(factory)
        assert await link.connect() is True
        assert link.state is ConnectionState.CONNECTED

        factory.last.on_data("1=1500\t9=80\r\n")
        assert link.state is ConnectionState.RECEIVING
        assert samples[0].number(9) == 80.0
        assert link.latest_sample is samples[0]
        link.disconnect()
        return states

    states = asyncio.run(scenario())
    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.RECEIVING,
        ConnectionState.DISCONNECTED,
    ]


def test_connect_is_noop_when_already_connected():
    async def scenario():
        factory = FakeFactory()
        link, _, _, _ = make_link(factory)
        await link.connect()
        assert await link.connect() is True
        link.disconnect()
        return len(factory.created)

    assert asyncio.run(scenario()) == 1


def test_samples_are_delivered_in_arrival_order():
    async def scenario():
        factory = FakeFactory()
        link, _, samples, _ = make_link(factory)
        await link.connect()
        factory.last.on_data("1=1\r\n1=2\r\n1=")
        factory.last.on_data("3\r\n")
        link.disconnect()
        return [s.number(1) for s in samples]

    assert asyncio.run(scenario()) == [1.0, 2.0, 3.0]


def test_close_schedules_exactly_one_reconnect():
    async def scenario():
        factory = FakeFactory()
        link, states, _, _ = make_link(factory, retry_interval_ms=50)
        await link.connect()
        first = factory.last

        first.drop(ConnectionResetError("reset"))
        assert link.state is ConnectionState.RECONNECTING
        assert link.reconnect_pending
        # a second close before the retry fires must not stack another timer
        first.drop(ConnectionResetError("reset again"))
        link._handle_loss()
        assert link.reconnect_attempts == 1

        await asyncio.sleep(0.2)
        state = link.state
        created = len(factory.created)
        link.disconnect()
        return state, created

    state, created = asyncio.run(scenario())
    assert state is ConnectionState.CONNECTED
    assert created == 2


def test_close_without_auto_reconnect_disconnects():
    async def scenario():
        factory = FakeFactory()
        link, _, _, errors = make_link(factory, auto_reconnect=False)
        await link.connect()
        factory.last.drop(ConnectionResetError("reset"))
        return link.state, link.reconnect_pending, errors

    state, pending, errors = asyncio.run(scenario())
    assert state is ConnectionState.DISCONNECTED
    assert pending is False
    assert errors[0].kind == "connection"


def test_refused_connection_reports_error_and_gives_up_after_cap():
    async def scenario():
        factory = FakeFactory(fail=True)
        link, states, _, errors = make_link(factory, retry_interval_ms=10, max_reconnect_attempts=2)
        assert await link.connect() is False
        await asyncio.sleep(0.2)
        return link, states, errors, factory

    link, states, errors, factory = asyncio.run(scenario())
    assert link.state is ConnectionState.DISCONNECTED
    assert len(factory.created) == 3
    assert errors[0].message == "Connection refused - WITS server not available"
    assert "Maximum reconnection attempts" in errors[-1].message
    assert states.count(ConnectionState.RECONNECTING) == 2


def test_disconnect_cancels_pending_reconnect():
    async def scenario():
        factory = FakeFactory()
        link, _, _, _ = make_link(factory, retry_interval_ms=30)
        await link.connect()
        factory.last.drop(None)
        assert link.reconnect_pending
        link.disconnect()
        assert not link.reconnect_pending
        await asyncio.sleep(0.1)
        return link.state, len(factory.created)

    state, created = asyncio.run(scenario())
    assert state is ConnectionState.DISCONNECTED
    assert created == 1


def test_disconnect_cancels_in_flight_connect():
    async def scenario():
        factory = FakeFactory(hang=True)
        link, _, _, _ = make_link(factory, timeout_ms=5000)
        task = asyncio.get_running_loop().create_task(link.connect())
        await asyncio.sleep(0.01)
        assert link.state is ConnectionState.CONNECTING
        link.disconnect()
        result = await task
        return result, link.state, factory.last.closed

    result, state, closed = asyncio.run(scenario())
    assert result is False
    assert state is ConnectionState.DISCONNECTED
    assert closed is True


def test_heartbeat_pong_resets_missed_counter():
    async def scenario():
        factory = FakeFactory(heartbeat=True)
        link, _, _, _ = make_link(factory, heartbeat_interval_ms=20, pong_timeout_ms=15, max_missed_pongs=3)
        await link.connect()
        t = factory.last
        await asyncio.sleep(0.04)
        t.on_data(json.dumps({"type": "pong", "timestamp": 1}))
        missed = link.missed_pongs
        link.disconnect()
        return missed, [json.loads(m) for m in t.sent]

    missed, sent = asyncio.run(scenario())
    assert missed == 0
    assert sent[0]["type"] == "ping"
    assert sent[-1] == {"type": "disconnect", "command": "disconnect"}


def test_missed_pongs_force_reconnect():
    async def scenario():
        factory = FakeFactory(heartbeat=True)
        link, _, _, errors = make_link(
            factory, heartbeat_interval_ms=10000, pong_timeout_ms=10, max_missed_pongs=3, retry_interval_ms=10000
        )
        await link.connect()
        first = factory.last
        seen = []
        for _ in range(3):
            # one unanswered ping per round
            link._send_ping()
            await asyncio.sleep(0.03)
            seen.append((link.state, link.missed_pongs, first.closed, len(errors)))
        link.disconnect()
        return seen, errors

    seen, errors = asyncio.run(scenario())
    assert seen[0] == (ConnectionState.CONNECTED, 1, False, 0)
    assert seen[1] == (ConnectionState.CONNECTED, 2, False, 0)
    state, _, closed, n_errors = seen[2]
    assert state is ConnectionState.RECONNECTING
    assert closed is True
    assert n_errors == 1
    assert errors[0].kind == "heartbeat"


def test_server_ping_is_answered_with_pong():
    async def scenario():
        factory = FakeFactory(heartbeat=True)
        link, _, samples, _ = make_link(factory, heartbeat_interval_ms=10000)
        await link.connect()
        factory.last.on_data('{"type": "ping", "timestamp": 99}')
        sent = list(factory.last.sent)
        link.disconnect()
        return sent, samples

    sent, samples = asyncio.run(scenario())
    assert json.loads(sent[0])["type"] == "pong"
    assert samples == []


def test_data_watchdog_forces_reconnect():
    async def scenario():
        factory = FakeFactory()
        link, _, _, errors = make_link(factory, data_timeout_ms=30, retry_interval_ms=10000)
        await link.connect()
        await asyncio.sleep(0.1)
        state = link.state
        link.disconnect()
        return state, errors

    state, errors = asyncio.run(scenario())
    assert state is ConnectionState.RECONNECTING
    assert errors[0].kind == "timeout"


def test_update_config_applies_on_next_connect():
    async def scenario():
        factory = FakeFactory()
        link, _, _, _ = make_link(factory)
        await link.connect()
        link.update_config(port=6001)
        port_while_connected = factory.last.config.port
        link.disconnect()
        await link.connect()
        port_after = factory.last.config.port
        link.disconnect()
        return port_while_connected, port_after

    assert asyncio.run(scenario()) == (5000, 6001)


def test_update_config_rejects_unknown_option():
    link = TelemetryLink(transport_factory=FakeFactory())
    with pytest.raises(ValueError):
        link.update_config(speed=3)


def test_test_connection_does_not_touch_state():
    async def scenario():
        ok_link, states, _, _ = make_link(FakeFactory())
        ok = await ok_link.test_connection(timeout_ms=50)
        bad_link, _, _, _ = make_link(FakeFactory(fail=True))
        bad = await bad_link.test_connection(timeout_ms=50)
        return ok, bad, ok_link.state, states

    ok, bad, state, states = asyncio.run(scenario())
    assert ok is True
    assert bad is False
    assert state is ConnectionState.DISCONNECTED
    assert states == []


def test_send_command_framing():
    async def scenario():
        factory = FakeFactory()
        link, _, _, errors = make_link(factory)
        not_connected = link.send_command("reset")
        await link.connect()
        ok = link.send_command("set_rate", {"hz": 1})
        sent = factory.last.sent
        link.disconnect()
        return not_connected, ok, sent, errors

    not_connected, ok, sent, errors = asyncio.run(scenario())
    assert not_connected is False
    assert errors[0].message == "Cannot send command: Not connected"
    assert ok is True
    assert sent == ['{"command":"set_rate","params":{"hz":1}}\r\n']
