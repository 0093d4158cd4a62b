from pathlib import Path

import pytest

from rig.wits_link.lib.enums import Protocol, WitsLevel
from rig.wits_link.lib.link_config import ConnectionConfig


VALID_CONFIG = """
[link]
protocol = udp
ip_address = 192.168.1.20
port = 6000
wits_level = 2
retry_interval_ms = 2000
backoff_factor = 2.0
max_retry_interval_ms = 7000
noralis_mode = true

[well]
well_name = Alpha 1
rig_name = Rig 12
"""


def write_cfg(tmp_path: Path, content: str, name: str = "link_config.ini") -> str:
    p = tmp_path / name
    p.write_text(content.strip() + "\n", encoding="utf-8")
    return str(p)


def test_defaults():
    cfg = ConnectionConfig()
    assert cfg.protocol is Protocol.TCP
    assert cfg.wits_level is WitsLevel.LEVEL_0
    assert cfg.auto_connect is False
    assert cfg.auto_reconnect is True
    assert cfg.retry_interval_ms == 10000
    assert cfg.pong_timeout_ms == 10000
    assert cfg.max_missed_pongs == 3


def test_from_ini(tmp_path):
    cfg = ConnectionConfig.from_ini(write_cfg(tmp_path, VALID_CONFIG))
    assert cfg.protocol is Protocol.UDP
    assert cfg.ip_address == "192.168.1.20"
    assert cfg.port == 6000
    assert cfg.wits_level is WitsLevel.LEVEL_2
    assert cfg.noralis_mode is True
    assert cfg.well_name == "Alpha 1"
    assert cfg.rig_name == "Rig 12"
    # untouched keys keep their defaults
    assert cfg.heartbeat_interval_ms == 15000


def test_from_ini_bad_port_raises_type_error(tmp_path):
    with pytest.raises(TypeError):
        ConnectionConfig.from_ini(write_cfg(tmp_path, "[link]\nport = eighty\n"))


def test_protocol_strings_and_aliases():
    assert ConnectionConfig(protocol="SERIAL").protocol is Protocol.SERIAL
    assert ConnectionConfig(protocol="websocket").protocol is Protocol.WS
    with pytest.raises(ValueError):
        ConnectionConfig(protocol="carrier-pigeon")


@pytest.mark.parametrize(
    "changes, exc",
    [
        ({"wits_level": 3}, ValueError),
        ({"wits_level": "0"}, TypeError),
        ({"timeout_ms": 0}, ValueError),
        ({"retry_interval_ms": 1.5}, TypeError),
        ({"max_missed_pongs": -1}, ValueError),
        ({"port": 70000}, ValueError),
        ({"auto_reconnect": "yes"}, TypeError),
        ({"backoff_factor": 0.5}, ValueError),
        ({"delimiter": ""}, ValueError),
        ({"max_reconnect_attempts": -1}, ValueError),
    ],
)
def test_validation(changes, exc):
    with pytest.raises(exc):
        ConnectionConfig(**changes)


def test_merged_returns_new_instance():
    cfg = ConnectionConfig()
    new = cfg.merged(port=7000, protocol="ws")
    assert new is not cfg
    assert new.port == 7000
    assert new.protocol is Protocol.WS
    assert cfg.port == 5000


def test_merged_rejects_unknown_keys():
    with pytest.raises(ValueError):
        ConnectionConfig().merged(colour="red")


def test_config_is_frozen():
    cfg = ConnectionConfig()
    with pytest.raises(AttributeError):
        cfg.port = 1


def test_retry_delay_fixed_by_default():
    cfg = ConnectionConfig(retry_interval_ms=3000)
    assert cfg.retry_delay_ms(1) == 3000
    assert cfg.retry_delay_ms(5) == 3000


def test_retry_delay_with_backoff_is_capped():
    cfg = ConnectionConfig(retry_interval_ms=2000, backoff_factor=2.0, max_retry_interval_ms=7000)
    assert cfg.retry_delay_ms(1) == 2000
    assert cfg.retry_delay_ms(2) == 4000
    assert cfg.retry_delay_ms(3) == 7000


def test_is_local():
    assert ConnectionConfig(ip_address="localhost").is_local
    assert ConnectionConfig(ip_address="192.168.0.4").is_local
    assert not ConnectionConfig(ip_address="wits.example.com").is_local


def test_to_dict_uses_plain_values():
    d = ConnectionConfig(protocol="ws", wits_level=1).to_dict()
    assert d["protocol"] == "ws"
    assert d["wits_level"] == 1
