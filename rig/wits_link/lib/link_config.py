"""Connection settings for the WITS telemetry link."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, Union

from rig.wits_link.lib.configparser import WitsLinkParser
from rig.wits_link.lib.enums import Protocol, WitsLevel

LOG = logging.getLogger("wits_link.config")

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")

_POSITIVE_INTS = (
    "timeout_ms",
    "retry_interval_ms",
    "heartbeat_interval_ms",
    "pong_timeout_ms",
    "max_missed_pongs",
    "max_retry_interval_ms",
    "baud_rate",
)
_NON_NEGATIVE_INTS = ("max_reconnect_attempts", "data_timeout_ms")
_PORTS = ("port", "tcp_port")
_BOOLS = ("auto_connect", "auto_reconnect", "proxy_mode", "noralis_mode")
_STRINGS = ("ip_address", "serial_port", "tcp_host", "ws_endpoint", "well_id", "well_name", "rig_name")


@dataclass(frozen=True)
class ConnectionConfig:
    """Immutable link settings.

    Instances are validated on construction and replaced as a whole through
    :meth:`merged`; nothing mutates a live config in place.
    """

    protocol: Union[Protocol, str] = Protocol.TCP
    ip_address: str = "localhost"
    port: int = 5000
    serial_port: str = "/dev/ttyUSB0"
    baud_rate: int = 9600
    wits_level: Union[WitsLevel, int] = WitsLevel.LEVEL_0
    auto_connect: bool = False
    auto_reconnect: bool = True
    timeout_ms: int = 5000
    retry_interval_ms: int = 10000
    max_reconnect_attempts: int = 100
    backoff_factor: float = 1.0
    max_retry_interval_ms: int = 60000
    heartbeat_interval_ms: int = 15000
    pong_timeout_ms: int = 10000
    max_missed_pongs: int = 3
    data_timeout_ms: int = 300000
    proxy_mode: bool = False
    tcp_host: str = "localhost"
    tcp_port: int = 5000
    ws_endpoint: str = "/wits"
    delimiter: str = "\r\n"
    noralis_mode: bool = False
    well_id: str = ""
    well_name: str = ""
    rig_name: str = ""
    sensor_offset: float = 0.0

    def __post_init__(self) -> None:
        if isinstance(self.protocol, str):
            object.__setattr__(self, "protocol", Protocol.parse(self.protocol))
        elif not isinstance(self.protocol, Protocol):
            raise TypeError("protocol must be a Protocol or string")

        level = self.wits_level
        if not isinstance(level, WitsLevel):
            if isinstance(level, bool) or not isinstance(level, int):
                raise TypeError("wits_level must be an integer 0, 1 or 2")
            try:
                level = WitsLevel(level)
            except ValueError as exc:
                raise ValueError("wits_level must be 0, 1 or 2") from exc
            object.__setattr__(self, "wits_level", level)

        for name in _POSITIVE_INTS:
            val = getattr(self, name)
            if isinstance(val, bool) or not isinstance(val, int):
                raise TypeError(f"{name} must be a positive integer")
            if val <= 0:
                raise ValueError(f"{name} must be a positive integer")

        for name in _NON_NEGATIVE_INTS:
            val = getattr(self, name)
            if isinstance(val, bool) or not isinstance(val, int):
                raise TypeError(f"{name} must be a non-negative integer")
            if val < 0:
                raise ValueError(f"{name} must be a non-negative integer")

        for name in _PORTS:
            val = getattr(self, name)
            if isinstance(val, bool) or not isinstance(val, int):
                raise TypeError(f"{name} must be an integer")
            if not 0 <= val <= 65535:
                raise ValueError(f"{name} must be between 0 and 65535")

        for name in _BOOLS:
            if not isinstance(getattr(self, name), bool):
                raise TypeError(f"{name} must be a boolean")

        for name in _STRINGS:
            if not isinstance(getattr(self, name), str):
                raise TypeError(f"{name} must be a string")

        if not isinstance(self.delimiter, str) or not self.delimiter:
            raise ValueError("delimiter must be a non-empty string")

        bf = self.backoff_factor
        if isinstance(bf, bool) or not isinstance(bf, (int, float)):
            raise TypeError("backoff_factor must be a number")
        if not math.isfinite(bf) or bf < 1.0:
            raise ValueError("backoff_factor must be >= 1.0")
        object.__setattr__(self, "backoff_factor", float(bf))

        so = self.sensor_offset
        if isinstance(so, bool) or not isinstance(so, (int, float)) or not math.isfinite(so):
            raise TypeError("sensor_offset must be a finite number")
        object.__setattr__(self, "sensor_offset", float(so))

    def merged(self, **changes: Any) -> "ConnectionConfig":
        """Return a new config with ``changes`` applied. Unknown keys raise."""
        unknown = set(changes) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"unknown connection option(s): {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    def retry_delay_ms(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based)."""
        n = max(1, int(attempt))
        delay = self.retry_interval_ms * (self.backoff_factor ** (n - 1))
        return float(min(delay, self.max_retry_interval_ms))

    @property
    def is_local(self) -> bool:
        host = self.ip_address.strip().lower()
        return host in LOCAL_HOSTS or host.startswith("192.168.")

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["protocol"] = self.protocol.value
        out["wits_level"] = self.wits_level.value
        return out

    @classmethod
    def from_ini(cls, config_path: Union[str, Path]) -> "ConnectionConfig":
        LOG.info("Reading link config from %s", config_path)
        p = WitsLinkParser(str(config_path))
        return cls(
            protocol=p.parse_protocol(),
            ip_address=p.parse_ip_address(),
            port=p.parse_port(),
            serial_port=p.parse_serial_port(),
            baud_rate=p.parse_baud_rate(),
            wits_level=p.parse_wits_level(),
            auto_connect=p.parse_auto_connect(),
            auto_reconnect=p.parse_auto_reconnect(),
            timeout_ms=p.parse_timeout_ms(),
            retry_interval_ms=p.parse_retry_interval_ms(),
            max_reconnect_attempts=p.parse_max_reconnect_attempts(),
            backoff_factor=p.parse_backoff_factor(),
            max_retry_interval_ms=p.parse_max_retry_interval_ms(),
            heartbeat_interval_ms=p.parse_heartbeat_interval_ms(),
            pong_timeout_ms=p.parse_pong_timeout_ms(),
            max_missed_pongs=p.parse_max_missed_pongs(),
            data_timeout_ms=p.parse_data_timeout_ms(),
            proxy_mode=p.parse_proxy_mode(),
            tcp_host=p.parse_tcp_host(),
            tcp_port=p.parse_tcp_port(),
            ws_endpoint=p.parse_ws_endpoint(),
            delimiter=p.parse_delimiter(),
            noralis_mode=p.parse_noralis_mode(),
            well_id=p.parse_well_id(),
            well_name=p.parse_well_name(),
            rig_name=p.parse_rig_name(),
            sensor_offset=p.parse_sensor_offset(),
        )
