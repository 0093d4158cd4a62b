from pathlib import Path
import configparser
from typing import Dict, Optional


class WitsLinkParser:
    def __init__(self, filename: str = "config.ini"):
        self.config = configparser.ConfigParser(inline_comment_prefixes=(";",))
        self.config.read(Path(filename))

    def _sec(self, name: str = "link") -> Optional[configparser.SectionProxy]:
        if self.config.has_section(name):
            return self.config[name]
        return None

    def _get(self, key: str, fallback, section: str = "link"):
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.get(key, fallback=fallback)

    def _get_int(self, key: str, fallback: int, section: str = "link"):
        raw = self._get(key, None, section)
        if raw is None:
            return fallback
        try:
            return int(raw)
        except ValueError:
            # hand the raw string back so ConnectionConfig raises the proper error
            return raw

    def _get_float(self, key: str, fallback: float, section: str = "link"):
        raw = self._get(key, None, section)
        if raw is None:
            return fallback
        try:
            return float(raw)
        except ValueError:
            return raw

    def _get_bool(self, key: str, fallback: bool, section: str = "link") -> bool:
        sec = self._sec(section)
        if sec is None:
            return fallback
        return sec.getboolean(key, fallback=fallback)

    def parse_protocol(self) -> str:
        return self._get("protocol", "tcp")

    def parse_ip_address(self) -> str:
        return self._get("ip_address", "localhost")

    def parse_port(self):
        return self._get_int("port", 5000)

    def parse_serial_port(self) -> str:
        return self._get("serial_port", "/dev/ttyUSB0")

    def parse_baud_rate(self):
        return self._get_int("baud_rate", 9600)

    def parse_wits_level(self):
        return self._get_int("wits_level", 0)

    def parse_auto_connect(self) -> bool:
        return self._get_bool("auto_connect", False)

    def parse_auto_reconnect(self) -> bool:
        return self._get_bool("auto_reconnect", True)

    def parse_timeout_ms(self):
        return self._get_int("timeout_ms", 5000)

    def parse_retry_interval_ms(self):
        return self._get_int("retry_interval_ms", 10000)

    def parse_max_reconnect_attempts(self):
        return self._get_int("max_reconnect_attempts", 100)

    def parse_backoff_factor(self):
        return self._get_float("backoff_factor", 1.0)

    def parse_max_retry_interval_ms(self):
        return self._get_int("max_retry_interval_ms", 60000)

    def parse_heartbeat_interval_ms(self):
        return self._get_int("heartbeat_interval_ms", 15000)

    def parse_pong_timeout_ms(self):
        return self._get_int("pong_timeout_ms", 10000)

    def parse_max_missed_pongs(self):
        return self._get_int("max_missed_pongs", 3)

    def parse_data_timeout_ms(self):
        return self._get_int("data_timeout_ms", 300000)

    def parse_proxy_mode(self) -> bool:
        return self._get_bool("proxy_mode", False)

    def parse_tcp_host(self) -> str:
        return self._get("tcp_host", "localhost")

    def parse_tcp_port(self):
        return self._get_int("tcp_port", 5000)

    def parse_ws_endpoint(self) -> str:
        return self._get("ws_endpoint", "/wits")

    def parse_delimiter(self) -> str:
        raw = self._get("delimiter", "\\r\\n")
        # INI files carry escaped control characters
        return raw.replace("\\r", "\r").replace("\\n", "\n").replace("\\t", "\t")

    def parse_noralis_mode(self) -> bool:
        return self._get_bool("noralis_mode", False)

    def parse_well_id(self) -> str:
        return self._get("well_id", "", section="well")

    def parse_well_name(self) -> str:
        return self._get("well_name", "", section="well")

    def parse_rig_name(self) -> str:
        return self._get("rig_name", "", section="well")

    def parse_sensor_offset(self):
        return self._get_float("sensor_offset", 0.0, section="well")

    def parse_channels(self) -> Optional[Dict[int, str]]:
        """
        Return {channel_id: name} from the [channels] section, or None when the
        section is absent so the caller keeps its default map.
        """
        sec = self._sec("channels")
        if sec is None:
            return None
        out: Dict[int, str] = {}
        for key, name in sec.items():
            try:
                cid = int(key)
            except ValueError as exc:
                raise ValueError(f"channel id '{key}' must be an integer") from exc
            out[cid] = name.strip()
        return out
