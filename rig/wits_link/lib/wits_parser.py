"""Framing and parsing of WITS telemetry records into channel-keyed samples.

Level 0 records are tab separated ``channel=value`` pairs. Level 1/2 records
are one JSON object per record whose keys are channel ids. Noralis MWD boxes
send whitespace separated ``CC value`` token pairs.

Parsing is total at the record boundary: a bad pair is logged and skipped,
a bad record yields ``None``.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError

from rig.errors import WitsParseError, now_iso
from rig.wits_link.lib.enums import FrameType, WitsLevel

LOG = logging.getLogger("wits_link.parser")

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "wits_messages_v1.json"

MAX_BUFFER_CHARS = 10000
KEEP_BUFFER_CHARS = 5000

DEFAULT_CHANNELS: Dict[int, str] = {
    1: "bit_depth",
    2: "hook_load",
    3: "wob",
    4: "rop",
    5: "inclination",
    6: "azimuth",
    7: "tool_face",
    8: "gamma",
    9: "rotary_rpm",
}


@dataclass(frozen=True)
class ChannelValue:
    """A tagged telemetry value: numeric when it parses as a float, else text."""

    number: Optional[float] = None
    text: Optional[str] = None

    @classmethod
    def parse(cls, raw: Any) -> "ChannelValue":
        if isinstance(raw, bool):
            return cls(text=str(raw).lower())
        if isinstance(raw, (int, float)):
            return cls(number=float(raw))
        s = str(raw).strip()
        try:
            return cls(number=float(s))
        except ValueError:
            return cls(text=s)

    @property
    def is_numeric(self) -> bool:
        return self.number is not None

    def as_float(self) -> Optional[float]:
        if self.number is None or not math.isfinite(self.number):
            return None
        return self.number

    def to_json(self) -> Union[float, str, None]:
        if self.number is not None:
            return self.number if math.isfinite(self.number) else None
        return self.text


@dataclass(frozen=True)
class TelemetrySample:
    timestamp: str
    values: Mapping[int, ChannelValue]
    source: str = "wits"
    well_id: str = ""
    well_name: str = ""
    rig_name: str = ""
    sensor_offset: float = 0.0

    def __post_init__(self) -> None:
        if not isinstance(self.values, MappingProxyType):
            object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def get(self, channel: int) -> Optional[ChannelValue]:
        return self.values.get(channel)

    def number(self, channel: int) -> Optional[float]:
        v = self.values.get(channel)
        return v.as_float() if v is not None else None

    def to_dict(self, channel_map: Optional["ChannelMap"] = None) -> Dict[str, Any]:
        channels = {str(k): v.to_json() for k, v in sorted(self.values.items())}
        out: Dict[str, Any] = {"ts": self.timestamp, "source": self.source, "channels": channels}
        if channel_map is not None:
            out["named"] = {
                channel_map.name(k): v.to_json() for k, v in self.values.items() if channel_map.name(k)
            }
        if self.well_id:
            out["wellId"] = self.well_id
        if self.well_name:
            out["wellName"] = self.well_name
        if self.rig_name:
            out["rigName"] = self.rig_name
        out["sensorOffset"] = self.sensor_offset
        return out


class ChannelMap:
    """Configured channel ids and their semantic names."""

    def __init__(self, channels: Optional[Mapping[int, str]] = None):
        src = DEFAULT_CHANNELS if channels is None else channels
        self._by_id: Dict[int, str] = {}
        for cid, name in src.items():
            if isinstance(cid, bool) or not isinstance(cid, int) or cid < 0:
                raise ValueError("channel ids must be non-negative integers")
            if not isinstance(name, str) or not name.strip():
                raise ValueError(f"channel {cid} needs a non-empty name")
            self._by_id[cid] = name.strip()
        self._by_name = {v: k for k, v in self._by_id.items()}

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, cid: object) -> bool:
        return cid in self._by_id

    def name(self, cid: int) -> Optional[str]:
        return self._by_id.get(cid)

    def channel(self, name: str) -> Optional[int]:
        return self._by_name.get(name)

    def items(self) -> Iterable[Tuple[int, str]]:
        return self._by_id.items()

    def filter(self, values: Mapping[int, ChannelValue]) -> Dict[int, ChannelValue]:
        """Keep only configured channels. An empty map accepts everything."""
        if not self._by_id:
            return dict(values)
        kept = {}
        for cid, v in values.items():
            if cid in self._by_id:
                kept[cid] = v
            else:
                LOG.debug("Dropping unmapped channel %s", cid)
        return kept


class RecordFramer:
    """Accumulate stream text and cut it into delimiter-terminated records."""

    def __init__(self, delimiter: str = "\r\n"):
        if not delimiter:
            raise ValueError("delimiter must be a non-empty string")
        self.delimiter = delimiter
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, text: str) -> List[str]:
        self._buffer += text
        parts = self._buffer.split(self.delimiter)
        self._buffer = parts.pop()
        if len(self._buffer) > MAX_BUFFER_CHARS:
            LOG.warning("Buffer exceeds %d chars without a delimiter, truncating", MAX_BUFFER_CHARS)
            self._buffer = self._buffer[-KEEP_BUFFER_CHARS:]
        return [p for p in parts if p.strip()]

    def reset(self) -> None:
        self._buffer = ""


def parse_pair(pair: str) -> Tuple[int, ChannelValue]:
    if "=" not in pair:
        raise WitsParseError(f"missing '=' in pair {pair!r}")
    key, raw = pair.split("=", 1)
    try:
        cid = int(key.strip())
    except ValueError as exc:
        raise WitsParseError(f"bad channel id in pair {pair!r}") from exc
    if cid < 0:
        raise WitsParseError(f"negative channel id in pair {pair!r}")
    return cid, ChannelValue.parse(raw)


def parse_level0(record: str) -> Dict[int, ChannelValue]:
    out: Dict[int, ChannelValue] = {}
    for pair in record.split("\t"):
        if not pair.strip():
            continue
        try:
            cid, val = parse_pair(pair)
        except WitsParseError as e:
            LOG.warning("Skipping malformed pair: %s", e)
            continue
        out[cid] = val
    return out


def parse_json_record(record: str) -> Dict[int, ChannelValue]:
    try:
        data = json.loads(record)
    except json.JSONDecodeError as e:
        raise WitsParseError(f"invalid JSON record: {e.msg}") from e
    if not isinstance(data, dict):
        raise WitsParseError("JSON record must be an object")
    out: Dict[int, ChannelValue] = {}
    for key, raw in data.items():
        try:
            cid = int(key)
        except (TypeError, ValueError):
            # timestamps and other metadata ride along in the same object
            continue
        if raw is None or isinstance(raw, (dict, list)):
            LOG.warning("Skipping channel %s with non-scalar value", key)
            continue
        out[cid] = ChannelValue.parse(raw)
    return out


def parse_noralis(record: str) -> Dict[int, ChannelValue]:
    items = record.split()
    if len(items) % 2 != 0:
        raise WitsParseError(f"odd number of tokens in Noralis record {record!r}")
    out: Dict[int, ChannelValue] = {}
    for i in range(0, len(items), 2):
        ch, raw = items[i], items[i + 1]
        if len(ch) != 2 or not ch.isdigit():
            LOG.warning("Skipping Noralis token with bad channel id %r", ch)
            continue
        val = ChannelValue.parse(raw)
        if not val.is_numeric:
            LOG.warning("Skipping non-numeric Noralis value for channel %s", ch)
            continue
        out[int(ch)] = val
    return out


@dataclass
class WitsRecordParser:
    level: WitsLevel = WitsLevel.LEVEL_0
    noralis_mode: bool = False
    channel_map: ChannelMap = field(default_factory=ChannelMap)
    well_id: str = ""
    well_name: str = ""
    rig_name: str = ""
    sensor_offset: float = 0.0

    @classmethod
    def from_config(cls, config, channel_map: Optional[ChannelMap] = None) -> "WitsRecordParser":
        return cls(
            level=config.wits_level,
            noralis_mode=config.noralis_mode,
            channel_map=channel_map if channel_map is not None else ChannelMap(),
            well_id=config.well_id,
            well_name=config.well_name,
            rig_name=config.rig_name,
            sensor_offset=config.sensor_offset,
        )

    def parse(self, record: str, timestamp: Optional[str] = None) -> Optional[TelemetrySample]:
        """Parse one record. Returns None when nothing usable survives."""
        try:
            if self.noralis_mode:
                values = parse_noralis(record)
            elif self.level is WitsLevel.LEVEL_0:
                values = parse_level0(record)
            else:
                values = parse_json_record(record)
        except WitsParseError as e:
            LOG.warning("Dropping record: %s", e)
            return None

        values = self.channel_map.filter(values)
        if not values:
            return None
        return TelemetrySample(
            timestamp=timestamp or now_iso(),
            values=values,
            source="noralis" if self.noralis_mode else "wits",
            well_id=self.well_id,
            well_name=self.well_name,
            rig_name=self.rig_name,
            sensor_offset=self.sensor_offset,
        )


_CONTROL_VALIDATOR: Optional[Draft7Validator] = None


def _control_validator() -> Draft7Validator:
    global _CONTROL_VALIDATOR
    if _CONTROL_VALIDATOR is None:
        with SCHEMA_PATH.open("r", encoding="utf-8") as fh:
            spec = json.load(fh)
        _CONTROL_VALIDATOR = Draft7Validator(spec["definitions"]["control_frame"])
    return _CONTROL_VALIDATOR


def parse_control_frame(text: str) -> Optional[Dict[str, Any]]:
    """
    Return the frame dict if ``text`` is a valid ping/pong/disconnect control
    frame, else None. Telemetry text is never a control frame.
    """
    s = text.strip()
    if not s.startswith("{"):
        return None
    try:
        data = json.loads(s)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or "type" not in data:
        return None
    try:
        _control_validator().validate(data)
    except ValidationError as ve:
        LOG.debug("Not a control frame: %s", ve.message)
        return None
    return data


def control_frame(kind: FrameType, timestamp: Optional[int] = None) -> str:
    frame: Dict[str, Any] = {"type": kind.value}
    if kind is FrameType.DISCONNECT:
        frame["command"] = "disconnect"
    if timestamp is not None:
        frame["timestamp"] = int(timestamp)
    return json.dumps(frame, separators=(",", ":"))
