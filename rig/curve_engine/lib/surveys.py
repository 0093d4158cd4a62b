"""Survey records and the aggregator that dedupes them and derives rates."""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from rig.curve_engine.lib.calculations import build_turn_rates
from rig.errors import now_iso
from rig.safe_math import DEFAULT_FALLBACKS, FallbackTable, to_float

LOG = logging.getLogger("curve_engine.surveys")

NEAR_DUPLICATE_MS = 5000.0
NEAR_DUPLICATE_DEPTH_FT = 0.5

QUALITY_STATUSES = ("pass", "warning", "fail")


@dataclass(frozen=True)
class QualityCheck:
    status: str = "pass"
    message: str = "Default quality check"

    def __post_init__(self) -> None:
        if self.status not in QUALITY_STATUSES:
            raise ValueError("quality status must be one of pass, warning, fail")

    @classmethod
    def coerce(cls, raw: Any) -> Optional["QualityCheck"]:
        if raw is None:
            return None
        if isinstance(raw, QualityCheck):
            return raw
        if isinstance(raw, Mapping):
            status = str(raw.get("status", "pass")).lower()
            if status not in QUALITY_STATUSES:
                LOG.warning("Unknown quality status %r, using 'warning'", status)
                status = "warning"
            return cls(status=status, message=str(raw.get("message", "")))
        LOG.warning("Ignoring malformed quality check %r", raw)
        return None


# Accepted input keys, camelCase as delivered by external collaborators
_ALIASES = {
    "measuredDepth": "measured_depth",
    "toolFace": "tool_face",
    "bTotal": "b_total",
    "aTotal": "a_total",
    "toolTemp": "temperature",
    "temp": "temperature",
    "bitDepth": "bit_depth",
    "sensorOffset": "sensor_offset",
    "qualityCheck": "quality_check",
    "wellId": "well_id",
    "wellName": "well_name",
    "rigName": "rig_name",
}

NUMERIC_FIELDS = (
    "measured_depth",
    "inclination",
    "azimuth",
    "tool_face",
    "b_total",
    "a_total",
    "dip",
    "temperature",
    "bit_depth",
    "sensor_offset",
)


@dataclass(frozen=True)
class SurveyRecord:
    id: str
    timestamp: str
    measured_depth: float = 0.0
    inclination: float = 0.0
    azimuth: float = 0.0
    tool_face: float = 0.0
    b_total: float = 0.0
    a_total: float = 0.0
    dip: float = 0.0
    temperature: float = 0.0
    bit_depth: float = 0.0
    sensor_offset: float = 0.0
    quality_check: QualityCheck = field(default_factory=QualityCheck)
    well_id: str = ""
    well_name: str = ""
    rig_name: str = ""

    @property
    def epoch_ms(self) -> Optional[float]:
        return parse_timestamp(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        camel = {v: k for k, v in _ALIASES.items() if k != "temp"}
        return {camel.get(k, k): v for k, v in out.items()}


def parse_timestamp(ts: Any) -> Optional[float]:
    """Epoch milliseconds for an ISO-8601 string or a numeric epoch-ms value."""
    if ts is None or isinstance(ts, bool):
        return None
    if isinstance(ts, datetime):
        dt = ts
    elif isinstance(ts, (int, float)):
        return float(ts) if math.isfinite(ts) and ts > 0 else None
    else:
        s = str(ts).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    ms = dt.timestamp() * 1000.0
    return ms if ms > 0 else None


def new_survey_id() -> str:
    return f"survey-{uuid.uuid4().hex}"


def sanitize_survey(raw: Union[SurveyRecord, Mapping[str, Any]]) -> SurveyRecord:
    """
    Build a clean SurveyRecord from a record or a loose mapping.

    Non-finite or unparseable numbers become 0, a missing id is generated,
    a missing timestamp becomes now and a missing quality check passes.
    """
    if isinstance(raw, SurveyRecord):
        data = asdict(raw)
        data["quality_check"] = raw.quality_check
    elif isinstance(raw, Mapping):
        data = {_ALIASES.get(k, k): v for k, v in raw.items()}
    else:
        raise TypeError("survey must be a SurveyRecord or a mapping")

    known = {f.name for f in fields(SurveyRecord)}
    out: Dict[str, Any] = {}
    for name in NUMERIC_FIELDS:
        if name not in data or data[name] is None:
            continue
        val = to_float(data[name])
        if val is None:
            LOG.warning("Survey field %s=%r is not a finite number, using 0", name, data[name])
            val = 0.0
        out[name] = val

    if "measured_depth" not in out and "bit_depth" in out:
        out["measured_depth"] = out["bit_depth"] - out.get("sensor_offset", 0.0)

    sid = data.get("id")
    out["id"] = str(sid) if sid not in (None, "") else new_survey_id()

    ts = data.get("timestamp")
    if isinstance(ts, datetime):
        ts = ts.isoformat()
    out["timestamp"] = str(ts) if ts not in (None, "") else now_iso()

    qc = QualityCheck.coerce(data.get("quality_check"))
    out["quality_check"] = qc if qc is not None else QualityCheck()

    for name in ("well_id", "well_name", "rig_name"):
        val = data.get(name)
        out[name] = "" if val is None else str(val)

    ignored = set(data) - known
    if ignored:
        LOG.debug("Ignoring unknown survey keys: %s", ", ".join(sorted(ignored)))
    return SurveyRecord(**out)


def is_near_duplicate(a: SurveyRecord, b: SurveyRecord) -> bool:
    ta, tb = a.epoch_ms, b.epoch_ms
    if ta is None or tb is None:
        return False
    return (
        abs(ta - tb) < NEAR_DUPLICATE_MS
        and abs(a.measured_depth - b.measured_depth) < NEAR_DUPLICATE_DEPTH_FT
    )


class SurveyAggregator:
    """Deduplicated survey collection plus moving-average build/turn rates.

    The collection is a tuple replaced as a whole on every change.
    """

    def __init__(
        self,
        moving_average_count: int = 3,
        min_distance_threshold: float = 1.0,
        fallbacks: FallbackTable = DEFAULT_FALLBACKS,
        on_change: Optional[Callable[[Tuple[SurveyRecord, ...]], None]] = None,
    ):
        if isinstance(moving_average_count, bool) or not isinstance(moving_average_count, int):
            raise TypeError("moving_average_count must be an integer")
        if moving_average_count < 2:
            raise ValueError("moving_average_count must be >= 2")
        if to_float(min_distance_threshold) is None or float(min_distance_threshold) < 0:
            raise ValueError("min_distance_threshold must be a non-negative number")
        self.moving_average_count = moving_average_count
        self.min_distance_threshold = float(min_distance_threshold)
        self.fallbacks = fallbacks
        self.on_change = on_change
        self._surveys: Tuple[SurveyRecord, ...] = ()

    @property
    def surveys(self) -> Tuple[SurveyRecord, ...]:
        return self._surveys

    def __len__(self) -> int:
        return len(self._surveys)

    def get(self, survey_id: str) -> Optional[SurveyRecord]:
        for s in self._surveys:
            if s.id == survey_id:
                return s
        return None

    def _replace(self, surveys: Tuple[SurveyRecord, ...]) -> None:
        self._surveys = surveys
        if self.on_change is not None:
            self.on_change(surveys)

    def load(self, records: Sequence[Union[SurveyRecord, Mapping[str, Any]]]) -> int:
        """Add many records at once, with the same dedupe rules, notifying once."""
        kept: List[SurveyRecord] = list(self._surveys)
        added = 0
        for raw in records:
            rec = sanitize_survey(raw)
            if self._rejects(rec, kept):
                continue
            kept.append(rec)
            added += 1
        if added:
            self._replace(tuple(kept))
        return added

    def _rejects(self, rec: SurveyRecord, existing: Sequence[SurveyRecord]) -> bool:
        for s in existing:
            if s.id == rec.id:
                LOG.info("Survey %s already exists, not adding duplicate", rec.id)
                return True
            if is_near_duplicate(s, rec):
                LOG.info("Survey %s duplicates %s (time/depth), not adding", rec.id, s.id)
                return True
        return False

    def add_survey(self, raw: Union[SurveyRecord, Mapping[str, Any]]) -> Optional[SurveyRecord]:
        """Insert a sanitized record. Returns it, or None when rejected as a duplicate."""
        rec = sanitize_survey(raw)
        if self._rejects(rec, self._surveys):
            return None
        self._replace(self._surveys + (rec,))
        LOG.info("Added survey %s at MD %.2f", rec.id, rec.measured_depth)
        return rec

    def update_survey(self, raw: Union[SurveyRecord, Mapping[str, Any]]) -> SurveyRecord:
        """Replace the record with the same id in place, or insert it."""
        rec = sanitize_survey(raw)
        for i, s in enumerate(self._surveys):
            if s.id == rec.id:
                self._replace(self._surveys[:i] + (rec,) + self._surveys[i + 1:])
                LOG.info("Updated survey %s", rec.id)
                return rec
        self._replace(self._surveys + (rec,))
        LOG.info("Survey %s not found, inserted", rec.id)
        return rec

    def delete_survey(self, survey_id: str) -> bool:
        kept = tuple(s for s in self._surveys if s.id != survey_id)
        if len(kept) == len(self._surveys):
            return False
        self._replace(kept)
        LOG.info("Deleted survey %s", survey_id)
        return True

    def clear(self) -> None:
        if self._surveys:
            self._replace(())

    def _valid_by_time(self) -> List[Tuple[float, SurveyRecord]]:
        out = []
        for s in self._surveys:
            ts = s.epoch_ms
            if ts is not None and ts > 0:
                out.append((ts, s))
        return out

    def latest_survey(self) -> Optional[SurveyRecord]:
        valid = self._valid_by_time()
        if not valid:
            return None
        return max(valid, key=lambda p: p[0])[1]

    def recent_surveys(self, count: Optional[int] = None) -> List[SurveyRecord]:
        """The ``count`` newest records with a valid timestamp, newest first."""
        n = self.moving_average_count if count is None else count
        valid = sorted(self._valid_by_time(), key=lambda p: p[0], reverse=True)
        return [s for _, s in valid[:n]]

    def moving_average_rates(self) -> Tuple[float, float]:
        """Mean (build_rate, turn_rate) over consecutive recent pairs."""
        recent = self.recent_surveys()
        builds, turns = [], []
        for current, previous in zip(recent, recent[1:]):
            rates = build_turn_rates(
                (current.inclination, current.azimuth, current.measured_depth),
                (previous.inclination, previous.azimuth, previous.measured_depth),
                self.min_distance_threshold,
            )
            if rates is None:
                continue
            builds.append(rates["build_rate"])
            turns.append(rates["turn_rate"])
        if not builds:
            return self.fallbacks.build_rate, self.fallbacks.turn_rate
        return float(np.mean(builds)), float(np.mean(turns))

    def stations(self) -> List[Tuple[float, float, float]]:
        """(md, inclination, azimuth) for every record, in depth order."""
        return sorted((s.measured_depth, s.inclination, s.azimuth) for s in self._surveys)
