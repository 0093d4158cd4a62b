"""Guarded arithmetic shared by the steering calculations.

Every formula in the curve engine is total: bad input degrades to a named
fallback instead of raising. The helpers here keep that policy in one place.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Optional


@dataclass(frozen=True)
class SafeResult:
    value: float
    ok: bool = True
    reason: Optional[str] = None

    @classmethod
    def fallback(cls, value: float, reason: str) -> "SafeResult":
        return cls(value=float(value), ok=False, reason=reason)


@dataclass(frozen=True)
class FallbackTable:
    """Default values used when a derived quantity cannot be computed."""

    motor_yield: float = 2.5
    dogleg: float = 3.2
    build_rate: float = 2.5
    turn_rate: float = 1.8

    def __post_init__(self) -> None:
        for f in fields(self):
            val = getattr(self, f.name)
            if isinstance(val, bool) or not isinstance(val, (int, float)):
                raise TypeError(f"{f.name} fallback must be a number")
            if not math.isfinite(val):
                raise ValueError(f"{f.name} fallback must be finite")
            object.__setattr__(self, f.name, float(val))


DEFAULT_FALLBACKS = FallbackTable()


def is_finite(*values: Any) -> bool:
    for v in values:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return False
        if not math.isfinite(v):
            return False
    return True


def to_float(value: Any) -> Optional[float]:
    """Coerce ``value`` to a finite float, or None when that is not possible."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            f = float(value.strip())
        except ValueError:
            return None
        return f if math.isfinite(f) else None
    return None


def safe_div(num: float, den: float, fallback: float = 0.0) -> SafeResult:
    if not is_finite(num, den):
        return SafeResult.fallback(fallback, "non-finite operand")
    if den == 0:
        return SafeResult.fallback(fallback, "division by zero")
    out = num / den
    if not math.isfinite(out):
        return SafeResult.fallback(fallback, "non-finite result")
    return SafeResult(out)


def clamp(value: float, lo: Optional[float] = None, hi: Optional[float] = None) -> float:
    if lo is not None and value < lo:
        return float(lo)
    if hi is not None and value > hi:
        return float(hi)
    return float(value)


def acos_deg(cos_value: float) -> float:
    """acos in degrees with the argument clamped into [-1, 1]."""
    return math.degrees(math.acos(clamp(cos_value, -1.0, 1.0)))


def normalize_azimuth(azimuth: float) -> float:
    """Map any finite angle into [0, 360). Non-finite input maps to 0."""
    if not is_finite(azimuth):
        return 0.0
    out = azimuth % 360.0
    # -1e-15 % 360 rounds up to 360.0
    if out >= 360.0:
        return 0.0
    return out + 0.0


def normalize_azimuth_delta(delta: float) -> float:
    """Shortest signed angular difference, in (-180, 180]."""
    if not is_finite(delta):
        return 0.0
    out = delta % 360.0
    if out > 180.0:
        out -= 360.0
    return out + 0.0


def wrap_azimuth_change(delta: float) -> float:
    """Fold a survey-to-survey azimuth change onto the shorter arc."""
    if not is_finite(delta):
        return 0.0
    if delta > 180.0:
        return delta - 360.0
    if delta < -180.0:
        return delta + 360.0
    return float(delta)
