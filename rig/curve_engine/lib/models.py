from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


def _check_number(name: str, val: Any) -> float:
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise TypeError(f"{name} must be a number")
    if not math.isfinite(val):
        raise ValueError(f"{name} must be finite")
    return float(val)


@dataclass(frozen=True)
class Constraint:
    lo: Optional[float] = None
    hi: Optional[float] = None

    def __post_init__(self) -> None:
        if self.lo is not None and self.hi is not None and self.lo > self.hi:
            raise ValueError("constraint min must not exceed max")

    def apply(self, value: float) -> float:
        if self.lo is not None and value < self.lo:
            return float(self.lo)
        if self.hi is not None and value > self.hi:
            return float(self.hi)
        return float(value)


DEFAULT_CONSTRAINTS: Dict[str, Constraint] = {
    "motor_yield": Constraint(0.1, 10.0),
    "build_rate": Constraint(0.1, 10.0),
    "turn_rate": Constraint(0.1, 10.0),
    "slide_distance": Constraint(1.0, 100.0),
    "bit_to_bend_distance": Constraint(0.1, 20.0),
    "bend_angle": Constraint(0.1, 5.0),
}


@dataclass(frozen=True)
class TargetLine:
    target_tvd: float = 8000.0
    target_vs: float = 1500.0
    target_distance: float = 100.0
    target_inclination: float = 90.0
    target_azimuth: float = 270.0

    def __post_init__(self) -> None:
        for f in fields(self):
            object.__setattr__(self, f.name, _check_number(f.name, getattr(self, f.name)))
        if self.target_distance <= 0:
            raise ValueError("target_distance must be > 0")

    def merged(self, **changes: Any) -> "TargetLine":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, float]:
        return {
            "targetTVD": self.target_tvd,
            "targetVS": self.target_vs,
            "targetDistance": self.target_distance,
            "targetInc": self.target_inclination,
            "targetAz": self.target_azimuth,
        }


@dataclass(frozen=True)
class SlideParameters:
    """Operator inputs describing the current slide and the motor geometry."""

    slide_distance: float = 30.0
    bit_to_bend_distance: float = 5.0
    bend_angle: float = 2.0

    def __post_init__(self) -> None:
        for f in fields(self):
            object.__setattr__(self, f.name, _check_number(f.name, getattr(self, f.name)))

    def clamped(self, constraints: Dict[str, Constraint]) -> "SlideParameters":
        changes = {}
        for f in fields(self):
            c = constraints.get(f.name)
            if c is not None:
                changes[f.name] = c.apply(getattr(self, f.name))
        return replace(self, **changes)

    def merged(self, **changes: Any) -> "SlideParameters":
        return replace(self, **changes)


@dataclass(frozen=True)
class CurveDataSnapshot:
    motor_yield: float = 0.0
    dogleg_needed: float = 0.0
    slide_seen: float = 0.0
    slide_ahead: float = 0.0
    projected_inc: float = 0.0
    projected_az: float = 0.0
    build_rate: float = 0.0
    turn_rate: float = 0.0
    is_rotating: bool = False
    above_below: float = 0.0
    left_right: float = 0.0
    slide_distance: float = 0.0
    bit_to_bend_distance: float = 0.0
    bend_angle: float = 0.0
    target_distance: float = 0.0
    target_inc: float = 0.0
    target_az: float = 0.0
    overridden: Tuple[str, ...] = field(default=())

    def to_dict(self) -> Dict[str, Any]:
        out = {_camel(k): v for k, v in asdict(self).items()}
        out["overridden"] = [_camel(k) for k in self.overridden]
        return out


OVERRIDABLE_FIELDS = (
    "motor_yield",
    "dogleg_needed",
    "slide_seen",
    "slide_ahead",
    "projected_inc",
    "projected_az",
    "build_rate",
    "turn_rate",
    "is_rotating",
    "above_below",
    "left_right",
)
