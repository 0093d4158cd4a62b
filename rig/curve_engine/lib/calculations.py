"""Directional-drilling steering formulas.

All functions are pure and total. Angles are in degrees, depths in feet and
rates in degrees per 100 ft. Non-finite or out-of-domain input returns the
documented fallback instead of raising.
"""

from __future__ import annotations

import math
from typing import Dict, Optional

from rig.safe_math import (
    DEFAULT_FALLBACKS,
    FallbackTable,
    SafeResult,
    acos_deg,
    is_finite,
    normalize_azimuth,
    normalize_azimuth_delta,
    safe_div,
    wrap_azimuth_change,
)

MIN_INCLINATION_FOR_TURN = 0.1


def survey_motor_yield(current_inc, previous_inc, distance, min_distance: float = 1.0) -> SafeResult:
    """Yield seen between two surveys ``distance`` ft apart."""
    if not is_finite(current_inc, previous_inc, distance):
        return SafeResult.fallback(0.0, "non-finite survey input")
    if abs(distance) < min_distance:
        return SafeResult.fallback(0.0, "surveys closer than minimum distance")
    r = safe_div(abs(current_inc - previous_inc), abs(distance))
    if not r.ok:
        return r
    if r.value <= 0:
        return SafeResult.fallback(0.0, "no inclination change")
    return SafeResult(r.value * 100.0)


def legacy_motor_yield(slide_distance, bend_angle, bit_to_bend_distance) -> SafeResult:
    """Yield estimated from motor geometry when no survey pair is usable."""
    if not is_finite(slide_distance, bend_angle, bit_to_bend_distance):
        return SafeResult.fallback(0.0, "non-finite motor geometry")
    if slide_distance <= 0:
        return SafeResult.fallback(0.0, "slide distance must be positive")
    ratio = safe_div(slide_distance, slide_distance + bit_to_bend_distance)
    if not ratio.ok:
        return ratio
    effective_bend = bend_angle * ratio.value
    out = effective_bend / slide_distance * 100.0
    if not math.isfinite(out) or out <= 0:
        return SafeResult.fallback(0.0, "non-positive yield")
    return SafeResult(out)


def motor_yield(
    current_inc=None,
    previous_inc=None,
    distance=None,
    slide_distance=None,
    bend_angle=None,
    bit_to_bend_distance=None,
    min_distance: float = 1.0,
    fallbacks: FallbackTable = DEFAULT_FALLBACKS,
) -> float:
    """Survey-based yield, else the geometric estimate, else the fallback."""
    r = survey_motor_yield(current_inc, previous_inc, distance, min_distance)
    if r.ok:
        return r.value
    r = legacy_motor_yield(slide_distance, bend_angle, bit_to_bend_distance)
    if r.ok:
        return r.value
    return fallbacks.motor_yield


def dogleg_angle(inc1, azi1, inc2, azi2) -> Optional[float]:
    """Angle in degrees between two borehole orientations, or None."""
    if not is_finite(inc1, azi1, inc2, azi2):
        return None
    i1, i2 = math.radians(inc1), math.radians(inc2)
    da = math.radians(azi1 - azi2)
    cos_beta = math.cos(i1) * math.cos(i2) + math.sin(i1) * math.sin(i2) * math.cos(da)
    return acos_deg(cos_beta)


def dogleg_severity(inc1, azi1, inc2, azi2, course_length) -> float:
    if not is_finite(course_length) or course_length <= 0:
        return 0.0
    beta = dogleg_angle(inc1, azi1, inc2, azi2)
    if beta is None:
        return 0.0
    return beta / course_length * 100.0


def dogleg_needed(current_inc, current_az, target_inc, target_az, distance) -> float:
    """Severity required to turn from the current to the target orientation over ``distance``."""
    return dogleg_severity(current_inc, current_az, target_inc, target_az, distance)


def slide_seen(motor_yield_value, slide_distance, is_rotating: bool) -> float:
    if is_rotating:
        return 0.0
    if not is_finite(motor_yield_value, slide_distance):
        return 0.0
    return motor_yield_value * slide_distance / 100.0


def slide_ahead(motor_yield_value, slide_distance, bit_to_bend_distance, is_rotating: bool) -> float:
    if is_rotating:
        return 0.0
    if not is_finite(motor_yield_value, slide_distance, bit_to_bend_distance):
        return 0.0
    share = safe_div(bit_to_bend_distance, slide_distance + bit_to_bend_distance)
    if not share.ok:
        return 0.0
    return (motor_yield_value * slide_distance / 100.0) * share.value


def projected_inclination(current_inc, build_rate, distance) -> float:
    if not is_finite(current_inc):
        return 0.0
    if not is_finite(build_rate, distance):
        return float(current_inc)
    return current_inc + build_rate * distance / 100.0


def projected_azimuth(current_az, turn_rate, distance) -> float:
    if not is_finite(current_az):
        return 0.0
    if not is_finite(turn_rate, distance):
        return normalize_azimuth(current_az)
    return normalize_azimuth(current_az + turn_rate * distance / 100.0)


def gravity_to_relative_toolface(tool_face, current_az) -> float:
    return (tool_face - current_az) % 360.0


def nudge_projection(
    current_inc,
    current_az,
    tool_face,
    motor_yield_value,
    slide_distance,
    is_gravity_toolface: bool = False,
) -> Dict[str, float]:
    """Orientation expected after sliding ``slide_distance`` at ``tool_face``."""
    if not is_finite(current_inc, current_az):
        return {"projectedInc": 0.0, "projectedAz": 0.0}
    if not is_finite(tool_face, motor_yield_value, slide_distance):
        return {"projectedInc": float(current_inc), "projectedAz": normalize_azimuth(current_az)}

    tf = gravity_to_relative_toolface(tool_face, current_az) if is_gravity_toolface else tool_face
    tf_rad = math.radians(tf)
    dl = motor_yield_value * slide_distance / 100.0

    inc_change = math.cos(tf_rad) * dl
    az_change = 0.0
    if current_inc >= MIN_INCLINATION_FOR_TURN:
        r = safe_div(math.sin(tf_rad) * math.radians(dl), math.sin(math.radians(current_inc)))
        if r.ok:
            az_change = math.degrees(r.value)

    return {
        "projectedInc": current_inc + inc_change,
        "projectedAz": normalize_azimuth(current_az + az_change),
    }


def above_below(actual_tvd, target_tvd) -> float:
    """Positive when the bit is shallower than the target line."""
    if not is_finite(actual_tvd, target_tvd):
        return 0.0
    return target_tvd - actual_tvd


def left_right(actual_vs, actual_azimuth, target_vs, target_azimuth) -> float:
    """Positive when right of the target line."""
    if not is_finite(actual_vs, actual_azimuth, target_vs, target_azimuth):
        return 0.0
    offset = actual_vs - target_vs
    diff = normalize_azimuth_delta(actual_azimuth - target_azimuth)
    if abs(diff) < 90.0:
        return offset
    return -offset


def build_turn_rates(current, previous, min_distance: float = 1.0) -> Optional[Dict[str, float]]:
    """Build/turn rate between two (inclination, azimuth, md) triples, or None."""
    inc1, az1, md1 = current
    inc0, az0, md0 = previous
    if not is_finite(inc1, az1, md1, inc0, az0, md0):
        return None
    md_diff = abs(md1 - md0)
    if md_diff < min_distance:
        return None
    return {
        "build_rate": (inc1 - inc0) / md_diff * 100.0,
        "turn_rate": wrap_azimuth_change(az1 - az0) / md_diff * 100.0,
    }
