from pathlib import Path
import configparser
from typing import Dict, Optional, Tuple


class CurveEngineParser:
    def __init__(self, filename: str = "config.ini"):
        self.config = configparser.ConfigParser(inline_comment_prefixes=(";",))
        self.config.read(Path(filename))

    def _sec(self, name: str) -> Optional[configparser.SectionProxy]:
        if self.config.has_section(name):
            return self.config[name]
        return None

    def _float(self, section: str, key: str, fallback: float):
        sec = self._sec(section)
        if sec is None:
            return fallback
        val = sec.get(key, None)
        if val is None:
            return fallback
        try:
            return float(val)
        except ValueError:
            # return raw so the caller raises a consistent TypeError
            return val

    def parse_rotation_threshold(self):
        return self._float("engine", "rotation_threshold", 5.0)

    def parse_debounce_ms(self):
        return self._float("engine", "debounce_ms", 500.0)

    def parse_moving_average_count(self) -> int:
        sec = self._sec("engine")
        if sec is None:
            return 3
        return sec.getint("moving_average_count", fallback=3)

    def parse_min_distance_threshold(self):
        return self._float("engine", "min_distance_threshold", 1.0)

    def parse_gravity_toolface(self) -> bool:
        sec = self._sec("engine")
        if sec is None:
            return False
        return sec.getboolean("gravity_toolface", fallback=False)

    def parse_rotary_channel(self) -> str:
        sec = self._sec("engine")
        if sec is None:
            return "rotary_rpm"
        return sec.get("rotary_channel", fallback="rotary_rpm")

    def parse_constraints(self) -> Optional[Dict[str, Tuple[Optional[float], Optional[float]]]]:
        """
        Return {field: (min, max)} from [constraints]. Values are written as
        ``min, max``; either side may be left empty for an open bound.
        Returns None when the section is absent.
        """
        sec = self._sec("constraints")
        if sec is None:
            return None
        out: Dict[str, Tuple[Optional[float], Optional[float]]] = {}
        for key, raw in sec.items():
            parts = [p.strip() for p in raw.split(",")]
            if len(parts) != 2:
                raise ValueError(f"constraint '{key}' must be written as 'min, max'")
            try:
                lo = float(parts[0]) if parts[0] else None
                hi = float(parts[1]) if parts[1] else None
            except ValueError as exc:
                raise ValueError(f"constraint '{key}' bounds must be numbers") from exc
            out[key] = (lo, hi)
        return out

    def parse_fallbacks(self) -> Dict[str, object]:
        return {
            "motor_yield": self._float("fallbacks", "motor_yield", 2.5),
            "dogleg": self._float("fallbacks", "dogleg", 3.2),
            "build_rate": self._float("fallbacks", "build_rate", 2.5),
            "turn_rate": self._float("fallbacks", "turn_rate", 1.8),
        }

    def parse_target_line(self) -> Dict[str, object]:
        return {
            "target_tvd": self._float("target", "tvd", 8000.0),
            "target_vs": self._float("target", "vs", 1500.0),
            "target_distance": self._float("target", "distance", 100.0),
            "target_inclination": self._float("target", "inclination", 90.0),
            "target_azimuth": self._float("target", "azimuth", 270.0),
        }

    def parse_slide_parameters(self) -> Dict[str, object]:
        return {
            "slide_distance": self._float("slide", "slide_distance", 30.0),
            "bit_to_bend_distance": self._float("slide", "bit_to_bend_distance", 5.0),
            "bend_angle": self._float("slide", "bend_angle", 2.0),
        }
