import logging
import math
from dataclasses import replace
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Union

from rig.curve_engine.lib.models import DEFAULT_CONSTRAINTS, OVERRIDABLE_FIELDS, Constraint, CurveDataSnapshot
from rig.safe_math import normalize_azimuth

LOG = logging.getLogger("curve_engine.overrides")

OverrideValue = Union[float, bool]


class ManualOverrideLayer:
    """Operator-supplied values that win over computed snapshot fields."""

    def __init__(self, constraints: Optional[Mapping[str, Constraint]] = None):
        self.constraints: Dict[str, Constraint] = dict(DEFAULT_CONSTRAINTS if constraints is None else constraints)
        self._values: Mapping[str, OverrideValue] = MappingProxyType({})

    @property
    def values(self) -> Mapping[str, OverrideValue]:
        return self._values

    def get(self, name: str) -> Optional[OverrideValue]:
        return self._values.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def set(self, name: str, value: Optional[OverrideValue]) -> bool:
        """
        Set (or, with ``None``, clear) an override. Returns True when the
        stored overrides changed. Non-finite numbers are rejected.
        """
        if name not in OVERRIDABLE_FIELDS:
            raise ValueError(f"'{name}' cannot be overridden")
        if value is None:
            return self.clear(name)

        if name == "is_rotating":
            if not isinstance(value, bool):
                raise TypeError("is_rotating override must be a boolean")
            stored: OverrideValue = value
        else:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TypeError(f"{name} override must be a number")
            if not math.isfinite(value):
                LOG.warning("Ignoring non-finite override for %s", name)
                return False
            c = self.constraints.get(name)
            stored = c.apply(value) if c is not None else float(value)
            if name == "projected_az":
                stored = normalize_azimuth(stored)
            if stored != value:
                LOG.info("Override %s=%s clamped to %s", name, value, stored)

        if self._values.get(name) == stored and name in self._values:
            return False
        new = dict(self._values)
        new[name] = stored
        self._values = MappingProxyType(new)
        return True

    def clear(self, name: Optional[str] = None) -> bool:
        """Clear one override, or all of them when ``name`` is None."""
        if name is None:
            changed = bool(self._values)
            self._values = MappingProxyType({})
            return changed
        if name not in OVERRIDABLE_FIELDS:
            raise ValueError(f"'{name}' cannot be overridden")
        if name not in self._values:
            return False
        new = dict(self._values)
        del new[name]
        self._values = MappingProxyType(new)
        return True

    def apply(self, snapshot: CurveDataSnapshot) -> CurveDataSnapshot:
        if not self._values:
            return snapshot
        return replace(snapshot, overridden=tuple(sorted(self._values)), **self._values)
