import logging
from typing import Any, Callable, Optional

from rig.safe_math import to_float
from rig.timers import TimerSlot

LOG = logging.getLogger("curve_engine.rotation")


class RotationDebouncer:
    """
    Turn raw rotary-speed readings into a stable rotating/sliding flag.

    Every change of the raw flag re-arms one timer; the stable flag only takes
    the raw value once it has held for ``debounce_ms``.
    """

    def __init__(
        self,
        threshold: float = 5.0,
        debounce_ms: float = 500.0,
        on_change: Optional[Callable[[bool], None]] = None,
    ):
        if to_float(threshold) is None:
            raise TypeError("rotation threshold must be a finite number")
        if to_float(debounce_ms) is None or float(debounce_ms) < 0:
            raise ValueError("debounce_ms must be a non-negative number")
        self.threshold = float(threshold)
        self.debounce_ms = float(debounce_ms)
        self.on_change = on_change
        self._raw = False
        self._stable = False
        self._timer = TimerSlot("rotation_debounce")

    @property
    def raw_rotating(self) -> bool:
        return self._raw

    @property
    def is_rotating(self) -> bool:
        return self._stable

    @property
    def pending(self) -> bool:
        return self._timer.active

    def update(self, rotary_speed: Any) -> None:
        rpm = to_float(rotary_speed)
        raw = rpm is not None and rpm > self.threshold
        if raw == self._raw:
            return
        self._raw = raw
        self._timer.arm(self.debounce_ms, self._settle)

    def _settle(self) -> None:
        if self._raw == self._stable:
            return
        self._stable = self._raw
        LOG.info("Rotation state settled: %s", "rotating" if self._stable else "sliding")
        if self.on_change is not None:
            self.on_change(self._stable)

    def cancel(self) -> None:
        """Drop any pending change; the next reading is compared to the stable flag."""
        self._timer.cancel()
        self._raw = self._stable
