"""Cancellable event-loop timers with at most one live handle per slot."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

LOG = logging.getLogger("rig.timers")


class TimerSlot:
    """A one-shot timer. Arming replaces whatever was pending."""

    def __init__(self, name: str, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.name = name
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def active(self) -> bool:
        return self._handle is not None

    def arm(self, delay_ms: float, callback: Callable[[], None]) -> None:
        self.cancel()

        def _fire() -> None:
            self._handle = None
            callback()

        self._handle = self._get_loop().call_later(max(0.0, delay_ms) / 1000.0, _fire)
        LOG.debug("timer %s armed for %.0f ms", self.name, delay_ms)

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        LOG.debug("timer %s cancelled", self.name)
        return True


class TickerSlot:
    """A periodic timer built on a single re-armed TimerSlot."""

    def __init__(self, name: str, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._slot = TimerSlot(name, loop)
        self._interval_ms = 0.0
        self._callback: Optional[Callable[[], None]] = None

    @property
    def name(self) -> str:
        return self._slot.name

    @property
    def active(self) -> bool:
        return self._slot.active

    def start(self, interval_ms: float, callback: Callable[[], None]) -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        self._interval_ms = float(interval_ms)
        self._callback = callback
        self._slot.arm(self._interval_ms, self._tick)

    def _tick(self) -> None:
        cb = self._callback
        if cb is None:
            return
        # re-arm first so a callback that stops the ticker wins
        self._slot.arm(self._interval_ms, self._tick)
        cb()

    def stop(self) -> bool:
        self._callback = None
        return self._slot.cancel()
