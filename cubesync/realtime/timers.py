"""Single-occupancy timers bound to the running asyncio loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

LOGGER = logging.getLogger(__name__)


class TimerSlot:
    """Holds at most one pending timer; arming it again replaces the previous one.

    ``start`` fires ``callback`` once after ``delay`` seconds, ``start_repeating``
    fires it every ``interval`` seconds until cancelled. Channels cancel a slot
    from the state transition that makes it stale.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._interval: Optional[float] = None
        self._callback: Optional[Callable[[], Any]] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, delay: float, callback: Callable[[], Any]) -> None:
        self.cancel()
        self._callback = callback
        self._interval = None
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, delay), self._fire)

    def start_repeating(self, interval: float, callback: Callable[[], Any]) -> None:
        if interval <= 0:
            raise ValueError(f"{self.name}: interval must be positive")
        self.cancel()
        self._callback = callback
        self._interval = interval
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(interval, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._callback = None
        self._interval = None

    def _fire(self) -> None:
        callback = self._callback
        if self._interval is not None and callback is not None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self._interval, self._fire)
        else:
            self._handle = None
            self._callback = None
        if callback is None:
            return
        try:
            callback()
        except Exception:
            LOGGER.exception("Timer %s callback failed", self.name)


__all__ = ["TimerSlot"]
