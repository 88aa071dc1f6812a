from __future__ import annotations

import threading
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Ticker(Protocol):
    def every(self, seconds: float, callback: Callable[[], None]) -> TimerHandle: ...


class _RepeatingTimer:
    def __init__(self, seconds: float, callback: Callable[[], None]) -> None:
        self._seconds = float(seconds)
        self._callback = callback
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._cancelled = False

    def start(self) -> "_RepeatingTimer":
        self._arm()
        return self

    def _arm(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._timer = threading.Timer(self._seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._callback()
        self._arm()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class ThreadingTicker:
    """Wall-clock ticker; each callback runs on a daemon timer thread."""

    def every(self, seconds: float, callback: Callable[[], None]) -> TimerHandle:
        return _RepeatingTimer(seconds, callback).start()


class _ManualHandle:
    def __init__(self, owner: "ManualTicker", callback: Callable[[], None]) -> None:
        self._owner = owner
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTicker:
    """Ticker driven by the caller, one ``tick()`` per elapsed period.

    Lets an event loop or a test advance countdowns deterministically.
    """

    def __init__(self) -> None:
        self._handles: list[_ManualHandle] = []

    def every(self, seconds: float, callback: Callable[[], None]) -> TimerHandle:
        h = _ManualHandle(self, callback)
        self._handles.append(h)
        return h

    @property
    def active(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)

    def tick(self, n: int = 1) -> None:
        for _ in range(int(n)):
            for h in list(self._handles):
                if not h.cancelled:
                    h.callback()
            self._handles = [h for h in self._handles if not h.cancelled]
