"""Exam-session proctoring.

States::

    inactive -> compliant        start()
    any live -> warning          a signal drops from True to False (countdown restarts)
    warning  -> paused           every signal is True again
    paused   -> compliant        acknowledge() while compliant
    paused   -> warning          acknowledge() while a signal is still False
    warning  -> failed           countdown reaches zero; on_restart fires once

``failed`` is terminal. The controller owns the countdown timer and the
face-detection loop and releases both on stop().
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable

from branchlms.proctoring.detection import FaceDetectionLoop, FaceDetector, FrameSource
from branchlms.proctoring.timers import ThreadingTicker, Ticker, TimerHandle


log = logging.getLogger(__name__)

SIGNAL_NAMES = ("face_visible", "tab_focused", "mouse_in_page")

VIOLATION_MESSAGES = {
    "face_visible": "face not detected",
    "tab_focused": "you have switched tabs or windows",
    "mouse_in_page": "mouse pointer has left the page",
}


class ProctoringState(str, enum.Enum):
    inactive = "inactive"
    compliant = "compliant"
    warning = "warning"
    paused = "paused"
    failed = "failed"


@dataclass
class Signals:
    face_visible: bool = True
    tab_focused: bool = True
    mouse_in_page: bool = True

    @property
    def compliant(self) -> bool:
        return self.face_visible and self.tab_focused and self.mouse_in_page

    def violations(self) -> list[str]:
        return [VIOLATION_MESSAGES[n] for n in SIGNAL_NAMES if not getattr(self, n)]


class ProctoringController:
    def __init__(
        self,
        *,
        on_restart: Callable[[], None],
        ticker: Ticker | None = None,
        countdown_seconds: int = 10,
        camera: FrameSource | None = None,
        detector: FaceDetector | None = None,
        on_state_change: Callable[[ProctoringState], None] | None = None,
        detection_interval_seconds: float = 1 / 30,
    ) -> None:
        self.on_restart = on_restart
        self.ticker: Ticker = ticker or ThreadingTicker()
        self.countdown_seconds = int(countdown_seconds)
        self.on_state_change = on_state_change

        self.state = ProctoringState.inactive
        self.signals = Signals()
        self.remaining: int | None = None
        self.reasons: list[str] = []

        self._lock = threading.RLock()
        self._countdown: TimerHandle | None = None
        self._restart_fired = False
        self._loop: FaceDetectionLoop | None = None
        if camera is not None and detector is not None:
            self._loop = FaceDetectionLoop(
                camera, detector, self.set_face_visible, interval_seconds=detection_interval_seconds
            )

    # lifecycle

    def start(self) -> None:
        with self._lock:
            if self.state != ProctoringState.inactive:
                return
            self._set_state(ProctoringState.compliant)
            if not self.signals.compliant:
                self._enter_warning()
        if self._loop is not None:
            self._loop.start()

    def stop(self) -> None:
        with self._lock:
            self._cancel_countdown()
            loop, self._loop = self._loop, None
        if loop is not None:
            loop.stop()

    def __enter__(self) -> "ProctoringController":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # signals

    def set_face_visible(self, value: bool) -> None:
        self.update_signal("face_visible", value)

    def set_tab_focused(self, value: bool) -> None:
        self.update_signal("tab_focused", value)

    def set_mouse_in_page(self, value: bool) -> None:
        self.update_signal("mouse_in_page", value)

    def update_signal(self, name: str, value: bool) -> None:
        if name not in SIGNAL_NAMES:
            raise ValueError(f"unknown proctoring signal: {name}")
        with self._lock:
            before = getattr(self.signals, name)
            setattr(self.signals, name, bool(value))
            if self.state in (ProctoringState.inactive, ProctoringState.failed):
                return
            if before and not value:
                self._enter_warning()
            elif not before and value and self.state == ProctoringState.warning and self.signals.compliant:
                self._cancel_countdown()
                self.remaining = None
                self._set_state(ProctoringState.paused)

    def acknowledge(self) -> ProctoringState:
        """The learner's "I understand, resume" action."""
        with self._lock:
            if self.state != ProctoringState.paused:
                return self.state
            if self.signals.compliant:
                self.reasons = []
                self._set_state(ProctoringState.compliant)
            else:
                self._enter_warning()
            return self.state

    # internals

    def _enter_warning(self) -> None:
        self._cancel_countdown()
        self.reasons = self.signals.violations()
        self.remaining = self.countdown_seconds
        self._set_state(ProctoringState.warning)
        self._countdown = self.ticker.every(1.0, self._tick)

    def _tick(self) -> None:
        fire = False
        with self._lock:
            if self.state != ProctoringState.warning or self.remaining is None:
                return
            self.remaining -= 1
            if self.remaining <= 0:
                self.remaining = 0
                self._cancel_countdown()
                self._set_state(ProctoringState.failed)
                fire = not self._restart_fired
                self._restart_fired = True
        if fire:
            log.warning("proctoring failed: %s", ", ".join(self.reasons) or "non-compliant")
            self.stop()
            self.on_restart()

    def _cancel_countdown(self) -> None:
        if self._countdown is not None:
            self._countdown.cancel()
            self._countdown = None

    def _set_state(self, state: ProctoringState) -> None:
        if state == self.state:
            return
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "state": self.state.value,
                "remaining": self.remaining,
                "reasons": list(self.reasons),
                "signals": {n: getattr(self.signals, n) for n in SIGNAL_NAMES},
            }
