from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Protocol


log = logging.getLogger(__name__)


class FrameSource(Protocol):
    """Camera-like source. ``read`` returns None while no frame is available."""

    def read(self) -> Any | None: ...

    def release(self) -> None: ...


FaceDetector = Callable[[Any], bool]


class FaceDetectionLoop:
    def __init__(
        self,
        source: FrameSource,
        detector: FaceDetector,
        on_result: Callable[[bool], None],
        *,
        interval_seconds: float = 1 / 30,
    ) -> None:
        self.source = source
        self.detector = detector
        self.on_result = on_result
        self.interval_seconds = float(interval_seconds)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._released = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="face-detection", daemon=True)
        self._thread.start()

    def step(self) -> bool | None:
        """Process one frame. Returns the detection result, or None when no frame was read."""
        frame = self.source.read()
        if frame is None:
            return None
        try:
            visible = bool(self.detector(frame))
        except Exception:
            # A detector crash counts as "no face": enforcement fails closed.
            log.exception("face detector failed")
            visible = False
        self.on_result(visible)
        return visible

    def _run(self) -> None:
        while not self._stop.is_set():
            self.step()
            self._stop.wait(self.interval_seconds)

    def stop(self) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)
        self._thread = None
        if not self._released:
            self._released = True
            self.source.release()
