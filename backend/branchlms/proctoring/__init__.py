from branchlms.proctoring.controller import ProctoringController, ProctoringState, Signals
from branchlms.proctoring.detection import FaceDetectionLoop
from branchlms.proctoring.timers import ManualTicker, ThreadingTicker

__all__ = [
    "ProctoringController",
    "ProctoringState",
    "Signals",
    "FaceDetectionLoop",
    "ManualTicker",
    "ThreadingTicker",
]
