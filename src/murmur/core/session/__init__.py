from .models import (
    RecordingMode,
    Session,
    SessionSnapshot,
    SessionState,
    StopReason,
    TranscriptResult,
)
from .state_machine import SessionStateMachine

__all__ = [
    "RecordingMode",
    "Session",
    "SessionSnapshot",
    "SessionState",
    "SessionStateMachine",
    "StopReason",
    "TranscriptResult",
]
