"""Session data passed between the state machine, its sinks and readers."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    CANCELLING = "cancelling"
    RESULT = "result"
    ERROR = "error"


class RecordingMode(str, Enum):
    TOGGLE = "toggle"
    PUSH_TO_TALK = "push-to-talk"


class StopReason(str, Enum):
    USER = "user"
    HARD_LIMIT = "hard-limit"
    DEVICE_LOST = "device-lost"


class TranscriptResult(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    text: str
    duration_ms: int = Field(ge=0)
    model: str
    model_label: str
    auto_copied: bool = False
    annotation: Optional[str] = None
    stop_reason: Optional[StopReason] = None
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


@dataclass
class Session:
    """The live recording attempt. Only the state executor mutates it."""

    mode: RecordingMode
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=datetime.now)
    sample_count: int = 0
    audio_ms: int = 0
    stop_reason: Optional[StopReason] = None


@dataclass(frozen=True)
class SessionSnapshot:
    state: SessionState = SessionState.IDLE
    session_id: Optional[str] = None
    mode: Optional[RecordingMode] = None
    started_at: Optional[datetime] = None
    sample_count: int = 0
    audio_ms: int = 0
    stop_reason: Optional[StopReason] = None
    error_message: Optional[str] = None
    error_recoverable: Optional[bool] = None
    last_result: Optional[TranscriptResult] = None
