"""
Outbound events of the dictation core.

Listeners receive :class:`Event` objects on the thread that produced them
(state executor, worker or download thread) and must return quickly.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from ..utils.logger import get_logger

logger = get_logger(__name__)

STATE_CHANGED = "state-changed"
RECORDING_STARTED = "recording-started"
RECORDING_STOPPED = "recording-stopped"
TRANSCRIPTION_COMPLETE = "transcription-complete"
TRANSCRIPTION_CANCELLED = "transcription-cancelled"
TRANSCRIPTION_ERROR = "transcription-error"
MODEL_DOWNLOAD_PROGRESS = "model-download-progress"
MODEL_DOWNLOAD_COMPLETE = "model-download-complete"
MODEL_DOWNLOAD_FAILED = "model-download-failed"
APP_NOTICE = "app-notice"


@dataclass(frozen=True)
class Event:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


EventListener = Callable[[Event], None]


class EventBus:
    def __init__(self):
        self._listeners: List[EventListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, name: str, **payload: Any) -> None:
        event = Event(name=name, payload=payload)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed for '{name}'")
