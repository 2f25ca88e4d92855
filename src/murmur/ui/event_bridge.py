from typing import Callable, Optional

from PySide6.QtCore import QObject, Signal

from ..core import events
from ..core.events import Event
from ..utils.logger import get_logger

logger = get_logger(__name__)


class EngineSignals(QObject):
    """
    Re-emits engine events as Qt signals.

    Engine events arrive on the executor, worker and download threads; Qt
    delivers the signals to widgets on the GUI thread through queued
    connections.
    """

    state_changed = Signal(str)  # state
    recording_started = Signal(str)  # mode
    recording_stopped = Signal(str)  # stop_reason
    transcription_complete = Signal(dict)  # payload
    transcription_cancelled = Signal()
    transcription_error = Signal(str, bool)  # message, recoverable
    download_progress = Signal(str, int)  # file_name, percent
    download_complete = Signal(str)  # file_name
    download_failed = Signal(str, str)  # file_name, message
    notice = Signal(str)  # message

    def __init__(self, parent=None):
        super().__init__(parent)
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, engine) -> None:
        self.detach()
        self._unsubscribe = engine.subscribe(self.handle_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle_event(self, event: Event) -> None:
        payload = event.payload
        name = event.name

        if name == events.STATE_CHANGED:
            self.state_changed.emit(payload["state"])
        elif name == events.RECORDING_STARTED:
            self.recording_started.emit(payload.get("mode", ""))
        elif name == events.RECORDING_STOPPED:
            self.recording_stopped.emit(payload.get("stop_reason") or "")
        elif name == events.TRANSCRIPTION_COMPLETE:
            self.transcription_complete.emit(dict(payload))
        elif name == events.TRANSCRIPTION_CANCELLED:
            self.transcription_cancelled.emit()
        elif name == events.TRANSCRIPTION_ERROR:
            self.transcription_error.emit(
                payload["message"], bool(payload.get("recoverable", True))
            )
        elif name == events.MODEL_DOWNLOAD_PROGRESS:
            self.download_progress.emit(payload["file_name"], int(payload["percent"]))
        elif name == events.MODEL_DOWNLOAD_COMPLETE:
            self.download_complete.emit(payload["file_name"])
        elif name == events.MODEL_DOWNLOAD_FAILED:
            self.download_failed.emit(payload["file_name"], payload.get("message", ""))
        elif name == events.APP_NOTICE:
            self.notice.emit(payload["message"])
        else:
            logger.debug(f"No signal for event '{name}'")
