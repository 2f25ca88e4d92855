"""
Serialized session lifecycle.

All transitions run on one executor thread in arrival order. Callers post
intents and get a Future resolving to the state the intent left the machine
in; notifications from the audio callback, the worker and timers are posted
the same way and carry the session id, so ones that arrive after their
session ended are dropped.
"""

import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from ...utils.logger import get_logger
from .. import events
from ..asr.models.registry import ModelDescriptor
from ..asr.transcription_worker import CancellationToken, TranscriptionWorker, WorkerOutcome
from ..audio.capture import CaptureController
from ..audio.ring_buffer import OverflowPolicy
from ..errors import (
    DeviceLostError,
    InvalidTransition,
    MurmurError,
    TranscriptionCancelled,
    TranscriptionError,
    TranscriptionTimeout,
)
from ..events import EventBus
from ..settings.config import SLOW_TRANSCRIPTION_NOTICE_S, TRANSCRIPTION_TIMEOUT_S
from .models import (
    RecordingMode,
    Session,
    SessionSnapshot,
    SessionState,
    StopReason,
    TranscriptResult,
)

logger = get_logger(__name__)

STILL_RUNNING_NOTICE = "Transcription is still running. Please wait."
CANCELLING_NOTICE = "Cancelling transcription..."
CANCELLED_NOTICE = "Transcription cancelled."

CaptureFactory = Callable[[Callable[[], None], Callable[[str], None]], CaptureController]
ResultSink = Callable[[TranscriptResult], None]


@dataclass(frozen=True)
class Start:
    mode: RecordingMode = RecordingMode.TOGGLE
    name = "start"


@dataclass(frozen=True)
class Stop:
    name = "stop"


@dataclass(frozen=True)
class Cancel:
    name = "cancel"


@dataclass(frozen=True)
class Toggle:
    mode: RecordingMode = RecordingMode.TOGGLE
    name = "toggle"


@dataclass(frozen=True)
class HardLimitReached:
    session_id: str
    name = "hard-limit"


@dataclass(frozen=True)
class DeviceLost:
    session_id: str
    detail: str = ""
    name = "device-lost"


@dataclass(frozen=True)
class WorkerFinished:
    session_id: str
    result: Future
    name = "worker-finished"


@dataclass(frozen=True)
class Deadline:
    session_id: str
    kind: str
    name = "deadline"


class SessionStateMachine:
    def __init__(
        self,
        capture_factory: CaptureFactory,
        worker: TranscriptionWorker,
        resolve_model: Callable[[], ModelDescriptor],
        bus: Optional[EventBus] = None,
        copy_text: Optional[Callable[[str], bool]] = None,
        auto_copy: Callable[[], bool] = lambda: True,
        sinks: Optional[List[ResultSink]] = None,
        timeout_s: float = TRANSCRIPTION_TIMEOUT_S,
        watchdog_grace_s: float = 15.0,
        slow_notice_s: float = SLOW_TRANSCRIPTION_NOTICE_S,
    ):
        self.bus = bus or EventBus()
        self.timeout_s = timeout_s
        self.watchdog_grace_s = watchdog_grace_s
        self.slow_notice_s = slow_notice_s
        self._capture_factory = capture_factory
        self._worker = worker
        self._resolve_model = resolve_model
        self._copy_text = copy_text
        self._auto_copy = auto_copy
        self._sinks: List[ResultSink] = list(sinks or [])

        self._state = SessionState.IDLE
        self._session: Optional[Session] = None
        self._capture: Optional[CaptureController] = None
        self._descriptor: Optional[ModelDescriptor] = None
        self._token: Optional[CancellationToken] = None
        self._timer: Optional[threading.Timer] = None
        self._snapshot = SessionSnapshot()

        self._queue: "queue.Queue" = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, name="murmur-session", daemon=True
        )
        self._thread.start()

    # Intents

    def start(self, mode: RecordingMode = RecordingMode.TOGGLE) -> Future:
        return self.post(Start(RecordingMode(mode)))

    def stop(self) -> Future:
        return self.post(Stop())

    def cancel(self) -> Future:
        return self.post(Cancel())

    def toggle(self, mode: RecordingMode = RecordingMode.TOGGLE) -> Future:
        return self.post(Toggle(RecordingMode(mode)))

    def post(self, intent) -> Future:
        future: Future = Future()
        if self._closed:
            future.set_exception(InvalidTransition(intent.name, "shutdown"))
            return future
        self._queue.put((intent, future))
        return future

    def add_sink(self, sink: ResultSink) -> None:
        self._sinks.append(sink)

    # Queries

    @property
    def state(self) -> SessionState:
        return self._snapshot.state

    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        self._thread.join(timeout)

    # Executor

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            intent, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(self._dispatch(intent))
            except InvalidTransition as e:
                logger.debug(f"Rejected intent: {e}")
                future.set_exception(e)
            except MurmurError as e:
                future.set_exception(e)
            except Exception as e:
                logger.exception(f"Unhandled error applying '{intent.name}'")
                self._fail(TranscriptionError(f"Internal error: {e}"))
                future.set_exception(e)

        self._teardown()

    def _dispatch(self, intent) -> SessionState:
        if isinstance(intent, Start):
            return self._on_start(intent)
        if isinstance(intent, Stop):
            return self._on_stop()
        if isinstance(intent, Cancel):
            return self._on_cancel()
        if isinstance(intent, Toggle):
            return self._on_toggle(intent)
        if isinstance(intent, HardLimitReached):
            return self._on_hard_limit(intent)
        if isinstance(intent, DeviceLost):
            return self._on_device_lost(intent)
        if isinstance(intent, WorkerFinished):
            return self._on_worker_finished(intent)
        if isinstance(intent, Deadline):
            return self._on_deadline(intent)
        raise ValueError(f"Unknown intent {intent!r}")

    def _is_current(self, session_id: str) -> bool:
        return self._session is not None and self._session.id == session_id

    # Transitions

    def _on_start(self, intent: Start) -> SessionState:
        if self._state is not SessionState.IDLE:
            raise InvalidTransition(intent.name, self._state.value)

        try:
            descriptor = self._resolve_model()
        except MurmurError as e:
            logger.warning(f"Cannot start recording: {e}")
            self._set_error(e)
            self.bus.emit(
                events.TRANSCRIPTION_ERROR,
                message=e.user_message,
                recoverable=e.recoverable,
            )
            raise

        session = Session(mode=intent.mode)
        session_id = session.id
        capture = self._capture_factory(
            lambda: self.post(HardLimitReached(session_id)),
            lambda detail="": self.post(DeviceLost(session_id, detail)),
        )
        try:
            capture.open()
        except MurmurError as e:
            capture.close()
            self._fail(e)
            raise

        self._session = session
        self._capture = capture
        self._descriptor = descriptor
        self._transition(SessionState.RECORDING)
        self.bus.emit(events.RECORDING_STARTED, mode=intent.mode.value)
        logger.info(f"Recording started ({intent.mode.value})")
        return self._state

    def _on_stop(self) -> SessionState:
        if self._state is not SessionState.RECORDING:
            raise InvalidTransition("stop", self._state.value)
        return self._finish_recording(StopReason.USER)

    def _on_cancel(self) -> SessionState:
        if self._state is SessionState.RECORDING:
            self._close_capture()
            if self._capture is not None and self._capture.buffer is not None:
                self._capture.buffer.clear()
            logger.info("Recording cancelled")
            self.bus.emit(events.RECORDING_STOPPED, stop_reason=StopReason.USER.value)
            self._clear_session()
            self.bus.emit(events.TRANSCRIPTION_CANCELLED)
            self._transition(SessionState.IDLE)
            return self._state

        if self._state is SessionState.PROCESSING:
            self._token.cancel()
            self._start_timer(Deadline(self._session.id, "cancel"), self.timeout_s)
            self._transition(SessionState.CANCELLING)
            self.bus.emit(events.APP_NOTICE, message=CANCELLING_NOTICE)
            logger.info("Cancellation requested")
            return self._state

        raise InvalidTransition("cancel", self._state.value)

    def _on_toggle(self, intent: Toggle) -> SessionState:
        if self._state is SessionState.IDLE:
            return self._on_start(Start(intent.mode))
        if self._state is SessionState.RECORDING:
            return self._on_stop()
        self.bus.emit(events.APP_NOTICE, message=STILL_RUNNING_NOTICE)
        return self._state

    def _on_hard_limit(self, intent: HardLimitReached) -> SessionState:
        if not self._is_current(intent.session_id) or self._state is not SessionState.RECORDING:
            return self._state

        seconds = self._capture.max_seconds
        buffer = self._capture.buffer
        if buffer is not None and buffer.policy is OverflowPolicy.KEEP_LATEST:
            self._session.stop_reason = StopReason.HARD_LIMIT
            self.bus.emit(
                events.APP_NOTICE,
                message=f"Recording exceeded {seconds} seconds. "
                f"Only the last {seconds} seconds will be transcribed.",
            )
            return self._state

        self.bus.emit(
            events.APP_NOTICE,
            message=f"Recording exceeded {seconds} seconds. "
            f"Only the first {seconds} seconds were transcribed.",
        )
        return self._finish_recording(StopReason.HARD_LIMIT)

    def _on_device_lost(self, intent: DeviceLost) -> SessionState:
        if not self._is_current(intent.session_id) or self._state is not SessionState.RECORDING:
            return self._state

        self._session.stop_reason = StopReason.DEVICE_LOST
        self._close_capture()
        self.bus.emit(events.RECORDING_STOPPED, stop_reason=StopReason.DEVICE_LOST.value)
        self._fail(DeviceLostError(intent.detail or "input device lost"))
        return self._state

    def _on_worker_finished(self, intent: WorkerFinished) -> SessionState:
        if not self._is_current(intent.session_id) or self._state not in (
            SessionState.PROCESSING,
            SessionState.CANCELLING,
        ):
            logger.debug("Ignoring result of a finished session")
            return self._state

        self._cancel_timer()
        error = intent.result.exception()

        if self._state is SessionState.CANCELLING or isinstance(
            error, TranscriptionCancelled
        ):
            self._finish_cancelled()
        elif error is not None:
            self._fail(error)
        else:
            self._complete(intent.result.result())
        return self._state

    def _on_deadline(self, intent: Deadline) -> SessionState:
        if not self._is_current(intent.session_id):
            return self._state

        if intent.kind == "processing" and self._state is SessionState.PROCESSING:
            logger.error(
                f"Worker did not report back within {self.timeout_s + self.watchdog_grace_s:.0f}s"
            )
            self._token.cancel()
            self._fail(TranscriptionTimeout("processing watchdog expired"))
        elif intent.kind == "cancel" and self._state is SessionState.CANCELLING:
            logger.warning("Worker did not acknowledge cancellation, forcing idle")
            self._finish_cancelled()
        return self._state

    # Helpers

    def _finish_recording(self, reason: StopReason) -> SessionState:
        session = self._session
        capture = self._capture
        self._close_capture()

        buffer = capture.buffer
        if session.stop_reason is None:
            session.stop_reason = reason
        if buffer is not None:
            if buffer.overflowed:
                session.stop_reason = StopReason.HARD_LIMIT
            session.sample_count = buffer.available
            if capture.sample_rate:
                session.audio_ms = int(buffer.available * 1000 // capture.sample_rate)

        self.bus.emit(events.RECORDING_STOPPED, stop_reason=session.stop_reason.value)
        logger.info(
            f"Recording stopped ({session.stop_reason.value}), {session.audio_ms}ms captured"
        )

        self._token = CancellationToken()
        self._transition(SessionState.PROCESSING)

        session_id = session.id
        future = self._worker.submit(
            self._worker.process,
            capture.drain(),
            capture.sample_rate,
            self._descriptor,
            self._token,
            self.timeout_s,
        )
        future.add_done_callback(lambda f: self.post(WorkerFinished(session_id, f)))
        self._start_timer(
            Deadline(session_id, "processing"), self.timeout_s + self.watchdog_grace_s
        )
        return self._state

    def _complete(self, outcome: WorkerOutcome) -> None:
        session = self._session
        descriptor = self._descriptor

        auto_copied = False
        if outcome.text and self._copy_text is not None and self._auto_copy():
            try:
                auto_copied = bool(self._copy_text(outcome.text))
            except Exception:
                logger.exception("Auto-copy failed")

        result = TranscriptResult(
            text=outcome.text,
            duration_ms=outcome.audio_ms,
            model=descriptor.file_name,
            model_label=outcome.model_label,
            auto_copied=auto_copied,
            annotation=outcome.annotation,
            stop_reason=session.stop_reason,
        )
        self._transition(SessionState.RESULT, last_result=result)

        for sink in self._sinks:
            try:
                sink(result)
            except Exception:
                logger.exception("Result sink failed")

        self.bus.emit(
            events.TRANSCRIPTION_COMPLETE,
            id=result.id,
            text=result.text,
            duration_ms=result.duration_ms,
            model=result.model,
            auto_copied=result.auto_copied,
            annotation=result.annotation,
        )
        if outcome.elapsed_s > self.slow_notice_s:
            self.bus.emit(
                events.APP_NOTICE,
                message=f"Transcription took {outcome.elapsed_s:.1f}s. "
                "Consider a smaller model for faster response.",
            )

        self._clear_session()
        self._transition(SessionState.IDLE)

    def _finish_cancelled(self) -> None:
        self._cancel_timer()
        logger.info("Transcription cancelled")
        self._clear_session()
        self.bus.emit(events.APP_NOTICE, message=CANCELLED_NOTICE)
        self.bus.emit(events.TRANSCRIPTION_CANCELLED)
        self._transition(SessionState.IDLE)

    def _fail(self, error: BaseException) -> None:
        if not isinstance(error, MurmurError):
            error = TranscriptionError(str(error))

        if error.recoverable:
            logger.warning(f"Session failed: {error}", exc_info=error)
        else:
            logger.error(f"Session failed (not recoverable): {error}", exc_info=error)

        if self._token is not None:
            self._token.cancel()
        self._close_capture()
        self._cancel_timer()
        self._set_error(error)
        self._transition(SessionState.ERROR)
        self.bus.emit(
            events.TRANSCRIPTION_ERROR,
            message=error.user_message,
            recoverable=error.recoverable,
        )
        self._clear_session()
        self._transition(SessionState.IDLE)

    def _set_error(self, error: MurmurError) -> None:
        self._snapshot = replace(
            self._snapshot,
            error_message=error.user_message,
            error_recoverable=error.recoverable,
        )

    def _transition(self, state: SessionState, **changes) -> None:
        self._state = state
        session = self._session
        fields = dict(
            state=state,
            session_id=session.id if session else None,
            mode=session.mode if session else None,
            started_at=session.started_at if session else None,
            sample_count=session.sample_count if session else 0,
            audio_ms=session.audio_ms if session else 0,
            stop_reason=session.stop_reason if session else None,
        )
        if state is SessionState.RECORDING:
            fields.update(error_message=None, error_recoverable=None)
        fields.update(changes)
        self._snapshot = replace(self._snapshot, **fields)
        self.bus.emit(events.STATE_CHANGED, state=state.value)

    def _close_capture(self) -> None:
        if self._capture is not None:
            try:
                self._capture.close()
            except Exception:
                logger.exception("Error closing capture")

    def _clear_session(self) -> None:
        self._cancel_timer()
        self._session = None
        self._capture = None
        self._descriptor = None
        self._token = None

    def _start_timer(self, intent, delay: float) -> None:
        self._cancel_timer()
        timer = threading.Timer(delay, self.post, args=(intent,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _teardown(self) -> None:
        if self._token is not None:
            self._token.cancel()
        self._close_capture()
        self._clear_session()
