"""
Engine facade: the surface a UI or hotkey layer talks to.

Composes capture, the worker, the model lifecycle manager, the download
manager and the session state machine, and exposes their intents, queries
and events.
"""

import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from .core import events
from .core.asr.backends import SherpaOnnxBackend, create_backend
from .core.asr.downloader import DownloadManager
from .core.asr.model_manager import ModelManager
from .core.asr.models.registry import (
    ModelDescriptor,
    describe,
    get_model_by_file_name,
    is_model_installed,
    list_models,
    pick_default_model,
    pick_installed_fallback,
)
from .core.asr.transcription_worker import TranscriptionWorker
from .core.audio.capture import AudioInputStatus, CaptureController, input_status
from .core.audio.vad import VoiceActivityGate
from .core.errors import DownloadError, ModelLoadError
from .core.events import EventBus, EventListener
from .core.history import HistoryRecord, JsonHistoryStore
from .core.output.clipboard import copy_to_clipboard
from .core.session.models import RecordingMode, SessionSnapshot, SessionState
from .core.session.state_machine import SessionStateMachine
from .core.settings import Settings, get_models_dir, get_settings
from .core.settings.config import DEFAULT_HISTORY_LIMIT
from .utils.logger import get_logger

logger = get_logger(__name__)

NO_MODEL_MESSAGE = (
    "No installed model available. Download a model or add one to the models "
    "directory."
)


def _completed(value=None, error: Optional[BaseException] = None) -> Future:
    future: Future = Future()
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(value)
    return future


class DictationEngine:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        models_dir: Optional[Path] = None,
        history: Optional[JsonHistoryStore] = None,
        backend_factory: Callable[[], SherpaOnnxBackend] = create_backend,
        capture_factory: Optional[Callable] = None,
        copy_text: Optional[Callable[[str], bool]] = copy_to_clipboard,
        http_session: Optional[requests.Session] = None,
        download_sleep: Optional[Callable[[float], None]] = None,
        persist_settings: bool = False,
    ):
        self.settings = settings or get_settings()
        self.models_dir = Path(models_dir) if models_dir is not None else get_models_dir()
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.persist_settings = persist_settings
        self._closed = False

        self.bus = EventBus()
        self.history = history if history is not None else JsonHistoryStore()

        self.model_manager = ModelManager(
            self.models_dir,
            backend_factory=backend_factory,
            idle_timeout_s=self.settings.model_idle_timeout_s,
        )
        self.worker = TranscriptionWorker(
            self.model_manager,
            gate=VoiceActivityGate(
                min_speech_ms=self.settings.min_speech_ms,
                energy_threshold=self.settings.vad_energy_threshold,
            ),
        )
        self.model_manager.set_scheduler(self.worker.submit)
        self.worker.start()

        download_kwargs = {"max_attempts": self.settings.download_max_attempts}
        if download_sleep is not None:
            download_kwargs["sleep"] = download_sleep
        self.downloads = DownloadManager(
            self.models_dir, session=http_session, **download_kwargs
        )
        self._download_lock = threading.Lock()
        self._download_percent: Dict[str, int] = {}

        self.machine = SessionStateMachine(
            capture_factory=capture_factory or self._make_capture,
            worker=self.worker,
            resolve_model=self._resolve_model,
            bus=self.bus,
            copy_text=copy_text,
            auto_copy=lambda: self.settings.auto_copy,
            sinks=[self.history.add],
            timeout_s=self.settings.transcription_timeout_s,
        )

        self._init_active_model()

    # Intents

    def start(self, mode: Optional[RecordingMode] = None) -> Future:
        return self.machine.start(mode or self.settings.recording_mode)

    def stop(self) -> Future:
        return self.machine.stop()

    def cancel(self) -> Future:
        return self.machine.cancel()

    def toggle(self, mode: Optional[RecordingMode] = None) -> Future:
        return self.machine.toggle(mode or self.settings.recording_mode)

    def switch_active_model(self, file_name: str, preload: bool = False) -> Future:
        """
        Make ``file_name`` the active model, downloading it first if needed.

        Returns a Future resolving to the active ModelDescriptor.
        """
        descriptor = describe(file_name, self.models_dir)
        if descriptor is None:
            return _completed(error=ModelLoadError(f"Unknown model '{file_name}'"))

        if descriptor.installed:
            self._activate(descriptor, preload)
            return _completed(descriptor)

        result: Future = Future()

        def on_installed(download: Future) -> None:
            if download.cancelled():
                result.cancel()
                return
            error = download.exception()
            if error is not None:
                result.set_exception(error)
                return
            installed = describe(file_name, self.models_dir)
            self._activate(installed, preload)
            result.set_result(installed)

        self.ensure_model_installed(file_name).add_done_callback(on_installed)
        return result

    def ensure_model_installed(self, file_name: str) -> Future:
        descriptor = get_model_by_file_name(file_name)
        if descriptor is None:
            installed = describe(file_name, self.models_dir)
            if installed is not None:
                return _completed(self.models_dir / file_name)
            return _completed(
                error=DownloadError(f"Unknown model '{file_name}'", retryable=False)
            )

        if is_model_installed(self.models_dir, descriptor):
            return _completed(self.models_dir / file_name)

        with self._download_lock:
            first_request = file_name not in self._download_percent
            if first_request:
                self._download_percent[file_name] = -1

        future = self.downloads.ensure_installed(
            descriptor,
            on_progress=(lambda done, total: self._on_download_progress(file_name, done, total))
            if first_request
            else None,
        )
        if first_request:
            future.add_done_callback(lambda f: self._on_download_done(file_name, f))
        return future

    def cancel_download(self, file_name: str) -> bool:
        return self.downloads.cancel(file_name)

    # Queries

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        return self.bus.subscribe(listener)

    def snapshot(self) -> SessionSnapshot:
        return self.machine.snapshot()

    @property
    def state(self) -> SessionState:
        return self.machine.state

    @property
    def active_model(self) -> Optional[str]:
        active = self.model_manager.active
        return active.file_name if active is not None else None

    def list_models(self) -> List[ModelDescriptor]:
        return list_models(self.models_dir, self.active_model)

    def audio_input_status(self) -> AudioInputStatus:
        return input_status()

    def get_history(self, limit: int = DEFAULT_HISTORY_LIMIT) -> List[HistoryRecord]:
        return self.history.list(limit)

    def delete_history_entry(self, record_id: str) -> bool:
        return self.history.delete(record_id)

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down engine")
        self.machine.shutdown()
        self.downloads.shutdown()
        self.worker.submit(self.model_manager.shutdown)
        self.worker.stop(timeout=5.0)

    # Internals

    def _make_capture(self, on_hard_limit, on_device_lost) -> CaptureController:
        return CaptureController(
            device=self.settings.input_device,
            max_seconds=self.settings.max_recording_seconds,
            overflow_policy=self.settings.overflow_policy,
            on_hard_limit=on_hard_limit,
            on_device_lost=on_device_lost,
        )

    def _init_active_model(self) -> None:
        file_name = self.settings.active_model or pick_default_model(self.models_dir)
        descriptor = describe(file_name, self.models_dir)
        if descriptor is None:
            logger.warning(f"Configured model '{file_name}' is unknown and not installed")
            return
        preload = self.settings.preload_model and descriptor.installed
        self.model_manager.switch_active(descriptor, preload=preload)

    def _activate(self, descriptor: ModelDescriptor, preload: bool = False) -> None:
        self.model_manager.switch_active(descriptor, preload=preload)
        if self.settings.active_model != descriptor.file_name:
            self.settings.active_model = descriptor.file_name
            if self.persist_settings:
                self.settings.save()

    def _resolve_model(self) -> ModelDescriptor:
        active = self.model_manager.active
        if active is not None and is_model_installed(self.models_dir, active):
            return active

        fallback = pick_installed_fallback(
            self.models_dir, exclude=active.file_name if active else None
        )
        if fallback is None:
            raise ModelLoadError(
                f"No installed model in {self.models_dir}", user_message=NO_MODEL_MESSAGE
            )

        descriptor = describe(fallback, self.models_dir)
        if active is not None:
            self.bus.emit(
                events.APP_NOTICE,
                message=f"Active model '{active.file_name}' is missing. "
                f"Switched to '{fallback}'.",
            )
        logger.info(f"Falling back to installed model '{fallback}'")
        self._activate(descriptor)
        return descriptor

    def _on_download_progress(self, file_name: str, done: int, total: Optional[int]) -> None:
        if not total:
            return
        percent = min(100, int(done * 100 / total))
        with self._download_lock:
            if percent <= self._download_percent.get(file_name, -1):
                return
            self._download_percent[file_name] = percent
        self.bus.emit(events.MODEL_DOWNLOAD_PROGRESS, file_name=file_name, percent=percent)

    def _on_download_done(self, file_name: str, future: Future) -> None:
        with self._download_lock:
            self._download_percent.pop(file_name, None)

        if future.cancelled():
            return
        error = future.exception()
        if error is None:
            self.bus.emit(events.MODEL_DOWNLOAD_COMPLETE, file_name=file_name)
            return

        message = getattr(error, "user_message", None) or str(error)
        logger.error(f"Download of '{file_name}' failed: {error}")
        self.bus.emit(events.MODEL_DOWNLOAD_FAILED, file_name=file_name, message=message)
