"""
Model lifecycle: lazy load, warm keep, idle unload.

A single model slot moves ``unloaded -> loading -> ready`` and back to
``unloaded`` after an idle timeout or a switch to another model. The loaded
model is leased to one borrower at a time; concurrent acquires for the same
model wait on the slot's condition variable and share one load.
"""

import threading
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from ...utils.logger import get_logger
from ..errors import ModelLoadError, TranscriptionError
from ..settings.config import MODEL_IDLE_TIMEOUT_S, MODEL_SAMPLE_RATE
from .backends import SegmentResult, SherpaOnnxBackend, create_backend
from .models.registry import ModelDescriptor, is_model_installed

logger = get_logger(__name__)

Scheduler = Callable[[Callable[[], None]], object]


class SlotState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


class ModelHandle:
    """A loaded model, valid until the manager unloads it."""

    def __init__(self, descriptor: ModelDescriptor, backend: SherpaOnnxBackend):
        self.descriptor = descriptor
        self._backend = backend
        self._valid = True

    @property
    def valid(self) -> bool:
        return self._valid

    def transcribe(
        self, audio: np.ndarray, sample_rate: int = MODEL_SAMPLE_RATE
    ) -> SegmentResult:
        if not self._valid:
            raise TranscriptionError(
                f"Model handle for '{self.descriptor.file_name}' was unloaded"
            )
        return self._backend.transcribe(audio, sample_rate)

    def _invalidate(self) -> None:
        self._valid = False
        self._backend.unload()


def _run_inline(fn: Callable[[], None]) -> None:
    fn()


class ModelManager:
    def __init__(
        self,
        models_dir: Path,
        backend_factory: Callable[[], SherpaOnnxBackend] = create_backend,
        idle_timeout_s: float = MODEL_IDLE_TIMEOUT_S,
        schedule: Optional[Scheduler] = None,
    ):
        self.models_dir = Path(models_dir)
        self.idle_timeout_s = idle_timeout_s
        self._backend_factory = backend_factory
        self._schedule: Scheduler = schedule or _run_inline

        self._cond = threading.Condition()
        self._state = SlotState.UNLOADED
        self._handle: Optional[ModelHandle] = None
        self._leased = False
        self._active: Optional[ModelDescriptor] = None
        self._closed = False

        self._idle_timer: Optional[threading.Timer] = None
        self._idle_generation = 0
        self.load_count = 0

    def set_scheduler(self, schedule: Scheduler) -> None:
        self._schedule = schedule

    @property
    def state(self) -> SlotState:
        return self._state

    @property
    def active(self) -> Optional[ModelDescriptor]:
        return self._active

    @property
    def leased(self) -> bool:
        return self._leased

    @property
    def loaded_model(self) -> Optional[str]:
        handle = self._handle
        return handle.descriptor.file_name if handle is not None else None

    def acquire(
        self, descriptor: Optional[ModelDescriptor] = None, timeout: Optional[float] = None
    ) -> ModelHandle:
        """
        Lease the loaded model for ``descriptor`` (the active model by default).

        Blocks while another borrower holds the lease or a load is in flight.
        Raises ModelLoadError when the model is missing or fails to load.
        """
        descriptor = descriptor or self._active
        if descriptor is None:
            raise ModelLoadError("No active model selected")

        with self._cond:
            self._cancel_idle_timer()
            while True:
                if self._closed:
                    raise ModelLoadError("Model manager is shut down")
                if self._state is SlotState.LOADING or self._leased:
                    if not self._cond.wait(timeout):
                        raise ModelLoadError(
                            f"Timed out waiting for model '{descriptor.file_name}'"
                        )
                    continue
                if self._state is SlotState.READY:
                    if self._handle.descriptor.file_name == descriptor.file_name:
                        self._leased = True
                        return self._handle
                    logger.info(
                        f"Unloading '{self._handle.descriptor.file_name}' to load "
                        f"'{descriptor.file_name}'"
                    )
                    self._unload_locked()
                self._state = SlotState.LOADING
                break

        try:
            backend = self._load(descriptor)
        except BaseException:
            with self._cond:
                self._state = SlotState.UNLOADED
                self._cond.notify_all()
            raise

        with self._cond:
            self._handle = ModelHandle(descriptor, backend)
            self._state = SlotState.READY
            self._leased = True
            self.load_count += 1
            self._cond.notify_all()
            return self._handle

    def release(self, handle: ModelHandle) -> None:
        with self._cond:
            if handle is self._handle:
                self._leased = False
                self._schedule_idle_unload()
            self._cond.notify_all()

    def switch_active(self, descriptor: ModelDescriptor, preload: bool = False) -> None:
        with self._cond:
            previous = self._active
            self._active = descriptor
        if previous is None or previous.file_name != descriptor.file_name:
            logger.info(f"Active model set to '{descriptor.file_name}'")
        if preload:
            self._schedule(self._preload_logged)

    def preload(self) -> None:
        handle = self.acquire()
        self.release(handle)

    def _preload_logged(self) -> None:
        try:
            self.preload()
        except ModelLoadError as e:
            logger.error(f"Preload failed: {e}")

    def unload(self) -> None:
        with self._cond:
            self._cancel_idle_timer()
            while self._leased or self._state is SlotState.LOADING:
                self._cond.wait()
            if self._state is SlotState.READY:
                self._unload_locked()

    def shutdown(self) -> None:
        with self._cond:
            self._closed = True
            self._cancel_idle_timer()
            self._cond.notify_all()
            if self._state is SlotState.READY and not self._leased:
                self._unload_locked()

    def _load(self, descriptor: ModelDescriptor) -> SherpaOnnxBackend:
        if not is_model_installed(self.models_dir, descriptor):
            raise ModelLoadError(
                f"Model '{descriptor.file_name}' is not installed in {self.models_dir}"
            )

        backend = self._backend_factory()
        try:
            backend.load(str(self.models_dir / descriptor.file_name), descriptor.model_type)
        except ModelLoadError:
            raise
        except Exception as e:
            raise ModelLoadError(f"Failed to load '{descriptor.file_name}': {e}") from e
        logger.info(f"Model '{descriptor.file_name}' ready")
        return backend

    def _unload_locked(self) -> None:
        handle = self._handle
        self._handle = None
        self._state = SlotState.UNLOADED
        if handle is not None:
            try:
                handle._invalidate()
            except Exception:
                logger.exception(f"Error unloading '{handle.descriptor.file_name}'")
            logger.info(f"Model '{handle.descriptor.file_name}' unloaded")
        self._cond.notify_all()

    def _schedule_idle_unload(self) -> None:
        self._cancel_idle_timer()
        if self._closed:
            return
        generation = self._idle_generation
        timer = threading.Timer(self.idle_timeout_s, self._on_idle_timeout, args=(generation,))
        timer.daemon = True
        self._idle_timer = timer
        timer.start()

    def _cancel_idle_timer(self) -> None:
        self._idle_generation += 1
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _on_idle_timeout(self, generation: int) -> None:
        self._schedule(lambda: self._unload_if_idle(generation))

    def _unload_if_idle(self, generation: int) -> None:
        with self._cond:
            if generation != self._idle_generation:
                return
            if self._leased or self._state is not SlotState.READY:
                return
            logger.info(f"Model idle for {self.idle_timeout_s:.0f}s")
            self._idle_timer = None
            self._unload_locked()
