import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import numpy as np

from ...utils.logger import get_logger
from ..audio.capture import AudioFrame
from ..audio.resampler import StreamingResampler
from ..audio.vad import NO_SPEECH, VoiceActivityGate, preprocess_audio, split_segments
from ..errors import TranscriptionCancelled, TranscriptionError, TranscriptionTimeout
from ..settings.config import MODEL_SAMPLE_RATE, TRANSCRIPTION_TIMEOUT_S
from .model_manager import ModelHandle, ModelManager
from .models.registry import ModelDescriptor

logger = get_logger(__name__)

SEGMENT_SECONDS = 10.0


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TranscriptionCancelled("cancelled by user")


@dataclass
class WorkerOutcome:
    text: str
    audio_ms: int
    elapsed_s: float
    model_label: str
    annotation: Optional[str] = None


class TranscriptionWorker:
    """
    Single background thread for inference and model load/unload.

    Jobs run strictly one at a time in submission order, so at most one
    inference is ever in flight and model loads never race with decoding.
    """

    def __init__(
        self,
        model_manager: ModelManager,
        gate: Optional[VoiceActivityGate] = None,
        segment_seconds: float = SEGMENT_SECONDS,
    ):
        self.model_manager = model_manager
        self.gate = gate or VoiceActivityGate()
        self.segment_seconds = segment_seconds

        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name="murmur-worker", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout)

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        future: Future = Future()
        self._queue.put((fn, args, kwargs, future))
        return future

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            fn, args, kwargs, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as e:
                future.set_exception(e)

        # Fail whatever is still queued so no caller waits forever.
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is not None and item[3].set_running_or_notify_cancel():
                item[3].set_exception(TranscriptionError("Worker stopped"))

    def process(
        self,
        frames: Iterable[AudioFrame],
        source_rate: int,
        descriptor: ModelDescriptor,
        token: CancellationToken,
        timeout_s: float = TRANSCRIPTION_TIMEOUT_S,
    ) -> WorkerOutcome:
        """Run one session's audio through resampling, gating and the model."""
        started = time.monotonic()
        resampler = StreamingResampler(source_rate, MODEL_SAMPLE_RATE)

        pieces = []
        for frame in frames:
            token.raise_if_cancelled()
            pieces.append(resampler.process(frame.samples))
        audio = np.concatenate(pieces) if pieces else np.zeros(0, dtype=np.float32)
        audio_ms = int(len(audio) * 1000 // MODEL_SAMPLE_RATE)

        decision = self.gate.evaluate(audio)
        if not decision.accepted:
            return WorkerOutcome(
                text="",
                audio_ms=audio_ms,
                elapsed_s=time.monotonic() - started,
                model_label=descriptor.label,
                annotation=decision.annotation,
            )

        audio = preprocess_audio(decision.trim(audio))
        token.raise_if_cancelled()

        handle = self.model_manager.acquire(descriptor)
        try:
            text = self.transcribe(audio, handle, timeout_s, token)
        finally:
            self.model_manager.release(handle)

        elapsed = time.monotonic() - started
        logger.info(
            f"Transcribed {audio_ms}ms of audio in {elapsed:.2f}s "
            f"with '{descriptor.file_name}'"
        )
        return WorkerOutcome(
            text=text,
            audio_ms=audio_ms,
            elapsed_s=elapsed,
            model_label=descriptor.label,
            annotation=None if text else NO_SPEECH,
        )

    def transcribe(
        self,
        audio: np.ndarray,
        handle: ModelHandle,
        timeout_s: float,
        token: CancellationToken,
    ) -> str:
        deadline = time.monotonic() + timeout_s
        segments = split_segments(
            audio, MODEL_SAMPLE_RATE, max_seconds=self.segment_seconds
        )

        texts = []
        for index, segment in enumerate(segments):
            token.raise_if_cancelled()
            if time.monotonic() > deadline:
                raise TranscriptionTimeout(
                    f"Exceeded {timeout_s:.1f}s after {index}/{len(segments)} segments"
                )
            try:
                result = handle.transcribe(segment, MODEL_SAMPLE_RATE)
            except TranscriptionError:
                raise
            except Exception as e:
                raise TranscriptionError(f"Backend failed: {e}") from e
            if result.text:
                texts.append(result.text.strip())

        token.raise_if_cancelled()
        return " ".join(t for t in texts if t).strip()
