"""
Shared fixtures: fake model directories, a fake recognizer backend, a capture
controller fed from test code instead of PortAudio, and an event recorder.

Qt runs offscreen so the signal bridge tests work without a display.
"""

import os
import tarfile
import threading
from typing import List, Optional

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import numpy as np
import pytest
import requests
from PySide6.QtWidgets import QApplication

from murmur.core.asr.backends import SegmentResult
from murmur.core.asr.model_manager import ModelManager
from murmur.core.asr.models.registry import describe
from murmur.core.asr.transcription_worker import TranscriptionWorker
from murmur.core.audio.capture import CaptureController
from murmur.core.audio.ring_buffer import RingBuffer
from murmur.core.errors import AudioError, ModelLoadError, TranscriptionError
from murmur.core.events import Event
from murmur.core.session.state_machine import SessionStateMachine

TINY = "sherpa-onnx-whisper-tiny.en"
BASE = "sherpa-onnx-whisper-base.en"
PARAKEET = "sherpa-onnx-nemo-parakeet-tdt-0.6b-v2-int8"


@pytest.fixture(autouse=True)
def cleanup_qt_objects(qtbot, request):
    """Process pending Qt events after each test so objects are destroyed in order."""
    yield

    app = QApplication.instance()
    if app:
        app.processEvents()


def make_whisper_model(models_dir, file_name: str = TINY):
    model_dir = models_dir / file_name
    model_dir.mkdir(parents=True, exist_ok=True)
    for name in ("tiny.en-encoder.int8.onnx", "tiny.en-decoder.int8.onnx", "tiny.en-tokens.txt"):
        (model_dir / name).write_bytes(b"onnx")
    return model_dir


def make_transducer_model(models_dir, file_name: str = PARAKEET):
    model_dir = models_dir / file_name
    model_dir.mkdir(parents=True, exist_ok=True)
    for name in ("encoder.int8.onnx", "decoder.int8.onnx", "joiner.int8.onnx", "tokens.txt"):
        (model_dir / name).write_bytes(b"onnx")
    return model_dir


def tone(seconds: float, sample_rate: int = 16000, amplitude: float = 0.3, freq: float = 220.0):
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def silence(seconds: float, sample_rate: int = 16000):
    return np.zeros(int(seconds * sample_rate), dtype=np.float32)


class BackendStats:
    def __init__(self):
        self.loads = 0
        self.unloads = 0
        self.decodes = 0
        self.lock = threading.Lock()


class FakeBackend:
    """Stands in for the sherpa-onnx recognizer."""

    def __init__(
        self,
        stats: BackendStats,
        text: str = "hello world",
        load_delay: float = 0.0,
        decode_delay: float = 0.0,
        fail_load: bool = False,
        fail_decode: bool = False,
        decode_gate: Optional[threading.Event] = None,
    ):
        self.stats = stats
        self.text = text
        self.load_delay = load_delay
        self.decode_delay = decode_delay
        self.fail_load = fail_load
        self.fail_decode = fail_decode
        self.decode_gate = decode_gate
        self.loaded = False

    def load(self, model_path: str, model_type: str) -> None:
        if self.load_delay:
            threading.Event().wait(self.load_delay)
        if self.fail_load:
            raise ModelLoadError("corrupt model")
        with self.stats.lock:
            self.stats.loads += 1
        self.loaded = True

    def transcribe(self, audio_data, sample_rate: int = 16000) -> SegmentResult:
        if self.decode_gate is not None:
            self.decode_gate.wait(5.0)
        if self.decode_delay:
            threading.Event().wait(self.decode_delay)
        if self.fail_decode:
            raise TranscriptionError("decoder crashed")
        with self.stats.lock:
            self.stats.decodes += 1
        return SegmentResult(text=self.text)

    def unload(self) -> None:
        if self.loaded:
            with self.stats.lock:
                self.stats.unloads += 1
        self.loaded = False

    @property
    def is_loaded(self) -> bool:
        return self.loaded


class FakeCapture(CaptureController):
    """Capture controller whose audio comes from :meth:`feed` instead of a device."""

    def __init__(self, *args, sample_rate: int = 16000, fail_open: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.fake_rate = sample_rate
        self.fail_open = fail_open
        self.close_calls = 0

    def open(self) -> RingBuffer:
        if self.fail_open:
            raise AudioError("no input device")
        self._sample_rate = self.fake_rate
        self._channels = 1
        self._buffer = RingBuffer(
            self.fake_rate * self.max_seconds, channels=1, policy=self.overflow_policy
        )
        self._closing = False
        self._stream = object()
        return self._buffer

    def close(self) -> None:
        self.close_calls += 1
        self._closing = True
        self._stream = None

    def feed(self, samples, block: int = 1024) -> None:
        samples = np.asarray(samples, dtype=np.float32)
        for start in range(0, len(samples), block):
            chunk = samples[start : start + block].reshape(-1, 1)
            self._audio_callback(chunk, len(chunk), None, None)

    def lose_device(self) -> None:
        self._finished_callback()


class CaptureFactory:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.captures: List[FakeCapture] = []

    def __call__(self, on_hard_limit, on_device_lost) -> FakeCapture:
        capture = FakeCapture(
            on_hard_limit=on_hard_limit, on_device_lost=on_device_lost, **self.kwargs
        )
        self.captures.append(capture)
        return capture

    @property
    def last(self) -> FakeCapture:
        return self.captures[-1]


class EventRecorder:
    def __init__(self):
        self.events: List[Event] = []
        self._cond = threading.Condition()

    def __call__(self, event: Event) -> None:
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def names(self) -> List[str]:
        with self._cond:
            return [e.name for e in self.events]

    def of(self, name: str) -> List[Event]:
        with self._cond:
            return [e for e in self.events if e.name == name]

    def wait_for(self, name: str, timeout: float = 5.0, count: int = 1) -> Event:
        with self._cond:
            ok = self._cond.wait_for(
                lambda: len([e for e in self.events if e.name == name]) >= count, timeout
            )
            assert ok, f"timed out waiting for {name!r}; got {[e.name for e in self.events]}"
            return [e for e in self.events if e.name == name][count - 1]

    def states(self) -> List[str]:
        return [e.payload["state"] for e in self.of("state-changed")]


class Harness:
    """A state machine wired to a real worker and manager with fake audio and model."""

    def __init__(self, models_dir, backend_kwargs=None, capture_kwargs=None, **machine_kwargs):
        make_whisper_model(models_dir, TINY)
        self.models_dir = models_dir
        self.descriptor = describe(TINY, models_dir)
        self.stats = BackendStats()
        backend_kwargs = backend_kwargs or {}
        self.manager = ModelManager(
            models_dir, backend_factory=lambda: FakeBackend(self.stats, **backend_kwargs)
        )
        self.manager.switch_active(self.descriptor)
        self.worker = TranscriptionWorker(self.manager)
        self.manager.set_scheduler(self.worker.submit)
        self.worker.start()

        self.captures = CaptureFactory(**(capture_kwargs or {}))
        self.events = EventRecorder()
        self.results = []
        self.copied = []

        def copy_text(text):
            self.copied.append(text)
            return True

        machine_kwargs.setdefault("timeout_s", 5.0)
        machine_kwargs.setdefault("watchdog_grace_s", 2.0)
        self.machine = SessionStateMachine(
            capture_factory=self.captures,
            worker=self.worker,
            resolve_model=lambda: self.manager.active,
            copy_text=copy_text,
            sinks=[self.results.append],
            **machine_kwargs,
        )
        self.machine.bus.subscribe(self.events)

    def close(self) -> None:
        self.machine.shutdown()
        self.worker.stop(timeout=5.0)
        self.manager.shutdown()


@pytest.fixture
def models_dir(tmp_path):
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def harness(models_dir):
    h = Harness(models_dir)
    yield h
    h.close()


def build_model_archive(tmp_path, file_name: str = TINY) -> bytes:
    """A real .tar.bz2 model archive laid out like the sherpa-onnx releases."""
    model_dir = make_whisper_model(tmp_path / "archive-source", file_name)
    (model_dir / "tiny.en-encoder.int8.onnx").write_bytes(os.urandom(200_000))
    path = tmp_path / f"{file_name}.tar.bz2"
    with tarfile.open(path, "w:bz2") as tar:
        tar.add(model_dir, arcname=file_name)
    return path.read_bytes()


class FakeResponse:
    def __init__(self, status_code, body, headers, fail_after=None, gate=None, chunk=8192):
        self.status_code = status_code
        self.headers = headers
        self._body = body
        self._fail_after = fail_after
        self._gate = gate
        self._chunk = chunk

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=8192):
        if self._gate is not None:
            self._gate.wait(5.0)
        sent = 0
        for start in range(0, len(self._body), self._chunk):
            piece = self._body[start : start + self._chunk]
            if self._fail_after is not None and sent + len(piece) > self._fail_after:
                yield piece[: self._fail_after - sent]
                raise requests.ConnectionError("connection reset")
            sent += len(piece)
            yield piece


class FakeServer:
    def __init__(
        self,
        body,
        honor_range=True,
        failures=None,
        gate=None,
        status=None,
        send_length=True,
        next_bodies=None,
    ):
        self.body = body
        self.send_length = send_length
        self.next_bodies = list(next_bodies or [])
        self.honor_range = honor_range
        self.failures = list(failures or [])
        self.gate = gate
        self.status = status
        self.requests = []
        self.lock = threading.Lock()

    def get(self, url, stream=True, timeout=None, headers=None):
        headers = dict(headers or {})
        with self.lock:
            self.requests.append(headers)
            fail_after = self.failures.pop(0) if self.failures else None
            body = self.body
            if self.next_bodies:
                self.body = self.next_bodies.pop(0)

        if self.status is not None:
            return FakeResponse(self.status, b"", {})

        total = len(body)
        range_header = headers.get("Range")
        if range_header and self.honor_range:
            start = int(range_header.split("=")[1].rstrip("-"))
            payload = body[start:]
            return FakeResponse(
                206,
                payload,
                {
                    "Content-Range": f"bytes {start}-{total - 1}/{total}",
                    "Content-Length": str(len(payload)),
                },
                fail_after=fail_after,
                gate=self.gate,
            )
        return FakeResponse(
            200,
            body,
            {"Content-Length": str(total)} if self.send_length else {},
            fail_after=fail_after,
            gate=self.gate,
        )
