"""Tests for the transcription worker: gating, segmentation, cancellation, timeouts."""

import threading
import time

import numpy as np
import pytest

from murmur.core.asr.model_manager import ModelManager, SlotState
from murmur.core.asr.models.registry import describe
from murmur.core.asr.transcription_worker import CancellationToken, TranscriptionWorker
from murmur.core.audio.capture import AudioFrame
from murmur.core.audio.vad import NO_SPEECH, TOO_SHORT
from murmur.core.errors import (
    TranscriptionCancelled,
    TranscriptionError,
    TranscriptionTimeout,
)

from conftest import TINY, BackendStats, FakeBackend, make_whisper_model, silence, tone


def frames_of(audio, sample_rate=16000, chunk=8000):
    audio = np.asarray(audio, dtype=np.float32)
    if audio.ndim == 1:
        audio = audio.reshape(-1, 1)
    for start in range(0, audio.shape[0], chunk):
        block = audio[start : start + chunk]
        yield AudioFrame(
            samples=block,
            sample_rate=sample_rate,
            channels=block.shape[1],
            timestamp=time.monotonic(),
        )


@pytest.fixture
def stats():
    return BackendStats()


@pytest.fixture
def setup(models_dir, stats):
    def build(segment_seconds=10.0, **backend_kwargs):
        make_whisper_model(models_dir, TINY)
        manager = ModelManager(
            models_dir, backend_factory=lambda: FakeBackend(stats, **backend_kwargs)
        )
        descriptor = describe(TINY, models_dir)
        manager.switch_active(descriptor)
        worker = TranscriptionWorker(manager, segment_seconds=segment_seconds)
        built.append(manager)
        return worker, manager, descriptor

    built = []
    yield build
    for manager in built:
        manager.shutdown()


class TestProcess:
    def test_transcribes_speech(self, setup, stats):
        worker, manager, descriptor = setup()

        outcome = worker.process(frames_of(tone(3.0)), 16000, descriptor, CancellationToken())

        assert outcome.text == "hello world"
        assert outcome.audio_ms == 3000
        assert outcome.annotation is None
        assert outcome.model_label == descriptor.label
        assert stats.decodes == 1
        assert manager.state is SlotState.READY
        manager.release(manager.acquire(timeout=1.0))

    def test_resamples_stereo_48k(self, setup):
        worker, _, descriptor = setup()
        audio = tone(2.0, sample_rate=48000)
        stereo = np.column_stack([audio, audio])

        outcome = worker.process(
            frames_of(stereo, sample_rate=48000, chunk=4800), 48000, descriptor, CancellationToken()
        )

        assert outcome.text == "hello world"
        assert abs(outcome.audio_ms - 2000) <= 5

    def test_short_capture_skips_the_model(self, setup, stats):
        worker, manager, descriptor = setup()

        outcome = worker.process(frames_of(silence(0.1)), 16000, descriptor, CancellationToken())

        assert outcome.text == ""
        assert outcome.annotation == TOO_SHORT
        assert outcome.audio_ms == 100
        assert stats.loads == 0
        assert manager.state is SlotState.UNLOADED

    def test_empty_model_output_is_annotated(self, setup):
        worker, _, descriptor = setup(text="")

        outcome = worker.process(frames_of(tone(2.0)), 16000, descriptor, CancellationToken())

        assert outcome.text == ""
        assert outcome.annotation == NO_SPEECH

    def test_long_audio_is_segmented(self, setup, stats):
        worker, _, descriptor = setup(segment_seconds=10.0)

        outcome = worker.process(frames_of(tone(25.0)), 16000, descriptor, CancellationToken())

        assert stats.decodes == 3
        assert outcome.text == "hello world hello world hello world"

    def test_cancelled_token_stops_processing(self, setup, stats):
        worker, _, descriptor = setup()
        token = CancellationToken()
        token.cancel()

        with pytest.raises(TranscriptionCancelled):
            worker.process(frames_of(tone(2.0)), 16000, descriptor, token)
        assert stats.decodes == 0

    def test_timeout_between_segments(self, setup, stats):
        worker, manager, descriptor = setup(segment_seconds=5.0, decode_delay=0.3)

        with pytest.raises(TranscriptionTimeout):
            worker.process(
                frames_of(tone(12.0)), 16000, descriptor, CancellationToken(), timeout_s=0.1
            )
        assert stats.decodes == 1
        manager.release(manager.acquire(timeout=1.0))

    def test_decoder_failure_releases_the_model(self, setup):
        worker, manager, descriptor = setup(fail_decode=True)

        with pytest.raises(TranscriptionError):
            worker.process(frames_of(tone(2.0)), 16000, descriptor, CancellationToken())

        manager.release(manager.acquire(timeout=1.0))


class TestExecutor:
    def test_jobs_run_in_order_on_one_thread(self, setup):
        worker, _, _ = setup()
        worker.start()
        seen = []

        futures = [
            worker.submit(lambda i=i: seen.append((i, threading.current_thread().name)))
            for i in range(5)
        ]
        for future in futures:
            future.result(timeout=2.0)
        worker.stop(timeout=2.0)

        assert [i for i, _ in seen] == list(range(5))
        assert {name for _, name in seen} == {"murmur-worker"}

    def test_exceptions_reach_the_future(self, setup):
        worker, _, _ = setup()
        worker.start()

        def boom():
            raise TranscriptionError("bad")

        with pytest.raises(TranscriptionError):
            worker.submit(boom).result(timeout=2.0)
        worker.stop(timeout=2.0)


class TestCancellationToken:
    def test_token(self):
        token = CancellationToken()
        assert not token.is_cancelled
        token.raise_if_cancelled()
        token.cancel()
        assert token.is_cancelled
        with pytest.raises(TranscriptionCancelled):
            token.raise_if_cancelled()
