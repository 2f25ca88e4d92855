"""Tests for the streaming resampler."""

import numpy as np
import pytest

from murmur.core.audio.resampler import StreamingResampler, resample, to_mono


def _noise(n, seed=0):
    return np.random.default_rng(seed).uniform(-0.5, 0.5, n).astype(np.float32)


class TestResampler:
    def test_passthrough_at_model_rate(self):
        audio = _noise(1600)
        out = resample(audio, 16000)
        np.testing.assert_array_equal(out, audio)

    @pytest.mark.parametrize("rate", [44100, 48000, 22050, 8000])
    def test_output_length_matches_ratio(self, rate):
        audio = _noise(rate)
        out = resample(audio, rate)
        assert abs(len(out) - 16000) <= 2

    def test_deterministic(self):
        audio = _noise(48000 * 2, seed=3)
        first = resample(audio, 48000)
        second = resample(audio.copy(), 48000)
        assert first.tobytes() == second.tobytes()

    def test_streaming_is_deterministic_across_runs(self):
        audio = _noise(44100, seed=7)
        runs = []
        for _ in range(2):
            resampler = StreamingResampler(44100)
            chunks = [resampler.process(audio[i : i + 1000]) for i in range(0, len(audio), 1000)]
            runs.append(np.concatenate(chunks).tobytes())
        assert runs[0] == runs[1]

    def test_streaming_matches_total_length(self):
        audio = _noise(48000, seed=1)
        resampler = StreamingResampler(48000)
        chunks = [resampler.process(audio[i : i + 777]) for i in range(0, len(audio), 777)]
        total = sum(len(c) for c in chunks)
        assert abs(total - 16000) <= 2

    def test_streaming_close_to_one_shot(self):
        t = np.arange(48000) / 48000
        audio = (0.5 * np.sin(2 * np.pi * 300 * t)).astype(np.float32)
        one_shot = resample(audio, 48000)
        resampler = StreamingResampler(48000)
        streamed = np.concatenate(
            [resampler.process(audio[i : i + 4800]) for i in range(0, len(audio), 4800)]
        )
        n = min(len(one_shot), len(streamed))
        assert np.max(np.abs(one_shot[:n] - streamed[:n])) < 1e-3

    def test_downmixes_stereo(self):
        stereo = np.stack([np.ones(10), -np.ones(10)], axis=1)
        np.testing.assert_array_equal(to_mono(stereo), np.zeros(10))

    def test_empty_chunk(self):
        assert resample(np.zeros(0, dtype=np.float32), 44100).size == 0

    def test_rejects_bad_rate(self):
        with pytest.raises(ValueError):
            StreamingResampler(0)
