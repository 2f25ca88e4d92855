"""
Conversion from the device's native rate and channel layout to the mono
16 kHz stream the speech models expect.

The resampler is streaming: a Session feeds it chunk by chunk and the filter
history and interpolation phase are carried between chunks, so chunk
boundaries do not click. All arithmetic is float64 numpy/scipy, so the same
input chunks at the same source rate always give the same bytes out.
"""

import math
from typing import Optional

import numpy as np
from scipy import signal

from ..settings.config import MODEL_SAMPLE_RATE

FILTER_TAPS = 63


def to_mono(samples: np.ndarray) -> np.ndarray:
    audio = np.asarray(samples, dtype=np.float64)
    if audio.ndim > 1:
        audio = audio.mean(axis=1) if audio.shape[1] > 1 else audio[:, 0]
    return audio


class StreamingResampler:
    def __init__(self, source_rate: int, target_rate: int = MODEL_SAMPLE_RATE):
        if source_rate <= 0 or target_rate <= 0:
            raise ValueError("sample rates must be positive")

        self.source_rate = int(source_rate)
        self.target_rate = int(target_rate)
        self._step = self.source_rate / self.target_rate

        self._taps: Optional[np.ndarray] = None
        if self.source_rate > self.target_rate:
            # Anti-alias below the new Nyquist frequency.
            self._taps = signal.firwin(
                FILTER_TAPS, cutoff=0.45 * self.target_rate, fs=self.source_rate
            )
        self.reset()

    @property
    def passthrough(self) -> bool:
        return self.source_rate == self.target_rate

    def reset(self) -> None:
        self._zi = None if self._taps is None else np.zeros(len(self._taps) - 1)
        self._position = 0.0
        self._previous = 0.0

    def process(self, chunk: np.ndarray) -> np.ndarray:
        audio = to_mono(chunk)
        if audio.size == 0:
            return np.zeros(0, dtype=np.float32)
        if self.passthrough:
            return audio.astype(np.float32)

        if self._taps is not None:
            audio, self._zi = signal.lfilter(self._taps, 1.0, audio, zi=self._zi)

        n = audio.shape[0]
        # Output positions are fractional indices into this chunk; index -1
        # is the last sample of the previous chunk.
        span = (n - 1) - self._position
        count = int(math.ceil(span / self._step)) if span > 0 else 0

        extended = np.concatenate(([self._previous], audio))
        positions = self._position + np.arange(count, dtype=np.float64) * self._step
        base = np.floor(positions)
        frac = positions - base
        idx = np.clip(base.astype(np.int64) + 1, 0, n - 1)
        out = extended[idx] + (extended[idx + 1] - extended[idx]) * frac

        self._position = max(self._position + count * self._step - n, -1.0)
        self._previous = float(audio[-1])
        return out.astype(np.float32)


def resample(
    samples: np.ndarray, source_rate: int, target_rate: int = MODEL_SAMPLE_RATE
) -> np.ndarray:
    """One-shot conversion of a whole buffer to mono ``target_rate``."""
    return StreamingResampler(source_rate, target_rate).process(samples)
