"""
Voice activity gating for a whole recorded session.

Classifies 16 kHz mono audio frame by frame on RMS energy, estimates how much
speech it holds, and rejects captures with too little speech before they
reach the model. Also provides the signal conditioning and segment splitting
used by the transcription worker.
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from ...utils.logger import get_logger
from ..settings.config import MIN_SPEECH_MS, MODEL_SAMPLE_RATE

logger = get_logger(__name__)

TOO_SHORT = "too-short"
NO_SPEECH = "no-speech"

ACTIVE_LEVEL = 0.01


@dataclass(frozen=True)
class GateDecision:
    accepted: bool
    speech_ms: int
    start_sample: int
    end_sample: int
    annotation: Optional[str] = None

    def trim(self, audio: np.ndarray) -> np.ndarray:
        return audio[self.start_sample : self.end_sample]


@dataclass(frozen=True)
class CaptureSignalStats:
    rms: float
    peak: float
    active_ratio: float


def analyze_signal(samples: np.ndarray) -> CaptureSignalStats:
    audio = np.asarray(samples, dtype=np.float64).ravel()
    if audio.size == 0:
        return CaptureSignalStats(rms=0.0, peak=0.0, active_ratio=0.0)

    magnitude = np.abs(audio)
    return CaptureSignalStats(
        rms=float(np.sqrt(np.mean(audio * audio))),
        peak=float(magnitude.max()),
        active_ratio=float(np.count_nonzero(magnitude > ACTIVE_LEVEL) / audio.size),
    )


def preprocess_audio(samples: np.ndarray) -> np.ndarray:
    """Replace non-finite samples, clamp to [-1, 1] and lift very quiet input."""
    audio = np.nan_to_num(
        np.asarray(samples, dtype=np.float32), nan=0.0, posinf=0.0, neginf=0.0
    )
    audio = np.clip(audio, -1.0, 1.0)
    if audio.size == 0:
        return audio

    rms = float(np.sqrt(np.mean(audio.astype(np.float64) ** 2)))
    # Light automatic gain for quiet captures reduces false "no speech".
    if 0.0005 < rms < 0.035:
        gain = min(max(0.05 / rms, 1.0), 12.0)
        if gain > 1.05:
            audio = np.clip(audio * gain, -1.0, 1.0).astype(np.float32)
    return audio


def frame_energies(audio: np.ndarray, frame_samples: int) -> np.ndarray:
    frame_count = len(audio) // frame_samples
    if frame_count == 0:
        return np.zeros(0, dtype=np.float64)
    frames = np.asarray(audio[: frame_count * frame_samples], dtype=np.float64)
    frames = frames.reshape(frame_count, frame_samples)
    return np.sqrt(np.mean(frames * frames, axis=1))


class VoiceActivityGate:
    def __init__(
        self,
        min_speech_ms: int = MIN_SPEECH_MS,
        energy_threshold: float = 0.008,
        frame_ms: int = 30,
        padding_ms: int = 200,
        sample_rate: int = MODEL_SAMPLE_RATE,
    ):
        self.min_speech_ms = min_speech_ms
        self.energy_threshold = energy_threshold
        self.frame_ms = frame_ms
        self.padding_ms = padding_ms
        self.sample_rate = sample_rate

    @property
    def frame_samples(self) -> int:
        return max(1, int(self.sample_rate * self.frame_ms / 1000))

    def evaluate(self, audio: np.ndarray) -> GateDecision:
        audio = np.asarray(audio).ravel()
        energies = frame_energies(audio, self.frame_samples)
        speech = np.flatnonzero(energies > self.energy_threshold)
        speech_ms = int(len(speech) * self.frame_ms)

        if speech_ms < self.min_speech_ms or len(speech) == 0:
            logger.debug(
                f"Gate rejected capture: {speech_ms}ms speech in "
                f"{len(audio) * 1000 // self.sample_rate}ms audio"
            )
            return GateDecision(
                accepted=False,
                speech_ms=speech_ms,
                start_sample=0,
                end_sample=0,
                annotation=TOO_SHORT,
            )

        padding = int(self.sample_rate * self.padding_ms / 1000)
        start = max(0, int(speech[0]) * self.frame_samples - padding)
        end = min(len(audio), (int(speech[-1]) + 1) * self.frame_samples + padding)
        return GateDecision(
            accepted=True, speech_ms=speech_ms, start_sample=start, end_sample=end
        )


def split_segments(
    audio: np.ndarray,
    sample_rate: int = MODEL_SAMPLE_RATE,
    max_seconds: float = 10.0,
    search_seconds: float = 2.0,
    frame_ms: int = 30,
) -> List[np.ndarray]:
    """
    Split audio into segments no longer than ``max_seconds``.

    Each cut is placed at the quietest frame within the last ``search_seconds``
    before the limit so words are not cut in half.
    """
    max_samples = int(max_seconds * sample_rate)
    if len(audio) <= max_samples:
        return [audio]

    frame_samples = max(1, int(sample_rate * frame_ms / 1000))
    search_samples = min(int(search_seconds * sample_rate), max_samples // 2)

    segments = []
    start = 0
    while len(audio) - start > max_samples:
        window_start = start + max_samples - search_samples
        window = audio[window_start : start + max_samples]
        energies = frame_energies(window, frame_samples)
        if energies.size:
            cut = window_start + int(np.argmin(energies)) * frame_samples
        else:
            cut = start + max_samples
        if cut <= start:
            cut = start + max_samples
        segments.append(audio[start:cut])
        start = cut
    segments.append(audio[start:])
    return segments
