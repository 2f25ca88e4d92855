import os
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ...utils.logger import get_logger
from ..errors import ModelLoadError, TranscriptionError
from ..settings.config import MODEL_SAMPLE_RATE
from .file_utils import (
    TRANSDUCER_DECODERS,
    TRANSDUCER_ENCODERS,
    TRANSDUCER_JOINERS,
    WHISPER_DECODERS,
    WHISPER_ENCODERS,
    WHISPER_TOKENS,
    find_file_by_suffix,
    find_file_exact,
)

logger = get_logger(__name__)


@dataclass
class SegmentResult:
    text: str
    tokens: Optional[list] = None
    timestamps: Optional[list] = None


class SherpaOnnxBackend:
    def __init__(self, num_threads: int = 4):
        self._recognizer = None
        self._num_threads = num_threads
        self._model_path: Optional[str] = None

    def load(self, model_path: str, model_type: str) -> None:
        import sherpa_onnx

        if not os.path.isdir(model_path):
            raise ModelLoadError(f"Model directory not found: {model_path}")

        logger.info(f"Loading model '{os.path.basename(model_path)}' as '{model_type}'")

        try:
            if model_type == "whisper":
                self._load_whisper_model(sherpa_onnx, model_path)
            else:
                self._load_transducer_model(sherpa_onnx, model_path)
        except ModelLoadError:
            self._recognizer = None
            raise
        except Exception as e:
            self._recognizer = None
            raise ModelLoadError(
                f"Failed to load model from '{model_path}': {e}"
            ) from e

        self._model_path = model_path

    def _load_whisper_model(self, sherpa_onnx, model_path: str) -> None:
        encoder = find_file_by_suffix(model_path, *WHISPER_ENCODERS)
        decoder = find_file_by_suffix(model_path, *WHISPER_DECODERS)
        tokens = find_file_by_suffix(model_path, *WHISPER_TOKENS)

        if not encoder or not decoder or not tokens:
            missing = []
            if not encoder:
                missing.append("encoder (*-encoder.onnx)")
            if not decoder:
                missing.append("decoder (*-decoder.onnx)")
            if not tokens:
                missing.append("tokens (*-tokens.txt)")
            raise ModelLoadError(
                f"Missing Whisper model files in {model_path}: {', '.join(missing)}"
            )

        self._recognizer = sherpa_onnx.OfflineRecognizer.from_whisper(
            encoder=encoder,
            decoder=decoder,
            tokens=tokens,
            num_threads=self._num_threads,
            provider="cpu",
            debug=False,
            decoding_method="greedy_search",
        )

    def _load_transducer_model(self, sherpa_onnx, model_path: str) -> None:
        encoder = find_file_exact(model_path, TRANSDUCER_ENCODERS)
        decoder = find_file_exact(model_path, TRANSDUCER_DECODERS)
        joiner = find_file_exact(model_path, TRANSDUCER_JOINERS)
        tokens = find_file_exact(model_path, ["tokens.txt"])

        if not all([encoder, decoder, joiner, tokens]):
            missing = [
                name
                for name, path in (
                    ("encoder", encoder),
                    ("decoder", decoder),
                    ("joiner", joiner),
                    ("tokens", tokens),
                )
                if not path
            ]
            raise ModelLoadError(
                f"Missing Transducer model files in {model_path}: {', '.join(missing)}"
            )

        self._recognizer = sherpa_onnx.OfflineRecognizer.from_transducer(
            encoder=encoder,
            decoder=decoder,
            joiner=joiner,
            tokens=tokens,
            num_threads=self._num_threads,
            provider="cpu",
            debug=False,
            decoding_method="greedy_search",
            model_type="nemo_transducer",
        )

    def transcribe(
        self, audio_data: np.ndarray, sample_rate: int = MODEL_SAMPLE_RATE
    ) -> SegmentResult:
        if self._recognizer is None:
            raise TranscriptionError("Model not loaded. Call load() first.")

        audio_float = np.asarray(audio_data, dtype=np.float32).ravel()

        try:
            stream = self._recognizer.create_stream()
            stream.accept_waveform(sample_rate, audio_float)
            self._recognizer.decode_stream(stream)
            result = stream.result
        except Exception as e:
            raise TranscriptionError(f"Backend decode failed: {e}") from e

        tokens = list(result.tokens) if getattr(result, "tokens", None) else None
        timestamps = (
            list(result.timestamps) if getattr(result, "timestamps", None) else None
        )
        return SegmentResult(text=result.text.strip(), tokens=tokens, timestamps=timestamps)

    def unload(self) -> None:
        if self._recognizer is not None:
            del self._recognizer
            self._recognizer = None
        self._model_path = None

    @property
    def is_loaded(self) -> bool:
        return self._recognizer is not None


def create_backend() -> SherpaOnnxBackend:
    return SherpaOnnxBackend()
