import os
from typing import List, Optional

WHISPER_ENCODERS = ("-encoder.onnx", "-encoder.int8.onnx")
WHISPER_DECODERS = ("-decoder.onnx", "-decoder.int8.onnx")
WHISPER_TOKENS = ("-tokens.txt", "tokens.txt")

TRANSDUCER_ENCODERS = ["encoder.onnx", "encoder.int8.onnx", "encoder.fp16.onnx"]
TRANSDUCER_DECODERS = ["decoder.onnx", "decoder.int8.onnx", "decoder.fp16.onnx"]
TRANSDUCER_JOINERS = ["joiner.onnx", "joiner.int8.onnx", "joiner.fp16.onnx"]


def find_file_by_suffix(directory: str, *suffixes: str) -> Optional[str]:
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return None
    for suffix in suffixes:
        for filename in names:
            if filename.endswith(suffix):
                return os.path.join(directory, filename)
    return None


def find_file_exact(directory: str, candidates: List[str]) -> Optional[str]:
    for name in candidates:
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            return path
    return None


def is_valid_whisper_model(model_path: str) -> bool:
    return all(
        find_file_by_suffix(model_path, *suffixes)
        for suffixes in (WHISPER_ENCODERS, WHISPER_DECODERS, WHISPER_TOKENS)
    )


def is_valid_transducer_model(model_path: str) -> bool:
    return all(
        find_file_exact(model_path, candidates)
        for candidates in (
            TRANSDUCER_ENCODERS,
            TRANSDUCER_DECODERS,
            TRANSDUCER_JOINERS,
            ["tokens.txt"],
        )
    )


def is_valid_model_dir(model_path: str, model_type: Optional[str] = None) -> bool:
    """Check that ``model_path`` holds a loadable model of ``model_type``.

    With no type, accept either layout.
    """
    if not os.path.isdir(model_path):
        return False
    if model_type == "whisper":
        return is_valid_whisper_model(model_path)
    if model_type == "transducer":
        return is_valid_transducer_model(model_path)
    return is_valid_whisper_model(model_path) or is_valid_transducer_model(model_path)


def guess_model_type(model_path: str) -> Optional[str]:
    if is_valid_transducer_model(model_path):
        return "transducer"
    if is_valid_whisper_model(model_path):
        return "whisper"
    return None
