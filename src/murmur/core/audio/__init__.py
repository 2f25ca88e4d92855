from .capture import (
    AudioDevice,
    AudioFrame,
    AudioInputStatus,
    CaptureController,
    input_status,
    list_devices,
)
from .resampler import StreamingResampler, resample
from .ring_buffer import OverflowPolicy, RingBuffer
from .vad import GateDecision, VoiceActivityGate

__all__ = [
    "AudioDevice",
    "AudioFrame",
    "AudioInputStatus",
    "CaptureController",
    "GateDecision",
    "OverflowPolicy",
    "RingBuffer",
    "StreamingResampler",
    "VoiceActivityGate",
    "input_status",
    "list_devices",
    "resample",
]
