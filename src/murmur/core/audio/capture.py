import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

import numpy as np
import sounddevice as sd

from ...utils.logger import get_logger
from ..errors import AudioError
from ..settings.config import MAX_RECORDING_SECONDS
from .ring_buffer import OverflowPolicy, RingBuffer

logger = get_logger(__name__)

NO_DEVICE_MESSAGE = (
    "No default microphone detected. Check your system privacy settings for "
    "microphone access."
)


@dataclass
class AudioDevice:
    name: str
    index: int
    channels: int
    default_sample_rate: float


@dataclass
class AudioInputStatus:
    available_inputs: int
    default_input: Optional[str]
    default_sample_rate: Optional[int]
    ok: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class AudioFrame:
    samples: np.ndarray
    sample_rate: int
    channels: int
    timestamp: float


def list_devices() -> List[AudioDevice]:
    devices = []

    for i, device in enumerate(sd.query_devices()):
        if device["max_input_channels"] > 0:
            devices.append(
                AudioDevice(
                    name=device["name"],
                    index=i,
                    channels=device["max_input_channels"],
                    default_sample_rate=device["default_samplerate"],
                )
            )

    return devices


def input_status() -> AudioInputStatus:
    list_error = None
    try:
        available = len(list_devices())
    except Exception as e:
        available = 0
        list_error = str(e)

    default_input = None
    default_rate = None
    try:
        info = sd.query_devices(kind="input")
        name = str(info.get("name", "")).strip()
        default_input = name or None
        default_rate = int(info["default_samplerate"])
    except Exception as e:
        logger.debug(f"No default input device: {e}")

    if list_error is not None:
        message = f"Failed to enumerate input devices: {list_error}"
    elif default_input is None:
        message = NO_DEVICE_MESSAGE
    else:
        message = None

    return AudioInputStatus(
        available_inputs=available,
        default_input=default_input,
        default_sample_rate=default_rate,
        ok=message is None,
        message=message,
    )


class CaptureController:
    """
    Owns the input device handle for one Session.

    The PortAudio callback only writes into the ring buffer. Reaching the
    buffer cap and losing the device are reported once through callbacks;
    the state machine decides what to do with them.
    """

    def __init__(
        self,
        device: Optional[str] = None,
        max_seconds: int = MAX_RECORDING_SECONDS,
        overflow_policy: OverflowPolicy = OverflowPolicy.KEEP_FIRST,
        on_hard_limit: Optional[Callable[[], None]] = None,
        on_device_lost: Optional[Callable[[str], None]] = None,
        on_audio_level: Optional[Callable[[float], None]] = None,
    ):
        self.device = device
        self.max_seconds = max_seconds
        self.overflow_policy = OverflowPolicy(overflow_policy)
        self.on_hard_limit = on_hard_limit
        self.on_device_lost = on_device_lost
        self.on_audio_level = on_audio_level

        self._stream: Optional[sd.InputStream] = None
        self._buffer: Optional[RingBuffer] = None
        self._lock = threading.Lock()
        self._closing = False
        self._limit_reported = False
        self._lost_reported = False
        self._sample_rate: Optional[int] = None
        self._channels = 1
        self._started_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def buffer(self) -> Optional[RingBuffer]:
        return self._buffer

    @property
    def sample_rate(self) -> Optional[int]:
        return self._sample_rate

    @property
    def channels(self) -> int:
        return self._channels

    def open(self) -> RingBuffer:
        with self._lock:
            if self._stream is not None:
                return self._buffer

            device_index = self._get_device_index()
            try:
                info = sd.query_devices(device_index, "input")
            except (sd.PortAudioError, ValueError) as e:
                raise AudioError(f"No input device available: {e}") from e

            if not info or int(info.get("max_input_channels", 0)) < 1:
                raise AudioError("Selected device has no input channels")

            self._sample_rate = int(info["default_samplerate"])
            self._channels = min(int(info["max_input_channels"]), 2)
            self._buffer = RingBuffer(
                capacity=self._sample_rate * self.max_seconds,
                channels=self._channels,
                policy=self.overflow_policy,
            )
            self._closing = False
            self._limit_reported = False
            self._lost_reported = False

            try:
                stream = sd.InputStream(
                    samplerate=self._sample_rate,
                    channels=self._channels,
                    dtype="float32",
                    device=device_index,
                    callback=self._audio_callback,
                    finished_callback=self._finished_callback,
                )
            except sd.PortAudioError as e:
                raise AudioError(f"Audio device error: {e}") from e
            except Exception as e:
                raise AudioError(f"Failed to start recording: {e}") from e

            try:
                stream.start()
            except sd.PortAudioError as e:
                self._discard_stream(stream)
                raise AudioError(f"Audio device error: {e}") from e
            except Exception as e:
                self._discard_stream(stream)
                raise AudioError(f"Failed to start recording: {e}") from e

            self._stream = stream
            self._started_at = time.monotonic()
            logger.info(
                f"Capture opened: {info.get('name')} @ {self._sample_rate} Hz, "
                f"{self._channels} channel(s)"
            )
            return self._buffer

    def close(self) -> None:
        with self._lock:
            stream = self._stream
            if stream is None:
                return
            self._closing = True
            self._stream = None
            try:
                stream.stop()
            except Exception as e:
                logger.warning(f"Error stopping input stream: {e}")
            finally:
                try:
                    stream.close()
                except Exception as e:
                    logger.warning(f"Error closing input stream: {e}")
        logger.debug("Capture closed")

    def _discard_stream(self, stream) -> None:
        self._closing = True
        try:
            stream.close()
        except Exception as e:
            logger.warning(f"Error closing input stream: {e}")

    def drain(self, chunk_frames: int = 0) -> Iterator[AudioFrame]:
        """Yield buffered audio as frames of at most ``chunk_frames``."""
        if self._buffer is None or self._sample_rate is None:
            return
        chunk_frames = chunk_frames or self._sample_rate // 2
        while True:
            block = self._buffer.read(chunk_frames)
            if block.shape[0] == 0:
                return
            yield AudioFrame(
                samples=block,
                sample_rate=self._sample_rate,
                channels=self._channels,
                timestamp=time.monotonic(),
            )

    def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            logger.debug(f"Input stream status: {status}")

        buffer = self._buffer
        if buffer is None or self._closing:
            return

        buffer.write(indata)

        if self.on_audio_level is not None:
            flat = indata.reshape(-1)
            level = float(np.sqrt(np.dot(flat, flat) / max(flat.size, 1)))
            self.on_audio_level(min(1.0, level * 10))

        if buffer.reached_capacity and not self._limit_reported:
            self._limit_reported = True
            if self.on_hard_limit is not None:
                self.on_hard_limit()

    def _finished_callback(self) -> None:
        if self._closing or self._lost_reported:
            return
        self._lost_reported = True
        logger.warning("Input stream finished unexpectedly")
        if self.on_device_lost is not None:
            self.on_device_lost("Input stream stopped unexpectedly")

    def _get_device_index(self) -> Optional[int]:
        if self.device is None:
            return None

        for device in list_devices():
            if device.name == self.device:
                return device.index

        logger.warning(f"Input device '{self.device}' not found, using default")
        return None
