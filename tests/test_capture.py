"""
Tests for the capture controller and device enumeration.

Uses mocking to avoid requiring actual audio hardware.
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import sounddevice as sd

from murmur.core.audio.capture import (
    NO_DEVICE_MESSAGE,
    AudioDevice,
    CaptureController,
    input_status,
    list_devices,
)
from murmur.core.audio.ring_buffer import OverflowPolicy
from murmur.core.errors import AudioError

DEVICES = [
    {"name": "Mic 1", "max_input_channels": 2, "max_output_channels": 0, "default_samplerate": 44100},
    {"name": "Speakers", "max_input_channels": 0, "max_output_channels": 2, "default_samplerate": 48000},
    {"name": "Mic 2", "max_input_channels": 1, "max_output_channels": 0, "default_samplerate": 16000},
]


def _query(device=None, kind=None):
    if device is None and kind is None:
        return DEVICES
    if device is None:
        return DEVICES[0]
    return DEVICES[device]


class TestDeviceEnumeration:
    @patch("murmur.core.audio.capture.sd.query_devices")
    def test_list_devices_returns_input_devices(self, mock_query):
        mock_query.return_value = DEVICES

        devices = list_devices()

        assert devices == [
            AudioDevice(name="Mic 1", index=0, channels=2, default_sample_rate=44100),
            AudioDevice(name="Mic 2", index=2, channels=1, default_sample_rate=16000),
        ]

    @patch("murmur.core.audio.capture.sd.query_devices", side_effect=_query)
    def test_input_status_ok(self, mock_query):
        status = input_status()

        assert status.ok is True
        assert status.available_inputs == 2
        assert status.default_input == "Mic 1"
        assert status.default_sample_rate == 44100
        assert status.message is None

    @patch("murmur.core.audio.capture.sd.query_devices")
    def test_input_status_without_default_device(self, mock_query):
        def query(device=None, kind=None):
            if kind == "input":
                raise sd.PortAudioError("no default")
            return []

        mock_query.side_effect = query

        status = input_status()

        assert status.ok is False
        assert status.available_inputs == 0
        assert status.message == NO_DEVICE_MESSAGE


@patch("murmur.core.audio.capture.sd.query_devices", side_effect=_query)
@patch("murmur.core.audio.capture.sd.InputStream")
class TestCaptureController:
    def test_open_uses_device_rate_and_channels(self, mock_stream_class, mock_query):
        capture = CaptureController(max_seconds=2)

        buffer = capture.open()

        kwargs = mock_stream_class.call_args.kwargs
        assert kwargs["samplerate"] == 44100
        assert kwargs["channels"] == 2
        assert kwargs["dtype"] == "float32"
        assert buffer.capacity == 44100 * 2
        assert buffer.channels == 2
        assert capture.is_open
        mock_stream_class.return_value.start.assert_called_once()

    def test_named_device_is_selected(self, mock_stream_class, mock_query):
        capture = CaptureController(device="Mic 2")
        capture.open()
        assert mock_stream_class.call_args.kwargs["device"] == 2
        assert capture.sample_rate == 16000
        assert capture.channels == 1

    def test_close_is_idempotent(self, mock_stream_class, mock_query):
        stream = mock_stream_class.return_value
        capture = CaptureController()
        capture.open()

        capture.close()
        capture.close()

        stream.stop.assert_called_once()
        stream.close.assert_called_once()
        assert not capture.is_open

    def test_open_failure_raises_audio_error(self, mock_stream_class, mock_query):
        mock_stream_class.side_effect = sd.PortAudioError("device busy")
        capture = CaptureController()
        with pytest.raises(AudioError):
            capture.open()
        assert not capture.is_open

    def test_callback_fills_buffer_and_reports_hard_limit_once(
        self, mock_stream_class, mock_query
    ):
        on_hard_limit = MagicMock()
        capture = CaptureController(device="Mic 2", max_seconds=1, on_hard_limit=on_hard_limit)
        capture.open()
        callback = mock_stream_class.call_args.kwargs["callback"]

        block = np.full((4000, 1), 0.1, dtype=np.float32)
        for _ in range(6):
            callback(block, 4000, None, None)

        assert capture.buffer.available == 16000
        assert capture.buffer.overflowed
        on_hard_limit.assert_called_once()

    def test_keep_latest_policy_passed_to_buffer(self, mock_stream_class, mock_query):
        capture = CaptureController(overflow_policy="keep-latest")
        assert capture.open().policy is OverflowPolicy.KEEP_LATEST

    def test_unrequested_stream_end_reports_device_lost(self, mock_stream_class, mock_query):
        on_device_lost = MagicMock()
        capture = CaptureController(on_device_lost=on_device_lost)
        capture.open()
        finished = mock_stream_class.call_args.kwargs["finished_callback"]

        finished()
        finished()

        on_device_lost.assert_called_once()

    def test_requested_close_is_not_device_loss(self, mock_stream_class, mock_query):
        on_device_lost = MagicMock()
        capture = CaptureController(on_device_lost=on_device_lost)
        capture.open()
        finished = mock_stream_class.call_args.kwargs["finished_callback"]

        capture.close()
        finished()

        on_device_lost.assert_not_called()

    def test_drain_yields_frames(self, mock_stream_class, mock_query):
        capture = CaptureController(device="Mic 2")
        capture.open()
        callback = mock_stream_class.call_args.kwargs["callback"]
        callback(np.ones((10000, 1), dtype=np.float32), 10000, None, None)

        frames = list(capture.drain(4000))

        assert [f.samples.shape[0] for f in frames] == [4000, 4000, 2000]
        assert all(f.sample_rate == 16000 for f in frames)
        assert capture.buffer.available == 0

    def test_start_failure_closes_stream(self, mock_stream_class, mock_query):
        stream = mock_stream_class.return_value
        stream.start.side_effect = sd.PortAudioError("device busy")
        capture = CaptureController()

        with pytest.raises(AudioError):
            capture.open()

        stream.close.assert_called_once()
        assert not capture.is_open

        stream.start.side_effect = None
        capture.open()
        assert capture.is_open

    def test_close_error_after_failed_start_still_raises_audio_error(
        self, mock_stream_class, mock_query
    ):
        stream = mock_stream_class.return_value
        stream.start.side_effect = RuntimeError("no permission")
        stream.close.side_effect = sd.PortAudioError("already gone")
        capture = CaptureController()

        with pytest.raises(AudioError, match="no permission"):
            capture.open()

    def test_level_is_reported_per_block(self, mock_stream_class, mock_query):
        levels = []
        capture = CaptureController(on_audio_level=levels.append)
        capture.open()
        callback = mock_stream_class.call_args.kwargs["callback"]

        callback(np.full((512, 2), 0.05, dtype=np.float32), 512, None, None)
        callback(np.zeros((512, 2), dtype=np.float32), 512, None, None)
        callback(np.full((512, 2), -0.5, dtype=np.float32), 512, None, None)

        assert levels == [pytest.approx(0.5, rel=1e-4), 0.0, 1.0]
