"""Tests for clipboard output."""

import subprocess
from unittest.mock import patch

from murmur.core.output.clipboard import copy_to_clipboard, get_copy_command


class TestCopyCommand:
    def test_linux(self):
        with patch("murmur.core.output.clipboard.get_platform", return_value="linux"):
            assert get_copy_command() == ["xclip", "-selection", "clipboard"]

    def test_macos(self):
        with patch("murmur.core.output.clipboard.get_platform", return_value="macos"):
            assert get_copy_command() == ["pbcopy"]

    def test_windows(self):
        with patch("murmur.core.output.clipboard.get_platform", return_value="windows"):
            assert get_copy_command() == ["clip"]

    def test_unknown_platform(self):
        with patch("murmur.core.output.clipboard.get_platform", return_value="plan9"):
            assert get_copy_command() is None


class TestCopyToClipboard:
    @patch("murmur.core.output.clipboard.get_platform", return_value="linux")
    @patch("murmur.core.output.clipboard.subprocess.run")
    def test_copies_text(self, mock_run, _):
        assert copy_to_clipboard("Hello world") is True

        args, kwargs = mock_run.call_args
        assert args[0] == ["xclip", "-selection", "clipboard"]
        assert kwargs["input"] == "Hello world"
        assert kwargs["text"] is True
        assert kwargs["check"] is True

    @patch("murmur.core.output.clipboard.get_platform", return_value="linux")
    @patch(
        "murmur.core.output.clipboard.subprocess.run",
        side_effect=FileNotFoundError("xclip"),
    )
    def test_missing_tool_returns_false(self, _, __):
        assert copy_to_clipboard("text") is False

    @patch("murmur.core.output.clipboard.get_platform", return_value="linux")
    @patch(
        "murmur.core.output.clipboard.subprocess.run",
        side_effect=subprocess.TimeoutExpired("xclip", 1),
    )
    def test_timeout_returns_false(self, _, __):
        assert copy_to_clipboard("text") is False

    @patch("murmur.core.output.clipboard.get_platform", return_value="plan9")
    @patch("murmur.core.output.clipboard.subprocess.run")
    def test_unsupported_platform_does_not_run(self, mock_run, _):
        assert copy_to_clipboard("text") is False
        mock_run.assert_not_called()
