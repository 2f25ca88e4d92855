"""
Error taxonomy for the dictation core.

Every error carries a short ``user_message`` suitable for display and a
``recoverable`` flag. The raw library error stays on ``__cause__`` and in the
logs; it is never shown to the user.
"""

from typing import Optional


class MurmurError(Exception):
    default_message = "Something went wrong."
    recoverable = True

    def __init__(
        self,
        detail: str = "",
        user_message: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ):
        super().__init__(detail or user_message or self.default_message)
        self.detail = detail
        self.user_message = user_message or self.default_message
        if recoverable is not None:
            self.recoverable = recoverable


class AudioError(MurmurError):
    default_message = (
        "Could not access the microphone. Check that an input device is "
        "connected and that microphone access is allowed."
    )


class DeviceLostError(AudioError):
    default_message = "The microphone was disconnected during recording."


class ModelLoadError(MurmurError):
    default_message = (
        "The speech model could not be loaded. Download it again or choose "
        "another model."
    )


class DownloadError(MurmurError):
    default_message = "Model download failed. Please retry."

    def __init__(
        self,
        detail: str = "",
        user_message: Optional[str] = None,
        recoverable: Optional[bool] = None,
        retryable: bool = True,
    ):
        super().__init__(detail, user_message, recoverable)
        self.retryable = retryable


class TranscriptionError(MurmurError):
    default_message = "Transcription failed. Please try again."


class TranscriptionTimeout(TranscriptionError):
    default_message = (
        "Transcription took too long and was stopped. Consider a smaller model."
    )


class TranscriptionCancelled(TranscriptionError):
    default_message = "Transcription cancelled."


class InvalidTransition(MurmurError):
    default_message = "That action is not available right now."

    def __init__(self, intent: str, state: str):
        super().__init__(f"'{intent}' is not allowed in state '{state}'")
        self.intent = intent
        self.state = state
