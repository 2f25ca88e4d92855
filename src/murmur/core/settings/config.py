"""
Centralized application configuration.

Edit the variables below to configure development settings.
"""

import logging

# =============================================================================
# DEVELOPMENT SETTINGS - Edit these for local development
# =============================================================================
LOG_LEVEL = "DEBUG"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
LOG_TO_CONSOLE = True  # Set to True to output logs to terminal
# =============================================================================

# =============================================================================
# HISTORY SETTINGS
# =============================================================================
MAX_HISTORY_ENTRIES = 500  # Number of transcription history records to keep
DEFAULT_HISTORY_LIMIT = 15
# =============================================================================

# =============================================================================
# PIPELINE DEFAULTS
# =============================================================================
MODEL_SAMPLE_RATE = 16000
MAX_RECORDING_SECONDS = 30
MIN_SPEECH_MS = 250
TRANSCRIPTION_TIMEOUT_S = 25.0
MODEL_IDLE_TIMEOUT_S = 600.0
SLOW_TRANSCRIPTION_NOTICE_S = 15.0
DOWNLOAD_MAX_ATTEMPTS = 5
# =============================================================================


def get_log_level() -> int:
    """Get the logging level as an integer."""
    return getattr(logging, LOG_LEVEL.upper(), logging.INFO)
