"""
Settings management with JSON persistence.

Handles loading, saving, and validating engine settings.
Uses platformdirs for cross-platform directory resolution.
"""

import json
from pathlib import Path
from typing import Literal, Optional

from platformdirs import user_config_path, user_data_path
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...utils.logger import get_logger
from .config import (
    DOWNLOAD_MAX_ATTEMPTS,
    MAX_RECORDING_SECONDS,
    MIN_SPEECH_MS,
    MODEL_IDLE_TIMEOUT_S,
    TRANSCRIPTION_TIMEOUT_S,
)

logger = get_logger(__name__)

APP_NAME = "murmur"


def get_config_dir() -> Path:
    return user_config_path(APP_NAME, appauthor=False, ensure_exists=True)


def get_data_dir() -> Path:
    return user_data_path(APP_NAME, appauthor=False, ensure_exists=True)


def get_models_dir() -> Path:
    return get_data_dir() / "models"


class Settings(BaseModel):
    model_config = ConfigDict(validate_assignment=False, protected_namespaces=())

    input_device: Optional[str] = None
    active_model: Optional[str] = None
    recording_mode: Literal["toggle", "push-to-talk"] = "toggle"
    auto_copy: bool = True

    max_recording_seconds: int = Field(default=MAX_RECORDING_SECONDS, ge=1, le=600)
    overflow_policy: Literal["keep-first", "keep-latest"] = "keep-first"
    min_speech_ms: int = Field(default=MIN_SPEECH_MS, ge=0, le=5000)
    vad_energy_threshold: float = Field(default=0.008, gt=0.0, lt=1.0)

    transcription_timeout_s: float = Field(default=TRANSCRIPTION_TIMEOUT_S, gt=0.0)
    model_idle_timeout_s: float = Field(default=MODEL_IDLE_TIMEOUT_S, gt=0.0)
    preload_model: bool = False
    download_max_attempts: int = Field(default=DOWNLOAD_MAX_ATTEMPTS, ge=1, le=20)

    @field_validator("active_model")
    @classmethod
    def active_model_not_blank(cls, v):
        if v is not None and (not isinstance(v, str) or not v.strip()):
            raise ValueError("active_model must be a non-empty string")
        return v

    @classmethod
    def load(cls, config_file: Optional[Path] = None) -> "Settings":
        config_file = config_file or get_config_dir() / "settings.json"

        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)

                # Filter to valid keys only
                valid_keys = cls.model_fields.keys()
                filtered_data = {k: v for k, v in data.items() if k in valid_keys}

                return cls._load_with_fallbacks(filtered_data)
            except (json.JSONDecodeError, TypeError, AttributeError) as e:
                logger.warning(
                    f"Could not load settings: {e}. Using defaults.", exc_info=True
                )
                return cls()

        return cls()

    @classmethod
    def _load_with_fallbacks(cls, data: dict) -> "Settings":
        """Load settings with field-level fallback to defaults on validation errors."""
        defaults = cls()
        result_data = {}

        for field_name in cls.model_fields:
            if field_name in data:
                try:
                    cls.model_validate(
                        {**defaults.model_dump(), field_name: data[field_name]}
                    )
                    result_data[field_name] = data[field_name]
                except Exception:
                    default_val = getattr(defaults, field_name)
                    logger.warning(
                        f"Invalid {field_name} {data[field_name]!r}, resetting to {default_val}"
                    )
                    result_data[field_name] = default_val
            else:
                result_data[field_name] = getattr(defaults, field_name)

        return cls.model_construct(**result_data)

    def save(self, config_file: Optional[Path] = None) -> None:
        config_file = config_file or get_config_dir() / "settings.json"

        with open(config_file, "w") as f:
            json.dump(self.model_dump(), f, indent=2)

    def reset_to_defaults(self) -> None:
        default = Settings()
        for key, value in default.model_dump().items():
            setattr(self, key, value)


_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.load()
    return _settings_instance
