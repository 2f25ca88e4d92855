"""
Static catalog of downloadable speech models.

Descriptors come from ``models.json``; ``installed`` and ``active`` are derived
at query time from the models directory and the current selection.
"""

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional

from ....utils.logger import get_logger
from ..file_utils import guess_model_type, is_valid_model_dir

logger = get_logger(__name__)

GITHUB_RELEASE_BASE = (
    "https://github.com/k2-fsa/sherpa-onnx/releases/download/asr-models"
)
ARCHIVE_SUFFIX = ".tar.bz2"
CUSTOM_QUALITY = "custom"
FALLBACK_DEFAULT = "sherpa-onnx-whisper-base.en"


@dataclass(frozen=True)
class ModelDescriptor:
    file_name: str
    label: str
    quality: str
    model_type: str = "whisper"
    installed: bool = False
    active: bool = False
    download_url: Optional[str] = None
    sha256: Optional[str] = None
    size_bytes: Optional[int] = None

    @property
    def archive_name(self) -> str:
        return f"{self.file_name}{ARCHIVE_SUFFIX}"

    @property
    def is_custom(self) -> bool:
        return self.quality == CUSTOM_QUALITY


def load_catalog(json_path: Optional[Path] = None) -> List[ModelDescriptor]:
    json_path = json_path or Path(__file__).parent / "models.json"
    try:
        with open(json_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Error loading model catalog {json_path}: {e}")
        return []

    catalog = []
    for item in data:
        file_name = item["file_name"]
        catalog.append(
            ModelDescriptor(
                file_name=file_name,
                label=item.get("label", file_name),
                quality=item.get("quality", ""),
                model_type=item.get("type", "whisper"),
                download_url=item.get(
                    "download_url",
                    f"{GITHUB_RELEASE_BASE}/{file_name}{ARCHIVE_SUFFIX}",
                ),
                sha256=item.get("sha256"),
                size_bytes=item.get("size_bytes"),
            )
        )
    return catalog


AVAILABLE_MODELS: List[ModelDescriptor] = load_catalog()

# Catalog order doubles as preference order for the default model.
PREFERRED_ORDER: List[str] = [m.file_name for m in AVAILABLE_MODELS]


def get_model_by_file_name(file_name: str) -> Optional[ModelDescriptor]:
    for model in AVAILABLE_MODELS:
        if model.file_name == file_name:
            return model
    return None


def is_model_installed(models_dir: Path, descriptor: ModelDescriptor) -> bool:
    path = Path(models_dir) / descriptor.file_name
    model_type = None if descriptor.is_custom else descriptor.model_type
    return is_valid_model_dir(str(path), model_type)


def get_installed_models(models_dir: Path) -> List[str]:
    models_dir = Path(models_dir)
    if not models_dir.is_dir():
        return []

    installed = []
    for name in sorted(os.listdir(models_dir)):
        # Hidden entries hold partial downloads and staging directories.
        if name.startswith("."):
            continue
        known = get_model_by_file_name(name)
        model_type = known.model_type if known else None
        if is_valid_model_dir(str(models_dir / name), model_type):
            installed.append(name)
    return installed


def describe(file_name: str, models_dir: Path) -> Optional[ModelDescriptor]:
    """Catalog descriptor for ``file_name``, or a custom one if it is on disk."""
    known = get_model_by_file_name(file_name)
    if known is not None:
        return replace(known, installed=is_model_installed(models_dir, known))

    path = Path(models_dir) / file_name
    model_type = guess_model_type(str(path)) if path.is_dir() else None
    if model_type is None:
        return None
    return ModelDescriptor(
        file_name=file_name,
        label=file_name,
        quality=CUSTOM_QUALITY,
        model_type=model_type,
        installed=True,
    )


def list_models(models_dir: Path, active_model: Optional[str]) -> List[ModelDescriptor]:
    installed = get_installed_models(models_dir)
    installed_set = set(installed)

    models = []
    seen = set()
    for known in AVAILABLE_MODELS:
        models.append(
            replace(
                known,
                installed=known.file_name in installed_set,
                active=known.file_name == active_model,
            )
        )
        seen.add(known.file_name)

    for file_name in installed:
        if file_name in seen:
            continue
        descriptor = describe(file_name, models_dir)
        if descriptor is not None:
            models.append(replace(descriptor, active=file_name == active_model))

    return models


def pick_default_model(models_dir: Path) -> str:
    installed = get_installed_models(models_dir)
    for file_name in PREFERRED_ORDER:
        if file_name in installed:
            return file_name
    if installed:
        return installed[0]
    return FALLBACK_DEFAULT


def pick_installed_fallback(models_dir: Path, exclude: Optional[str] = None) -> Optional[str]:
    """Best installed model other than ``exclude``, or None if nothing is installed."""
    installed = [m for m in get_installed_models(models_dir) if m != exclude]
    for file_name in PREFERRED_ORDER:
        if file_name in installed:
            return file_name
    return installed[0] if installed else None
