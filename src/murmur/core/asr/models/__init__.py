from .registry import (
    AVAILABLE_MODELS,
    CUSTOM_QUALITY,
    GITHUB_RELEASE_BASE,
    ModelDescriptor,
    describe,
    get_installed_models,
    get_model_by_file_name,
    is_model_installed,
    list_models,
    pick_default_model,
    pick_installed_fallback,
)

__all__ = [
    "AVAILABLE_MODELS",
    "CUSTOM_QUALITY",
    "GITHUB_RELEASE_BASE",
    "ModelDescriptor",
    "describe",
    "get_installed_models",
    "get_model_by_file_name",
    "is_model_installed",
    "list_models",
    "pick_default_model",
    "pick_installed_fallback",
]
