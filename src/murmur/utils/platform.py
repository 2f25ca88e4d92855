"""Platform-specific utilities for cross-platform compatibility."""

import platform
import subprocess
from typing import Any, Dict


def get_platform() -> str:
    system = platform.system()
    if system == "Darwin":
        return "macos"
    return system.lower()


def get_subprocess_kwargs(**kwargs: Any) -> Dict[str, Any]:
    """Extra arguments for subprocess calls so Windows does not flash a console."""
    if get_platform() == "windows":
        kwargs.setdefault("creationflags", getattr(subprocess, "CREATE_NO_WINDOW", 0))
    return kwargs
