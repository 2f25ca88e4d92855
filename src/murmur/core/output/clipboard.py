"""Copy finished transcripts to the system clipboard."""

import subprocess
from typing import List, Optional

from ...utils.logger import get_logger
from ...utils.platform import get_platform, get_subprocess_kwargs

logger = get_logger(__name__)


def get_copy_command() -> Optional[List[str]]:
    system = get_platform()
    if system == "linux":
        return ["xclip", "-selection", "clipboard"]
    if system == "macos":
        return ["pbcopy"]
    if system == "windows":
        return ["clip"]
    return None


def copy_to_clipboard(text: str) -> bool:
    copy_cmd = get_copy_command()
    if copy_cmd is None:
        logger.warning(f"No clipboard command for platform {get_platform()}")
        return False

    logger.debug(
        f"Copying text to clipboard: '{text[:50]}{'...' if len(text) > 50 else ''}'"
    )
    try:
        subprocess.run(
            copy_cmd,
            **get_subprocess_kwargs(input=text, text=True, timeout=1, check=True),
        )
        return True
    except (
        subprocess.TimeoutExpired,
        FileNotFoundError,
        subprocess.CalledProcessError,
    ) as e:
        logger.error(f"Failed to set clipboard: {e}")
        return False
