"""JSON Store — open a document in the desktop's default external editor."""

import logging
import os
import platform
import subprocess
from pathlib import Path

logger = logging.getLogger("jsonstore.editor")


def editor_command(path: Path) -> list[str]:
    """Command that opens *path* in the default editor on non-Windows hosts."""
    if platform.system() == "Darwin":
        return ["open", "-t", str(path)]
    return ["xdg-open", str(path)]


def open_in_editor(path) -> bool:
    """Hand *path* to the host shell. Returns False if it could not be launched."""
    path = Path(path)
    if not path.exists():
        logger.warning("Cannot open %s: file does not exist yet", path)
        return False
    try:
        if platform.system() == "Windows":
            os.startfile(str(path))  # type: ignore[attr-defined]
        else:
            subprocess.Popen(
                editor_command(path),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
    except OSError as e:
        logger.warning("Could not open %s in editor: %s", path, e)
        return False
    logger.info("Opened %s in external editor", path)
    return True
