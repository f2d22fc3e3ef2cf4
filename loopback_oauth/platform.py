"""Cross-platform helpers for opening URLs in the system browser."""

import logging
import subprocess
import sys

from .errors import BrowserLaunchError

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"
IS_MACOS = sys.platform == "darwin"


def get_open_command(*args: str) -> tuple[str, list[str]]:
    """Get the command and arguments that open a URL on this platform.

    Windows uses "cmd /C start", macOS "open", everything else "xdg-open".
    """
    if IS_WINDOWS:
        return "cmd", ["/C", "start", *args]
    if IS_MACOS:
        return "open", list(args)
    return "xdg-open", list(args)


def open_in_browser(url: str) -> None:
    """Open a URL with the system's open-URL command.

    Blocks until the command exits (the OS accepting the request), not
    until the user acts in the browser.

    Raises:
        BrowserLaunchError: If the command is missing or exits non-zero
    """
    if IS_WINDOWS:
        # "start" treats & as a command separator unless escaped
        url = url.replace("&", "^&")

    cmd_name, cmd_args = get_open_command(url)
    command = [cmd_name, *cmd_args]
    logger.debug(f"Opening browser with {cmd_name}")

    try:
        subprocess.run(command, check=True, capture_output=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise BrowserLaunchError(
            f"unable to complete command [{' '.join(command)}]: {e}"
        ) from e
