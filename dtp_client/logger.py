"""Console logging for the DTP client.

Every user-visible line is a log record rendered as ``[LEVEL] message`` with
a color per severity.
"""

import logging
import sys
from typing import Optional, TextIO

import colorama
from colorama import Fore, Style

CONSOLE_LOG_FORMAT = "[%(levelname)s] %(message)s"


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level tag of each console line."""

    COLORS = {
        "DEBUG": Style.DIM,
        "INFO": Fore.BLUE + Style.BRIGHT,
        "WARNING": Fore.YELLOW + Style.BRIGHT,
        "ERROR": Fore.RED + Style.BRIGHT,
        "CRITICAL": Fore.RED + Style.BRIGHT,
    }

    def __init__(self, fmt: str = CONSOLE_LOG_FORMAT, use_colors: bool = True) -> None:
        super().__init__(fmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with a colored level name."""
        if not self.use_colors or record.levelname not in self.COLORS:
            return super().format(record)

        # Copy so other handlers see the plain level name
        record_copy = logging.makeLogRecord(record.__dict__)
        record_copy.levelname = (
            f"{self.COLORS[record.levelname]}{record.levelname}{Style.RESET_ALL}"
        )
        return super().format(record_copy)


def setup_logging(
    debug: bool = False,
    stream: Optional[TextIO] = None,
    colored_output: bool = True,
) -> None:
    """Install the console handler on the root logger.

    Args:
        debug: Log DEBUG records (including every decoded inbound message)
        stream: Output stream, stderr by default
        colored_output: Color the level tags
    """
    colorama.just_fix_windows_console()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(ColoredFormatter(use_colors=colored_output))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(logging.INFO)
