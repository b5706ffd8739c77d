"""Logging utilities for Oriole.

Provides color-coded output to distinguish lock traffic, datastore work, and
terminal transitions when reading invocation logs.
"""

import os
from enum import Enum

from .config import Config


class Color(Enum):
    """ANSI color codes for terminal output."""

    BLUE = "\033[94m"      # Datastore reads/writes
    MAGENTA = "\033[95m"   # Lock acquire/release
    RED = "\033[91m"       # Errors
    GREEN = "\033[92m"     # Success/completion
    CYAN = "\033[96m"      # Info/metadata

    # Formatting
    BOLD = "\033[1m"
    RESET = "\033[0m"


_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes if colors are enabled.

    Args:
        text: Text to colorize
        color: Color to apply
        bold: Whether to make text bold

    Returns:
        Colorized text if ORIOLE_NO_COLOR is not set, otherwise plain text
    """
    if os.getenv("ORIOLE_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


def _enabled(level: str) -> bool:
    threshold = _LEVELS.get(Config.LOG_LEVEL.upper(), 20)
    return _LEVELS[level] >= threshold


# Markers for operation types (color-blind accessible)
LOG_TAG_LOCK = "[lock]"
LOG_TAG_DB = "[•]"
LOG_TAG_ERROR = "[!]"
LOG_TAG_SUCCESS = "[✓]"
LOG_TAG_INFO = "[i]"


def log_lock(message: str) -> None:
    """Log a lock operation (magenta). Debug level."""
    if _enabled("DEBUG"):
        print(colored(f"{LOG_TAG_LOCK} {message}", Color.MAGENTA))


def log_db(message: str) -> None:
    """Log a datastore operation (blue). Debug level."""
    if _enabled("DEBUG"):
        print(colored(f"{LOG_TAG_DB} {message}", Color.BLUE))


def log_info(message: str) -> None:
    """Log metadata/info (cyan)."""
    if _enabled("INFO"):
        print(colored(f"{LOG_TAG_INFO} {message}", Color.CYAN))


def log_success(message: str) -> None:
    """Log a success (green)."""
    if _enabled("INFO"):
        print(colored(f"{LOG_TAG_SUCCESS} {message}", Color.GREEN))


def log_warning(message: str) -> None:
    """Log a recoverable problem (red, not bold)."""
    if _enabled("WARNING"):
        print(colored(f"{LOG_TAG_ERROR} {message}", Color.RED))


def log_error(message: str) -> None:
    """Log an error (bold red)."""
    if _enabled("ERROR"):
        print(colored(f"{LOG_TAG_ERROR} {message}", Color.RED, bold=True))
