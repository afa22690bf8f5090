"""Levelled, colour-prefixed logging to standard output."""

from __future__ import annotations

import inspect
import os
import sys
import threading
from datetime import datetime
from enum import IntEnum

_RESET = "\033[0m"
_BLUE = "\033[34m"
_YELLOW = "\033[33m"
_RED = "\033[31m"

_INFO_PREFIX = f"{_BLUE}INFO: {_RESET}"
_WARN_PREFIX = f"{_YELLOW}WARN: {_RESET}"
_ERROR_PREFIX = f"{_RED}ERROR: {_RESET}"


class Level(IntEnum):
    """Minimum severity a message needs in order to be printed."""

    INFO = 0
    WARNING = 1
    ERROR = 2


_level: int = Level.INFO
_output_lock = threading.Lock()


def set_level(level: int) -> None:
    """Set the minimum level; messages below it are dropped."""
    global _level
    _level = int(level)


def _emit(prefix: str, message: str, location: str | None = None) -> None:
    stamp = datetime.now().strftime("%Y/%m/%d %H:%M:%S")
    where = f"{location}: " if location else ""
    line = f"{prefix}{stamp} {where}{message}"
    if not line.endswith("\n"):
        line += "\n"
    with _output_lock:
        sys.stdout.write(line)
        sys.stdout.flush()


def info(message: str) -> None:
    """Print an informational message."""
    if _level <= Level.INFO:
        _emit(_INFO_PREFIX, message)


def warning(message: str) -> None:
    """Print a warning."""
    if _level <= Level.WARNING:
        _emit(_WARN_PREFIX, message)


def error(message: str) -> None:
    """Print an error, tagged with the caller's file name and line."""
    if _level <= Level.ERROR:
        frame = inspect.currentframe()
        caller = frame.f_back if frame is not None else None
        location = None
        if caller is not None:
            location = f"{os.path.basename(caller.f_code.co_filename)}:{caller.f_lineno}"
        del frame, caller
        _emit(_ERROR_PREFIX, message, location)