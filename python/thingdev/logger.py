"""Logging setup for the relay and application log forwarding."""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional, TextIO

from .envelope import LogLevel


APP_LOGGER = logging.getLogger("thingdev.app")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "silent": logging.CRITICAL + 10,
}

_APP_LEVELS = {
    LogLevel.MESSAGE: logging.INFO,
    LogLevel.LOG: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.FATAL: logging.CRITICAL,
}

_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[31m",
}
_RESET = "\x1b[0m"


class _PrefixFormatter(logging.Formatter):
    def __init__(self, prefix: str, color: bool) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")
        self.prefix = prefix
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        text = f"{self.prefix} {super().format(record)}" if self.prefix else super().format(record)
        color = _COLORS.get(record.levelno) if self.color else None
        return f"{color}{text}{_RESET}" if color else text


def level_for(name: str) -> int:
    return _LEVELS.get(str(name).lower(), logging.INFO)


def configure_logging(
    level: str = "info", prefix: str = "", *, stream: Optional[TextIO] = None, name: str = "thingdev"
) -> None:
    """Install a single prefixed handler on the ``name`` logger tree."""
    stream = stream or sys.stderr
    root = logging.getLogger(name)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(stream)
    handler.setFormatter(_PrefixFormatter(prefix, color=hasattr(stream, "isatty") and stream.isatty()))
    root.addHandler(handler)
    root.setLevel(level_for(level))
    root.propagate = False


def app_log(level: Any, message: Any, app: Optional[str] = None) -> None:
    """Forward a log line produced by the application under development."""
    try:
        parsed = LogLevel(level)
    except ValueError:
        APP_LOGGER.info("[App %s] %s", level, message)
        return
    tag = f"{app} {parsed.value}" if app else parsed.value
    APP_LOGGER.log(_APP_LEVELS[parsed], "[App %s] %s", tag, message)
