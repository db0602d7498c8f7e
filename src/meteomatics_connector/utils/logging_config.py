"""Console logging setup with colored level names for the connector CLI."""
from __future__ import annotations
import logging
import os
import sys
from typing import Optional, TextIO

NOISY_LOGGERS = ("urllib3", "requests")


def supports_color(stream: Optional[TextIO] = None) -> bool:
    """Decide whether ANSI colors should be written to ``stream``.

    ``NO_COLOR`` (https://no-color.org/) disables colors and ``FORCE_COLOR``
    enables them; otherwise colors are used only on a TTY.
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    stream = stream or sys.stderr
    return bool(getattr(stream, "isatty", None) and stream.isatty())


class ColoredFormatter(logging.Formatter):
    """Format records as ``[LEVEL] logger - message`` with optional colors."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    MODULE = "\033[94m"  # Blue
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if not self.use_color:
            return f"[{record.levelname}] {record.name} - {message}"
        level_color = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        level = f"{level_color}{self.BOLD}[{record.levelname}]{self.RESET}"
        module = f"{self.MODULE}{record.name}{self.RESET}"
        return f"{level} {module} - {message}"


def configure_logging(level: int = logging.INFO, stream: Optional[TextIO] = None) -> None:
    """Configure root logging for the connector CLI.

    Installs a single console handler (replacing existing ones) and keeps
    HTTP library loggers at WARNING unless DEBUG is requested.

    Args:
        level: Logging level (default: logging.INFO).
        stream: Output stream (default: stderr).

    Example:
        >>> from meteomatics_connector.utils.logging_config import configure_logging
        >>> configure_logging(logging.DEBUG)
    """
    stream = stream or sys.stderr
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(use_color=supports_color(stream)))
    root_logger.addHandler(handler)

    noisy_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)


__all__ = ["ColoredFormatter", "configure_logging", "supports_color"]
