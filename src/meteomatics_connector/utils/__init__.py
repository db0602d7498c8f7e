"""Shared utilities for the Meteomatics connector."""

from __future__ import annotations

from .logging_config import ColoredFormatter, configure_logging, supports_color

__all__ = ["ColoredFormatter", "configure_logging", "supports_color"]
