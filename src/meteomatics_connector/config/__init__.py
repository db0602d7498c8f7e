"""Configuration management for the Meteomatics connector."""

from __future__ import annotations

from .settings import MeteomaticsSettings, get_settings, reset_settings

__all__ = ["MeteomaticsSettings", "get_settings", "reset_settings"]
