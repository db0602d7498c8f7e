"""Centralized configuration management using Pydantic Settings.

Credentials and client tuning are loaded from environment variables and an
optional ``.env`` file. The variable names follow the Meteomatics examples:

    METEOMATICS_USER=your_username
    METEOMATICS_PW=your_password

Example:
    >>> from meteomatics_connector.config import get_settings
    >>> settings = get_settings()
    >>> settings.client_config().timeout
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from meteomatics_connector.client.constants import (
    BASE_URL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_MAX_WAIT,
    DEFAULT_RETRY_MIN_WAIT,
    DEFAULT_TIMEOUT_SECONDS,
)
from meteomatics_connector.client.models import ClientConfig, Credentials

LOGGER = logging.getLogger(__name__)


class MeteomaticsSettings(BaseSettings):
    """Meteomatics API account and client configuration."""

    model_config = SettingsConfigDict(
        env_prefix="METEOMATICS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    username: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("METEOMATICS_USER", "METEOMATICS_USERNAME"),
        description="Meteomatics API username",
    )
    password: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("METEOMATICS_PW", "METEOMATICS_PASSWORD"),
        description="Meteomatics API password",
        repr=False,
    )
    base_url: str = Field(
        default=BASE_URL,
        description="Meteomatics API base URL",
    )
    timeout: float = Field(
        default=DEFAULT_TIMEOUT_SECONDS,
        gt=0,
        description="HTTP request timeout in seconds",
    )
    max_retries: int = Field(
        default=DEFAULT_MAX_RETRIES,
        ge=1,
        le=10,
        description="Maximum attempts for retryable failures",
    )
    retry_min_wait: float = Field(
        default=DEFAULT_RETRY_MIN_WAIT,
        ge=0,
        description="Minimum backoff between retries in seconds",
    )
    retry_max_wait: float = Field(
        default=DEFAULT_RETRY_MAX_WAIT,
        ge=0,
        description="Maximum backoff between retries in seconds",
    )
    requests_per_minute: float = Field(
        default=0.0,
        ge=0,
        description="Client-side request spacing (0 disables)",
    )
    max_parallel: int = Field(
        default=0,
        ge=0,
        description="Maximum requests in flight at once (0 disables)",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure the base URL starts with http:// or https://."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Meteomatics base URL must start with http:// or https://")
        return v.rstrip("/")

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    def credentials(self) -> Optional[Credentials]:
        """Return the configured credentials, or None when either is unset."""
        if not self.has_credentials:
            return None
        return Credentials(username=self.username, password=self.password)

    def client_config(self) -> ClientConfig:
        return ClientConfig(
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_min_wait=self.retry_min_wait,
            retry_max_wait=self.retry_max_wait,
            requests_per_minute=self.requests_per_minute,
            max_parallel=self.max_parallel,
        )


# Lazy initialization - only create settings when accessed
_settings: Optional[MeteomaticsSettings] = None
_settings_lock = threading.Lock()


def get_settings() -> MeteomaticsSettings:
    """Get or create the settings singleton (thread-safe).

    Returns:
        Settings loaded from environment variables/.env file.

    Raises:
        ValidationError: If a configured value is invalid.
    """
    global _settings

    if _settings is not None:
        return _settings

    with _settings_lock:
        if _settings is None:
            LOGGER.debug("Loading Meteomatics settings from environment")
            try:
                _settings = MeteomaticsSettings()
            except ValidationError as e:
                LOGGER.error("Configuration validation failed: %s", e)
                raise
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next access reloads the environment."""
    global _settings
    with _settings_lock:
        _settings = None


__all__ = ["MeteomaticsSettings", "get_settings", "reset_settings"]
