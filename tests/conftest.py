"""Shared pytest fixtures for Meteomatics connector tests."""

from __future__ import annotations

from typing import Generator

import pytest

from meteomatics_connector.client.models import ClientConfig, Credentials
from meteomatics_connector.config import reset_settings

ENV_VARS = [
    "METEOMATICS_USER",
    "METEOMATICS_USERNAME",
    "METEOMATICS_PW",
    "METEOMATICS_PASSWORD",
    "METEOMATICS_BASE_URL",
    "METEOMATICS_TIMEOUT",
    "METEOMATICS_MAX_RETRIES",
    "METEOMATICS_RETRY_MIN_WAIT",
    "METEOMATICS_RETRY_MAX_WAIT",
    "METEOMATICS_REQUESTS_PER_MINUTE",
    "METEOMATICS_MAX_PARALLEL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path) -> None:
    """Remove Meteomatics env vars and run from a directory without a .env file."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def mock_env_credentials(monkeypatch, clean_env) -> None:
    """Set TEST-ONLY Meteomatics credentials in the environment."""
    monkeypatch.setenv("METEOMATICS_USER", "env_user")
    monkeypatch.setenv("METEOMATICS_PW", "env_password_TESTONLY")


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(username="test_user", password="test_password_TESTONLY")


@pytest.fixture
def fast_config() -> ClientConfig:
    """Client config with three attempts and no backoff sleep."""
    return ClientConfig(max_retries=3, retry_min_wait=0.0, retry_max_wait=0.0, timeout=10)


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Reset the settings singleton between tests to ensure isolation."""
    reset_settings()
    yield
    reset_settings()
