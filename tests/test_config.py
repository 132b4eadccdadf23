"""Tests for settings defaults and logging setup."""

import logging
from unittest.mock import patch

from gymdesk.config import Settings
from gymdesk.logging_config import setup_logging


def test_defaults(monkeypatch):
    monkeypatch.delenv("RENEWAL_WINDOW_DAYS", raising=False)
    settings = Settings(_env_file=None)
    assert settings.RENEWAL_WINDOW_DAYS == 3
    assert settings.CACHE_STALE_SEC == 300
    assert settings.CACHE_GC_SEC == 900


def test_env_override(monkeypatch):
    monkeypatch.setenv("RENEWAL_WINDOW_DAYS", "5")
    monkeypatch.setenv("API_BASE_URL", "http://gym.local")
    settings = Settings(_env_file=None)
    assert settings.RENEWAL_WINDOW_DAYS == 5
    assert settings.API_BASE_URL == "http://gym.local"


def test_setup_logging_quiets_http_libraries():
    with patch("gymdesk.logging_config.logging.basicConfig") as mock_basic:
        setup_logging("debug")
    assert mock_basic.call_args.kwargs["level"] == "DEBUG"
    assert logging.getLogger("httpx").level == logging.WARNING
