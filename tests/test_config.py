"""
Tests for environment-driven configuration
"""

import pydantic
import pytest

from aml_returns.config import ReturnsConfig, get_config, reload_config


@pytest.fixture
def restore_config(monkeypatch):
    yield
    monkeypatch.undo()
    reload_config()


def test_defaults():
    config = ReturnsConfig()
    assert config.api_port == 8090
    assert config.default_page_size == 20
    assert config.log_format == "json"


def test_environment_overrides(monkeypatch, restore_config):
    monkeypatch.setenv("AMLR_API_PORT", "9100")
    monkeypatch.setenv("AMLR_DATABASE_PATH", ":memory:")
    monkeypatch.setenv("AMLR_LOG_LEVEL", "debug")

    config = reload_config()
    assert get_config() is config
    assert config.api_port == 9100
    assert config.database_path == ":memory:"
    assert config.log_level == "DEBUG"


def test_invalid_logging_settings(monkeypatch):
    monkeypatch.setenv("AMLR_LOG_LEVEL", "chatty")
    with pytest.raises(pydantic.ValidationError):
        ReturnsConfig()

    monkeypatch.setenv("AMLR_LOG_LEVEL", "info")
    monkeypatch.setenv("AMLR_LOG_FORMAT", "xml")
    with pytest.raises(pydantic.ValidationError):
        ReturnsConfig()
