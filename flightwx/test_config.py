"""
Settings: environment overrides, validators and the cached singleton.

  pytest flightwx/test_config.py
"""
import pytest
from pydantic import ValidationError

from flightwx.config import Settings, get_settings, reload_settings


@pytest.fixture
def fresh_settings(monkeypatch):
    yield monkeypatch
    monkeypatch.undo()
    reload_settings()


def test_environment_overrides_are_reloaded(fresh_settings):
    fresh_settings.setenv("LOG_LEVEL", "debug")
    fresh_settings.setenv("RUN_SCHEDULER", "true")

    settings = reload_settings()
    assert settings.log_level == "DEBUG"
    assert settings.run_scheduler is True
    assert get_settings() is settings


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Settings(environment="qa")
    with pytest.raises(ValidationError):
        Settings(log_level="chatty")


def test_production_logs_as_json():
    config = Settings(environment="production").get_log_config()
    assert config["handlers"]["console"]["formatter"] == "json"
    assert Settings().get_log_config()["handlers"]["console"]["formatter"] == "default"
