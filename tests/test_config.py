"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from famcal_sync.config import create_example_config

from conftest import TestSettings, make_settings


def test_defaults_derive_from_data_dir(tmp_path):
    settings = TestSettings(data_dir=tmp_path)

    assert settings.database_url == f"sqlite:///{tmp_path}/famcal_sync.db"
    assert settings.credentials_dir == tmp_path / "credentials"
    assert settings.request_timeout_seconds == 15
    assert settings.poll_interval_seconds == 60
    assert settings.min_attempt_spacing_seconds == 60
    assert settings.google_scopes == ["https://www.googleapis.com/auth/calendar.events"]
    assert settings.validate_required_settings() == []


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("REQUEST_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("GOOGLE_CALENDAR_ID", "family@group.calendar.google.com")

    settings = TestSettings(data_dir=tmp_path)

    assert settings.request_timeout_seconds == 5
    assert settings.google_calendar_id == "family@group.calendar.google.com"


def test_log_level_is_validated(tmp_path):
    assert TestSettings(data_dir=tmp_path, log_level="debug").log_level == "DEBUG"

    with pytest.raises(ValidationError):
        TestSettings(data_dir=tmp_path, log_level="chatty")


def test_token_path_is_sanitized(tmp_path):
    settings = make_settings(tmp_path)

    path = settings.google_token_path("../mum@example.com")

    assert path.parent == settings.credentials_dir
    assert path.name == "google_token_.._mum_example.com.json"


def test_ensure_directories(tmp_path):
    settings = TestSettings(data_dir=tmp_path / "data")

    settings.ensure_directories()

    assert settings.data_dir.is_dir()
    assert settings.credentials_dir.is_dir()


def test_example_config_loads(tmp_path, monkeypatch):
    path = tmp_path / "example.env"
    create_example_config(path)
    monkeypatch.setenv("DATA_DIR", str(tmp_path))

    settings = TestSettings(_env_file=str(path))

    assert settings.google_calendar_id == "primary"
    assert settings.tombstone_retention_days == 30
