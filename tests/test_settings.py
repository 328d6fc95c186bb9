"""Tests for environment-driven settings."""

from pathlib import Path

import pytest

from history_store import DB_PATH, SNAPSHOT_CAPACITY
from settings import FyersCredentials, load_settings

ENV_KEYS = [
    "FYERS_APP_ID",
    "FYERS_ACCESS_TOKEN",
    "PULSE_QUOTE_SOURCE",
    "PULSE_BYPASS_MARKET_HOURS",
    "PULSE_POLL_SECONDS",
    "PULSE_SNAPSHOT_CAPACITY",
    "PULSE_CANDLE_CAPACITY",
    "PULSE_DB_PATH",
    "PULSE_DECISION_WINDOW_MIN",
    "PULSE_STRIKE_RANGE",
    "PULSE_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_credentials() -> None:
    settings = load_settings()
    assert settings.quote_source == "mock"
    assert settings.bypass_market_hours is False
    assert settings.poll_seconds == 60
    assert settings.snapshot_capacity == SNAPSHOT_CAPACITY
    assert settings.db_path == DB_PATH
    assert settings.decision_window_min == 5
    assert settings.log_level == "INFO"


def test_credentials_select_fyers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FYERS_APP_ID", " APP-100 ")
    monkeypatch.setenv("FYERS_ACCESS_TOKEN", "tok")
    settings = load_settings()
    assert settings.quote_source == "fyers"
    assert settings.credentials.auth_header == "APP-100:tok"


def test_explicit_source_and_parsing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PULSE_QUOTE_SOURCE", "Yahoo")
    monkeypatch.setenv("PULSE_BYPASS_MARKET_HOURS", "yes")
    monkeypatch.setenv("PULSE_POLL_SECONDS", "2")
    monkeypatch.setenv("PULSE_SNAPSHOT_CAPACITY", "not-a-number")
    monkeypatch.setenv("PULSE_CANDLE_CAPACITY", "120")
    monkeypatch.setenv("PULSE_DECISION_WINDOW_MIN", "15")
    monkeypatch.setenv("PULSE_STRIKE_RANGE", "10")
    monkeypatch.setenv("PULSE_LOG_LEVEL", "debug")

    settings = load_settings()
    assert settings.quote_source == "yahoo"
    assert settings.bypass_market_hours is True
    assert settings.poll_seconds == 5
    assert settings.snapshot_capacity == SNAPSHOT_CAPACITY
    assert settings.candle_capacity == 120
    assert settings.decision_window_min == 15
    assert settings.strike_range == 10
    assert settings.log_level == "DEBUG"


def test_unknown_source_falls_back(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PULSE_QUOTE_SOURCE", "bloomberg")
    assert load_settings().quote_source == "mock"


def test_db_path_override_and_disable(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PULSE_DB_PATH", str(tmp_path / "x.db"))
    assert load_settings().db_path == tmp_path / "x.db"
    monkeypatch.setenv("PULSE_DB_PATH", "")
    assert load_settings().db_path is None


def test_incomplete_credentials() -> None:
    assert not FyersCredentials("APP", " ").is_complete
    assert FyersCredentials("APP", "tok").is_complete
