from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from history_store import CANDLE_CAPACITY, DB_PATH, SNAPSHOT_CAPACITY

QUOTE_SOURCES = {"fyers", "yahoo", "mock"}
MIN_POLL_SECONDS = 5


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, default: int, minimum: int = 1) -> int:
    if value is None or not value.strip():
        return default
    try:
        return max(minimum, int(float(value)))
    except ValueError:
        return default


@dataclass(frozen=True)
class FyersCredentials:
    app_id: str
    access_token: str

    @property
    def is_complete(self) -> bool:
        return bool(self.app_id.strip() and self.access_token.strip())

    @property
    def auth_header(self) -> str:
        return f"{self.app_id.strip()}:{self.access_token.strip()}"


@dataclass(frozen=True)
class PulseSettings:
    credentials: FyersCredentials
    quote_source: str = "mock"
    bypass_market_hours: bool = False
    poll_seconds: int = 60
    snapshot_capacity: int = SNAPSHOT_CAPACITY
    candle_capacity: int = CANDLE_CAPACITY
    db_path: Path | None = DB_PATH
    decision_window_min: int = 5
    strike_range: int = 25
    log_level: str = "INFO"


def load_settings() -> PulseSettings:
    credentials = FyersCredentials(
        app_id=os.getenv("FYERS_APP_ID", "").strip(),
        access_token=os.getenv("FYERS_ACCESS_TOKEN", "").strip(),
    )

    source = os.getenv("PULSE_QUOTE_SOURCE", "").strip().lower()
    if source not in QUOTE_SOURCES:
        source = "fyers" if credentials.is_complete else "mock"

    raw_db_path = os.getenv("PULSE_DB_PATH")
    if raw_db_path is None:
        db_path: Path | None = DB_PATH
    else:
        db_path = Path(raw_db_path.strip()) if raw_db_path.strip() else None

    return PulseSettings(
        credentials=credentials,
        quote_source=source,
        bypass_market_hours=_parse_bool(os.getenv("PULSE_BYPASS_MARKET_HOURS"), default=False),
        poll_seconds=_parse_int(os.getenv("PULSE_POLL_SECONDS"), 60, minimum=MIN_POLL_SECONDS),
        snapshot_capacity=_parse_int(os.getenv("PULSE_SNAPSHOT_CAPACITY"), SNAPSHOT_CAPACITY),
        candle_capacity=_parse_int(os.getenv("PULSE_CANDLE_CAPACITY"), CANDLE_CAPACITY),
        db_path=db_path,
        decision_window_min=_parse_int(os.getenv("PULSE_DECISION_WINDOW_MIN"), 5),
        strike_range=_parse_int(os.getenv("PULSE_STRIKE_RANGE"), 25),
        log_level=os.getenv("PULSE_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
