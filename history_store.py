from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Sequence

import pandas as pd

from market_engine import EnrichedQuote, MarketSnapshot, RawQuote, _safe_float, to_ist

logger = logging.getLogger(__name__)

DB_PATH = Path(__file__).with_name("nifty_pulse_history.db")

SNAPSHOT_CAPACITY = 400
CANDLE_CAPACITY = 400
CANDLE_LABEL_FORMAT = "%H:%M"

LAST_DATE_KEY = "last_date"

_MARKER_UNREADABLE = object()


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS snapshots (
    timestamp REAL PRIMARY KEY,
    time TEXT NOT NULL,
    nifty_ltp REAL,
    pts_chg REAL,
    overall_sent REAL,
    adv INTEGER,
    dec INTEGER,
    stock_sent REAL,
    call_sent REAL,
    put_sent REAL,
    pcr REAL,
    options_sent REAL,
    calls_buy_qty REAL,
    calls_sell_qty REAL,
    puts_buy_qty REAL,
    puts_sell_qty REAL
);

CREATE TABLE IF NOT EXISTS session_candles (
    symbol TEXT NOT NULL,
    time TEXT NOT NULL,
    epoch REAL NOT NULL,
    lp REAL,
    volume REAL,
    day_pct REAL,
    momentum_1m_pct REAL,
    total_buy_qty REAL,
    total_sell_qty REAL,
    bid_qty_chg_1m REAL,
    ask_qty_chg_1m REAL,
    net_strength_1m REAL,
    net_strength_day REAL,
    PRIMARY KEY (symbol, time)
);

CREATE INDEX IF NOT EXISTS idx_candles_symbol_epoch ON session_candles(symbol, epoch);

CREATE TABLE IF NOT EXISTS session_openings (
    symbol TEXT PRIMARY KEY,
    lp REAL,
    total_buy_qty REAL,
    total_sell_qty REAL
);
"""


@dataclass(frozen=True)
class SessionCandle:
    time: str
    epoch: float
    lp: float | None = None
    volume: float | None = None
    day_pct: float | None = None
    momentum_1m_pct: float | None = None
    total_buy_qty: float | None = None
    total_sell_qty: float | None = None
    bid_qty_chg_1m: float | None = None
    ask_qty_chg_1m: float | None = None
    net_strength_1m: float | None = None
    net_strength_day: float | None = None

    @classmethod
    def from_quote(cls, item: EnrichedQuote, label: str, epoch: float) -> SessionCandle:
        q = item.quote
        return cls(
            time=label,
            epoch=epoch,
            lp=q.lp,
            volume=q.volume,
            day_pct=item.momentum_day_pct,
            momentum_1m_pct=item.momentum_1m_pct,
            total_buy_qty=q.total_buy_qty,
            total_sell_qty=q.total_sell_qty,
            bid_qty_chg_1m=item.bid_qty_chg_1m,
            ask_qty_chg_1m=item.ask_qty_chg_1m,
            net_strength_1m=item.net_strength_1m,
            net_strength_day=item.net_strength_day,
        )


_SNAPSHOT_COLUMNS = [f.name for f in fields(MarketSnapshot)]
_CANDLE_COLUMNS = ["symbol"] + [f.name for f in fields(SessionCandle)]


def _opening_from_candle(symbol: str, candle: SessionCandle) -> RawQuote:
    return RawQuote(
        symbol=symbol,
        lp=candle.lp,
        total_buy_qty=candle.total_buy_qty,
        total_sell_qty=candle.total_sell_qty,
    )


def is_new_trading_day(stored_date: str | None, current_date: str) -> bool:
    """True when history persisted under ``stored_date`` must not carry into ``current_date``."""
    return stored_date != current_date


class HistoryStore:
    """Bounded, day-scoped snapshot log and per-instrument candle map.

    Memory is the source of truth; sqlite mirrors it so a restart mid-session
    picks the day back up. Storage errors are logged and never raised.
    """

    def __init__(
        self,
        db_path: Path | str | None = DB_PATH,
        snapshot_capacity: int = SNAPSHOT_CAPACITY,
        candle_capacity: int = CANDLE_CAPACITY,
    ) -> None:
        self.db_path = Path(db_path) if db_path else None
        self.snapshot_capacity = max(1, int(snapshot_capacity))
        self.candle_capacity = max(1, int(candle_capacity))
        self.trade_date: str | None = None
        self.last_error: str | None = None
        self._snapshots: list[MarketSnapshot] = []
        self._candles: dict[str, list[SessionCandle]] = {}
        self._openings: dict[str, RawQuote] = {}

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.executescript(SCHEMA_SQL)
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _storage_failed(self, action: str, exc: Exception) -> None:
        self.last_error = f"{action}: {exc}"
        logger.warning("History %s failed, continuing in memory", action, exc_info=True)

    def initialize(self, today: str) -> bool:
        """Bind the store to ``today``; returns True when a day rollover reset happened.

        Safe to call on every poll: once bound to ``today`` it is a no-op.
        """
        if self.trade_date == today:
            return False

        stored = self._read_marker()
        if stored is _MARKER_UNREADABLE:
            # persisted rows may still belong to today; keep them and run from memory
            self._clear_memory()
            self.trade_date = today
            return True

        rolled = self.trade_date is not None or is_new_trading_day(stored, today)
        if rolled:
            previous_day = self.trade_date or stored
            if previous_day:
                logger.info("Trading day rollover %s -> %s, clearing history", previous_day, today)
            else:
                logger.info("Starting history for trading day %s", today)
            self._clear_memory()
            self._reset_persisted(today)
        else:
            self._load_persisted()
        self.trade_date = today
        return rolled

    def _clear_memory(self) -> None:
        self._snapshots = []
        self._candles = {}
        self._openings = {}

    def _read_marker(self) -> object:
        """Stored trading day, None when absent, or ``_MARKER_UNREADABLE`` on a storage error."""
        if self.db_path is None:
            return None
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM meta WHERE key = ?", (LAST_DATE_KEY,)).fetchone()
        except (sqlite3.Error, OSError) as exc:
            self._storage_failed("read", exc)
            return _MARKER_UNREADABLE
        return row[0] if row else None

    def _reset_persisted(self, today: str) -> None:
        if self.db_path is None:
            return
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM snapshots")
                conn.execute("DELETE FROM session_candles")
                conn.execute("DELETE FROM session_openings")
                conn.execute(
                    "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                    (LAST_DATE_KEY, today),
                )
        except (sqlite3.Error, OSError) as exc:
            self._storage_failed("reset", exc)

    def _load_persisted(self) -> None:
        if self.db_path is None:
            return
        try:
            with self._connect() as conn:
                snap_rows = conn.execute(
                    f"SELECT {', '.join(_SNAPSHOT_COLUMNS)} FROM snapshots ORDER BY timestamp ASC"
                ).fetchall()
                candle_rows = conn.execute(
                    f"SELECT {', '.join(_CANDLE_COLUMNS)} FROM session_candles ORDER BY symbol, epoch ASC"
                ).fetchall()
                opening_rows = conn.execute(
                    "SELECT symbol, lp, total_buy_qty, total_sell_qty FROM session_openings"
                ).fetchall()
        except (sqlite3.Error, OSError) as exc:
            self._storage_failed("load", exc)
            return

        snapshots = [MarketSnapshot.from_dict(dict(zip(_SNAPSHOT_COLUMNS, row))) for row in snap_rows]
        self._snapshots = snapshots[-self.snapshot_capacity:]

        candles: dict[str, list[SessionCandle]] = {}
        for row in candle_rows:
            record = dict(zip(_CANDLE_COLUMNS, row))
            symbol = record.pop("symbol")
            candles.setdefault(symbol, []).append(
                SessionCandle(
                    time=str(record["time"]),
                    epoch=float(record["epoch"]),
                    **{k: _safe_float(v) for k, v in record.items() if k not in ("time", "epoch")},
                )
            )
        self._candles = {symbol: seq[-self.candle_capacity:] for symbol, seq in candles.items()}
        self._openings = {
            symbol: RawQuote(symbol=symbol, lp=_safe_float(lp), total_buy_qty=_safe_float(buy), total_sell_qty=_safe_float(sell))
            for symbol, lp, buy, sell in opening_rows
        }
        for symbol, seq in candles.items():
            if symbol not in self._openings and seq:
                self._openings[symbol] = _opening_from_candle(symbol, seq[0])
        logger.info(
            "Loaded %d snapshots and %d instrument candle series for %s",
            len(self._snapshots),
            len(self._candles),
            self.trade_date or "today",
        )

    def append_snapshot(self, snapshot: MarketSnapshot) -> None:
        self._snapshots.append(snapshot)
        evicted: list[MarketSnapshot] = []
        while len(self._snapshots) > self.snapshot_capacity:
            evicted.append(self._snapshots.pop(0))
        self._persist_snapshot(snapshot, evicted)

    def _persist_snapshot(self, snapshot: MarketSnapshot, evicted: Sequence[MarketSnapshot]) -> None:
        if self.db_path is None:
            return
        row = snapshot.to_dict()
        placeholders = ", ".join("?" for _ in _SNAPSHOT_COLUMNS)
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO snapshots ({', '.join(_SNAPSHOT_COLUMNS)}) VALUES ({placeholders})",
                    [row[col] for col in _SNAPSHOT_COLUMNS],
                )
                conn.executemany(
                    "DELETE FROM snapshots WHERE timestamp = ?",
                    [(old.timestamp,) for old in evicted],
                )
        except (sqlite3.Error, OSError) as exc:
            self._storage_failed("snapshot write", exc)

    def append_candles(self, quotes: Sequence[EnrichedQuote], now: datetime | None = None) -> int:
        """Add one candle per instrument for this poll's time label; returns how many were added.

        An instrument whose last candle already carries the label is skipped.
        """
        now_ist = to_ist(now)
        label = now_ist.strftime(CANDLE_LABEL_FORMAT)
        epoch = now_ist.timestamp()

        added: list[tuple[str, SessionCandle]] = []
        evicted: list[tuple[str, SessionCandle]] = []
        new_openings: list[RawQuote] = []
        for item in quotes:
            seq = self._candles.setdefault(item.symbol, [])
            if seq and seq[-1].time == label:
                continue
            if len(seq) >= self.candle_capacity:
                evicted.append((item.symbol, seq.pop(0)))
            candle = SessionCandle.from_quote(item, label, epoch)
            seq.append(candle)
            added.append((item.symbol, candle))
            if item.symbol not in self._openings:
                opening = _opening_from_candle(item.symbol, candle)
                self._openings[item.symbol] = opening
                new_openings.append(opening)

        self._persist_candles(added, evicted, new_openings)
        return len(added)

    def _persist_candles(
        self,
        added: Sequence[tuple[str, SessionCandle]],
        evicted: Sequence[tuple[str, SessionCandle]],
        openings: Sequence[RawQuote] = (),
    ) -> None:
        if self.db_path is None or not (added or evicted or openings):
            return
        placeholders = ", ".join("?" for _ in _CANDLE_COLUMNS)
        rows = []
        for symbol, candle in added:
            record = asdict(candle)
            rows.append([symbol] + [record[col] for col in _CANDLE_COLUMNS[1:]])
        try:
            with self._connect() as conn:
                conn.executemany(
                    "DELETE FROM session_candles WHERE symbol = ? AND time = ?",
                    [(symbol, candle.time) for symbol, candle in evicted],
                )
                conn.executemany(
                    f"INSERT OR IGNORE INTO session_candles ({', '.join(_CANDLE_COLUMNS)}) VALUES ({placeholders})",
                    rows,
                )
                conn.executemany(
                    "INSERT OR IGNORE INTO session_openings (symbol, lp, total_buy_qty, total_sell_qty) VALUES (?, ?, ?, ?)",
                    [(q.symbol, q.lp, q.total_buy_qty, q.total_sell_qty) for q in openings],
                )
        except (sqlite3.Error, OSError) as exc:
            self._storage_failed("candle write", exc)

    def snapshots(self) -> list[MarketSnapshot]:
        return list(self._snapshots)

    def latest_snapshot(self) -> MarketSnapshot | None:
        return self._snapshots[-1] if self._snapshots else None

    def candles(self, symbol: str) -> list[SessionCandle]:
        return list(self._candles.get(symbol, []))

    def session_candles(self) -> dict[str, list[SessionCandle]]:
        return {symbol: list(seq) for symbol, seq in self._candles.items()}

    def opening_quotes(self) -> dict[str, RawQuote]:
        """Each instrument's first quote of the day, used to seed session baselines.

        Kept apart from the candle series so FIFO eviction never moves the baseline.
        """
        return dict(self._openings)

    def snapshot_frame(self) -> pd.DataFrame:
        if not self._snapshots:
            return pd.DataFrame(columns=_SNAPSHOT_COLUMNS)
        df = pd.DataFrame([snap.to_dict() for snap in self._snapshots])
        df["timestamp_ist"] = pd.to_datetime(df["timestamp"], unit="s", utc=True).dt.tz_convert("Asia/Kolkata")
        df["net_option_flow"] = (df["calls_buy_qty"] - df["calls_sell_qty"]) - (df["puts_buy_qty"] - df["puts_sell_qty"])
        return df

    def candle_frame(self, symbol: str) -> pd.DataFrame:
        seq = self._candles.get(symbol, [])
        if not seq:
            return pd.DataFrame(columns=_CANDLE_COLUMNS[1:])
        return pd.DataFrame([asdict(candle) for candle in seq])

    def export_snapshots_csv(self, path: Path | str | None = None) -> str:
        """Write the snapshot log as CSV to ``path`` (if given) and return the CSV text."""
        frame = self.snapshot_frame().drop(columns=["timestamp_ist"], errors="ignore")
        text = frame.to_csv(index=False)
        if path is not None:
            Path(path).write_text(text, encoding="utf-8")
        return text

    def clear(self) -> None:
        self._clear_memory()
        if self.trade_date is not None:
            self._reset_persisted(self.trade_date)


def describe_history(store: HistoryStore) -> dict[str, Any]:
    snaps = store.snapshots()
    return {
        "trade_date": store.trade_date,
        "snapshots": len(snaps),
        "first_time": snaps[0].time if snaps else None,
        "last_time": snaps[-1].time if snaps else None,
        "instruments": len(store.session_candles()),
        "last_error": store.last_error,
    }
