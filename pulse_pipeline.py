from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence

from history_store import HistoryStore
from market_engine import (
    NIFTY50_SYMBOLS,
    NIFTY_INDEX_SYMBOL,
    Decision,
    EnrichedQuote,
    MarketSnapshot,
    RawQuote,
    aggregate_snapshot,
    decide,
    enrich_quotes,
    market_status_message,
    to_ist,
    trading_day,
)
from quote_source import QuoteSource, QuoteSourceError, make_quote_source
from settings import PulseSettings, configure_logging, load_settings

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_CLOSED = "closed"
STATUS_BUSY = "busy"
STATUS_ERROR = "error"


@dataclass
class SessionState:
    """Per-instrument state carried between polls; cleared wholesale on a new trading day."""

    previous_equities: dict[str, RawQuote] = field(default_factory=dict)
    baseline_equities: dict[str, RawQuote] = field(default_factory=dict)
    previous_options: dict[str, RawQuote] = field(default_factory=dict)
    baseline_options: dict[str, RawQuote] = field(default_factory=dict)
    previous_index_ltp: float | None = None

    def reset(self) -> None:
        self.previous_equities.clear()
        self.baseline_equities.clear()
        self.previous_options.clear()
        self.baseline_options.clear()
        self.previous_index_ltp = None


@dataclass(frozen=True)
class CycleResult:
    status: str
    snapshot: MarketSnapshot | None = None
    message: str | None = None
    candles_added: int = 0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


class MarketPulsePipeline:
    def __init__(
        self,
        source: QuoteSource,
        store: HistoryStore,
        equity_symbols: Sequence[str] = NIFTY50_SYMBOLS,
        index_symbol: str = NIFTY_INDEX_SYMBOL,
        bypass_market_hours: bool = False,
    ) -> None:
        self.source = source
        self.store = store
        self.equity_symbols = list(equity_symbols)
        self.index_symbol = index_symbol
        self.bypass_market_hours = bypass_market_hours
        self.session = SessionState()
        self.last_error: str | None = None
        self.last_success: datetime | None = None
        self.last_attempt: datetime | None = None
        self.last_result: CycleResult | None = None
        self._cycle_lock = threading.Lock()
        self._latest_equities: list[EnrichedQuote] = []
        self._latest_options: list[EnrichedQuote] = []

    def initialize(self, now: datetime | None = None) -> bool:
        """Bind history to the current trading day, resetting session state on rollover."""
        rolled = self.store.initialize(trading_day(now))
        if rolled:
            self.session.reset()
            self._latest_equities = []
            self._latest_options = []
        return rolled

    def run_cycle(self, now: datetime | None = None) -> CycleResult:
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Previous poll cycle still running, dropping this tick")
            return CycleResult(status=STATUS_BUSY, message="Previous poll still in progress")
        try:
            return self._attempt(to_ist(now))
        finally:
            self._cycle_lock.release()

    def is_due(self, interval_seconds: float, now: datetime | None = None) -> bool:
        if self.last_attempt is None:
            return True
        return (to_ist(now) - self.last_attempt).total_seconds() >= interval_seconds

    def poll_if_due(self, interval_seconds: float, now: datetime | None = None, force: bool = False) -> CycleResult | None:
        """Run a cycle when ``interval_seconds`` have passed since the last attempt, or when forced.

        Returns None when no cycle ran, including while another caller's cycle is in flight.
        """
        if not self._cycle_lock.acquire(blocking=False):
            return None
        try:
            now_ist = to_ist(now)
            if not force and not self.is_due(interval_seconds, now_ist):
                return None
            return self._attempt(now_ist)
        finally:
            self._cycle_lock.release()

    def _attempt(self, now_ist: datetime) -> CycleResult:
        result = self._run_cycle(now_ist)
        self.last_attempt = now_ist
        self.last_result = result
        return result

    def reset_history(self) -> None:
        """Drop today's history and session baselines; the next poll starts a fresh session."""
        with self._cycle_lock:
            self.store.clear()
            self.session.reset()
            self._latest_equities = []
            self._latest_options = []
        logger.info("History for %s cleared on request", self.store.trade_date)

    def _run_cycle(self, now_ist: datetime) -> CycleResult:
        closed = market_status_message(now_ist, bypass=self.bypass_market_hours)
        if closed:
            logger.debug("Market gate closed: %s", closed)
            return CycleResult(status=STATUS_CLOSED, message=closed)

        self.initialize(now_ist)

        try:
            snapshot, equities, options = self._collect(now_ist)
        except QuoteSourceError as exc:
            return self._failed(str(exc))
        except Exception as exc:
            logger.exception("Unexpected error during poll cycle")
            return self._failed(f"Unexpected error: {exc}")

        self.store.append_snapshot(snapshot)
        added = self.store.append_candles(equities + options, now_ist)
        self._latest_equities = equities
        self._latest_options = options
        self.last_error = None
        self.last_success = now_ist
        return CycleResult(status=STATUS_OK, snapshot=snapshot, candles_added=added)

    def _failed(self, message: str) -> CycleResult:
        logger.warning("Poll cycle failed: %s", message)
        self.last_error = message
        return CycleResult(status=STATUS_ERROR, message=message)

    def _collect(self, now_ist: datetime) -> tuple[MarketSnapshot, list[EnrichedQuote], list[EnrichedQuote]]:
        state = self.session
        openings = self.store.opening_quotes()

        raw_equities = self.source.fetch_quotes(self.equity_symbols)
        equities = enrich_quotes(
            raw_equities,
            state.previous_equities,
            state.baseline_equities,
            is_equity=True,
            session_openings=openings,
        )

        index_quotes = self.source.fetch_quotes([self.index_symbol])
        index_ltp = next((q.lp for q in index_quotes if q.lp is not None), None)
        if index_ltp is None:
            raise QuoteSourceError("Failed to fetch NIFTY index quote")

        last_ltp = state.previous_index_ltp
        if last_ltp is None:
            latest = self.store.latest_snapshot()
            last_ltp = latest.nifty_ltp if latest is not None else None
        pts_change = index_ltp - last_ltp if last_ltp is not None else 0.0

        option_symbols = self.source.option_symbols(index_ltp, now=now_ist)
        raw_options = self.source.fetch_quotes(option_symbols) if option_symbols else []
        options = enrich_quotes(
            raw_options,
            state.previous_options,
            state.baseline_options,
            is_equity=False,
            session_openings=openings,
        )
        state.previous_index_ltp = index_ltp

        snapshot = aggregate_snapshot(equities, options, index_ltp, pts_change, now=now_ist)
        return snapshot, equities, options

    @property
    def latest_equities(self) -> list[EnrichedQuote]:
        return list(self._latest_equities)

    @property
    def latest_options(self) -> list[EnrichedQuote]:
        return list(self._latest_options)

    def history(self) -> list[MarketSnapshot]:
        return self.store.snapshots()

    def decision(self, window_minutes: float) -> Decision | None:
        return decide(self.store.snapshots(), window_minutes)


class PollLoop:
    """Run pipeline cycles every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        pipeline: MarketPulsePipeline,
        interval_seconds: float,
        on_cycle: Callable[[CycleResult], None] | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.interval = max(0.0, float(interval_seconds))
        self.on_cycle = on_cycle
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> CycleResult | None:
        try:
            result = self.pipeline.run_cycle()
        except Exception:
            logger.exception("Poll cycle crashed, retrying next tick")
            return None
        if self.on_cycle is not None:
            try:
                self.on_cycle(result)
            except Exception:
                logger.exception("Poll cycle callback failed")
        return result

    def run_forever(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            if self._stop.wait(self.interval):
                break

    def start_background(self) -> threading.Thread:
        if self.running:
            return self._thread  # type: ignore[return-value]
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="pulse-poll", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)


def build_pipeline(settings: PulseSettings) -> MarketPulsePipeline:
    store = HistoryStore(
        settings.db_path,
        snapshot_capacity=settings.snapshot_capacity,
        candle_capacity=settings.candle_capacity,
    )
    pipeline = MarketPulsePipeline(
        make_quote_source(settings),
        store,
        bypass_market_hours=settings.bypass_market_hours,
    )
    pipeline.initialize()
    return pipeline


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    pipeline = build_pipeline(settings)
    logger.info("Polling %s quotes every %ss", pipeline.source.name, settings.poll_seconds)

    def report(result: CycleResult) -> None:
        if not result.ok:
            if result.status == STATUS_CLOSED:
                logger.info("%s", result.message)
            return
        decision = pipeline.decision(settings.decision_window_min)
        snap = result.snapshot
        if decision is None:
            logger.info("%s NIFTY %.2f, collecting history", snap.time, snap.nifty_ltp)
            return
        logger.info(
            "%s NIFTY %.2f | %s score=%+.1f window=%.1fm%s",
            snap.time,
            snap.nifty_ltp,
            decision.prediction,
            decision.score,
            decision.effective_window_min,
            " (short history)" if decision.used_fallback else "",
        )

    loop = PollLoop(pipeline, settings.poll_seconds, on_cycle=report)
    try:
        loop.run_forever()
    except KeyboardInterrupt:
        loop.stop()


if __name__ == "__main__":
    main()
