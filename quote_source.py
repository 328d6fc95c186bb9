from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Sequence
from urllib import error, parse, request

import numpy as np
import pandas as pd
import yfinance as yf

from market_engine import IST, NIFTY_INDEX_SYMBOL, RawQuote, short_name_for, to_ist
from settings import FyersCredentials, PulseSettings

logger = logging.getLogger(__name__)

FYERS_QUOTES_URL = "https://api-t1.fyers.in/data/quotes"
FYERS_BATCH_SIZE = 50

OPTION_UNDERLYING = "NIFTY"
STRIKE_STEP = 50
STRIKE_RANGE = 25
EXPIRY_WEEKDAY = 1  # Tuesday
EXPIRY_ROLL_TIME = time(15, 30)

MONTH_CODES = {1: "1", 2: "2", 3: "3", 4: "4", 5: "5", 6: "6", 7: "7", 8: "8", 9: "9", 10: "O", 11: "N", 12: "D"}

NSE_HOLIDAYS = {
    date(2025, 2, 26),
    date(2025, 3, 14),
    date(2025, 3, 31),
    date(2025, 4, 10),
    date(2025, 4, 14),
    date(2025, 4, 18),
    date(2025, 5, 1),
    date(2025, 8, 15),
    date(2025, 8, 27),
    date(2025, 10, 2),
    date(2025, 10, 21),
    date(2025, 10, 22),
    date(2025, 11, 5),
    date(2025, 12, 25),
    date(2026, 1, 26),
    date(2026, 5, 1),
    date(2026, 10, 2),
    date(2026, 12, 25),
}

YAHOO_TICKERS = {NIFTY_INDEX_SYMBOL: "^NSEI"}


class QuoteSourceError(RuntimeError):
    """Upstream quote fetch failed; the message is safe to show to the user."""


def _is_trading_day(day: date, holidays: Iterable[date]) -> bool:
    return day.weekday() < 5 and day not in holidays


def _previous_trading_day(day: date, holidays: Iterable[date]) -> date:
    holidays = set(holidays)
    while not _is_trading_day(day, holidays):
        day -= timedelta(days=1)
    return day


def weekly_expiries(now: datetime | None = None, holidays: Iterable[date] | None = None) -> tuple[date, date]:
    """Return the nearest live weekly expiry and the one after it.

    Expiry is the Tuesday of the week, pulled back to the previous trading
    day when that Tuesday is a holiday. Once expiry day passes 15:30 IST the
    following week becomes the nearest expiry.
    """
    holiday_set = set(NSE_HOLIDAYS if holidays is None else holidays)
    now_ist = to_ist(now)
    today = now_ist.date()

    nominal = today + timedelta(days=(EXPIRY_WEEKDAY - today.weekday()) % 7)
    expiry = _previous_trading_day(nominal, holiday_set)
    if expiry < today or (expiry == today and now_ist.time() > EXPIRY_ROLL_TIME):
        nominal += timedelta(days=7)
        expiry = _previous_trading_day(nominal, holiday_set)

    following = _previous_trading_day(nominal + timedelta(days=7), holiday_set)
    return expiry, following


def option_symbol(expiry: date, strike: float, side: str, monthly: bool = False) -> str:
    if monthly:
        code = f"{expiry:%y}{expiry.strftime('%b').upper()}"
    else:
        code = f"{expiry:%y}{MONTH_CODES[expiry.month]}{expiry:%d}"
    return f"NSE:{OPTION_UNDERLYING}{code}{int(round(strike))}{side}"


def build_strikes(index_ltp: float, strike_range: int = STRIKE_RANGE, step: int = STRIKE_STEP) -> list[int]:
    if index_ltp is None or not np.isfinite(index_ltp) or index_ltp <= 0:
        return []
    atm = int(round(index_ltp / step) * step)
    return [atm + i * step for i in range(-strike_range, strike_range + 1) if atm + i * step > 0]


def build_option_symbols(
    index_ltp: float,
    now: datetime | None = None,
    strike_range: int = STRIKE_RANGE,
    step: int = STRIKE_STEP,
    holidays: Iterable[date] | None = None,
) -> list[str]:
    """Near-the-money CE/PE ladder for the nearest weekly expiry."""
    strikes = build_strikes(index_ltp, strike_range=strike_range, step=step)
    if not strikes:
        return []
    expiry, following = weekly_expiries(now, holidays)
    monthly = following.month != expiry.month
    symbols: list[str] = []
    for strike in strikes:
        symbols.append(option_symbol(expiry, strike, "CE", monthly))
        symbols.append(option_symbol(expiry, strike, "PE", monthly))
    return symbols


class QuoteSource:
    name = "base"

    def __init__(self, strike_range: int = STRIKE_RANGE, holidays: Iterable[date] | None = None) -> None:
        self.strike_range = strike_range
        self.holidays = set(NSE_HOLIDAYS if holidays is None else holidays)

    def fetch_quotes(self, symbols: Sequence[str]) -> list[RawQuote]:
        raise NotImplementedError

    def option_symbols(self, index_ltp: float, now: datetime | None = None) -> list[str]:
        return build_option_symbols(index_ltp, now=now, strike_range=self.strike_range, holidays=self.holidays)


def _http_error_message(status: int, body: str) -> str:
    if status == 401:
        return "Unauthorized: invalid App ID or Access Token"
    if status == 403:
        return "Forbidden: access denied by Fyers"
    if status == 404:
        return "Quotes endpoint not found"
    if status == 504:
        return "Gateway timeout: Fyers API is slow or unreachable"

    message = f"Server error ({status})"
    try:
        payload = json.loads(body)
    except ValueError:
        if body and len(body) < 50:
            message += f": {body}"
        return message
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("message")
        if detail:
            message = str(detail)
    return message


def _decode_json(text: str) -> Any:
    if not text or not text.strip():
        raise QuoteSourceError("Empty response from quotes API")
    try:
        return json.loads(text)
    except ValueError as exc:
        if "<!DOCTYPE" in text or "<html" in text:
            raise QuoteSourceError("Quotes API returned HTML instead of JSON") from exc
        raise QuoteSourceError(f"Invalid JSON response: {text[:30]}...") from exc


def parse_quotes_response(data: Any) -> list[RawQuote]:
    if not isinstance(data, dict):
        raise QuoteSourceError("Unexpected quotes response shape")
    if data.get("s") != "ok":
        raise QuoteSourceError(str(data.get("message") or "API returned error status"))

    items = data.get("d")
    quotes: list[RawQuote] = []
    if isinstance(items, list):
        for item in items:
            if not isinstance(item, dict) or item.get("s") == "error":
                continue
            values = item.get("v")
            if not isinstance(values, dict):
                continue
            quotes.append(RawQuote.from_payload(values, symbol=item.get("n") or values.get("symbol")))
    elif isinstance(items, dict):
        for symbol, values in items.items():
            if isinstance(values, dict):
                quotes.append(RawQuote.from_payload(values, symbol=symbol))
    return quotes


class FyersQuoteSource(QuoteSource):
    name = "fyers"

    def __init__(
        self,
        credentials: FyersCredentials,
        base_url: str = FYERS_QUOTES_URL,
        timeout: float = 10.0,
        strike_range: int = STRIKE_RANGE,
        holidays: Iterable[date] | None = None,
    ) -> None:
        super().__init__(strike_range=strike_range, holidays=holidays)
        self.credentials = credentials
        self.base_url = base_url
        self.timeout = timeout

    def fetch_quotes(self, symbols: Sequence[str]) -> list[RawQuote]:
        if not self.credentials.is_complete:
            raise QuoteSourceError("Missing credentials: set FYERS_APP_ID and FYERS_ACCESS_TOKEN")
        symbols = list(symbols)
        quotes: list[RawQuote] = []
        for start in range(0, len(symbols), FYERS_BATCH_SIZE):
            batch = symbols[start : start + FYERS_BATCH_SIZE]
            quotes.extend(parse_quotes_response(self._get(batch)))
        return quotes

    def _get(self, batch: Sequence[str]) -> Any:
        url = f"{self.base_url}?{parse.urlencode({'symbols': ','.join(batch)})}"
        req = request.Request(
            url=url,
            method="GET",
            headers={"Authorization": self.credentials.auth_header, "Accept": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                text = resp.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace") if exc.fp is not None else ""
            raise QuoteSourceError(_http_error_message(exc.code, body)) from exc
        except (error.URLError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            raise QuoteSourceError(f"Connection failed: {reason}") from exc
        return _decode_json(text)


def to_yahoo_ticker(symbol: str) -> str:
    if symbol in YAHOO_TICKERS:
        return YAHOO_TICKERS[symbol]
    return f"{short_name_for(symbol)}.NS"


def _download_intraday(tickers: list[str]) -> pd.DataFrame:
    if not tickers:
        return pd.DataFrame()
    try:
        data = yf.download(
            " ".join(tickers),
            period="2d",
            interval="1m",
            auto_adjust=False,
            group_by="ticker",
            threads=True,
            progress=False,
        )
    except Exception as exc:
        raise QuoteSourceError(f"Yahoo Finance download failed: {exc}") from exc
    if data is None:
        return pd.DataFrame()
    if isinstance(data.index, pd.DatetimeIndex) and data.index.tz is not None:
        data.index = data.index.tz_convert(IST).tz_localize(None)
    return data


def _extract_ticker_frame(data: pd.DataFrame, ticker: str) -> pd.DataFrame:
    if data.empty:
        return pd.DataFrame()
    if isinstance(data.columns, pd.MultiIndex):
        if ticker not in data.columns.get_level_values(0):
            return pd.DataFrame()
        out = data[ticker].dropna(how="all")
        return out if isinstance(out, pd.DataFrame) else pd.DataFrame(out)
    return data.dropna(how="all")


def _frame_to_quote(frame: pd.DataFrame, symbol: str) -> RawQuote | None:
    if frame.empty or "Close" not in frame:
        return None
    close = frame["Close"].dropna()
    if close.empty:
        return None
    session_day = close.index[-1].date()
    today = frame[frame.index.date == session_day]
    earlier = close[close.index.date < session_day]

    lp = float(close.iloc[-1])
    prev_close = float(earlier.iloc[-1]) if not earlier.empty else None
    ch = lp - prev_close if prev_close else None
    chp = ch / prev_close * 100 if ch is not None else None
    return RawQuote(
        symbol=symbol,
        short_name=short_name_for(symbol),
        lp=lp,
        open_price=float(today["Open"].dropna().iloc[0]) if "Open" in today and not today["Open"].dropna().empty else None,
        high_price=float(today["High"].max()) if "High" in today else None,
        low_price=float(today["Low"].min()) if "Low" in today else None,
        prev_close_price=prev_close,
        ch=ch,
        chp=chp,
        volume=float(today["Volume"].fillna(0).sum()) if "Volume" in today else None,
        tt=close.index[-1].isoformat(),
    )


class YahooQuoteSource(QuoteSource):
    """Keyless delayed quotes; order-book totals and options are not available."""

    name = "yahoo"

    def fetch_quotes(self, symbols: Sequence[str]) -> list[RawQuote]:
        tickers = {to_yahoo_ticker(symbol): symbol for symbol in symbols}
        if not tickers:
            return []
        data = _download_intraday(list(tickers))
        if data.empty:
            raise QuoteSourceError("Yahoo Finance returned no intraday data")
        quotes: list[RawQuote] = []
        for ticker, symbol in tickers.items():
            quote = _frame_to_quote(_extract_ticker_frame(data, ticker), symbol)
            if quote is not None:
                quotes.append(quote)
        return quotes

    def option_symbols(self, index_ltp: float, now: datetime | None = None) -> list[str]:
        return []


class MockQuoteSource(QuoteSource):
    """Random-walk demo feed with growing order-book totals and open interest."""

    name = "mock"

    def __init__(
        self,
        seed: int | None = None,
        base_index: float = 24500.0,
        strike_range: int = STRIKE_RANGE,
        holidays: Iterable[date] | None = None,
    ) -> None:
        super().__init__(strike_range=strike_range, holidays=holidays)
        self.base_index = base_index
        self._rng = np.random.default_rng(seed)
        self._state: dict[str, dict[str, float]] = {}

    def _initial_state(self, symbol: str) -> dict[str, float]:
        if symbol == NIFTY_INDEX_SYMBOL:
            price, qty_scale = self.base_index, 0
        elif symbol.endswith(("CE", "PE")):
            price, qty_scale = float(self._rng.uniform(20, 300)), 2_000_000
        else:
            price, qty_scale = float(self._rng.uniform(200, 4000)), 1_000_000
        return {
            "open": price,
            "lp": price,
            "high": price,
            "low": price,
            "volume": 0.0,
            "buy": float(self._rng.integers(qty_scale // 10, qty_scale)) if qty_scale else 0.0,
            "sell": float(self._rng.integers(qty_scale // 10, qty_scale)) if qty_scale else 0.0,
            "oi": float(self._rng.integers(qty_scale // 2, qty_scale * 5)) if symbol.endswith(("CE", "PE")) else 0.0,
            "scale": float(qty_scale),
        }

    def _tick(self, symbol: str) -> RawQuote:
        state = self._state.get(symbol)
        if state is None:
            state = self._initial_state(symbol)
            self._state[symbol] = state
        else:
            state["lp"] = max(0.05, state["lp"] * (1 + float(self._rng.normal(0, 0.0015))))
            state["high"] = max(state["high"], state["lp"])
            state["low"] = min(state["low"], state["lp"])
            step = state["scale"] / 50
            if step:
                state["buy"] += float(self._rng.integers(0, int(step)))
                state["sell"] += float(self._rng.integers(0, int(step)))
                state["volume"] += float(self._rng.integers(0, int(step)))
            if state["oi"]:
                state["oi"] += float(self._rng.integers(-int(step // 4) - 1, int(step)))

        ch = state["lp"] - state["open"]
        is_index = symbol == NIFTY_INDEX_SYMBOL
        return RawQuote(
            symbol=symbol,
            short_name=short_name_for(symbol),
            lp=round(state["lp"], 2),
            open_price=round(state["open"], 2),
            high_price=round(state["high"], 2),
            low_price=round(state["low"], 2),
            prev_close_price=round(state["open"], 2),
            ch=round(ch, 2),
            chp=round(ch / state["open"] * 100, 2),
            volume=state["volume"],
            total_buy_qty=None if is_index else state["buy"],
            total_sell_qty=None if is_index else state["sell"],
            oi=state["oi"] or None,
            tt=int(datetime.now(IST).timestamp()),
        )

    def fetch_quotes(self, symbols: Sequence[str]) -> list[RawQuote]:
        return [self._tick(symbol) for symbol in symbols]


def make_quote_source(settings: PulseSettings) -> QuoteSource:
    if settings.quote_source == "fyers":
        return FyersQuoteSource(settings.credentials, strike_range=settings.strike_range)
    if settings.quote_source == "yahoo":
        return YahooQuoteSource(strike_range=settings.strike_range)
    return MockQuoteSource(strike_range=settings.strike_range)
