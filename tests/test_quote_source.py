"""Tests for the option ladder and the quote source adapters (no network)."""

import io
import json
from datetime import date, datetime
from urllib import error, parse

import pandas as pd
import pytest

import quote_source
from market_engine import IST, NIFTY_INDEX_SYMBOL
from quote_source import (
    FyersQuoteSource,
    MockQuoteSource,
    QuoteSourceError,
    YahooQuoteSource,
    build_option_symbols,
    build_strikes,
    make_quote_source,
    option_symbol,
    parse_quotes_response,
    to_yahoo_ticker,
    weekly_expiries,
)
from settings import FyersCredentials, PulseSettings

CREDS = FyersCredentials(app_id="APP-100", access_token="token123")


class FakeResponse:
    def __init__(self, body: str) -> None:
        self._body = body.encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def ok_payload(symbols):
    return json.dumps(
        {"s": "ok", "d": [{"n": sym, "s": "ok", "v": {"lp": 100.0, "totalbuyqty": 10, "totalsellqty": 5}} for sym in symbols]}
    )


def test_weekly_expiry_is_tuesday():
    expiry, following = weekly_expiries(datetime(2025, 10, 8, 11, 0, tzinfo=IST))
    assert expiry == date(2025, 10, 14)
    # 2025-10-21 is a holiday, so that week's expiry moves to Monday
    assert following == date(2025, 10, 20)


def test_holiday_expiry_moves_to_previous_trading_day():
    expiry, following = weekly_expiries(datetime(2025, 10, 20, 10, 0, tzinfo=IST))
    assert expiry == date(2025, 10, 20)
    assert following == date(2025, 10, 28)


def test_expiry_rolls_after_close_on_expiry_day():
    before, _ = weekly_expiries(datetime(2025, 10, 14, 15, 0, tzinfo=IST))
    after, _ = weekly_expiries(datetime(2025, 10, 14, 15, 45, tzinfo=IST))
    assert before == date(2025, 10, 14)
    assert after == date(2025, 10, 20)


def test_custom_holiday_calendar():
    expiry, _ = weekly_expiries(datetime(2025, 10, 8, 11, 0, tzinfo=IST), holidays={date(2025, 10, 14)})
    assert expiry == date(2025, 10, 13)


def test_option_symbol_formats():
    assert option_symbol(date(2025, 10, 14), 25000, "CE") == "NSE:NIFTY25O1425000CE"
    assert option_symbol(date(2026, 3, 3), 24550, "PE") == "NSE:NIFTY2630324550PE"
    assert option_symbol(date(2025, 10, 28), 25000, "PE", monthly=True) == "NSE:NIFTY25OCT25000PE"


def test_strike_ladder_centres_on_atm():
    assert build_strikes(24512.0, strike_range=2) == [24400, 24450, 24500, 24550, 24600]
    assert len(build_strikes(24500.0)) == 51
    assert build_strikes(float("nan")) == []
    assert build_strikes(0.0) == []


def test_option_ladder_uses_monthly_format_in_last_week():
    symbols = build_option_symbols(25010.0, now=datetime(2025, 10, 22, 10, 0, tzinfo=IST), strike_range=1)
    assert symbols == [
        "NSE:NIFTY25OCT24950CE",
        "NSE:NIFTY25OCT24950PE",
        "NSE:NIFTY25OCT25000CE",
        "NSE:NIFTY25OCT25000PE",
        "NSE:NIFTY25OCT25050CE",
        "NSE:NIFTY25OCT25050PE",
    ]


def test_option_ladder_weekly_format():
    symbols = build_option_symbols(25000.0, now=datetime(2025, 10, 8, 10, 0, tzinfo=IST), strike_range=0)
    assert symbols == ["NSE:NIFTY25O1425000CE", "NSE:NIFTY25O1425000PE"]


def test_parse_quotes_skips_errored_items():
    quotes = parse_quotes_response(
        {
            "s": "ok",
            "d": [
                {"n": "NSE:SBIN-EQ", "s": "ok", "v": {"lp": 801.5, "chp": 0.4, "volume": 1200}},
                {"n": "NSE:BAD-EQ", "s": "error", "v": {"errmsg": "invalid symbol"}},
                "junk",
            ],
        }
    )
    assert len(quotes) == 1
    assert quotes[0].symbol == "NSE:SBIN-EQ"
    assert quotes[0].lp == 801.5
    assert quotes[0].volume == 1200.0


def test_parse_quotes_depth_shape():
    quotes = parse_quotes_response({"s": "ok", "d": {"NSE:INFY-EQ": {"ltp": 1500, "totalbuyqty": 5, "totalsellqty": 7}}})
    assert quotes[0].symbol == "NSE:INFY-EQ"
    assert quotes[0].lp == 1500.0
    assert quotes[0].total_sell_qty == 7.0


def test_parse_quotes_error_status():
    with pytest.raises(QuoteSourceError, match="token expired"):
        parse_quotes_response({"s": "error", "message": "token expired"})
    with pytest.raises(QuoteSourceError):
        parse_quotes_response(["not", "a", "dict"])


def test_fyers_fetch_batches_and_sends_auth(monkeypatch):
    calls = []

    def fake_urlopen(req, timeout=None):
        query = parse.parse_qs(parse.urlsplit(req.full_url).query)
        symbols = query["symbols"][0].split(",")
        calls.append((req.get_header("Authorization"), symbols))
        return FakeResponse(ok_payload(symbols))

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    symbols = [f"NSE:S{i}-EQ" for i in range(120)]
    quotes = FyersQuoteSource(CREDS).fetch_quotes(symbols)

    assert [len(batch) for _, batch in calls] == [50, 50, 20]
    assert {auth for auth, _ in calls} == {"APP-100:token123"}
    assert [q.symbol for q in quotes] == symbols
    assert quotes[0].total_buy_qty == 10.0


def test_fyers_http_401(monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise error.HTTPError(req.full_url, 401, "Unauthorized", hdrs=None, fp=io.BytesIO(b""))

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    with pytest.raises(QuoteSourceError, match="Unauthorized"):
        FyersQuoteSource(CREDS).fetch_quotes(["NSE:SBIN-EQ"])


def test_fyers_server_error_uses_body_message(monkeypatch):
    def fake_urlopen(req, timeout=None):
        body = json.dumps({"message": "rate limited"}).encode()
        raise error.HTTPError(req.full_url, 429, "Too Many", hdrs=None, fp=io.BytesIO(body))

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    with pytest.raises(QuoteSourceError, match="rate limited"):
        FyersQuoteSource(CREDS).fetch_quotes(["NSE:SBIN-EQ"])


def test_fyers_connection_failure(monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise error.URLError("timed out")

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    with pytest.raises(QuoteSourceError, match="Connection failed: timed out"):
        FyersQuoteSource(CREDS).fetch_quotes(["NSE:SBIN-EQ"])


def test_fyers_html_response(monkeypatch):
    monkeypatch.setattr("urllib.request.urlopen", lambda req, timeout=None: FakeResponse("<!DOCTYPE html><p>login</p>"))
    with pytest.raises(QuoteSourceError, match="HTML"):
        FyersQuoteSource(CREDS).fetch_quotes(["NSE:SBIN-EQ"])


def test_fyers_requires_credentials():
    with pytest.raises(QuoteSourceError, match="Missing credentials"):
        FyersQuoteSource(FyersCredentials("", "")).fetch_quotes(["NSE:SBIN-EQ"])


def test_mock_source_is_seeded_and_books_grow():
    first = MockQuoteSource(seed=3)
    second = MockQuoteSource(seed=3)
    symbols = ["NSE:SBIN-EQ", NIFTY_INDEX_SYMBOL, "NSE:NIFTY25O1425000CE"]

    a = first.fetch_quotes(symbols)
    b = second.fetch_quotes(symbols)
    assert [q.lp for q in a] == [q.lp for q in b]

    equity, index, option = a
    assert index.lp == 24500.0
    assert index.total_buy_qty is None
    assert option.oi is not None and option.oi > 0

    later = first.fetch_quotes(symbols)
    assert later[0].total_buy_qty >= equity.total_buy_qty
    assert later[0].total_sell_qty >= equity.total_sell_qty


def test_make_quote_source_selects_adapter():
    assert isinstance(make_quote_source(PulseSettings(credentials=CREDS, quote_source="fyers")), FyersQuoteSource)
    assert isinstance(make_quote_source(PulseSettings(credentials=CREDS, quote_source="yahoo")), YahooQuoteSource)
    mock = make_quote_source(PulseSettings(credentials=CREDS, strike_range=3))
    assert isinstance(mock, MockQuoteSource)
    assert len(mock.option_symbols(24500.0)) == 14


def test_yahoo_ticker_mapping():
    assert to_yahoo_ticker("NSE:SBIN-EQ") == "SBIN.NS"
    assert to_yahoo_ticker(NIFTY_INDEX_SYMBOL) == "^NSEI"


def test_yahoo_source_builds_quotes_from_intraday_bars(monkeypatch):
    index = pd.DatetimeIndex(["2025-10-17 09:59", "2025-10-20 04:00", "2025-10-20 04:01"], tz="UTC")
    columns = pd.MultiIndex.from_product([["SBIN.NS"], ["Open", "High", "Low", "Close", "Volume"]])
    data = pd.DataFrame(
        [[790, 791, 789, 790, 100], [800, 805, 799, 802, 10], [802, 808, 801, 806, 20]],
        index=index,
        columns=columns,
        dtype=float,
    )
    monkeypatch.setattr(quote_source.yf, "download", lambda *args, **kwargs: data.copy())

    source = YahooQuoteSource()
    [quote] = source.fetch_quotes(["NSE:SBIN-EQ"])
    assert quote.symbol == "NSE:SBIN-EQ"
    assert quote.lp == 806.0
    assert quote.prev_close_price == 790.0
    assert quote.ch == pytest.approx(16.0)
    assert quote.open_price == 800.0
    assert quote.high_price == 808.0
    assert quote.low_price == 799.0
    assert quote.volume == 30.0
    assert quote.total_buy_qty is None
    assert source.option_symbols(25000.0) == []


def test_yahoo_source_empty_download(monkeypatch):
    monkeypatch.setattr(quote_source.yf, "download", lambda *args, **kwargs: pd.DataFrame())
    with pytest.raises(QuoteSourceError, match="no intraday data"):
        YahooQuoteSource().fetch_quotes(["NSE:SBIN-EQ"])
