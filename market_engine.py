from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, time
from typing import Any, Iterable, Mapping, MutableMapping, Sequence
from zoneinfo import ZoneInfo

import numpy as np

IST = ZoneInfo("Asia/Kolkata")

NIFTY_INDEX_SYMBOL = "NSE:NIFTY50-INDEX"

NIFTY50_SYMBOLS = [
    "NSE:RELIANCE-EQ", "NSE:HDFCBANK-EQ", "NSE:ICICIBANK-EQ", "NSE:INFY-EQ", "NSE:ITC-EQ",
    "NSE:TCS-EQ", "NSE:LTIM-EQ", "NSE:KOTAKBANK-EQ", "NSE:LT-EQ", "NSE:AXISBANK-EQ",
    "NSE:SBIN-EQ", "NSE:BHARTIARTL-EQ", "NSE:BAJFINANCE-EQ", "NSE:ASIANPAINT-EQ", "NSE:MARUTI-EQ",
    "NSE:HCLTECH-EQ", "NSE:SUNPHARMA-EQ", "NSE:TITAN-EQ", "NSE:ULTRACEMCO-EQ", "NSE:TATASTEEL-EQ",
    "NSE:NTPC-EQ", "NSE:POWERGRID-EQ", "NSE:TATAMOTORS-EQ", "NSE:INDUSINDBK-EQ", "NSE:HINDUNILVR-EQ",
    "NSE:NESTLEIND-EQ", "NSE:GRASIM-EQ", "NSE:JSWSTEEL-EQ", "NSE:ADANIENT-EQ", "NSE:ADANIPORTS-EQ",
    "NSE:CIPLA-EQ", "NSE:WIPRO-EQ", "NSE:TECHM-EQ", "NSE:ONGC-EQ", "NSE:SBILIFE-EQ",
    "NSE:DRREDDY-EQ", "NSE:BRITANNIA-EQ", "NSE:COALINDIA-EQ", "NSE:TATACONSUM-EQ", "NSE:EICHERMOT-EQ",
    "NSE:BAJAJ-AUTO-EQ", "NSE:DIVISLAB-EQ", "NSE:APOLLOHOSP-EQ", "NSE:HDFCLIFE-EQ", "NSE:BAJAJFINSV-EQ",
    "NSE:BPCL-EQ", "NSE:HEROMOTOCO-EQ", "NSE:UPL-EQ", "NSE:M&M-EQ",
]

# Approximate NIFTY 50 index weights in percent, keyed by short name.
NIFTY_WEIGHTAGE = {
    "HDFCBANK": 13.52,
    "RELIANCE": 9.81,
    "ICICIBANK": 7.85,
    "INFY": 5.86,
    "ITC": 4.45,
    "TCS": 3.96,
    "LT": 3.65,
    "AXISBANK": 3.25,
    "SBIN": 3.05,
    "BHARTIARTL": 2.95,
    "KOTAKBANK": 2.85,
    "BAJFINANCE": 2.35,
    "HINDUNILVR": 2.30,
    "M&M": 1.95,
    "TATAMOTORS": 1.75,
    "MARUTI": 1.65,
    "SUNPHARMA": 1.55,
    "TITAN": 1.45,
    "ASIANPAINT": 1.45,
    "NTPC": 1.35,
    "TATASTEEL": 1.30,
    "ULTRACEMCO": 1.15,
    "POWERGRID": 1.10,
    "ADANIENT": 1.05,
    "INDUSINDBK": 0.95,
    "HCLTECH": 0.90,
    "NESTLEIND": 0.90,
    "ONGC": 0.85,
    "JSWSTEEL": 0.80,
    "ADANIPORTS": 0.80,
    "GRASIM": 0.75,
    "COALINDIA": 0.70,
    "SBILIFE": 0.70,
    "BAJAJ-AUTO": 0.65,
    "DRREDDY": 0.65,
    "CIPLA": 0.65,
    "WIPRO": 0.60,
    "HDFCLIFE": 0.60,
    "BRITANNIA": 0.55,
    "TECHM": 0.55,
    "TATACONSUM": 0.55,
    "LTIM": 0.53,
    "EICHERMOT": 0.50,
    "BAJAJFINSV": 0.50,
    "DIVISLAB": 0.45,
    "APOLLOHOSP": 0.45,
    "BPCL": 0.45,
    "HEROMOTOCO": 0.40,
    "UPL": 0.35,
}

DEFAULT_WEIGHT = 0.1
SENTIMENT_EPSILON = 0.001

MARKET_OPEN = time(9, 17)
MARKET_CLOSE = time(15, 15)

DECISION_WINDOWS = [1, 3, 5, 10, 15, 30]

STRONG_BUY = "STRONG BUY"
BULLISH = "BULLISH"
NEUTRAL = "NEUTRAL"
BEARISH = "BEARISH"
STRONG_SELL = "STRONG SELL"
TRAP_DIVERGENCE = "TRAP/DIVERGENCE"

_SYMBOL_SUFFIXES = ("-EQ", "-INDEX", "-BE")


def _safe_float(value: Any) -> float | None:
    try:
        if value is None or isinstance(value, bool):
            return None
        f = float(value)
        return f if np.isfinite(f) else None
    except (TypeError, ValueError):
        return None


def _diff(current: float | None, reference: float | None) -> float | None:
    if current is None or reference is None:
        return None
    return current - reference


def _pct_change(current: float | None, reference: float | None) -> float | None:
    """Percent change of ``current`` over ``reference``; None when it cannot be computed."""
    current = _safe_float(current)
    reference = _safe_float(reference)
    if current is None or reference is None or reference == 0:
        return None
    out = (current - reference) / reference * 100.0
    return out if np.isfinite(out) else None


def short_name_for(symbol: str) -> str:
    name = str(symbol or "").split(":", 1)[-1].strip().upper()
    for suffix in _SYMBOL_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def resolve_weight(symbol: str) -> float:
    return NIFTY_WEIGHTAGE.get(short_name_for(symbol), DEFAULT_WEIGHT)


@dataclass(frozen=True)
class RawQuote:
    symbol: str
    short_name: str = ""
    lp: float | None = None
    open_price: float | None = None
    high_price: float | None = None
    low_price: float | None = None
    prev_close_price: float | None = None
    ch: float | None = None
    chp: float | None = None
    volume: float | None = None
    total_buy_qty: float | None = None
    total_sell_qty: float | None = None
    oi: float | None = None
    tt: Any = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], symbol: str | None = None) -> RawQuote:
        """Build a quote from a Fyers quotes (``v``) or depth record.

        Numeric fields that are missing or malformed come through as None.
        """

        def pick(*keys: str) -> float | None:
            for key in keys:
                value = _safe_float(payload.get(key))
                if value is not None:
                    return value
            return None

        sym = str(symbol or payload.get("symbol") or payload.get("n") or "").strip()
        short = str(payload.get("short_name") or "").strip() or short_name_for(sym)
        return cls(
            symbol=sym,
            short_name=short,
            lp=pick("lp", "ltp"),
            open_price=pick("open_price", "o"),
            high_price=pick("high_price", "h"),
            low_price=pick("low_price", "l"),
            prev_close_price=pick("prev_close_price", "c"),
            ch=pick("ch"),
            chp=pick("chp"),
            volume=pick("volume", "v"),
            total_buy_qty=pick("total_buy_qty", "totalbuyqty"),
            total_sell_qty=pick("total_sell_qty", "totalsellqty"),
            oi=pick("oi"),
            tt=payload.get("tt", payload.get("ltt")),
        )


@dataclass
class EnrichedQuote:
    quote: RawQuote
    momentum_1m_pct: float | None = None
    momentum_day_pct: float | None = None
    bid_qty_chg_1m: float | None = None
    bid_qty_chg_1m_pct: float | None = None
    ask_qty_chg_1m: float | None = None
    ask_qty_chg_1m_pct: float | None = None
    net_strength_1m: float | None = None
    initial_lp: float | None = None
    initial_total_buy_qty: float | None = None
    initial_total_sell_qty: float | None = None
    bid_qty_chg_day_pct: float | None = None
    ask_qty_chg_day_pct: float | None = None
    net_strength_day: float | None = None
    weight: float | None = None
    index_contribution: float | None = None

    @property
    def symbol(self) -> str:
        return self.quote.symbol

    @property
    def short_name(self) -> str:
        return self.quote.short_name or short_name_for(self.quote.symbol)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self.quote)
        derived = asdict(self)
        derived.pop("quote")
        row.update(derived)
        return row


@dataclass(frozen=True)
class MarketSnapshot:
    time: str
    timestamp: float
    nifty_ltp: float
    pts_chg: float
    overall_sent: float
    adv: int
    dec: int
    stock_sent: float
    call_sent: float
    put_sent: float
    pcr: float
    options_sent: float
    calls_buy_qty: float
    calls_sell_qty: float
    puts_buy_qty: float
    puts_sell_qty: float

    @property
    def net_option_flow(self) -> float:
        return (self.calls_buy_qty - self.calls_sell_qty) - (self.puts_buy_qty - self.puts_sell_qty)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MarketSnapshot:
        def num(key: str) -> float:
            value = _safe_float(data.get(key))
            return 0.0 if value is None else value

        return cls(
            time=str(data.get("time", "")),
            timestamp=num("timestamp"),
            nifty_ltp=num("nifty_ltp"),
            pts_chg=num("pts_chg"),
            overall_sent=num("overall_sent"),
            adv=int(num("adv")),
            dec=int(num("dec")),
            stock_sent=num("stock_sent"),
            call_sent=num("call_sent"),
            put_sent=num("put_sent"),
            pcr=num("pcr"),
            options_sent=num("options_sent"),
            calls_buy_qty=num("calls_buy_qty"),
            calls_sell_qty=num("calls_sell_qty"),
            puts_buy_qty=num("puts_buy_qty"),
            puts_sell_qty=num("puts_sell_qty"),
        )


@dataclass(frozen=True)
class Decision:
    prediction: str
    description: str
    score: float
    price_delta: float
    flow_delta: float
    sentiment_trend: float
    divergence: bool
    requested_window_min: float
    effective_window_min: float
    used_fallback: bool


@dataclass
class SessionProgress:
    is_open: bool
    elapsed_minutes: int
    progress: float
    label: str


def to_ist(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(IST)
    if now.tzinfo is None:
        return now.replace(tzinfo=IST)
    return now.astimezone(IST)


def trading_day(now: datetime | None = None) -> str:
    return to_ist(now).date().isoformat()


def get_session_progress(now: datetime | None = None, bypass: bool = False) -> SessionProgress:
    now_ist = to_ist(now)
    open_dt = now_ist.replace(hour=MARKET_OPEN.hour, minute=MARKET_OPEN.minute, second=0, microsecond=0)
    close_dt = now_ist.replace(hour=MARKET_CLOSE.hour, minute=MARKET_CLOSE.minute, second=0, microsecond=0)
    session_minutes = int((close_dt - open_dt).total_seconds() // 60)

    if bypass:
        elapsed = int((now_ist - open_dt).total_seconds() // 60)
        elapsed = max(0, min(session_minutes, elapsed))
        return SessionProgress(True, elapsed, elapsed / session_minutes, "Market-hours bypass")
    if now_ist.weekday() >= 5:
        return SessionProgress(False, session_minutes, 1.0, "Weekend")
    if now_ist.time() < MARKET_OPEN:
        return SessionProgress(False, 0, 0.0, "Pre-open")
    if now_ist.time() >= MARKET_CLOSE:
        return SessionProgress(False, session_minutes, 1.0, "Post-close")

    elapsed = int((now_ist - open_dt).total_seconds() // 60)
    elapsed = max(0, min(session_minutes, elapsed))
    return SessionProgress(True, elapsed, elapsed / session_minutes, "Regular session")


def is_market_open(now: datetime | None = None, bypass: bool = False) -> bool:
    return get_session_progress(now, bypass=bypass).is_open


def market_status_message(now: datetime | None = None, bypass: bool = False) -> str | None:
    """Human-readable reason the gate is closed, or None while it is open."""
    session = get_session_progress(now, bypass=bypass)
    if session.is_open:
        return None
    window = f"{MARKET_OPEN.strftime('%H:%M')}-{MARKET_CLOSE.strftime('%H:%M')} IST"
    if session.label == "Weekend":
        return f"Weekend. Tracking resumes Monday {window}."
    if session.label == "Pre-open":
        return f"Pre-open. Tracking starts at {MARKET_OPEN.strftime('%H:%M')} IST."
    return f"Market closed for the day. Tracking window is {window}."


def enrich_quotes(
    raw: Iterable[RawQuote],
    previous: MutableMapping[str, RawQuote],
    baseline: MutableMapping[str, RawQuote],
    is_equity: bool,
    session_openings: Mapping[str, RawQuote] | None = None,
) -> list[EnrichedQuote]:
    """Attach 1-minute and session deltas to each fetched quote.

    ``previous`` is overwritten with the current quote for the next poll.
    ``baseline`` gains an entry the first time an instrument is seen, taken
    from ``session_openings`` when a persisted opening exists for it.
    """
    openings = session_openings or {}
    enriched: list[EnrichedQuote] = []

    for curr in raw:
        if not isinstance(curr, RawQuote) or not curr.symbol:
            continue

        base = baseline.get(curr.symbol)
        fresh_baseline = False
        if base is None:
            base = openings.get(curr.symbol)
            if base is None:
                base = curr
                fresh_baseline = True
            baseline[curr.symbol] = base

        item = EnrichedQuote(
            quote=curr,
            initial_lp=base.lp,
            initial_total_buy_qty=base.total_buy_qty,
            initial_total_sell_qty=base.total_sell_qty,
        )

        prev = previous.get(curr.symbol)
        if prev is not None:
            item.momentum_1m_pct = _pct_change(curr.lp, prev.lp)
            item.bid_qty_chg_1m = _diff(curr.total_buy_qty, prev.total_buy_qty)
            item.bid_qty_chg_1m_pct = _pct_change(curr.total_buy_qty, prev.total_buy_qty)
            item.ask_qty_chg_1m = _diff(curr.total_sell_qty, prev.total_sell_qty)
            item.ask_qty_chg_1m_pct = _pct_change(curr.total_sell_qty, prev.total_sell_qty)
            item.net_strength_1m = _diff(item.bid_qty_chg_1m_pct, item.ask_qty_chg_1m_pct)

        if not fresh_baseline:
            item.momentum_day_pct = _pct_change(curr.lp, base.lp)
            item.bid_qty_chg_day_pct = _pct_change(curr.total_buy_qty, base.total_buy_qty)
            item.ask_qty_chg_day_pct = _pct_change(curr.total_sell_qty, base.total_sell_qty)
            item.net_strength_day = _diff(item.bid_qty_chg_day_pct, item.ask_qty_chg_day_pct)

        if is_equity:
            item.weight = resolve_weight(curr.short_name or curr.symbol)
            item.index_contribution = (item.momentum_day_pct or 0.0) * item.weight

        previous[curr.symbol] = curr
        enriched.append(item)

    return enriched


def _option_side(symbol: str) -> str | None:
    name = str(symbol or "").upper()
    if name.endswith("CE"):
        return "CE"
    if name.endswith("PE"):
        return "PE"
    return None


def _side_sentiment(flows: dict[str, float]) -> float:
    buy_pct = _pct_change(flows["buy_now"], flows["buy_base"])
    sell_pct = _pct_change(flows["sell_now"], flows["sell_base"])
    return (buy_pct or 0.0) - (sell_pct or 0.0)


def aggregate_snapshot(
    equities: Sequence[EnrichedQuote],
    options: Sequence[EnrichedQuote],
    index_ltp: float,
    index_pts_change: float,
    now: datetime | None = None,
) -> MarketSnapshot:
    """Reduce one poll's enriched quotes into a chartable market snapshot."""
    bullish_weight = 0.0
    bearish_weight = 0.0
    total_weight = 0.0
    weighted_strength = 0.0
    adv = 0
    dec = 0

    for item in equities:
        w = item.weight if item.weight is not None and item.weight > 0 else DEFAULT_WEIGHT
        session_chg = item.momentum_day_pct or 0.0
        if session_chg > SENTIMENT_EPSILON:
            bullish_weight += w
            adv += 1
        elif session_chg < -SENTIMENT_EPSILON:
            bearish_weight += w
            dec += 1
        total_weight += w
        weighted_strength += (item.net_strength_day or 0.0) * w

    overall_sent = (bullish_weight - bearish_weight) / total_weight * 100 if total_weight > 0 else 0.0
    stock_sent = weighted_strength / total_weight if total_weight > 0 else 0.0

    sides = {
        side: {"buy_now": 0.0, "buy_base": 0.0, "sell_now": 0.0, "sell_base": 0.0, "oi": 0.0}
        for side in ("CE", "PE")
    }
    for item in options:
        side = _option_side(item.symbol)
        if side is None:
            continue
        q = item.quote
        buy_now = q.total_buy_qty or 0.0
        sell_now = q.total_sell_qty or 0.0
        flows = sides[side]
        flows["buy_now"] += buy_now
        flows["sell_now"] += sell_now
        flows["buy_base"] += item.initial_total_buy_qty if item.initial_total_buy_qty is not None else buy_now
        flows["sell_base"] += item.initial_total_sell_qty if item.initial_total_sell_qty is not None else sell_now
        flows["oi"] += q.oi or 0.0

    calls, puts = sides["CE"], sides["PE"]
    call_sent = _side_sentiment(calls)
    put_sent = _side_sentiment(puts)
    pcr = puts["oi"] / calls["oi"] if calls["oi"] > 0 else 0.0

    now_ist = to_ist(now)
    return MarketSnapshot(
        time=now_ist.strftime("%H:%M:%S"),
        timestamp=now_ist.timestamp(),
        nifty_ltp=_safe_float(index_ltp) or 0.0,
        pts_chg=_safe_float(index_pts_change) or 0.0,
        overall_sent=float(overall_sent),
        adv=adv,
        dec=dec,
        stock_sent=float(stock_sent),
        call_sent=call_sent,
        put_sent=put_sent,
        pcr=float(pcr),
        options_sent=call_sent - put_sent,
        calls_buy_qty=calls["buy_now"] - calls["buy_base"],
        calls_sell_qty=calls["sell_now"] - calls["sell_base"],
        puts_buy_qty=puts["buy_now"] - puts["buy_base"],
        puts_sell_qty=puts["sell_now"] - puts["sell_base"],
    )


def top_index_movers(equities: Sequence[EnrichedQuote], count: int = 5) -> tuple[list[EnrichedQuote], list[EnrichedQuote]]:
    ordered = sorted(equities, key=lambda item: item.index_contribution or 0.0, reverse=True)
    lifters = [item for item in ordered[:count] if (item.index_contribution or 0.0) > 0]
    draggers = [item for item in reversed(ordered) if (item.index_contribution or 0.0) < 0][:count]
    return lifters, draggers


def _classify_score(score: float, effective_minutes: float) -> tuple[str, str]:
    if score > 40:
        return STRONG_BUY, f"Aggressive momentum in last {effective_minutes:.1f}m."
    if score > 15:
        return BULLISH, "Positive flow and price action."
    if score < -40:
        return STRONG_SELL, f"Heavy selling pressure in last {effective_minutes:.1f}m."
    if score < -15:
        return BEARISH, "Negative flow and price action."
    return NEUTRAL, "Consolidation within this timeframe."


def is_divergent(price_delta: float, flow_delta: float) -> bool:
    return (price_delta > 5 and flow_delta < -50_000) or (price_delta < -5 and flow_delta > 50_000)


def decide(history: Sequence[MarketSnapshot], window_minutes: float) -> Decision | None:
    """Score the move across ``window_minutes`` of snapshot history.

    The past reference is the newest snapshot at least ``window_minutes`` old.
    When the log is shorter than the window the oldest snapshot is used and
    the shorter effective window is reported with ``used_fallback=True``.
    """
    if len(history) < 2:
        return None

    current = history[-1]
    past_index = 0
    effective = (current.timestamp - history[0].timestamp) / 60.0
    used_fallback = True
    for i in range(len(history) - 2, -1, -1):
        age = (current.timestamp - history[i].timestamp) / 60.0
        if age >= window_minutes:
            past_index = i
            effective = age
            used_fallback = False
            break

    past = history[past_index]
    price_delta = current.nifty_ltp - past.nifty_ltp
    flow_delta = current.net_option_flow - past.net_option_flow

    avg_sentiment = float(np.mean([s.overall_sent for s in history[past_index:]]))
    sentiment_trend = current.overall_sent - avg_sentiment

    price_score = float(np.clip(price_delta * 2, -50, 50))
    flow_score = float(np.clip(flow_delta / 100_000 * 2, -50, 50))
    if sentiment_trend > 0:
        breadth_scalar = 1.2
    elif sentiment_trend < 0:
        breadth_scalar = 0.8
    else:
        breadth_scalar = 1.0
    score = (price_score + flow_score) * breadth_scalar

    prediction, description = _classify_score(score, effective)
    divergence = is_divergent(price_delta, flow_delta)
    if divergence:
        prediction = TRAP_DIVERGENCE
        if price_delta > 0:
            description = "Price rising but Option Flow is Bearish."
        else:
            description = "Price falling but Option Flow is Bullish."

    return Decision(
        prediction=prediction,
        description=description,
        score=score,
        price_delta=price_delta,
        flow_delta=flow_delta,
        sentiment_trend=sentiment_trend,
        divergence=divergence,
        requested_window_min=float(window_minutes),
        effective_window_min=effective,
        used_fallback=used_fallback,
    )
