from __future__ import annotations

import html
import time

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import streamlit as st
from plotly.subplots import make_subplots

from history_store import describe_history
from market_engine import (
    DECISION_WINDOWS,
    Decision,
    EnrichedQuote,
    MarketSnapshot,
    get_session_progress,
    short_name_for,
    top_index_movers,
)
from pulse_pipeline import CycleResult, MarketPulsePipeline, build_pipeline
from settings import PulseSettings, configure_logging, load_settings


st.set_page_config(
    page_title="Nifty Pulse",
    page_icon="chart_with_upwards_trend",
    layout="wide",
)

SIGNAL_COLORS = {
    "STRONG BUY": "#44d47e",
    "BULLISH": "#7be0a6",
    "NEUTRAL": "#f6cd61",
    "BEARISH": "#ff9a8a",
    "STRONG SELL": "#ff6b6b",
    "TRAP/DIVERGENCE": "#ffa64d",
}

EQUITY_COLUMNS = {
    "short_name": "Symbol",
    "lp": "LTP",
    "momentum_1m_pct": "1m %",
    "momentum_day_pct": "Sess %",
    "chp": "Day %",
    "volume": "Vol",
    "total_buy_qty": "Total Bid",
    "total_sell_qty": "Total Ask",
    "bid_qty_chg_1m_pct": "Bid 1m %",
    "ask_qty_chg_1m_pct": "Ask 1m %",
    "net_strength_1m": "1m Net %",
    "net_strength_day": "Day Net %",
    "weight": "Weight",
    "index_contribution": "Impact",
}

OPTION_COLUMNS = {
    "symbol": "Symbol",
    "lp": "LTP",
    "momentum_1m_pct": "1m %",
    "momentum_day_pct": "Sess %",
    "oi": "OI",
    "total_buy_qty": "Total Bid",
    "total_sell_qty": "Total Ask",
    "bid_qty_chg_day_pct": "Bid Day %",
    "ask_qty_chg_day_pct": "Ask Day %",
    "net_strength_1m": "1m Net %",
    "net_strength_day": "Day Net %",
}


def _inject_css() -> None:
    st.markdown(
        """
        <style>
        html, body, [data-testid="stAppViewContainer"] {
            background: linear-gradient(170deg, #06111f 0%, #081a2e 45%, #0a2036 100%);
            color: #e8f1ff;
        }
        [data-testid="stHeader"] { background: rgba(0,0,0,0); }
        [data-testid="stSidebar"] {
            background: linear-gradient(180deg, #071222 0%, #0a1b30 100%);
            border-right: 1px solid rgba(126, 163, 204, 0.25);
        }
        .mono {
            font-family: "IBM Plex Mono", monospace;
            letter-spacing: 0.02em;
            font-size: 0.86rem;
        }
        .panel {
            background: rgba(10, 24, 43, 0.9);
            border: 1px solid rgba(125, 165, 208, 0.28);
            border-radius: 14px;
            padding: 18px 20px;
            margin: 0 0 18px 0;
        }
        .signal {
            font-family: "IBM Plex Mono", monospace;
            font-size: 2.6rem;
            font-weight: 800;
            letter-spacing: 0.01em;
        }
        .banner-error {
            border: 1px solid rgba(255, 96, 96, 0.6);
            border-radius: 10px;
            padding: 9px 12px;
            margin: 0 0 12px 0;
            background: rgba(80, 16, 16, 0.45);
        }
        </style>
        """,
        unsafe_allow_html=True,
    )


@st.cache_resource(show_spinner=False)
def _get_pipeline(_settings: PulseSettings) -> MarketPulsePipeline:
    return build_pipeline(_settings)


def _fmt_qty(value: float) -> str:
    absval = abs(value)
    if absval >= 10_000_000:
        return f"{value / 10_000_000:.2f} Cr"
    if absval >= 100_000:
        return f"{value / 100_000:.2f} L"
    return f"{value:,.0f}"


def _apply_chart_theme(fig: go.Figure, height: int = 320) -> go.Figure:
    fig.update_layout(
        paper_bgcolor="rgba(0,0,0,0)",
        plot_bgcolor="rgba(0,0,0,0)",
        font=dict(color="#ffffff", family="Space Grotesk", size=13),
        legend=dict(orientation="h", y=1.14, x=0, font=dict(color="#ffffff", size=12)),
        margin=dict(l=0, r=20, t=40, b=10),
        height=height,
    )
    fig.update_xaxes(color="#ffffff", gridcolor="rgba(140,170,205,0.18)")
    fig.update_yaxes(color="#ffffff", gridcolor="rgba(140,170,205,0.18)")
    return fig


def _gauge(value: float, title: str, low: float, high: float, suffix: str = "") -> go.Figure:
    span = high - low
    fig = go.Figure(
        go.Indicator(
            mode="gauge+number",
            value=float(np.clip(value, low, high)),
            number={"suffix": suffix, "font": {"color": "#ffffff", "size": 30}},
            title={"text": title, "font": {"color": "#ffffff", "size": 16}},
            gauge={
                "axis": {"range": [low, high], "tickcolor": "#ffffff"},
                "bgcolor": "rgba(0,0,0,0)",
                "bar": {"color": "#34c18f"},
                "steps": [
                    {"range": [low, low + span * 0.35], "color": "rgba(255,107,107,0.32)"},
                    {"range": [low + span * 0.35, low + span * 0.65], "color": "rgba(246,205,97,0.27)"},
                    {"range": [low + span * 0.65, high], "color": "rgba(68,212,126,0.30)"},
                ],
            },
        )
    )
    return _apply_chart_theme(fig, height=240)


def _history_chart(history_df: pd.DataFrame) -> go.Figure:
    if history_df.empty:
        return go.Figure()

    fig = make_subplots(specs=[[{"secondary_y": True}]])
    fig.add_trace(
        go.Scatter(
            x=history_df["timestamp_ist"],
            y=history_df["nifty_ltp"],
            mode="lines",
            name="NIFTY",
            line=dict(color="#ffcb6d", width=2),
        ),
        secondary_y=False,
    )
    fig.add_trace(
        go.Scatter(
            x=history_df["timestamp_ist"],
            y=history_df["overall_sent"],
            mode="lines",
            name="Breadth Sent.",
            line=dict(color="#59d39a", width=2),
        ),
        secondary_y=True,
    )
    fig.add_trace(
        go.Scatter(
            x=history_df["timestamp_ist"],
            y=history_df["options_sent"],
            mode="lines",
            name="Options Sent.",
            line=dict(color="#7db3ff", width=1.7, dash="dot"),
        ),
        secondary_y=True,
    )
    fig.update_yaxes(title_text="NIFTY", secondary_y=False)
    fig.update_yaxes(title_text="Sentiment %", secondary_y=True, showgrid=False)
    fig.update_layout(title="Session Trace")
    return _apply_chart_theme(fig, height=360)


def _flow_chart(history_df: pd.DataFrame) -> go.Figure:
    if history_df.empty:
        return go.Figure()
    colors = ["#42d680" if x >= 0 else "#ff6f6f" for x in history_df["net_option_flow"]]
    fig = go.Figure(
        go.Bar(
            x=history_df["timestamp_ist"],
            y=history_df["net_option_flow"],
            marker=dict(color=colors),
            name="Net option flow",
        )
    )
    fig.update_layout(title="Net Option Flow (session delta)")
    return _apply_chart_theme(fig, height=260)


def _movers_chart(lifters: list[EnrichedQuote], draggers: list[EnrichedQuote]) -> go.Figure:
    rows = [(item.short_name, item.index_contribution or 0.0) for item in lifters + draggers]
    if not rows:
        return go.Figure()
    df = pd.DataFrame(rows, columns=["name", "impact"]).sort_values("impact", ascending=True)
    fig = go.Figure(
        go.Bar(
            x=df["impact"],
            y=df["name"],
            orientation="h",
            marker=dict(color=["#42d680" if x >= 0 else "#ff6f6f" for x in df["impact"]]),
            text=[f"{x:+.2f}" for x in df["impact"]],
            textposition="outside",
        )
    )
    fig.update_layout(title="Index Movers (Sess % x Weight)")
    return _apply_chart_theme(fig, height=340)


def _render_header(pipeline: MarketPulsePipeline, result: CycleResult | None) -> None:
    st.title("Nifty Pulse")
    source = pipeline.source.name.upper()
    last = pipeline.last_success.strftime("%H:%M:%S IST") if pipeline.last_success else "--:--:--"
    session = get_session_progress(bypass=pipeline.bypass_market_hours)
    st.markdown(
        f"<div class='mono'>Source: {source} | Session: {session.label} | "
        f"Elapsed: {session.elapsed_minutes}m ({session.progress * 100:.0f}%) | Last update: {last}</div>",
        unsafe_allow_html=True,
    )
    st.progress(float(session.progress))
    if result is None:
        return
    if result.status == "error":
        st.markdown(
            f"<div class='banner-error'>{html.escape(result.message or 'Fetch failed')} Retrying on the next poll.</div>",
            unsafe_allow_html=True,
        )
    elif result.status == "closed":
        st.info(result.message or "Market is closed.")


def _render_snapshot_metrics(snapshot: MarketSnapshot) -> None:
    cols = st.columns(6)
    with cols[0]:
        st.metric("NIFTY", f"{snapshot.nifty_ltp:,.2f}", delta=f"{snapshot.pts_chg:+.2f} pts")
    with cols[1]:
        st.metric("Breadth Sent.", f"{snapshot.overall_sent:+.1f}%", delta=f"{snapshot.adv} adv / {snapshot.dec} dec")
    with cols[2]:
        st.metric("Stock Sent.", f"{snapshot.stock_sent:+.1f}%")
    with cols[3]:
        st.metric("Call / Put Sent.", f"{snapshot.call_sent:+.1f}% / {snapshot.put_sent:+.1f}%")
    with cols[4]:
        st.metric("Options Sent.", f"{snapshot.options_sent:+.1f}%")
    with cols[5]:
        st.metric("PCR", f"{snapshot.pcr:.2f}")


def _render_decision_panel(decision: Decision | None, window: int) -> None:
    st.subheader("Decision Engine")
    if decision is None:
        st.info("Waiting for at least two snapshots.")
        return

    label = f"{decision.effective_window_min:.1f}m" if decision.used_fallback else f"{window}m"
    color = SIGNAL_COLORS.get(decision.prediction, "#ffffff")
    st.markdown(f"<div class='mono'>Window: {label}</div>", unsafe_allow_html=True)
    st.markdown(
        f"<div class='signal' style='color:{color}'>{html.escape(decision.prediction)}</div>",
        unsafe_allow_html=True,
    )
    st.markdown(html.escape(decision.description))
    if decision.used_fallback:
        st.caption(
            f"History covers only {decision.effective_window_min:.1f} of the requested {window} minutes."
        )

    c1, c2, c3, c4 = st.columns(4)
    with c1:
        st.metric("Score", f"{decision.score:+.1f}")
    with c2:
        st.metric("Price Δ", f"{decision.price_delta:+.2f}")
    with c3:
        st.metric("Flow Δ", _fmt_qty(decision.flow_delta))
    with c4:
        st.metric("Breadth Trend", f"{decision.sentiment_trend:+.1f}")


def _quote_table(quotes: list[EnrichedQuote], columns: dict[str, str]) -> pd.DataFrame:
    if not quotes:
        return pd.DataFrame(columns=list(columns.values()))
    df = pd.DataFrame([item.to_row() for item in quotes])
    if "short_name" in columns:
        df["short_name"] = [item.short_name for item in quotes]
    return df[[col for col in columns if col in df]].rename(columns=columns)


def _render_history_panel(pipeline: MarketPulsePipeline) -> None:
    store = pipeline.store
    history_df = store.snapshot_frame()
    st.subheader("Sentiment History")
    if history_df.empty:
        st.info("History will populate after a few poll cycles.")
        return

    st.plotly_chart(_history_chart(history_df), width="stretch")
    st.plotly_chart(_flow_chart(history_df), width="stretch")

    view = history_df.iloc[::-1]
    view = view[
        ["time", "nifty_ltp", "pts_chg", "overall_sent", "stock_sent", "call_sent", "put_sent", "pcr", "options_sent"]
    ]
    st.dataframe(view.head(60).round(2), width="stretch", hide_index=True)
    st.download_button(
        "Export history CSV",
        data=store.export_snapshots_csv(),
        file_name=f"nifty_pulse_{store.trade_date or 'history'}.csv",
        mime="text/csv",
    )


def _instrument_chart(candles: pd.DataFrame, title: str) -> go.Figure:
    if candles.empty:
        return go.Figure()

    fig = make_subplots(specs=[[{"secondary_y": True}]])
    fig.add_trace(
        go.Scatter(
            x=candles["time"],
            y=candles["lp"],
            mode="lines",
            name="LTP",
            line=dict(color="#ffcb6d", width=2),
        ),
        secondary_y=False,
    )
    fig.add_trace(
        go.Bar(
            x=candles["time"],
            y=candles["net_strength_1m"],
            name="1m Net %",
            marker=dict(color=["#42d680" if (x or 0) >= 0 else "#ff6f6f" for x in candles["net_strength_1m"]]),
            opacity=0.55,
        ),
        secondary_y=True,
    )
    fig.update_yaxes(title_text="LTP", secondary_y=False)
    fig.update_yaxes(title_text="Net strength %", secondary_y=True, showgrid=False)
    fig.update_layout(title=title)
    return _apply_chart_theme(fig, height=340)


def _render_instrument_panel(pipeline: MarketPulsePipeline) -> None:
    store = pipeline.store
    symbols = sorted(store.session_candles())
    st.subheader("Instrument Detail")
    if not symbols:
        st.info("Per-minute candles appear after the first successful poll.")
        return

    symbol = st.selectbox("Instrument", symbols, format_func=short_name_for)
    candles = store.candle_frame(symbol)
    st.plotly_chart(_instrument_chart(candles, short_name_for(symbol)), width="stretch")
    view = candles[["time", "lp", "day_pct", "momentum_1m_pct", "bid_qty_chg_1m", "ask_qty_chg_1m", "net_strength_day"]]
    st.dataframe(view.iloc[::-1].round(2), width="stretch", hide_index=True)


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    _inject_css()

    st.sidebar.header("Controls")
    auto_refresh = st.sidebar.toggle("Auto refresh", value=True)
    refresh_seconds = st.sidebar.slider(
        "Page refresh (sec)", min_value=10, max_value=300, value=max(10, min(300, settings.poll_seconds)), step=10
    )
    default_window = settings.decision_window_min if settings.decision_window_min in DECISION_WINDOWS else 5
    window = st.sidebar.selectbox(
        "Decision window (min)", DECISION_WINDOWS, index=DECISION_WINDOWS.index(default_window)
    )
    manual_refresh = st.sidebar.button("Refresh now")
    clear_history = st.sidebar.button("Clear today's history")

    pipeline = _get_pipeline(settings)
    if clear_history:
        pipeline.reset_history()

    # one poll per configured interval no matter how many sessions rerun the script
    result = pipeline.poll_if_due(settings.poll_seconds, force=manual_refresh) or pipeline.last_result

    status = describe_history(pipeline.store)
    st.sidebar.markdown(
        f"<div class='mono'>Day {status['trade_date']} | {status['snapshots']} snapshots | "
        f"{status['instruments']} instruments | poll every {settings.poll_seconds}s</div>",
        unsafe_allow_html=True,
    )
    if settings.bypass_market_hours:
        st.sidebar.caption("Market-hours gate bypassed (PULSE_BYPASS_MARKET_HOURS).")
    if status["last_error"]:
        st.sidebar.warning(f"History write skipped: {status['last_error']}")

    _render_header(pipeline, result)

    latest = pipeline.store.latest_snapshot()
    if latest is not None:
        _render_snapshot_metrics(latest)

    left, right = st.columns([1.6, 1.0])
    with left:
        st.markdown("<div class='panel'>", unsafe_allow_html=True)
        _render_decision_panel(pipeline.decision(window), window)
        st.markdown("</div>", unsafe_allow_html=True)
    with right:
        if latest is not None:
            st.plotly_chart(_gauge(latest.overall_sent, "Weighted Breadth", -100, 100, "%"), width="stretch")

    equities = pipeline.latest_equities
    options = pipeline.latest_options

    lifters, draggers = top_index_movers(equities)
    if lifters or draggers:
        st.plotly_chart(_movers_chart(lifters, draggers), width="stretch")

    stocks_tab, options_tab, history_tab, detail_tab = st.tabs(["Stocks", "Options", "History", "Instrument"])
    with stocks_tab:
        st.dataframe(_quote_table(equities, EQUITY_COLUMNS).round(2), width="stretch", hide_index=True)
    with options_tab:
        st.dataframe(_quote_table(options, OPTION_COLUMNS).round(2), width="stretch", hide_index=True)
    with history_tab:
        _render_history_panel(pipeline)
    with detail_tab:
        _render_instrument_panel(pipeline)

    if auto_refresh:
        st.sidebar.markdown(f"<div class='mono'>Next refresh in {refresh_seconds}s</div>", unsafe_allow_html=True)
        time.sleep(refresh_seconds)
        st.rerun()


if __name__ == "__main__":
    main()
