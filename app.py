"""
app.py
Streamlit dashboard for the sUSDe term spread.

Layout
------
Sidebar : lookback window, forward horizon, Resync button, store totals
Header  : title + latest snapshot / spread dates
Row 1   : Regime card + front / back / spread metric cards
Row 2   : Term structure curve on the latest snapshot date
Row 3   : Spread history (raw + 7d smoothed) vs spot price
Row 4   : Decile analysis + forward-return scatter
Row 5   : Spread vs realized volatility
Row 6   : Spread distribution + regime breakdown
Row 7   : Sync log
"""

from datetime import datetime, timedelta, timezone

import streamlit as st
import pandas as pd
import plotly.graph_objects as go
from plotly.subplots import make_subplots

# ── Page config (must be first Streamlit call) ──────────────────────────────
st.set_page_config(
    page_title="sUSDe Term Spread",
    page_icon="📈",
    layout="wide",
    initial_sidebar_state="expanded",
)

# ── Imports from project modules ────────────────────────────────────────────
from external_data.storage import PATHS, Store, get_meta
from external_data.update import run_full_sync
from term_structure import build_term_structure
from regime import latest_classification, regime_breakdown
from analytics import (
    FORWARD_HORIZON_DAYS, MIN_DECILE_SAMPLE, compute_deciles, forward_return_scatter,
    price_map, spread_histogram, spread_statistics, spread_volatility_series,
)
from ui_components import SHAPE_COLORS, legend, metric_card, pill, section_title, shape_label

# ──────────────────────────────────────────────────────────────────────────────
# Custom CSS
# ──────────────────────────────────────────────────────────────────────────────
st.markdown(
    """
    <style>
    html, body, [data-testid="stAppViewContainer"] {
        background-color: #0d1117;
        color: #e6edf3;
        font-family: 'Inter', sans-serif;
    }
    .summary-metric-card {
        background: #161b22;
        border: 1px solid #30363d;
        border-radius: 12px;
        padding: 14px 18px;
        margin-bottom: 8px;
    }
    .summary-metric-label {
        color:#8b949e; font-size:0.72rem;
        text-transform:uppercase; letter-spacing:1.5px;
    }
    .summary-metric-value { font-size:1.5rem; font-weight:700; }
    .summary-metric-sub   { color:#8b949e; font-size:0.78rem; }
    .regime-pill {
        display:inline-block; padding:6px 20px;
        background:#161b22; font-weight:800; font-size:1.2rem;
        border-radius:50px; border:1px solid; letter-spacing:1px;
    }
    .section-title {
        color:#8b949e; font-size:0.75rem;
        text-transform:uppercase; letter-spacing:2px;
        margin-bottom:4px;
    }
    hr { border-color:#21262d; }
    [data-testid="stDataFrame"] { border-radius:10px; overflow:hidden; }
    </style>
    """,
    unsafe_allow_html=True,
)

CHART_LAYOUT = dict(
    template="plotly_dark",
    paper_bgcolor="#0d1117", plot_bgcolor="#0d1117",
    margin=dict(l=10, r=10, t=40, b=10),
    legend=dict(orientation="h", yanchor="bottom", y=1.01, xanchor="right", x=1, font=dict(size=11)),
)


# ──────────────────────────────────────────────────────────────────────────────
# Store handle + cached reads
# ──────────────────────────────────────────────────────────────────────────────

@st.cache_resource
def get_store() -> Store:
    return Store()


@st.cache_data(ttl=3600, show_spinner=False)
def load_spreads() -> pd.DataFrame:
    return get_store().spreads_with_prices()


@st.cache_data(ttl=3600, show_spinner=False)
def load_prices() -> pd.DataFrame:
    return get_store().prices()


@st.cache_data(ttl=3600, show_spinner=False)
def load_term_structure(target: str) -> dict:
    ts = build_term_structure(get_store(), target)
    spread = ts["spread"]
    return {**ts, "spread": spread.to_dict() if spread is not None else None}


@st.cache_data(ttl=3600, show_spinner=False)
def load_classification(target: str):
    return latest_classification(get_store(), target)


def _pct(value, digits: int = 2, signed: bool = False) -> str:
    if value is None or pd.isna(value):
        return "—"
    return f"{value * 100:+.{digits}f}%" if signed else f"{value * 100:.{digits}f}%"


# ──────────────────────────────────────────────────────────────────────────────
# Sidebar
# ──────────────────────────────────────────────────────────────────────────────

def build_sidebar() -> tuple[int, int]:
    """Render sidebar controls and return (lookback_days, horizon_days)."""
    st.sidebar.markdown("## View")
    lookback = st.sidebar.selectbox(
        "Spread history window",
        options=[90, 180, 365, 730, 0],
        index=2,
        format_func=lambda d: "All" if d == 0 else f"{d} days",
    )
    horizon = st.sidebar.slider("Forward return horizon (days)", 30, 180, FORWARD_HORIZON_DAYS, 15)

    st.sidebar.markdown("---")
    st.sidebar.markdown("## Data")
    if st.sidebar.button("Resync all sources"):
        with st.spinner("Fetching Pendle · DefiLlama · Ethena · spot price…"):
            try:
                result = run_full_sync(get_store())
            except Exception as e:
                st.sidebar.error(f"Sync failed: {e}")
            else:
                for source, r in result["sources"].items():
                    if r["status"] == "error":
                        st.sidebar.warning(f"{source}: {r['error']}")
                st.cache_data.clear()
                st.rerun()

    stats = get_store().stats()
    st.sidebar.caption(
        f"{stats['markets']} markets · {stats['snapshots']:,} snapshots · "
        f"{stats['term_spreads']:,} spread days · {stats['spot_prices']:,} prices"
    )
    meta = get_meta(PATHS.merged_daily())
    if meta:
        st.sidebar.caption(
            f"Last export {meta['last_updated_utc'][:16].replace('T', ' ')} UTC · {meta['row_count']:,} days"
        )
    return lookback, horizon


# ──────────────────────────────────────────────────────────────────────────────
# Chart helpers
# ──────────────────────────────────────────────────────────────────────────────

def build_curve_chart(maturities: list[dict], date_str: str) -> go.Figure:
    df = pd.DataFrame(maturities)
    live = df[df["days_to_maturity"] > 0]
    fig = go.Figure()
    fig.add_trace(go.Scatter(
        x=live["maturity"], y=live["implied_yield"] * 100, name="Implied yield",
        mode="lines+markers", line=dict(color="#69f0ae", width=2),
        marker=dict(size=9), text=live["days_to_maturity"].map(lambda d: f"{d}d to maturity"),
    ))
    if live["underlying_yield"].notna().any():
        fig.add_trace(go.Scatter(
            x=live["maturity"], y=live["underlying_yield"] * 100, name="Underlying yield",
            mode="lines+markers", line=dict(color="#58a6ff", width=1.5, dash="dash"),
        ))
    fig.update_layout(
        **CHART_LAYOUT, height=320,
        title=dict(text=f"Term Structure on {date_str}", font=dict(size=13)),
        yaxis=dict(ticksuffix="%"),
    )
    return fig


def build_spread_chart(df: pd.DataFrame) -> go.Figure:
    x = pd.to_datetime(df["date"])
    fig = make_subplots(specs=[[{"secondary_y": True}]])
    fig.add_trace(go.Scatter(
        x=x, y=df["spread"] * 100, name="Spread",
        line=dict(color="#8b949e", width=1), opacity=0.7), secondary_y=False)
    fig.add_trace(go.Scatter(
        x=x, y=df["spread_smoothed"] * 100, name="Spread (7d MA)",
        line=dict(color="#69f0ae", width=2)), secondary_y=False)
    fig.add_trace(go.Scatter(
        x=x, y=df["price"], name="Spot price",
        line=dict(color="#f0a500", width=1.2), connectgaps=False), secondary_y=True)
    fig.add_hline(y=0, line_dash="dot", line_color="rgba(255,255,255,0.35)")
    fig.update_layout(
        **CHART_LAYOUT, height=380,
        title=dict(text="Term Spread (back − front) vs Spot Price", font=dict(size=13)),
    )
    fig.update_yaxes(ticksuffix="%", secondary_y=False)
    fig.update_yaxes(tickprefix="$", tickformat=",.0f", secondary_y=True, showgrid=False)
    return fig


def build_decile_chart(bins: list) -> go.Figure:
    labels = [f"D{b.index + 1}<br>{b.spread_low * 100:.2f}…{b.spread_high * 100:.2f}%" for b in bins]
    values = [b.average_forward_return * 100 if b.average_forward_return is not None else None for b in bins]
    colors = ["#69f0ae" if (v or 0) >= 0 else "#ff5252" for v in values]
    fig = go.Figure(go.Bar(
        x=labels, y=values, marker_color=colors,
        text=[f"{b.resolved_count}/{b.observation_count}" for b in bins], textposition="outside",
    ))
    fig.update_layout(
        **CHART_LAYOUT, height=340, showlegend=False,
        title=dict(text="Average Forward Return by Spread Decile", font=dict(size=13)),
        yaxis=dict(ticksuffix="%"),
    )
    return fig


def build_scatter_chart(df: pd.DataFrame) -> go.Figure:
    fig = go.Figure(go.Scatter(
        x=df["spread"] * 100, y=df["forward_return"] * 100, mode="markers",
        marker=dict(size=6, color="#58a6ff", opacity=0.6), text=df["date"],
    ))
    fig.update_layout(
        **CHART_LAYOUT, height=340, showlegend=False,
        title=dict(text="Spread vs Forward Return", font=dict(size=13)),
        xaxis=dict(title="Spread", ticksuffix="%"),
        yaxis=dict(title="Forward return", ticksuffix="%"),
    )
    return fig


def build_vol_chart(df: pd.DataFrame) -> go.Figure:
    x = pd.to_datetime(df["date"])
    fig = make_subplots(specs=[[{"secondary_y": True}]])
    fig.add_trace(go.Scatter(
        x=x, y=df["spread_signal"] * 100, name="Spread (7d MA)",
        line=dict(color="#69f0ae", width=2)), secondary_y=False)
    fig.add_trace(go.Scatter(
        x=x, y=df["realized_vol"] * 100, name="30d realized vol",
        line=dict(color="#d2a8ff", width=1.5), connectgaps=False), secondary_y=True)
    fig.update_layout(
        **CHART_LAYOUT, height=320,
        title=dict(text="Spread vs Realized Volatility", font=dict(size=13)),
    )
    fig.update_yaxes(ticksuffix="%", secondary_y=False)
    fig.update_yaxes(ticksuffix="%", secondary_y=True, showgrid=False)
    return fig


def build_histogram_chart(hist: pd.DataFrame) -> go.Figure:
    colors = ["#69f0ae" if m > 0 else "#ff5252" if m < 0 else "#8b949e" for m in hist["mid"]]
    fig = go.Figure(go.Bar(
        x=hist["mid"] * 100, y=hist["count"], width=(hist["high"] - hist["low"]) * 100 * 0.95,
        marker_color=colors,
    ))
    fig.update_layout(
        **CHART_LAYOUT, height=300, showlegend=False,
        title=dict(text="Spread Distribution", font=dict(size=13)),
        xaxis=dict(ticksuffix="%"),
    )
    return fig


# ──────────────────────────────────────────────────────────────────────────────
# Dashboard layout
# ──────────────────────────────────────────────────────────────────────────────

def render_regime_row(ts: dict, classification) -> None:
    spread = ts["spread"]
    col_reg, col_m = st.columns([2, 4])

    with col_reg:
        st.markdown(section_title("Current Regime"), unsafe_allow_html=True)
        if classification is None:
            st.info("No spread computed yet.")
        else:
            color = SHAPE_COLORS.get(classification.shape, "#8b949e")
            st.markdown(pill(shape_label(classification.shape), color), unsafe_allow_html=True)
            st.markdown(
                f'<p style="margin-top:10px;">{classification.description}</p>'
                f'<p style="color:#8b949e;font-size:0.85rem;">{classification.outlook}</p>',
                unsafe_allow_html=True,
            )

    with col_m:
        if spread is None:
            return
        single = spread["maturity_count"] == 1
        cards = [
            ("Front yield", _pct(spread["front_implied_yield"]), "", spread["front_maturity"]),
            ("Back yield", _pct(spread["back_implied_yield"]), "", spread["back_maturity"]),
            ("Spread", _pct(spread["spread"], signed=True),
             SHAPE_COLORS.get(classification.shape, "") if classification else "",
             "single maturity" if single else f"{spread['maturity_count']} maturities"),
            ("Spread 7d MA", _pct(spread["spread_smoothed"], signed=True), "", ""),
            ("Underlying yield", _pct(spread["underlying_yield"]), "", "front leg"),
            ("P(fwd return > 0)",
             f"{classification.probability_positive_forward:.1f}%" if classification else "—",
             "", "heuristic"),
        ]
        cols = st.columns(3)
        for i, (label, value, color, sub) in enumerate(cards):
            with cols[i % 3]:
                st.markdown(metric_card(label, value, color, sub), unsafe_allow_html=True)


def main():
    lookback, horizon = build_sidebar()
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

    spreads = load_spreads()
    ts = load_term_structure(today)

    # ── Header ───────────────────────────────────────────────────────────────
    col_title, col_time = st.columns([3, 1])
    with col_title:
        st.markdown("## sUSDe Term Spread")
        st.markdown(
            section_title("Pendle sUSDe maturities · back − front implied yield · 7d smoothing"),
            unsafe_allow_html=True,
        )
    with col_time:
        st.markdown(
            f'<p style="text-align:right;color:#8b949e;margin-top:18px;">'
            f'Latest snapshot<br><b style="color:#e6edf3">{ts["date"]}</b></p>',
            unsafe_allow_html=True,
        )

    if spreads.empty and not ts["maturities"]:
        st.info("No data yet. Use **Resync all sources** in the sidebar or run `python -m external_data.update`.")
        st.stop()

    st.markdown("---")

    # ── Regime + metrics ─────────────────────────────────────────────────────
    render_regime_row(ts, load_classification(today))
    legend()

    st.markdown("---")

    # ── Term structure curve ─────────────────────────────────────────────────
    if ts["maturities"]:
        st.plotly_chart(build_curve_chart(ts["maturities"], ts["date"]), use_container_width=True)
        with st.expander("Maturities on this date"):
            st.dataframe(pd.DataFrame(ts["maturities"]), use_container_width=True)

    # ── Spread history ───────────────────────────────────────────────────────
    view = spreads
    if lookback and not spreads.empty:
        cutoff = (pd.Timestamp(spreads["date"].iloc[-1]) - timedelta(days=lookback)).strftime("%Y-%m-%d")
        view = spreads[spreads["date"] >= cutoff]
    if not view.empty:
        st.plotly_chart(build_spread_chart(view), use_container_width=True)

    st.markdown("---")

    # ── Deciles + scatter ────────────────────────────────────────────────────
    prices = load_prices()
    pmap = price_map(prices)
    st.markdown(f"### Forward Returns ({horizon}d)")
    col_dec, col_sc = st.columns(2)
    with col_dec:
        bins = compute_deciles(spreads, pmap, horizon_days=horizon)
        if not bins:
            st.info(f"Decile analysis needs at least {MIN_DECILE_SAMPLE} spread observations "
                    f"(have {len(spreads)}).")
        else:
            st.plotly_chart(build_decile_chart(bins), use_container_width=True)
    with col_sc:
        scatter = forward_return_scatter(spreads, pmap, horizon_days=horizon)
        if scatter.empty:
            st.info("No spread dates with a resolvable forward price yet.")
        else:
            st.plotly_chart(build_scatter_chart(scatter), use_container_width=True)

    # ── Volatility ───────────────────────────────────────────────────────────
    vol = spread_volatility_series(spreads, prices)
    if not vol.empty and vol["realized_vol"].notna().any():
        st.plotly_chart(build_vol_chart(vol), use_container_width=True)
    else:
        st.info("Realized volatility needs 31 consecutive daily prices.")

    st.markdown("---")

    # ── Distribution + breakdown ─────────────────────────────────────────────
    col_hist, col_brk = st.columns([3, 2])
    with col_hist:
        hist = spread_histogram(spreads["spread"]) if not spreads.empty else pd.DataFrame()
        if hist.empty:
            st.info("No spread observations.")
        else:
            st.plotly_chart(build_histogram_chart(hist), use_container_width=True)
            stats = spread_statistics(spreads["spread"])
            st.caption(
                f"Mean {_pct(stats['mean'], signed=True)} · σ {_pct(stats['std'])} · "
                f"range {_pct(stats['min'], signed=True)} … {_pct(stats['max'], signed=True)} · "
                f"{stats['contango']} contango / {stats['flat']} flat / {stats['backwardation']} backwardation days"
            )
    with col_brk:
        st.markdown("### Regime Breakdown")
        multi = spreads[spreads["maturity_count"] >= 2] if not spreads.empty else spreads
        brk = regime_breakdown(multi["spread"] if not multi.empty else pd.Series(dtype=float))
        brk["shape"] = brk["shape"].map(shape_label)
        st.dataframe(
            brk.style.format({"share": "{:.1%}"}),
            use_container_width=True, hide_index=True,
        )

    # ── Sync log ─────────────────────────────────────────────────────────────
    st.markdown("---")
    st.markdown("### Sync Log")
    log = get_store().sync_log(limit=20)
    if log.empty:
        st.info("No sync has run yet.")
    else:
        st.dataframe(log, use_container_width=True, hide_index=True, height=260)

    # ── Footer ────────────────────────────────────────────────────────────────
    st.markdown(
        '<p style="color:#484f58;font-size:0.75rem;text-align:center;">'
        "sUSDe Term Spread · Research & educational purposes only · Not financial advice."
        "</p>",
        unsafe_allow_html=True,
    )


if __name__ == "__main__":
    main()
