"""
data_loader.py
Fetches the daily spot price of the reference asset using yfinance and
normalises it into price observations.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import yfinance as yf

logger = logging.getLogger(__name__)

DEFAULT_TICKER = "BTC-USD"
PRICE_COLUMNS  = ["date", "price", "change_24h"]


def normalize_price_history(data: pd.DataFrame) -> pd.DataFrame:
    """
    Turn a yfinance daily OHLCV frame into price observations.

    Returns a DataFrame with columns:
        date        : ISO date
        price       : daily close (> 0)
        change_24h  : close-to-close change as a decimal (NaN for the first row
                      or after a missing day)
    Rows with a missing or non-positive close are dropped.
    """
    if data is None or data.empty:
        return pd.DataFrame(columns=PRICE_COLUMNS)

    # Flatten MultiIndex columns if present (yfinance ≥0.2 behaviour)
    if isinstance(data.columns, pd.MultiIndex):
        data = data.copy()
        data.columns = data.columns.get_level_values(0)

    close = pd.to_numeric(data["Close"], errors="coerce")
    close.index = pd.to_datetime(close.index)
    if close.index.tz is not None:
        close.index = close.index.tz_convert("UTC").tz_localize(None)
    close.index = close.index.normalize()

    n_bad = int((close.isna() | (close <= 0)).sum())
    if n_bad:
        logger.warning("Dropping %d rows with missing or non-positive close.", n_bad)
    close = close[close > 0]
    close = close[~close.index.duplicated(keep="last")].sort_index()

    daily = close.asfreq("D")
    change = (daily / daily.shift(1) - 1).reindex(close.index)

    return pd.DataFrame({
        "date":       close.index.strftime("%Y-%m-%d"),
        "price":      close.to_numpy(dtype=float),
        "change_24h": change.to_numpy(dtype=float),
    }, columns=PRICE_COLUMNS)


def fetch_spot_prices(ticker: str = DEFAULT_TICKER, days: int = 1095) -> pd.DataFrame:
    """
    Download daily closes for *ticker* covering the last *days* days.

    Returns normalised price observations (see normalize_price_history).
    """
    end = datetime.now(timezone.utc) + timedelta(days=1)
    start = end - timedelta(days=days)

    data = yf.download(
        ticker,
        start=start.strftime("%Y-%m-%d"),
        end=end.strftime("%Y-%m-%d"),
        interval="1d",
        progress=False,
        auto_adjust=True,
    )
    if data is None or data.empty:
        raise RuntimeError(
            f"yfinance returned no data for {ticker}. Check your internet connection."
        )
    return normalize_price_history(data)


def run_price_sanity_checks(df: pd.DataFrame) -> dict:
    """
    Pre-flight quality checks on a daily price frame (date, price, change_24h).

    Returns a dict with:
        n_rows            : total observations
        date_range        : first → last date
        n_gaps            : calendar days missing between first and last date
        pct_missing_rows  : % of expected daily slots that are absent
        n_extreme_moves   : |change_24h| > 20%
        price_min / price_max / price_mean
        issues            : list of human-readable warning strings (empty = clean)
    """
    n = len(df)
    if n == 0:
        return {"n_rows": 0, "issues": ["Price frame is empty"]}

    dates = pd.to_datetime(df["date"])
    n_expected  = int((dates.max() - dates.min()).days) + 1
    n_gaps      = max(n_expected - dates.nunique(), 0)
    pct_missing = round(n_gaps / max(n_expected, 1) * 100, 2)

    change = df["change_24h"].astype(float) if "change_24h" in df.columns else pd.Series(np.nan, index=df.index)
    n_extreme = int((change.abs() > 0.20).sum())

    issues: list[str] = []
    if pct_missing > 1.0:
        issues.append(f"{pct_missing:.1f}% of expected daily prices are missing ({n_gaps} gaps)")
    if n_extreme > 0:
        issues.append(f"{n_extreme} days with |24h change| > 20%")
    if (df["price"] <= 0).any():
        issues.append("price <= 0 detected: data quality problem")

    return {
        "n_rows":           n,
        "date_range":       f"{dates.min().date()} → {dates.max().date()}",
        "n_gaps":           n_gaps,
        "pct_missing_rows": pct_missing,
        "n_extreme_moves":  n_extreme,
        "price_min":        round(float(df["price"].min()), 2),
        "price_max":        round(float(df["price"].max()), 2),
        "price_mean":       round(float(df["price"].mean()), 2),
        "issues":           issues,
    }
