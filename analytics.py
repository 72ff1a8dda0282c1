"""
analytics.py
Statistics derived from the stored spread series and the spot price series.

All computations are leakage-aware and gap-tolerant:
- Price lookups accept a date within ±PRICE_TOLERANCE_DAYS when the exact day
  is missing, probing +1, -1, +2, -2, +3, -3 in that order. Nothing beyond the
  tolerance is guessed.
- Insufficient samples return explicit empties (``[]``) or nulls (NaN / None).
- Returns and volatilities are decimal fractions; scale by 100 for display.

Outputs
-------
compute_deciles          : 10 equal-population spread bins with 90d forward returns
forward_return_scatter   : (spread, forward return) per observation
realized_volatility      : trailing 30d annualised vol of daily log returns
spread_volatility_series : spread joined with realized vol per spread date
spread_histogram         : fixed-width distribution of spread observations
spread_statistics        : mean / std / extremes / regime counts
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import date as _date, timedelta
from typing import Mapping, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Default config
PRICE_TOLERANCE_DAYS  = 3
FORWARD_HORIZON_DAYS  = 90
MIN_DECILE_SAMPLE     = 20
N_DECILES             = 10
VOL_WINDOW_DAYS       = 30
ANNUALISATION_DAYS    = 365
HISTOGRAM_STEP        = 0.02     # 2 percentage points of spread
FLAT_BAND             = 0.005    # ±0.5 percentage points


@dataclass
class DecileBin:
    index: int
    spread_low: float
    spread_high: float
    observation_count: int
    average_spread: float
    average_forward_return: Optional[float]
    resolved_count: int

    @property
    def spread_range(self) -> tuple[float, float]:
        return self.spread_low, self.spread_high

    def to_dict(self) -> dict:
        return asdict(self)


def price_map(prices: pd.DataFrame) -> dict[str, float]:
    """{ISO date: price} from a frame with 'date' and 'price' columns (last row wins)."""
    if prices is None or prices.empty:
        return {}
    valid = prices.dropna(subset=["price"])
    return {str(d): float(p) for d, p in zip(valid["date"], valid["price"])}


def _shift(date_str: str, days: int) -> str:
    return (_date.fromisoformat(date_str) + timedelta(days=days)).isoformat()


def find_price(
    prices: Mapping[str, float],
    date_str: str,
    tolerance_days: int = PRICE_TOLERANCE_DAYS,
) -> Optional[float]:
    """
    Price on *date_str*, else the nearest day within the tolerance.

    Probing order is offset ascending, and at each offset the later day is
    tried before the earlier one (+1, -1, +2, -2, ...). Returns None when no
    day within the tolerance carries a price.
    """
    exact = prices.get(date_str)
    if exact is not None:
        return exact
    for offset in range(1, tolerance_days + 1):
        for direction in (1, -1):
            price = prices.get(_shift(date_str, offset * direction))
            if price is not None:
                return price
    return None


def forward_return(
    prices: Mapping[str, float],
    date_str: str,
    horizon_days: int = FORWARD_HORIZON_DAYS,
    tolerance_days: int = PRICE_TOLERANCE_DAYS,
) -> Optional[float]:
    """(future - current) / current over *horizon_days*, or None if unresolvable."""
    current = find_price(prices, date_str, tolerance_days)
    if current is None or current <= 0:
        return None
    future = find_price(prices, _shift(date_str, horizon_days), tolerance_days)
    if future is None:
        return None
    return (future - current) / current


def _observations(spreads: pd.DataFrame) -> pd.DataFrame:
    obs = spreads[["date", "spread"]].dropna(subset=["spread"]).copy()
    obs["date"] = obs["date"].astype(str)
    obs["spread"] = obs["spread"].astype(float)
    return obs


def compute_deciles(
    spreads: pd.DataFrame,
    prices: Mapping[str, float],
    horizon_days: int = FORWARD_HORIZON_DAYS,
    min_sample: int = MIN_DECILE_SAMPLE,
) -> list[DecileBin]:
    """
    Partition spread observations into N_DECILES equal-population bins.

    Observations are sorted ascending by spread (ties by date). Each bin takes
    ``n // 10`` observations and the last bin also absorbs the remainder.
    A member without both a current and a future price is left out of the
    bin's average forward return but still counted in observation_count.

    Returns [] when fewer than *min_sample* observations exist.
    """
    obs = _observations(spreads)
    n = len(obs)
    if n < min_sample:
        logger.info("Decile analysis needs %d observations, have %d.", min_sample, n)
        return []

    ordered = obs.sort_values(["spread", "date"], kind="mergesort").reset_index(drop=True)
    size = n // N_DECILES
    bins: list[DecileBin] = []
    for d in range(N_DECILES):
        start = d * size
        end = n if d == N_DECILES - 1 else (d + 1) * size
        members = ordered.iloc[start:end]

        returns = [
            r for r in (forward_return(prices, day, horizon_days) for day in members["date"])
            if r is not None
        ]
        bins.append(DecileBin(
            index=d,
            spread_low=float(members["spread"].iloc[0]),
            spread_high=float(members["spread"].iloc[-1]),
            observation_count=len(members),
            average_spread=float(members["spread"].mean()),
            average_forward_return=float(np.mean(returns)) if returns else None,
            resolved_count=len(returns),
        ))
    return bins


def forward_return_scatter(
    spreads: pd.DataFrame,
    prices: Mapping[str, float],
    horizon_days: int = FORWARD_HORIZON_DAYS,
) -> pd.DataFrame:
    """
    One row per spread observation with a resolvable forward return.

    Returns
    -------
    DataFrame: date, spread, forward_return (both decimal fractions).
    """
    obs = _observations(spreads)
    obs["forward_return"] = [forward_return(prices, day, horizon_days) for day in obs["date"]]
    return obs.dropna(subset=["forward_return"]).reset_index(drop=True)


def realized_volatility(
    prices: pd.DataFrame,
    window: int = VOL_WINDOW_DAYS,
    annualisation: int = ANNUALISATION_DAYS,
) -> pd.Series:
    """
    Annualised realized volatility of daily log returns, per calendar day.

    The price series is laid on a daily calendar so missing days become gaps.
    A value exists only where the trailing *window* log returns are all
    defined, i.e. *window* + 1 consecutive priced days end at that date;
    everywhere else it is NaN, never zero.

    Returns
    -------
    pd.Series indexed by ISO date string (decimal, e.g. 0.55 = 55%).
    """
    if prices is None or prices.empty:
        return pd.Series(dtype=float, name="realized_vol")

    px = prices.dropna(subset=["price"]).copy()
    px.index = pd.to_datetime(px["date"])
    px = px[~px.index.duplicated(keep="last")].sort_index()
    daily = px["price"].astype(float).asfreq("D")

    log_ret = np.log(daily / daily.shift(1))
    vol = log_ret.rolling(window, min_periods=window).std(ddof=0) * math.sqrt(annualisation)
    vol.index = vol.index.strftime("%Y-%m-%d")
    vol.name = "realized_vol"
    return vol


def spread_volatility_series(
    spreads: pd.DataFrame,
    prices: pd.DataFrame,
    window: int = VOL_WINDOW_DAYS,
) -> pd.DataFrame:
    """
    Smoothed spread (raw where smoothing is missing) next to realized vol.

    Returns
    -------
    DataFrame: date, spread_signal, realized_vol (NaN where undefined).
    """
    if spreads.empty:
        return pd.DataFrame(columns=["date", "spread_signal", "realized_vol"])

    out = spreads[["date"]].copy()
    out["date"] = out["date"].astype(str)
    smoothed = spreads["spread_smoothed"] if "spread_smoothed" in spreads else pd.Series(np.nan, index=spreads.index)
    out["spread_signal"] = smoothed.astype(float).fillna(spreads["spread"].astype(float))
    vol = realized_volatility(prices, window)
    out["realized_vol"] = out["date"].map(vol).astype(float)
    return out.reset_index(drop=True)


def spread_histogram(spreads: pd.Series, step: float = HISTOGRAM_STEP) -> pd.DataFrame:
    """
    Fixed-width histogram of spread observations.

    Buckets are [low, low + step) on a grid anchored at zero; empty buckets are
    dropped. Bucketing runs on the percentage scale to keep edges exact.

    Returns
    -------
    DataFrame: low, high, mid, count (decimal spread units).
    """
    values = pd.Series(spreads).dropna().astype(float)
    if values.empty:
        return pd.DataFrame(columns=["low", "high", "mid", "count"])

    step_pct = round(step * 100, 10)
    idx = np.floor(np.round(values * 100, 10) / step_pct).astype(int)
    counts = idx.value_counts().sort_index()
    lows = counts.index.to_numpy() * step_pct / 100
    return pd.DataFrame({
        "low":   lows,
        "high":  lows + step,
        "mid":   lows + step / 2,
        "count": counts.to_numpy().astype(int),
    }).reset_index(drop=True)


def spread_statistics(spreads: pd.Series, flat_band: float = FLAT_BAND) -> Optional[dict]:
    """
    Summary of the raw spread distribution (decimal units).

    Contango is above the flat band, backwardation below it, flat inclusive of
    both edges. None when there are no observations.
    """
    values = pd.Series(spreads).dropna().astype(float)
    if values.empty:
        return None
    banded = values.round(12)
    return {
        "mean":          float(values.mean()),
        "std":           float(values.std(ddof=0)),
        "min":           float(values.min()),
        "max":           float(values.max()),
        "contango":      int((banded > flat_band).sum()),
        "flat":          int(((banded >= -flat_band) & (banded <= flat_band)).sum()),
        "backwardation": int((banded < -flat_band).sum()),
        "total":         int(len(values)),
    }
