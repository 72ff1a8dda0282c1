"""
external_data/quality.py
Data quality checks for stored snapshots, spreads and auxiliary series.

Reports coverage gaps, staleness, and schema issues. Nothing here feeds the
computations; the report is for observability only.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pandas as pd

logger = logging.getLogger(__name__)

STALE_AFTER_DAYS = 3


def _daily_gaps(dates: pd.Series) -> tuple[int, float]:
    """Missing calendar days between the first and last date, and as a % of expected."""
    d = pd.to_datetime(dates).drop_duplicates()
    n_expected = int((d.max() - d.min()).days) + 1
    n_gaps = max(n_expected - len(d), 0)
    return n_gaps, round(n_gaps / max(n_expected, 1) * 100, 2)


def _staleness_days(dates: pd.Series, today: Optional[str] = None) -> int:
    today_ts = pd.Timestamp(today) if today else pd.Timestamp(datetime.now(timezone.utc).date())
    return int((today_ts - pd.to_datetime(dates).max()).days)


def check_snapshots(df: pd.DataFrame, today: Optional[str] = None) -> dict:
    """
    Quality check for instrument snapshots.

    Checks:
    - total rows, instruments, date range
    - % missing days across the snapshot history
    - rows whose days_to_maturity disagrees with maturity - date
    - NaN implied yields
    - staleness of the latest snapshot
    """
    if df.empty:
        return {"status": "empty", "issues": ["No instrument snapshots available"]}

    n = len(df)
    n_gaps, pct_missing = _daily_gaps(df["date"])
    expected_dtm = (pd.to_datetime(df["maturity"]) - pd.to_datetime(df["date"])).dt.days
    n_dtm_mismatch = int((expected_dtm != df["days_to_maturity"]).sum())
    n_nan = int(df["implied_yield"].isna().sum())
    stale = _staleness_days(df["date"], today)

    issues = []
    if pct_missing > 5:
        issues.append(f"{pct_missing:.1f}% of days between first and last snapshot missing ({n_gaps} gaps)")
    if n_dtm_mismatch > 0:
        issues.append(f"{n_dtm_mismatch} rows with days_to_maturity != maturity - date")
    if n_nan > 0:
        issues.append(f"{n_nan} NaN values in implied_yield")
    if stale > STALE_AFTER_DAYS:
        issues.append(f"Latest snapshot is {stale} days old")

    return {
        "n_rows":         n,
        "n_instruments":  int(df["instrument_id"].nunique()),
        "date_range":     f"{df['date'].min()} → {df['date'].max()}",
        "pct_missing":    pct_missing,
        "n_dtm_mismatch": n_dtm_mismatch,
        "n_nan":          n_nan,
        "stale_days":     stale,
        "issues":         issues,
        "status":         "ok" if not issues else "warnings",
    }


def check_spreads(df: pd.DataFrame) -> dict:
    """Quality check for computed term spreads."""
    if df.empty:
        return {"status": "empty", "issues": ["No term spreads computed"]}

    n = len(df)
    n_single   = int((df["maturity_count"] == 1).sum())
    n_smoothed = int(df["spread_smoothed"].notna().sum())

    issues = []
    if n_smoothed < n:
        issues.append(f"{n - n_smoothed} spread rows without a smoothed value")
    if n_single == n:
        issues.append("Every spread row is single-maturity: no term-structure signal yet")

    return {
        "n_rows":          n,
        "date_range":      f"{df['date'].min()} → {df['date'].max()}",
        "single_maturity": n_single,
        "n_smoothed":      n_smoothed,
        "issues":          issues,
        "status":          "ok" if not issues else "warnings",
    }


def check_prices(df: pd.DataFrame, today: Optional[str] = None) -> dict:
    """Quality check for spot prices."""
    if df.empty:
        return {"status": "empty", "issues": ["No spot prices available"]}

    n = len(df)
    n_gaps, pct_missing = _daily_gaps(df["date"])
    n_nonpos = int((df["price"] <= 0).sum())
    stale = _staleness_days(df["date"], today)

    issues = []
    if pct_missing > 1:
        issues.append(f"{pct_missing:.1f}% of daily prices missing ({n_gaps} gaps)")
    if n_nonpos > 0:
        issues.append(f"{n_nonpos} non-positive prices")
    if stale > STALE_AFTER_DAYS:
        issues.append(f"Latest price is {stale} days old")

    return {
        "n_rows":      n,
        "date_range":  f"{df['date'].min()} → {df['date'].max()}",
        "pct_missing": pct_missing,
        "stale_days":  stale,
        "issues":      issues,
        "status":      "ok" if not issues else "warnings",
    }


def check_yield_series(df: pd.DataFrame, source: str) -> dict:
    """Quality check for a staking-yield / aggregator-APY series."""
    if df.empty:
        return {"status": "empty", "issues": [f"No {source} yield data available"]}

    n = len(df)
    n_nan = int(df["value"].isna().sum())
    n_negative = int((df["value"] < 0).sum())

    issues = []
    if n_nan > 0:
        issues.append(f"{n_nan} NaN values in {source} yield")
    if n_negative > 0:
        issues.append(f"{n_negative} negative {source} yields")

    return {
        "n_rows":     n,
        "date_range": f"{df['date'].min()} → {df['date'].max()}",
        "n_nan":      n_nan,
        "n_negative": n_negative,
        "issues":     issues,
        "status":     "ok" if not issues else "warnings",
    }


def save_quality_report(report: dict, path: Path) -> None:
    """Save a quality report dict as a JSON file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    report["generated_utc"] = datetime.now(timezone.utc).isoformat()
    with open(str(path), "w") as f:
        json.dump(report, f, indent=2, default=str)
    logger.info("Quality report saved → %s", path)
