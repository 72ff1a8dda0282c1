"""
spread_engine.py
Term spread computation (front vs back maturity) and the trailing smoothing pass.

Per date
--------
1. Keep only live snapshots (days_to_maturity > 0); post-maturity rows are noise.
2. No live snapshot            → date skipped, no record.
3. One distinct maturity       → maturity_count = 1, spread = 0, front = back.
                                 One maturity carries no slope; zero is policy.
4. Two or more maturities      → front = nearest, back = furthest,
                                 spread = back_implied - front_implied.

Instruments sharing a leg's maturity are averaged with equal weight. A snapshot
without an implied yield drops out of its leg's average; if that empties a leg
the date is skipped with a warning.

Smoothing
---------
spread_smoothed[i] = mean(spread[max(0, i-6) .. i]) over the date-ordered
series. It depends on history, so the whole series is recomputed after every
batch that may have touched historical dates.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Optional

import pandas as pd

logger = logging.getLogger(__name__)

SMOOTHING_WINDOW = 7

SKIP_NO_LIVE_MATURITIES = "no-live-maturities"
SKIP_EMPTY_FRONT_LEG    = "empty-front-leg"
SKIP_EMPTY_BACK_LEG     = "empty-back-leg"


@dataclass
class SpreadRecord:
    date: str
    front_instrument_id: str
    front_maturity: str
    front_implied_yield: float
    back_instrument_id: str
    back_maturity: str
    back_implied_yield: float
    spread: float
    underlying_yield: Optional[float]
    maturity_count: int
    spread_smoothed: Optional[float] = None

    @property
    def is_single_maturity(self) -> bool:
        return self.maturity_count == 1

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "SpreadRecord":
        """Build from a store row (NaN → None for the nullable columns)."""
        def _opt(v):
            return None if v is None or pd.isna(v) else float(v)

        return cls(
            date=str(row["date"]),
            front_instrument_id=str(row["front_instrument_id"]),
            front_maturity=str(row["front_maturity"]),
            front_implied_yield=float(row["front_implied_yield"]),
            back_instrument_id=str(row["back_instrument_id"]),
            back_maturity=str(row["back_maturity"]),
            back_implied_yield=float(row["back_implied_yield"]),
            spread=float(row["spread"]),
            underlying_yield=_opt(row.get("underlying_yield")),
            maturity_count=int(row["maturity_count"]),
            spread_smoothed=_opt(row.get("spread_smoothed")),
        )


def _days_to_maturity(snapshots: pd.DataFrame) -> pd.Series:
    """Stored days_to_maturity, falling back to maturity - date when missing."""
    computed = (
        pd.to_datetime(snapshots["maturity"]) - pd.to_datetime(snapshots["date"])
    ).dt.days
    if "days_to_maturity" not in snapshots.columns:
        return computed
    return snapshots["days_to_maturity"].fillna(computed)


def _leg(rows: pd.DataFrame) -> tuple[Optional[str], float, Optional[float]]:
    """
    Collapse the instruments of one leg into a synthetic instrument.

    Returns (representative instrument_id, mean implied yield, mean underlying
    yield). The id is the smallest instrument_id with a usable yield so the
    choice does not depend on row order. (None, nan, None) when no member has
    an implied yield.
    """
    usable = rows[rows["implied_yield"].notna()]
    if usable.empty:
        return None, float("nan"), None

    implied = float(usable["implied_yield"].mean())
    underlying = usable["underlying_yield"].dropna() if "underlying_yield" in usable else pd.Series(dtype=float)
    underlying_mean = float(underlying.mean()) if not underlying.empty else None
    return str(min(usable["instrument_id"].astype(str))), implied, underlying_mean


def compute_spread_for_date(date: str, snapshots: pd.DataFrame) -> tuple[Optional[SpreadRecord], Optional[str]]:
    """
    Compute the SpreadRecord for one date.

    Parameters
    ----------
    date      : ISO date the snapshots belong to
    snapshots : that date's rows (instrument_id, maturity, implied_yield,
                underlying_yield, days_to_maturity)

    Returns
    -------
    (record, None) on success, (None, skip_reason) when the date yields no record.
    """
    live = snapshots[_days_to_maturity(snapshots) > 0]
    if live.empty:
        logger.debug("%s: no live maturities: skipped.", date)
        return None, SKIP_NO_LIVE_MATURITIES

    maturities = sorted(live["maturity"].astype(str).unique())
    front_maturity, back_maturity = maturities[0], maturities[-1]

    front_id, front_implied, underlying = _leg(live[live["maturity"].astype(str) == front_maturity])
    if front_id is None:
        logger.warning("%s: every front-leg snapshot (%s) lacks an implied yield: skipped.", date, front_maturity)
        return None, SKIP_EMPTY_FRONT_LEG

    if len(maturities) == 1:
        record = SpreadRecord(
            date=date,
            front_instrument_id=front_id,
            front_maturity=front_maturity,
            front_implied_yield=front_implied,
            back_instrument_id=front_id,
            back_maturity=front_maturity,
            back_implied_yield=front_implied,
            spread=0.0,
            underlying_yield=underlying,
            maturity_count=1,
        )
        return record, None

    back_id, back_implied, _ = _leg(live[live["maturity"].astype(str) == back_maturity])
    if back_id is None:
        logger.warning("%s: every back-leg snapshot (%s) lacks an implied yield: skipped.", date, back_maturity)
        return None, SKIP_EMPTY_BACK_LEG

    record = SpreadRecord(
        date=date,
        front_instrument_id=front_id,
        front_maturity=front_maturity,
        front_implied_yield=front_implied,
        back_instrument_id=back_id,
        back_maturity=back_maturity,
        back_implied_yield=back_implied,
        spread=back_implied - front_implied,
        underlying_yield=underlying,
        maturity_count=len(maturities),
    )
    return record, None


def compute_term_spreads(snapshots: pd.DataFrame) -> tuple[list[SpreadRecord], dict[str, str]]:
    """
    Compute one SpreadRecord per distinct date in *snapshots*.

    Pure: identical input always yields identical records.

    Returns
    -------
    records : list of SpreadRecord ordered by date
    skipped : {date: reason} for dates that produced no record
    """
    records: list[SpreadRecord] = []
    skipped: dict[str, str] = {}
    if snapshots.empty:
        return records, skipped

    for date, rows in snapshots.groupby(snapshots["date"].astype(str), sort=True):
        record, reason = compute_spread_for_date(date, rows)
        if record is not None:
            records.append(record)
        else:
            skipped[date] = reason

    return records, skipped


def rebuild_spreads(store, dates: Optional[Iterable[str]] = None) -> dict:
    """
    Recompute and upsert spread records for *dates* (default: every snapshot date).

    Returns a summary dict: computed, single_maturity, skipped ({date: reason}).
    """
    snapshots = store.snapshots(dates=dates)
    records, skipped = compute_term_spreads(snapshots)
    # dates that no longer yield a spread must not keep a stale row
    store.upsert_spreads(records, drop_dates=skipped.keys())

    n_single = sum(1 for r in records if r.is_single_maturity)
    logger.info(
        "Term spreads: %d computed (%d single-maturity), %d dates skipped.",
        len(records), n_single, len(skipped),
    )
    return {"computed": len(records), "single_maturity": n_single, "skipped": skipped}


def smooth_spreads(spreads: pd.Series, window: int = SMOOTHING_WINDOW) -> pd.Series:
    """
    Trailing mean over the current and up to ``window - 1`` preceding entries.

    *spreads* must already be ordered by date; the window counts entries, not
    calendar days. Early entries average whatever history exists.
    """
    return spreads.rolling(window, min_periods=1).mean()


def recompute_smoothing(store, window: int = SMOOTHING_WINDOW) -> int:
    """Rewrite spread_smoothed for the whole stored series. Returns rows updated."""
    spreads = store.spreads()
    if spreads.empty:
        return 0
    series = spreads.set_index("date")["spread"].astype(float).sort_index()
    smoothed = smooth_spreads(series, window)
    n = store.update_smoothed(smoothed)
    logger.info("Smoothed %d spread rows (%d-point trailing mean).", n, window)
    return n


def spread_records(store, start: Optional[str] = None, end: Optional[str] = None) -> list[SpreadRecord]:
    """Stored spread series as SpreadRecord objects, ordered by date."""
    return [SpreadRecord.from_row(row) for row in store.spreads(start, end).to_dict("records")]
