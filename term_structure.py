"""
term_structure.py
Builds the multi-maturity yield curve for a date from stored snapshots.

Date resolution never looks forward: the curve for a requested date is the one
observed on that date, or on the most recent earlier date with any snapshot.
A later date would leak information the requester could not have had.
"""

from __future__ import annotations

import logging
from typing import Optional

import pandas as pd

from spread_engine import SpreadRecord

logger = logging.getLogger(__name__)

MATURITY_COLUMNS = [
    "maturity", "implied_yield", "underlying_yield",
    "days_to_maturity", "total_value_locked", "instrument_count",
]


def _sum_or_none(values: pd.Series) -> Optional[float]:
    values = values.dropna()
    return float(values.sum()) if not values.empty else None


def aggregate_maturities(snapshots: pd.DataFrame, as_of: Optional[str] = None) -> pd.DataFrame:
    """
    Collapse one date's snapshots into one row per maturity.

    Parameters
    ----------
    snapshots : rows for a single date (maturity, implied_yield, underlying_yield,
                total_value_locked, instrument_id)
    as_of     : date used for days_to_maturity; defaults to the snapshots' date

    Returns
    -------
    DataFrame with MATURITY_COLUMNS, ascending by maturity. Yields are
    equal-weight means across instruments sharing a maturity; TVL is summed.
    """
    if snapshots.empty:
        return pd.DataFrame(columns=MATURITY_COLUMNS)

    as_of = as_of or str(snapshots["date"].iloc[0])
    rows = []
    for maturity, group in snapshots.groupby(snapshots["maturity"].astype(str), sort=True):
        rows.append({
            "maturity":           maturity,
            "implied_yield":      float(group["implied_yield"].astype(float).mean()),
            "underlying_yield":   float(group["underlying_yield"].astype(float).mean()),
            "days_to_maturity":   int((pd.Timestamp(maturity) - pd.Timestamp(as_of)).days),
            "total_value_locked": _sum_or_none(group["total_value_locked"].astype(float)),
            "instrument_count":   int(group["instrument_id"].nunique()),
        })
    return pd.DataFrame(rows, columns=MATURITY_COLUMNS)


def resolve_date(store, target: str) -> Optional[str]:
    """Latest snapshot date on or before *target*, or None."""
    return store.latest_snapshot_date(target)


def build_term_structure(store, target: str) -> dict:
    """
    Term structure for *target*.

    Returns
    -------
    {"date": resolved date (or target when nothing resolves),
     "maturities": list of per-maturity dicts (see aggregate_maturities),
     "spread": SpreadRecord for the resolved date, or None}

    An empty maturity list with a None spread means "no data yet", not an error.
    """
    resolved = resolve_date(store, target)
    if resolved is None:
        logger.debug("No snapshots on or before %s.", target)
        return {"date": target, "maturities": [], "spread": None}

    curve = aggregate_maturities(store.snapshots(dates=[resolved]), as_of=resolved)
    row = store.spread_on(resolved)
    return {
        "date":       resolved,
        "maturities": [_clean(r) for r in curve.to_dict("records")],
        "spread":     SpreadRecord.from_row(row) if row is not None else None,
    }


def term_structure_history(store) -> pd.DataFrame:
    """Per-(date, maturity) mean implied/underlying yields over the whole snapshot table."""
    snaps = store.snapshots()
    if snaps.empty:
        return pd.DataFrame(columns=["date", "maturity", "implied_yield", "underlying_yield", "days_to_maturity"])

    out = (
        snaps.groupby(["date", "maturity"], sort=True)
        .agg(
            implied_yield=("implied_yield", "mean"),
            underlying_yield=("underlying_yield", "mean"),
            days_to_maturity=("days_to_maturity", "max"),
        )
        .reset_index()
    )
    return out


def _clean(row: dict) -> dict:
    """NaN → None so the dict is JSON-serialisable."""
    return {k: (None if isinstance(v, float) and pd.isna(v) else v) for k, v in row.items()}
