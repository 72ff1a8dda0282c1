"""
external_data/providers/defillama.py
DefiLlama yields API — public, no authentication required.

Endpoint used
-------------
Historical pool APY / TVL (daily):
    GET https://yields.llama.fi/chart/{pool_id}
    Returns: {status, data: [{timestamp: ISO string, apy: float (percent), tvlUsd: float}]}

Data schema produced
--------------------
Yield series DataFrame:
    date               : ISO date
    value              : float — APY as a decimal (0.12 = 12%)
    total_value_locked : float — USD TVL, NaN when absent
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

import pandas as pd

from external_data.providers.http import get_json

logger = logging.getLogger(__name__)

BASE_URL = "https://yields.llama.fi"
POOL_ID  = "66985a81-9c51-46ca-9977-42b4fe7bc6df"   # sUSDe
SOURCE   = "defillama"

SERIES_COLUMNS = ["date", "value", "total_value_locked"]


def normalize_pool_chart(entries: Iterable[dict], start_dt: Optional[datetime] = None) -> pd.DataFrame:
    """
    Convert DefiLlama chart entries into a daily yield series.

    Entries missing a timestamp or APY are dropped; the last entry of a day wins.
    """
    rows = []
    n_dropped = 0
    for entry in entries or []:
        ts = entry.get("timestamp")
        apy = entry.get("apy")
        if ts is None or apy is None:
            n_dropped += 1
            continue
        try:
            day = pd.Timestamp(ts).strftime("%Y-%m-%d")
            value = float(apy) / 100.0
        except (ValueError, TypeError):
            n_dropped += 1
            continue
        tvl = entry.get("tvlUsd")
        rows.append({
            "date":               day,
            "value":              value,
            "total_value_locked": float(tvl) if tvl is not None else float("nan"),
        })

    if n_dropped:
        logger.warning("DefiLlama: dropped %d malformed entries.", n_dropped)
    if not rows:
        return pd.DataFrame(columns=SERIES_COLUMNS)

    df = pd.DataFrame(rows, columns=SERIES_COLUMNS)
    df = df.drop_duplicates("date", keep="last").sort_values("date").reset_index(drop=True)

    if start_dt is not None:
        df = df[df["date"] >= start_dt.strftime("%Y-%m-%d")].reset_index(drop=True)

    return df


def fetch_pool_apy(pool_id: str = POOL_ID, start_dt: Optional[datetime] = None) -> pd.DataFrame:
    """
    Fetch the daily APY history of a DefiLlama yield pool.

    Parameters
    ----------
    pool_id  : DefiLlama pool UUID (default: sUSDe)
    start_dt : optional start filter; data before this date is dropped.
    """
    data = get_json(f"{BASE_URL}/chart/{pool_id}")
    entries = data.get("data", []) if isinstance(data, dict) else []

    if not entries:
        logger.warning("DefiLlama returned empty pool data for %s.", pool_id)

    return normalize_pool_chart(entries, start_dt=start_dt)
