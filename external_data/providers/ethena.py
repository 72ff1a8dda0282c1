"""
external_data/providers/ethena.py
Ethena public yield endpoint — no authentication required.

Endpoint used
-------------
Current protocol and staking yield:
    GET https://ethena.fi/api/yields/protocol-and-staking-yield
    Returns: {protocolYield: {value, lastUpdated}, stakingYield: {value, lastUpdated},
              avg30dSusdeYield: {value}, avg90dSusdeYield: {value}, ...}
    Values are percentages (9.5 = 9.5%).

The endpoint only reports the current value, so each sync contributes one row;
history accumulates in the store day by day.

Data schema produced
--------------------
Yield series DataFrame:
    date               : ISO date (lastUpdated day, else today UTC)
    value              : float — staking yield as a decimal (0.095 = 9.5%)
    total_value_locked : NaN (not reported)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import pandas as pd

from external_data.providers.http import get_json

logger = logging.getLogger(__name__)

YIELD_URL = "https://ethena.fi/api/yields/protocol-and-staking-yield"
SOURCE    = "ethena"

SERIES_COLUMNS = ["date", "value", "total_value_locked"]


def normalize_staking_yield(payload: dict, today: Optional[str] = None) -> pd.DataFrame:
    """
    Extract the staking yield from an Ethena payload.

    A payload without a numeric ``stakingYield.value`` yields an empty frame.
    """
    today = today or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    staking = (payload or {}).get("stakingYield") or {}
    try:
        value = float(staking.get("value"))
    except (TypeError, ValueError):
        logger.warning("Ethena payload has no usable stakingYield.value; dropped.")
        return pd.DataFrame(columns=SERIES_COLUMNS)

    day = today
    if staking.get("lastUpdated"):
        try:
            day = pd.Timestamp(staking["lastUpdated"]).strftime("%Y-%m-%d")
        except (ValueError, TypeError):
            pass

    return pd.DataFrame(
        [{"date": day, "value": value / 100.0, "total_value_locked": float("nan")}],
        columns=SERIES_COLUMNS,
    )


def fetch_staking_yield() -> pd.DataFrame:
    """Fetch today's sUSDe staking yield."""
    return normalize_staking_yield(get_json(YIELD_URL))
