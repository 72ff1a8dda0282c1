"""
external_data/providers/pendle.py
Pendle v2 core API — public, no authentication required.

Endpoint used
-------------
Daily market history (one Pendle market = one sUSDe maturity):
    GET https://api-v2.pendle.finance/core/v2/{chain_id}/markets/{address}/historical-data?time_frame=day
    Returns: {results: [{timestamp, impliedApy, underlyingApy, maxApy, baseApy, tvl}]}

Data schema produced
--------------------
Instrument snapshot DataFrame (one row per market per day):
    date               : ISO date (YYYY-MM-DD)
    instrument_id      : market address (lower-case)
    maturity           : ISO expiry date
    implied_yield      : float — decimal (0.05 = 5%)
    underlying_yield   : float — decimal, NaN when absent
    total_value_locked : float — USD, NaN when absent
    days_to_maturity   : int   — maturity - date in calendar days

Markets are requested one at a time with REQUEST_DELAY between calls.
"""

from __future__ import annotations

import logging
import time
from datetime import date as _date, datetime, timezone
from typing import Iterable, Optional

import pandas as pd

from external_data.providers.http import get_json

logger = logging.getLogger(__name__)

BASE_URL      = "https://api-v2.pendle.finance/core"
CHAIN_ID      = 1
REQUEST_DELAY = 0.2   # seconds between market requests

SNAPSHOT_COLUMNS = [
    "date", "instrument_id", "maturity", "implied_yield",
    "underlying_yield", "total_value_locked", "days_to_maturity",
]

# Known sUSDe markets on Ethereum mainnet (address, expiry)
MARKETS: list[dict] = [
    {"instrument_id": "0x8f7627bd46b30e296aa3aabe1df9bfac10920b6e", "maturity": "2024-04-25"},
    {"instrument_id": "0x93a82f3873e5b4ff81902663c43286d662f6721c", "maturity": "2024-09-26"},
    {"instrument_id": "0xd1d7d99764f8a52aff007b7831cc02748b2013b5", "maturity": "2024-09-26"},
    {"instrument_id": "0xbbf399db59a845066aafce9ae55e68c505fa97b7", "maturity": "2024-10-24"},
    {"instrument_id": "0xa0ab94debb3cc9a7ea77f3205ba4ab23276fed08", "maturity": "2024-12-26"},
    {"instrument_id": "0xcdd26eb5eb2ce0f203a84553853667ae69ca29ce", "maturity": "2025-03-27"},
    {"instrument_id": "0x8dae8ece668cf80d348873f23d456448e8694883", "maturity": "2026-05-07"},
]


def market_registry(today: Optional[_date] = None) -> list[dict]:
    """MARKETS with chain_id, name and an is_active flag (expiry still in the future)."""
    today = today or datetime.now(timezone.utc).date()
    return [
        {
            **m,
            "chain_id":  CHAIN_ID,
            "name":      "sUSDe",
            "is_active": _date.fromisoformat(m["maturity"]) > today,
        }
        for m in MARKETS
    ]


def _iso_date(ts) -> Optional[str]:
    """'2024-06-01T00:00:00.000Z' / unix seconds → '2024-06-01'; None if unparseable."""
    if ts is None:
        return None
    try:
        if isinstance(ts, (int, float)):
            return pd.Timestamp(int(ts), unit="s", tz="UTC").strftime("%Y-%m-%d")
        return pd.Timestamp(ts).strftime("%Y-%m-%d")
    except (ValueError, TypeError):
        return None


def _num(value) -> float:
    try:
        return float(value) if value is not None else float("nan")
    except (TypeError, ValueError):
        return float("nan")


def normalize_market_history(entries: Iterable[dict], instrument_id: str, maturity: str) -> pd.DataFrame:
    """
    Convert Pendle historical-data entries into instrument snapshots.

    Entries without a parseable timestamp or implied APY are dropped. When a
    day appears twice the last entry wins.
    """
    maturity_d = _date.fromisoformat(maturity)
    rows = []
    n_dropped = 0
    for e in entries or []:
        day = _iso_date(e.get("timestamp"))
        implied = _num(e.get("impliedApy"))
        if day is None or pd.isna(implied):
            n_dropped += 1
            continue
        rows.append({
            "date":               day,
            "instrument_id":      instrument_id.lower(),
            "maturity":           maturity,
            "implied_yield":      implied,
            "underlying_yield":   _num(e.get("underlyingApy")),
            "total_value_locked": _num(e.get("tvl")),
            "days_to_maturity":   (maturity_d - _date.fromisoformat(day)).days,
        })

    if n_dropped:
        logger.warning("Pendle %s: dropped %d malformed entries.", instrument_id, n_dropped)
    if not rows:
        return pd.DataFrame(columns=SNAPSHOT_COLUMNS)

    df = pd.DataFrame(rows, columns=SNAPSHOT_COLUMNS)
    return df.drop_duplicates(["date", "instrument_id"], keep="last").sort_values("date").reset_index(drop=True)


def fetch_market_history(instrument_id: str, maturity: str, chain_id: int = CHAIN_ID) -> pd.DataFrame:
    """Fetch and normalise the daily history of one market."""
    url  = f"{BASE_URL}/v2/{chain_id}/markets/{instrument_id}/historical-data"
    data = get_json(url, params={"time_frame": "day"})
    entries = data.get("results", []) if isinstance(data, dict) else []
    if not entries:
        logger.warning("Pendle %s: no historical data returned.", instrument_id)
    return normalize_market_history(entries, instrument_id, maturity)


def fetch_all_markets(
    markets: Optional[list[dict]] = None,
    request_delay: float = REQUEST_DELAY,
) -> pd.DataFrame:
    """
    Fetch every market in *markets* (default MARKETS) sequentially.

    A failing market is logged and skipped; the others still load. Raises only
    when every market failed, so the caller can record the source as down.
    """
    markets = markets or MARKETS
    frames = []
    failures = 0
    for i, m in enumerate(markets):
        if i:
            time.sleep(request_delay)
        try:
            df = fetch_market_history(m["instrument_id"], m["maturity"])
        except Exception as e:
            failures += 1
            logger.error("Pendle %s fetch failed: %s", m["instrument_id"], e)
            continue
        logger.info("Pendle %s (exp %s): %d snapshots.", m["instrument_id"], m["maturity"], len(df))
        if not df.empty:
            frames.append(df)

    if failures == len(markets):
        raise RuntimeError(f"All {failures} Pendle market requests failed.")
    if not frames:
        return pd.DataFrame(columns=SNAPSHOT_COLUMNS)
    return pd.concat(frames, ignore_index=True)
