"""
external_data/update.py
CLI entry point for syncing every source and rebuilding the term spread series.

Usage
-----
  # One full sync (fetch all sources → spreads → smoothing → exports):
  python -m external_data.update

  # Rebuild spreads and smoothing from what is already stored, no network:
  python -m external_data.update --rebuild_only

  # Stay up and sync once a day at 06:00 UTC:
  python -m external_data.update --schedule --hour 6

Behaviour
---------
1. Fetch Pendle market history, DefiLlama pool APY, Ethena staking yield and
   the spot price concurrently (one worker per source; Pendle markets are
   requested one at a time with a delay).
2. Write each source to the store in turn. A source that failed to fetch is
   logged to sync_log and skipped; the others still land.
3. Recompute term spreads for every stored snapshot date.
4. Recompute the smoothed spread over the full series.
5. Export the merged daily feature file and the data quality report.

Scheduled and manual runs go through the same run_full_sync().
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pandas as pd

# Ensure project root is on sys.path when run as a module
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from external_data.providers.pendle import fetch_all_markets, market_registry, REQUEST_DELAY
from external_data.providers.defillama import fetch_pool_apy, SOURCE as DEFILLAMA
from external_data.providers.ethena import fetch_staking_yield, SOURCE as ETHENA
from external_data.storage import PATHS, Store, _Paths, save
from external_data.quality import (
    check_snapshots, check_spreads, check_prices, check_yield_series, save_quality_report
)
from data_loader import fetch_spot_prices, run_price_sanity_checks, DEFAULT_TICKER
from spread_engine import rebuild_spreads, recompute_smoothing

logger = logging.getLogger(__name__)

PENDLE = "pendle"
SPOT   = "spot"


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Sync sUSDe term structure data and rebuild term spreads",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--db",             default=None,           help="SQLite path (default: data/term_spread.db or $TERM_SPREAD_DB)")
    p.add_argument("--ticker",         default=DEFAULT_TICKER, help="yfinance ticker for the reference price")
    p.add_argument("--price_days",     type=int, default=1095, help="Days of price history to fetch")
    p.add_argument("--request_delay",  type=float, default=REQUEST_DELAY, help="Seconds between Pendle market requests")
    p.add_argument("--rebuild_only",   action="store_true",    help="Skip fetches; rebuild spreads and smoothing only")
    p.add_argument("--schedule",       action="store_true",    help="Run forever, syncing once a day")
    p.add_argument("--hour",           type=int, default=6,    help="UTC hour for scheduled syncs")
    return p.parse_args(argv)


def _fetchers(
    ticker: str = DEFAULT_TICKER,
    price_days: int = 1095,
    request_delay: float = REQUEST_DELAY,
) -> dict[str, Callable[[], pd.DataFrame]]:
    return {
        PENDLE:    lambda: fetch_all_markets(request_delay=request_delay),
        DEFILLAMA: lambda: fetch_pool_apy(),
        ETHENA:    lambda: fetch_staking_yield(),
        SPOT:      lambda: fetch_spot_prices(ticker, days=price_days),
    }


def _write(store: Store, source: str, df: pd.DataFrame) -> int:
    if source == PENDLE:
        store.upsert_markets(market_registry())
        return store.upsert_snapshots(df)
    if source == SPOT:
        return store.upsert_prices(df)
    return store.upsert_yield_series(df, source)


def build_merged_daily(store: Store) -> pd.DataFrame:
    """Spread series joined with spot price, aggregator APY and staking yield (by date)."""
    merged = store.spreads_with_prices()
    if merged.empty:
        return merged
    staking = store.yield_series(ETHENA)[["date", "value"]].rename(columns={"value": "staking_yield"})
    merged = merged.merge(staking, on="date", how="left")
    return merged.set_index("date")


def rebuild(store: Store, dates: Optional[list[str]] = None) -> dict:
    """Spread engine over *dates* (all when None), then the full smoothing pass."""
    spreads = rebuild_spreads(store, dates)
    smoothed = recompute_smoothing(store)
    return {**spreads, "smoothed": smoothed}


def run_full_sync(
    store: Store,
    fetchers: Optional[dict[str, Callable[[], pd.DataFrame]]] = None,
    export: bool = True,
) -> dict:
    """
    Fetch every source, persist, rebuild spreads and smoothing.

    Idempotent: re-running on unchanged upstream data leaves the store unchanged.

    Returns
    -------
    {"sources": {source: {"status", "records", "error"}},
     "spreads": rebuild summary (computed, single_maturity, skipped, smoothed)}
    """
    fetchers = fetchers or _fetchers()
    t0 = time.time()

    # ── 1. Fetch concurrently, one worker per source ─────────────────────────
    with ThreadPoolExecutor(max_workers=len(fetchers), thread_name_prefix="fetch") as pool:
        futures = {name: pool.submit(fn) for name, fn in fetchers.items()}

        # ── 2. Serialised writes, one source at a time ───────────────────────
        sources: dict[str, dict] = {}
        for name, future in futures.items():
            logger.info("=== %s ===", name)
            try:
                df = future.result()
            except Exception as e:
                logger.error("%s fetch failed: %s", name, e)
                store.log_sync(name, 0, status="error", error=str(e))
                sources[name] = {"status": "error", "records": 0, "error": str(e)}
                continue

            if df.empty:
                logger.warning("%s: no data returned.", name)
                store.log_sync(name, 0, status="empty")
                sources[name] = {"status": "empty", "records": 0, "error": None}
                continue

            n = _write(store, name, df)
            store.log_sync(name, n, status="ok")
            sources[name] = {"status": "ok", "records": n, "error": None}

    # ── 3-4. Spreads for every snapshot date, full smoothing pass ────────────
    spreads = rebuild(store)

    # ── 5. Exports ───────────────────────────────────────────────────────────
    if export:
        _export(store)

    logger.info("=== Sync complete in %.1fs ===", time.time() - t0)
    return {"sources": sources, "spreads": spreads}


def _export(store: Store, paths: _Paths = PATHS) -> None:
    merged = build_merged_daily(store)
    if not merged.empty:
        save(merged, paths.merged_daily(), source="term_spreads")

    price_sanity = run_price_sanity_checks(store.prices())
    price_sanity["status"] = "warnings" if price_sanity["issues"] else "ok"

    report = {
        "snapshots": check_snapshots(store.snapshots()),
        "spreads":   check_spreads(store.spreads()),
        "prices":    check_prices(store.prices()),
        DEFILLAMA:   check_yield_series(store.yield_series(DEFILLAMA), DEFILLAMA),
        ETHENA:      check_yield_series(store.yield_series(ETHENA), ETHENA),
        "price_sanity": price_sanity,
    }
    for name, qr in report.items():
        logger.info("%s quality: %s  (issues: %s)", name, qr["status"], qr["issues"])
    save_quality_report(report, paths.quality_report())


def seconds_until(hour: int, now: Optional[datetime] = None) -> float:
    """Seconds from *now* (UTC) to the next occurrence of *hour*:00 UTC."""
    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )
    args = _parse_args(argv)
    fetchers = _fetchers(args.ticker, args.price_days, args.request_delay)

    with Store(args.db) as store:
        if args.rebuild_only:
            logger.info("--rebuild_only: skipping provider fetches.")
            summary = rebuild(store)
            logger.info("Spreads: %s", {k: v for k, v in summary.items() if k != "skipped"})
            return 0

        while True:
            result = run_full_sync(store, fetchers)
            failed = [s for s, r in result["sources"].items() if r["status"] == "error"]
            if failed:
                logger.warning("Sources failed this cycle: %s", ", ".join(failed))
            logger.info("Database totals: %s", store.stats())

            if not args.schedule:
                return 1 if len(failed) == len(fetchers) else 0

            wait = seconds_until(args.hour)
            logger.info("Next scheduled sync in %.1f h.", wait / 3600)
            time.sleep(wait)


if __name__ == "__main__":
    sys.exit(main())
