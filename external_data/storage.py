"""
external_data/storage.py
SQLite persistence for instrument snapshots, term spreads and auxiliary series,
plus Parquet export of derived daily features.

Storage layout
--------------
data/
  term_spread.db                     ← SQLite store (all durable tables)
  features/
    term_spread_daily.parquet        ← merged daily spreads + price + yields
  reports/
    data_quality_YYYYMMDD.json       ← data quality snapshots

Tables
------
markets               (instrument_id)           known yield-bearing instruments
instrument_snapshots  (date, instrument_id)     one instrument, one day
term_spreads          (date)                    computed front/back spread
spot_prices           (date)                    reference asset daily price
yield_series          (source, date)            staking yield / aggregator APY
sync_log              (id, append-only)         per-source sync outcome

All writes are upserts keyed on the natural key (last writer wins on the full
row). ``term_spreads.spread_smoothed`` is only written by the smoothing pass;
re-upserting a spread row leaves it untouched.

Usage
-----
    from external_data.storage import Store

    with Store() as store:
        store.upsert_snapshots(df)
        spreads = store.spreads(start="2024-06-01")
"""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Root of the project (one level up from this file)
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_ROOT     = _PROJECT_ROOT / "data"
DB_PATH       = Path(os.getenv("TERM_SPREAD_DB", str(DATA_ROOT / "term_spread.db")))


@dataclass(frozen=True)
class _Paths:
    """Centralised path resolver for all file artefacts."""

    root: Path = field(default=DATA_ROOT)

    def database(self) -> Path:
        return DB_PATH

    def merged_daily(self) -> Path:
        return self.root / "features" / "term_spread_daily.parquet"

    def quality_report(self, date_str: Optional[str] = None) -> Path:
        date_str = date_str or datetime.now(timezone.utc).strftime("%Y%m%d")
        return self.root / "reports" / f"data_quality_{date_str}.json"


PATHS = _Paths()


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS markets (
    instrument_id  TEXT PRIMARY KEY,
    maturity       TEXT NOT NULL,
    chain_id       INTEGER NOT NULL DEFAULT 1,
    name           TEXT NOT NULL DEFAULT '',
    is_active      INTEGER NOT NULL DEFAULT 1,
    first_seen     TEXT NOT NULL,
    last_updated   TEXT
);

CREATE TABLE IF NOT EXISTS instrument_snapshots (
    date               TEXT NOT NULL,
    instrument_id      TEXT NOT NULL,
    maturity           TEXT NOT NULL,
    implied_yield      REAL,
    underlying_yield   REAL,
    total_value_locked REAL,
    days_to_maturity   INTEGER NOT NULL,
    PRIMARY KEY (date, instrument_id)
);

CREATE TABLE IF NOT EXISTS term_spreads (
    date                 TEXT PRIMARY KEY,
    front_instrument_id  TEXT NOT NULL,
    front_maturity       TEXT NOT NULL,
    front_implied_yield  REAL NOT NULL,
    back_instrument_id   TEXT NOT NULL,
    back_maturity        TEXT NOT NULL,
    back_implied_yield   REAL NOT NULL,
    spread               REAL NOT NULL,
    spread_smoothed      REAL,
    underlying_yield     REAL,
    maturity_count       INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS spot_prices (
    date        TEXT PRIMARY KEY,
    price       REAL NOT NULL,
    change_24h  REAL
);

CREATE TABLE IF NOT EXISTS yield_series (
    source              TEXT NOT NULL,
    date                TEXT NOT NULL,
    value               REAL NOT NULL,
    total_value_locked  REAL,
    PRIMARY KEY (source, date)
);

CREATE TABLE IF NOT EXISTS sync_log (
    id       INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at   TEXT NOT NULL,
    source   TEXT NOT NULL,
    records  INTEGER NOT NULL DEFAULT 0,
    status   TEXT NOT NULL DEFAULT 'ok',
    error    TEXT
);

CREATE INDEX IF NOT EXISTS idx_snapshots_date     ON instrument_snapshots(date);
CREATE INDEX IF NOT EXISTS idx_snapshots_maturity ON instrument_snapshots(maturity);
CREATE INDEX IF NOT EXISTS idx_yield_series_date  ON yield_series(date);
"""

SNAPSHOT_COLUMNS = [
    "date", "instrument_id", "maturity", "implied_yield",
    "underlying_yield", "total_value_locked", "days_to_maturity",
]
SPREAD_COLUMNS = [
    "date", "front_instrument_id", "front_maturity", "front_implied_yield",
    "back_instrument_id", "back_maturity", "back_implied_yield",
    "spread", "spread_smoothed", "underlying_yield", "maturity_count",
]


def _safe_float(value: Any) -> float | None:
    try:
        if value is None:
            return None
        f = float(value)
        return None if np.isnan(f) else f
    except (TypeError, ValueError):
        return None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class Store:
    """
    Explicit handle on the SQLite store.

    Open once per process and pass it to every component; ``close()`` (or the
    context manager) on shutdown. The connection is shared across Streamlit
    script threads, hence ``check_same_thread=False``; every statement runs
    under one lock so sessions never interleave on the connection.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else DB_PATH
        if str(self.path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()
        logger.debug("Opened store → %s", self.path)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug("Closed store → %s", self.path)

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _query(self, sql: str, params: Iterable = ()) -> pd.DataFrame:
        with self._lock:
            return pd.read_sql_query(sql, self._conn, params=list(params))

    def _fetchall(self, sql: str, params: Iterable = ()) -> list[tuple]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    # ── Writes ────────────────────────────────────────────────────────────────

    def upsert_markets(self, markets: Iterable[dict]) -> int:
        """Register instruments; ``is_active`` and ``last_updated`` refresh on conflict."""
        now = _utc_now_iso()
        rows = [
            (
                m["instrument_id"], m["maturity"], int(m.get("chain_id", 1)),
                m.get("name", ""), int(bool(m.get("is_active", True))), now, now,
            )
            for m in markets
        ]
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO markets (instrument_id, maturity, chain_id, name, is_active, first_seen, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(instrument_id) DO UPDATE SET
                    is_active    = excluded.is_active,
                    last_updated = excluded.last_updated
                """,
                rows,
            )
        return len(rows)

    def upsert_snapshots(self, df: pd.DataFrame) -> int:
        """Upsert instrument snapshots keyed on (date, instrument_id)."""
        if df.empty:
            return 0
        rows = [
            (
                str(r["date"]), str(r["instrument_id"]), str(r["maturity"]),
                _safe_float(r.get("implied_yield")),
                _safe_float(r.get("underlying_yield")),
                _safe_float(r.get("total_value_locked")),
                int(r["days_to_maturity"]),
            )
            for r in df.to_dict("records")
        ]
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO instrument_snapshots (
                    date, instrument_id, maturity, implied_yield,
                    underlying_yield, total_value_locked, days_to_maturity
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(date, instrument_id) DO UPDATE SET
                    maturity           = excluded.maturity,
                    implied_yield      = excluded.implied_yield,
                    underlying_yield   = excluded.underlying_yield,
                    total_value_locked = excluded.total_value_locked,
                    days_to_maturity   = excluded.days_to_maturity
                """,
                rows,
            )
        logger.info("Upserted %d instrument snapshots.", len(rows))
        return len(rows)

    def upsert_spreads(self, records: Iterable, drop_dates: Iterable[str] = ()) -> int:
        """
        Upsert SpreadRecords keyed on date.

        Rows for *drop_dates* (dates that no longer produce a spread) are
        deleted in the same transaction. Raises ValueError on a record that
        breaks the spread invariants; nothing is written in that case.
        """
        rows = []
        for rec in records:
            if rec.maturity_count < 1:
                raise ValueError(f"{rec.date}: maturity_count must be >= 1, got {rec.maturity_count}")
            if rec.spread != rec.back_implied_yield - rec.front_implied_yield:
                raise ValueError(f"{rec.date}: spread does not equal back - front implied yield")
            if rec.maturity_count == 1 and (rec.spread != 0 or rec.front_instrument_id != rec.back_instrument_id):
                raise ValueError(f"{rec.date}: single-maturity record must have identical legs and zero spread")
            rows.append((
                rec.date, rec.front_instrument_id, rec.front_maturity, rec.front_implied_yield,
                rec.back_instrument_id, rec.back_maturity, rec.back_implied_yield,
                rec.spread, rec.underlying_yield, rec.maturity_count,
            ))
        with self._lock, self._conn:
            self._conn.executemany(
                "DELETE FROM term_spreads WHERE date = ?", [(str(d),) for d in drop_dates]
            )
            self._conn.executemany(
                """
                INSERT INTO term_spreads (
                    date, front_instrument_id, front_maturity, front_implied_yield,
                    back_instrument_id, back_maturity, back_implied_yield,
                    spread, spread_smoothed, underlying_yield, maturity_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    front_instrument_id = excluded.front_instrument_id,
                    front_maturity      = excluded.front_maturity,
                    front_implied_yield = excluded.front_implied_yield,
                    back_instrument_id  = excluded.back_instrument_id,
                    back_maturity       = excluded.back_maturity,
                    back_implied_yield  = excluded.back_implied_yield,
                    spread              = excluded.spread,
                    underlying_yield    = excluded.underlying_yield,
                    maturity_count      = excluded.maturity_count
                """,
                rows,
            )
        return len(rows)

    def update_smoothed(self, smoothed: pd.Series) -> int:
        """Write ``spread_smoothed`` for each date in *smoothed* (index = date)."""
        rows = [(_safe_float(v), str(d)) for d, v in smoothed.items()]
        with self._lock, self._conn:
            self._conn.executemany(
                "UPDATE term_spreads SET spread_smoothed = ? WHERE date = ?", rows
            )
        return len(rows)

    def upsert_prices(self, df: pd.DataFrame) -> int:
        """Upsert spot prices keyed on date. Non-positive prices are rejected."""
        if df.empty:
            return 0
        if (df["price"] <= 0).any():
            bad = df.loc[df["price"] <= 0, "date"].tolist()
            raise ValueError(f"Non-positive price for dates: {bad[:5]}")
        rows = [
            (str(r["date"]), float(r["price"]), _safe_float(r.get("change_24h")))
            for r in df.to_dict("records")
        ]
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO spot_prices (date, price, change_24h) VALUES (?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET price = excluded.price, change_24h = excluded.change_24h
                """,
                rows,
            )
        logger.info("Upserted %d spot prices.", len(rows))
        return len(rows)

    def upsert_yield_series(self, df: pd.DataFrame, source: str) -> int:
        """Upsert a staking-yield / aggregator-APY series keyed on (source, date)."""
        if df.empty:
            return 0
        rows = [
            (source, str(r["date"]), float(r["value"]), _safe_float(r.get("total_value_locked")))
            for r in df.to_dict("records")
        ]
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO yield_series (source, date, value, total_value_locked) VALUES (?, ?, ?, ?)
                ON CONFLICT(source, date) DO UPDATE SET
                    value = excluded.value, total_value_locked = excluded.total_value_locked
                """,
                rows,
            )
        logger.info("Upserted %d %s yield rows.", len(rows), source)
        return len(rows)

    def log_sync(self, source: str, records: int, status: str = "ok", error: Optional[str] = None) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO sync_log (run_at, source, records, status, error) VALUES (?, ?, ?, ?, ?)",
                (_utc_now_iso(), source, int(records), status, error),
            )

    # ── Reads ─────────────────────────────────────────────────────────────────

    def markets(self) -> pd.DataFrame:
        return self._query("SELECT * FROM markets ORDER BY maturity ASC, instrument_id ASC")

    def snapshots(
        self,
        dates: Optional[Iterable[str]] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> pd.DataFrame:
        """Snapshots ordered by (date, maturity, instrument_id), optionally filtered."""
        sql = f"SELECT {', '.join(SNAPSHOT_COLUMNS)} FROM instrument_snapshots WHERE 1=1"
        params: list = []
        if dates is not None:
            dates = list(dates)
            if not dates:
                return pd.DataFrame(columns=SNAPSHOT_COLUMNS)
            sql += f" AND date IN ({', '.join('?' * len(dates))})"
            params += dates
        if start:
            sql += " AND date >= ?"
            params.append(start)
        if end:
            sql += " AND date <= ?"
            params.append(end)
        sql += " ORDER BY date ASC, maturity ASC, instrument_id ASC"
        return self._query(sql, params)

    def snapshot_dates(self) -> list[str]:
        rows = self._fetchall("SELECT DISTINCT date FROM instrument_snapshots ORDER BY date ASC")
        return [row[0] for row in rows]

    def latest_snapshot_date(self, on_or_before: str) -> Optional[str]:
        """Most recent snapshot date <= *on_or_before*; never a later date."""
        rows = self._fetchall(
            "SELECT MAX(date) FROM instrument_snapshots WHERE date <= ?", (on_or_before,)
        )
        return rows[0][0] if rows else None

    def spreads(self, start: Optional[str] = None, end: Optional[str] = None) -> pd.DataFrame:
        sql = f"SELECT {', '.join(SPREAD_COLUMNS)} FROM term_spreads WHERE 1=1"
        params: list = []
        if start:
            sql += " AND date >= ?"
            params.append(start)
        if end:
            sql += " AND date <= ?"
            params.append(end)
        sql += " ORDER BY date ASC"
        return self._query(sql, params)

    def spread_on(self, date: str) -> Optional[dict]:
        df = self._query(f"SELECT {', '.join(SPREAD_COLUMNS)} FROM term_spreads WHERE date = ?", [date])
        if df.empty:
            return None
        return df.iloc[0].to_dict()

    def latest_spread(self, on_or_before: str) -> Optional[dict]:
        """Most recent spread row with date <= *on_or_before*, or None."""
        df = self._query(
            f"SELECT {', '.join(SPREAD_COLUMNS)} FROM term_spreads WHERE date <= ? ORDER BY date DESC LIMIT 1",
            [on_or_before],
        )
        if df.empty:
            return None
        return df.iloc[0].to_dict()

    def prices(self, start: Optional[str] = None, end: Optional[str] = None) -> pd.DataFrame:
        sql = "SELECT date, price, change_24h FROM spot_prices WHERE 1=1"
        params: list = []
        if start:
            sql += " AND date >= ?"
            params.append(start)
        if end:
            sql += " AND date <= ?"
            params.append(end)
        sql += " ORDER BY date ASC"
        return self._query(sql, params)

    def yield_series(self, source: str) -> pd.DataFrame:
        return self._query(
            "SELECT date, value, total_value_locked FROM yield_series WHERE source = ? ORDER BY date ASC",
            [source],
        )

    def spreads_with_prices(self, start: Optional[str] = None, end: Optional[str] = None) -> pd.DataFrame:
        """Spread series left-joined with the spot price and aggregator APY of the same date."""
        sql = """
            SELECT ts.*, sp.price AS price, ys.value AS aggregator_apy
            FROM term_spreads ts
            LEFT JOIN spot_prices sp  ON ts.date = sp.date
            LEFT JOIN yield_series ys ON ts.date = ys.date AND ys.source = 'defillama'
            WHERE 1=1
        """
        params: list = []
        if start:
            sql += " AND ts.date >= ?"
            params.append(start)
        if end:
            sql += " AND ts.date <= ?"
            params.append(end)
        sql += " ORDER BY ts.date ASC"
        return self._query(sql, params)

    def sync_log(self, limit: int = 20) -> pd.DataFrame:
        return self._query(
            "SELECT * FROM sync_log ORDER BY id DESC LIMIT ?", [max(1, int(limit))]
        )

    def stats(self) -> dict:
        """Row counts and date ranges per table."""
        def _count(table: str) -> int:
            return int(self._fetchall(f"SELECT COUNT(*) FROM {table}")[0][0])

        snap_range = self._fetchall(
            "SELECT MIN(date), MAX(date) FROM instrument_snapshots"
        )[0]
        spread_range = self._fetchall(
            "SELECT MIN(date), MAX(date), MIN(spread), MAX(spread), AVG(spread) FROM term_spreads"
        )[0]
        return {
            "markets":      _count("markets"),
            "snapshots":    _count("instrument_snapshots"),
            "term_spreads": _count("term_spreads"),
            "spot_prices":  _count("spot_prices"),
            "yield_rows":   _count("yield_series"),
            "snapshot_range": {"earliest": snap_range[0], "latest": snap_range[1]},
            "spread_range": {
                "earliest":   spread_range[0],
                "latest":     spread_range[1],
                "min_spread": spread_range[2],
                "max_spread": spread_range[3],
                "avg_spread": spread_range[4],
            },
        }


# ── Parquet export (derived features) ─────────────────────────────────────────

def save(df: pd.DataFrame, path: Path, source: str = "") -> None:
    """
    Write *df* to *path* as Parquet.

    Creates parent directories automatically. Metadata (last_updated_utc,
    source, row_count, schema_hash) is embedded via pandas attrs.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    schema_hash = hashlib.md5(
        str(sorted((str(k), str(v)) for k, v in df.dtypes.to_dict().items())).encode()
    ).hexdigest()[:8]

    df.attrs["export_meta"] = {
        "last_updated_utc": _utc_now_iso(),
        "source":           source,
        "row_count":        len(df),
        "schema_hash":      schema_hash,
    }

    df.to_parquet(str(path), engine="pyarrow", compression="snappy")
    logger.info("Saved %d rows → %s", len(df), path)


def load(path: Path) -> pd.DataFrame:
    """Load a Parquet file; return an empty DataFrame if the file does not exist."""
    if not path.exists():
        logger.debug("File not found: %s. Returning empty DataFrame.", path)
        return pd.DataFrame()

    df = pd.read_parquet(str(path), engine="pyarrow")
    logger.info("Loaded %d rows ← %s", len(df), path)
    return df


def get_meta(path: Path) -> dict:
    """Return metadata dict for a parquet file, or {} if missing."""
    return load(path).attrs.get("export_meta", {})
