"""
regime.py
Maps a term spread to a curve shape, a market regime and a forward-return
probability estimate.

──────────────────────────────────────────────
  CONFIGURATION — thresholds are in percentage points of spread
  (spread × 100). Everything flows from CONFIG.
──────────────────────────────────────────────

  spread_pct  > 2.0            steep-contango        strongly-bullish
  (0.5, 2.0]                   contango              bullish
  (-0.5, 0.5]                  flat                  neutral
  (-5.0, -0.5]                 backwardation         mildly-bearish
  <= -5.0                      steep-backwardation   bearish
  single maturity              single-maturity       no-signal

probability_positive_forward = clamp(50 + spread_pct * prob_slope, 5, 95).
This is a placeholder linear heuristic with no statistical fit behind it. It is
kept behind classify() so it can be swapped for a fitted model without touching
the spread engine.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

import pandas as pd

from spread_engine import SpreadRecord
from term_structure import build_term_structure

# ══════════════════════════════════════════════════════════════════════════════
#  CONFIG — single source of truth for every threshold and coefficient.
# ══════════════════════════════════════════════════════════════════════════════

CONFIG: dict = {
    "steep_contango_pct":       2.0,
    "contango_pct":             0.5,
    "flat_floor_pct":          -0.5,
    "steep_backwardation_pct": -5.0,

    "prob_base":               50.0,
    "prob_slope":               8.0,   # probability points per spread point
    "prob_min":                 5.0,
    "prob_max":                95.0,
}

KIND_SMOOTHED = "smoothed"
KIND_RAW      = "raw"
KIND_SINGLE   = "single-maturity"
SPREAD_KINDS  = (KIND_SMOOTHED, KIND_RAW, KIND_SINGLE)

SHAPE_STEEP_CONTANGO      = "steep-contango"
SHAPE_CONTANGO            = "contango"
SHAPE_FLAT                = "flat"
SHAPE_BACKWARDATION       = "backwardation"
SHAPE_STEEP_BACKWARDATION = "steep-backwardation"
SHAPE_SINGLE_MATURITY     = "single-maturity"

REGIME_STRONGLY_BULLISH = "strongly-bullish"
REGIME_BULLISH          = "bullish"
REGIME_NEUTRAL          = "neutral"
REGIME_MILDLY_BEARISH   = "mildly-bearish"
REGIME_BEARISH          = "bearish"
REGIME_NO_SIGNAL        = "no-signal"

CONTANGO_SHAPES      = (SHAPE_STEEP_CONTANGO, SHAPE_CONTANGO)
BACKWARDATION_SHAPES = (SHAPE_BACKWARDATION, SHAPE_STEEP_BACKWARDATION)

# shape → (regime, description, forward outlook)
_BUCKETS: dict[str, tuple[str, str, str]] = {
    SHAPE_STEEP_CONTANGO: (
        REGIME_STRONGLY_BULLISH,
        "Back-maturity implied yield sits well above the front. The forward curve "
        "slopes steeply upward: the market prices funding rates staying high or rising.",
        "Strong positive skew expected over 90-120d",
    ),
    SHAPE_CONTANGO: (
        REGIME_BULLISH,
        "Back-maturity implied yield prices above the front. The market expects "
        "funding rates to persist or rise.",
        "Positive return skew likely over 90d",
    ),
    SHAPE_FLAT: (
        REGIME_NEUTRAL,
        "The term structure is approximately flat, with no directional conviction "
        "on future funding rates.",
        "Negligible signal, near coin-flip probability",
    ),
    SHAPE_BACKWARDATION: (
        REGIME_MILDLY_BEARISH,
        "Back-maturity implied yield is below the front. The market expects funding "
        "rates to decline from current levels.",
        "Slightly negative skew, within the normal range",
    ),
    SHAPE_STEEP_BACKWARDATION: (
        REGIME_BEARISH,
        "The term structure is deeply inverted. The market expects a substantial "
        "decline in funding rates.",
        "Negative return skew expected, drawdown risk elevated",
    ),
}


@dataclass(frozen=True)
class RegimeClassification:
    shape: str
    regime: str
    description: str
    outlook: str
    spread_value: float                 # percentage points, rounded to 2 dp
    spread_kind: str
    probability_positive_forward: float  # percent, one decimal

    @property
    def has_signal(self) -> bool:
        return self.regime != REGIME_NO_SIGNAL

    def to_dict(self) -> dict:
        return asdict(self)


NO_SIGNAL = RegimeClassification(
    shape=SHAPE_SINGLE_MATURITY,
    regime=REGIME_NO_SIGNAL,
    description=(
        "Only one maturity is active. A term spread needs two or more simultaneous "
        "maturities, so the spread is recorded as zero and carries no direction."
    ),
    outlook="No signal: a single maturity cannot produce a term spread",
    spread_value=0.0,
    spread_kind=KIND_SINGLE,
    probability_positive_forward=50.0,
)


def shape_for(spread_pct: float, cfg: Optional[dict] = None) -> str:
    """Curve shape for a percentage-scaled spread."""
    cfg = cfg or CONFIG
    if spread_pct > cfg["steep_contango_pct"]:
        return SHAPE_STEEP_CONTANGO
    if spread_pct > cfg["contango_pct"]:
        return SHAPE_CONTANGO
    if spread_pct > cfg["flat_floor_pct"]:
        return SHAPE_FLAT
    if spread_pct > cfg["steep_backwardation_pct"]:
        return SHAPE_BACKWARDATION
    return SHAPE_STEEP_BACKWARDATION


def probability_positive_forward(spread_pct: float, cfg: Optional[dict] = None) -> float:
    cfg = cfg or CONFIG
    p = cfg["prob_base"] + spread_pct * cfg["prob_slope"]
    return round(max(cfg["prob_min"], min(cfg["prob_max"], p)), 1)


def classify(spread_pct: float, spread_kind: str = KIND_RAW, cfg: Optional[dict] = None) -> RegimeClassification:
    """
    Classify a spread expressed in percentage points (spread × 100).

    No state, no side effects. A single-maturity spread always returns
    NO_SIGNAL whatever the numeric value.
    """
    if spread_kind not in SPREAD_KINDS:
        raise ValueError(f"Unknown spread kind {spread_kind!r}; expected one of {SPREAD_KINDS}")
    if spread_kind == KIND_SINGLE:
        return NO_SIGNAL

    shape = shape_for(spread_pct, cfg)
    regime, description, outlook = _BUCKETS[shape]
    if spread_kind == KIND_SMOOTHED:
        description += " (Based on the 7-day moving average.)"

    return RegimeClassification(
        shape=shape,
        regime=regime,
        description=description,
        outlook=outlook,
        spread_value=round(spread_pct, 2),
        spread_kind=spread_kind,
        probability_positive_forward=probability_positive_forward(spread_pct, cfg),
    )


def _to_pct(value: float) -> float:
    # 0.07 - 0.05 is 0.020000000000000004; thresholds are compared on the rounded value
    return round(float(value) * 100, 10)


def spread_kind_for(record: SpreadRecord) -> tuple[float, str]:
    """
    Pick the value to classify for a record: smoothed > raw > single maturity.

    Returns (spread_pct, kind).
    """
    if record.maturity_count >= 2 and record.spread_smoothed is not None:
        return _to_pct(record.spread_smoothed), KIND_SMOOTHED
    if record.maturity_count >= 2:
        return _to_pct(record.spread), KIND_RAW
    return 0.0, KIND_SINGLE


def classify_record(record: SpreadRecord, cfg: Optional[dict] = None) -> RegimeClassification:
    spread_pct, kind = spread_kind_for(record)
    return classify(spread_pct, kind, cfg)


def latest_classification(store, as_of: Optional[str] = None) -> Optional[RegimeClassification]:
    """
    Classification of the latest resolvable spread on or before *as_of* (default today).

    Falls back to the newest stored spread when the latest snapshot date was
    skipped. None when no spread exists yet.
    """
    as_of = as_of or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    record = build_term_structure(store, as_of)["spread"]
    if record is None:
        row = store.latest_spread(as_of)
        if row is None:
            return None
        record = SpreadRecord.from_row(row)
    return classify_record(record)


def regime_breakdown(spreads: pd.Series, cfg: Optional[dict] = None) -> pd.DataFrame:
    """
    Share of raw spread observations (decimal) falling in each shape.

    Returns
    -------
    DataFrame: shape, count, share (fraction of total), in threshold order.
    """
    order = [
        SHAPE_STEEP_CONTANGO, SHAPE_CONTANGO, SHAPE_FLAT,
        SHAPE_BACKWARDATION, SHAPE_STEEP_BACKWARDATION,
    ]
    values = spreads.dropna().astype(float)
    total = len(values)
    shapes = values.map(lambda s: shape_for(_to_pct(s), cfg))
    counts = shapes.value_counts()
    return pd.DataFrame({
        "shape": order,
        "count": [int(counts.get(s, 0)) for s in order],
        "share": [(counts.get(s, 0) / total) if total else 0.0 for s in order],
    })
