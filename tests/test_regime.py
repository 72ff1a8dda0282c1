import pandas as pd
import pytest

from external_data.storage import Store
from regime import (
    CONFIG,
    KIND_RAW,
    KIND_SINGLE,
    KIND_SMOOTHED,
    NO_SIGNAL,
    REGIME_BEARISH,
    REGIME_BULLISH,
    REGIME_MILDLY_BEARISH,
    REGIME_NEUTRAL,
    REGIME_NO_SIGNAL,
    REGIME_STRONGLY_BULLISH,
    SHAPE_CONTANGO,
    SHAPE_FLAT,
    SHAPE_STEEP_BACKWARDATION,
    SHAPE_STEEP_CONTANGO,
    classify,
    classify_record,
    latest_classification,
    probability_positive_forward,
    regime_breakdown,
)
from spread_engine import SpreadRecord, compute_spread_for_date, rebuild_spreads, recompute_smoothing


@pytest.mark.parametrize(
    "spread_pct, regime",
    [
        (3.0, REGIME_STRONGLY_BULLISH),
        (2.0, REGIME_BULLISH),
        (0.6, REGIME_BULLISH),
        (0.5, REGIME_NEUTRAL),
        (-0.4, REGIME_NEUTRAL),
        (-0.5, REGIME_MILDLY_BEARISH),
        (-4.9, REGIME_MILDLY_BEARISH),
        (-5.0, REGIME_BEARISH),
    ],
)
def test_thresholds_are_strict(spread_pct, regime):
    assert classify(spread_pct).regime == regime


def test_two_percent_is_contango_not_steep():
    c = classify(2.0)
    assert c.shape == SHAPE_CONTANGO
    assert c.probability_positive_forward == 66.0
    assert classify(2.01).shape == SHAPE_STEEP_CONTANGO


def test_single_maturity_is_no_signal_whatever_the_value():
    c = classify(3.0, KIND_SINGLE)
    assert c is NO_SIGNAL
    assert c.regime == REGIME_NO_SIGNAL
    assert c.probability_positive_forward == 50.0
    assert not c.has_signal


def test_probability_is_clamped():
    assert probability_positive_forward(20.0) == 95.0
    assert probability_positive_forward(-20.0) == 5.0
    assert probability_positive_forward(0.0) == 50.0
    assert probability_positive_forward(1.234) == 59.9


def test_smoothed_kind_is_noted_in_description():
    raw = classify(1.0, KIND_RAW)
    smoothed = classify(1.0, KIND_SMOOTHED)
    assert smoothed.description.startswith(raw.description)
    assert smoothed.description.endswith("(Based on the 7-day moving average.)")
    assert smoothed.spread_kind == KIND_SMOOTHED


def test_unknown_kind_raises():
    with pytest.raises(ValueError):
        classify(1.0, "weekly")


def test_custom_config_thresholds():
    cfg = {**CONFIG, "contango_pct": 1.5}
    assert classify(1.0, cfg=cfg).shape == SHAPE_FLAT


def _record(spread, count=2, smoothed=None):
    return SpreadRecord(
        date="2024-06-01", front_instrument_id="0xa", front_maturity="2024-07-01",
        front_implied_yield=0.10, back_instrument_id="0xb", back_maturity="2024-12-01",
        back_implied_yield=0.10 + spread, spread=spread, underlying_yield=None,
        maturity_count=count, spread_smoothed=smoothed,
    )


def test_record_prefers_smoothed_then_raw():
    assert classify_record(_record(0.03, smoothed=0.01)).spread_kind == KIND_SMOOTHED
    assert classify_record(_record(0.03, smoothed=0.01)).spread_value == 1.0
    assert classify_record(_record(0.03)).spread_kind == KIND_RAW
    assert classify_record(_record(-0.08)).shape == SHAPE_STEEP_BACKWARDATION


def test_latest_classification_from_store(tmp_path):
    with Store(tmp_path / "r.db") as store:
        assert latest_classification(store, "2024-06-05") is None

        store.upsert_snapshots(pd.DataFrame([
            {"date": "2024-06-01", "instrument_id": "0xa", "maturity": "2024-07-01",
             "implied_yield": 0.04, "underlying_yield": None, "total_value_locked": None,
             "days_to_maturity": 30},
            {"date": "2024-06-01", "instrument_id": "0xb", "maturity": "2024-12-01",
             "implied_yield": 0.07, "underlying_yield": None, "total_value_locked": None,
             "days_to_maturity": 183},
        ]))
        rebuild_spreads(store)
        recompute_smoothing(store)

        c = latest_classification(store, "2024-06-05")
    assert c.shape == SHAPE_STEEP_CONTANGO
    assert c.spread_kind == KIND_SMOOTHED
    assert c.spread_value == 3.0


def test_regime_breakdown_counts_every_observation():
    spreads = pd.Series([0.03, 0.01, 0.0, -0.01, -0.06, float("nan")])
    out = regime_breakdown(spreads)

    assert out["count"].sum() == 5
    assert list(out["count"]) == [1, 1, 1, 1, 1]
    assert out["share"].sum() == pytest.approx(1.0)


def _record_from_yields(front, back):
    rows = pd.DataFrame([
        {"date": "2024-06-01", "instrument_id": "0xa", "maturity": "2024-07-01",
         "implied_yield": front, "underlying_yield": float("nan"),
         "total_value_locked": float("nan"), "days_to_maturity": 30},
        {"date": "2024-06-01", "instrument_id": "0xb", "maturity": "2024-12-01",
         "implied_yield": back, "underlying_yield": float("nan"),
         "total_value_locked": float("nan"), "days_to_maturity": 183},
    ])
    record, _ = compute_spread_for_date("2024-06-01", rows)
    return record


def test_two_point_spread_from_yields_is_contango():
    c = classify_record(_record_from_yields(0.05, 0.07))
    assert c.shape == SHAPE_CONTANGO
    assert c.regime == REGIME_BULLISH
    assert c.spread_value == 2.0
    assert c.probability_positive_forward == 66.0


def test_half_point_spread_from_yields_is_flat():
    c = classify_record(_record_from_yields(0.065, 0.07))
    assert c.shape == SHAPE_FLAT
    assert c.regime == REGIME_NEUTRAL


def test_regime_breakdown_uses_the_same_edges():
    out = regime_breakdown(pd.Series([0.07 - 0.05, 0.07 - 0.065])).set_index("shape")
    assert out.loc[SHAPE_CONTANGO, "count"] == 1
    assert out.loc[SHAPE_FLAT, "count"] == 1
    assert out.loc[SHAPE_STEEP_CONTANGO, "count"] == 0


def test_latest_classification_falls_back_past_a_skipped_date(tmp_path):
    with Store(tmp_path / "r.db") as store:
        store.upsert_snapshots(pd.DataFrame([
            {"date": "2024-06-01", "instrument_id": "0xa", "maturity": "2024-07-01",
             "implied_yield": 0.04, "underlying_yield": None, "total_value_locked": None,
             "days_to_maturity": 30},
            {"date": "2024-06-01", "instrument_id": "0xb", "maturity": "2024-12-01",
             "implied_yield": 0.05, "underlying_yield": None, "total_value_locked": None,
             "days_to_maturity": 183},
            # only a matured market on the latest date, so no spread there
            {"date": "2024-06-03", "instrument_id": "0xc", "maturity": "2024-06-03",
             "implied_yield": 0.09, "underlying_yield": None, "total_value_locked": None,
             "days_to_maturity": 0},
        ]))
        summary = rebuild_spreads(store)

        c = latest_classification(store, "2024-06-05")
    assert "2024-06-03" in summary["skipped"]
    assert c is not None
    assert c.spread_kind == KIND_RAW
    assert c.spread_value == 1.0
    assert c.shape == SHAPE_CONTANGO
