import math

import pandas as pd
import pytest

from external_data.storage import Store
from spread_engine import (
    SKIP_EMPTY_BACK_LEG,
    SKIP_EMPTY_FRONT_LEG,
    SKIP_NO_LIVE_MATURITIES,
    compute_spread_for_date,
    compute_term_spreads,
    rebuild_spreads,
    recompute_smoothing,
    smooth_spreads,
    spread_records,
)


def _snap(date, instrument_id, maturity, implied, underlying=None, tvl=None):
    return {
        "date": date,
        "instrument_id": instrument_id,
        "maturity": maturity,
        "implied_yield": implied,
        "underlying_yield": underlying if underlying is not None else float("nan"),
        "total_value_locked": tvl if tvl is not None else float("nan"),
        "days_to_maturity": (pd.Timestamp(maturity) - pd.Timestamp(date)).days,
    }


def _snapshots(rows):
    return pd.DataFrame(rows)


def test_two_maturities_give_back_minus_front():
    df = _snapshots([
        _snap("2024-06-01", "0xa", "2024-07-01", 0.04, underlying=0.10),
        _snap("2024-06-01", "0xb", "2024-12-01", 0.06, underlying=0.11),
    ])
    rec, reason = compute_spread_for_date("2024-06-01", df)

    assert reason is None
    assert rec.date == "2024-06-01"
    assert rec.spread == pytest.approx(0.02)
    assert rec.maturity_count == 2
    assert rec.front_maturity == "2024-07-01"
    assert rec.back_maturity == "2024-12-01"
    assert rec.front_instrument_id == "0xa"
    assert rec.back_instrument_id == "0xb"
    # underlying yield comes from the front leg
    assert rec.underlying_yield == pytest.approx(0.10)


def test_single_maturity_has_zero_spread_and_identical_legs():
    df = _snapshots([_snap("2024-06-02", "0xa", "2024-07-01", 0.045)])
    rec, reason = compute_spread_for_date("2024-06-02", df)

    assert reason is None
    assert rec.spread == 0
    assert rec.maturity_count == 1
    assert rec.is_single_maturity
    assert rec.front_instrument_id == rec.back_instrument_id
    assert rec.front_implied_yield == rec.back_implied_yield == pytest.approx(0.045)


def test_instruments_sharing_a_maturity_are_averaged():
    df = _snapshots([
        _snap("2024-06-01", "0xc", "2024-07-01", 0.04),
        _snap("2024-06-01", "0xa", "2024-07-01", 0.06),
        _snap("2024-06-01", "0xb", "2024-12-01", 0.08),
    ])
    rec, _ = compute_spread_for_date("2024-06-01", df)

    assert rec.front_implied_yield == pytest.approx(0.05)
    assert rec.spread == pytest.approx(0.03)
    # smallest id represents the leg, whatever the row order
    assert rec.front_instrument_id == "0xa"
    assert rec.maturity_count == 2


def test_expired_and_maturing_instruments_are_excluded():
    df = _snapshots([
        _snap("2024-06-01", "0xold", "2024-05-01", 0.01),
        _snap("2024-06-01", "0xtoday", "2024-06-01", 0.02),
        _snap("2024-06-01", "0xa", "2024-07-01", 0.04),
        _snap("2024-06-01", "0xb", "2024-12-01", 0.06),
    ])
    rec, _ = compute_spread_for_date("2024-06-01", df)

    assert rec.front_maturity == "2024-07-01"
    assert rec.maturity_count == 2


def test_date_with_only_expired_instruments_is_skipped():
    df = _snapshots([_snap("2024-06-01", "0xold", "2024-05-01", 0.01)])
    rec, reason = compute_spread_for_date("2024-06-01", df)

    assert rec is None
    assert reason == SKIP_NO_LIVE_MATURITIES


def test_missing_implied_yield_is_left_out_of_the_leg_mean():
    df = _snapshots([
        _snap("2024-06-01", "0xa", "2024-07-01", 0.04),
        _snap("2024-06-01", "0xz", "2024-07-01", float("nan")),
        _snap("2024-06-01", "0xb", "2024-12-01", 0.06),
    ])
    rec, _ = compute_spread_for_date("2024-06-01", df)

    assert rec.front_implied_yield == pytest.approx(0.04)
    assert rec.front_instrument_id == "0xa"


def test_leg_without_any_implied_yield_skips_the_date():
    front_empty = _snapshots([
        _snap("2024-06-01", "0xa", "2024-07-01", float("nan")),
        _snap("2024-06-01", "0xb", "2024-12-01", 0.06),
    ])
    back_empty = _snapshots([
        _snap("2024-06-01", "0xa", "2024-07-01", 0.04),
        _snap("2024-06-01", "0xb", "2024-12-01", float("nan")),
    ])

    assert compute_spread_for_date("2024-06-01", front_empty) == (None, SKIP_EMPTY_FRONT_LEG)
    assert compute_spread_for_date("2024-06-01", back_empty) == (None, SKIP_EMPTY_BACK_LEG)


def test_backwardation_gives_negative_spread():
    df = _snapshots([
        _snap("2024-06-01", "0xa", "2024-07-01", 0.15),
        _snap("2024-06-01", "0xb", "2024-12-01", 0.09),
    ])
    rec, _ = compute_spread_for_date("2024-06-01", df)
    assert rec.spread == pytest.approx(-0.06)


def test_compute_term_spreads_reports_skipped_dates():
    df = _snapshots([
        _snap("2024-06-01", "0xa", "2024-07-01", 0.04),
        _snap("2024-06-01", "0xb", "2024-12-01", 0.06),
        _snap("2024-06-02", "0xa", "2024-07-01", 0.04),
        _snap("2024-07-05", "0xa", "2024-07-01", 0.04),
    ])
    records, skipped = compute_term_spreads(df)

    assert [r.date for r in records] == ["2024-06-01", "2024-06-02"]
    assert skipped == {"2024-07-05": SKIP_NO_LIVE_MATURITIES}


def test_compute_term_spreads_empty_input():
    assert compute_term_spreads(pd.DataFrame()) == ([], {})


def test_smoothing_window_is_trailing_and_entry_based():
    s = pd.Series([float(i) for i in range(1, 11)], index=[f"2024-06-{d:02d}" for d in range(1, 11)])
    out = smooth_spreads(s)

    assert out.iloc[0] == pytest.approx(1.0)
    assert out.iloc[2] == pytest.approx(2.0)
    assert out.iloc[6] == pytest.approx(4.0)          # mean(1..7)
    assert out.iloc[9] == pytest.approx(7.0)          # mean(4..10)


def test_rebuild_is_idempotent_and_smoothing_survives(tmp_path):
    store = Store(tmp_path / "spreads.db")
    rows = []
    for day in range(1, 11):
        date = f"2024-06-{day:02d}"
        rows.append(_snap(date, "0xa", "2024-07-01", 0.04))
        rows.append(_snap(date, "0xb", "2024-12-01", 0.04 + day / 1000))
    store.upsert_snapshots(_snapshots(rows))

    first = rebuild_spreads(store)
    recompute_smoothing(store)
    before = store.spreads()

    second = rebuild_spreads(store)
    after_rebuild = store.spreads()
    recompute_smoothing(store)
    after = store.spreads()
    store.close()

    assert first["computed"] == second["computed"] == 10
    pd.testing.assert_frame_equal(before, after)
    # re-upserting raw spreads must not wipe the smoothed column
    assert after_rebuild["spread_smoothed"].notna().all()
    assert after["spread_smoothed"].iloc[-1] == pytest.approx(
        after["spread"].iloc[-7:].mean()
    )


def test_spread_records_round_trip_nullable_fields(tmp_path):
    store = Store(tmp_path / "spreads.db")
    store.upsert_snapshots(_snapshots([_snap("2024-06-02", "0xa", "2024-07-01", 0.045)]))
    rebuild_spreads(store)

    [rec] = spread_records(store)
    store.close()

    assert rec.underlying_yield is None
    assert rec.spread_smoothed is None
    assert rec.maturity_count == 1
    assert not math.isnan(rec.front_implied_yield)


def test_rebuild_drops_rows_for_dates_that_are_now_skipped(tmp_path):
    store = Store(tmp_path / "spreads.db")
    store.upsert_snapshots(_snapshots([
        _snap("2024-06-01", "0xa", "2024-07-01", 0.04),
        _snap("2024-06-01", "0xb", "2024-12-01", 0.06),
        _snap("2024-06-02", "0xa", "2024-07-01", 0.04),
        _snap("2024-06-02", "0xb", "2024-12-01", 0.06),
    ]))
    assert rebuild_spreads(store)["computed"] == 2

    # the front leg loses its yield on 06-01; 06-02 now only carries a matured market
    store.upsert_snapshots(_snapshots([_snap("2024-06-01", "0xa", "2024-07-01", None)]))
    store.upsert_snapshots(_snapshots([
        _snap("2024-06-02", "0xa", "2024-06-02", 0.04),
        _snap("2024-06-02", "0xb", "2024-06-02", 0.06),
    ]))
    summary = rebuild_spreads(store)
    remaining = store.spreads()
    store.close()

    assert summary["skipped"] == {
        "2024-06-01": SKIP_EMPTY_FRONT_LEG,
        "2024-06-02": SKIP_NO_LIVE_MATURITIES,
    }
    assert remaining.empty


def test_rebuild_of_one_date_leaves_other_dates_alone(tmp_path):
    store = Store(tmp_path / "spreads.db")
    store.upsert_snapshots(_snapshots([
        _snap("2024-06-01", "0xa", "2024-07-01", 0.04),
        _snap("2024-06-02", "0xa", "2024-07-01", 0.04),
    ]))
    rebuild_spreads(store)
    store.upsert_snapshots(_snapshots([_snap("2024-06-02", "0xa", "2024-07-01", None)]))

    rebuild_spreads(store, dates=["2024-06-02"])
    remaining = store.spreads()
    store.close()

    assert list(remaining["date"]) == ["2024-06-01"]


def test_skip_log_messages_name_the_date(caplog):
    df = _snapshots([
        _snap("2024-06-01", "0xa", "2024-07-01", None),
        _snap("2024-06-01", "0xb", "2024-12-01", 0.05),
    ])
    with caplog.at_level("WARNING", logger="spread_engine"):
        compute_spread_for_date("2024-06-01", df)

    assert "2024-06-01: every front-leg snapshot (2024-07-01) lacks an implied yield: skipped." in caplog.text
