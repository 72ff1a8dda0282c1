import math

import numpy as np
import pandas as pd
import pytest

from analytics import (
    compute_deciles,
    find_price,
    forward_return,
    forward_return_scatter,
    price_map,
    realized_volatility,
    spread_histogram,
    spread_statistics,
    spread_volatility_series,
)


def _daily(start, values):
    dates = pd.date_range(start, periods=len(values), freq="D").strftime("%Y-%m-%d")
    return pd.DataFrame({"date": dates, "price": values})


def _spreads(start, values, smoothed=None):
    df = _daily(start, values).rename(columns={"price": "spread"})
    if smoothed is not None:
        df["spread_smoothed"] = smoothed
    return df


# ── Price lookup ──────────────────────────────────────────────────────────────

def test_forward_lookup_over_a_gap_takes_the_later_day_first():
    prices = {"2024-06-03": 100.0, "2024-08-30": 110.0, "2024-09-02": 120.0}

    assert find_price(prices, "2024-09-01") == 120.0
    assert forward_return(prices, "2024-06-03") == pytest.approx(0.20)


def test_earlier_day_used_when_later_one_is_missing():
    prices = {"2024-08-30": 110.0}
    assert find_price(prices, "2024-09-01") == 110.0


def test_nothing_beyond_three_days():
    prices = {"2024-06-03": 100.0, "2024-09-05": 130.0, "2024-08-28": 90.0}

    assert find_price(prices, "2024-09-01") is None
    assert forward_return(prices, "2024-06-03") is None
    assert find_price(prices, "2024-09-01", tolerance_days=4) == 130.0


def test_price_map_skips_missing_prices():
    df = pd.DataFrame({"date": ["2024-06-01", "2024-06-02"], "price": [100.0, None]})
    assert price_map(df) == {"2024-06-01": 100.0}
    assert price_map(pd.DataFrame()) == {}


# ── Deciles ───────────────────────────────────────────────────────────────────

def test_25_observations_give_ten_bins_with_remainder_in_last():
    spreads = _spreads("2024-01-01", [i / 1000 for i in range(25)])
    prices = price_map(_daily("2023-12-01", [100.0 + i for i in range(200)]))

    bins = compute_deciles(spreads, prices)

    assert len(bins) == 10
    assert [b.observation_count for b in bins] == [2] * 9 + [7]
    assert sum(b.observation_count for b in bins) == 25
    assert bins[0].spread_range == (0.0, 0.001)
    assert bins[-1].spread_high == pytest.approx(0.024)
    assert all(b.resolved_count == b.observation_count for b in bins)
    assert all(b.average_forward_return > 0 for b in bins)


def test_fewer_than_20_observations_give_no_bins():
    spreads = _spreads("2024-01-01", [0.01] * 19)
    assert compute_deciles(spreads, {}) == []


def test_unresolved_members_still_count():
    spreads = _spreads("2024-01-01", [i / 1000 for i in range(20)])
    # prices only cover the first ten base dates and their +90d targets
    prices = {}
    for i in range(10):
        base = (pd.Timestamp("2024-01-01") + pd.Timedelta(days=i))
        prices[base.strftime("%Y-%m-%d")] = 100.0
        prices[(base + pd.Timedelta(days=90)).strftime("%Y-%m-%d")] = 110.0

    bins = compute_deciles(spreads, prices, horizon_days=90)

    assert sum(b.observation_count for b in bins) == 20
    # neighbouring-day probing lets later bins borrow nearby prices, but the
    # last bins fall outside every tolerance window
    assert bins[-1].resolved_count == 0
    assert bins[-1].average_forward_return is None
    assert bins[0].average_forward_return == pytest.approx(0.10)


def test_deciles_are_ordered_by_spread_not_date():
    values = [((i * 7) % 20) / 100 for i in range(20)]
    bins = compute_deciles(_spreads("2024-01-01", values), {})

    lows = [b.spread_low for b in bins]
    assert lows == sorted(lows)
    assert bins[0].to_dict()["average_forward_return"] is None


# ── Scatter ───────────────────────────────────────────────────────────────────

def test_scatter_keeps_only_resolvable_dates():
    spreads = pd.DataFrame({
        "date": ["2024-06-01", "2024-06-20", "2024-06-21"],
        "spread": [0.01, 0.02, float("nan")],
    })
    prices = {"2024-06-01": 100.0, "2024-08-30": 150.0}

    out = forward_return_scatter(spreads, prices)

    assert list(out["date"]) == ["2024-06-01"]
    assert out["forward_return"].iloc[0] == pytest.approx(0.5)


# ── Volatility ────────────────────────────────────────────────────────────────

def test_realized_vol_needs_a_full_window():
    values = [100.0 * (1.01 if i % 2 else 0.99) for i in range(40)]
    vol = realized_volatility(_daily("2024-01-01", values))

    assert vol.iloc[:30].isna().all()
    assert vol.iloc[30:].notna().all()
    log_ret = np.log(np.array(values[1:31]) / np.array(values[:30]))
    assert vol.iloc[30] == pytest.approx(np.std(log_ret) * math.sqrt(365))


def test_realized_vol_is_nan_after_a_gap_never_zero():
    df = _daily("2024-01-01", [100.0 + (i % 3) for i in range(70)])
    df = df[df["date"] != "2024-02-05"]
    vol = realized_volatility(df)

    assert not pd.isna(vol["2024-02-04"])
    assert vol.loc["2024-02-05":"2024-03-06"].isna().all()
    assert not (vol.dropna() == 0).any()


def test_spread_vol_series_falls_back_to_raw_spread():
    spreads = _spreads("2024-02-01", [0.01, 0.02], smoothed=[0.015, float("nan")])
    prices = _daily("2024-01-01", [100.0 + (i % 2) for i in range(40)])

    out = spread_volatility_series(spreads, prices)

    assert list(out["spread_signal"]) == [0.015, 0.02]
    assert out["realized_vol"].notna().all()


# ── Distribution ──────────────────────────────────────────────────────────────

def test_histogram_buckets_on_a_two_point_grid():
    hist = spread_histogram(pd.Series([0.0, 0.019, 0.02, 0.05, -0.001]))

    assert list(hist["count"]) == [1, 2, 1, 1]
    assert hist["low"].iloc[0] == pytest.approx(-0.02)
    assert hist["low"].iloc[2] == pytest.approx(0.02)
    assert hist["mid"].iloc[1] == pytest.approx(0.01)
    assert spread_histogram(pd.Series(dtype=float)).empty


def test_statistics_flat_band_is_inclusive():
    stats = spread_statistics(pd.Series([0.005, -0.005, 0.0051, -0.02]))

    assert stats["flat"] == 2
    assert stats["contango"] == 1
    assert stats["backwardation"] == 1
    assert stats["total"] == 4
    assert spread_statistics(pd.Series(dtype=float)) is None


def test_statistics_band_edge_from_yield_difference():
    # 0.07 - 0.065 lands a hair above 0.005 in binary floating point
    stats = spread_statistics(pd.Series([0.07 - 0.065, 0.06 - 0.065]))
    assert stats["flat"] == 2
    assert stats["contango"] == 0
