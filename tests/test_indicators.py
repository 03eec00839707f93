"""
Technical indicator tests.
"""

import math

import pandas as pd
import pytest

from stockwatch.database.repository import PriceHistoryRepository
from stockwatch.indicators.engine import IndicatorEngine, kd_series, macd_series, rsi_series


class TestRsi:
    """Tests for Wilder RSI."""

    def test_hand_computed_values(self):
        """Should seed with the simple mean then apply Wilder smoothing."""
        result = rsi_series(pd.Series([1.0, 2.0, 1.0, 2.0]), period=2)

        assert math.isnan(result.iloc[1])
        assert result.iloc[2] == pytest.approx(50.0)
        assert result.iloc[3] == pytest.approx(75.0)

    def test_only_gains(self):
        """Should be 100 when there are no losses."""
        result = rsi_series(pd.Series([float(x) for x in range(100, 120)]))

        assert result.iloc[-1] == 100.0

    def test_flat(self):
        """Should be 50 when the price never moves."""
        assert rsi_series(pd.Series([10.0] * 20)).iloc[-1] == 50.0

    def test_too_short(self):
        """Should be undefined without period + 1 closes."""
        assert rsi_series(pd.Series([1.0] * 14)).isna().all()


class TestKd:
    """Tests for stochastic K/D."""

    def test_seeded_at_fifty(self):
        """Should apply 1/3 smoothing from a 50/50 seed."""
        prices = pd.Series([1.0, 2.0, 3.0, 4.0])

        kd = kd_series(prices, prices, prices, period=3)

        assert math.isnan(kd["k"].iloc[1])
        assert kd["k"].iloc[2] == pytest.approx(50 * 2 / 3 + 100 / 3)
        assert kd["d"].iloc[2] == pytest.approx(50 * 2 / 3 + kd["k"].iloc[2] / 3)

    def test_flat_window_rsv_is_fifty(self):
        """Should use RSV 50 when the window has no range."""
        prices = pd.Series([10.0] * 12)

        kd = kd_series(prices, prices, prices)

        assert kd["k"].iloc[-1] == pytest.approx(50.0)
        assert kd["d"].iloc[-1] == pytest.approx(50.0)


class TestMacd:
    """Tests for MACD."""

    def test_flat_series(self):
        """Should be zero for a constant price."""
        macd = macd_series(pd.Series([50.0] * 40))

        assert macd["dif"].iloc[-1] == pytest.approx(0.0)
        assert macd["histogram"].iloc[-1] == pytest.approx(0.0)

    def test_rising_series_positive(self):
        """Should have a positive DIF when prices rise."""
        macd = macd_series(pd.Series([float(x) for x in range(40)]))

        assert macd["dif"].iloc[-1] > 0


class TestIndicatorEngine:
    """Tests for snapshots built from stored history."""

    def test_snapshot_values(self, db, seed_history):
        """Should derive MA and N-day extremes from prior closes."""
        closes = [float(x) for x in range(100, 130)]
        seed_history("2330", closes)
        engine = IndicatorEngine(PriceHistoryRepository(db))

        snapshot = engine.snapshot("2330")

        assert snapshot.points == 30
        assert snapshot.latest_close == 129.0
        assert snapshot.previous_close == 128.0
        assert snapshot.ma == pytest.approx(118.5)
        assert snapshot.high_n == 128.0
        assert snapshot.low_n == 109.0
        assert snapshot.ma20 == pytest.approx(119.5)
        assert snapshot.rsi == 100.0
        assert snapshot.dif > 0

    def test_not_enough_history(self, db, seed_history):
        """Should return None below the minimum point count."""
        seed_history("2330", [100.0] * 10)
        engine = IndicatorEngine(PriceHistoryRepository(db))

        assert engine.snapshot("2330") is None
        assert engine.snapshot("2330", min_points=10) is not None

    def test_unknown_security(self, db):
        """Should return None without any history."""
        assert IndicatorEngine(PriceHistoryRepository(db)).snapshot("2330") is None

    def test_as_of_excludes_later_rows(self, db, seed_history):
        """Should ignore rows after the evaluation date."""
        days = seed_history("2330", [float(x) for x in range(100, 130)])
        engine = IndicatorEngine(PriceHistoryRepository(db))

        snapshot = engine.snapshot("2330", as_of=days[-2])

        assert snapshot.as_of == days[-2]
        assert snapshot.latest_close == 128.0
        assert snapshot.points == 29

    def test_volume_ratio(self, db, seed_history):
        """Should compare the latest volume with the prior average."""
        volumes = [1_000_000] * 29 + [3_000_000]
        seed_history("2330", [100.0] * 30, volumes=volumes)
        engine = IndicatorEngine(PriceHistoryRepository(db))

        snapshot = engine.snapshot("2330")

        assert snapshot.avg_volume == 1_000_000
        assert snapshot.volume_ratio == pytest.approx(3.0)

    def test_volume_ratio_needs_prior_points(self, db, seed_history):
        """Should leave the ratio undefined with fewer than 5 prior days."""
        seed_history("2330", [100.0] * 5)
        engine = IndicatorEngine(PriceHistoryRepository(db))

        snapshot = engine.snapshot("2330", min_points=1)

        assert snapshot.volume_ratio is None
        assert snapshot.ma is None
