"""Tests for rolling aggregates and percentile-of-dryness."""

from datetime import date

import numpy as np
import pytest

from firedanger.models.enums import Aggregation, RankRule
from firedanger.services.percentile import (
    PercentileEngine,
    percentile_of_dryness,
    prepare_values,
    rolling_aggregate,
)


def _unit_breakpoints(shape=(1, 1)):
    layers = np.arange(1, 100, dtype="float64")
    return np.broadcast_to(layers[:, None, None], (99, *shape)).copy()


class TestRollingAggregate:
    def test_five_day_mean(self, make_daily):
        """History of 9s then [10, 20, 30]: the 5-day mean on the last day is 15.6."""
        series = make_daily(date(2026, 7, 1), 10, fill=9.0)
        series.values[-3:] = np.array([10.0, 20.0, 30.0], dtype="float32")[:, None, None]

        mean = rolling_aggregate(series, 5, Aggregation.STATE)

        assert float(mean.values[-1, 0, 0]) == pytest.approx(15.6)

    def test_flux_is_a_sum(self, make_daily):
        series = make_daily(date(2026, 7, 1), 10, fill=9.0)
        series.values[-3:] = np.array([10.0, 20.0, 30.0], dtype="float32")[:, None, None]

        total = rolling_aggregate(series, 5, Aggregation.FLUX)

        assert float(total.values[-1, 0, 0]) == pytest.approx(78.0)

    def test_partial_windows_are_nan(self, make_daily):
        series = make_daily(date(2026, 7, 1), 6, fill=1.0)
        mean = rolling_aggregate(series, 3, Aggregation.STATE)
        assert np.isnan(mean.values[:2]).all()
        assert not np.isnan(mean.values[2:]).any()

    def test_window_of_one_is_identity(self, make_daily):
        series = make_daily(date(2026, 7, 1), 4, fill=2.0)
        assert rolling_aggregate(series, 1, Aggregation.FLUX) is series

    def test_invalid_window(self, make_daily):
        with pytest.raises(ValueError):
            rolling_aggregate(make_daily(date(2026, 7, 1), 4), 0, Aggregation.STATE)


class TestPercentileOfDryness:
    def test_value_between_breakpoints(self):
        """50.5 exceeds 50 unit-spaced breakpoints: percentile 0.50."""
        pct = percentile_of_dryness(np.array([[50.5]]), _unit_breakpoints())
        assert pct[0, 0] == pytest.approx(0.50)

    def test_every_count_maps_to_k_over_100(self):
        values = (np.arange(100) + 0.5)[None, :]
        pct = percentile_of_dryness(values, _unit_breakpoints((1, 100)))
        np.testing.assert_allclose(pct[0], np.arange(100) / 100.0, atol=1e-6)

    def test_ties_do_not_count(self):
        pct = percentile_of_dryness(np.array([[50.0]]), _unit_breakpoints())
        assert pct[0, 0] == pytest.approx(0.49)

    def test_nan_value_propagates(self):
        pct = percentile_of_dryness(np.array([[np.nan, 10.5]]), _unit_breakpoints((1, 2)))
        assert np.isnan(pct[0, 0])
        assert pct[0, 1] == pytest.approx(0.10)

    def test_nan_breakpoint_propagates(self):
        breakpoints = _unit_breakpoints((1, 2))
        breakpoints[40, 0, 1] = np.nan
        pct = percentile_of_dryness(np.array([[20.5, 20.5]]), breakpoints)
        assert pct[0, 0] == pytest.approx(0.20)
        assert np.isnan(pct[0, 1])

    def test_time_stack(self):
        values = np.array([[[0.5]], [[99.5]]])
        pct = percentile_of_dryness(values, _unit_breakpoints())
        assert pct.shape == (2, 1, 1)
        assert pct[:, 0, 0].tolist() == pytest.approx([0.0, 0.99])

    def test_wrong_breakpoint_count(self):
        with pytest.raises(ValueError):
            percentile_of_dryness(np.zeros((1, 1)), np.zeros((98, 1, 1)))

    def test_zero_inflated_rounding(self):
        breakpoints = _unit_breakpoints() / 10.0  # 0.1 .. 9.9
        values = prepare_values(np.array([[0.04]]), RankRule.ZERO_INFLATED)
        assert percentile_of_dryness(values, breakpoints)[0, 0] == 0.0
        assert prepare_values(np.array([0.04]), RankRule.PLAIN)[0] == pytest.approx(0.04)


class TestPercentileEngine:
    def test_one_grid_per_forecast_day(self, make_daily, unit_breakpoints):
        series = make_daily(date(2026, 6, 5), 50, fill=42.5)
        engine = PercentileEngine(horizon=7)

        pct = engine.percentiles(
            series, unit_breakpoints, 3, Aggregation.STATE, date(2026, 7, 15)
        )

        assert pct.name == "percentile"
        assert pct.dims == ("time", "y", "x")
        assert pct.sizes["time"] == 8
        np.testing.assert_allclose(pct.values, 0.42, atol=1e-6)

    def test_short_series_rejected(self, make_daily, unit_breakpoints):
        series = make_daily(date(2026, 6, 5), 44, fill=42.5)  # ends 2026-07-18
        with pytest.raises(ValueError):
            PercentileEngine(horizon=7).percentiles(
                series, unit_breakpoints, 3, Aggregation.STATE, date(2026, 7, 15)
            )
