"""Tests for series splicing and date-continuity validation."""

from datetime import date, timedelta

import numpy as np
import pandas as pd
import pytest

from firedanger.errors import SeriesIntegrityViolation
from firedanger.grid.io import write_daily_grid
from firedanger.pipelines.timeseries import (
    TimeSeriesAssembler,
    apply_transform,
    splice,
    validate_dates,
)
from firedanger.store.variable_store import HistoricalRecord, VariableStore

START = date(2026, 7, 15)


def _dates(first, n):
    return pd.date_range(pd.Timestamp(first), periods=n, freq="D").to_numpy().copy()


def _kind(times, window=5, horizon=7):
    with pytest.raises(SeriesIntegrityViolation) as exc:
        validate_dates(times, START, window, horizon)
    return exc.value.kind


class TestSplice:
    def test_older_slots_fill_first_newer_extend(self, make_daily):
        history = make_daily(date(2026, 7, 1), 10, fill=0.0)  # 1..10
        slot2 = make_daily(date(2026, 7, 9), 5, fill=2.0)  # 9..13
        slot1 = make_daily(date(2026, 7, 10), 6, fill=1.0)  # 10..15
        slot0 = make_daily(date(2026, 7, 11), 7, fill=9.0)  # 11..17

        series = splice(history, [slot2, slot1, slot0])

        assert series.sizes["time"] == 17
        per_day = series.values[:, 0, 0].tolist()
        assert per_day == [0.0] * 10 + [2.0] * 3 + [1.0] * 2 + [9.0] * 2

    def test_snapshot_without_new_days_is_skipped(self, make_daily):
        history = make_daily(date(2026, 7, 1), 10)
        old = make_daily(date(2026, 7, 1), 5, fill=5.0)
        assert splice(history, [old]).sizes["time"] == 10

    def test_grid_mismatch_rejected(self, make_daily):
        history = make_daily(date(2026, 7, 1), 10)
        other = make_daily(date(2026, 7, 11), 5, nx=3)
        with pytest.raises(ValueError):
            splice(history, [other])


class TestValidateDates:
    def test_continuous_series_passes(self):
        validate_dates(_dates(START - timedelta(days=4), 12), START, 5, 7)

    def test_duplicate_dates(self):
        times = np.concatenate(
            [_dates(START - timedelta(days=10), 10), _dates(START - timedelta(days=1), 9)]
        )
        assert _kind(times) == "duplicate_dates"

    def test_unordered_dates(self):
        times = _dates(START - timedelta(days=10), 20)
        times[[3, 4]] = times[[4, 3]]
        assert _kind(times) == "unordered_dates"

    def test_date_gaps(self):
        times = np.delete(_dates(START - timedelta(days=10), 20), 5)
        assert _kind(times) == "date_gaps"

    def test_insufficient_history(self):
        assert _kind(_dates(START - timedelta(days=3), 11)) == "insufficient_history"

    def test_insufficient_forecast(self):
        assert _kind(_dates(START - timedelta(days=4), 11)) == "insufficient_forecast"

    def test_window_of_one_needs_no_history(self):
        validate_dates(_dates(START, 8), START, 1, 7)


class TestTimeSeriesAssembler:
    def _store(self, root, make_daily, var, slots):
        store = VariableStore(var, root)
        for slot, (start, fill) in slots.items():
            write_daily_grid(make_daily(start, 10, fill=fill, name=var), store.slot_path(slot), var)
        return store

    def _history(self, make_daily, var, fill=1.0):
        data = make_daily(date(2026, 6, 5), 39, fill=fill, name=var)
        return HistoricalRecord("middle_rockies", var, data)

    def test_assemble_with_previous_issue(self, tmp_path, make_daily):
        self._store(
            tmp_path, make_daily, "vpd", {0: (START, 2.0), 1: (START - timedelta(days=1), 1.5)}
        )
        assembler = TimeSeriesAssembler(str(tmp_path), horizon=7)

        series = assembler.assemble("vpd", self._history(make_daily, "vpd"), START, 5)

        assert pd.Timestamp(series["time"].values[-1]).date() == START + timedelta(days=9)
        # slot 1 covers every day it has after history; slot 0 only extends the tail
        assert float(series.sel(time=pd.Timestamp(START - timedelta(days=1))).values[0, 0]) == 1.5
        assert float(series.sel(time=pd.Timestamp(START)).values[0, 0]) == 1.5
        assert float(series.values[-1, 0, 0]) == 2.0

    def test_gap_between_history_and_forecast(self, tmp_path, make_daily):
        self._store(tmp_path, make_daily, "vpd", {0: (START, 2.0)})
        assembler = TimeSeriesAssembler(str(tmp_path), horizon=7)

        with pytest.raises(SeriesIntegrityViolation) as exc:
            assembler.assemble("vpd", self._history(make_daily, "vpd"), START, 5)
        assert exc.value.kind == "date_gaps"

    def test_missing_current_slot(self, tmp_path):
        with pytest.raises(SeriesIntegrityViolation):
            TimeSeriesAssembler(str(tmp_path)).load_snapshots("vpd")

    def test_fuel_moisture_is_inverted(self, make_daily):
        series = make_daily(START, 3, fill=30.0, name="fm1000")
        assert float(apply_transform(series, "fm1000").values.max()) == 70.0
        assert apply_transform(series, "vpd") is series

    def test_mean_temperature_from_coupled_pair(self, tmp_path, make_daily):
        before = START - timedelta(days=1)
        self._store(tmp_path, make_daily, "tmmx", {0: (START, 300.0), 1: (before, 300.0)})
        self._store(tmp_path, make_daily, "tmmn", {0: (START, 280.0), 1: (before, 280.0)})
        assembler = TimeSeriesAssembler(str(tmp_path), horizon=7)

        gdd = assembler.assemble_mean_temperature(
            self._history(make_daily, "tmmx", 300.0),
            self._history(make_daily, "tmmn", 280.0),
            START,
            15,
        )

        assert gdd.name == "gdd_0"
        assert float(gdd.values.min()) == float(gdd.values.max()) == 290.0

    def test_mean_temperature_slot_mismatch(self, tmp_path, make_daily):
        before = START - timedelta(days=1)
        self._store(tmp_path, make_daily, "tmmx", {0: (START, 300.0), 1: (before, 300.0)})
        self._store(tmp_path, make_daily, "tmmn", {0: (START, 280.0)})
        assembler = TimeSeriesAssembler(str(tmp_path), horizon=7)

        with pytest.raises(SeriesIntegrityViolation):
            assembler.assemble_mean_temperature(
                self._history(make_daily, "tmmx"),
                self._history(make_daily, "tmmn"),
                START,
                15,
            )
