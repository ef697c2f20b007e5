"""Continuous daily series assembly.

A series starts from the historical (gridMET) record and is extended with
forecast snapshots taken oldest first (bridge, 2, 1, 0). Each snapshot only
contributes days strictly after the series' current last date, so slot 0
has the final say on the most recent days.

Validation never repairs anything: any broken invariant raises
:class:`SeriesIntegrityViolation` and stops the run.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

import numpy as np
import pandas as pd
import xarray as xr

from firedanger.config import settings
from firedanger.errors import SeriesIntegrityViolation
from firedanger.grid.io import same_grid
from firedanger.models.variables import get_variable
from firedanger.store.variable_store import HistoricalRecord, VariableStore

logger = logging.getLogger(__name__)

INFILL_ORDER = (3, 2, 1, 0)


def _as_date(value) -> date:
    return pd.Timestamp(value).date()


def splice(history: xr.DataArray, forecasts: list[xr.DataArray]) -> xr.DataArray:
    """Append forecast days strictly after the running last date.

    *forecasts* must be ordered oldest first.
    """
    pieces = [history]
    last = history["time"].values.max()
    for snapshot in forecasts:
        if not same_grid(history, snapshot):
            raise ValueError(
                f"Forecast grid {snapshot.sizes['y']}x{snapshot.sizes['x']} does not match "
                f"historical grid {history.sizes['y']}x{history.sizes['x']}"
            )
        newer = np.flatnonzero(snapshot["time"].values > last)
        if newer.size == 0:
            continue
        infill = snapshot.isel(time=newer)
        logger.debug("Infilling %d day(s) after %s", newer.size, _as_date(last))
        pieces.append(infill)
        last = infill["time"].values.max()

    return xr.concat(pieces, dim="time", join="override", coords="minimal", compat="override")


def validate_dates(
    times,
    forecast_start: date,
    window: int,
    horizon: int | None = None,
    label: str = "series",
) -> None:
    """Check continuity of a series' dates.

    Raises:
        SeriesIntegrityViolation: kind is one of ``duplicate_dates``,
            ``unordered_dates``, ``date_gaps``, ``insufficient_history``,
            ``insufficient_forecast``.
    """
    horizon = settings.forecast_horizon_days if horizon is None else horizon
    index = pd.DatetimeIndex(times)
    if len(index) == 0:
        raise SeriesIntegrityViolation("insufficient_history", f"{label}: empty series")

    if index.has_duplicates:
        dupes = sorted({d.date().isoformat() for d in index[index.duplicated()]})
        raise SeriesIntegrityViolation(
            "duplicate_dates",
            f"{label}: duplicate dates {', '.join(dupes)}",
            {"dates": dupes},
        )

    if not index.is_monotonic_increasing:
        raise SeriesIntegrityViolation(
            "unordered_dates", f"{label}: dates are not strictly increasing"
        )

    steps = np.diff(index.values).astype("timedelta64[D]").astype(int)
    if (steps > 1).any():
        at = int(np.argmax(steps > 1))
        raise SeriesIntegrityViolation(
            "date_gaps",
            f"{label}: {int(steps[at]) - 1} missing day(s) after {index[at].date()}",
            {"after": index[at].date().isoformat()},
        )

    required_start = forecast_start - timedelta(days=window - 1)
    first, last = index[0].date(), index[-1].date()
    if first > required_start:
        raise SeriesIntegrityViolation(
            "insufficient_history",
            f"{label}: starts {first}, a {window}-day window needs data from {required_start}",
            {"first": first.isoformat(), "required": required_start.isoformat()},
        )

    required_end = forecast_start + timedelta(days=horizon)
    if last < required_end:
        raise SeriesIntegrityViolation(
            "insufficient_forecast",
            f"{label}: ends {last}, forecast needs data through {required_end}",
            {"last": last.isoformat(), "required": required_end.isoformat()},
        )


def apply_transform(series: xr.DataArray, variable: str) -> xr.DataArray:
    """Orient the series so that higher always means drier."""
    var = get_variable(variable)
    if var.invert_from is not None:
        return (var.invert_from - series).rename(series.name)
    return series


class TimeSeriesAssembler:
    """Builds validated continuous series from a store and a historical record."""

    def __init__(self, forecast_root: str | None = None, horizon: int | None = None):
        self.forecast_root = forecast_root
        self.horizon = settings.forecast_horizon_days if horizon is None else horizon

    def load_snapshots(self, variable: str) -> list[xr.DataArray]:
        """Present slots of *variable* as arrays, oldest first."""
        store = VariableStore(variable, self.forecast_root)
        snapshots = store.snapshots()
        if 0 not in snapshots:
            raise SeriesIntegrityViolation(
                "insufficient_forecast", f"No current forecast (slot 0) for {variable}"
            )
        return [snapshots[slot].load() for slot in INFILL_ORDER if slot in snapshots]

    def assemble(
        self,
        variable: str,
        history: HistoricalRecord,
        forecast_start: date,
        window: int,
        forecasts: list[xr.DataArray] | None = None,
    ) -> xr.DataArray:
        """Splice, validate and transform one upstream variable's series."""
        forecasts = self.load_snapshots(variable) if forecasts is None else forecasts
        series = splice(history.data, forecasts)
        validate_dates(series["time"].values, forecast_start, window, self.horizon, variable)
        logger.info(
            "%s series: %s..%s (%d days)",
            variable,
            _as_date(series["time"].values[0]),
            _as_date(series["time"].values[-1]),
            series.sizes["time"],
        )
        return apply_transform(series, variable)

    def assemble_mean_temperature(
        self,
        tmax_history: HistoricalRecord,
        tmin_history: HistoricalRecord,
        forecast_start: date,
        window: int,
        tmax_forecasts: list[xr.DataArray] | None = None,
        tmin_forecasts: list[xr.DataArray] | None = None,
    ) -> xr.DataArray:
        """Derived gdd_0 series: tmmx and tmmn spliced in lockstep, then averaged."""
        if tmax_forecasts is None:
            tmax_forecasts = self.load_snapshots("tmmx")
        if tmin_forecasts is None:
            tmin_forecasts = self.load_snapshots("tmmn")
        if len(tmax_forecasts) != len(tmin_forecasts):
            raise SeriesIntegrityViolation(
                "date_gaps",
                f"tmmx has {len(tmax_forecasts)} forecast slots but tmmn has "
                f"{len(tmin_forecasts)}",
            )

        tmax = splice(tmax_history.data, tmax_forecasts)
        tmin = splice(tmin_history.data, tmin_forecasts)
        validate_dates(tmax["time"].values, forecast_start, window, self.horizon, "tmmx")
        validate_dates(tmin["time"].values, forecast_start, window, self.horizon, "tmmn")
        if not np.array_equal(tmax["time"].values, tmin["time"].values):
            raise SeriesIntegrityViolation(
                "date_gaps", "tmmx and tmmn series cover different dates"
            )

        gdd = ((tmax + tmin.values) / 2).rename("gdd_0")
        logger.info("gdd_0 series: %d days", gdd.sizes["time"])
        return gdd
