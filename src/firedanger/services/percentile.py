"""Rolling statistic and percentile-of-dryness engine.

Percentiles are approximated on a 100-bin scale: for each pixel, count how
many of the 99 quantile breakpoints (1st..99th) the forecast aggregate
strictly exceeds, and map that count k to k/100.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

import numpy as np
import pandas as pd
import xarray as xr

from firedanger.config import settings
from firedanger.models.enums import Aggregation, RankRule

logger = logging.getLogger(__name__)

N_BREAKPOINTS = 99


def rolling_aggregate(series: xr.DataArray, window: int, aggregation: Aggregation) -> xr.DataArray:
    """Trailing *window*-day mean (state) or sum (flux) ending at each date.

    Days without a full window are NaN. A window of 1 returns raw values.
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    if window == 1:
        return series
    rolling = series.rolling(time=window, min_periods=window)
    if aggregation == Aggregation.FLUX:
        return rolling.sum()
    return rolling.mean()


def select_forecast_days(
    aggregate: xr.DataArray, forecast_start: date, horizon: int | None = None
) -> xr.DataArray:
    """Keep ``forecast_start .. forecast_start + horizon`` inclusive."""
    horizon = settings.forecast_horizon_days if horizon is None else horizon
    end = forecast_start + timedelta(days=horizon)
    return aggregate.sel(time=slice(pd.Timestamp(forecast_start), pd.Timestamp(end)))


def prepare_values(values: np.ndarray, rank_rule: RankRule) -> np.ndarray:
    """Mirror the rank preparation used when the quantiles were built.

    Zero-inflated variables were ranked on values rounded to one decimal
    with zeros excluded, so their breakpoints are positive. Rounding is
    mirrored here; an exact zero stays valid and resolves to percentile 0.
    """
    if rank_rule == RankRule.ZERO_INFLATED:
        return np.round(values, 1)
    return values


def percentile_of_dryness(values: np.ndarray, breakpoints: np.ndarray) -> np.ndarray:
    """Fraction of breakpoints each value strictly exceeds, as k/100.

    Args:
        values: array [y, x] (or [time, y, x]) of forecast aggregates
        breakpoints: array [99, y, x] of per-pixel quantiles

    NaN in a value or in any of its pixel's breakpoints gives NaN.
    """
    breakpoints = np.asarray(breakpoints, dtype="float64")
    if breakpoints.shape[0] != N_BREAKPOINTS:
        raise ValueError(f"expected {N_BREAKPOINTS} breakpoints, got {breakpoints.shape[0]}")
    values = np.asarray(values, dtype="float64")
    if values.shape[-2:] != breakpoints.shape[1:]:
        raise ValueError(f"value grid {values.shape[-2:]} != quantile grid {breakpoints.shape[1:]}")

    if values.ndim == 3:
        return np.stack([percentile_of_dryness(day, breakpoints) for day in values])

    k = np.zeros(values.shape, dtype="int16")
    for layer in breakpoints:
        k += values > layer
    result = k.astype("float32") / 100.0
    invalid = np.isnan(values) | np.isnan(breakpoints).any(axis=0)
    result[invalid] = np.nan
    return result


class PercentileEngine:
    """Turns a continuous series into per-day percentile-of-dryness grids."""

    def __init__(self, horizon: int | None = None):
        self.horizon = settings.forecast_horizon_days if horizon is None else horizon

    def forecast_aggregates(
        self,
        series: xr.DataArray,
        window: int,
        aggregation: Aggregation,
        forecast_start: date,
    ) -> xr.DataArray:
        aggregate = rolling_aggregate(series, window, aggregation)
        days = select_forecast_days(aggregate, forecast_start, self.horizon)
        expected = self.horizon + 1
        if days.sizes["time"] != expected:
            raise ValueError(
                f"Expected {expected} forecast days from {forecast_start}, got {days.sizes['time']}"
            )
        return days

    def percentiles(
        self,
        series: xr.DataArray,
        breakpoints: np.ndarray,
        window: int,
        aggregation: Aggregation,
        forecast_start: date,
        rank_rule: RankRule = RankRule.PLAIN,
    ) -> xr.DataArray:
        """Percentile grid per forecast day, dims ``(time, y, x)``."""
        days = self.forecast_aggregates(series, window, aggregation, forecast_start)
        values = prepare_values(days.values, rank_rule)
        pct = percentile_of_dryness(values, breakpoints)
        logger.info(
            "%s: %d-day %s percentiles for %d day(s)",
            series.name,
            window,
            aggregation.value,
            days.sizes["time"],
        )
        return days.copy(data=pct).rename("percentile")
