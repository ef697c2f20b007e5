"""gridMET historical observations client.

Pulls the recent observational record for an ecoregion from the gridMET
THREDDS OPeNDAP aggregations, aligned to the forecast grid. When the live
pull fails the last cached pull is used instead and a warning flag is
written; with no cache the run cannot proceed.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from pathlib import Path

import xarray as xr

from firedanger.config import settings
from firedanger.errors import ConfigurationError, HistoricalDataUnavailable
from firedanger.grid.io import date_to_day, normalize_daily
from firedanger.services.warnings import GRIDMET_WARNING_NAME, clear_warning, write_warning
from firedanger.store.variable_store import HistoricalCache, HistoricalRecord

logger = logging.getLogger(__name__)

# Our variable name -> variable name inside the gridMET aggregation
GRIDMET_VARIABLES = {
    "vpd": "daily_mean_vapor_pressure_deficit",
    "fm1000": "dead_fuel_moisture_1000hr",
    "fm100": "dead_fuel_moisture_100hr",
    "erc": "energy_release_component-g",
    "cwd": "climatic_water_deficit",
    "tmmx": "daily_maximum_temperature",
    "tmmn": "daily_minimum_temperature",
}


def history_window(run_date: date) -> tuple[date, date]:
    """Inclusive date range of the historical pull for *run_date*."""
    start = run_date - timedelta(days=settings.history_lookback_days)
    end = run_date - timedelta(days=settings.history_lag_days)
    return start, end


class GridMETPipeline:
    """Fetches historical gridMET series with a per-ecoregion cache fallback."""

    def __init__(
        self,
        url_template: str | None = None,
        cache: HistoricalCache | None = None,
        warning_dir: str | Path | None = None,
    ):
        self.url_template = url_template or settings.gridmet_url_template
        self.cache = cache or HistoricalCache()
        self.warning_dir = Path(warning_dir or settings.out_dir)

    @property
    def warning_path(self) -> Path:
        return self.warning_dir / GRIDMET_WARNING_NAME

    def fetch(
        self,
        variable: str,
        start: date,
        end: date,
        reference: xr.DataArray,
    ) -> xr.DataArray:
        """Pull ``start..end`` for *variable* on the grid of *reference*.

        *reference* is a normalized ``(time, y, x)`` forecast array; the
        historical cells are matched to it by nearest neighbour.
        """
        if variable not in GRIDMET_VARIABLES:
            raise ConfigurationError(
                f"Unknown gridMET variable: {variable}. Add it to GRIDMET_VARIABLES."
            )
        url = self.url_template.format(var=variable)
        logger.info("Fetching gridMET %s %s..%s", variable, start, end)

        with xr.open_dataset(url, decode_times=False) as ds:
            da = ds[GRIDMET_VARIABLES[variable]]
            da = da.sel(day=slice(date_to_day(start), date_to_day(end)))
            da = da.sel(
                lat=reference["y"].values,
                lon=reference["x"].values,
                method="nearest",
            ).load()

        da = normalize_daily(da, variable, url)
        return da.assign_coords(y=reference["y"].values, x=reference["x"].values)

    def load_history(
        self,
        ecoregion: str,
        variable: str,
        run_date: date,
        reference: xr.DataArray,
    ) -> HistoricalRecord:
        """Live pull with cache fallback.

        Raises:
            HistoricalDataUnavailable: the live pull failed and no cache exists.
        """
        start, end = history_window(run_date)
        try:
            data = self.fetch(variable, start, end, reference)
        except ConfigurationError:
            raise
        except (OSError, RuntimeError, KeyError, ValueError) as e:
            logger.warning("Failed to retrieve fresh gridMET %s: %s", variable, e)
            return self._from_cache(ecoregion, variable, end, e)

        record = HistoricalRecord(ecoregion, variable, data)
        self.cache.save(record)
        clear_warning(self.warning_path)
        return record

    def _from_cache(
        self, ecoregion: str, variable: str, expected_end: date, error: Exception
    ) -> HistoricalRecord:
        cached = self.cache.load(ecoregion, variable)
        if cached is None:
            raise HistoricalDataUnavailable(
                f"gridMET {variable} unavailable and no cache for {ecoregion}",
                {"ecoregion": ecoregion, "variable": variable, "error": str(error)},
            ) from error

        logger.warning(
            "Using cached gridMET %s for %s (ends %s)", variable, ecoregion, cached.as_of
        )
        write_warning(
            self.warning_path,
            "GRIDMET STALE DATA WARNING",
            [
                f"Variable: {variable}",
                f"GridMET download failed. Using cached data ending {cached.as_of}.",
                f"Expected end date: {expected_end}",
                "Historical data may be stale. Forecast accuracy may be reduced.",
            ],
        )
        return cached
