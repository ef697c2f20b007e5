"""Per-ecoregion fire danger forecast orchestrator.

Runs once per ecoregion per day:
1. Load quantile grids, eCDF models and the cover classification
2. Check the current forecast slots start today or tomorrow
3. Build one continuous series per upstream variable (history + forecasts)
4. Rolling aggregate -> percentile of dryness -> eCDF danger, per cover class
5. Stream the per-day composites into fire_danger_forecast.nc
6. Validate the first forecast day and publish or reject
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from pathlib import Path

import numpy as np
import xarray as xr

from firedanger.config import settings
from firedanger.errors import (
    ModelArtifactMismatch,
    ModelArtifactMissing,
    PublicationRejected,
    StaleUpstreamData,
)
from firedanger.models.enums import CoverClass, ValidationStatus
from firedanger.models.schemas import EcoregionSpec, ForecastRunResult
from firedanger.models.variables import get_variable
from firedanger.pipelines.gridmet_pipeline import GridMETPipeline
from firedanger.pipelines.ingestion import is_fresh
from firedanger.pipelines.publication import Publisher, PublicationValidator
from firedanger.pipelines.streaming import OUTPUT_NAME, CoverClassification, StreamingAssembler
from firedanger.pipelines.timeseries import TimeSeriesAssembler
from firedanger.services.ecdf import DangerMapper
from firedanger.services.percentile import PercentileEngine
from firedanger.services.warnings import warning_active
from firedanger.store.variable_store import CURRENT_SLOT, HistoricalCache, VariableStore

logger = logging.getLogger(__name__)


class ForecastPipeline:
    """Generates and publishes one ecoregion's multi-day danger forecast."""

    def __init__(
        self,
        ecoregion: EcoregionSpec,
        data_dir: str | Path | None = None,
        out_dir: str | Path | None = None,
        archive_dir: str | Path | None = None,
        gridmet: GridMETPipeline | None = None,
        max_inflight_days: int | None = None,
        horizon: int | None = None,
    ):
        self.eco = ecoregion
        self.data_dir = Path(data_dir or settings.data_dir)
        self.out_dir = Path(out_dir or settings.out_dir)
        self.horizon = settings.forecast_horizon_days if horizon is None else horizon
        self.forecast_root = self.data_dir / "forecasts"
        self.publisher = Publisher(ecoregion.name_clean, self.out_dir, archive_dir)
        self.gridmet = gridmet or GridMETPipeline(
            cache=HistoricalCache(self.out_dir / "cache"),
            warning_dir=self.publisher.eco_dir,
        )
        self.assembler = TimeSeriesAssembler(str(self.forecast_root), self.horizon)
        self.engine = PercentileEngine(self.horizon)
        self.max_inflight_days = max_inflight_days

    # --- inputs ---

    def _check_forecast_dates(self, variables: list[str], run_date: date) -> None:
        """Slot 0 must be fresh unless ingestion deliberately accepted it stale."""
        for var in variables:
            store = VariableStore(var, self.forecast_root)
            current = store.snapshot(CURRENT_SLOT)
            if current is None:
                raise ModelArtifactMissing(
                    f"No current forecast for {var}; run ingestion first", {"variable": var}
                )
            start = current.forecast_start
            if is_fresh(start, run_date):
                continue
            if warning_active(store.warning_path):
                logger.warning(
                    "%s forecast starts %s (run date %s); proceeding with accepted stale data",
                    var,
                    start,
                    run_date,
                )
                continue
            raise StaleUpstreamData(
                f"{var} forecast date is {start} but should be {run_date} "
                f"or {run_date + timedelta(days=1)}",
                {"variable": var, "forecast_start": start.isoformat()},
            )

    def _upstream_windows(self) -> dict[str, int]:
        """Largest window needed per upstream variable, so covers share a series."""
        windows: dict[str, int] = {}
        for spec in self.eco.cover_types.values():
            var = spec.gridmet_varname
            windows[var] = max(windows.get(var, 0), spec.window)
        return windows

    def _build_series(self, variable: str, window: int, run_date: date) -> xr.DataArray:
        eco = self.eco.name_clean
        var = get_variable(variable)
        if var.is_derived:
            tmax_var, tmin_var = var.components
            tmax_forecasts = self.assembler.load_snapshots(tmax_var)
            tmin_forecasts = self.assembler.load_snapshots(tmin_var)
            reference = tmax_forecasts[-1]
            return self.assembler.assemble_mean_temperature(
                self.gridmet.load_history(eco, tmax_var, run_date, reference),
                self.gridmet.load_history(eco, tmin_var, run_date, reference),
                run_date,
                window,
                tmax_forecasts,
                tmin_forecasts,
            )

        forecasts = self.assembler.load_snapshots(variable)
        history = self.gridmet.load_history(eco, variable, run_date, forecasts[-1])
        return self.assembler.assemble(variable, history, run_date, window, forecasts)

    def _danger_layers(
        self, mapper: DangerMapper, run_date: date
    ) -> dict[CoverClass, xr.DataArray]:
        """Coarse-grid danger per cover class, dims ``(time, y, x)``."""
        series_by_var = {
            var: self._build_series(var, window, run_date)
            for var, window in self._upstream_windows().items()
        }

        layers = {}
        for cover, model in mapper.models.items():
            spec = model.spec
            series = series_by_var[spec.gridmet_varname]
            if (series.sizes["y"], series.sizes["x"]) != model.quantiles.shape:
                raise ModelArtifactMismatch(
                    f"{cover.value} quantile grid {model.quantiles.shape} does not match "
                    f"forecast grid {(series.sizes['y'], series.sizes['x'])}",
                    {"cover": cover.value},
                )
            aggregation = spec.aggregation or get_variable(spec.gridmet_varname).aggregation
            pct = self.engine.percentiles(
                series,
                model.quantiles.breakpoints,
                spec.window,
                aggregation,
                run_date,
                spec.rank_rule,
            )
            layers[cover] = pct.copy(data=mapper.danger(cover, pct.values)).rename("danger")
            logger.info(
                "%s %s: %d valid cells on day 0",
                self.eco.name_clean,
                cover.value,
                int(np.isfinite(layers[cover].values[0]).sum()),
            )
        return layers

    # --- run ---

    def run(self, run_date: date | None = None) -> ForecastRunResult:
        run_date = run_date or date.today()
        eco = self.eco.name_clean
        logger.info("=== Forecast for %s on %s ===", eco, run_date)
        work = self.publisher.begin(run_date)

        try:
            mapper = DangerMapper.load(self.eco, self.data_dir)
            cover_path = CoverClassification.path_for(self.eco, self.data_dir)
            if not cover_path.exists():
                raise ModelArtifactMissing(
                    f"Cover classification not found: {cover_path}", {"path": str(cover_path)}
                )
            classification = CoverClassification.load(cover_path)

            upstream = []
            for var in self._upstream_windows():
                upstream.extend(get_variable(var).components or (var,))
            self._check_forecast_dates(upstream, run_date)

            layers = self._danger_layers(mapper, run_date)
            dates = [run_date + timedelta(days=i) for i in range(self.horizon + 1)]

            def producer(index: int, day: date) -> dict[CoverClass, xr.DataArray]:
                return {cover: layer.isel(time=index) for cover, layer in layers.items()}

            output = StreamingAssembler(classification, self.max_inflight_days).run(
                dates, producer, work / OUTPUT_NAME
            )

            report = PublicationValidator(historical_q75=mapper.historical_q75()).validate_file(
                output
            )
            if report.status == ValidationStatus.FAIL:
                raise PublicationRejected(report.reason, {"errors": report.errors})
            for warning in report.warnings:
                logger.warning("%s validation warning: %s", eco, warning)
        except Exception as e:
            logger.error("Forecast for %s failed: %s", eco, e, exc_info=True)
            details = getattr(e, "details", None) or {}
            self.publisher.reject(
                run_date,
                getattr(e, "message", str(e)),
                [f"{k}: {v}" for k, v in details.items()],
            )
            raise

        final = self.publisher.publish(run_date, report)
        self.publisher.archive_old_forecasts()
        return ForecastRunResult(
            ecoregion=eco,
            run_date=run_date,
            status=report.status,
            report=report,
            output_path=final / OUTPUT_NAME,
            n_days=len(dates),
        )
