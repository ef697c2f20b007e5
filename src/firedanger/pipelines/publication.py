"""Publication gate for generated forecasts.

The validator returns PASS, WARN or FAIL. Checks run in a fixed order and
the first failure wins:

1. all values NA                                  -> FAIL
2. any value outside [0, 1]                        -> FAIL
3. fewer valid cells than ``min_valid_cells``      -> FAIL
4. every valid value identical                     -> FAIL
5. share of exact 0s or exact 1s >= 95%            -> FAIL (>= 80% WARN)
6. coefficient of variation below ``min_cv``       -> WARN
7. median above historical danger Q3 + margin      -> WARN

The publisher moves a passing run into ``out/forecasts/{eco}/{date}/`` with a
single rename, and on failure removes the run's partial output and raises
the ecoregion's ``FORECAST_UNAVAILABLE_WARNING.txt`` flag. The last good
forecast is never touched by a failed run.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import uuid
from datetime import date
from pathlib import Path

import numpy as np
import xarray as xr

from firedanger.config import settings
from firedanger.models.enums import ValidationStatus
from firedanger.models.schemas import ValidationReport
from firedanger.services.warnings import FORECAST_WARNING_NAME, clear_warning, write_warning

logger = logging.getLogger(__name__)

DATE_DIR = re.compile(r"^\d{4}-\d{2}-\d{2}$")
PARTIAL_SUFFIX = ".partial"
REPLACED_PREFIX = ".replaced_"

_SEVERITY = {ValidationStatus.PASS: 0, ValidationStatus.WARN: 1, ValidationStatus.FAIL: 2}


class PublicationValidator:
    """Plausibility checks on a danger grid before it is published."""

    def __init__(
        self,
        historical_q75: float | None = None,
        min_valid_cells: int | None = None,
        min_cv: float | None = None,
        cv_min_cells: int | None = None,
        saturation_fail_pct: float | None = None,
        saturation_warn_pct: float | None = None,
        median_margin: float | None = None,
    ):
        self.historical_q75 = historical_q75
        self.min_valid_cells = (
            settings.min_valid_cells if min_valid_cells is None else min_valid_cells
        )
        self.min_cv = settings.min_cv if min_cv is None else min_cv
        self.cv_min_cells = settings.cv_min_cells if cv_min_cells is None else cv_min_cells
        self.fail_pct = (
            settings.saturation_fail_pct if saturation_fail_pct is None else saturation_fail_pct
        )
        self.warn_pct = (
            settings.saturation_warn_pct if saturation_warn_pct is None else saturation_warn_pct
        )
        self.median_margin = settings.median_q75_margin if median_margin is None else median_margin

    def validate(self, values: np.ndarray) -> ValidationReport:
        values = np.asarray(values, dtype="float64").ravel()
        valid = values[~np.isnan(values)]
        errors: list[str] = []
        warnings: list[str] = []
        stats: dict[str, float] = {"valid_cells": float(valid.size)}

        def report() -> ValidationReport:
            if errors:
                status = ValidationStatus.FAIL
            elif warnings:
                status = ValidationStatus.WARN
            else:
                status = ValidationStatus.PASS
            return ValidationReport(status=status, errors=errors, warnings=warnings, stats=stats)

        if valid.size == 0:
            errors.append("All values are NA")
            return report()

        vmin, vmax = float(valid.min()), float(valid.max())
        stats.update(min=vmin, max=vmax)
        if vmin < 0 or vmax > 1:
            errors.append(f"Values outside [0,1] range: min={vmin:.4f}, max={vmax:.4f}")
            return report()

        if valid.size < self.min_valid_cells:
            errors.append(
                f"Insufficient spatial coverage: {valid.size} valid cells "
                f"(minimum {self.min_valid_cells})"
            )
            return report()

        if vmin == vmax:
            errors.append(f"No variation: all {valid.size} valid cells equal {vmin:.4f}")
            return report()

        zero_pct = 100.0 * np.count_nonzero(valid == 0) / valid.size
        one_pct = 100.0 * np.count_nonzero(valid == 1) / valid.size
        stats.update(zero_pct=zero_pct, one_pct=one_pct)
        for label, pct in (("zeros", zero_pct), ("ones", one_pct)):
            if pct >= self.fail_pct:
                errors.append(f"Nearly all {label}: {pct:.1f}% of values are {label[:-1]}")
                return report()
            if pct >= self.warn_pct:
                warnings.append(f"High concentration of {label}: {pct:.1f}%")

        mean = float(valid.mean())
        median = float(np.median(valid))
        stats.update(mean=mean, median=median, q75=float(np.quantile(valid, 0.75)))
        if valid.size > self.cv_min_cells and mean > 0:
            cv = float(np.std(valid, ddof=1) / mean)
            stats["cv"] = cv
            if cv < self.min_cv:
                warnings.append(f"Very low spatial variation: CV={cv:.4f}")

        if self.historical_q75 is not None:
            stats["historical_q75"] = self.historical_q75
            if median > self.historical_q75 + self.median_margin:
                warnings.append(
                    f"Forecast median ({median:.3f}) unusually high compared to "
                    f"historical Q3 ({self.historical_q75:.3f})"
                )

        return report()

    def validate_file(self, path: str | Path, all_days: bool = False) -> ValidationReport:
        """Validate the first forecast day of an output file, or every day."""
        with xr.open_dataset(path, engine="netcdf4") as ds:
            danger = ds["fire_danger"]
            n_days = danger.sizes["time"] if all_days else 1
            reports = [self.validate(danger.isel(time=i).values) for i in range(n_days)]

        if len(reports) == 1:
            return reports[0]
        return merge_reports(reports)


def merge_reports(reports: list[ValidationReport]) -> ValidationReport:
    worst = max(reports, key=lambda r: _SEVERITY[r.status])
    errors = [f"day {i}: {e}" for i, r in enumerate(reports) for e in r.errors]
    warnings = [f"day {i}: {w}" for i, r in enumerate(reports) for w in r.warnings]
    return ValidationReport(
        status=worst.status, errors=errors, warnings=warnings, stats=reports[0].stats
    )


class Publisher:
    """Owns one ecoregion's published forecast directories and warning flag."""

    def __init__(
        self,
        ecoregion: str,
        out_dir: str | Path | None = None,
        archive_dir: str | Path | None = None,
    ):
        self.ecoregion = ecoregion
        self.eco_dir = Path(out_dir or settings.out_dir) / "forecasts" / ecoregion
        self.archive_dir = Path(archive_dir or settings.archive_dir) / "forecasts" / ecoregion

    @property
    def warning_path(self) -> Path:
        return self.eco_dir / FORECAST_WARNING_NAME

    def published_dir(self, run_date: date) -> Path:
        return self.eco_dir / run_date.isoformat()

    def work_dir(self, run_date: date) -> Path:
        return self.eco_dir / f"{run_date.isoformat()}{PARTIAL_SUFFIX}"

    def begin(self, run_date: date) -> Path:
        """Create a fresh work dir, dropping partial output of earlier runs."""
        self.eco_dir.mkdir(parents=True, exist_ok=True)
        for stale in self.eco_dir.glob(f"*{PARTIAL_SUFFIX}"):
            logger.warning("Removing partial output from an earlier run: %s", stale)
            shutil.rmtree(stale)
        self._sweep_replaced()
        work = self.work_dir(run_date)
        work.mkdir()
        return work

    def _sweep_replaced(self) -> None:
        """Finish a same-day swap that an earlier run did not complete."""
        for old in sorted(self.eco_dir.glob(f"{REPLACED_PREFIX}*")):
            day = old.name[len(REPLACED_PREFIX) :].split("_", 1)[0]
            final = self.eco_dir / day
            if DATE_DIR.match(day) and not final.exists():
                logger.warning("Restoring %s forecast left aside by an earlier run", day)
                os.replace(old, final)
            else:
                shutil.rmtree(old)

    def publish(self, run_date: date, report: ValidationReport | None = None) -> Path:
        """Atomically swap the work dir in as the day's published forecast."""
        work = self.work_dir(run_date)
        final = self.published_dir(run_date)
        replaced = None
        if final.exists():
            replaced = self.eco_dir / f"{REPLACED_PREFIX}{run_date.isoformat()}_{uuid.uuid4().hex}"
            os.replace(final, replaced)
        os.replace(work, final)
        if replaced is not None:
            shutil.rmtree(replaced)

        clear_warning(self.warning_path)
        status = report.status.value if report else ValidationStatus.PASS.value
        logger.info("Published %s forecast for %s (%s)", self.ecoregion, run_date, status)
        return final

    def reject(self, run_date: date, reason: str, details: list[str] | None = None) -> Path:
        """Drop the run's partial output and raise the unavailable warning."""
        work = self.work_dir(run_date)
        if work.exists():
            shutil.rmtree(work)
        lines = [
            f"Ecoregion: {self.ecoregion}",
            f"Forecast date: {run_date}",
            f"Reason: {reason}",
        ]
        lines.extend(details or [])
        lines.append("The last successfully published forecast remains live.")
        logger.error("Forecast for %s on %s rejected: %s", self.ecoregion, run_date, reason)
        return write_warning(self.warning_path, "FORECAST UNAVAILABLE WARNING", lines)

    def archive_old_forecasts(self, keep: int | None = None) -> list[Path]:
        """Keep the newest *keep* date dirs; move the rest to the archive."""
        keep = settings.archive_keep if keep is None else keep
        if not self.eco_dir.exists():
            return []
        date_dirs = sorted(
            p for p in self.eco_dir.iterdir() if p.is_dir() and DATE_DIR.match(p.name)
        )
        if len(date_dirs) <= keep:
            return []

        to_archive = date_dirs[: len(date_dirs) - keep]
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        moved = []
        for src in to_archive:
            dest = self.archive_dir / src.name
            if dest.exists():
                shutil.rmtree(dest)
            shutil.move(str(src), str(dest))
            moved.append(dest)
        logger.info(
            "Archived %d forecast dir(s) for %s, kept %d", len(moved), self.ecoregion, keep
        )
        return moved
