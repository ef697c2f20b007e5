"""Streaming composite assembly of the multi-day danger grid.

Only one day is ever held at full (cover-classification) resolution:

1. per day, each cover class's coarse danger layer is bilinearly resampled
   to the classification grid, pixels are picked by class, and the result
   goes to a DEFLATE-compressed GeoTIFF staging file
2. after the last day, the staging files are streamed in date order into a
   single zlib-compressed NetCDF written under a temp name and renamed

Staging directories left behind by other runs are untrusted and removed.
"""

from __future__ import annotations

import gc
import logging
import os
import shutil
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from pathlib import Path
from typing import Callable

import netCDF4
import numpy as np
import rasterio
import xarray as xr
from rasterio.crs import CRS
from rasterio.transform import Affine

from firedanger.config import settings
from firedanger.grid.io import DAY_UNITS, date_to_day
from firedanger.grid.resample import resample_layer_to
from firedanger.models.enums import CoverClass
from firedanger.models.schemas import EcoregionSpec

logger = logging.getLogger(__name__)

OUTPUT_NAME = "fire_danger_forecast.nc"
OUTPUT_VARIABLE = "fire_danger"
STAGING_PREFIX = ".staging_"

# (day index, date) -> coarse danger layer per modeled cover class
DayProducer = Callable[[int, date], dict[CoverClass, xr.DataArray]]


class CoverClassification:
    """Fine-resolution categorical cover raster (1 = forest, 2 = non-forest)."""

    def __init__(self, codes: np.ndarray, transform: Affine, crs: CRS | str, nodata=None):
        self.codes = np.asarray(codes)
        self.transform = transform
        self.crs = crs
        self.nodata = nodata

    @staticmethod
    def path_for(eco: EcoregionSpec, data_dir: str | Path | None = None) -> Path:
        root = Path(data_dir or settings.data_dir) / "classified_cover"
        return root / f"ecoregion_{eco.id}_classified.tif"

    @classmethod
    def load(cls, path: str | Path) -> CoverClassification:
        with rasterio.open(path) as src:
            codes = src.read(1)
            return cls(codes, src.transform, src.crs, src.nodata)

    @property
    def shape(self) -> tuple[int, int]:
        return self.codes.shape

    def mask(self, cover: CoverClass) -> np.ndarray:
        return self.codes == cover.code

    def cell_centers(self) -> tuple[np.ndarray, np.ndarray]:
        ny, nx = self.shape
        t = self.transform
        x = t.c + (np.arange(nx) + 0.5) * t.a
        y = t.f + (np.arange(ny) + 0.5) * t.e
        return y, x


def composite(
    layers: dict[CoverClass, np.ndarray], classification: CoverClassification
) -> np.ndarray:
    """Pick each pixel's value from its cover class layer.

    Pixels of classes without a layer, and nodata/other codes, stay NaN.
    """
    out = np.full(classification.shape, np.nan, dtype="float32")
    for cover, layer in layers.items():
        mask = classification.mask(cover)
        out[mask] = layer[mask]
    return out


def purge_staging(parent: Path) -> int:
    """Remove staging directories from earlier runs."""
    removed = 0
    if not parent.exists():
        return 0
    for path in parent.glob(f"{STAGING_PREFIX}*"):
        if path.is_dir():
            shutil.rmtree(path)
            removed += 1
    if removed:
        logger.warning("Removed %d untrusted staging dir(s) under %s", removed, parent)
    return removed


class StreamingAssembler:
    """Builds the multi-day output while holding one day in memory."""

    def __init__(
        self,
        classification: CoverClassification,
        max_inflight_days: int | None = None,
        src_crs: str | None = None,
        complevel: int | None = None,
    ):
        self.classification = classification
        self.max_inflight_days = max(1, max_inflight_days or settings.max_inflight_days)
        self.src_crs = src_crs or settings.forecast_crs
        self.complevel = settings.output_complevel if complevel is None else complevel

    def render_day(self, layers: dict[CoverClass, xr.DataArray]) -> np.ndarray:
        """Resample each class layer to the fine grid and composite them."""
        cls_ = self.classification
        fine = {
            cover: resample_layer_to(layer, cls_.shape, cls_.transform, cls_.crs, self.src_crs)
            for cover, layer in layers.items()
        }
        return composite(fine, cls_)

    def _write_staging(self, grid: np.ndarray, path: Path) -> Path:
        ny, nx = grid.shape
        profile = {
            "driver": "GTiff",
            "height": ny,
            "width": nx,
            "count": 1,
            "dtype": "float32",
            "crs": self.classification.crs,
            "transform": self.classification.transform,
            "nodata": np.nan,
            "compress": "deflate",
        }
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(grid, 1)
        return path

    def _stage_day(self, producer: DayProducer, staging_dir: Path, index: int, day: date) -> Path:
        layers = producer(index, day)
        grid = self.render_day(layers)
        path = self._write_staging(grid, staging_dir / f"day_{index:02d}_{day.isoformat()}.tif")
        del layers, grid
        gc.collect()
        logger.debug("Staged %s", path.name)
        return path

    def _assemble(self, staged: list[Path], dates: list[date], output_path: Path) -> Path:
        ny, nx = self.classification.shape
        y, x = self.classification.cell_centers()
        tmp = output_path.with_name(output_path.name + ".tmp")

        with netCDF4.Dataset(tmp, "w", format="NETCDF4") as nc:
            nc.createDimension("time", len(dates))
            nc.createDimension("y", ny)
            nc.createDimension("x", nx)

            t_var = nc.createVariable("time", "i4", ("time",))
            t_var.units = DAY_UNITS
            t_var.calendar = "standard"
            t_var[:] = [date_to_day(d) for d in dates]

            y_var = nc.createVariable("y", "f8", ("y",))
            y_var[:] = y
            x_var = nc.createVariable("x", "f8", ("x",))
            x_var[:] = x

            crs_var = nc.createVariable("crs", "i4")
            crs_var.spatial_ref = CRS.from_user_input(self.classification.crs).to_wkt()
            crs_var.GeoTransform = " ".join(str(v) for v in self.classification.transform.to_gdal())

            danger = nc.createVariable(
                OUTPUT_VARIABLE,
                "f4",
                ("time", "y", "x"),
                zlib=True,
                complevel=self.complevel,
                chunksizes=(1, ny, nx),
                fill_value=np.float32(np.nan),
            )
            danger.long_name = "Probability of wildfire ignition"
            danger.units = "1"
            danger.valid_range = np.array([0.0, 1.0], dtype="f4")
            danger.grid_mapping = "crs"

            for i, path in enumerate(staged):
                with rasterio.open(path) as src:
                    danger[i, :, :] = src.read(1)

        os.replace(tmp, output_path)
        return output_path

    def run(self, dates: list[date], producer: DayProducer, output_path: str | Path) -> Path:
        """Render every date through *producer* and write *output_path*."""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        purge_staging(output_path.parent)
        staging_dir = output_path.parent / f"{STAGING_PREFIX}{uuid.uuid4().hex}"
        staging_dir.mkdir()
        tmp = output_path.with_name(output_path.name + ".tmp")

        try:
            if self.max_inflight_days == 1:
                staged = [
                    self._stage_day(producer, staging_dir, i, day) for i, day in enumerate(dates)
                ]
            else:
                with ThreadPoolExecutor(max_workers=self.max_inflight_days) as pool:
                    staged = list(
                        pool.map(
                            lambda item: self._stage_day(producer, staging_dir, *item),
                            enumerate(dates),
                        )
                    )
            self._assemble(staged, dates, output_path)
        except BaseException:
            if tmp.exists():
                tmp.unlink()
            raise
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        logger.info(
            "Assembled %d day(s) at %dx%d into %s",
            len(dates),
            self.classification.shape[0],
            self.classification.shape[1],
            output_path,
        )
        return output_path
