"""Shared test fixtures."""

import os

# Set debug mode BEFORE any firedanger imports so Settings picks it up
os.environ["FIREDANGER_DEBUG"] = "true"

from datetime import date

import numpy as np
import pandas as pd
import pytest
import rasterio
import xarray as xr
from rasterio.transform import from_origin

from firedanger.models.schemas import EcoregionSpec
from firedanger.services.ecdf import EmpiricalCDFModel, ecdf_path, quantile_path
from firedanger.services.percentile import N_BREAKPOINTS

# Coarse forecast grid: 4 x 5 cells of 0.25 degrees, north-west corner at (-110, 45)
WEST, NORTH, RES = -110.0, 45.0, 0.25
NY, NX = 4, 5


def daily_array(start, n_days, fill=1.0, name="vpd", ny=NY, nx=NX, pattern=None):
    """Normalized ``(time, y, x)`` array; *pattern* (ny, nx) overrides *fill*."""
    times = pd.date_range(pd.Timestamp(start), periods=n_days, freq="D")
    y = NORTH - RES / 2 - RES * np.arange(ny)
    x = WEST + RES / 2 + RES * np.arange(nx)
    if pattern is None:
        layer = np.full((ny, nx), fill, dtype="float32")
    else:
        layer = np.asarray(pattern, dtype="float32")
    data = np.broadcast_to(layer, (n_days, ny, nx)).copy()
    return xr.DataArray(
        data, dims=("time", "y", "x"), coords={"time": times, "y": y, "x": x}, name=name
    )


@pytest.fixture
def make_daily():
    return daily_array


@pytest.fixture
def run_date():
    return date(2026, 7, 15)


@pytest.fixture
def ecoregion():
    """Two-cover ecoregion sharing one upstream variable."""
    return EcoregionSpec(
        id=17,
        name="Middle Rockies",
        name_clean="middle_rockies",
        cover_types={
            "forest": {"variable": "vpd", "gridmet_varname": "vpd", "window": 3},
            "non_forest": {"variable": "vpd", "gridmet_varname": "vpd", "window": 1},
        },
    )


@pytest.fixture
def unit_breakpoints():
    """Breakpoints 1..99 at every coarse pixel."""
    layers = np.arange(1, N_BREAKPOINTS + 1, dtype="float32")
    return np.broadcast_to(layers[:, None, None], (N_BREAKPOINTS, NY, NX)).copy()


@pytest.fixture
def identity_ecdf():
    knots = np.arange(100) / 100.0
    return EmpiricalCDFModel(knots, knots)


@pytest.fixture
def write_artifacts(unit_breakpoints, identity_ecdf):
    """Write quantile grid + eCDF files for every configured cover class."""

    def _write(eco, data_dir, breakpoints=None, ecdf=None, rank_rule=None):
        breakpoints = unit_breakpoints if breakpoints is None else breakpoints
        ecdf = identity_ecdf if ecdf is None else ecdf
        ny, nx = breakpoints.shape[1:]
        attrs = {"rank_rule": rank_rule} if rank_rule else {}
        for cover in eco.cover_types:
            q_path = quantile_path(eco, cover, data_dir)
            q_path.parent.mkdir(parents=True, exist_ok=True)
            ds = xr.Dataset(
                {"quantiles": (("quantile", "lat", "lon"), breakpoints)},
                coords={
                    "quantile": np.arange(1, N_BREAKPOINTS + 1),
                    "lat": NORTH - RES / 2 - RES * np.arange(ny),
                    "lon": WEST + RES / 2 + RES * np.arange(nx),
                },
                attrs=attrs,
            )
            ds.to_netcdf(q_path, engine="netcdf4")
            ecdf.save(ecdf_path(eco, cover, data_dir))

    return _write


@pytest.fixture
def write_classification():
    """Fine cover raster over the coarse grid: west half forest, east half non-forest."""

    def _write(path, factor=10):
        ny, nx = NY * factor, NX * factor
        codes = np.full((ny, nx), 2, dtype="uint8")
        codes[:, : nx // 2] = 1
        path.parent.mkdir(parents=True, exist_ok=True)
        profile = {
            "driver": "GTiff",
            "height": ny,
            "width": nx,
            "count": 1,
            "dtype": "uint8",
            "crs": "EPSG:4326",
            "transform": from_origin(WEST, NORTH, RES / factor, RES / factor),
            "nodata": 0,
        }
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(codes, 1)
        return path

    return _write
