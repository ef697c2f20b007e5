"""NetCDF I/O for daily gridded series.

Upstream files store dates as integer day offsets ("days since 1900-01-01")
on a dimension called ``day``; gridMET aggregations use the same epoch.
Everything inside the package works with a ``(time, y, x)`` DataArray whose
``time`` coordinate holds numpy datetimes, ``y`` descending (north first)
and ``x`` ascending.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from pathlib import Path

import numpy as np
import pandas as pd
import xarray as xr
from rasterio.transform import Affine, from_origin

logger = logging.getLogger(__name__)

EPOCH = date(1900, 1, 1)
DAY_UNITS = "days since 1900-01-01"

TIME_DIMS = ("day", "time")
Y_DIMS = ("lat", "latitude", "y")
X_DIMS = ("lon", "longitude", "x")


def day_to_date(day: float) -> date:
    return EPOCH + timedelta(days=int(day))


def date_to_day(d: date) -> int:
    return (d - EPOCH).days


def _find_dim(dims, candidates: tuple[str, ...], source: str) -> str:
    for name in candidates:
        if name in dims:
            return name
    raise ValueError(f"{source}: none of {candidates} found in dims {tuple(dims)}")


def _pick_variable(ds: xr.Dataset, varname: str | None, path: Path) -> str:
    if varname and varname in ds.data_vars:
        return varname
    candidates = [v for v in ds.data_vars if ds[v].ndim == 3]
    if not candidates:
        raise ValueError(f"{path.name}: no 3-D data variable found")
    return candidates[0]


def normalize_daily(da: xr.DataArray, name: str, source: str = "") -> xr.DataArray:
    """Rename dims to ``(time, y, x)`` and decode day offsets into dates.

    *da* must still hold raw day offsets on its time dimension.
    """
    t_dim = _find_dim(da.dims, TIME_DIMS, source)
    y_dim = _find_dim(da.dims, Y_DIMS, source)
    x_dim = _find_dim(da.dims, X_DIMS, source)
    da = da.rename({t_dim: "time", y_dim: "y", x_dim: "x"}).transpose("time", "y", "x")

    days = np.asarray(da["time"].values, dtype="float64")
    da = da.assign_coords(time=pd.to_datetime([day_to_date(d) for d in days]))
    da = da.sortby("y", ascending=False).sortby("x")
    da.name = name
    da.attrs = {k: v for k, v in da.attrs.items() if k != "_FillValue"}
    return da.astype("float32")


def read_daily_grid(path: str | Path, varname: str | None = None) -> xr.DataArray:
    """Load a daily grid into memory as a normalized ``(time, y, x)`` array."""
    path = Path(path)
    with xr.open_dataset(path, decode_times=False, engine="netcdf4") as ds:
        name = _pick_variable(ds, varname, path)
        da = ds[name].load()
    return normalize_daily(da, varname or name, path.name)


def first_forecast_date(path: str | Path) -> date:
    """Return the first date embedded in a daily file without loading the grid."""
    path = Path(path)
    with xr.open_dataset(path, decode_times=False, engine="netcdf4") as ds:
        t_dim = _find_dim(ds.dims, TIME_DIMS, path.name)
        if ds.sizes[t_dim] == 0:
            raise ValueError(f"{path.name}: empty {t_dim} dimension")
        first = float(ds[t_dim].values[0])
    return day_to_date(first)


def write_daily_grid(
    da: xr.DataArray,
    path: str | Path,
    varname: str,
    complevel: int = 2,
) -> Path:
    """Write a ``(time, y, x)`` array using the upstream ``day`` layout."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    days = [date_to_day(pd.Timestamp(t).date()) for t in da["time"].values]
    out = da.rename({"time": "day", "y": "lat", "x": "lon"}).assign_coords(day=days)
    out.name = varname
    out["day"].attrs["units"] = DAY_UNITS
    encoding = {varname: {"zlib": True, "complevel": complevel, "dtype": "float32"}}
    out.to_dataset().to_netcdf(path, engine="netcdf4", encoding=encoding)
    return path


def grid_transform(da: xr.DataArray) -> Affine:
    """Affine transform for a regular grid whose coordinates are cell centers."""
    xs = np.asarray(da["x"].values, dtype="float64")
    ys = np.asarray(da["y"].values, dtype="float64")
    if xs.size < 2 or ys.size < 2:
        raise ValueError("Grid needs at least 2 cells per axis to infer resolution")
    dx = float(abs(xs[1] - xs[0]))
    dy = float(abs(ys[1] - ys[0]))
    return from_origin(xs.min() - dx / 2, ys.max() + dy / 2, dx, dy)


def same_grid(a: xr.DataArray, b: xr.DataArray) -> bool:
    return (
        a.sizes["y"] == b.sizes["y"]
        and a.sizes["x"] == b.sizes["x"]
        and np.allclose(a["y"].values, b["y"].values)
        and np.allclose(a["x"].values, b["x"].values)
    )
