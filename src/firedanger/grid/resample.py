"""Resampling of coarse meteorological layers onto the fine cover grid."""

from __future__ import annotations

import numpy as np
import xarray as xr
from rasterio.crs import CRS
from rasterio.transform import Affine
from rasterio.warp import Resampling, reproject

from firedanger.config import settings
from firedanger.grid.io import grid_transform


def resample_bilinear(
    layer: np.ndarray,
    src_transform: Affine,
    src_crs: CRS | str,
    dst_shape: tuple[int, int],
    dst_transform: Affine,
    dst_crs: CRS | str,
) -> np.ndarray:
    """Bilinearly resample a 2-D float layer. NaN is treated as no-data."""
    dest = np.full(dst_shape, np.nan, dtype="float32")
    reproject(
        np.asarray(layer, dtype="float32"),
        dest,
        src_transform=src_transform,
        src_crs=src_crs,
        src_nodata=np.nan,
        dst_transform=dst_transform,
        dst_crs=dst_crs,
        dst_nodata=np.nan,
        resampling=Resampling.bilinear,
    )
    return dest


def resample_layer_to(
    layer: xr.DataArray,
    dst_shape: tuple[int, int],
    dst_transform: Affine,
    dst_crs: CRS | str,
    src_crs: CRS | str | None = None,
) -> np.ndarray:
    """Resample a ``(y, x)`` DataArray on the forecast grid to a target grid."""
    return resample_bilinear(
        layer.values,
        grid_transform(layer),
        src_crs or settings.forecast_crs,
        dst_shape,
        dst_transform,
        dst_crs,
    )
