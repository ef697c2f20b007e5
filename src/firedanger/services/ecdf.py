"""eCDF danger mapping and read-only model artifacts.

Each (ecoregion, cover class) pair has two artifacts fitted offline:

- a QuantileGrid: 99 per-pixel breakpoints of the historical rolling
  aggregate, ``...-quants.nc``
- an EmpiricalCDFModel: percentile-of-dryness -> fraction of historical
  ignitions at or below it, ``...-ecdf.json``

Either may carry a ``rank_rule`` tag naming how its historical values were
ranked. A tag that disagrees with the configured rule fails loading.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import numpy as np
import xarray as xr

from firedanger.config import settings
from firedanger.errors import ModelArtifactMismatch, ModelArtifactMissing
from firedanger.grid.io import X_DIMS, Y_DIMS
from firedanger.models.enums import CoverClass, RankRule
from firedanger.models.schemas import CoverTypeSpec, EcoregionSpec
from firedanger.services.percentile import N_BREAKPOINTS

logger = logging.getLogger(__name__)


class EmpiricalCDFModel:
    """Right-continuous, non-decreasing step function on [0, 1]."""

    def __init__(self, knots, values, rank_rule: RankRule | None = None):
        knots = np.asarray(knots, dtype="float64")
        values = np.asarray(values, dtype="float64")
        if knots.ndim != 1 or knots.shape != values.shape or knots.size == 0:
            raise ValueError("eCDF knots and values must be non-empty 1-D arrays of equal length")
        if np.any(np.diff(knots) <= 0):
            raise ValueError("eCDF knots must be strictly increasing")
        if np.any(np.diff(values) < 0):
            raise ValueError("eCDF values must be non-decreasing")
        if values.min() < 0 or values.max() > 1:
            raise ValueError("eCDF values must lie in [0, 1]")
        self.knots = knots
        self.values = values
        self.rank_rule = rank_rule

    @classmethod
    def from_sample(cls, sample, rank_rule: RankRule | None = None) -> EmpiricalCDFModel:
        """eCDF of observed percentiles-of-dryness on ignition days."""
        sample = np.asarray(sample, dtype="float64")
        sample = np.sort(sample[~np.isnan(sample)])
        if sample.size == 0:
            raise ValueError("Cannot fit an eCDF to an empty sample")
        knots, counts = np.unique(sample, return_counts=True)
        return cls(knots, np.cumsum(counts) / sample.size, rank_rule)

    def __call__(self, percentile) -> np.ndarray:
        p = np.asarray(percentile, dtype="float64")
        idx = np.searchsorted(self.knots, p, side="right") - 1
        out = np.where(idx >= 0, self.values[np.clip(idx, 0, None)], 0.0)
        out = np.where(np.isnan(p), np.nan, out)
        return out.astype("float32")

    def historical_q75(self) -> float:
        """75th percentile of the ignition fraction over the percentile scale."""
        return float(np.quantile(self(np.arange(100) / 100.0), 0.75))

    def to_dict(self) -> dict:
        data = {"knots": self.knots.tolist(), "values": self.values.tolist()}
        if self.rank_rule is not None:
            data["rank_rule"] = self.rank_rule.value
        return data

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info("eCDF saved to %s", path)

    @classmethod
    def load(cls, path: Path) -> EmpiricalCDFModel:
        with open(path) as f:
            data = json.load(f)
        rank_rule = RankRule(data["rank_rule"]) if data.get("rank_rule") else None
        return cls(data["knots"], data["values"], rank_rule)


class QuantileGrid:
    """Per-pixel 1st..99th percentile breakpoints, dims ``(layer, y, x)``."""

    def __init__(self, breakpoints: np.ndarray, y=None, x=None, rank_rule: RankRule | None = None):
        breakpoints = np.asarray(breakpoints, dtype="float32")
        if breakpoints.ndim != 3 or breakpoints.shape[0] != N_BREAKPOINTS:
            raise ValueError(
                f"Quantile grid must have {N_BREAKPOINTS} layers, got shape {breakpoints.shape}"
            )
        self.breakpoints = breakpoints
        self.y = None if y is None else np.asarray(y)
        self.x = None if x is None else np.asarray(x)
        self.rank_rule = rank_rule

    @property
    def shape(self) -> tuple[int, int]:
        return self.breakpoints.shape[1:]

    @classmethod
    def load(cls, path: Path) -> QuantileGrid:
        path = Path(path)
        with xr.open_dataset(path, decode_times=False, engine="netcdf4") as ds:
            cubes = [v for v in ds.data_vars if ds[v].ndim == 3]
            if not cubes:
                raise ValueError(f"{path.name}: no 3-D quantile variable")
            da = ds[cubes[0]]
            y_dim = next(d for d in da.dims if d in Y_DIMS)
            x_dim = next(d for d in da.dims if d in X_DIMS)
            layer_dim = next(d for d in da.dims if d not in (y_dim, x_dim))
            da = da.transpose(layer_dim, y_dim, x_dim)
            da = da.sortby(y_dim, ascending=False).sortby(x_dim).load()
            tag = da.attrs.get("rank_rule") or ds.attrs.get("rank_rule")

        return cls(
            da.values,
            y=da[y_dim].values,
            x=da[x_dim].values,
            rank_rule=RankRule(tag) if tag else None,
        )


def artifact_dir(eco: EcoregionSpec, cover: CoverClass, data_dir: str | Path | None = None) -> Path:
    root = Path(data_dir or settings.data_dir) / "ecdf"
    return root / f"{eco.id}-{eco.name_clean}-{cover.value}"


def artifact_stem(eco: EcoregionSpec, cover: CoverClass) -> str:
    spec = eco.cover_types[cover]
    return f"{eco.id}-{eco.name_clean}-{cover.value}-{spec.window}-{spec.variable.upper()}"


def quantile_path(eco: EcoregionSpec, cover: CoverClass, data_dir=None) -> Path:
    return artifact_dir(eco, cover, data_dir) / f"{artifact_stem(eco, cover)}-quants.nc"


def ecdf_path(eco: EcoregionSpec, cover: CoverClass, data_dir=None) -> Path:
    return artifact_dir(eco, cover, data_dir) / f"{artifact_stem(eco, cover)}-ecdf.json"


class CoverModel:
    """Artifacts and configuration for one modeled cover class."""

    def __init__(
        self,
        cover: CoverClass,
        spec: CoverTypeSpec,
        quantiles: QuantileGrid,
        ecdf: EmpiricalCDFModel,
    ):
        self.cover = cover
        self.spec = spec
        self.quantiles = quantiles
        self.ecdf = ecdf


def _check_rank_rule(artifact: str, tag: RankRule | None, spec: CoverTypeSpec, path: Path):
    if tag is not None and tag != spec.rank_rule:
        raise ModelArtifactMismatch(
            f"{artifact} {path.name} was built with rank rule '{tag.value}' but "
            f"configuration says '{spec.rank_rule.value}'",
            {"path": str(path), "artifact": tag.value, "configured": spec.rank_rule.value},
        )


def load_cover_model(
    eco: EcoregionSpec, cover: CoverClass, data_dir: str | Path | None = None
) -> CoverModel:
    """Load both artifacts for a configured cover class.

    Raises:
        ModelArtifactMissing: either file is absent.
        ModelArtifactMismatch: an artifact's rank-rule tag disagrees with config.
    """
    spec = eco.cover_types[cover]
    q_path = quantile_path(eco, cover, data_dir)
    e_path = ecdf_path(eco, cover, data_dir)
    for path in (q_path, e_path):
        if not path.exists():
            raise ModelArtifactMissing(
                f"Missing {cover.value} model artifact for {eco.name_clean}: {path}",
                {"ecoregion": eco.name_clean, "cover": cover.value, "path": str(path)},
            )

    quantiles = QuantileGrid.load(q_path)
    ecdf = EmpiricalCDFModel.load(e_path)
    _check_rank_rule("Quantile grid", quantiles.rank_rule, spec, q_path)
    _check_rank_rule("eCDF", ecdf.rank_rule, spec, e_path)
    logger.info(
        "Loaded %s model for %s: %s, %d-day window",
        cover.value,
        eco.name_clean,
        spec.variable,
        spec.window,
    )
    return CoverModel(cover, spec, quantiles, ecdf)


class DangerMapper:
    """Maps percentile grids to danger through each cover class's eCDF."""

    def __init__(self, models: dict[CoverClass, CoverModel]):
        self.models = models

    @classmethod
    def load(cls, eco: EcoregionSpec, data_dir: str | Path | None = None) -> DangerMapper:
        return cls({cover: load_cover_model(eco, cover, data_dir) for cover in eco.cover_types})

    @property
    def covers(self) -> list[CoverClass]:
        return list(self.models)

    def danger(self, cover: CoverClass, percentile: np.ndarray) -> np.ndarray:
        """Pointwise eCDF lookup; NaN stays NaN."""
        return self.models[cover].ecdf(percentile)

    def historical_q75(self) -> float | None:
        """Reference danger level used by the publication gate (forest first)."""
        for cover in (CoverClass.FOREST, CoverClass.NON_FOREST):
            if cover in self.models:
                return self.models[cover].ecdf.historical_q75()
        return None
