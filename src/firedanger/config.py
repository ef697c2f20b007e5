from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from firedanger.errors import ConfigurationError
from firedanger.models.schemas import EcoregionsConfig, EcoregionSpec

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    app_name: str = "FIREDANGER"
    app_version: str = "0.1.0"
    debug: bool = Field(default=False, alias="FIREDANGER_DEBUG")

    # Paths
    data_dir: str = Field(default="data", alias="FIREDANGER_DATA_DIR")
    out_dir: str = Field(default="out", alias="FIREDANGER_OUT_DIR")
    archive_dir: str = Field(default="archive", alias="FIREDANGER_ARCHIVE_DIR")
    ecoregions_config_path: str = Field(
        default="config/ecoregions.yaml", alias="FIREDANGER_ECOREGIONS_CONFIG"
    )

    # Upstream products
    cfsv2_base_url: str = Field(
        default=(
            "http://thredds.northwestknowledge.net:8080/thredds/fileServer/"
            "NWCSC_INTEGRATED_SCENARIOS_ALL_CLIMATE/cfsv2_metdata_90day"
        ),
        alias="FIREDANGER_CFSV2_BASE_URL",
    )
    gridmet_url_template: str = Field(
        default=(
            "http://thredds.northwestknowledge.net:8080/thredds/dodsC/"
            "agg_met_{var}_1979_CurrentYear_CONUS.nc"
        ),
        alias="FIREDANGER_GRIDMET_URL_TEMPLATE",
    )
    ensemble_issue_hours: List[str] = ["00", "06", "12", "18"]
    ensemble_members: List[str] = ["1", "2", "3", "4"]
    forecast_crs: str = "EPSG:4326"

    # Ingestion
    stale_cutoff_hour_utc: int = Field(default=18, alias="STALE_DATA_CUTOFF_HOUR")
    download_timeout_s: int = Field(default=120, alias="FIREDANGER_DOWNLOAD_TIMEOUT")
    download_retries: int = Field(default=3, alias="FIREDANGER_DOWNLOAD_RETRIES")
    download_workers: int = Field(default=4, alias="FIREDANGER_DOWNLOAD_WORKERS")

    # Forecast window
    forecast_horizon_days: int = Field(default=7, alias="FIREDANGER_FORECAST_HORIZON_DAYS")
    history_lookback_days: int = 40
    history_lag_days: int = 2

    # Streaming assembly
    max_inflight_days: int = Field(default=1, alias="FIREDANGER_MAX_INFLIGHT_DAYS")
    output_complevel: int = 2

    # Publication gate
    min_valid_cells: int = Field(default=1000, alias="FIREDANGER_MIN_VALID_CELLS")
    min_cv: float = 0.01
    cv_min_cells: int = 100
    saturation_fail_pct: float = 95.0
    saturation_warn_pct: float = 80.0
    median_q75_margin: float = 0.2
    archive_keep: int = Field(default=2, alias="FIREDANGER_ARCHIVE_KEEP")

    # Workers
    ecoregion_workers: int = Field(default=2, alias="FIREDANGER_ECOREGION_WORKERS")

    # Sentry
    sentry_dsn: str = Field(default="", alias="FIREDANGER_SENTRY_DSN")

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }


settings = Settings()


def load_ecoregions(path: str | Path | None = None) -> EcoregionsConfig:
    """Parse the ecoregion YAML into validated models."""
    path = Path(path or settings.ecoregions_config_path)
    if not path.exists():
        raise ConfigurationError(f"Ecoregion config not found: {path}", {"path": str(path)})

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    try:
        config = EcoregionsConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid ecoregion config {path}: {e}") from e

    logger.info("Loaded %d ecoregions from %s", len(config.ecoregions), path)
    return config


def get_ecoregion(name_clean: str, path: str | Path | None = None) -> EcoregionSpec:
    """Return the enabled ecoregion named *name_clean*."""
    config = load_ecoregions(path)
    for eco in config.ecoregions:
        if eco.name_clean == name_clean:
            if not eco.enabled:
                raise ConfigurationError(f"Ecoregion '{name_clean}' is not enabled")
            return eco
    available = ", ".join(e.name_clean for e in config.ecoregions)
    raise ConfigurationError(
        f"Ecoregion '{name_clean}' not found (available: {available})",
        {"ecoregion": name_clean},
    )
