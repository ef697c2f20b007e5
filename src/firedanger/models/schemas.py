from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from firedanger.errors import (
    DesyncedCoupledVariables,
    StaleUpstreamData,
    TransientIngestionFailure,
)
from firedanger.models.enums import (
    Aggregation,
    CoverClass,
    IngestionStatus,
    ProductShape,
    RankRule,
    ValidationStatus,
)


class MeteorologicalVariable(BaseModel):
    name: str
    unit: str
    aggregation: Aggregation
    product: ProductShape = ProductShape.ENSEMBLE
    invert_from: Optional[float] = None  # series becomes (invert_from - x)
    components: tuple[str, ...] = ()  # derived variables (e.g. gdd_0 <- tmmx, tmmn)

    @property
    def is_derived(self) -> bool:
        return bool(self.components)


class BoundingBox(BaseModel):
    west: float
    south: float
    east: float
    north: float

    @model_validator(mode="after")
    def _ordered(self):
        if self.west >= self.east or self.south >= self.north:
            raise ValueError("bbox must satisfy west < east and south < north")
        return self


class CoverTypeSpec(BaseModel):
    variable: str = Field(description="Predictor name used by the quantile/eCDF artifacts")
    gridmet_varname: str = Field(description="Upstream variable the predictor is built from")
    window: int = Field(ge=1, description="Rolling window length in days")
    aggregation: Optional[Aggregation] = None
    rank_rule: RankRule = RankRule.PLAIN


class EcoregionSpec(BaseModel):
    id: int
    name: str
    name_clean: str
    enabled: bool = True
    bbox: Optional[BoundingBox] = None
    cover_types: dict[CoverClass, CoverTypeSpec]

    @field_validator("cover_types", mode="before")
    @classmethod
    def _drop_null_cover_types(cls, value):
        if isinstance(value, dict):
            return {k: v for k, v in value.items() if v is not None}
        return value

    @model_validator(mode="after")
    def _at_least_one_cover(self):
        if not self.cover_types:
            raise ValueError(
                f"Ecoregion {self.name_clean} must have at least one cover type "
                "(forest or non_forest)"
            )
        return self

    @property
    def max_window(self) -> int:
        return max(spec.window for spec in self.cover_types.values())

    @property
    def upstream_variables(self) -> list[str]:
        """Unique upstream variable names in configuration order."""
        seen: list[str] = []
        for spec in self.cover_types.values():
            if spec.gridmet_varname not in seen:
                seen.append(spec.gridmet_varname)
        return seen


class EcoregionsConfig(BaseModel):
    ecoregions: list[EcoregionSpec]

    def enabled(self) -> list[EcoregionSpec]:
        return [e for e in self.ecoregions if e.enabled]


class IngestionResult(BaseModel):
    variable: str
    status: IngestionStatus
    reason: str = ""
    kind: Optional[str] = None  # stale | download_failed | incomplete_ensemble | desync
    forecast_start: Optional[date] = None
    changed: bool = False

    @property
    def ok(self) -> bool:
        return self.status != IngestionStatus.RETRYABLE

    def raise_for_status(self) -> None:
        """Raise the matching typed error if this result asks for a retry."""
        if self.ok:
            return
        details = {"variable": self.variable, "kind": self.kind}
        if self.kind == "desync":
            raise DesyncedCoupledVariables(self.reason, details)
        if self.kind == "stale":
            raise StaleUpstreamData(self.reason, details)
        raise TransientIngestionFailure(self.reason, details)


class ValidationReport(BaseModel):
    status: ValidationStatus
    errors: list[str] = []
    warnings: list[str] = []
    stats: dict[str, float] = {}

    @property
    def reason(self) -> str:
        if self.errors:
            return self.errors[0]
        if self.warnings:
            return self.warnings[0]
        return ""


class ForecastRunResult(BaseModel):
    ecoregion: str
    run_date: date
    status: ValidationStatus
    report: Optional[ValidationReport] = None
    output_path: Optional[Path] = None
    n_days: int = 0
