"""Tests for settings, ecoregion configuration and the variable catalog."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from firedanger.config import Settings, get_ecoregion, load_ecoregions
from firedanger.errors import (
    ConfigurationError,
    StaleUpstreamData,
    TransientIngestionFailure,
)
from firedanger.models.enums import Aggregation, CoverClass, IngestionStatus, RankRule
from firedanger.models.schemas import EcoregionSpec, IngestionResult
from firedanger.models.variables import expand_upstream, get_variable

BUNDLED = Path(__file__).resolve().parents[1] / "config" / "ecoregions.yaml"


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.forecast_horizon_days == 7
        assert s.stale_cutoff_hour_utc == 18
        assert s.archive_keep == 2
        assert len(s.ensemble_issue_hours) * len(s.ensemble_members) == 16

    def test_debug_from_environment(self):
        assert Settings().debug is True

    def test_env_override(self):
        with patch.dict(os.environ, {"FIREDANGER_MIN_VALID_CELLS": "50"}):
            assert Settings().min_valid_cells == 50


class TestEcoregionConfig:
    def test_bundled_config(self):
        config = load_ecoregions(BUNDLED)
        names = [e.name_clean for e in config.enabled()]
        assert "middle_rockies" in names
        assert "colorado_plateaus" not in names

    def test_null_cover_type_dropped(self):
        mojave = get_ecoregion("mojave_basin_and_range", BUNDLED)
        assert list(mojave.cover_types) == [CoverClass.NON_FOREST]
        assert mojave.cover_types[CoverClass.NON_FOREST].aggregation == Aggregation.FLUX
        assert mojave.upstream_variables == ["gdd_0"]

    def test_cover_defaults(self):
        eco = get_ecoregion("middle_rockies", BUNDLED)
        spec = eco.cover_types[CoverClass.FOREST]
        assert spec.rank_rule == RankRule.PLAIN
        assert spec.aggregation is None
        assert eco.max_window == 15
        assert eco.upstream_variables == ["vpd"]

    def test_unknown_ecoregion(self):
        with pytest.raises(ConfigurationError):
            get_ecoregion("atlantis", BUNDLED)

    def test_disabled_ecoregion(self):
        with pytest.raises(ConfigurationError):
            get_ecoregion("colorado_plateaus", BUNDLED)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_ecoregions(tmp_path / "nope.yaml")

    def test_ecoregion_without_cover_types(self, tmp_path):
        path = tmp_path / "ecoregions.yaml"
        path.write_text(
            "ecoregions:\n"
            "  - id: 1\n"
            "    name: Empty\n"
            "    name_clean: empty\n"
            "    cover_types: {forest: null, non_forest: null}\n"
        )
        with pytest.raises(ConfigurationError):
            load_ecoregions(path)

    def test_window_must_be_positive(self):
        with pytest.raises(ValueError):
            EcoregionSpec(
                id=1,
                name="X",
                name_clean="x",
                cover_types={"forest": {"variable": "vpd", "gridmet_varname": "vpd", "window": 0}},
            )


class TestVariables:
    def test_unknown_variable(self):
        with pytest.raises(ConfigurationError):
            get_variable("rh")

    def test_fuel_moisture_is_inverted(self):
        assert get_variable("fm1000").invert_from == 100.0
        assert get_variable("vpd").invert_from is None

    def test_expand_upstream(self):
        independent, coupled = expand_upstream(["vpd", "gdd_0", "tmmx", "erc"])
        assert independent == ["vpd", "erc"]
        assert coupled == [("tmmx", "tmmn")]


class TestIngestionResult:
    def test_ready_does_not_raise(self):
        IngestionResult(variable="vpd", status=IngestionStatus.ACCEPTED_STALE).raise_for_status()

    def test_stale_maps_to_typed_error(self):
        result = IngestionResult(variable="vpd", status=IngestionStatus.RETRYABLE, kind="stale")
        with pytest.raises(StaleUpstreamData) as exc:
            result.raise_for_status()
        assert exc.value.retryable

    def test_other_failures_are_transient(self):
        result = IngestionResult(
            variable="erc", status=IngestionStatus.RETRYABLE, kind="incomplete_ensemble"
        )
        with pytest.raises(TransientIngestionFailure):
            result.raise_for_status()
