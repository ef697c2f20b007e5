"""Tests for the publication gate, publishing, rejection and archival."""

from datetime import date

import numpy as np
import pytest
import xarray as xr

from firedanger.models.enums import ValidationStatus
from firedanger.pipelines.publication import Publisher, PublicationValidator

RUN_DATE = date(2026, 7, 15)


@pytest.fixture
def validator():
    return PublicationValidator()


@pytest.fixture
def healthy():
    rng = np.random.default_rng(42)
    return rng.uniform(0.2, 0.6, size=(50, 50))


class TestPublicationValidator:
    def test_plausible_grid_passes(self, validator, healthy):
        report = validator.validate(healthy)
        assert report.status == ValidationStatus.PASS
        assert report.stats["valid_cells"] == 2500
        assert report.status.exit_code == 0

    def test_all_na_fails(self, validator):
        report = validator.validate(np.full((50, 50), np.nan))
        assert report.status == ValidationStatus.FAIL
        assert "NA" in report.reason

    def test_out_of_range_fails(self, validator, healthy):
        healthy[3, 3] = 1.5
        report = validator.validate(healthy)
        assert report.status == ValidationStatus.FAIL
        assert "outside [0,1]" in report.reason

    def test_insufficient_coverage_fails(self, validator, healthy):
        healthy[:, 10:] = np.nan  # 500 valid cells
        report = validator.validate(healthy)
        assert report.status == ValidationStatus.FAIL
        assert "coverage" in report.reason

    def test_all_zero_fails(self, validator):
        report = validator.validate(np.zeros((50, 50)))
        assert report.status == ValidationStatus.FAIL
        assert report.status.exit_code == 1

    def test_nearly_all_zeros_fails(self, validator, healthy):
        flat = healthy.ravel()
        flat[: int(flat.size * 0.96)] = 0.0
        report = validator.validate(flat)
        assert report.status == ValidationStatus.FAIL
        assert "zeros" in report.reason

    def test_mostly_ones_warns(self, validator, healthy):
        flat = healthy.ravel()
        flat[: int(flat.size * 0.85)] = 1.0
        report = validator.validate(flat)
        assert report.status == ValidationStatus.WARN
        assert report.status.exit_code == 2
        assert "ones" in report.reason

    def test_low_variation_warns(self, validator):
        rng = np.random.default_rng(1)
        report = validator.validate(0.5 + rng.uniform(0, 1e-4, size=(50, 50)))
        assert report.status == ValidationStatus.WARN
        assert "CV" in report.reason

    def test_unusually_high_median_warns(self, healthy):
        validator = PublicationValidator(historical_q75=0.1)
        report = validator.validate(healthy + 0.3)
        assert report.status == ValidationStatus.WARN
        assert "median" in report.reason

    def test_first_day_only_unless_all_days(self, validator, healthy, tmp_path):
        data = np.stack([healthy, np.full_like(healthy, np.nan)]).astype("float32")
        path = tmp_path / "fire_danger_forecast.nc"
        xr.Dataset({"fire_danger": (("time", "y", "x"), data)}).to_netcdf(path)

        assert validator.validate_file(path).status == ValidationStatus.PASS
        report = validator.validate_file(path, all_days=True)
        assert report.status == ValidationStatus.FAIL
        assert report.errors[0].startswith("day 1:")


class TestPublisher:
    @pytest.fixture
    def publisher(self, tmp_path):
        return Publisher("middle_rockies", tmp_path / "out", tmp_path / "archive")

    def test_publish_moves_work_dir(self, publisher):
        work = publisher.begin(RUN_DATE)
        (work / "fire_danger_forecast.nc").write_bytes(b"new")
        publisher.warning_path.write_text("FORECAST UNAVAILABLE WARNING\n")

        final = publisher.publish(RUN_DATE)

        assert final.name == "2026-07-15"
        assert (final / "fire_danger_forecast.nc").read_bytes() == b"new"
        assert not work.exists()
        assert not publisher.warning_path.exists()

    def test_republish_replaces_same_day(self, publisher):
        publisher.begin(RUN_DATE)
        publisher.publish(RUN_DATE)
        work = publisher.begin(RUN_DATE)
        (work / "marker").write_text("second")

        final = publisher.publish(RUN_DATE)

        assert (final / "marker").read_text() == "second"
        assert [p.name for p in publisher.eco_dir.iterdir()] == ["2026-07-15"]

    def test_reject_keeps_last_good_forecast(self, publisher):
        earlier = date(2026, 7, 14)
        publisher.begin(earlier)
        publisher.publish(earlier)
        work = publisher.begin(RUN_DATE)

        publisher.reject(RUN_DATE, "No variation", ["errors: ['No variation']"])

        assert not work.exists()
        assert publisher.published_dir(earlier).exists()
        assert not publisher.published_dir(RUN_DATE).exists()
        text = publisher.warning_path.read_text()
        assert "FORECAST UNAVAILABLE WARNING" in text
        assert "No variation" in text

    def test_begin_drops_partial_output(self, publisher):
        stale = publisher.begin(date(2026, 7, 14))
        publisher.begin(RUN_DATE)
        assert not stale.exists()

    def test_begin_restores_interrupted_swap(self, publisher):
        earlier = date(2026, 7, 14)
        publisher.begin(earlier)
        (publisher.publish(earlier) / "marker").write_text("live")
        aside = publisher.eco_dir / ".replaced_2026-07-14_0a1b"
        publisher.published_dir(earlier).rename(aside)

        publisher.begin(RUN_DATE)

        assert (publisher.published_dir(earlier) / "marker").read_text() == "live"
        assert not aside.exists()

    def test_begin_drops_leftover_replaced_dir(self, publisher):
        publisher.begin(RUN_DATE)
        publisher.publish(RUN_DATE)
        leftover = publisher.eco_dir / ".replaced_2026-07-15_0a1b"
        leftover.mkdir()

        publisher.begin(date(2026, 7, 16))

        assert not leftover.exists()
        assert publisher.published_dir(RUN_DATE).exists()

    def test_archive_keeps_newest_two(self, publisher):
        for day in (11, 12, 13, 14):
            publisher.begin(date(2026, 7, day))
            publisher.publish(date(2026, 7, day))

        moved = publisher.archive_old_forecasts(keep=2)

        assert sorted(p.name for p in moved) == ["2026-07-11", "2026-07-12"]
        remaining = sorted(p.name for p in publisher.eco_dir.iterdir() if p.is_dir())
        assert remaining == ["2026-07-13", "2026-07-14"]
        assert (publisher.archive_dir / "2026-07-11").is_dir()
        assert publisher.archive_dir.parts[-2:] == ("forecasts", "middle_rockies")

    def test_archive_noop_when_few(self, publisher):
        publisher.begin(RUN_DATE)
        publisher.publish(RUN_DATE)
        assert publisher.archive_old_forecasts(keep=2) == []
