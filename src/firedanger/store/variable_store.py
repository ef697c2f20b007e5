"""On-disk store for rotating forecast snapshots and cached historical pulls.

Each forecast variable keeps up to four slots under ``data/forecasts/{var}/``:
0 (current), 1 (previous), 2 (two runs ago) and 3 (bridge, kept only for
coupled variables). A new candidate is first written to a staging file and
only becomes slot 0 through :meth:`VariableStore.commit_rotation`.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import pandas as pd
import xarray as xr

from firedanger.config import settings
from firedanger.grid.io import first_forecast_date, read_daily_grid, write_daily_grid

logger = logging.getLogger(__name__)

CURRENT_SLOT = 0
BRIDGE_SLOT = 3
SLOTS = (0, 1, 2, 3)
STALE_WARNING_NAME = "STALE_DATA_WARNING.txt"

# (source slot or None for the staged candidate, destination slot)
RotationStep = tuple[Optional[int], int]


def file_fingerprint(path: str | Path, chunk_size: int = 1 << 20) -> str:
    """SHA-256 of a file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def plan_rotation(
    present: set[int] | frozenset[int], keep_bridge: bool = False
) -> list[RotationStep]:
    """Return the ordered moves that install a staged candidate as slot 0.

    Older slots are shifted first (oldest first) so that slot 0 is only
    replaced once its previous content already lives in slot 1.
    """
    steps: list[RotationStep] = []
    if keep_bridge and 2 in present:
        steps.append((2, BRIDGE_SLOT))
    if 1 in present:
        steps.append((1, 2))
    if 0 in present:
        steps.append((0, 1))
    steps.append((None, CURRENT_SLOT))
    check_rotation_plan(steps, present)
    return steps


def check_rotation_plan(steps: list[RotationStep], present: set[int] | frozenset[int]) -> None:
    """Assert that a plan never exposes a new slot 0 before older slots shifted."""
    assert steps and steps[-1] == (None, CURRENT_SLOT), "candidate must be installed last"
    assert sum(1 for src, _ in steps if src is None) == 1, "exactly one candidate install"
    shifted = {src for src, _ in steps[:-1]}
    for slot in (0, 1):
        if slot in present:
            assert slot in shifted, f"slot {slot} would be overwritten before being shifted"
    order = [src for src, _ in steps[:-1]]
    assert order == sorted(order, reverse=True), "older slots must be shifted first"


class ForecastSnapshot:
    """One slot of a variable's forecast history."""

    def __init__(self, variable: str, slot: int, path: Path):
        self.variable = variable
        self.slot = slot
        self.path = Path(path)

    @property
    def fingerprint(self) -> str:
        return file_fingerprint(self.path)

    @property
    def ingested_at(self) -> datetime:
        return datetime.fromtimestamp(self.path.stat().st_mtime, tz=timezone.utc)

    @property
    def forecast_start(self) -> date:
        return first_forecast_date(self.path)

    def load(self) -> xr.DataArray:
        return read_daily_grid(self.path, self.variable)

    def __repr__(self) -> str:
        return f"ForecastSnapshot({self.variable!r}, slot={self.slot}, path={str(self.path)!r})"


class VariableStore:
    """Explicit handle on one variable's forecast slots."""

    def __init__(self, variable: str, root: str | Path | None = None):
        self.variable = variable
        self.root = Path(root or Path(settings.data_dir) / "forecasts") / variable
        self.root.mkdir(parents=True, exist_ok=True)

    # --- paths ---

    def slot_path(self, slot: int) -> Path:
        if slot not in SLOTS:
            raise ValueError(f"Invalid slot {slot}; expected one of {SLOTS}")
        return self.root / f"cfsv2_metdata_forecast_{self.variable}_daily_{slot}.nc"

    @property
    def staging_path(self) -> Path:
        return self.root / f"cfsv2_metdata_forecast_{self.variable}_daily.nc.tmp"

    def download_path(self, offset: int = 0) -> Path:
        """Scratch target for a fetch; cleared with the other staging files."""
        return self.root / f"cfsv2_metdata_forecast_{self.variable}_daily_{offset}.nc.tmp.download"

    @property
    def warning_path(self) -> Path:
        return self.root / STALE_WARNING_NAME

    # --- reads ---

    def has_slot(self, slot: int) -> bool:
        return self.slot_path(slot).exists()

    def snapshot(self, slot: int) -> ForecastSnapshot | None:
        path = self.slot_path(slot)
        if not path.exists():
            return None
        return ForecastSnapshot(self.variable, slot, path)

    def snapshots(self) -> dict[int, ForecastSnapshot]:
        """Present slots keyed by slot number."""
        found = {}
        for slot in SLOTS:
            snap = self.snapshot(slot)
            if snap is not None:
                found[slot] = snap
        return found

    def present_slots(self) -> set[int]:
        return {slot for slot in SLOTS if self.has_slot(slot)}

    # --- staging ---

    def stage(self, source: str | Path | xr.DataArray) -> Path:
        """Place a candidate in the staging file; slot files are untouched."""
        if isinstance(source, xr.DataArray):
            tmp = self.staging_path.with_suffix(".tmp.part")
            write_daily_grid(source, tmp, self.variable, complevel=settings.output_complevel)
            os.replace(tmp, self.staging_path)
        else:
            os.replace(source, self.staging_path)
        return self.staging_path

    @property
    def staged(self) -> Path | None:
        return self.staging_path if self.staging_path.exists() else None

    def staged_fingerprint(self) -> str:
        if self.staged is None:
            raise FileNotFoundError(f"No staged candidate for {self.variable}")
        return file_fingerprint(self.staging_path)

    def staged_matches_current(self) -> bool:
        current = self.snapshot(CURRENT_SLOT)
        if current is None:
            return False
        return self.staged_fingerprint() == current.fingerprint

    def discard_staged(self) -> None:
        if self.staging_path.exists():
            self.staging_path.unlink()
            logger.info("Discarded staged candidate for %s", self.variable)

    def clear_untrusted_staging(self) -> int:
        """Delete staging leftovers from earlier or concurrent runs."""
        removed = 0
        for path in self.root.glob("*.tmp*"):
            path.unlink()
            removed += 1
        if removed:
            logger.warning(
                "Removed %d untrusted staging file(s) for %s", removed, self.variable
            )
        return removed

    # --- writes ---

    def install(self, slot: int, source: str | Path) -> Path:
        """Seed an empty slot directly (bootstrap only)."""
        dest = self.slot_path(slot)
        if dest.exists():
            raise FileExistsError(f"Slot {slot} of {self.variable} already populated")
        os.replace(source, dest)
        logger.info("Seeded %s slot %d", self.variable, slot)
        return dest

    def commit_rotation(
        self,
        keep_bridge: bool = False,
        observer: Callable[[VariableStore, RotationStep], None] | None = None,
    ) -> list[RotationStep]:
        """Shift slots and install the staged candidate as slot 0.

        Shifts copy into a temp file and rename it over the destination, so
        every slot name always refers to a complete file and the previous
        slot 0 stays in place until the final rename.
        """
        if self.staged is None:
            raise FileNotFoundError(f"No staged candidate to commit for {self.variable}")

        steps = plan_rotation(self.present_slots(), keep_bridge=keep_bridge)
        for step in steps:
            src, dst = step
            dest = self.slot_path(dst)
            if src is None:
                os.replace(self.staging_path, dest)
            else:
                tmp = dest.with_name(dest.name + ".tmp")
                shutil.copyfile(self.slot_path(src), tmp)
                os.replace(tmp, dest)
            if observer is not None:
                observer(self, step)

        logger.info(
            "Rotated %s: %s",
            self.variable,
            ", ".join(f"{'new' if s is None else s}->{d}" for s, d in steps),
        )
        return steps


class HistoricalRecord:
    """Most recent observational pull for one (ecoregion, variable)."""

    def __init__(self, ecoregion: str, variable: str, data: xr.DataArray, from_cache: bool = False):
        self.ecoregion = ecoregion
        self.variable = variable
        self.data = data
        self.from_cache = from_cache

    @property
    def as_of(self) -> date:
        return pd.Timestamp(self.data["time"].values[-1]).date()


class HistoricalCache:
    """Per-(ecoregion, variable) cache of the last successful historical pull."""

    def __init__(self, cache_dir: str | Path | None = None):
        self.cache_dir = Path(cache_dir or Path(settings.out_dir) / "cache")

    def path(self, ecoregion: str, variable: str) -> Path:
        return self.cache_dir / f"{ecoregion}_{variable}_latest_gridmet.nc"

    def save(self, record: HistoricalRecord) -> Path:
        dest = self.path(record.ecoregion, record.variable)
        tmp = dest.with_name(dest.name + ".tmp")
        write_daily_grid(record.data, tmp, record.variable)
        os.replace(tmp, dest)
        logger.info(
            "Cached historical %s for %s (as of %s)",
            record.variable,
            record.ecoregion,
            record.as_of,
        )
        return dest

    def load(self, ecoregion: str, variable: str) -> HistoricalRecord | None:
        path = self.path(ecoregion, variable)
        if not path.exists():
            return None
        data = read_daily_grid(path, variable)
        return HistoricalRecord(ecoregion, variable, data, from_cache=True)
