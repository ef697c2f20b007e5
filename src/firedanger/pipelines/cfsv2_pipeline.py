"""CFSv2 (Climate Forecast System v2) metdata forecast client.

Downloads daily forecast products from the Northwest Knowledge Network
THREDDS file server. Two product shapes exist:

- aggregated: one pre-averaged file per variable (used for VPD)
- ensemble: 4 issue hours x 4 members, each a separate file, averaged here
  only when every member downloaded

Ensemble files carry a day offset (0 = today's issue, 1 = yesterday's, ...)
so older issues can seed an empty store.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np

from firedanger.config import settings
from firedanger.errors import IncompleteEnsemble, TransientIngestionFailure
from firedanger.grid.io import read_daily_grid, same_grid, write_daily_grid
from firedanger.models.enums import ProductShape
from firedanger.models.variables import get_variable
from firedanger.services.http import download_file

logger = logging.getLogger(__name__)


class CFSv2Pipeline:
    """Fetches one variable's forecast candidate into a local file."""

    def __init__(
        self,
        base_url: str | None = None,
        issue_hours: list[str] | None = None,
        members: list[str] | None = None,
        workers: int | None = None,
    ):
        self.base_url = (base_url or settings.cfsv2_base_url).rstrip("/")
        self.issue_hours = issue_hours or settings.ensemble_issue_hours
        self.members = members or settings.ensemble_members
        self.workers = workers or settings.download_workers

    @property
    def expected_members(self) -> int:
        return len(self.issue_hours) * len(self.members)

    def aggregated_url(self, variable: str) -> str:
        return f"{self.base_url}/cfsv2_metdata_forecast_{variable}_daily.nc"

    def member_urls(self, variable: str, offset: int = 0) -> list[str]:
        return [
            f"{self.base_url}/cfsv2_metdata_forecast_{variable}_daily_{hour}_{member}_{offset}.nc"
            for hour in self.issue_hours
            for member in self.members
        ]

    def fetch(self, variable: str, dest: Path, offset: int = 0) -> Path:
        """Download the candidate for *variable* into *dest*."""
        var = get_variable(variable)
        if var.product == ProductShape.AGGREGATED:
            if offset != 0:
                raise ValueError(f"{variable} is an aggregated product; only offset 0 exists")
            return self.download_aggregated(variable, dest)
        return self.download_ensemble_mean(variable, dest, offset=offset)

    def download_aggregated(self, variable: str, dest: Path) -> Path:
        url = self.aggregated_url(variable)
        logger.info("Downloading aggregated %s forecast", variable)
        return download_file(url, Path(dest))

    def download_ensemble_mean(self, variable: str, dest: Path, offset: int = 0) -> Path:
        """Download every member for *offset* and write their mean to *dest*.

        Members download concurrently; completeness is judged only after
        all downloads resolve.

        Raises:
            IncompleteEnsemble: any member is missing.
        """
        urls = self.member_urls(variable, offset)
        work_dir = Path(tempfile.mkdtemp(prefix=f"cfsv2_{variable}_{offset}_"))
        try:
            targets = [work_dir / url.rsplit("/", 1)[-1] for url in urls]
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                futures = [pool.submit(download_file, u, t) for u, t in zip(urls, targets)]
                paths: list[Path] = []
                for url, future in zip(urls, futures):
                    try:
                        paths.append(future.result())
                    except TransientIngestionFailure as e:
                        logger.warning("Ensemble member unavailable: %s (%s)", url, e)

            logger.info(
                "%s offset %d: %d of %d ensemble members downloaded",
                variable,
                offset,
                len(paths),
                self.expected_members,
            )
            return ensemble_mean(variable, paths, Path(dest), self.expected_members)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)


def ensemble_mean(variable: str, paths: list[Path], dest: Path, expected: int) -> Path:
    """Average member files cell by cell. Undefined unless all members exist.

    Raises:
        IncompleteEnsemble: ``len(paths) != expected``.
        ValueError: members disagree on grid or dates.
    """
    if len(paths) != expected:
        raise IncompleteEnsemble(variable, len(paths), expected)

    total = None
    reference = None
    for path in paths:
        member = read_daily_grid(path, variable)
        if reference is None:
            reference = member
            total = member.values.astype("float64")
            continue
        if not same_grid(reference, member) or not np.array_equal(
            reference["time"].values, member["time"].values
        ):
            raise ValueError(f"Ensemble member {Path(path).name} does not match the first member")
        total += member.values

    mean = reference.copy(data=(total / len(paths)).astype("float32"))
    write_daily_grid(mean, dest, variable, complevel=settings.output_complevel)
    return dest
