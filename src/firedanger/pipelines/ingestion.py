"""Forecast ingestion and slot rotation.

For each variable the manager fetches a candidate, checks that it starts
today or tomorrow, compares it to the current slot 0 and, when it carries
new data, rotates it in. Nothing here sleeps or retries: every call returns
an :class:`IngestionResult` and the caller (scheduler) owns backoff.

Staleness policy:
- before the UTC cutoff hour, a stale candidate or failed download is
  retryable and the store is left untouched
- at or after the cutoff, the existing forecast is kept deliberately and a
  ``STALE_DATA_WARNING.txt`` flag is written next to the variable's slots

Coupled variables (tmmx/tmmn feeding gdd_0) are prepared independently and
then committed or discarded together by :func:`decide_coupled`.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from firedanger.config import settings
from firedanger.errors import IncompleteEnsemble, TransientIngestionFailure
from firedanger.grid.io import first_forecast_date
from firedanger.models.enums import IngestionStatus, ProductShape
from firedanger.models.schemas import IngestionResult
from firedanger.models.variables import expand_upstream, get_variable
from firedanger.pipelines.cfsv2_pipeline import CFSv2Pipeline
from firedanger.services.warnings import clear_warning, write_warning
from firedanger.store.variable_store import CURRENT_SLOT, VariableStore

logger = logging.getLogger(__name__)

COMMIT = "commit"
NOOP = "noop"
DISCARD = "discard"


def is_fresh(forecast_start: date, run_date: date) -> bool:
    """A forecast is fresh when it starts on the run date or the day after."""
    return forecast_start in (run_date, run_date + timedelta(days=1))


def past_stale_cutoff(now: datetime, cutoff_hour: int) -> bool:
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.hour >= cutoff_hour


def decide_coupled(results: dict[str, IngestionResult]) -> tuple[str, str]:
    """Decide what to do with a group of prepared coupled candidates.

    Returns:
        (action, reason) where action is ``commit`` (every member has new
        data), ``noop`` (no member has new data) or ``discard`` (a member
        failed, or only some members changed).
    """
    failed = [r for r in results.values() if r.status == IngestionStatus.RETRYABLE]
    if failed:
        return DISCARD, failed[0].reason

    changed = [name for name, r in results.items() if r.changed]
    if len(changed) == len(results):
        return COMMIT, "all coupled variables have new data"
    if not changed:
        return NOOP, "all coupled variables unchanged"
    unchanged = sorted(set(results) - set(changed))
    return DISCARD, (
        f"desync: {', '.join(sorted(changed))} updated but {', '.join(unchanged)} did not"
    )


def ensure_ready(results: dict[str, IngestionResult]) -> None:
    """Raise the typed error of the first result that asks for a retry."""
    for result in results.values():
        result.raise_for_status()


class IngestionManager:
    """Keeps every variable's slot 0 current."""

    def __init__(
        self,
        client: CFSv2Pipeline | None = None,
        root: str | None = None,
        clock: Callable[[], datetime] | None = None,
        cutoff_hour: int | None = None,
        workers: int | None = None,
    ):
        self.client = client or CFSv2Pipeline()
        self.root = root
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.cutoff_hour = settings.stale_cutoff_hour_utc if cutoff_hour is None else cutoff_hour
        self.workers = workers or settings.download_workers
        self._stores: dict[str, VariableStore] = {}

    def store(self, variable: str) -> VariableStore:
        if variable not in self._stores:
            self._stores[variable] = VariableStore(variable, self.root)
        return self._stores[variable]

    # --- phase one ---

    def prepare(self, variable: str, run_date: date) -> IngestionResult:
        """Fetch and judge a candidate; leaves it staged only if it may commit."""
        store = self.store(variable)
        store.clear_untrusted_staging()
        after_cutoff = past_stale_cutoff(self.clock(), self.cutoff_hour)
        bootstrap = not store.has_slot(CURRENT_SLOT)

        download = store.download_path(0)
        try:
            self.client.fetch(variable, download)
        except (TransientIngestionFailure, IncompleteEnsemble) as e:
            if download.exists():
                download.unlink()
            if isinstance(e, IncompleteEnsemble):
                kind = "incomplete_ensemble"
            else:
                kind = "download_failed"
            return self._unavailable(store, kind, e.message, after_cutoff and not bootstrap)
        except (OSError, ValueError) as e:
            # Members that downloaded but could not be combined
            return self._invalid_download(store, download, e, after_cutoff and not bootstrap)

        try:
            store.stage(download)
            start = first_forecast_date(store.staging_path)
        except (OSError, ValueError) as e:
            return self._invalid_download(store, download, e, after_cutoff and not bootstrap)

        if not is_fresh(start, run_date):
            reason = (
                f"{variable} forecast starts {start}, expected {run_date} "
                f"or {run_date + timedelta(days=1)}"
            )
            if bootstrap and after_cutoff:
                # Nothing to fall back on: the stale candidate becomes slot 0
                self._write_stale_warning(store, run_date, start)
                return IngestionResult(
                    variable=variable,
                    status=IngestionStatus.ACCEPTED_STALE,
                    reason=reason,
                    kind="stale",
                    forecast_start=start,
                    changed=True,
                )
            store.discard_staged()
            result = self._unavailable(store, "stale", reason, after_cutoff, run_date, start)
            result.forecast_start = start
            return result

        changed = bootstrap or not store.staged_matches_current()
        if not changed:
            logger.info(
                "%s: no update detected, keeping slot 0 ingested %s",
                variable,
                store.snapshot(CURRENT_SLOT).ingested_at.isoformat(timespec="seconds"),
            )
            store.discard_staged()
        return IngestionResult(
            variable=variable,
            status=IngestionStatus.READY,
            forecast_start=start,
            changed=changed,
        )

    def _invalid_download(
        self, store: VariableStore, download, error: Exception, accept: bool
    ) -> IngestionResult:
        store.discard_staged()
        if download.exists():
            download.unlink()
        reason = f"{store.variable} candidate unreadable: {error}"
        return self._unavailable(store, "invalid_download", reason, accept)

    def _mark_current(self, store: VariableStore, result: IngestionResult) -> None:
        """Drop the stale flag once slot 0 holds, or equals, a fresh candidate."""
        if result.status == IngestionStatus.READY:
            clear_warning(store.warning_path)

    def _unavailable(
        self,
        store: VariableStore,
        kind: str,
        reason: str,
        accept: bool,
        run_date: date | None = None,
        forecast_start: date | None = None,
    ) -> IngestionResult:
        if accept:
            logger.warning(
                "%s: past stale cutoff (%02d:00 UTC), keeping existing forecast: %s",
                store.variable,
                self.cutoff_hour,
                reason,
            )
            self._write_stale_warning(store, run_date, forecast_start or kind)
            status = IngestionStatus.ACCEPTED_STALE
        else:
            logger.warning("%s: will retry for fresh data: %s", store.variable, reason)
            status = IngestionStatus.RETRYABLE
        return IngestionResult(variable=store.variable, status=status, reason=reason, kind=kind)

    def _write_stale_warning(self, store: VariableStore, run_date, actual) -> None:
        run_date = run_date or self.clock().date()
        write_warning(
            store.warning_path,
            "STALE FORECAST DATA WARNING",
            [
                f"Variable: {store.variable}",
                f"Expected forecast date: {run_date}",
                f"Actual forecast date: {actual}",
                "The upstream provider has not published today's forecast.",
                "This pipeline is using the previous forecast data.",
            ],
        )

    # --- phase two ---

    def _commit(self, variable: str, keep_bridge: bool = False) -> None:
        store = self.store(variable)
        bootstrap = not store.has_slot(CURRENT_SLOT)
        store.commit_rotation(keep_bridge=keep_bridge)
        if bootstrap:
            self._seed_older_slots(variable)

    def _seed_older_slots(self, variable: str) -> None:
        """Best-effort fill of slots 1 and 2 from older ensemble issues."""
        if get_variable(variable).product != ProductShape.ENSEMBLE:
            return
        store = self.store(variable)
        for offset in (1, 2):
            if store.has_slot(offset):
                continue
            download = store.download_path(offset)
            try:
                self.client.fetch(variable, download, offset=offset)
            except (TransientIngestionFailure, IncompleteEnsemble) as e:
                logger.warning("%s: could not seed slot %d: %s", variable, offset, e)
                if download.exists():
                    download.unlink()
                continue
            store.install(offset, download)

    def update_variable(self, variable: str, run_date: date) -> IngestionResult:
        """Prepare and, when new data arrived, rotate one independent variable."""
        result = self.prepare(variable, run_date)
        store = self.store(variable)
        if result.ok and result.changed and store.staged is not None:
            self._commit(variable)
        else:
            store.discard_staged()
        self._mark_current(store, result)
        logger.info("%s: %s %s", variable, result.status.value, result.reason)
        return result

    def update_coupled(
        self, variables: tuple[str, ...], run_date: date
    ) -> dict[str, IngestionResult]:
        """Two-phase update of a coupled group: all rotate or none do."""
        results = {var: self.prepare(var, run_date) for var in variables}
        action, reason = decide_coupled(results)

        if action == COMMIT:
            logger.info("%s: rotating together (%s)", "+".join(variables), reason)
            for var in variables:
                self._commit(var, keep_bridge=True)
                self._mark_current(self.store(var), results[var])
            return results

        for var in variables:
            self.store(var).discard_staged()

        if action == NOOP:
            logger.info("%s: %s", "+".join(variables), reason)
            for var in variables:
                self._mark_current(self.store(var), results[var])
            return results

        failed = next((r for r in results.values() if not r.ok), None)
        kind = failed.kind if failed is not None else "desync"
        logger.warning("Coupled group %s discarded: %s", "+".join(variables), reason)
        return {
            var: IngestionResult(
                variable=var,
                status=IngestionStatus.RETRYABLE,
                reason=reason,
                kind=kind,
                forecast_start=r.forecast_start,
            )
            for var, r in results.items()
        }

    def update_all(self, upstream: list[str], run_date: date) -> dict[str, IngestionResult]:
        """Update every upstream variable an ecoregion set needs.

        Derived variables are replaced by their coupled components.
        Independent variables download concurrently.
        """
        independent, coupled = expand_upstream(upstream)
        results: dict[str, IngestionResult] = {}

        n_workers = max(1, min(self.workers, len(independent)))
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = {var: pool.submit(self.update_variable, var, run_date) for var in independent}
            for var, future in futures.items():
                results[var] = future.result()

        for group in coupled:
            results.update(self.update_coupled(group, run_date))

        retry = [v for v, r in results.items() if r.status == IngestionStatus.RETRYABLE]
        stale = [v for v, r in results.items() if r.status == IngestionStatus.ACCEPTED_STALE]
        logger.info(
            "Ingestion: %d variable(s), %d retryable, %d accepted stale",
            len(results),
            len(retry),
            len(stale),
        )
        return results
