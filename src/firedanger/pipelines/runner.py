"""Pipeline runner - ingestion and per-ecoregion forecasts for cron or manual use.

Usage:
    firedanger-run update [--date 2026-07-15]
    firedanger-run forecast --ecoregion middle_rockies [--date 2026-07-15]
    firedanger-run all [--workers 4]

Exit codes: 0 published cleanly, 1 failed or should be retried, 2 published
with validation warnings.
"""

from __future__ import annotations

import argparse
import logging
import sys
from concurrent.futures import ProcessPoolExecutor
from datetime import date

from firedanger.config import load_ecoregions, get_ecoregion, settings
from firedanger.errors import ForecastError
from firedanger.models.enums import IngestionStatus, ValidationStatus
from firedanger.models.schemas import ForecastRunResult, IngestionResult

logger = logging.getLogger("firedanger.runner")

EXIT_OK = ValidationStatus.PASS.exit_code
EXIT_FAIL = ValidationStatus.FAIL.exit_code
EXIT_WARN = ValidationStatus.WARN.exit_code


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    if settings.sentry_dsn:
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=0.1,
            environment="production" if not settings.debug else "development",
            release=f"firedanger@{settings.app_version}",
        )
        logger.info("Sentry error tracking initialized")


def combine_exit_codes(codes: list[int]) -> int:
    """Any failure wins over any warning, which wins over success."""
    if EXIT_FAIL in codes:
        return EXIT_FAIL
    if EXIT_WARN in codes:
        return EXIT_WARN
    return EXIT_OK


def run_ingestion(run_date: date, config_path: str | None = None) -> dict[str, IngestionResult]:
    """Bring every upstream variable of every enabled ecoregion up to date."""
    from firedanger.pipelines.ingestion import IngestionManager

    upstream: list[str] = []
    for eco in load_ecoregions(config_path).enabled():
        upstream.extend(v for v in eco.upstream_variables if v not in upstream)

    logger.info("Updating %d upstream variable(s) for %s", len(upstream), run_date)
    return IngestionManager().update_all(upstream, run_date)


def ingestion_exit_code(results: dict[str, IngestionResult]) -> int:
    retry = sorted(v for v, r in results.items() if r.status == IngestionStatus.RETRYABLE)
    if retry:
        logger.warning("Retry needed for: %s", ", ".join(retry))
        return EXIT_FAIL
    return EXIT_OK


def run_forecast(
    name_clean: str, run_date: date, config_path: str | None = None
) -> ForecastRunResult:
    from firedanger.pipelines.forecast_pipeline import ForecastPipeline

    eco = get_ecoregion(name_clean, config_path)
    return ForecastPipeline(eco).run(run_date)


def forecast_worker(name_clean: str, run_date: date, config_path: str | None = None):
    """Process-pool entry point: returns ``(ecoregion, exit_code, message)``."""
    try:
        result = run_forecast(name_clean, run_date, config_path)
    except ForecastError as e:
        return name_clean, EXIT_FAIL, f"{type(e).__name__}: {e.message}"
    except Exception as e:
        logger.error("Unexpected failure for %s: %s", name_clean, e, exc_info=True)
        return name_clean, EXIT_FAIL, f"{type(e).__name__}: {e}"
    return name_clean, result.status.exit_code, result.status.value


def run_all(run_date: date, config_path: str | None = None, workers: int | None = None) -> int:
    """Ingest once, then forecast every enabled ecoregion in parallel processes."""
    results = run_ingestion(run_date, config_path)
    code = ingestion_exit_code(results)
    if code != EXIT_OK:
        logger.error("Ingestion incomplete; skipping forecasts until the next attempt")
        return code

    names = [eco.name_clean for eco in load_ecoregions(config_path).enabled()]
    n_workers = max(1, min(workers or settings.ecoregion_workers, len(names)))
    logger.info("Forecasting %d ecoregion(s) with %d worker(s)", len(names), n_workers)

    with ProcessPoolExecutor(max_workers=n_workers) as pool:
        futures = [pool.submit(forecast_worker, name, run_date, config_path) for name in names]
        outcomes = [f.result() for f in futures]

    for name, exit_code, message in outcomes:
        log = logger.info if exit_code == EXIT_OK else logger.warning
        log("%s: %s", name, message)
    return combine_exit_codes([exit_code for _, exit_code, _ in outcomes])


def _parse_date(value: str | None) -> date:
    return date.fromisoformat(value) if value else date.today()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Fire danger forecast runner")
    parser.add_argument("--config", type=str, help="Ecoregion YAML (default: from settings)")
    sub = parser.add_subparsers(dest="command")

    p_update = sub.add_parser("update", help="Ingest the latest upstream forecasts")
    p_update.add_argument("--date", type=str, help="Run date (YYYY-MM-DD)")

    p_fc = sub.add_parser("forecast", help="Generate one ecoregion's forecast")
    p_fc.add_argument("--ecoregion", required=True, help="Ecoregion name_clean")
    p_fc.add_argument("--date", type=str, help="Run date (YYYY-MM-DD)")

    p_all = sub.add_parser("all", help="Ingest, then forecast every enabled ecoregion")
    p_all.add_argument("--date", type=str, help="Run date (YYYY-MM-DD)")
    p_all.add_argument("--workers", type=int, default=0, help="Parallel ecoregions")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_FAIL

    configure_logging()
    run_date = _parse_date(args.date)

    try:
        if args.command == "update":
            code = ingestion_exit_code(run_ingestion(run_date, args.config))
        elif args.command == "forecast":
            result = run_forecast(args.ecoregion, run_date, args.config)
            print(f"{result.ecoregion} {result.run_date}: {result.status.value}")
            print(f"  Output: {result.output_path}")
            code = result.status.exit_code
        else:
            code = run_all(run_date, args.config, args.workers or None)
    except ForecastError as e:
        logger.error("%s: %s", type(e).__name__, e.message)
        code = EXIT_FAIL

    return code


if __name__ == "__main__":
    sys.exit(main())
