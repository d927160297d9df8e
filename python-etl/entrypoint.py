"""Groundwater ETL entrypoint supporting one-shot and scheduled modes.

Usage:
    python entrypoint.py                          # Daily update, priority counties
    python entrypoint.py --mode daily 06019 047   # Daily update, given counties
    python entrypoint.py --mode daily --all-counties
    python entrypoint.py --mode historical        # Whole history, all counties
    python entrypoint.py --mode backfill          # County x year replay
    python entrypoint.py --mode backfill --resume # Skip chunks already done
    python entrypoint.py --mode sites             # Monitoring-site metadata
    python entrypoint.py --mode stats             # Measurement distribution
    python entrypoint.py --mode init-db           # Create tables
    python entrypoint.py --mode scheduled         # Long-lived scheduler
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from typing import Sequence

from sqlalchemy import create_engine

from california_counties import resolve_counties
from config import GroundwaterEtlError, Settings
from etl_pipeline import GroundwaterPipeline, RunSummary
from postgis_store import BackfillLedger, PostGISStore
from run_tracker import RunTracker
from schema import create_schema
from upsert_writer import measurement_writer, site_writer
from usgs_client import UsgsClient

logger = logging.getLogger(__name__)

PIPELINE_MODES = ("daily", "historical", "backfill", "sites")
MODES = PIPELINE_MODES + ("stats", "init-db", "scheduled")


def _install_signal_handlers(cancel_event: asyncio.Event) -> None:
    """Stop dispatching new batches on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def request_stop(signum: int) -> None:
        logger.warning("Received signal %d; finishing current batch then stopping", signum)
        cancel_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, request_stop, signum)


async def _run_pipeline(
    mode: str,
    county_codes: Sequence[str] | None,
    settings: Settings,
    *,
    priority_only: bool,
    resume: bool = False,
) -> RunSummary:
    counties = resolve_counties(county_codes, priority_only=priority_only)
    engine = create_engine(settings.require_database_url())
    store = PostGISStore(engine)
    writer_options = {
        "sub_batch_size": settings.upsert_batch_size,
        "on_conflict": settings.on_conflict,
        "count_mode": settings.count_mode,
    }

    cancel_event = asyncio.Event()
    _install_signal_handlers(cancel_event)

    try:
        async with UsgsClient(
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            jitter=settings.retry_jitter,
            max_concurrent_requests=settings.max_concurrent_requests,
        ) as client:
            pipeline = GroundwaterPipeline(
                client=client,
                measurement_writer=measurement_writer(store, **writer_options),
                store=store,
                tracker=RunTracker(engine),
                settings=settings,
                site_writer=site_writer(store, **writer_options),
                ledger=BackfillLedger(engine) if mode == "backfill" else None,
                cancel_event=cancel_event,
            )
            if mode == "daily":
                return await pipeline.run_daily(counties)
            if mode == "historical":
                return await pipeline.run_historical(counties)
            if mode == "backfill":
                return await pipeline.run_backfill(counties, resume=resume)
            if mode == "sites":
                return await pipeline.run_sites(counties)
            raise ValueError(f"Unknown update type: {mode}")
    finally:
        engine.dispose()


def execute_run(
    update_type: str,
    county_codes: Sequence[str] | None = None,
    *,
    priority_only: bool | None = None,
    resume: bool = False,
) -> RunSummary:
    """Execute a single pipeline run of the given type.

    Args:
        update_type: One of 'daily', 'historical', 'backfill', 'sites'.
        county_codes: Explicit counties; None means the mode's default set.
        priority_only: Restrict the default set to priority counties.
            Defaults to True for 'daily' and False otherwise.
        resume: Backfill only; skip work items recorded as complete.
    """
    settings = Settings.from_env()
    if priority_only is None:
        priority_only = update_type == "daily"
    return asyncio.run(_run_pipeline(
        update_type, county_codes, settings,
        priority_only=priority_only, resume=resume,
    ))


def _print_stats(settings: Settings) -> None:
    engine = create_engine(settings.require_database_url())
    try:
        stats = PostGISStore(engine).measurement_stats()
    finally:
        engine.dispose()
    print(f"Total measurements:           {stats.total_measurements}")
    print(f"Sites with measurements:      {stats.distinct_sites}")
    print(f"Average measurements per site: {stats.average_per_site:.2f}")
    print(f"Min / median / max per site:  "
          f"{stats.min_per_site} / {stats.median_per_site:g} / {stats.max_per_site}")
    share = (
        stats.single_measurement_sites / stats.distinct_sites * 100
        if stats.distinct_sites else 0.0
    )
    print(f"Sites with exactly 1 measurement: {stats.single_measurement_sites} ({share:.1f}%)")
    print(f"Earliest measurement:         {stats.earliest}")
    print(f"Latest measurement:           {stats.latest}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="California groundwater ETL entrypoint")
    parser.add_argument(
        "--mode", default=None, choices=MODES,
        help="Run mode (default: $ETL_MODE or daily)",
    )
    parser.add_argument(
        "counties", nargs="*", metavar="COUNTY",
        help="County FIPS codes (06047) or county codes (047); default: all/priority",
    )
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument(
        "--all-counties", dest="priority_only", action="store_false", default=None,
        help="Process every California county (default for all modes but daily)",
    )
    scope.add_argument(
        "--priority-only", dest="priority_only", action="store_true", default=None,
        help="Process only the priority counties (default for daily)",
    )
    parser.add_argument(
        "--resume", action="store_true",
        help="Backfill only: skip county/date ranges already completed",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate run mode."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    mode = args.mode or os.environ.get("ETL_MODE", "daily")

    try:
        if mode == "scheduled":
            from scheduler import get_schedule_config, run_scheduled
            run_scheduled(execute_run, get_schedule_config())
            return 0

        if mode == "init-db":
            engine = create_engine(Settings.from_env().require_database_url())
            try:
                create_schema(engine)
            finally:
                engine.dispose()
            return 0

        if mode == "stats":
            _print_stats(Settings.from_env())
            return 0

        if mode not in PIPELINE_MODES:
            raise GroundwaterEtlError(f"Unknown mode: {mode}")
        summary = execute_run(
            mode, args.counties,
            priority_only=args.priority_only, resume=args.resume,
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("%s run failed: %s", mode, exc)
        return 1

    print(f"{summary.job_name}: {summary.describe()} in {summary.duration_seconds:.1f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
