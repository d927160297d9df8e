"""California groundwater ingestion pipeline.

Fetches groundwater-level time series and monitoring-site metadata from
the USGS water-data APIs, county by county, and upserts them into
PostGIS. Three measurement modes share one run lifecycle:

* daily incremental: each county from its latest stored measurement
  (minus a lookback window) through today;
* historical fetch: whole history per county in one request, falling
  back to date-chunked requests for counties where that fails;
* backfill: every county x date chunk from a fixed start date. Every
  write is idempotent, so a backfill can be re-run from scratch at any
  time; with a ledger it can also skip chunks that already finished.

A fourth mode refreshes the monitoring-site table.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, Sequence, runtime_checkable

from sqlalchemy.exc import SQLAlchemyError

from batch_runner import WorkItem, run_batches
from california_counties import Region
from config import GroundwaterEtlError, PipelineError, Settings
from date_ranges import DateRange, partition_date_range, trailing_window
from normalizer import normalize_time_series, parse_site_features
from run_tracker import JobRunLog, JobTimer
from upsert_writer import IdempotentUpsertWriter
from usgs_client import FetchError, build_gw_levels_url, build_sites_url

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DAILY_JOB = "statewide_daily_groundwater_update"
HISTORICAL_JOB = "statewide_historical_fetch"
BACKFILL_JOB = "statewide_historical_backfill"
SITES_JOB = "county_sites_update"


class PipelineState(str, Enum):
    INIT = "init"
    ENUMERATE_WORK = "enumerate_work"
    SCHEDULE_BATCH = "schedule_batch"
    AWAIT_BATCH = "await_batch"
    SUMMARIZE = "summarize"
    LOG_RESULT = "log_result"
    DONE = "done"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemResult:
    """Outcome of one successfully processed work item."""

    work_item: WorkItem
    attempted: int
    inserted: int
    failed_ranges: int = 0


@dataclass(frozen=True)
class RunSummary:
    """Totals for one pipeline invocation."""

    job_name: str
    status: str
    records_attempted: int
    records_inserted: int
    counties_processed: int
    counties_total: int
    items_total: int
    items_failed: int
    duration_seconds: float

    def describe(self) -> str:
        return (
            f"Processed {self.counties_processed}/{self.counties_total} counties: "
            f"{self.records_attempted} records attempted, "
            f"{self.records_inserted} new, "
            f"{self.items_failed}/{self.items_total} work items failed"
        )


# ---------------------------------------------------------------------------
# Protocols (interfaces for dependency injection)
# ---------------------------------------------------------------------------


@runtime_checkable
class JsonSource(Protocol):
    """Fetches and decodes upstream JSON, retrying transient failures."""

    async def fetch_json(self, url: str) -> Any:
        ...


@runtime_checkable
class PipelineStore(Protocol):
    """Read-side queries the drivers need from the measurement store."""

    def latest_measurement_time(self, county_code: str) -> datetime | None:
        """Most recent stored measurement timestamp for a county."""
        ...

    def refresh_site_measurement_counts(self) -> int:
        """Recompute per-site measurement totals; returns sites updated."""
        ...


@runtime_checkable
class RunLogger(Protocol):
    def log_run(self, entry: JobRunLog) -> bool:
        ...


@runtime_checkable
class CompletionLedger(Protocol):
    def is_complete(self, county_code: str, date_range: DateRange) -> bool:
        ...

    def mark_complete(
        self,
        county_code: str,
        date_range: DateRange,
        records_attempted: int,
        records_inserted: int,
    ) -> None:
        ...


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class GroundwaterPipeline:
    """Drives county-partitioned fetch/normalize/upsert runs.

    Uses constructor injection for all I/O dependencies so each mode
    can be tested with fake clients, stores and writers.

    Args:
        client: Upstream JSON source (``UsgsClient``).
        measurement_writer: Upsert writer for the time-series table.
        store: Store answering latest-measurement and site-count queries.
        tracker: Run logger receiving one entry per invocation.
        settings: Batch sizes, delays and date windows.
        site_writer: Upsert writer for the monitoring-site table.
        ledger: Optional completion ledger for resumable backfills.
        today: Returns the current date.
        sleep: Awaitable sleep used for inter-batch delays.
        cancel_event: When set, no further batches are started.
    """

    def __init__(
        self,
        client: JsonSource,
        measurement_writer: IdempotentUpsertWriter,
        store: PipelineStore,
        tracker: RunLogger,
        settings: Settings | None = None,
        *,
        site_writer: IdempotentUpsertWriter | None = None,
        ledger: CompletionLedger | None = None,
        today: Callable[[], date] = date.today,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._client = client
        self._writer = measurement_writer
        self._store = store
        self._tracker = tracker
        self._settings = settings or Settings()
        self._site_writer = site_writer
        self._ledger = ledger
        self._today = today
        self._sleep = sleep
        self._cancel_event = cancel_event
        self.state = PipelineState.INIT
        self.state_history: list[PipelineState] = []

    def _transition(self, state: PipelineState) -> None:
        logger.debug("Pipeline state: %s -> %s", self.state.value, state.value)
        self.state = state
        self.state_history.append(state)

    def _full_range(self) -> DateRange:
        """Backfill start through today, inclusive of today."""
        return DateRange(self._settings.backfill_start, self._today() + timedelta(days=1))

    async def _batches(
        self,
        items: Sequence[WorkItem],
        process_fn: Callable[[WorkItem], Awaitable[ItemResult]],
        batch_size: int,
        delay: float,
    ) -> list[ItemResult]:
        return await run_batches(
            items, process_fn, batch_size, delay,
            describe=lambda item: item.label,
            cancel_event=self._cancel_event,
            sleep=self._sleep,
        )

    # -- Run lifecycle -------------------------------------------------------

    async def _run(
        self,
        job_name: str,
        counties: Sequence[Region],
        enumerate_work: Callable[[], list[WorkItem]],
        process_fn: Callable[[WorkItem], Awaitable[ItemResult]],
        batch_size: int,
        delay: float,
        after_batches: Callable[[list[ItemResult]], None] | None = None,
    ) -> RunSummary:
        timer = JobTimer()
        self.state_history = []
        self._transition(PipelineState.INIT)
        logger.info("Starting %s for %d counties", job_name, len(counties))

        try:
            self._transition(PipelineState.ENUMERATE_WORK)
            if not counties:
                raise PipelineError("No counties to process")
            items = enumerate_work()
            logger.info("%s: %d work items", job_name, len(items))

            self._transition(PipelineState.SCHEDULE_BATCH)
            pending = self._batches(items, process_fn, batch_size, delay)
            self._transition(PipelineState.AWAIT_BATCH)
            results = await pending
            if after_batches is not None:
                after_batches(results)

            self._transition(PipelineState.SUMMARIZE)
            summary = RunSummary(
                job_name=job_name,
                status="success",
                records_attempted=sum(r.attempted for r in results),
                records_inserted=sum(r.inserted for r in results),
                counties_processed=len({r.work_item.region.code for r in results}),
                counties_total=len(counties),
                items_total=len(items),
                items_failed=len(items) - len(results),
                duration_seconds=timer.elapsed,
            )
            logger.info("=== %s COMPLETE === %s in %.1fs",
                        job_name, summary.describe(), summary.duration_seconds)
        except Exception as exc:
            failed_in = self.state
            self._transition(PipelineState.ERROR)
            logger.error("%s failed during %s: %s", job_name, failed_in.value, exc)
            self._tracker.log_run(JobRunLog(
                job_name=job_name,
                status="error",
                duration_seconds=timer.elapsed,
                error_message=str(exc) or type(exc).__name__,
            ))
            raise

        self._transition(PipelineState.LOG_RESULT)
        self._tracker.log_run(JobRunLog(
            job_name=job_name,
            status="success",
            records_processed=summary.records_attempted,
            counties_processed=summary.counties_processed,
            duration_seconds=summary.duration_seconds,
            details=summary.describe(),
        ))
        self._transition(PipelineState.DONE)
        return summary

    # -- Work units -----------------------------------------------------------

    async def _fetch_and_write(self, item: WorkItem) -> ItemResult:
        """Fetch one county/date-range, normalize it and upsert the rows."""
        logger.info("Fetching %s", item.label)
        payload = await self._client.fetch_json(
            build_gw_levels_url(item.region.code, item.date_range),
        )
        records = normalize_time_series(payload)
        if not records:
            logger.info("No valid records for %s", item.label)
            return ItemResult(item, 0, 0)

        result = self._writer.upsert(records, label=item.label)
        return ItemResult(item, result.attempted, result.actually_inserted)

    async def _fetch_history(self, item: WorkItem) -> ItemResult:
        """Try the whole history at once; fall back to date chunks."""
        try:
            return await self._fetch_and_write(item)
        except FetchError as exc:
            logger.warning(
                "Full-history fetch failed for %s (%s); retrying in %d-month chunks",
                item.label, exc, self._settings.chunk_months,
            )

        full = self._full_range()
        chunks = [
            WorkItem(item.region, rng)
            for rng in partition_date_range(full.start, full.end, self._settings.chunk_months)
        ]
        results = await self._batches(
            chunks, self._fetch_and_write, 1, self._settings.inter_range_delay,
        )
        if chunks and not results:
            raise GroundwaterEtlError(
                f"All {len(chunks)} date ranges failed for {item.label}"
            )
        return ItemResult(
            item,
            sum(r.attempted for r in results),
            sum(r.inserted for r in results),
            failed_ranges=len(chunks) - len(results),
        )

    async def _fetch_backfill_range(self, item: WorkItem) -> ItemResult:
        result = await self._fetch_and_write(item)
        if self._ledger is not None and item.date_range is not None:
            self._ledger.mark_complete(
                item.region.code, item.date_range, result.attempted, result.inserted,
            )
        return result

    async def _fetch_sites(self, item: WorkItem) -> ItemResult:
        """Fetch and upsert monitoring-site metadata for one county."""
        if self._site_writer is None:
            raise PipelineError("No site writer configured")
        logger.info("Fetching groundwater sites for %s", item.label)
        payload = await self._client.fetch_json(build_sites_url(item.region.code))
        sites = parse_site_features(payload, item.region)
        logger.info("%s: found %d groundwater sites", item.region.name, len(sites))
        if not sites:
            return ItemResult(item, 0, 0)
        result = self._site_writer.upsert(sites, label=item.region.name)
        return ItemResult(item, result.attempted, result.actually_inserted)

    # -- Work enumeration ----------------------------------------------------

    def daily_work_items(self, counties: Sequence[Region]) -> list[WorkItem]:
        """One item per county from its latest measurement minus lookback."""
        today = self._today()
        end = today + timedelta(days=1)
        items: list[WorkItem] = []
        for region in counties:
            latest = self._store.latest_measurement_time(region.code)
            if latest is None:
                date_range = trailing_window(today, self._settings.default_window_days)
            else:
                latest_day = latest.date() if isinstance(latest, datetime) else latest
                start = latest_day - timedelta(days=self._settings.lookback_days)
                date_range = DateRange(min(start, today), end)
            items.append(WorkItem(region, date_range))
        return items

    def backfill_work_items(
        self,
        counties: Sequence[Region],
        resume: bool = False,
    ) -> list[WorkItem]:
        """Every county crossed with every date chunk of the backfill range."""
        full = self._full_range()
        ranges = partition_date_range(full.start, full.end, self._settings.chunk_months)
        items = [WorkItem(region, rng) for region in counties for rng in ranges]
        if resume:
            if self._ledger is None:
                raise PipelineError("Resume requested but no backfill ledger is configured")
            remaining = [
                item for item in items
                if not self._ledger.is_complete(item.region.code, item.date_range)
            ]
            logger.info(
                "Resuming backfill: %d of %d work items already complete",
                len(items) - len(remaining), len(items),
            )
            items = remaining
        return items

    # -- Modes ---------------------------------------------------------------

    async def run_daily(self, counties: Sequence[Region]) -> RunSummary:
        """Incremental update catching late-arriving corrections."""
        return await self._run(
            DAILY_JOB, counties,
            lambda: self.daily_work_items(counties),
            self._fetch_and_write,
            self._settings.daily_batch_size,
            self._settings.inter_batch_delay,
        )

    async def run_historical(self, counties: Sequence[Region]) -> RunSummary:
        """Whole-history fetch per county with per-county chunked fallback."""
        return await self._run(
            HISTORICAL_JOB, counties,
            lambda: [WorkItem(region) for region in counties],
            self._fetch_history,
            self._settings.historical_batch_size,
            self._settings.inter_batch_delay,
        )

    async def run_backfill(
        self,
        counties: Sequence[Region],
        resume: bool = False,
    ) -> RunSummary:
        """Idempotent county x date-chunk replay from the backfill start date."""
        return await self._run(
            BACKFILL_JOB, counties,
            lambda: self.backfill_work_items(counties, resume),
            self._fetch_backfill_range,
            self._settings.backfill_batch_size,
            self._settings.inter_range_delay,
        )

    async def run_sites(self, counties: Sequence[Region]) -> RunSummary:
        """Refresh monitoring-site metadata, then per-site measurement counts."""

        def refresh_counts(results: list[ItemResult]) -> None:
            if not any(r.attempted for r in results):
                return
            try:
                self._store.refresh_site_measurement_counts()
            except SQLAlchemyError as exc:
                logger.warning("Failed to update site measurement counts: %s", exc)

        return await self._run(
            SITES_JOB, counties,
            lambda: [WorkItem(region) for region in counties],
            self._fetch_sites,
            self._settings.sites_batch_size,
            self._settings.inter_batch_delay,
            after_batches=refresh_counts,
        )
