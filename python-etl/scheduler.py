"""Recurring groundwater updates under APScheduler.

Environment variables:
    ETL_SCHEDULE_CRON: Crontab expression, e.g. ``'0 6 * * *'`` for 06:00 daily.
        Takes precedence over the interval.
    ETL_SCHEDULE_INTERVAL_HOURS: Run every N hours instead.
    ETL_UPDATE_TYPE: Pipeline mode to run: ``'daily'`` (default),
        ``'historical'``, ``'backfill'`` or ``'sites'``.
"""

from __future__ import annotations

import logging
import os
import signal
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from config import ConfigError

logger = logging.getLogger(__name__)

JOB_ID = "groundwater_update"
SCHEDULABLE_MODES = ("daily", "historical", "backfill", "sites")


@dataclass(frozen=True)
class ScheduleConfig:
    """When to run, and which pipeline mode each run executes."""

    update_type: str = "daily"
    cron: str = ""
    interval_hours: int | None = None

    def __post_init__(self) -> None:
        if self.update_type not in SCHEDULABLE_MODES:
            raise ConfigError(
                f"ETL_UPDATE_TYPE must be one of {', '.join(SCHEDULABLE_MODES)}, "
                f"got {self.update_type!r}"
            )
        if not self.cron and not self.interval_hours:
            raise ConfigError(
                "Scheduled mode needs ETL_SCHEDULE_CRON or ETL_SCHEDULE_INTERVAL_HOURS"
            )

    def trigger(self) -> Any:
        """Build the APScheduler trigger; cron wins over interval."""
        from apscheduler.triggers.cron import CronTrigger
        from apscheduler.triggers.interval import IntervalTrigger

        if self.cron:
            return CronTrigger.from_crontab(self.cron)
        return IntervalTrigger(hours=self.interval_hours)

    def describe(self) -> str:
        return f"cron '{self.cron}'" if self.cron else f"every {self.interval_hours} hours"


def get_schedule_config(environ: Mapping[str, str] | None = None) -> ScheduleConfig:
    """Read the schedule from environment variables.

    Raises:
        ConfigError: If no schedule is set or a value is malformed.
    """
    env = os.environ if environ is None else environ
    raw_hours = env.get("ETL_SCHEDULE_INTERVAL_HOURS", "").strip()
    try:
        hours = int(raw_hours) if raw_hours else None
    except ValueError as exc:
        raise ConfigError(
            f"ETL_SCHEDULE_INTERVAL_HOURS must be an integer, got {raw_hours!r}"
        ) from exc
    if hours is not None and hours < 1:
        raise ConfigError(f"ETL_SCHEDULE_INTERVAL_HOURS must be >= 1, got {hours}")

    return ScheduleConfig(
        update_type=env.get("ETL_UPDATE_TYPE", "daily").strip().lower() or "daily",
        cron=env.get("ETL_SCHEDULE_CRON", "").strip(),
        interval_hours=hours,
    )


def build_scheduler(
    run_fn: Callable[[str], Any],
    config: ScheduleConfig,
    scheduler: Any | None = None,
) -> Any:
    """Register the update job on a scheduler.

    Overlapping runs are never started: a run still going when the next
    fire time arrives makes that fire time be skipped, and fire times
    missed while the process was down collapse into one run.

    Args:
        run_fn: Called with the update type on every fire time.
        config: Schedule from ``get_schedule_config()``.
        scheduler: Scheduler to register on (default: a new BlockingScheduler).

    Returns:
        The scheduler, not yet started.
    """
    if scheduler is None:
        from apscheduler.schedulers.blocking import BlockingScheduler
        scheduler = BlockingScheduler()

    scheduler.add_job(
        run_fn, config.trigger(), args=[config.update_type],
        id=JOB_ID, max_instances=1, coalesce=True, replace_existing=True,
    )
    logger.info("Scheduled %s groundwater update %s", config.update_type, config.describe())
    return scheduler


def run_scheduled(run_fn: Callable[[str], Any], config: ScheduleConfig) -> None:
    """Block running scheduled updates until SIGTERM or SIGINT."""
    scheduler = build_scheduler(run_fn, config)

    def shutdown(signum: int, _frame: object) -> None:
        logger.info("Received signal %d, shutting down scheduler", signum)
        scheduler.shutdown(wait=False)

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    logger.info("Scheduler started. Waiting for next run...")
    scheduler.start()
