"""ETL run logging for the meta.job_logs table.

Appends exactly one row per pipeline invocation once its outcome is
known. Writing the log is best-effort: a failure here is warned about
and never replaces the pipeline's own result.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

JOB_LOG_TABLE = "meta.job_logs"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobRunLog:
    """Immutable record of one completed (or failed) pipeline run."""

    job_name: str
    status: str
    records_processed: int = 0
    counties_processed: int | None = None
    duration_seconds: float = 0.0
    completed_at: datetime = field(default_factory=_utcnow)
    details: str | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        if self.status not in ("success", "error"):
            raise ValueError(f"Unknown job status: {self.status}")


class JobTimer:
    """Wall-clock stopwatch started at construction."""

    def __init__(self) -> None:
        self._started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started


class RunTracker:
    """Appends run outcomes to the job log table.

    Args:
        engine: SQLAlchemy engine.
        table: Fully qualified log table name.
    """

    def __init__(self, engine: Engine, table: str = JOB_LOG_TABLE) -> None:
        self._engine = engine
        self._table = table

    def log_run(self, entry: JobRunLog) -> bool:
        """Insert a run record.

        Args:
            entry: The run outcome to persist.

        Returns:
            True if the row was written, False if writing failed.
        """
        sql = text(f"""
            INSERT INTO {self._table}
                (job_name, status, records_processed, counties_processed,
                 duration_seconds, completed_at, details, error_message)
            VALUES
                (:job_name, :status, :records_processed, :counties_processed,
                 :duration_seconds, :completed_at, :details, :error_message)
        """)  # noqa: S608
        try:
            with self._engine.connect() as conn:
                conn.execute(sql, asdict(entry))
                conn.commit()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to log %s run (%s): %s", entry.job_name, entry.status, exc)
            return False
        logger.info(
            "Logged %s run: status=%s, %d records in %.1fs",
            entry.job_name, entry.status, entry.records_processed, entry.duration_seconds,
        )
        return True
