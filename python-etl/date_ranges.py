"""Date-range partitioning for upstream time-series requests.

Ranges are half-open: ``DateRange(start, end)`` covers ``start`` up to
but not including ``end``, so consecutive chunks share a boundary date
without either covering it twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

import pandas as pd


@dataclass(frozen=True)
class DateRange:
    """Half-open calendar interval ``[start, end)``."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"DateRange start {self.start} is after end {self.end}")

    @property
    def inclusive_end(self) -> date:
        """The last calendar day covered by the range."""
        return self.end - timedelta(days=1)

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def __str__(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


def add_months(day: date, months: int) -> date:
    """Shift a date by whole calendar months, clamping to month end."""
    return (pd.Timestamp(day) + pd.DateOffset(months=months)).date()


def partition_date_range(start: date, end: date, chunk_months: int) -> list[DateRange]:
    """Split ``[start, end)`` into consecutive chunks of ``chunk_months``.

    The final chunk is clipped to ``end``. Returns an empty list when
    ``start >= end``.

    Args:
        start: First day covered.
        end: Exclusive upper bound.
        chunk_months: Width of each chunk in calendar months.

    Returns:
        Ordered, gap-free, non-overlapping ranges.

    Raises:
        ValueError: If ``chunk_months`` is less than 1.
    """
    if chunk_months < 1:
        raise ValueError(f"chunk_months must be >= 1, got {chunk_months}")

    ranges: list[DateRange] = []
    step = 1
    current = start
    while current < end:
        # Offsets are taken from the original start so month-end clamping
        # (Jan 31 -> Feb 28) does not drift later chunks.
        chunk_end = min(add_months(start, chunk_months * step), end)
        ranges.append(DateRange(current, chunk_end))
        current = chunk_end
        step += 1
    return ranges


def trailing_window(today: date, days: int) -> DateRange:
    """Range covering the last ``days`` days up to and including ``today``."""
    return DateRange(today - timedelta(days=days), today + timedelta(days=1))
