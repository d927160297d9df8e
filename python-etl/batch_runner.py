"""Bounded-width batch execution of async work items.

Items run in consecutive groups. Every item in a group runs
concurrently and the group settles completely (success or failure)
before the next group starts, which caps concurrent upstream load at
the group width.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence, TypeVar

from california_counties import Region
from date_ranges import DateRange

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class WorkItem:
    """One schedulable fetch unit.

    ``date_range=None`` asks for the county's whole available history
    in a single request.
    """

    region: Region
    date_range: DateRange | None = None

    @property
    def label(self) -> str:
        span = str(self.date_range) if self.date_range else "full history"
        return f"{self.region.name} County ({self.region.code}) {span}"


async def run_batches(
    items: Sequence[T],
    process_fn: Callable[[T], Awaitable[R]],
    batch_size: int,
    inter_batch_delay: float,
    *,
    describe: Callable[[T], str] = str,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[R]:
    """Run ``process_fn`` over ``items`` in concurrent groups.

    A failing item is logged and contributes nothing to the result; it
    never cancels its siblings or later groups. Results come back only
    for items that succeeded, so callers derive totals from what is
    returned. Order within a group is not meaningful.

    Args:
        items: Work items, dispatched in order.
        process_fn: Async unit of work for one item.
        batch_size: Maximum items in flight at once.
        inter_batch_delay: Seconds to wait between groups.
        describe: Renders an item for log messages.
        cancel_event: When set, no further groups are started.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        Results of the items that completed successfully.

    Raises:
        ValueError: If ``batch_size`` is less than 1.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    results: list[R] = []
    total_groups = math.ceil(len(items) / batch_size)

    for group_index, offset in enumerate(range(0, len(items), batch_size), start=1):
        if cancel_event is not None and cancel_event.is_set():
            logger.warning(
                "Cancellation requested; skipping %d remaining item(s)",
                len(items) - offset,
            )
            break

        group = items[offset:offset + batch_size]
        logger.info(
            "Processing batch %d/%d: %s",
            group_index, total_groups, ", ".join(describe(i) for i in group),
        )
        outcomes = await asyncio.gather(
            *(process_fn(item) for item in group), return_exceptions=True,
        )

        for item, outcome in zip(group, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Failed to process %s: %s", describe(item), outcome)
                continue
            results.append(outcome)

        if offset + batch_size < len(items) and inter_batch_delay > 0:
            logger.info("Waiting %.1f seconds before next batch...", inter_batch_delay)
            await sleep(inter_batch_delay)

    return results
