import asyncio
from datetime import date

import pytest

from batch_runner import WorkItem, run_batches
from california_counties import get_county
from conftest import RecordingSleep
from date_ranges import DateRange


def test_failed_item_does_not_affect_siblings():
    sleep = RecordingSleep()

    async def process(n):
        if n == 3:
            raise RuntimeError("upstream exploded")
        return n * 10

    results = asyncio.run(run_batches([1, 2, 3, 4, 5], process, 2, 10.0, sleep=sleep))

    assert sorted(results) == [10, 20, 40, 50]
    # three groups, delay only between them
    assert sleep.delays == [10.0, 10.0]


def test_groups_never_exceed_batch_size_and_settle_before_next():
    in_flight = 0
    peak = 0
    finished: list[int] = []
    started_after: dict[int, list[int]] = {}

    async def process(n):
        nonlocal in_flight, peak
        started_after[n] = list(finished)
        in_flight += 1
        peak = max(peak, in_flight)
        for _ in range(3):
            await asyncio.sleep(0)
        in_flight -= 1
        finished.append(n)
        return n

    results = asyncio.run(run_batches(list(range(7)), process, 3, 0, sleep=RecordingSleep()))

    assert sorted(results) == list(range(7))
    assert peak == 3
    assert sorted(started_after[3]) == [0, 1, 2]
    assert sorted(started_after[6]) == [0, 1, 2, 3, 4, 5]


def test_no_delay_after_single_group():
    sleep = RecordingSleep()

    async def process(n):
        return n

    asyncio.run(run_batches([1, 2], process, 5, 10.0, sleep=sleep))

    assert sleep.delays == []


def test_zero_delay_skips_sleep():
    sleep = RecordingSleep()

    async def process(n):
        return n

    asyncio.run(run_batches([1, 2, 3], process, 1, 0, sleep=sleep))

    assert sleep.delays == []


def test_empty_items():
    async def process(n):
        raise AssertionError("should not be called")

    assert asyncio.run(run_batches([], process, 3, 1.0, sleep=RecordingSleep())) == []


def test_cancel_event_stops_before_next_group():
    seen: list[int] = []

    async def main():
        cancel = asyncio.Event()

        async def process(n):
            seen.append(n)
            if n == 1:
                cancel.set()
            return n

        return await run_batches(
            [1, 2, 3, 4], process, 2, 0, cancel_event=cancel, sleep=RecordingSleep(),
        )

    results = asyncio.run(main())

    # the in-flight group finishes, nothing after it starts
    assert sorted(results) == [1, 2]
    assert sorted(seen) == [1, 2]


@pytest.mark.parametrize("size", [0, -1])
def test_rejects_non_positive_batch_size(size):
    async def process(n):
        return n

    with pytest.raises(ValueError):
        asyncio.run(run_batches([1], process, size, 0))


def test_cancelled_error_propagates():
    async def process(n):
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(run_batches([1], process, 1, 0, sleep=RecordingSleep()))


def test_work_item_label():
    merced = get_county("06047")

    assert WorkItem(merced).label == "Merced County (06047) full history"
    assert (
        WorkItem(merced, DateRange(date(2020, 1, 1), date(2021, 1, 1))).label
        == "Merced County (06047) 2020-01-01 to 2021-01-01"
    )
