from datetime import date

import pytest

from date_ranges import DateRange, add_months, partition_date_range, trailing_window


def test_partition_six_month_chunks_clips_last():
    ranges = partition_date_range(date(2020, 1, 1), date(2021, 6, 15), 6)

    assert ranges == [
        DateRange(date(2020, 1, 1), date(2020, 7, 1)),
        DateRange(date(2020, 7, 1), date(2021, 1, 1)),
        DateRange(date(2021, 1, 1), date(2021, 6, 15)),
    ]


@pytest.mark.parametrize("start,end,months", [
    (date(2000, 1, 1), date(2024, 3, 16), 12),
    (date(2019, 2, 15), date(2019, 2, 16), 1),
    (date(2021, 1, 31), date(2022, 1, 1), 1),
    (date(2010, 6, 1), date(2013, 6, 1), 5),
])
def test_partition_is_contiguous_and_covers_range(start, end, months):
    ranges = partition_date_range(start, end, months)

    assert ranges[0].start == start
    assert ranges[-1].end == end
    for prev, nxt in zip(ranges, ranges[1:]):
        assert prev.end == nxt.start
    assert all(r.start < r.end for r in ranges)
    assert sum(r.days for r in ranges) == (end - start).days


def test_partition_month_end_does_not_drift():
    ranges = partition_date_range(date(2021, 1, 31), date(2021, 5, 1), 1)

    assert [r.end for r in ranges] == [
        date(2021, 2, 28), date(2021, 3, 31), date(2021, 4, 30), date(2021, 5, 1),
    ]


def test_partition_empty_when_start_equals_end():
    assert partition_date_range(date(2022, 3, 1), date(2022, 3, 1), 12) == []


def test_partition_empty_when_start_after_end():
    assert partition_date_range(date(2022, 3, 2), date(2022, 3, 1), 12) == []


def test_partition_range_shorter_than_chunk():
    assert partition_date_range(date(2022, 3, 1), date(2022, 3, 10), 12) == [
        DateRange(date(2022, 3, 1), date(2022, 3, 10)),
    ]


@pytest.mark.parametrize("months", [0, -3])
def test_partition_rejects_non_positive_chunks(months):
    with pytest.raises(ValueError):
        partition_date_range(date(2022, 1, 1), date(2023, 1, 1), months)


def test_date_range_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        DateRange(date(2022, 1, 2), date(2022, 1, 1))


def test_date_range_inclusive_end_and_str():
    rng = DateRange(date(2024, 1, 1), date(2024, 2, 1))

    assert rng.inclusive_end == date(2024, 1, 31)
    assert rng.days == 31
    assert str(rng) == "2024-01-01 to 2024-02-01"


def test_add_months_clamps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2023, 11, 15), 3) == date(2024, 2, 15)


def test_trailing_window_includes_today():
    rng = trailing_window(date(2024, 3, 15), 30)

    assert rng.start == date(2024, 2, 14)
    assert rng.end == date(2024, 3, 16)
    assert rng.inclusive_end == date(2024, 3, 15)
