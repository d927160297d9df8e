from dataclasses import replace

import pytest

from california_counties import get_county
from conftest import InMemoryStore, make_envelope, make_series, make_site_feature
from normalizer import normalize_time_series, parse_site_features
from upsert_writer import (
    TIME_SERIES,
    IdempotentUpsertWriter,
    UpsertResult,
    measurement_writer,
    site_writer,
)


def _records(n: int = 3, value: float = 10.0):
    values = [(str(value + i), f"2024-03-{i + 1:02d}T10:00:00.000-08:00") for i in range(n)]
    return normalize_time_series(make_envelope(make_series(values)))


def test_first_write_inserts_everything():
    store = InMemoryStore()

    result = measurement_writer(store).upsert(_records(3))

    assert result.attempted == 3
    assert result.actually_inserted == 3
    assert store.count_rows("groundwater", "time_series") == 3


def test_rewrite_is_idempotent():
    store = InMemoryStore()
    writer = measurement_writer(store)
    records = _records(3)

    writer.upsert(records)
    second = writer.upsert(records)

    assert second.attempted == 3
    assert second.actually_inserted == 0
    assert second.updated == 3
    assert store.count_rows("groundwater", "time_series") == 3


def test_conflict_key_ignores_non_key_fields():
    store = InMemoryStore()
    writer = measurement_writer(store)
    (record,) = _records(1)

    writer.upsert([record])
    result = writer.upsert([replace(record, qualifiers=("P",), measurement_value=99.0)])

    assert result.actually_inserted == 0
    (row,) = store.rows("groundwater", "time_series")
    assert row["measurement_value"] == 99.0
    assert row["qualifiers"] == ["P"]


def test_ignore_mode_leaves_existing_rows_untouched():
    store = InMemoryStore()
    writer = measurement_writer(store, on_conflict="ignore")
    (record,) = _records(1)

    writer.upsert([record])
    writer.upsert([replace(record, measurement_value=99.0)])

    (row,) = store.rows("groundwater", "time_series")
    assert row["measurement_value"] == 10.0
    assert store.upsert_calls[-1]["update_columns"] == []


def test_update_columns_exclude_conflict_key():
    store = InMemoryStore()

    measurement_writer(store).upsert(_records(1))

    call = store.upsert_calls[0]
    assert call["conflict_columns"] == TIME_SERIES.conflict_columns
    assert "measurement_value" in call["update_columns"]
    assert not set(call["update_columns"]) & set(TIME_SERIES.conflict_columns)


def test_large_input_is_split_into_sub_batches():
    store = InMemoryStore()

    result = measurement_writer(store, sub_batch_size=2).upsert(_records(5))

    assert [c["rows"] for c in store.upsert_calls] == [2, 2, 1]
    assert {c["conflict_columns"] for c in store.upsert_calls} == {TIME_SERIES.conflict_columns}
    assert result.attempted == 5
    assert result.actually_inserted == 5


def test_failing_sub_batch_propagates():
    store = InMemoryStore()
    store.fail_on_call = 2

    with pytest.raises(RuntimeError, match="store write failed"):
        measurement_writer(store, sub_batch_size=2).upsert(_records(5))

    assert len(store.upsert_calls) == 2


def test_empty_input_touches_nothing():
    store = InMemoryStore()

    assert measurement_writer(store).upsert([]) == UpsertResult()
    assert store.upsert_calls == []


def test_returning_mode_trusts_store_insert_count():
    class NoCountStore(InMemoryStore):
        def count_rows(self, schema, table):
            raise AssertionError("returning mode must not count rows")

    store = NoCountStore()
    writer = measurement_writer(store, count_mode="returning")

    first = writer.upsert(_records(3))
    second = writer.upsert(_records(4))

    assert first.actually_inserted == 3
    assert second.actually_inserted == 1


def test_snapshot_delta_includes_rows_from_other_writers():
    class BusyStore(InMemoryStore):
        def upsert(self, gdf, table, schema, conflict_columns, update_columns):
            counts = super().upsert(gdf, table, schema, conflict_columns, update_columns)
            self.tables[f"{schema}.{table}"][("other", "writer", "row")] = {}
            return counts

    store = BusyStore()

    snapshot = measurement_writer(store).upsert(_records(2))
    returning = measurement_writer(store, count_mode="returning").upsert(_records(3))

    assert snapshot.actually_inserted == 3
    assert returning.actually_inserted == 1


def test_site_writer_keys_on_location_id():
    store = InMemoryStore()
    sites = parse_site_features(
        {"features": [make_site_feature(), make_site_feature()]}, get_county("06047"),
    )

    result = site_writer(store).upsert(sites)

    assert result.attempted == 2
    assert result.actually_inserted == 1
    assert store.upsert_calls[0]["conflict_columns"] == ("location_id",)


@pytest.mark.parametrize("kwargs", [
    {"sub_batch_size": 0},
    {"on_conflict": "replace"},
    {"count_mode": "estimate"},
])
def test_rejects_invalid_options(kwargs):
    with pytest.raises(ValueError):
        IdempotentUpsertWriter(InMemoryStore(), TIME_SERIES, list, **kwargs)


def test_results_add_up():
    total = UpsertResult(3, 1, 1, 2) + UpsertResult(2, 2, 2, 0)

    assert total == UpsertResult(5, 3, 3, 2)
