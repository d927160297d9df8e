"""Idempotent, conflict-resolving writes with novel-insertion counting.

Re-submitting a record whose conflict key already exists never creates
a second row. The number of genuinely new rows is measured by taking a
row count of the target table immediately before and after the write.

Snapshot counting is only exact while nothing else writes to the same
table. Within this process that holds: the count/write/count sequence
is synchronous and contains no await, so concurrent coroutines cannot
interleave with it. Another process writing the same table during the
sequence will inflate the delta; use ``count_mode="returning"`` to rely
on the server-side ``RETURNING`` insert count instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

import geopandas as gpd

from normalizer import measurements_frame, sites_frame

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TableSpec:
    """A destination table and the natural key its upserts resolve on."""

    schema: str
    table: str
    conflict_columns: tuple[str, ...]

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"


TIME_SERIES = TableSpec(
    "groundwater", "time_series",
    ("location_id", "measurement_timestamp", "variable_code"),
)
MONITORING_SITES = TableSpec("groundwater", "monitoring_sites", ("location_id",))


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of one upsert call.

    ``attempted`` counts records submitted; ``actually_inserted`` counts
    rows new to the table. ``inserted``/``updated`` are what the store's
    write path reported.
    """

    attempted: int = 0
    actually_inserted: int = 0
    inserted: int = 0
    updated: int = 0

    def __add__(self, other: UpsertResult) -> UpsertResult:
        return UpsertResult(
            self.attempted + other.attempted,
            self.actually_inserted + other.actually_inserted,
            self.inserted + other.inserted,
            self.updated + other.updated,
        )


# ---------------------------------------------------------------------------
# Protocols (interfaces for dependency injection)
# ---------------------------------------------------------------------------


@runtime_checkable
class UpsertStore(Protocol):
    """Conflict-aware batch write primitive over named tables."""

    def count_rows(self, schema: str, table: str) -> int:
        """Return the exact row count for a table."""
        ...

    def upsert(
        self,
        gdf: gpd.GeoDataFrame,
        table: str,
        schema: str,
        conflict_columns: Sequence[str],
        update_columns: Sequence[str],
    ) -> tuple[int, int]:
        """Upsert rows via ON CONFLICT. Returns (inserted, updated).

        An empty ``update_columns`` leaves existing rows untouched.
        """
        ...


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class IdempotentUpsertWriter:
    """Writes record batches to one table with a fixed conflict key.

    Large inputs are split into sub-batches to keep each write payload
    small; every sub-batch uses the same key and conflict mode. A failed
    sub-batch raises immediately, so partially written input is never
    reported as success.

    Args:
        store: Store implementing the upsert primitive.
        spec: Destination table and conflict key.
        to_frame: Converts a sequence of records into a GeoDataFrame.
        sub_batch_size: Maximum rows per write.
        on_conflict: ``'update'`` overwrites non-key columns of existing
            rows; ``'ignore'`` leaves them as they are.
        count_mode: ``'snapshot'`` measures novel rows with before/after
            row counts; ``'returning'`` trusts the store's insert count.
    """

    def __init__(
        self,
        store: UpsertStore,
        spec: TableSpec,
        to_frame: Callable[[Sequence[Any]], gpd.GeoDataFrame],
        *,
        sub_batch_size: int = 1000,
        on_conflict: str = "update",
        count_mode: str = "snapshot",
    ) -> None:
        if sub_batch_size < 1:
            raise ValueError(f"sub_batch_size must be >= 1, got {sub_batch_size}")
        if on_conflict not in ("update", "ignore"):
            raise ValueError(f"Unknown on_conflict mode: {on_conflict}")
        if count_mode not in ("snapshot", "returning"):
            raise ValueError(f"Unknown count_mode: {count_mode}")
        self._store = store
        self._spec = spec
        self._to_frame = to_frame
        self._sub_batch_size = sub_batch_size
        self._on_conflict = on_conflict
        self._count_mode = count_mode

    @property
    def spec(self) -> TableSpec:
        return self._spec

    def _update_columns(self, gdf: gpd.GeoDataFrame) -> list[str]:
        if self._on_conflict == "ignore":
            return []
        return [c for c in gdf.columns if c not in self._spec.conflict_columns]

    def upsert(self, records: Sequence[Any], label: str = "") -> UpsertResult:
        """Write ``records`` and report attempted vs. genuinely new rows.

        Args:
            records: Normalized records for this table.
            label: Context for progress log lines (e.g. county and range).

        Returns:
            UpsertResult for the whole input.

        Raises:
            Exception: Whatever the store raised for a failing sub-batch.
        """
        if not records:
            return UpsertResult()

        spec = self._spec
        prefix = f"{label}: " if label else ""
        snapshot = self._count_mode == "snapshot"
        before = self._store.count_rows(spec.schema, spec.table) if snapshot else 0

        inserted = updated = processed = 0
        for offset in range(0, len(records), self._sub_batch_size):
            batch = records[offset:offset + self._sub_batch_size]
            gdf = self._to_frame(batch)
            batch_inserted, batch_updated = self._store.upsert(
                gdf, spec.table, spec.schema,
                spec.conflict_columns, self._update_columns(gdf),
            )
            inserted += batch_inserted
            updated += batch_updated
            processed += len(batch)
            logger.info(
                "%sProcessed %d/%d records into %s",
                prefix, processed, len(records), spec.qualified_name,
            )

        if snapshot:
            after = self._store.count_rows(spec.schema, spec.table)
            actually_inserted = after - before
        else:
            actually_inserted = inserted

        result = UpsertResult(len(records), actually_inserted, inserted, updated)
        logger.info(
            "%sUpserted %d records into %s: %d new",
            prefix, result.attempted, spec.qualified_name, result.actually_inserted,
        )
        return result


def measurement_writer(store: UpsertStore, **kwargs: Any) -> IdempotentUpsertWriter:
    """Writer for ``groundwater.time_series``."""
    return IdempotentUpsertWriter(store, TIME_SERIES, measurements_frame, **kwargs)


def site_writer(store: UpsertStore, **kwargs: Any) -> IdempotentUpsertWriter:
    """Writer for ``groundwater.monitoring_sites``."""
    return IdempotentUpsertWriter(store, MONITORING_SITES, sites_frame, **kwargs)
