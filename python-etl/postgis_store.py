"""PostGIS-backed storage for groundwater measurements and sites."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

import geopandas as gpd
from sqlalchemy import ARRAY, Text, text
from sqlalchemy.engine import Engine

from date_ranges import DateRange
from upsert_writer import MONITORING_SITES, TIME_SERIES

logger = logging.getLogger(__name__)

LEDGER_TABLE = "meta.backfill_ledger"


@dataclass(frozen=True)
class MeasurementStats:
    """Distribution of stored measurements across monitoring sites."""

    total_measurements: int
    distinct_sites: int
    min_per_site: int
    median_per_site: float
    max_per_site: int
    single_measurement_sites: int
    earliest: datetime | None
    latest: datetime | None

    @property
    def average_per_site(self) -> float:
        if not self.distinct_sites:
            return 0.0
        return self.total_measurements / self.distinct_sites


class PostGISStore:
    """Writes and queries groundwater tables in PostGIS via SQLAlchemy.

    Args:
        engine: SQLAlchemy engine connected to PostGIS.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def count_rows(self, schema: str, table: str) -> int:
        """Return row count for a table."""
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT count(*) FROM {schema}.{table}"),  # noqa: S608
            ).fetchone()
        return int(row[0]) if row else 0

    def upsert(
        self,
        gdf: gpd.GeoDataFrame,
        table: str,
        schema: str,
        conflict_columns: Sequence[str],
        update_columns: Sequence[str],
    ) -> tuple[int, int]:
        """Upsert a GeoDataFrame using a staging table + ON CONFLICT.

        Args:
            gdf: Data to upsert; columns must match the target table.
            table: Target table name.
            schema: Target schema name.
            conflict_columns: Columns of the UNIQUE constraint to resolve on.
            update_columns: Columns to overwrite on conflict. Empty means
                DO NOTHING.

        Returns:
            Tuple of (rows inserted, rows updated).
        """
        if gdf.empty:
            return (0, 0)

        # Unique per call so concurrent processes never share a staging table
        staging = f"_staging_{table}_{uuid.uuid4().hex[:8]}"
        dtype = {"qualifiers": ARRAY(Text)} if "qualifiers" in gdf.columns else None
        gdf.to_postgis(
            staging, self._engine, schema=schema,
            if_exists="replace", index=False, dtype=dtype,
        )

        key_match = " AND ".join(f"a.{c} = b.{c}" for c in conflict_columns)
        conflict_target = ", ".join(conflict_columns)
        cols = ", ".join(gdf.columns)

        # Keep last row per conflict key
        # (ON CONFLICT cannot update the same row twice in one command)
        dedup_sql = text(f"""
            DELETE FROM {schema}.{staging} a
            USING {schema}.{staging} b
            WHERE a.ctid < b.ctid
            AND {key_match}
        """)  # noqa: S608

        if update_columns:
            set_clause = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
            set_clause += ", imported_at = now()"
            conflict_action = f"DO UPDATE SET {set_clause}"
        else:
            conflict_action = "DO NOTHING"

        upsert_sql = text(f"""
            WITH upsert_result AS (
                INSERT INTO {schema}.{table} ({cols})
                SELECT {cols} FROM {schema}.{staging}
                ON CONFLICT ({conflict_target}) {conflict_action}
                RETURNING (xmax = 0) AS inserted
            )
            SELECT
                COUNT(*) FILTER (WHERE inserted) AS insert_count,
                COUNT(*) FILTER (WHERE NOT inserted) AS update_count
            FROM upsert_result
        """)  # noqa: S608

        try:
            with self._engine.connect() as conn:
                conn.execute(dedup_sql)
                result = conn.execute(upsert_sql).fetchone()
                conn.commit()
        finally:
            with self._engine.connect() as conn:
                conn.execute(text(f"DROP TABLE IF EXISTS {schema}.{staging}"))  # noqa: S608
                conn.commit()

        inserted = result[0] if result else 0
        updated = result[1] if result else 0
        logger.debug(
            "Upserted %s.%s: %d inserted, %d updated",
            schema, table, inserted, updated,
        )
        return (inserted, updated)

    def latest_measurement_time(self, county_code: str) -> datetime | None:
        """Return the most recent measurement timestamp stored for a county."""
        sql = text(f"""
            SELECT measurement_timestamp
            FROM {TIME_SERIES.qualified_name}
            WHERE county_code = :county_code
            ORDER BY measurement_timestamp DESC
            LIMIT 1
        """)  # noqa: S608
        with self._engine.connect() as conn:
            row = conn.execute(sql, {"county_code": county_code}).fetchone()
        return row[0] if row else None

    def refresh_site_measurement_counts(self) -> int:
        """Recompute per-site measurement totals and first/last timestamps.

        Returns:
            Number of site rows updated.
        """
        sql = text(f"""
            UPDATE {MONITORING_SITES.qualified_name} s SET
                total_measurements = agg.n,
                earliest_measurement = agg.first_ts,
                latest_measurement = agg.last_ts
            FROM (
                SELECT location_id,
                       COUNT(*) AS n,
                       MIN(measurement_timestamp) AS first_ts,
                       MAX(measurement_timestamp) AS last_ts
                FROM {TIME_SERIES.qualified_name}
                GROUP BY location_id
            ) agg
            WHERE s.location_id = agg.location_id
        """)  # noqa: S608
        with self._engine.connect() as conn:
            result = conn.execute(sql)
            conn.commit()
        logger.info("Updated measurement counts for %d sites", result.rowcount)
        return result.rowcount

    def measurement_stats(self) -> MeasurementStats:
        """Summarize how measurements are distributed across sites."""
        sql = text(f"""
            WITH per_site AS (
                SELECT location_id, COUNT(*) AS n
                FROM {TIME_SERIES.qualified_name}
                GROUP BY location_id
            )
            SELECT
                COALESCE(SUM(n), 0),
                COUNT(*),
                COALESCE(MIN(n), 0),
                COALESCE(percentile_cont(0.5) WITHIN GROUP (ORDER BY n), 0),
                COALESCE(MAX(n), 0),
                COUNT(*) FILTER (WHERE n = 1),
                (SELECT MIN(measurement_timestamp) FROM {TIME_SERIES.qualified_name}),
                (SELECT MAX(measurement_timestamp) FROM {TIME_SERIES.qualified_name})
            FROM per_site
        """)  # noqa: S608
        with self._engine.connect() as conn:
            row = conn.execute(sql).fetchone()
        return MeasurementStats(
            total_measurements=int(row[0]), distinct_sites=int(row[1]),
            min_per_site=int(row[2]), median_per_site=float(row[3]),
            max_per_site=int(row[4]), single_measurement_sites=int(row[5]),
            earliest=row[6], latest=row[7],
        )


class BackfillLedger:
    """Records which county/date-range backfill items have completed.

    Lets a backfill skip work items that already finished instead of
    re-fetching them from upstream.
    """

    def __init__(self, engine: Engine, table: str = LEDGER_TABLE) -> None:
        self._engine = engine
        self._table = table

    def is_complete(self, county_code: str, date_range: DateRange) -> bool:
        sql = text(f"""
            SELECT 1 FROM {self._table}
            WHERE county_code = :county_code
              AND range_start = :range_start
              AND range_end = :range_end
        """)  # noqa: S608
        with self._engine.connect() as conn:
            row = conn.execute(sql, {
                "county_code": county_code,
                "range_start": date_range.start,
                "range_end": date_range.end,
            }).fetchone()
        return row is not None

    def mark_complete(
        self,
        county_code: str,
        date_range: DateRange,
        records_attempted: int,
        records_inserted: int,
    ) -> None:
        sql = text(f"""
            INSERT INTO {self._table}
                (county_code, range_start, range_end,
                 records_attempted, records_inserted, completed_at)
            VALUES
                (:county_code, :range_start, :range_end,
                 :attempted, :inserted, CURRENT_TIMESTAMP)
            ON CONFLICT (county_code, range_start, range_end) DO UPDATE
            SET records_attempted = EXCLUDED.records_attempted,
                records_inserted = EXCLUDED.records_inserted,
                completed_at = EXCLUDED.completed_at
        """)  # noqa: S608
        with self._engine.connect() as conn:
            conn.execute(sql, {
                "county_code": county_code,
                "range_start": date_range.start,
                "range_end": date_range.end,
                "attempted": records_attempted,
                "inserted": records_inserted,
            })
            conn.commit()
