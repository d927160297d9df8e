"""DDL for the groundwater ingestion tables.

Idempotent: every statement uses IF NOT EXISTS so ``init-db`` can be
re-run against an existing database.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    "CREATE EXTENSION IF NOT EXISTS postgis",
    "CREATE SCHEMA IF NOT EXISTS groundwater",
    "CREATE SCHEMA IF NOT EXISTS meta",
    """
    CREATE TABLE IF NOT EXISTS groundwater.time_series (
        id BIGSERIAL PRIMARY KEY,
        location_id TEXT NOT NULL,
        site_name TEXT,
        agency_code TEXT,
        huc_code TEXT,
        state_code TEXT,
        county_code TEXT,
        latitude DOUBLE PRECISION,
        longitude DOUBLE PRECISION,
        variable_code TEXT NOT NULL,
        variable_name TEXT,
        variable_description TEXT,
        unit TEXT,
        variable_numeric_id INTEGER,
        measurement_timestamp TIMESTAMPTZ NOT NULL,
        measurement_value DOUBLE PRECISION NOT NULL,
        qualifiers TEXT[] NOT NULL DEFAULT '{}',
        method_id INTEGER,
        geom geometry(Point, 4326),
        imported_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT time_series_natural_key
            UNIQUE (location_id, measurement_timestamp, variable_code)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS time_series_county_time_idx
        ON groundwater.time_series (county_code, measurement_timestamp DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS time_series_geom_idx
        ON groundwater.time_series USING GIST (geom)
    """,
    """
    CREATE TABLE IF NOT EXISTS groundwater.monitoring_sites (
        id BIGSERIAL PRIMARY KEY,
        location_id TEXT NOT NULL UNIQUE,
        feature_id TEXT,
        site_name TEXT,
        agency_code TEXT,
        site_type_code TEXT,
        state_code TEXT,
        county_code TEXT,
        county_name TEXT,
        huc_code TEXT,
        aquifer_code TEXT,
        aquifer_type_code TEXT,
        altitude DOUBLE PRECISION,
        vertical_datum TEXT,
        latitude DOUBLE PRECISION,
        longitude DOUBLE PRECISION,
        geom geometry(Point, 4326),
        total_measurements INTEGER NOT NULL DEFAULT 0,
        earliest_measurement TIMESTAMPTZ,
        latest_measurement TIMESTAMPTZ,
        imported_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS monitoring_sites_county_idx
        ON groundwater.monitoring_sites (county_code)
    """,
    """
    CREATE TABLE IF NOT EXISTS meta.job_logs (
        id BIGSERIAL PRIMARY KEY,
        job_name TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('success', 'error')),
        records_processed INTEGER NOT NULL DEFAULT 0,
        counties_processed INTEGER,
        duration_seconds DOUBLE PRECISION NOT NULL,
        completed_at TIMESTAMPTZ NOT NULL,
        details TEXT,
        error_message TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS meta.backfill_ledger (
        county_code TEXT NOT NULL,
        range_start DATE NOT NULL,
        range_end DATE NOT NULL,
        records_attempted INTEGER NOT NULL DEFAULT 0,
        records_inserted INTEGER NOT NULL DEFAULT 0,
        completed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (county_code, range_start, range_end)
    )
    """,
)


def create_schema(engine: Engine) -> None:
    """Create schemas, tables and indexes if they do not exist."""
    with engine.connect() as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(text(statement))
        conn.commit()
    logger.info("Database schema is up to date (%d statements)", len(SCHEMA_STATEMENTS))
