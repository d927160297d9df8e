"""Normalization of USGS responses into canonical records.

Time-series envelopes (NWIS ``value.timeSeries``) become flat
``CanonicalMeasurement`` rows; monitoring-location GeoJSON becomes
``MonitoringSite`` rows. Both can be turned into GeoDataFrames shaped
like their destination tables.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping, Sequence

import geopandas as gpd
import pandas as pd
from shapely.geometry import Point

from california_counties import Region

logger = logging.getLogger(__name__)

STORAGE_CRS = "EPSG:4326"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CanonicalMeasurement:
    """One groundwater measurement; unique on location, timestamp, variable."""

    location_id: str
    variable_code: str
    measurement_timestamp: str
    measurement_value: float
    site_name: str | None = None
    agency_code: str | None = None
    huc_code: str | None = None
    state_code: str | None = None
    county_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    variable_name: str | None = None
    variable_description: str | None = None
    unit: str | None = None
    variable_numeric_id: int | None = None
    qualifiers: tuple[str, ...] = field(default_factory=tuple)
    method_id: int | None = None

    @property
    def natural_key(self) -> tuple[str, str, str]:
        return (self.location_id, self.measurement_timestamp, self.variable_code)


@dataclass(frozen=True)
class MonitoringSite:
    """Static metadata for one groundwater monitoring location."""

    location_id: str
    feature_id: str | None = None
    site_name: str | None = None
    agency_code: str | None = None
    site_type_code: str | None = None
    state_code: str | None = None
    county_code: str | None = None
    county_name: str | None = None
    huc_code: str | None = None
    aquifer_code: str | None = None
    aquifer_type_code: str | None = None
    altitude: float | None = None
    vertical_datum: str | None = None
    latitude: float | None = None
    longitude: float | None = None


MEASUREMENT_INT_COLUMNS = ["variable_numeric_id", "method_id"]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def _first(items: Any) -> Mapping[str, Any]:
    """Return the first mapping of a list-valued field, or an empty dict."""
    if isinstance(items, list) and items and isinstance(items[0], Mapping):
        return items[0]
    return {}


def parse_finite_float(raw: Any) -> float | None:
    """Parse a value as a finite float; ``None`` for anything else."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _optional_int(raw: Any) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _time_series_list(envelope: Mapping[str, Any] | Sequence[Any] | None) -> list[Any]:
    if envelope is None:
        return []
    if isinstance(envelope, Mapping):
        return list((envelope.get("value") or {}).get("timeSeries") or [])
    return list(envelope)


# ---------------------------------------------------------------------------
# Time series
# ---------------------------------------------------------------------------


def normalize_time_series(
    envelope: Mapping[str, Any] | Sequence[Any] | None,
) -> list[CanonicalMeasurement]:
    """Flatten an NWIS time-series envelope into canonical measurements.

    Accepts either the full response (``{"value": {"timeSeries": [...]}}``)
    or the bare ``timeSeries`` list. Output order follows the envelope:
    grouping order, then value order within each grouping.

    Values that do not parse as finite numbers are dropped without
    logging an error; upstream routinely sends placeholders. Groupings
    without a site code or variable code, and values without a
    timestamp, are dropped the same way since they cannot form a key.

    Args:
        envelope: Decoded JSON response from the gwlevels service.

    Returns:
        Measurements in envelope order.
    """
    records: list[CanonicalMeasurement] = []

    for series in _time_series_list(envelope):
        site = series.get("sourceInfo") or {}
        variable = series.get("variable") or {}
        values_block = _first(series.get("values"))
        values = values_block.get("value") or []
        method_id = _optional_int(_first(values_block.get("method")).get("methodID"))

        geog = (site.get("geoLocation") or {}).get("geogLocation") or {}
        latitude = parse_finite_float(geog.get("latitude"))
        longitude = parse_finite_float(geog.get("longitude"))
        site_code = _first(site.get("siteCode"))
        location_id = site_code.get("value")
        props = {
            p.get("name"): p.get("value")
            for p in site.get("siteProperty") or []
            if isinstance(p, Mapping)
        }

        var_code = _first(variable.get("variableCode"))
        variable_code = var_code.get("value")

        if not location_id or not variable_code:
            if values:
                logger.debug(
                    "Skipping %d values for series without site/variable code",
                    len(values),
                )
            continue

        for entry in values:
            measurement_value = parse_finite_float(entry.get("value"))
            timestamp = entry.get("dateTime")
            if measurement_value is None or not timestamp:
                continue
            records.append(CanonicalMeasurement(
                location_id=location_id,
                variable_code=variable_code,
                measurement_timestamp=timestamp,
                measurement_value=measurement_value,
                site_name=site.get("siteName"),
                agency_code=site_code.get("agencyCode"),
                huc_code=props.get("hucCd"),
                state_code=props.get("stateCd"),
                county_code=props.get("countyCd"),
                latitude=latitude,
                longitude=longitude,
                variable_name=variable.get("variableName"),
                variable_description=variable.get("variableDescription"),
                unit=(variable.get("unit") or {}).get("unitCode"),
                variable_numeric_id=_optional_int(var_code.get("variableID")),
                qualifiers=tuple(entry.get("qualifiers") or ()),
                method_id=method_id,
            ))

    return records


# ---------------------------------------------------------------------------
# Monitoring sites
# ---------------------------------------------------------------------------


def parse_site_features(
    geojson: Mapping[str, Any] | None,
    region: Region,
) -> list[MonitoringSite]:
    """Convert a monitoring-locations feature collection into sites.

    Features lacking a location number (and an id to derive one from)
    or a longitude/latitude pair are skipped with a warning.

    Args:
        geojson: Decoded monitoring-locations response.
        region: The county the request was scoped to.

    Returns:
        One ``MonitoringSite`` per usable feature.
    """
    features = (geojson or {}).get("features")
    if not features:
        logger.warning("No features found for county %s", region.code)
        return []

    sites: list[MonitoringSite] = []
    for feature in features:
        props = feature.get("properties") or {}
        feature_id = feature.get("id")
        location_id = props.get("monitoring_location_number")
        if not location_id and feature_id:
            # Feature ids look like "USGS-344412118000001"
            location_id = str(feature_id).split("-", 1)[-1]
        if not location_id:
            logger.warning("Site missing monitoring location number, skipping")
            continue

        coords = (feature.get("geometry") or {}).get("coordinates") or []
        if len(coords) < 2:
            logger.warning("Site %s has no coordinates, skipping", location_id)
            continue
        longitude = parse_finite_float(coords[0])
        latitude = parse_finite_float(coords[1])

        sites.append(MonitoringSite(
            location_id=str(location_id),
            feature_id=feature_id,
            site_name=props.get("monitoring_location_name"),
            agency_code=props.get("agency_code") or "USGS",
            site_type_code=props.get("site_type_code"),
            state_code=props.get("state_code") or region.state_code,
            county_code=region.code,
            county_name=region.name,
            huc_code=props.get("hydrologic_unit_code"),
            aquifer_code=props.get("aquifer_code"),
            aquifer_type_code=props.get("aquifer_type_code"),
            altitude=parse_finite_float(props.get("altitude")),
            vertical_datum=props.get("vertical_datum"),
            latitude=latitude,
            longitude=longitude,
        ))
    return sites


# ---------------------------------------------------------------------------
# Table-shaped frames
# ---------------------------------------------------------------------------


def _coerce_int_columns(df: pd.DataFrame, cols: list[str]) -> pd.DataFrame:
    """Convert columns to nullable Int64 for integer DB columns."""
    for col in cols:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce").astype("Int64")
    return df


def _points(rows: Iterable[Any]) -> list[Point | None]:
    return [
        Point(r.longitude, r.latitude)
        if r.latitude is not None and r.longitude is not None else None
        for r in rows
    ]


def measurements_frame(records: Sequence[CanonicalMeasurement]) -> gpd.GeoDataFrame:
    """Shape measurements like ``groundwater.time_series`` (geometry ``geom``)."""
    df = pd.DataFrame([asdict(r) for r in records])
    if df.empty:
        return gpd.GeoDataFrame()
    df["qualifiers"] = [list(r.qualifiers) for r in records]
    df["measurement_timestamp"] = pd.to_datetime(
        df["measurement_timestamp"], utc=True, format="ISO8601",
    )
    df = _coerce_int_columns(df, MEASUREMENT_INT_COLUMNS)
    gdf = gpd.GeoDataFrame(df, geometry=_points(records), crs=STORAGE_CRS)
    return gdf.rename_geometry("geom")


def sites_frame(sites: Sequence[MonitoringSite]) -> gpd.GeoDataFrame:
    """Shape sites like ``groundwater.monitoring_sites`` (geometry ``geom``)."""
    df = pd.DataFrame([asdict(s) for s in sites])
    if df.empty:
        return gpd.GeoDataFrame()
    gdf = gpd.GeoDataFrame(df, geometry=_points(sites), crs=STORAGE_CRS)
    return gdf.rename_geometry("geom")
