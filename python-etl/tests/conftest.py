"""Shared fakes for pipeline tests: upstream payloads, HTTP session, store."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Sequence

import pytest

from run_tracker import JobRunLog

SITE_CODE = "371203120342001"
MERCED = "06047"


# ---------------------------------------------------------------------------
# Upstream payload builders
# ---------------------------------------------------------------------------


def make_series(
    values: Sequence[tuple[Any, str]],
    *,
    site_code: str = SITE_CODE,
    county_code: str = MERCED,
    variable_code: str = "72019",
    method_id: int | None = 90210,
    qualifiers: Sequence[str] = ("A",),
) -> dict[str, Any]:
    """One NWIS ``timeSeries`` grouping with ``(value, dateTime)`` entries."""
    return {
        "sourceInfo": {
            "siteName": "012S013E20H001M",
            "siteCode": [{"value": site_code, "agencyCode": "USGS"}],
            "geoLocation": {"geogLocation": {"latitude": 37.2008, "longitude": -120.5772}},
            "siteProperty": [
                {"name": "hucCd", "value": "18040001"},
                {"name": "stateCd", "value": "06"},
                {"name": "countyCd", "value": county_code},
            ],
        },
        "variable": {
            "variableCode": [{"value": variable_code, "variableID": 52331280}],
            "variableName": "Depth to water level, ft below land surface",
            "variableDescription": "Depth to water level, feet below land surface",
            "unit": {"unitCode": "ft"},
        },
        "values": [{
            "value": [
                {"value": v, "qualifiers": list(qualifiers), "dateTime": ts}
                for v, ts in values
            ],
            "method": [{"methodID": method_id}] if method_id is not None else [],
        }],
    }


def make_envelope(*series: dict[str, Any]) -> dict[str, Any]:
    return {"value": {"timeSeries": list(series)}}


def make_site_feature(
    number: str | None = SITE_CODE,
    coords: Sequence[float] | None = (-120.5772, 37.2008),
    **props: Any,
) -> dict[str, Any]:
    properties = {
        "agency_code": "USGS",
        "monitoring_location_number": number,
        "monitoring_location_name": "012S013E20H001M",
        "state_code": "06",
        "county_code": "047",
        "site_type_code": "GW",
        "hydrologic_unit_code": "180400010503",
        "aquifer_code": "N100CACSTL",
        "aquifer_type_code": "U",
        "altitude": "185.0",
        "vertical_datum": "NAVD88",
    }
    properties.update(props)
    return {
        "type": "Feature",
        "id": f"USGS-{number}" if number else None,
        "geometry": {"type": "Point", "coordinates": list(coords)} if coords is not None else None,
        "properties": properties,
    }


# ---------------------------------------------------------------------------
# HTTP fakes
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None, reason: str = "OK") -> None:
        self.status = status
        self.reason = reason
        self._payload = payload

    async def json(self, content_type: str | None = None) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _ResponseContext:
    def __init__(self, outcome: FakeResponse | BaseException) -> None:
        self._outcome = outcome

    async def __aenter__(self) -> FakeResponse:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class FakeSession:
    """Replays queued responses (or exceptions) for successive GETs."""

    def __init__(self, outcomes: Sequence[FakeResponse | BaseException]) -> None:
        self._outcomes = list(outcomes)
        self.requested: list[str] = []

    def get(self, url: str, timeout: Any = None) -> _ResponseContext:
        self.requested.append(url)
        return _ResponseContext(self._outcomes.pop(0))


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeJsonSource:
    """Upstream stand-in routing each URL through ``handler``."""

    def __init__(self, handler: Callable[[str], Any]) -> None:
        self._handler = handler
        self.urls: list[str] = []

    async def fetch_json(self, url: str) -> Any:
        self.urls.append(url)
        await asyncio.sleep(0)
        result = self._handler(url)
        if isinstance(result, Exception):
            raise result
        return result


# ---------------------------------------------------------------------------
# Storage fakes
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Dict-backed store honouring conflict keys like ON CONFLICT would."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[tuple, dict[str, Any]]] = {}
        self.upsert_calls: list[dict[str, Any]] = []
        self.fail_on_call: int | None = None
        self.refresh_calls = 0

    def rows(self, schema: str, table: str) -> list[dict[str, Any]]:
        return list(self.tables.get(f"{schema}.{table}", {}).values())

    def count_rows(self, schema: str, table: str) -> int:
        return len(self.tables.get(f"{schema}.{table}", {}))

    def upsert(self, gdf, table, schema, conflict_columns, update_columns):
        self.upsert_calls.append({
            "table": f"{schema}.{table}",
            "rows": len(gdf),
            "conflict_columns": tuple(conflict_columns),
            "update_columns": list(update_columns),
        })
        if self.fail_on_call == len(self.upsert_calls):
            raise RuntimeError("store write failed")

        target = self.tables.setdefault(f"{schema}.{table}", {})
        inserted = updated = 0
        for row in gdf.to_dict("records"):
            key = tuple(row[c] for c in conflict_columns)
            if key not in target:
                target[key] = row
                inserted += 1
            elif update_columns:
                target[key].update({c: row[c] for c in update_columns})
                updated += 1
        return inserted, updated

    def latest_measurement_time(self, county_code: str):
        stamps = [
            row["measurement_timestamp"]
            for row in self.rows("groundwater", "time_series")
            if row.get("county_code") == county_code
        ]
        return max(stamps) if stamps else None

    def refresh_site_measurement_counts(self) -> int:
        self.refresh_calls += 1
        return self.count_rows("groundwater", "monitoring_sites")


class FakeTracker:
    def __init__(self) -> None:
        self.entries: list[JobRunLog] = []

    def log_run(self, entry: JobRunLog) -> bool:
        self.entries.append(entry)
        return True


class FakeLedger:
    def __init__(self, completed: set[tuple] | None = None) -> None:
        self.completed = set(completed or ())
        self.marked: list[tuple] = []

    def is_complete(self, county_code, date_range) -> bool:
        return (county_code, date_range.start, date_range.end) in self.completed

    def mark_complete(self, county_code, date_range, records_attempted, records_inserted):
        self.marked.append((county_code, date_range.start, date_range.end))
        self.completed.add((county_code, date_range.start, date_range.end))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
