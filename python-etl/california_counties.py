"""California county catalog (FIPS codes) used to partition upstream queries."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from config import ConfigError

STATE_FIPS = "06"


@dataclass(frozen=True)
class Region:
    """An administrative region (county) identified by its 5-digit FIPS code."""

    code: str
    name: str
    is_priority: bool = False

    @property
    def state_code(self) -> str:
        return self.code[:2]

    @property
    def county_suffix(self) -> str:
        """The 3-digit county part of the FIPS code."""
        return self.code[-3:]


_COUNTY_NAMES: dict[str, str] = {
    "06001": "Alameda", "06003": "Alpine", "06005": "Amador",
    "06007": "Butte", "06009": "Calaveras", "06011": "Colusa",
    "06013": "Contra Costa", "06015": "Del Norte", "06017": "El Dorado",
    "06019": "Fresno", "06021": "Glenn", "06023": "Humboldt",
    "06025": "Imperial", "06027": "Inyo", "06029": "Kern",
    "06031": "Kings", "06033": "Lake", "06035": "Lassen",
    "06037": "Los Angeles", "06039": "Madera", "06041": "Marin",
    "06043": "Mariposa", "06045": "Mendocino", "06047": "Merced",
    "06049": "Modoc", "06051": "Mono", "06053": "Monterey",
    "06055": "Napa", "06057": "Nevada", "06059": "Orange",
    "06061": "Placer", "06063": "Plumas", "06065": "Riverside",
    "06067": "Sacramento", "06069": "San Benito", "06071": "San Bernardino",
    "06073": "San Diego", "06075": "San Francisco", "06077": "San Joaquin",
    "06079": "San Luis Obispo", "06081": "San Mateo", "06083": "Santa Barbara",
    "06085": "Santa Clara", "06087": "Santa Cruz", "06089": "Shasta",
    "06091": "Sierra", "06093": "Siskiyou", "06095": "Solano",
    "06097": "Sonoma", "06099": "Stanislaus", "06101": "Sutter",
    "06103": "Tehama", "06105": "Trinity", "06107": "Tulare",
    "06109": "Tuolumne", "06111": "Ventura", "06113": "Yolo",
    "06115": "Yuba",
}

# Major agricultural and urban counties refreshed by the daily job
PRIORITY_COUNTY_CODES = frozenset({
    "06019",  # Fresno
    "06029",  # Kern
    "06031",  # Kings
    "06037",  # Los Angeles
    "06039",  # Madera
    "06047",  # Merced
    "06053",  # Monterey
    "06059",  # Orange
    "06065",  # Riverside
    "06067",  # Sacramento
    "06071",  # San Bernardino
    "06073",  # San Diego
    "06077",  # San Joaquin
    "06085",  # Santa Clara
    "06099",  # Stanislaus
    "06107",  # Tulare
    "06111",  # Ventura
    "06113",  # Yolo
})

CALIFORNIA_COUNTIES: tuple[Region, ...] = tuple(
    Region(code, name, code in PRIORITY_COUNTY_CODES)
    for code, name in _COUNTY_NAMES.items()
)

_BY_CODE: dict[str, Region] = {r.code: r for r in CALIFORNIA_COUNTIES}


def get_county_name(code: str) -> str:
    """Return the county name for a FIPS code, or ``'Unknown'``."""
    region = _BY_CODE.get(code)
    return region.name if region else "Unknown"


def get_county(code: str) -> Region | None:
    return _BY_CODE.get(code)


def all_counties() -> list[Region]:
    return list(CALIFORNIA_COUNTIES)


def priority_counties() -> list[Region]:
    return [r for r in CALIFORNIA_COUNTIES if r.is_priority]


def resolve_counties(
    codes: Iterable[str] | None,
    *,
    priority_only: bool = False,
) -> list[Region]:
    """Turn explicit county codes into regions, or fall back to a default set.

    Accepts full FIPS codes (``06047``) or bare 3-digit county codes
    (``047``). With no codes, returns the priority subset when
    ``priority_only`` is set and the whole catalog otherwise.

    Raises:
        ConfigError: If any explicit code is not a California county.
    """
    codes = [c.strip() for c in (codes or []) if c.strip()]
    if not codes:
        return priority_counties() if priority_only else all_counties()

    regions: list[Region] = []
    unknown: list[str] = []
    for code in codes:
        full = STATE_FIPS + code if len(code) == 3 else code
        region = _BY_CODE.get(full)
        if region is None:
            unknown.append(code)
        elif region not in regions:
            regions.append(region)
    if unknown:
        raise ConfigError(f"Unknown California county code(s): {', '.join(unknown)}")
    return regions
