"""USGS water-data API access: URL builders and a retrying async client.

Two upstream resource families are used:

* NWIS ``gwlevels`` for groundwater-level time series (nested
  ``value.timeSeries`` envelope), and
* the OGC API ``monitoring-locations`` collection for site metadata
  (GeoJSON feature collection).
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import aiohttp

from config import GroundwaterEtlError
from date_ranges import DateRange

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

GW_LEVELS_URL = "https://waterservices.usgs.gov/nwis/gwlevels/"
MONITORING_LOCATIONS_URL = (
    "https://api.waterdata.usgs.gov/ogcapi/v0"
    "/collections/monitoring-locations/items"
)

SITE_TYPE_GROUNDWATER = "GW"
# Single page assumed sufficient; no offset paging is done
SITES_PAGE_LIMIT = 10000

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0


class FetchError(GroundwaterEtlError):
    """Raised when an upstream request still fails after all retries."""

    def __init__(self, url: str, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


# ---------------------------------------------------------------------------
# URL builders (pure, no I/O)
# ---------------------------------------------------------------------------


def build_gw_levels_url(county_code: str, date_range: DateRange | None = None) -> str:
    """Build an NWIS groundwater-levels query for one county.

    Args:
        county_code: 5-digit county FIPS code.
        date_range: Half-open range to bound the request. ``None``
            requests the county's full available history.

    Returns:
        Fully encoded request URL.
    """
    params = {
        "format": "json",
        "countyCd": county_code,
        "siteStatus": "active",
        "siteType": SITE_TYPE_GROUNDWATER,
    }
    if date_range is not None:
        # NWIS treats endDT as inclusive
        params["startDT"] = date_range.start.isoformat()
        params["endDT"] = date_range.inclusive_end.isoformat()
    return f"{GW_LEVELS_URL}?{urlencode(params)}"


def build_sites_url(county_code: str) -> str:
    """Build a monitoring-locations query for groundwater sites in a county.

    The sites API takes state and county separately, so the 5-digit
    FIPS code is split into its 2-digit state and 3-digit county parts.
    """
    params = {
        "f": "json",
        "lang": "en-US",
        "limit": str(SITES_PAGE_LIMIT),
        "skipGeometry": "false",
        "offset": "0",
        "state_code": county_code[:2],
        "county_code": county_code[-3:],
        "site_type_code": SITE_TYPE_GROUNDWATER,
    }
    return f"{MONITORING_LOCATIONS_URL}?{urlencode(params)}"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class UsgsClient:
    """Async HTTP client with timeout, exponential backoff and a shared limiter.

    One semaphore is shared by every coroutine using the client, so the
    number of in-flight upstream requests never exceeds
    ``max_concurrent_requests`` regardless of how many work items run
    concurrently. Backoff between attempts is
    ``base_delay * 2**attempt`` plus uniform jitter in ``[0, jitter]``.

    Use as an async context manager when no session is injected::

        async with UsgsClient() as client:
            payload = await client.fetch_json(url)

    Args:
        session: Optional pre-built ``aiohttp.ClientSession`` (or a fake
            exposing ``get(url, timeout=...)``). Not closed by the client.
        timeout: Absolute per-request timeout in seconds.
        max_retries: Total attempts per request.
        base_delay: First backoff delay in seconds.
        jitter: Upper bound of the additive random backoff, in seconds.
        max_concurrent_requests: Shared cap on in-flight requests.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        session: Any | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        jitter: float = 0.0,
        max_concurrent_requests: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self._owns_session = False
        self._timeout = timeout
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._jitter = jitter
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)
        self._sleep = sleep

    async def __aenter__(self) -> UsgsClient:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

    def backoff_delay(self, attempt: int, base_delay: float | None = None) -> float:
        """Delay before retrying after the 0-based ``attempt`` failed."""
        base = self._base_delay if base_delay is None else base_delay
        delay = base * (2 ** attempt)
        if self._jitter > 0:
            delay += random.uniform(0, self._jitter)
        return delay

    async def fetch_with_retry(
        self,
        url: str,
        max_retries: int | None = None,
        base_delay: float | None = None,
    ) -> tuple[int, Any]:
        """GET ``url`` and decode its JSON body, retrying transient failures.

        Timeouts, connection errors, undecodable bodies and non-2xx
        statuses all count as failures. No delay follows the final
        attempt; its error is raised instead.

        Returns:
            Tuple of ``(status, decoded_json)`` for a 2xx response.

        Raises:
            FetchError: If every attempt failed. Carries the last status.
        """
        if self._session is None:
            raise RuntimeError("UsgsClient used outside 'async with' and without a session")

        attempts = self._max_retries if max_retries is None else max_retries
        last_status: int | None = None
        last_message = "no attempts made"

        for attempt in range(attempts):
            logger.debug("Attempt %d/%d for %s", attempt + 1, attempts, url)
            try:
                async with self._semaphore:
                    async with self._session.get(
                        url, timeout=aiohttp.ClientTimeout(total=self._timeout),
                    ) as resp:
                        last_status = resp.status
                        if not 200 <= resp.status < 300:
                            raise _HttpStatusError(resp.status, getattr(resp, "reason", "") or "")
                        payload = await resp.json(content_type=None)
                return resp.status, payload
            except _HttpStatusError as exc:
                last_message = str(exc)
            except asyncio.TimeoutError:
                last_status = None
                last_message = f"timed out after {self._timeout:.0f}s"
            except (aiohttp.ClientError, ValueError) as exc:
                last_message = f"{type(exc).__name__}: {exc}"

            logger.warning("Attempt %d failed for %s: %s", attempt + 1, url, last_message)
            if attempt < attempts - 1:
                await self._sleep(self.backoff_delay(attempt, base_delay))

        raise FetchError(
            url, f"Request failed after {attempts} attempts: {last_message}", last_status,
        )

    async def fetch_json(self, url: str) -> Any:
        """Fetch and decode ``url`` with the client's retry policy."""
        _, payload = await self.fetch_with_retry(url)
        return payload


class _HttpStatusError(Exception):
    def __init__(self, status: int, reason: str) -> None:
        super().__init__(f"HTTP {status} - {reason}".rstrip(" -"))
        self.status = status
