"""Runtime configuration for the groundwater ETL.

All settings come from environment variables so the same code runs
from a shell, a container, or the scheduler without config files.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date
from typing import Mapping
from urllib.parse import quote_plus


class GroundwaterEtlError(Exception):
    """Base class for errors raised by the groundwater ETL."""


class ConfigError(GroundwaterEtlError):
    """Raised when a required setting is missing or malformed."""


class PipelineError(GroundwaterEtlError):
    """Raised when a pipeline run cannot make progress at all."""


ON_CONFLICT_MODES = ("update", "ignore")
COUNT_MODES = ("snapshot", "returning")


def resolve_database_url(environ: Mapping[str, str] | None = None) -> str:
    """Resolve the PostgreSQL connection URL from env vars.

    Prefers a ready-made URI; falls back to converting the ADO.NET-style
    ``ConnectionStrings__groundwaterdb`` injected by some hosts.
    """
    env = os.environ if environ is None else environ

    url = env.get("GROUNDWATER_DB_URI") or env.get("DATABASE_URL")
    if url:
        return url

    ado = env.get("ConnectionStrings__groundwaterdb")
    if ado:
        parts: dict[str, str] = {}
        for part in ado.split(";"):
            if "=" in part:
                key, val = part.split("=", 1)
                parts[key.strip().lower()] = val.strip()
        host = parts.get("host", "localhost")
        port = parts.get("port", "5432")
        user = parts.get("username", "postgres")
        password = parts.get("password", "")
        database = parts.get("database", "groundwaterdb")
        return f"postgresql://{quote_plus(user)}:{quote_plus(password)}@{host}:{port}/{database}"

    return ""


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


def _choice(env: Mapping[str, str], name: str, default: str, choices: tuple[str, ...]) -> str:
    value = (env.get(name) or default).strip().lower()
    if value not in choices:
        raise ConfigError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return value


def _date(env: Mapping[str, str], name: str, default: date) -> date:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an ISO date (YYYY-MM-DD), got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Tunable knobs for all pipeline modes.

    Delays are in seconds. Batch sizes count work items (counties or
    county/date-range pairs) dispatched concurrently, except
    ``upsert_batch_size`` which counts rows per database write.
    """

    database_url: str = ""
    lookback_days: int = 7
    default_window_days: int = 30
    backfill_start: date = date(2000, 1, 1)
    chunk_months: int = 12
    daily_batch_size: int = 5
    historical_batch_size: int = 5
    backfill_batch_size: int = 3
    sites_batch_size: int = 5
    inter_batch_delay: float = 10.0
    inter_range_delay: float = 1.0
    upsert_batch_size: int = 1000
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_jitter: float = 0.5
    request_timeout: float = 300.0
    max_concurrent_requests: int = 5
    on_conflict: str = "update"
    count_mode: str = "snapshot"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from environment variables.

        Raises:
            ConfigError: If any variable is present but invalid.
        """
        env = os.environ if environ is None else environ
        return cls(
            database_url=resolve_database_url(env),
            lookback_days=_int(env, "GW_LOOKBACK_DAYS", 7),
            default_window_days=_int(env, "GW_DEFAULT_WINDOW_DAYS", 30, minimum=1),
            backfill_start=_date(env, "GW_BACKFILL_START", date(2000, 1, 1)),
            chunk_months=_int(env, "GW_CHUNK_MONTHS", 12, minimum=1),
            daily_batch_size=_int(env, "GW_DAILY_BATCH_SIZE", 5, minimum=1),
            historical_batch_size=_int(env, "GW_HISTORICAL_BATCH_SIZE", 5, minimum=1),
            backfill_batch_size=_int(env, "GW_BACKFILL_BATCH_SIZE", 3, minimum=1),
            sites_batch_size=_int(env, "GW_SITES_BATCH_SIZE", 5, minimum=1),
            inter_batch_delay=_float(env, "GW_INTER_BATCH_DELAY_SECONDS", 10.0),
            inter_range_delay=_float(env, "GW_INTER_RANGE_DELAY_SECONDS", 1.0),
            upsert_batch_size=_int(env, "GW_UPSERT_BATCH_SIZE", 1000, minimum=1),
            max_retries=_int(env, "GW_MAX_RETRIES", 3, minimum=1),
            retry_base_delay=_float(env, "GW_RETRY_BASE_DELAY_SECONDS", 1.0),
            retry_jitter=_float(env, "GW_RETRY_JITTER_SECONDS", 0.5),
            request_timeout=_float(env, "GW_REQUEST_TIMEOUT_SECONDS", 300.0),
            max_concurrent_requests=_int(env, "GW_MAX_CONCURRENT_REQUESTS", 5, minimum=1),
            on_conflict=_choice(env, "GW_ON_CONFLICT", "update", ON_CONFLICT_MODES),
            count_mode=_choice(env, "GW_INSERT_COUNT_MODE", "snapshot", COUNT_MODES),
        )

    def require_database_url(self) -> str:
        """Return the database URL or raise if none is configured."""
        if not self.database_url:
            raise ConfigError(
                "No database URL found. Set GROUNDWATER_DB_URI, DATABASE_URL, "
                "or ConnectionStrings__groundwaterdb"
            )
        return self.database_url
