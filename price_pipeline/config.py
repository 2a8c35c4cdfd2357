"""Centralized configuration loaded from .env.

This module provides a single place to read environment variables needed by the
refresh pipeline: database credentials, batch pacing, provider timeouts and the
trigger secret. It uses python-dotenv to load a `.env` file colocated with the
package, and exposes simple accessors.

Environment Variables
- DB_NAME, DB_USER, DB_PASS/DB_PASSWORD, DB_HOST, DB_PORT
- REFRESH_BATCH_SIZE, REFRESH_PAUSE_SECONDS: full-universe pacing
- HOLDINGS_BATCH_SIZE, HOLDINGS_PAUSE_SECONDS: holdings-only pacing
- ITEM_DELAY_SECONDS, BATCH_CONCURRENCY: dispatch pacing within a batch
- PRIMARY_TIMEOUT_SECONDS, SECONDARY_TIMEOUT_SECONDS, NSE_COOKIE_TTL_SECONDS
- COMPLETENESS_THRESHOLD, COMPLETENESS_MODE (count | coverage)
- BACKFILL_YEARS, REFRESH_WINDOW_DAYS, RETENTION_YEARS, RETENTION_SWEEP_ENABLED
- ERROR_LIST_CAP, CRON_SECRET_KEY, DEFAULT_CLIENT_ID, MARKET_TIMEZONE
- STALE_JOB_SECONDS: age after which an unfinished job counts as abandoned
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional
from dotenv import load_dotenv

# Load .env next to this file so it works regardless of CWD
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env"))

logger = logging.getLogger(__name__)


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return a sanitized environment variable value.

    Parameters
    ----------
    name : str
        Variable name to read from the environment.
    default : Optional[str]
        Default value to use if the variable is missing or empty after sanitation.

    Returns
    -------
    Optional[str]
        Trimmed value with one level of wrapping quotes removed, or ``default``.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip()
    if (len(v) >= 2) and ((v[0] == '"' and v[-1] == '"') or (v[0] == "'" and v[-1] == "'")):
        v = v[1:-1]
    v = v.strip()
    return v if v != "" else default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[config] invalid int for %s=%r; using default %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[config] invalid float for %s=%r; using default %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class DatabaseSettings:
    """Typed container for database connection settings."""
    name: Optional[str]
    user: Optional[str]
    password: Optional[str]
    host: Optional[str]
    port: Optional[str]


@dataclass(frozen=True)
class RefreshSettings:
    """Pacing, thresholds and provider limits for a refresh run.

    The full-universe daily run uses ``batch_size``/``pause_seconds``; a
    holdings-only manual run uses the ``holdings_*`` pair so it finishes
    without the long inter-batch pause.
    """
    batch_size: int = 250
    pause_seconds: float = 600.0
    holdings_batch_size: int = 50
    holdings_pause_seconds: float = 0.0
    item_delay_seconds: float = 0.3
    concurrency: int = 8
    primary_timeout_seconds: float = 5.0
    secondary_timeout_seconds: float = 15.0
    nse_cookie_ttl_seconds: int = 1800
    completeness_threshold: int = 1000
    completeness_mode: str = "count"
    backfill_years: int = 5
    refresh_window_days: int = 3
    retention_years: int = 2
    retention_sweep_enabled: bool = True
    error_list_cap: int = 10
    cron_secret: Optional[str] = None
    default_client_id: Optional[str] = None
    market_timezone: str = "Asia/Kolkata"
    stale_job_seconds: float = 3600.0


def get_db_settings() -> DatabaseSettings:
    """Return database settings from environment.

    Returns
    -------
    DatabaseSettings
        Dataclass with fields name, user, password, host, port (all optional strings).
    """
    return DatabaseSettings(
        name=_env("DB_NAME"),
        user=_env("DB_USER"),
        password=_env("DB_PASS") or _env("DB_PASSWORD"),  # support both names
        host=_env("DB_HOST"),
        port=_env("DB_PORT"),
    )


def get_refresh_settings() -> RefreshSettings:
    """Return refresh pacing and provider settings from environment.

    Read on every call so tests and long-lived processes pick up changes.
    """
    d = RefreshSettings()
    mode = (_env("COMPLETENESS_MODE", d.completeness_mode) or d.completeness_mode).lower()
    if mode not in ("count", "coverage"):
        logger.warning("[config] unknown COMPLETENESS_MODE=%r; using count", mode)
        mode = "count"
    return RefreshSettings(
        batch_size=max(1, _env_int("REFRESH_BATCH_SIZE", d.batch_size)),
        pause_seconds=max(0.0, _env_float("REFRESH_PAUSE_SECONDS", d.pause_seconds)),
        holdings_batch_size=max(1, _env_int("HOLDINGS_BATCH_SIZE", d.holdings_batch_size)),
        holdings_pause_seconds=max(0.0, _env_float("HOLDINGS_PAUSE_SECONDS", d.holdings_pause_seconds)),
        item_delay_seconds=max(0.0, _env_float("ITEM_DELAY_SECONDS", d.item_delay_seconds)),
        concurrency=max(1, _env_int("BATCH_CONCURRENCY", d.concurrency)),
        primary_timeout_seconds=_env_float("PRIMARY_TIMEOUT_SECONDS", d.primary_timeout_seconds),
        secondary_timeout_seconds=_env_float("SECONDARY_TIMEOUT_SECONDS", d.secondary_timeout_seconds),
        nse_cookie_ttl_seconds=_env_int("NSE_COOKIE_TTL_SECONDS", d.nse_cookie_ttl_seconds),
        completeness_threshold=_env_int("COMPLETENESS_THRESHOLD", d.completeness_threshold),
        completeness_mode=mode,
        backfill_years=_env_int("BACKFILL_YEARS", d.backfill_years),
        refresh_window_days=max(1, _env_int("REFRESH_WINDOW_DAYS", d.refresh_window_days)),
        retention_years=_env_int("RETENTION_YEARS", d.retention_years),
        retention_sweep_enabled=_env_bool("RETENTION_SWEEP_ENABLED", d.retention_sweep_enabled),
        error_list_cap=max(0, _env_int("ERROR_LIST_CAP", d.error_list_cap)),
        cron_secret=_env("CRON_SECRET_KEY"),
        default_client_id=_env("DEFAULT_CLIENT_ID"),
        market_timezone=_env("MARKET_TIMEZONE", d.market_timezone) or d.market_timezone,
        stale_job_seconds=max(60.0, _env_float("STALE_JOB_SECONDS", d.stale_job_seconds)),
    )


# NSE sessions per year, used to judge whether a row-count threshold is reachable
TRADING_DAYS_PER_YEAR = 250


def check_refresh_settings(settings: Optional[RefreshSettings] = None) -> List[str]:
    """Log and return warnings for settings that cannot work together.

    In ``count`` mode with the retention sweep on, an instrument keeps at
    most about ``RETENTION_YEARS`` years of sessions. A threshold above that
    can never be met, so every run would backfill the whole universe again.
    """
    s = settings or get_refresh_settings()
    problems = []
    reachable = s.retention_years * TRADING_DAYS_PER_YEAR
    if s.completeness_mode == "count" and s.retention_sweep_enabled and s.completeness_threshold > reachable:
        problems.append(
            f"COMPLETENESS_THRESHOLD={s.completeness_threshold} exceeds the ~{reachable} rows kept by "
            f"RETENTION_YEARS={s.retention_years}; every run will re-backfill. "
            "Set COMPLETENESS_MODE=coverage or lower the threshold."
        )
    for msg in problems:
        logger.warning("[config] %s", msg)
    return problems
