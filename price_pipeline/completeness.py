"""Completeness classifier: backfill or incremental refresh?

An instrument "has complete history" when it holds at least
``COMPLETENESS_THRESHOLD`` stored daily records (1000 by default, roughly five
trading years). The count is a cheap proxy for date coverage and is
re-evaluated on every run; counts only grow between sweeps, so once an
instrument is complete it stays complete until the retention sweeper deletes
rows.

``COMPLETENESS_MODE=coverage`` switches to the stricter check: the earliest
stored date must reach back to the expected backfill start (clipped to the
retention cutoff when sweeping is enabled), within a small tolerance. This
avoids re-backfilling recent listings and instruments with trading
suspensions that can never reach the row count.
"""
from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterable, List, Optional, Tuple

from .config import RefreshSettings, get_refresh_settings
from .fetch_from_db import count_price_records, count_price_records_bulk, get_earliest_trade_dates
from .retention import retention_cutoff

logger = logging.getLogger(__name__)

COVERAGE_TOLERANCE_DAYS = 30


def is_complete_count(stored_count: int, threshold: int) -> bool:
    """Count heuristic: ``stored_count >= threshold``."""
    return stored_count >= threshold


def expected_coverage_start(today: date, settings: Optional[RefreshSettings] = None) -> date:
    """Earliest date a fully backfilled instrument is expected to hold."""
    settings = settings or get_refresh_settings()
    start = today - timedelta(days=365 * settings.backfill_years)
    if settings.retention_sweep_enabled:
        start = max(start, retention_cutoff(today, settings.retention_years))
    return start


def has_complete_history(
    cursor,
    isin: str,
    today: Optional[date] = None,
    settings: Optional[RefreshSettings] = None,
) -> bool:
    """Return whether ``isin`` needs only an incremental refresh.

    Parameters
    ----------
    cursor : psycopg2.extensions.cursor
        Open cursor bound to an active transaction.
    isin : str
        Instrument identifier.
    today : Optional[date]
        Reference day for coverage mode.
    settings : Optional[RefreshSettings]
        Overrides the environment-derived settings.
    """
    settings = settings or get_refresh_settings()
    if settings.completeness_mode == "coverage":
        complete, _ = classify_instruments(cursor, [isin], today=today, settings=settings)
        return bool(complete)
    return is_complete_count(count_price_records(cursor, isin), settings.completeness_threshold)


def classify_instruments(
    cursor,
    isins: Iterable[str],
    today: Optional[date] = None,
    settings: Optional[RefreshSettings] = None,
) -> Tuple[List[str], List[str]]:
    """Split ``isins`` into (complete, needs_backfill), preserving input order.

    Uses one grouped query for the whole list rather than a count per
    instrument.
    """
    settings = settings or get_refresh_settings()
    ordered = list(dict.fromkeys(isins))
    complete: List[str] = []
    incomplete: List[str] = []
    if settings.completeness_mode == "coverage":
        today = today or date.today()
        target = expected_coverage_start(today, settings) + timedelta(days=COVERAGE_TOLERANCE_DAYS)
        earliest = get_earliest_trade_dates(cursor, ordered)
        for isin in ordered:
            first = earliest.get(isin)
            (complete if first is not None and first <= target else incomplete).append(isin)
    else:
        counts = count_price_records_bulk(cursor, ordered)
        for isin in ordered:
            if is_complete_count(counts.get(isin, 0), settings.completeness_threshold):
                complete.append(isin)
            else:
                incomplete.append(isin)
    logger.info(
        "[completeness] mode=%s complete=%d needs_backfill=%d",
        settings.completeness_mode, len(complete), len(incomplete),
    )
    return complete, incomplete
