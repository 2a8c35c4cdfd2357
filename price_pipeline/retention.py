"""Retention sweeper for ``daily_prices``.

Deletes records older than the retention horizon (two years by default) so
the store keeps only recent history. Best-effort: errors are reported in the
result and logged, never raised to the refresh that invoked the sweep.
Idempotent: once the horizon is enforced a repeat sweep deletes nothing.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

import psycopg2

from .config import get_refresh_settings
from .fetch_from_db import connect_to_db

logger = logging.getLogger(__name__)

DELETE_CHUNK_SIZE = 10000


@dataclass
class SweepResult:
    """Outcome of one sweep."""
    success: bool
    deleted_count: int
    cutoff_date: date
    error: Optional[str] = None
    chunks: int = field(default=0)

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "deleted_count": self.deleted_count,
            "cutoff_date": self.cutoff_date.isoformat(),
            "error": self.error,
        }


def retention_cutoff(today: date, years: Optional[int] = None) -> date:
    """Return the first date that is kept: ``today`` moved back ``years`` years.

    February 29 maps to February 28 in a non-leap target year.
    """
    if years is None:
        years = get_refresh_settings().retention_years
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        return today.replace(year=today.year - years, day=28)


def delete_prices_before(cursor, cutoff: date, chunk_size: int = DELETE_CHUNK_SIZE) -> int:
    """Delete up to ``chunk_size`` rows with ``trade_date < cutoff``; returns rows deleted."""
    cursor.execute(
        """
        DELETE FROM daily_prices
        WHERE id IN (
            SELECT id FROM daily_prices WHERE trade_date < %s LIMIT %s
        );
        """,
        (cutoff, chunk_size),
    )
    return cursor.rowcount or 0


def cleanup_old_price_data(
    today: Optional[date] = None,
    years: Optional[int] = None,
    chunk_size: int = DELETE_CHUNK_SIZE,
    pause_seconds: float = 0.05,
) -> SweepResult:
    """Delete every record older than the retention horizon.

    Parameters
    ----------
    today : Optional[date]
        Reference day; defaults to the current date.
    years : Optional[int]
        Horizon in years; defaults to ``RETENTION_YEARS``.
    chunk_size : int
        Rows deleted per statement (each chunk is committed separately).
    pause_seconds : float
        Sleep between full chunks to go easy on the database.

    Returns
    -------
    SweepResult
        ``success`` False with ``error`` set when the sweep could not finish;
        ``deleted_count`` still reports what was removed before the failure.
    """
    today = today or date.today()
    cutoff = retention_cutoff(today, years)
    logger.info("[retention] sweeping records before %s", cutoff)
    conn = connect_to_db()
    if not conn:
        return SweepResult(success=False, deleted_count=0, cutoff_date=cutoff, error="database unavailable")
    deleted = 0
    chunks = 0
    try:
        while True:
            with conn.cursor() as cursor:
                n = delete_prices_before(cursor, cutoff, chunk_size)
            conn.commit()
            deleted += n
            chunks += 1
            if chunks % 10 == 0 or n < chunk_size:
                logger.info("[retention] chunk=%d deleted=%d total=%d", chunks, n, deleted)
            if n < chunk_size:
                break
            time.sleep(pause_seconds)
        logger.info("[retention] sweep complete deleted=%d cutoff=%s", deleted, cutoff)
        return SweepResult(success=True, deleted_count=deleted, cutoff_date=cutoff, chunks=chunks)
    except psycopg2.Error as e:
        logger.error("[retention] sweep failed after %d rows: %s", deleted, e)
        try:
            conn.rollback()
        except Exception:
            pass
        return SweepResult(success=False, deleted_count=deleted, cutoff_date=cutoff, error=str(e), chunks=chunks)
    finally:
        try:
            conn.close()
        except Exception:
            pass
