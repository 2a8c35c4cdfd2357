"""Database access helpers (data operations only).

This module encapsulates PostgreSQL connectivity and the read/write operations
the refresh pipeline needs on the instrument master, holdings, daily price
and refresh job tables. It intentionally excludes schema creation
(``price_pipeline.db_schema``), the price upsert (``price_pipeline.update_db``)
and retention deletes (``price_pipeline.retention``).

Conventions
- All functions assume required tables already exist.
- Functions accept a live DB cursor when operating within a transaction
  (for better batching and caller-controlled commits/rollbacks) or open
  and close their own connections when necessary.
- Timestamps returned by the DB are passed through (may be naive or
  timezone-aware depending on the server configuration). Callers should
  normalize to UTC as needed.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
import psycopg2.extras as extras

from .config import get_db_settings

logger = logging.getLogger(__name__)

# Centralized DB settings
_DB = get_db_settings()

JOB_FIELDS = (
    "job_id", "state", "mode", "full_backfill", "client_id", "total_instruments",
    "batch_size", "total_batches", "pause_seconds", "last_completed_batch",
    "processed", "succeeded", "failed", "no_data", "records_stored",
    "records_inserted", "errors", "resumed_from", "cancel_requested",
    "started_at", "updated_at", "finished_at",
)

_UPDATABLE_JOB_FIELDS = set(JOB_FIELDS) - {"job_id", "started_at", "updated_at"}

FUNDAMENTAL_COLUMNS = (
    "fifty_two_week_high",
    "fifty_two_week_low",
    "average_volume",
    "regular_market_volume",
    "trailing_pe",
    "forward_pe",
    "price_to_book",
    "market_cap",
    "dividend_yield",
)


def _num(value):
    if isinstance(value, Decimal):
        return float(value)
    return value


def connect_to_db():
    """Open a new PostgreSQL connection.

    Returns
    -------
    psycopg2.extensions.connection | None
        A new connection if the operation succeeds, otherwise ``None``.

    Notes
    -----
    - The caller is responsible for closing the connection.
    - Connection parameters come from environment variables via
      :func:`price_pipeline.config.get_db_settings`.
    """
    try:
        conn = psycopg2.connect(
            dbname=_DB.name,
            user=_DB.user,
            password=_DB.password,
            host=_DB.host,
            port=_DB.port,
        )
        logger.debug("[db] connected to PostgreSQL")
        return conn
    except psycopg2.OperationalError as e:
        logger.error("[db] connection failed: %s", e)
        return None


# --- instrument master helpers ---

def get_instrument(cursor, isin: str) -> Optional[Dict[str, Any]]:
    """Return the instrument master row for ``isin``.

    Parameters
    ----------
    cursor : psycopg2.extensions.cursor
        Open cursor bound to an active transaction.
    isin : str
        Unique exchange identifier.

    Returns
    -------
    Optional[Dict[str, Any]]
        Mapping with ``isin``, ``stock_name``, ``symbol``, ``exchange``,
        ``sector``, ``industry``, ``sector_pe``, ``symbol_pe``; ``None`` when
        missing. Read errors propagate, the caller decides how to fail.
    """
    cursor.execute(
        """
        SELECT isin, stock_name, symbol, exchange, sector, industry, sector_pe, symbol_pe
        FROM instrument_master WHERE isin=%s;
        """,
        (isin,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return {
        "isin": row[0],
        "stock_name": row[1],
        "symbol": row[2],
        "exchange": row[3],
        "sector": row[4],
        "industry": row[5],
        "sector_pe": _num(row[6]),
        "symbol_pe": _num(row[7]),
    }


def list_instrument_isins(cursor) -> List[str]:
    """List every ISIN in the instrument master, sorted.

    Errors propagate: an unreadable universe aborts the run.
    """
    cursor.execute("SELECT isin FROM instrument_master WHERE isin IS NOT NULL ORDER BY isin;")
    return [r[0] for r in cursor.fetchall() if r[0]]


def list_holding_isins(cursor, client_id: Optional[str] = None) -> List[str]:
    """List distinct held ISINs, optionally for one client.

    Parameters
    ----------
    cursor : psycopg2.extensions.cursor
        Open cursor bound to an active transaction.
    client_id : Optional[str]
        When given, only that client's holdings are returned.
    """
    if client_id:
        cursor.execute(
            "SELECT DISTINCT isin FROM holdings WHERE client_id=%s AND isin IS NOT NULL ORDER BY isin;",
            (client_id,),
        )
    else:
        cursor.execute("SELECT DISTINCT isin FROM holdings WHERE isin IS NOT NULL ORDER BY isin;")
    return [r[0] for r in cursor.fetchall() if r[0]]


def update_instrument_exchange(cursor, isin: str, exchange: str) -> None:
    """Record a discovered listing exchange for ``isin``.

    Database errors propagate so the caller can roll back the transaction.
    """
    cursor.execute(
        "UPDATE instrument_master SET exchange=%s, last_updated=NOW() WHERE isin=%s;",
        (exchange, isin),
    )
    logger.info("[db] instrument_master exchange updated isin=%s exchange=%s", isin, exchange)


def update_instrument_profile(cursor, isin: str, fields: Dict[str, Any]) -> List[str]:
    """Update slow-moving sector/PE fields on the instrument master.

    Only columns whose value actually differs are written, and ``None``
    values are ignored so the import process's data is never blanked.

    Returns
    -------
    List[str]
        Names of the columns that changed.

    Raises
    ------
    psycopg2.Error
        When the update fails; the transaction is left for the caller to roll back.
    """
    allowed = ("sector", "industry", "sector_pe", "symbol_pe")
    current = get_instrument(cursor, isin)
    if not current:
        return []
    changed = {}
    for key in allowed:
        value = fields.get(key)
        if value is None:
            continue
        if current.get(key) != value:
            changed[key] = value
    if not changed:
        return []
    assignments = ", ".join(f"{k}=%s" for k in changed)
    cursor.execute(
        f"UPDATE instrument_master SET {assignments}, last_updated=NOW() WHERE isin=%s;",
        (*changed.values(), isin),
    )
    logger.info("[db] instrument_master profile updated isin=%s fields=%s", isin, sorted(changed))
    return sorted(changed)


# --- daily_prices read helpers ---

def count_price_records(cursor, isin: str) -> int:
    """Return the number of stored daily records for ``isin``."""
    cursor.execute("SELECT COUNT(*) FROM daily_prices WHERE isin=%s;", (isin,))
    row = cursor.fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def count_price_records_bulk(cursor, isins: Iterable[str]) -> Dict[str, int]:
    """Return stored record counts for many ISINs in one grouped query.

    ISINs with no rows are present in the result with a count of ``0``.
    """
    wanted = list(dict.fromkeys(isins))
    counts = {isin: 0 for isin in wanted}
    if not wanted:
        return counts
    cursor.execute(
        "SELECT isin, COUNT(*) FROM daily_prices WHERE isin = ANY(%s) GROUP BY isin;",
        (wanted,),
    )
    for isin, count in cursor.fetchall():
        counts[isin] = int(count)
    return counts


def get_earliest_trade_dates(cursor, isins: Iterable[str]) -> Dict[str, Any]:
    """Return the earliest stored ``trade_date`` per ISIN (missing ISINs map to ``None``)."""
    wanted = list(dict.fromkeys(isins))
    result = {isin: None for isin in wanted}
    if not wanted:
        return result
    cursor.execute(
        "SELECT isin, MIN(trade_date) FROM daily_prices WHERE isin = ANY(%s) GROUP BY isin;",
        (wanted,),
    )
    for isin, first in cursor.fetchall():
        result[isin] = first
    return result


def get_latest_fundamentals(cursor, isin: str) -> Dict[str, Any]:
    """Return the most recent stored fundamentals for ``isin``.

    Looks at the newest row that carries at least one of P/E, market cap or
    52-week high. Used to carry values forward when a fetch brings none.
    """
    try:
        cursor.execute(
            f"""
            SELECT {", ".join(FUNDAMENTAL_COLUMNS)}
            FROM daily_prices
            WHERE isin=%s
              AND (trailing_pe IS NOT NULL OR market_cap IS NOT NULL OR fifty_two_week_high IS NOT NULL)
            ORDER BY trade_date DESC
            LIMIT 1;
            """,
            (isin,),
        )
        row = cursor.fetchone()
    except psycopg2.Error as e:
        logger.error("[db] error reading latest fundamentals for %s: %s", isin, e)
        return {}
    if not row:
        return {}
    return {k: _num(v) for k, v in zip(FUNDAMENTAL_COLUMNS, row) if v is not None}


def get_price_records(cursor, isin: str, start_date=None, end_date=None) -> List[Dict[str, Any]]:
    """Fetch stored rows for ``isin`` over an optional inclusive date range.

    Returns
    -------
    List[Dict[str, Any]]
        Records sorted by ``trade_date`` ascending with prices as floats and
        the date formatted as YYYY-MM-DD.
    """
    clauses = ["isin = %s"]
    params: List[Any] = [isin]
    if start_date is not None:
        clauses.append("trade_date >= %s")
        params.append(start_date)
    if end_date is not None:
        clauses.append("trade_date <= %s")
        params.append(end_date)
    cursor.execute(
        f"""
        SELECT isin, trade_date, open_price, high_price, low_price, close_price, volume,
               trailing_pe, market_cap, source, last_fetched
        FROM daily_prices
        WHERE {" AND ".join(clauses)}
        ORDER BY trade_date ASC;
        """,
        tuple(params),
    )
    results = []
    for row in cursor.fetchall():
        results.append({
            "isin": row[0],
            "date": row[1].strftime("%Y-%m-%d") if row[1] else None,
            "open": _num(row[2]),
            "high": _num(row[3]),
            "low": _num(row[4]),
            "close": _num(row[5]),
            "volume": row[6],
            "trailing_pe": _num(row[7]),
            "market_cap": _num(row[8]),
            "source": row[9],
            "last_fetched": row[10],
        })
    return results


def get_fetch_progress(cursor, preview: int = 10) -> Dict[str, Any]:
    """Summarize how much of the instrument universe has stored data.

    Returns
    -------
    Dict[str, Any]
        ``total_instruments``, ``instruments_with_data``,
        ``instruments_with_fundamentals``, ``total_records`` and a short
        ``instruments`` preview with first/last dates per ISIN.
    """
    cursor.execute(
        """
        SELECT m.isin,
               COUNT(p.id) AS total_records,
               COUNT(p.id) FILTER (
                   WHERE p.trailing_pe IS NOT NULL OR p.market_cap IS NOT NULL
                      OR p.fifty_two_week_high IS NOT NULL
               ) AS with_fundamentals,
               MIN(p.trade_date), MAX(p.trade_date)
        FROM instrument_master m
        LEFT JOIN daily_prices p ON p.isin = m.isin
        GROUP BY m.isin
        ORDER BY m.isin;
        """
    )
    rows = cursor.fetchall()
    stats = [
        {
            "isin": r[0],
            "total_records": int(r[1]),
            "has_fundamentals": int(r[2]) > 0,
            "first_date": r[3].strftime("%Y-%m-%d") if r[3] else None,
            "last_date": r[4].strftime("%Y-%m-%d") if r[4] else None,
        }
        for r in rows
    ]
    return {
        "total_instruments": len(stats),
        "instruments_with_data": sum(1 for s in stats if s["total_records"] > 0),
        "instruments_with_fundamentals": sum(1 for s in stats if s["has_fundamentals"]),
        "total_records": sum(s["total_records"] for s in stats),
        "instruments": stats[:preview],
    }


# --- refresh job helpers ---

def _job_row_to_dict(row) -> Dict[str, Any]:
    job = dict(zip(JOB_FIELDS, row))
    job["pause_seconds"] = _num(job.get("pause_seconds"))
    if job.get("errors") is None:
        job["errors"] = []
    return job


def insert_refresh_job(cursor, job: Dict[str, Any]) -> None:
    """Insert a new ``refresh_jobs`` row. Errors propagate to the trigger."""
    cols = [k for k in JOB_FIELDS if k in job and k not in ("updated_at",)]
    values = [extras.Json(job[k]) if k == "errors" else job[k] for k in cols]
    cursor.execute(
        f"INSERT INTO refresh_jobs ({', '.join(cols)}) VALUES ({', '.join(['%s'] * len(cols))});",
        tuple(values),
    )
    logger.info("[db] refresh job created job_id=%s", job.get("job_id"))


def update_refresh_job(cursor, job_id: str, **fields) -> None:
    """Update selected columns of a ``refresh_jobs`` row and bump ``updated_at``.

    Parameters
    ----------
    cursor : psycopg2.extensions.cursor
        Open cursor bound to an active transaction.
    job_id : str
        Job identifier.
    **fields
        Column values; unknown names raise ``ValueError``.
    """
    unknown = set(fields) - _UPDATABLE_JOB_FIELDS
    if unknown:
        raise ValueError(f"unknown refresh_jobs fields: {sorted(unknown)}")
    if not fields:
        return
    names = list(fields)
    values = [extras.Json(fields[k]) if k == "errors" else fields[k] for k in names]
    assignments = ", ".join(f"{k}=%s" for k in names)
    cursor.execute(
        f"UPDATE refresh_jobs SET {assignments}, updated_at=NOW() WHERE job_id=%s;",
        (*values, job_id),
    )


def get_refresh_job(cursor, job_id: str) -> Optional[Dict[str, Any]]:
    """Return one refresh job as a dict or ``None``."""
    cursor.execute(f"SELECT {', '.join(JOB_FIELDS)} FROM refresh_jobs WHERE job_id=%s;", (job_id,))
    row = cursor.fetchone()
    return _job_row_to_dict(row) if row else None


def list_refresh_jobs(cursor, limit: int = 20) -> List[Dict[str, Any]]:
    """Return the most recent refresh jobs, newest first."""
    try:
        cursor.execute(
            f"SELECT {', '.join(JOB_FIELDS)} FROM refresh_jobs ORDER BY started_at DESC LIMIT %s;",
            (limit,),
        )
        return [_job_row_to_dict(r) for r in cursor.fetchall()]
    except psycopg2.Error as e:
        logger.error("[db] error listing refresh jobs: %s", e)
        return []


def request_job_cancel(cursor, job_id: str) -> bool:
    """Flag a job for cancellation; returns ``True`` if a live job was flagged."""
    cursor.execute(
        """
        UPDATE refresh_jobs SET cancel_requested=TRUE, updated_at=NOW()
        WHERE job_id=%s AND state IN ('enumerating', 'queued', 'dispatching', 'paused');
        """,
        (job_id,),
    )
    return cursor.rowcount > 0


def claim_refresh_job(cursor, job_id: str) -> bool:
    """Move a queued job to ``dispatching``.

    Returns ``False`` when the row is in any other state (for example marked
    ``abandoned`` and resumed elsewhere, or cancelled while it waited), in
    which case the run must not start.
    """
    cursor.execute(
        """
        UPDATE refresh_jobs SET state='dispatching', updated_at=NOW()
        WHERE job_id=%s AND state IN ('enumerating', 'queued') AND NOT COALESCE(cancel_requested, FALSE)
        RETURNING job_id;
        """,
        (job_id,),
    )
    return cursor.fetchone() is not None


def is_cancel_requested(cursor, job_id: str) -> bool:
    """Whether a cancel was requested for ``job_id`` (e.g. from another process)."""
    try:
        cursor.execute("SELECT cancel_requested FROM refresh_jobs WHERE job_id=%s;", (job_id,))
        row = cursor.fetchone()
        return bool(row and row[0])
    except psycopg2.Error as e:
        logger.error("[db] error reading cancel flag for %s: %s", job_id, e)
        return False


def list_stale_jobs(cursor, stale_seconds: float, include_queued: bool = False) -> List[Dict[str, Any]]:
    """Return non-terminal jobs whose ``updated_at`` is older than ``stale_seconds``.

    ``queued`` jobs are waiting behind another run and do not progress, so
    they are only listed when ``include_queued`` is set.
    """
    states = ["enumerating", "dispatching", "paused"] + (["queued"] if include_queued else [])
    cursor.execute(
        f"""
        SELECT {', '.join(JOB_FIELDS)} FROM refresh_jobs
        WHERE state = ANY(%s)
          AND updated_at < NOW() - (%s * INTERVAL '1 second')
        ORDER BY started_at ASC;
        """,
        (states, stale_seconds),
    )
    return [_job_row_to_dict(r) for r in cursor.fetchall()]
