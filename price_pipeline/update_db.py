"""Record upserter for ``daily_prices``.

Writes one OHLCV + fundamentals row per (isin, trade_date). The write is an
``INSERT ... ON CONFLICT (isin, trade_date) DO UPDATE`` so a repeated call is a
no-op on stored state (apart from ``last_fetched``), overlapping windows are
safe to re-run, and concurrent writers need no application-level locking.

Merge rule: a column only changes when the new record carries a value for it
(``COALESCE(EXCLUDED.col, daily_prices.col)``). A snapshot from the primary
source, which has no volume or fundamentals, never blanks what a previous
range fetch stored.

Concurrent writers: if another run inserted the same (isin, trade_date)
between our check and our insert, PostgreSQL resolves it through the
``ON CONFLICT`` arm and our values are applied as an update (last write wins).
That race is expected and is not reported as an error.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional
import logging

import psycopg2

from .fetch_from_db import connect_to_db

logger = logging.getLogger(__name__)

# record key -> column
PRICE_COLUMNS = {
    "stock_name": "stock_name",
    "symbol": "symbol",
    "exchange": "exchange",
    "open": "open_price",
    "high": "high_price",
    "low": "low_price",
    "close": "close_price",
    "volume": "volume",
    "current_price": "current_price",
    "fifty_two_week_high": "fifty_two_week_high",
    "fifty_two_week_low": "fifty_two_week_low",
    "average_volume": "average_volume",
    "regular_market_volume": "regular_market_volume",
    "trailing_pe": "trailing_pe",
    "forward_pe": "forward_pe",
    "price_to_book": "price_to_book",
    "market_cap": "market_cap",
    "dividend_yield": "dividend_yield",
    "source": "source",
}

_COLUMNS = list(PRICE_COLUMNS.values())
_MERGE_SET = ",\n    ".join(f"{c} = COALESCE(EXCLUDED.{c}, daily_prices.{c})" for c in _COLUMNS)

UPSERT_QUERY = f"""
INSERT INTO daily_prices (isin, trade_date, {", ".join(_COLUMNS)}, last_fetched)
VALUES (%s, %s, {", ".join(["%s"] * len(_COLUMNS))}, NOW())
ON CONFLICT (isin, trade_date) DO UPDATE
SET
    {_MERGE_SET},
    last_fetched = EXCLUDED.last_fetched
RETURNING (xmax = 0) AS inserted;
"""

# ratios and range metrics copied onto recent rows after a fresh fundamentals fetch
RECENT_FUNDAMENTAL_KEYS = (
    "fifty_two_week_high",
    "fifty_two_week_low",
    "average_volume",
    "trailing_pe",
    "forward_pe",
    "price_to_book",
    "market_cap",
    "dividend_yield",
)
RECENT_FUNDAMENTALS_DAYS = 90


@dataclass
class UpsertSummary:
    """Counts for one upsert call."""
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    fundamentals_spread: int = 0

    @property
    def stored(self) -> int:
        return self.inserted + self.updated


def _as_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value) >= 10:
        try:
            return datetime.strptime(value[:10], "%Y-%m-%d").date()
        except ValueError:
            return None
    return None


def normalize_record(
    isin: str,
    instrument: Optional[Dict[str, Any]],
    bar: Dict[str, Any],
    source: str,
    symbol: Optional[str] = None,
    exchange: Optional[str] = None,
    carry_forward: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a storable record from a provider bar.

    Parameters
    ----------
    isin : str
        Instrument identifier.
    instrument : Optional[dict]
        Instrument master row (for ``stock_name``/``symbol``/``exchange``).
    bar : dict
        Provider output with ``date`` and price keys.
    source : str
        Adapter that supplied the bar (``nse`` or ``yahoo``).
    symbol, exchange : Optional[str]
        Overrides for the effective symbol/exchange actually queried.
    carry_forward : Optional[dict]
        Fundamentals to fill in where the bar has none.

    Returns
    -------
    dict
        ``isin``, ``trade_date`` and every key of :data:`PRICE_COLUMNS`
        (``None`` where unknown).
    """
    instrument = instrument or {}
    record: Dict[str, Any] = {key: None for key in PRICE_COLUMNS}
    record.update({
        "isin": isin,
        "trade_date": _as_date(bar.get("date") or bar.get("trade_date")),
        "stock_name": instrument.get("stock_name"),
        "symbol": symbol or instrument.get("symbol"),
        "exchange": exchange or instrument.get("exchange"),
        "source": source,
    })
    for key in PRICE_COLUMNS:
        if key in ("stock_name", "symbol", "exchange", "source"):
            continue
        value = bar.get(key)
        if value is None and carry_forward:
            value = carry_forward.get(key)
        record[key] = value
    if record["current_price"] is None:
        record["current_price"] = record["close"]
    return record


def upsert_price_record(cursor, record: Dict[str, Any]) -> bool:
    """Upsert one normalized record.

    Parameters
    ----------
    cursor : psycopg2.extensions.cursor
        Open cursor bound to an active transaction.
    record : dict
        Output of :func:`normalize_record`.

    Returns
    -------
    bool
        ``True`` if a new row was inserted, ``False`` if an existing row was
        updated in place.

    Raises
    ------
    ValueError
        When ``isin`` or ``trade_date`` is missing.
    psycopg2.Error
        On database errors.
    """
    isin = record.get("isin")
    trade_date = _as_date(record.get("trade_date"))
    if not isin or trade_date is None:
        raise ValueError(f"record missing isin/trade_date: {record!r}")
    values = [record.get(key) for key in PRICE_COLUMNS]
    cursor.execute(UPSERT_QUERY, (isin, trade_date, *values))
    row = cursor.fetchone()
    inserted = bool(row[0]) if row else False
    if not inserted:
        logger.debug("[upsert] existing row updated isin=%s date=%s", isin, trade_date)
    return inserted


def upsert_price_records(cursor, records: Iterable[Dict[str, Any]]) -> UpsertSummary:
    """Upsert many records, isolating each in a savepoint.

    Rows that fail validation or hit a database error are skipped and logged
    without aborting the surrounding transaction.
    """
    summary = UpsertSummary()
    for record in records:
        cursor.execute("SAVEPOINT price_row;")
        try:
            if upsert_price_record(cursor, record):
                summary.inserted += 1
            else:
                summary.updated += 1
            cursor.execute("RELEASE SAVEPOINT price_row;")
        except (ValueError, psycopg2.DataError, psycopg2.IntegrityError) as row_err:
            cursor.execute("ROLLBACK TO SAVEPOINT price_row;")
            logger.error("[upsert] row skipped: %s record=%s", row_err, record)
            summary.skipped += 1
    return summary


def apply_recent_fundamentals(cursor, isin: str, fundamentals: Dict[str, Any], since: date) -> int:
    """Copy the latest fundamentals onto every stored row of ``isin`` from ``since`` on.

    Only keys in :data:`RECENT_FUNDAMENTAL_KEYS` with a value are written, and
    rows that already hold those values are left alone.

    Returns
    -------
    int
        Number of rows changed.
    """
    fields = {k: fundamentals[k] for k in RECENT_FUNDAMENTAL_KEYS if fundamentals.get(k) is not None}
    if not fields:
        return 0
    columns = [PRICE_COLUMNS[k] for k in fields]
    values = list(fields.values())
    assignments = ", ".join(f"{c}=%s" for c in columns)
    cursor.execute(
        f"""
        UPDATE daily_prices SET {assignments}, last_fetched=NOW()
        WHERE isin=%s AND trade_date >= %s
          AND ({", ".join(columns)}) IS DISTINCT FROM ({", ".join(["%s"] * len(columns))});
        """,
        (*values, isin, since, *values),
    )
    changed = max(cursor.rowcount or 0, 0)
    if changed:
        logger.info("[upsert] isin=%s fundamentals copied to %d rows since %s", isin, changed, since)
    return changed


def store_price_records(
    records: List[Dict[str, Any]],
    fundamentals_since: Optional[date] = None,
) -> UpsertSummary:
    """Open a connection, upsert ``records`` and commit.

    When ``fundamentals_since`` is given, the newest record's fundamentals
    are also copied onto stored rows from that date on, in the same
    transaction.

    Returns
    -------
    UpsertSummary
        Inserted/updated/skipped counts.

    Raises
    ------
    ConnectionError
        When the database is unreachable.
    psycopg2.Error
        When the transaction fails as a whole (rolled back first).
    """
    if not records:
        return UpsertSummary()
    conn = connect_to_db()
    if not conn:
        raise ConnectionError("database unavailable")
    try:
        with conn.cursor() as cursor:
            summary = upsert_price_records(cursor, records)
            if fundamentals_since is not None:
                latest = records[-1]
                summary.fundamentals_spread = apply_recent_fundamentals(
                    cursor, latest["isin"], latest, fundamentals_since,
                )
        conn.commit()
        logger.info(
            "[upsert] isin=%s inserted=%d updated=%d skipped=%d",
            records[0].get("isin"), summary.inserted, summary.updated, summary.skipped,
        )
        return summary
    except Exception:
        try:
            conn.rollback()
        except Exception:
            pass
        raise
    finally:
        try:
            conn.close()
        except Exception:
            pass

