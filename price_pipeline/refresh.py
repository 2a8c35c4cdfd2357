"""Refresh orchestrator.

Per instrument
- Load the instrument master row (deriving a ticker from the display name
  when the symbol is missing) and classify it as complete or needing a
  backfill.
- Incremental refresh always queries the secondary source for the short
  window so missed days are filled. For an NSE listing the primary quote
  (hard 5 s bound) is merged into today's bar: close becomes the primary
  price and high/low widen to include it. When the secondary source fails
  the primary price is stored on its own. Backfills use the secondary
  source only.
- A fresh fundamentals lookup is copied onto the last 90 days of stored
  rows.
- An NSE listing with no secondary data is retried once on BSE; a hit
  records the exchange on the instrument master.
- Outcome is ``ok``, ``no_data`` or ``failed``; failures never escape.

Per run
- :func:`prepare_refresh` creates the ``refresh_jobs`` row, enumerates the
  universe (held instruments first) and plans the batches. It is the only
  part that runs before the trigger is acknowledged, so an infrastructure
  failure here surfaces to the caller as :class:`RefreshInfrastructureError`.
- :func:`run_refresh_job` drives the batches, checkpoints the job row after
  each one, honours cancellation, and runs the retention sweep when the run
  completes. Failures at this point are logged and recorded on the job only.
"""
from __future__ import annotations

import functools
import logging
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import psycopg2

from .completeness import has_complete_history
from .config import RefreshSettings, get_refresh_settings
from .fetch_data import (
    ProviderError,
    fetch_current_price_bounded,
    fetch_history_yahoo,
    full_range_window,
    short_range_window,
)
from .fetch_from_db import (
    claim_refresh_job,
    connect_to_db,
    get_instrument,
    get_latest_fundamentals,
    get_refresh_job,
    insert_refresh_job,
    is_cancel_requested,
    list_holding_isins,
    list_instrument_isins,
    update_instrument_exchange,
    update_instrument_profile,
    update_refresh_job,
)
from .retention import cleanup_old_price_data
from .scheduler import (
    STATUS_NO_DATA,
    STATUS_OK,
    InstrumentOutcome,
    RunState,
    plan_batches,
    prioritize,
    run_batches,
)
from .update_db import (
    RECENT_FUNDAMENTAL_KEYS,
    RECENT_FUNDAMENTALS_DAYS,
    normalize_record,
    store_price_records,
)

logger = logging.getLogger(__name__)

MODE_ALL = "all"
MODE_HOLDINGS = "holdings"

_NAME_SUFFIXES = re.compile(
    r"\b(ltd|limited|corporation|corp|services|infrastructure)\b\.?", re.IGNORECASE
)


class RefreshInfrastructureError(RuntimeError):
    """The run cannot proceed at all (storage unreachable, universe unreadable)."""


@dataclass
class RefreshPlan:
    """Everything a worker needs to execute one acknowledged run."""
    job_id: str
    mode: str
    full_backfill: bool
    client_id: Optional[str]
    held: List[str]
    isins: List[str]
    batches: List[List[str]]
    batch_size: int
    pause_seconds: float
    started_at: datetime
    today: date
    start_batch: int = 0
    resumed_from: Optional[str] = None

    @property
    def total_instruments(self) -> int:
        return len(self.isins)

    @property
    def total_batches(self) -> int:
        return len(self.batches)


@dataclass
class Acknowledgment:
    """What the trigger caller gets back before the run finishes."""
    job_id: str
    total_instruments: int
    batch_size: int
    total_batches: int
    pause_seconds: float
    started_at: datetime
    mode: str = MODE_ALL
    resumed_from: Optional[str] = None

    @classmethod
    def from_plan(cls, plan: RefreshPlan) -> "Acknowledgment":
        return cls(
            job_id=plan.job_id,
            total_instruments=plan.total_instruments,
            batch_size=plan.batch_size,
            total_batches=plan.total_batches,
            pause_seconds=plan.pause_seconds,
            started_at=plan.started_at,
            mode=plan.mode,
            resumed_from=plan.resumed_from,
        )

    def as_details(self) -> Dict[str, Any]:
        details = {
            "job_id": self.job_id,
            "total_instruments": self.total_instruments,
            "batch_size": self.batch_size,
            "total_batches": self.total_batches,
            "pause_minutes": round(self.pause_seconds / 60.0, 2),
            "pause_seconds": self.pause_seconds,
            "started_at": self.started_at.isoformat(),
        }
        if self.resumed_from:
            details["resumed_from"] = self.resumed_from
        return details


def market_today(settings: Optional[RefreshSettings] = None) -> date:
    """Current calendar date in the market timezone."""
    settings = settings or get_refresh_settings()
    return datetime.now(ZoneInfo(settings.market_timezone)).date()


def derive_symbol(stock_name: Optional[str]) -> Optional[str]:
    """Guess a ticker from a display name: drop corporate suffixes, keep the first word.

    >>> derive_symbol("Infosys Limited")
    'INFOSYS'
    """
    if not stock_name:
        return None
    cleaned = _NAME_SUFFIXES.sub("", stock_name).strip()
    if not cleaned:
        return None
    first = re.sub(r"[^A-Za-z0-9&-]", "", cleaned.split()[0])
    return first.upper() or None


def resolve_symbol(instrument: Dict[str, Any]) -> Tuple[Optional[str], str]:
    """Return the (symbol, exchange) to query; exchange defaults to NSE."""
    symbol = (instrument.get("symbol") or "").strip().upper() or derive_symbol(instrument.get("stock_name"))
    exchange = (instrument.get("exchange") or "NSE").strip().upper() or "NSE"
    return symbol, exchange


# --- per-instrument refresh ---

def _load_context(isin: str, today: date, settings: RefreshSettings):
    conn = connect_to_db()
    if not conn:
        raise ConnectionError("database unavailable")
    try:
        with conn.cursor() as cursor:
            instrument = get_instrument(cursor, isin)
            if instrument is None:
                return None, False, {}
            complete = has_complete_history(cursor, isin, today=today, settings=settings)
            carry = get_latest_fundamentals(cursor, isin) if complete else {}
        conn.commit()
        return instrument, complete, carry
    finally:
        try:
            conn.close()
        except Exception:
            pass


def _record_instrument_update(isin: str, exchange: Optional[str] = None, profile: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort write-back to the instrument master (exchange or sector fields)."""
    conn = connect_to_db()
    if not conn:
        return
    try:
        with conn.cursor() as cursor:
            if exchange:
                update_instrument_exchange(cursor, isin, exchange)
            if profile:
                update_instrument_profile(cursor, isin, profile)
        conn.commit()
    except psycopg2.Error as e:
        logger.warning("[refresh] instrument master update failed for %s: %s", isin, e)
        try:
            conn.rollback()
        except Exception:
            pass
    finally:
        try:
            conn.close()
        except Exception:
            pass


def _ok(isin: str, source: str, mode: str, summary) -> InstrumentOutcome:
    return InstrumentOutcome(
        isin=isin,
        status=STATUS_OK,
        source=source,
        mode=mode,
        records_stored=summary.stored,
        records_inserted=summary.inserted,
    )


def merge_primary_price(bars: List[Dict[str, Any]], price: float, today: date) -> List[Dict[str, Any]]:
    """Fold the primary source's last price into today's bar.

    Today's secondary bar keeps its open and volume; close becomes the
    primary price and high/low widen to include it. Without a secondary bar
    for today one is appended that opens at the previous close and inherits
    the previous bar's fundamentals. The merged bar is flagged ``primary``.
    """
    merged = [dict(b) for b in bars]
    todays = next((b for b in merged if b.get("date") == today), None)
    if todays is None:
        prev = merged[-1] if merged else {}
        todays = {k: prev[k] for k in RECENT_FUNDAMENTAL_KEYS if prev.get(k) is not None}
        todays.update({"date": today, "open": prev.get("close") or price, "high": price, "low": price})
        merged.append(todays)
    else:
        todays["high"] = max(todays.get("high") or price, price)
        todays["low"] = min(todays.get("low") or price, price)
    todays["close"] = price
    todays["current_price"] = price
    todays["primary"] = True
    return merged


def _has_fresh_ratios(bar: Dict[str, Any]) -> bool:
    return any(bar.get(k) is not None for k in ("trailing_pe", "forward_pe", "price_to_book", "market_cap", "dividend_yield"))


def refresh_instrument(
    isin: str,
    *,
    force_full: bool = False,
    today: Optional[date] = None,
    settings: Optional[RefreshSettings] = None,
) -> InstrumentOutcome:
    """Refresh stored prices for one instrument with source fallback.

    Parameters
    ----------
    isin : str
        Instrument identifier.
    force_full : bool
        Backfill the full window even when history is complete.
    today : Optional[date]
        Reference day; defaults to today in the market timezone.
    settings : Optional[RefreshSettings]
        Overrides the environment-derived settings.

    Returns
    -------
    InstrumentOutcome
        ``ok`` with the source whose rows were stored, ``no_data`` when the
        providers answered with nothing, ``failed`` otherwise.
    """
    settings = settings or get_refresh_settings()
    today = today or market_today(settings)
    try:
        instrument, complete, carry = _load_context(isin, today, settings)
    except (psycopg2.Error, ConnectionError) as e:
        return InstrumentOutcome.failed(isin, f"storage: {e}")
    if instrument is None:
        return InstrumentOutcome.failed(isin, "not in instrument master")
    symbol, exchange = resolve_symbol(instrument)
    if not symbol:
        return InstrumentOutcome.failed(isin, "no symbol")

    mode = "backfill" if (force_full or not complete) else "incremental"
    errors: List[str] = []

    quote = None
    if mode == "incremental" and exchange == "NSE":
        try:
            quote = fetch_current_price_bounded(symbol, settings.primary_timeout_seconds)
        except ProviderError as e:
            errors.append(f"nse: {e}")
            logger.info("[refresh] %s primary failed (%s), using secondary only", isin, e)
        else:
            _record_instrument_update(isin, profile=quote.profile_fields())

    if mode == "backfill":
        start, end = full_range_window(today, settings.backfill_years)
    else:
        start, end = short_range_window(today, settings.refresh_window_days)

    try:
        bars = fetch_history_yahoo(symbol, exchange, start, end, settings.secondary_timeout_seconds)
        if not bars and exchange != "BSE" and quote is None:
            logger.info("[refresh] %s no data on %s, trying BSE listing", isin, exchange)
            bars = fetch_history_yahoo(symbol, "BSE", start, end, settings.secondary_timeout_seconds)
            if bars:
                exchange = "BSE"
                _record_instrument_update(isin, exchange="BSE")
    except ProviderError as e:
        errors.append(f"yahoo: {e}")
        if quote is None:
            return InstrumentOutcome.failed(isin, "; ".join(errors), mode)
        logger.info("[refresh] %s secondary failed (%s), storing primary snapshot only", isin, e)
        bars = []

    if quote is not None:
        bars = merge_primary_price(bars, quote.price, today)

    if not bars:
        logger.info("[refresh] %s no data for %s..%s", isin, start, end)
        return InstrumentOutcome(isin=isin, status=STATUS_NO_DATA, mode=mode)

    records = []
    for i, bar in enumerate(bars):
        latest = i == len(bars) - 1
        # ratios are only attached to the latest bar; keep the last known ones if the lookup failed
        records.append(normalize_record(
            isin, instrument, bar, "nse" if bar.get("primary") else "yahoo",
            symbol=symbol, exchange=exchange, carry_forward=carry if latest else None,
        ))
    since = today - timedelta(days=RECENT_FUNDAMENTALS_DAYS) if _has_fresh_ratios(bars[-1]) else None
    try:
        summary = store_price_records(records, fundamentals_since=since)
    except (psycopg2.Error, ConnectionError) as e:
        return InstrumentOutcome.failed(isin, f"storage: {e}", mode)
    source = "+".join(sorted({r["source"] for r in records}))
    logger.info(
        "[refresh] %s %s via %s bars=%d inserted=%d updated=%d",
        isin, mode, source, len(bars), summary.inserted, summary.updated,
    )
    return _ok(isin, source, mode, summary)


# --- run level ---

def _enumerate(cursor, mode: str, client_id: Optional[str]) -> Tuple[List[str], List[str]]:
    held = list_holding_isins(cursor, client_id)
    if mode == MODE_HOLDINGS:
        return held, list(held)
    return held, prioritize(held, list_instrument_isins(cursor))


def enumerate_instruments(mode: str = MODE_ALL, client_id: Optional[str] = None) -> Tuple[List[str], List[str]]:
    """Return (held, ordered) ISINs for a run.

    ``ordered`` lists every held instrument before any other one. In
    holdings mode it is exactly the held list.

    Raises
    ------
    RefreshInfrastructureError
        When the database is unreachable or the universe cannot be read.
    """
    conn = connect_to_db()
    if not conn:
        raise RefreshInfrastructureError("database unavailable")
    try:
        with conn.cursor() as cursor:
            return _enumerate(cursor, mode, client_id)
    except psycopg2.Error as e:
        raise RefreshInfrastructureError(f"cannot enumerate instruments: {e}") from e
    finally:
        try:
            conn.close()
        except Exception:
            pass


def prepare_refresh(
    mode: str = MODE_ALL,
    full_backfill: bool = False,
    client_id: Optional[str] = None,
    resume_job_id: Optional[str] = None,
    settings: Optional[RefreshSettings] = None,
) -> RefreshPlan:
    """Create the job row, enumerate the universe and plan the batches.

    A resumed run inherits mode, backfill flag, client and batch size from
    the job it resumes and starts after that job's last completed batch.

    Raises
    ------
    ValueError
        Unknown ``mode`` or ``resume_job_id``.
    RefreshInfrastructureError
        When storage is unreachable or enumeration fails.
    """
    settings = settings or get_refresh_settings()
    if mode not in (MODE_ALL, MODE_HOLDINGS):
        raise ValueError(f"unknown mode {mode!r}")
    conn = connect_to_db()
    if not conn:
        raise RefreshInfrastructureError("database unavailable")
    job_id = str(uuid.uuid4())
    started_at = datetime.now(timezone.utc)
    start_batch = 0
    batch_size = settings.holdings_batch_size if mode == MODE_HOLDINGS else settings.batch_size
    try:
        with conn.cursor() as cursor:
            if resume_job_id:
                prior = get_refresh_job(cursor, resume_job_id)
                if prior is None:
                    raise ValueError(f"unknown job {resume_job_id}")
                mode = prior["mode"]
                full_backfill = bool(prior["full_backfill"])
                client_id = prior["client_id"]
                batch_size = int(prior["batch_size"] or batch_size)
                start_batch = int(prior["last_completed_batch"]) + 1
            else:
                client_id = client_id or settings.default_client_id
            pause = settings.holdings_pause_seconds if mode == MODE_HOLDINGS else settings.pause_seconds
            insert_refresh_job(cursor, {
                "job_id": job_id,
                "state": "enumerating",
                "mode": mode,
                "full_backfill": full_backfill,
                "client_id": client_id,
                "batch_size": batch_size,
                "pause_seconds": pause,
                "last_completed_batch": start_batch - 1,
                "resumed_from": resume_job_id,
                "errors": [],
                "started_at": started_at,
            })
            conn.commit()
            held, ordered = _enumerate(cursor, mode, client_id)
            batches = plan_batches(ordered, batch_size)
            update_refresh_job(
                cursor, job_id,
                state="queued",
                total_instruments=len(ordered),
                total_batches=len(batches),
            )
        conn.commit()
    except psycopg2.Error as e:
        try:
            conn.rollback()
        except Exception:
            pass
        _save_job(job_id, state="failed", finished_at=datetime.now(timezone.utc))
        raise RefreshInfrastructureError(f"cannot prepare refresh: {e}") from e
    finally:
        try:
            conn.close()
        except Exception:
            pass

    logger.info(
        "[refresh] job=%s mode=%s held=%d total=%d batches=%d batch_size=%d pause=%.0fs start_batch=%d",
        job_id, mode, len(held), len(ordered), len(batches), batch_size, pause, start_batch,
    )
    return RefreshPlan(
        job_id=job_id,
        mode=mode,
        full_backfill=full_backfill,
        client_id=client_id,
        held=held,
        isins=ordered,
        batches=batches,
        batch_size=batch_size,
        pause_seconds=pause,
        started_at=started_at,
        today=market_today(settings),
        start_batch=start_batch,
        resumed_from=resume_job_id,
    )


def start_refresh(
    mode: str = MODE_ALL,
    full_backfill: bool = False,
    client_id: Optional[str] = None,
    resume_job_id: Optional[str] = None,
    supervisor=None,
) -> Acknowledgment:
    """Enumerate, hand the run to the supervisor and acknowledge.

    Returns as soon as the run is queued; the batches execute on the
    supervisor's worker thread.
    """
    from .jobs import get_supervisor

    plan = prepare_refresh(mode, full_backfill, client_id, resume_job_id)
    (supervisor or get_supervisor()).submit(plan)
    return Acknowledgment.from_plan(plan)


def _save_job(job_id: str, **fields) -> bool:
    """Persist job status fields and return whether a cancel was requested on the row.

    A failed write is logged and the run continues.
    """
    conn = connect_to_db()
    if not conn:
        logger.warning("[refresh] job=%s status not saved: database unavailable", job_id)
        return False
    try:
        with conn.cursor() as cursor:
            update_refresh_job(cursor, job_id, **fields)
            cancel = is_cancel_requested(cursor, job_id)
        conn.commit()
        return cancel
    except psycopg2.Error as e:
        logger.error("[refresh] job=%s status not saved: %s", job_id, e)
        try:
            conn.rollback()
        except Exception:
            pass
        return False
    finally:
        try:
            conn.close()
        except Exception:
            pass


def _claim_job(job_id: str) -> Optional[str]:
    """Take the job row for this worker.

    Returns ``None`` when the run may start, otherwise the state that blocks
    it. A job cancelled while it waited in the queue is closed as
    ``cancelled`` here. When storage is unreachable the run starts anyway and
    fails per instrument.
    """
    conn = connect_to_db()
    if not conn:
        logger.warning("[refresh] job=%s not claimed: database unavailable", job_id)
        return None
    try:
        with conn.cursor() as cursor:
            blocked = None
            if not claim_refresh_job(cursor, job_id):
                row = get_refresh_job(cursor, job_id)
                if row is not None:
                    blocked = row["state"]
                    if blocked in ("enumerating", "queued"):
                        update_refresh_job(
                            cursor, job_id, state="cancelled", finished_at=datetime.now(timezone.utc),
                        )
                        blocked = "cancelled"
        conn.commit()
        return blocked
    except psycopg2.Error as e:
        logger.error("[refresh] job=%s claim failed: %s", job_id, e)
        try:
            conn.rollback()
        except Exception:
            pass
        return None
    finally:
        try:
            conn.close()
        except Exception:
            pass


def run_refresh_job(
    plan: RefreshPlan,
    cancel_event: Optional[threading.Event] = None,
    settings: Optional[RefreshSettings] = None,
) -> RunState:
    """Execute an acknowledged run to completion, cancellation or failure.

    The job row is claimed first: a job that was abandoned (and resumed
    elsewhere) or cancelled while queued does not run. The row is then
    checkpointed after every batch; a cancel flag set on the row from
    another process is picked up at that point as well.
    """
    settings = settings or get_refresh_settings()
    cancel_event = cancel_event or threading.Event()
    state = RunState(
        total_instruments=plan.total_instruments,
        total_batches=plan.total_batches,
        last_completed_batch=plan.start_batch - 1,
        error_cap=settings.error_list_cap,
    )
    blocked = _claim_job(plan.job_id)
    if blocked:
        logger.warning("[refresh] job=%s not started: job is %s", plan.job_id, blocked)
        state.state = blocked
        return state

    def _checkpoint(current: RunState) -> None:
        if _save_job(plan.job_id, **current.as_job_fields()):
            cancel_event.set()

    worker = functools.partial(
        refresh_instrument, force_full=plan.full_backfill, today=plan.today, settings=settings,
    )
    state.state = "dispatching"
    _checkpoint(state)
    try:
        state = run_batches(
            plan.batches,
            worker,
            state,
            item_delay=settings.item_delay_seconds,
            pause_seconds=plan.pause_seconds,
            concurrency=settings.concurrency,
            cancel_event=cancel_event,
            start_batch=plan.start_batch,
            on_batch_done=_checkpoint,
            on_state_change=_checkpoint,
        )
    except Exception as e:
        logger.exception("[refresh] job=%s failed after acknowledgment: %s", plan.job_id, e)
        state.state = "failed"
        state.errors = (state.errors + [{"isin": "*", "error": f"run failed: {e}"}])[: state.error_cap + 1]

    _save_job(plan.job_id, finished_at=datetime.now(timezone.utc), **state.as_job_fields())
    logger.info(
        "[refresh] job=%s %s processed=%d ok=%d no_data=%d failed=%d stored=%d inserted=%d sources=%s",
        plan.job_id, state.state, state.processed, state.succeeded, state.no_data,
        state.failed, state.records_stored, state.records_inserted, state.by_source,
    )

    if state.state == "completed" and settings.retention_sweep_enabled:
        result = cleanup_old_price_data(plan.today, settings.retention_years)
        if not result.success:
            logger.warning("[refresh] job=%s retention sweep failed: %s", plan.job_id, result.error)
    return state
