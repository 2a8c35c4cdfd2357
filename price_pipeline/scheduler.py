"""Batch scheduler for refresh runs.

Splits a priority-ordered instrument list into sequential batches. Inside a
batch, instruments are dispatched concurrently on a thread pool with a small
fixed delay between submissions; between batches the scheduler pauses so the
providers' throughput limits are respected (ten minutes for the daily
full-universe run, zero for a holdings-only manual run).

Per-instrument failures are recorded in the :class:`RunState` and processing
continues. All counters live in that explicit value, which is updated only
from the dispatching thread and handed to ``on_batch_done`` after every batch
so callers can persist a checkpoint.

A cancel signal (``threading.Event``) is honoured between batches and wakes a
pause early; an in-flight batch always runs to completion.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NO_DATA = "no_data"
STATUS_FAILED = "failed"


@dataclass
class InstrumentOutcome:
    """Result of refreshing one instrument."""
    isin: str
    status: str
    source: Optional[str] = None
    mode: Optional[str] = None
    records_stored: int = 0
    records_inserted: int = 0
    error: Optional[str] = None

    @classmethod
    def failed(cls, isin: str, error: str, mode: Optional[str] = None) -> "InstrumentOutcome":
        return cls(isin=isin, status=STATUS_FAILED, mode=mode, error=error)


@dataclass
class RunState:
    """Mutable, run-scoped counters threaded through the batch loop.

    ``last_completed_batch`` is the checkpoint: the highest batch index whose
    instruments have all been dispatched and settled (``-1`` before the first).
    """
    total_instruments: int = 0
    total_batches: int = 0
    state: str = "dispatching"
    current_batch: int = -1
    last_completed_batch: int = -1
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    no_data: int = 0
    records_stored: int = 0
    records_inserted: int = 0
    error_cap: int = 10
    errors: List[Dict[str, str]] = field(default_factory=list)
    errors_total: int = 0
    by_source: Dict[str, int] = field(default_factory=dict)

    def record(self, outcome: InstrumentOutcome) -> None:
        """Fold one outcome into the totals."""
        self.processed += 1
        if outcome.status == STATUS_OK:
            self.succeeded += 1
            self.records_stored += outcome.records_stored
            self.records_inserted += outcome.records_inserted
            if outcome.source:
                self.by_source[outcome.source] = self.by_source.get(outcome.source, 0) + 1
        elif outcome.status == STATUS_NO_DATA:
            self.no_data += 1
        else:
            self.failed += 1
            self.errors_total += 1
            # every failure is logged, only the first few are kept for reporting
            logger.warning("[scheduler] %s failed: %s", outcome.isin, outcome.error)
            if len(self.errors) < self.error_cap:
                self.errors.append({"isin": outcome.isin, "error": outcome.error or "unknown error"})

    def as_job_fields(self) -> Dict[str, object]:
        """Columns of ``refresh_jobs`` mirrored from this state."""
        return {
            "state": self.state,
            "last_completed_batch": self.last_completed_batch,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "no_data": self.no_data,
            "records_stored": self.records_stored,
            "records_inserted": self.records_inserted,
            "errors": list(self.errors),
        }


def prioritize(held: Iterable[str], universe: Iterable[str]) -> List[str]:
    """Return ``held`` followed by the rest of ``universe``, de-duplicated.

    Relative order inside each group is preserved. Held instruments that are
    not part of ``universe`` are still included.
    """
    ordered: List[str] = []
    seen = set()
    for isin in list(held) + list(universe):
        if isin and isin not in seen:
            seen.add(isin)
            ordered.append(isin)
    return ordered


def plan_batches(isins: Sequence[str], batch_size: int) -> List[List[str]]:
    """Partition ``isins`` into consecutive batches of at most ``batch_size``."""
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return [list(isins[i:i + batch_size]) for i in range(0, len(isins), batch_size)]


def _run_one(worker: Callable[[str], InstrumentOutcome], isin: str) -> InstrumentOutcome:
    try:
        outcome = worker(isin)
    except Exception as e:
        logger.exception("[scheduler] worker raised for %s", isin)
        return InstrumentOutcome.failed(isin, f"{type(e).__name__}: {e}")
    if outcome is None:
        return InstrumentOutcome.failed(isin, "worker returned no outcome")
    return outcome


def run_batches(
    plan: List[List[str]],
    worker: Callable[[str], InstrumentOutcome],
    state: Optional[RunState] = None,
    *,
    item_delay: float = 0.3,
    pause_seconds: float = 0.0,
    concurrency: int = 8,
    cancel_event: Optional[threading.Event] = None,
    start_batch: int = 0,
    on_batch_done: Optional[Callable[[RunState], None]] = None,
    on_state_change: Optional[Callable[[RunState], None]] = None,
) -> RunState:
    """Dispatch ``plan`` batch by batch and return the final run state.

    Parameters
    ----------
    plan : list[list[str]]
        Output of :func:`plan_batches`.
    worker : Callable[[str], InstrumentOutcome]
        Refreshes one instrument. Exceptions are turned into failed outcomes.
    state : Optional[RunState]
        State to continue from (e.g. counters of a resumed job).
    item_delay : float
        Seconds between two submissions inside a batch.
    pause_seconds : float
        Seconds to wait between two batches (not after the last one).
    concurrency : int
        Thread pool width inside a batch.
    cancel_event : Optional[threading.Event]
        Checked between batches; also interrupts the pause.
    start_batch : int
        Index of the first batch to dispatch; earlier batches are skipped
        (resumption).
    on_batch_done : Optional[Callable[[RunState], None]]
        Called after every batch with the updated state (checkpointing).
    on_state_change : Optional[Callable[[RunState], None]]
        Called when the run enters ``paused`` or goes back to ``dispatching``.

    Returns
    -------
    RunState
        ``state`` is ``completed`` or ``cancelled``.
    """
    state = state or RunState()
    cancel_event = cancel_event or threading.Event()
    state.total_batches = len(plan)
    if not state.total_instruments:
        state.total_instruments = sum(len(b) for b in plan)
    state.state = "dispatching"

    def _notify(callback):
        if callback is None:
            return
        try:
            callback(state)
        except Exception:
            logger.exception("[scheduler] state callback failed")

    for index, batch in enumerate(plan):
        if index < start_batch:
            continue
        if cancel_event.is_set():
            state.state = "cancelled"
            logger.info("[scheduler] cancelled before batch %d/%d", index + 1, len(plan))
            return state

        state.current_batch = index
        started = time.monotonic()
        logger.info("[scheduler] batch %d/%d size=%d", index + 1, len(plan), len(batch))
        with ThreadPoolExecutor(max_workers=max(1, concurrency), thread_name_prefix="refresh") as pool:
            futures = []
            for pos, isin in enumerate(batch):
                if pos and item_delay > 0:
                    time.sleep(item_delay)
                futures.append(pool.submit(_run_one, worker, isin))
            for fut in as_completed(futures):
                state.record(fut.result())

        state.last_completed_batch = index
        logger.info(
            "[scheduler] batch %d/%d done in %.1fs processed=%d ok=%d no_data=%d failed=%d",
            index + 1, len(plan), time.monotonic() - started,
            state.processed, state.succeeded, state.no_data, state.failed,
        )
        _notify(on_batch_done)

        if index == len(plan) - 1:
            break
        if cancel_event.is_set():
            state.state = "cancelled"
            logger.info("[scheduler] cancelled after batch %d/%d", index + 1, len(plan))
            return state
        if pause_seconds > 0:
            state.state = "paused"
            _notify(on_state_change)
            logger.info("[scheduler] pausing %.0fs before batch %d", pause_seconds, index + 2)
            if cancel_event.wait(pause_seconds):
                state.state = "cancelled"
                logger.info("[scheduler] cancelled during pause after batch %d/%d", index + 1, len(plan))
                return state
            state.state = "dispatching"
            _notify(on_state_change)

    state.state = "completed"
    logger.info(
        "[scheduler] run complete processed=%d ok=%d no_data=%d failed=%d stored=%d",
        state.processed, state.succeeded, state.no_data, state.failed, state.records_stored,
    )
    return state
