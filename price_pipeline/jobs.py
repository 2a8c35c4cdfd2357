"""Refresh job supervisor and job-status queries.

The trigger endpoint only enqueues and acknowledges; the run itself executes
on the supervisor's single worker thread, so at most one refresh is active
per process and later triggers queue behind it. Each queued run gets a
``threading.Event`` that the cancel endpoint sets; the scheduler checks it
between batches.

Status lives in the ``refresh_jobs`` table, which makes it queryable from
any process (API, Dagster sensor) and survives restarts.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import psycopg2

from .fetch_from_db import (
    connect_to_db,
    get_refresh_job,
    list_refresh_jobs,
    list_stale_jobs,
    request_job_cancel,
    update_refresh_job,
)

logger = logging.getLogger(__name__)

class RefreshSupervisor:
    """Single-worker queue for refresh runs.

    Parameters
    ----------
    runner : Callable[[plan, threading.Event], Any]
        Executes one plan; normally :func:`price_pipeline.refresh.run_refresh_job`.
    """

    def __init__(self, runner: Callable[..., Any]):
        self._runner = runner
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="refresh-job")
        self._events: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def submit(self, plan) -> Future:
        """Queue ``plan`` and return its future."""
        event = threading.Event()
        with self._lock:
            self._events[plan.job_id] = event
            future = self._executor.submit(self._run, plan, event)
            self._futures[plan.job_id] = future
        logger.info("[jobs] queued job=%s instruments=%d", plan.job_id, plan.total_instruments)
        return future

    def _run(self, plan, event: threading.Event):
        logger.info("[jobs] starting job=%s", plan.job_id)
        try:
            return self._runner(plan, event)
        except Exception:
            logger.exception("[jobs] job=%s crashed", plan.job_id)
            raise
        finally:
            with self._lock:
                self._events.pop(plan.job_id, None)
                self._futures.pop(plan.job_id, None)
            logger.info("[jobs] finished job=%s", plan.job_id)

    def cancel(self, job_id: str) -> bool:
        """Signal a queued or running job in this process; ``False`` if unknown here."""
        with self._lock:
            event = self._events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info("[jobs] cancel signalled job=%s", job_id)
        return True

    def active_job_ids(self) -> List[str]:
        with self._lock:
            return list(self._events)

    def shutdown(self, wait: bool = False) -> None:
        """Cancel everything still queued or running and stop the worker."""
        with self._lock:
            events = list(self._events.values())
        for event in events:
            event.set()
        self._executor.shutdown(wait=wait)


_supervisor: Optional[RefreshSupervisor] = None
_supervisor_lock = threading.Lock()


def get_supervisor() -> RefreshSupervisor:
    """Process-wide supervisor, created on first use."""
    global _supervisor
    with _supervisor_lock:
        if _supervisor is None:
            from .refresh import run_refresh_job

            _supervisor = RefreshSupervisor(run_refresh_job)
        return _supervisor


def shutdown_supervisor(wait: bool = False) -> None:
    global _supervisor
    with _supervisor_lock:
        supervisor, _supervisor = _supervisor, None
    if supervisor is not None:
        supervisor.shutdown(wait=wait)


# --- status queries ---

def _with_cursor(fn, commit: bool = False):
    conn = connect_to_db()
    if not conn:
        raise ConnectionError("database unavailable")
    try:
        with conn.cursor() as cursor:
            result = fn(cursor)
        if commit:
            conn.commit()
        return result
    except psycopg2.Error:
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


def get_job_status(job_id: str) -> Optional[Dict[str, Any]]:
    """Return the persisted job row, flagged ``active`` when running in this process."""
    job = _with_cursor(lambda cur: get_refresh_job(cur, job_id))
    if job is not None:
        job["active"] = job_id in get_supervisor().active_job_ids()
    return job


def list_jobs(limit: int = 20) -> List[Dict[str, Any]]:
    """Most recent jobs, newest first."""
    return _with_cursor(lambda cur: list_refresh_jobs(cur, limit))


def cancel_job(job_id: str) -> Dict[str, Any]:
    """Request cancellation of ``job_id``.

    Sets the local cancel event when the job runs in this process and flags
    the row so a run in another process notices at its next checkpoint.

    Returns
    -------
    dict
        ``found``, ``signalled`` (local event set) and ``flagged`` (row updated).
    """
    signalled = get_supervisor().cancel(job_id)

    def _flag(cursor):
        job = get_refresh_job(cursor, job_id)
        if job is None:
            return False, False
        return True, request_job_cancel(cursor, job_id)

    found, flagged = _with_cursor(_flag, commit=True)
    logger.info("[jobs] cancel job=%s found=%s signalled=%s flagged=%s", job_id, found, signalled, flagged)
    return {"found": found or signalled, "signalled": signalled, "flagged": flagged}


def abandon_stale_jobs(stale_seconds: float) -> List[Dict[str, Any]]:
    """Mark non-terminal jobs not updated for ``stale_seconds`` as ``abandoned``.

    Jobs still running in this process are left alone. Returns the jobs that
    were marked, as they were before the update.
    """
    local = set(get_supervisor().active_job_ids()) if _supervisor is not None else set()

    def _mark(cursor):
        marked = []
        for job in list_stale_jobs(cursor, stale_seconds):
            if job["job_id"] in local:
                continue
            update_refresh_job(cursor, job["job_id"], state="abandoned")
            marked.append(job)
        return marked

    marked = _with_cursor(_mark, commit=True)
    for job in marked:
        logger.warning(
            "[jobs] job=%s abandoned in state=%s at batch %s/%s",
            job["job_id"], job["state"], job["last_completed_batch"], job["total_batches"],
        )
    return marked
