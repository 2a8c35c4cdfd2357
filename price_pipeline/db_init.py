"""Schema bootstrap run when the API starts and before a Dagster refresh.

Besides creating missing tables, startup reports refresh jobs that a previous
process left unfinished so an operator (or the stalled-refresh sensor) can
resume them from their last completed batch.
"""

import logging

import psycopg2

from .config import check_refresh_settings
from .db_schema import create_all_tables
from .fetch_from_db import connect_to_db, list_instrument_isins, list_stale_jobs

logger = logging.getLogger(__name__)


def _report_unfinished_jobs(cursor) -> int:
    unfinished = list_stale_jobs(cursor, 0, include_queued=True)
    for job in unfinished:
        logger.warning(
            "[db_init] job=%s left in state=%s after batch %s of %s; resume with resume_job_id",
            job["job_id"], job["state"], job.get("last_completed_batch"), job.get("total_batches"),
        )
    return len(unfinished)


def init_database() -> bool:
    """Create the price pipeline tables if they are missing.

    Returns
    -------
    bool
        True when the schema is in place, False when the database is
        unreachable or the DDL failed.

    Notes
    -----
    Idempotent. Also warns about refresh settings that cannot work together
    and logs the instrument universe size and any refresh jobs still marked
    enumerating, queued, dispatching or paused.
    """
    check_refresh_settings()
    conn = connect_to_db()
    if not conn:
        logger.warning("[db_init] DB connection unavailable; skipping initialization")
        return False
    try:
        with conn.cursor() as cursor:
            create_all_tables(cursor)
            conn.commit()
            universe = len(list_instrument_isins(cursor))
            unfinished = _report_unfinished_jobs(cursor)
        conn.commit()
        logger.info("[db_init] schema ensured instruments=%d unfinished_jobs=%d", universe, unfinished)
        return True
    except psycopg2.Error as e:
        logger.error("[db_init] initialization error: %s", e)
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
