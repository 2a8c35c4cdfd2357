"""FastAPI application exposing the refresh trigger and job status endpoints.

Endpoints
- GET /cron-trigger: Enumerate instruments, queue a refresh run and
  acknowledge immediately (optionally guarded by ``CRON_SECRET_KEY``).
- GET /refresh-jobs: Recent refresh jobs.
- GET /refresh-jobs/{job_id}: One job's persisted status.
- POST /refresh-jobs/{job_id}/cancel: Request cancellation.
- GET /fetch-progress: How much of the universe has stored history.
- POST /cleanup: Run the retention sweep now.

Startup/shutdown use FastAPI lifespan to initialize schema and stop the
refresh supervisor.
"""

from typing import Optional
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import hmac
import time
import logging
import sys
from contextlib import asynccontextmanager
import asyncio

from .config import get_refresh_settings
from .db_init import init_database
from .fetch_from_db import connect_to_db, get_fetch_progress
from .jobs import cancel_job, get_job_status, list_jobs, shutdown_supervisor
from .refresh import RefreshInfrastructureError, start_refresh
from .retention import cleanup_old_price_data

logger = logging.getLogger(__name__)


def setup_app_logging():
    """Configure root and package loggers for the API process."""
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    has_stream = any(isinstance(h, logging.StreamHandler) for h in root.handlers)
    if not has_stream:
        sh = logging.StreamHandler(stream=sys.stdout)
        sh.setLevel(logging.INFO)
        sh.setFormatter(fmt)
        root.addHandler(sh)
    for name in (
        "price_pipeline",
        "price_pipeline.refresh",
        "price_pipeline.scheduler",
        "price_pipeline.fetch_data",
        __name__,
    ):
        logging.getLogger(name).setLevel(logging.INFO)


def _get_client_id(request: Request) -> str:
    """Return a caller identifier for logs.

    Prefers X-Client-Id or X-Request-Id header, else falls back to client IP.
    """
    hdr = request.headers.get("X-Client-Id") or request.headers.get("X-Request-Id")
    if hdr:
        return hdr
    return getattr(request.client, "host", None) or "unknown"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and init DB on startup; signal running jobs on shutdown."""
    setup_app_logging()
    logger.info("[api] logging configured")
    try:
        ok = init_database()
        logger.info("[api] database init ok=%s", ok)
    except Exception as e:
        logger.error("[api] database init error: %s", e)
    try:
        yield
    finally:
        shutdown_supervisor(wait=False)


app = FastAPI(title="Price Refresh API", lifespan=lifespan)


class TriggerDetails(BaseModel):
    """Acknowledgment payload returned before the run finishes."""
    job_id: str
    total_instruments: int
    batch_size: int
    total_batches: int
    pause_minutes: float
    pause_seconds: float
    started_at: str
    resumed_from: Optional[str] = None


class TriggerResponse(BaseModel):
    """Response model for /cron-trigger."""
    success: bool
    message: str
    details: TriggerDetails


class CleanupResponse(BaseModel):
    """Response model for /cleanup."""
    success: bool
    deleted_count: int
    cutoff_date: str
    error: Optional[str] = None


async def run_in_thread(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def _secret_ok(provided: Optional[str]) -> bool:
    expected = get_refresh_settings().cron_secret
    if not expected:
        return True
    return hmac.compare_digest((provided or "").encode(), expected.encode())


@app.get("/")
async def health(request: Request):
    """Health endpoint that also logs a caller id for traceability."""
    logger.info("[api] GET / healthcheck cid=%s", _get_client_id(request))
    return {"status": "ok"}


@app.get("/cron-trigger", response_model=TriggerResponse)
async def cron_trigger(
    request: Request,
    secret: Optional[str] = Query(None, description="Shared secret when CRON_SECRET_KEY is set"),
    mode: str = Query("all", pattern=r"^(all|holdings)$", description="all or holdings"),
    full_backfill: bool = Query(False, description="Backfill every instrument regardless of stored history"),
    client_id: Optional[str] = Query(None, description="Restrict held instruments to one client"),
    resume_job_id: Optional[str] = Query(None, description="Continue after this job's last completed batch"),
):
    """Start a refresh run in the background and acknowledge immediately.

    Only enumeration and job creation happen before the response; the
    batches run on the refresh supervisor.
    """
    t0 = time.time()
    cid = _get_client_id(request)
    logger.info(
        "[api] GET /cron-trigger start cid=%s mode=%s full_backfill=%s client_id=%s resume=%s",
        cid, mode, full_backfill, client_id, resume_job_id,
    )
    if not _secret_ok(secret):
        logger.warning("[api] GET /cron-trigger unauthorized cid=%s", cid)
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": "Unauthorized: Invalid secret key"},
        )
    try:
        ack = await run_in_thread(start_refresh, mode, full_backfill, client_id, resume_job_id)
    except ValueError as e:
        status = 404 if resume_job_id else 400
        return JSONResponse(status_code=status, content={"success": False, "error": str(e)})
    except RefreshInfrastructureError as e:
        logger.error("[api] GET /cron-trigger failed cid=%s err=%s", cid, e)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e) or "Failed to trigger price refresh"},
        )
    logger.info(
        "[api] GET /cron-trigger end cid=%s job=%s instruments=%d batches=%d duration=%.3fs",
        cid, ack.job_id, ack.total_instruments, ack.total_batches, (time.time() - t0),
    )
    return {
        "success": True,
        "message": "Price refresh started in background",
        "details": ack.as_details(),
    }


@app.get("/refresh-jobs")
async def get_refresh_jobs(request: Request, limit: int = Query(20, ge=1, le=200)):
    """Return recent refresh jobs, newest first."""
    cid = _get_client_id(request)
    logger.info("[api] GET /refresh-jobs cid=%s limit=%d", cid, limit)
    try:
        jobs = await run_in_thread(list_jobs, limit)
    except ConnectionError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"count": len(jobs), "jobs": jobs}


@app.get("/refresh-jobs/{job_id}")
async def get_refresh_job_status(request: Request, job_id: str):
    """Return one job's persisted status."""
    logger.info("[api] GET /refresh-jobs/%s cid=%s", job_id, _get_client_id(request))
    try:
        job = await run_in_thread(get_job_status, job_id)
    except ConnectionError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if job is None:
        raise HTTPException(status_code=404, detail=f"Unknown job {job_id}")
    return job


@app.post("/refresh-jobs/{job_id}/cancel")
async def cancel_refresh_job(request: Request, job_id: str):
    """Ask a running or queued job to stop after its current batch."""
    logger.info("[api] POST /refresh-jobs/%s/cancel cid=%s", job_id, _get_client_id(request))
    try:
        result = await run_in_thread(cancel_job, job_id)
    except ConnectionError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not result["found"]:
        raise HTTPException(status_code=404, detail=f"Unknown job {job_id}")
    return {"job_id": job_id, "cancel_requested": result["signalled"] or result["flagged"], **result}


@app.get("/fetch-progress")
async def fetch_progress(request: Request, preview: int = Query(10, ge=0, le=500)):
    """Report how many instruments have stored history and fundamentals."""
    t0 = time.time()
    cid = _get_client_id(request)
    conn = await run_in_thread(connect_to_db)
    if not conn:
        logger.error("[api] GET /fetch-progress DB unavailable cid=%s", cid)
        raise HTTPException(status_code=500, detail="DB unavailable")
    try:
        def read_progress():
            with conn.cursor() as cursor:
                return get_fetch_progress(cursor, preview)
        progress = await run_in_thread(read_progress)
        logger.info("[api] GET /fetch-progress end cid=%s duration=%.3fs", cid, (time.time() - t0))
        return {"success": True, **progress}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error reading fetch progress: {e}")
    finally:
        try:
            await run_in_thread(conn.close)
        except Exception:
            pass


@app.post("/cleanup", response_model=CleanupResponse)
async def cleanup(request: Request, secret: Optional[str] = Query(None)):
    """Delete stored prices older than the retention horizon."""
    cid = _get_client_id(request)
    if not _secret_ok(secret):
        return JSONResponse(status_code=401, content={"success": False, "error": "Unauthorized: Invalid secret key"})
    result = await run_in_thread(cleanup_old_price_data)
    logger.info("[api] POST /cleanup cid=%s deleted=%d ok=%s", cid, result.deleted_count, result.success)
    body = result.as_dict()
    if not result.success:
        return JSONResponse(status_code=500, content=body)
    return body
