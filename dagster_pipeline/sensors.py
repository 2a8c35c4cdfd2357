from dagster import sensor, RunRequest
import json
import time

from price_pipeline.config import get_refresh_settings
from price_pipeline.jobs import abandon_stale_jobs

from .schedules import _run_config


# Marks refresh jobs whose process died (no checkpoint for longer than the
# stale threshold) as abandoned and resumes them from their last batch.
@sensor(name="stalled_refresh_sensor", minimum_interval_seconds=300, job_name="daily_price_refresh_job")
def stalled_refresh_sensor(context):
    state = {"last_check": None, "resumed": []}
    if context.cursor:
        try:
            state.update(json.loads(context.cursor))
        except ValueError:
            context.log.warning("Unreadable sensor cursor; starting fresh")

    stale_seconds = get_refresh_settings().stale_job_seconds
    try:
        stalled = abandon_stale_jobs(stale_seconds)
    except ConnectionError as e:
        context.log.warning(f"Database unavailable, skipping stalled job check: {e}")
        return

    now = time.time()
    resumed = list(state.get("resumed") or [])
    for job in stalled:
        job_id = job["job_id"]
        remaining = (job.get("total_batches") or 0) - (job.get("last_completed_batch", -1) + 1)
        if remaining <= 0:
            context.log.info(f"Job {job_id} stalled after its last batch; nothing to resume")
            continue
        context.log.warning(
            f"Job {job_id} stalled in state={job['state']}; resuming {remaining} remaining batches"
        )
        resumed.append(job_id)
        yield RunRequest(
            run_key=f"resume:{job_id}",
            run_config=_run_config(
                mode=job["mode"],
                full_backfill=bool(job["full_backfill"]),
                client_id=job["client_id"],
                resume_job_id=job_id,
            ),
            tags={"trigger": "stalled_refresh", "resumed_from": job_id},
        )

    state["last_check"] = now
    state["resumed"] = resumed[-50:]
    context.update_cursor(json.dumps(state))
