from dagster import asset, Field, String, Bool, Noneable
import logging

from price_pipeline.db_init import init_database
from price_pipeline.refresh import prepare_refresh, run_refresh_job


@asset(
    config_schema={
        "mode": Field(
            String,
            description="'all' for the full instrument universe, 'holdings' for held instruments only.",
            default_value="all",
        ),
        "full_backfill": Field(
            Bool,
            description="Backfill every instrument regardless of stored history.",
            default_value=False,
        ),
        "client_id": Field(
            Noneable(String),
            description="Restrict held instruments to one client.",
            default_value=None,
        ),
        "resume_job_id": Field(
            Noneable(String),
            description="Continue after the last completed batch of this job.",
            default_value=None,
        ),
    }
)
def refresh_price_history(context):
    """
    Refresh stored daily prices for the configured instrument set.

    Runs the whole refresh inside the Dagster run: enumerates instruments
    (held first), dispatches paced batches with NSE -> Yahoo fallback and
    upserts into daily_prices. Progress is checkpointed on the refresh_jobs
    row so an interrupted run can be resumed by the stalled-run sensor.
    Returns the final run totals.
    """
    # Ensure our library logs are visible in Dagster
    logging.getLogger("price_pipeline").setLevel(logging.INFO)
    logging.getLogger("price_pipeline.refresh").setLevel(logging.INFO)
    logging.getLogger("price_pipeline.scheduler").setLevel(logging.INFO)

    if not init_database():
        context.log.warning("Schema check skipped: database unavailable")

    cfg = context.op_config
    plan = prepare_refresh(
        mode=cfg["mode"],
        full_backfill=cfg["full_backfill"],
        client_id=cfg["client_id"],
        resume_job_id=cfg["resume_job_id"],
    )
    context.log.info(
        f"Refresh job {plan.job_id}: {plan.total_instruments} instruments in "
        f"{plan.total_batches} batches (starting at batch {plan.start_batch})"
    )

    state = run_refresh_job(plan)
    totals = {
        "job_id": plan.job_id,
        "state": state.state,
        "processed": state.processed,
        "succeeded": state.succeeded,
        "no_data": state.no_data,
        "failed": state.failed,
        "records_stored": state.records_stored,
        "records_inserted": state.records_inserted,
    }
    context.add_output_metadata({**totals, "errors": [e["isin"] for e in state.errors]})
    if state.errors:
        context.log.warning(f"First failures: {state.errors}")
    if state.state == "failed":
        raise RuntimeError(f"Refresh job {plan.job_id} failed; see logs")
    context.log.info(f"Refresh job {plan.job_id} finished: {totals}")
    return totals
