from dagster import define_asset_job, schedule, DefaultScheduleStatus

from price_pipeline.config import get_refresh_settings

from . import assets


daily_price_refresh_job = define_asset_job(
    name="daily_price_refresh_job",
    selection=[assets.refresh_price_history],
)


def _run_config(mode="all", full_backfill=False, client_id=None, resume_job_id=None):
    return {
        "ops": {
            "refresh_price_history": {
                "config": {
                    "mode": mode,
                    "full_backfill": full_backfill,
                    "client_id": client_id,
                    "resume_job_id": resume_job_id,
                }
            }
        }
    }


# Daily full-universe run after the market has closed
@schedule(
    cron_schedule="35 23 * * *",
    job=daily_price_refresh_job,
    execution_timezone=get_refresh_settings().market_timezone,
    default_status=DefaultScheduleStatus.RUNNING,
)
def daily_price_refresh_schedule(context):
    return _run_config(mode="all")
