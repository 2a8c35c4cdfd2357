from dagster import Definitions, load_assets_from_modules

from . import assets
from .schedules import daily_price_refresh_schedule, daily_price_refresh_job
from .sensors import stalled_refresh_sensor

all_assets = load_assets_from_modules([assets])

defs = Definitions(
    assets=all_assets,
    jobs=[daily_price_refresh_job],
    schedules=[daily_price_refresh_schedule],
    sensors=[stalled_refresh_sensor],
)
