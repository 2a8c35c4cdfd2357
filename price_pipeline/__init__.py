"""Price refresh pipeline package.

Contains modules to fetch daily prices from the NSE and Yahoo Finance
providers, persist them to PostgreSQL, and run paced, resumable refresh jobs
triggered over HTTP or by Dagster.
"""

__all__ = [
    "fetch_data",
    "fetch_from_db",
    "refresh",
    "scheduler",
]
