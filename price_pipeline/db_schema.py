"""Database schema creation helpers.

This module contains idempotent functions that ensure required tables and
indexes exist. These functions accept a live psycopg2 cursor and perform DDL
statements. They are safe to call repeatedly and on every startup.

``instrument_master`` and ``holdings`` are owned by the import process; they
are created here only so a fresh database (and the test suite) can run the
pipeline end to end.
"""

import logging
import psycopg2

logger = logging.getLogger(__name__)


def create_instrument_master_table(cursor) -> None:
    """Ensure the ``instrument_master`` table exists.

    Parameters
    ----------
    cursor : psycopg2.extensions.cursor
        Open cursor bound to an active connection/transaction.
    """
    query = """
    CREATE TABLE IF NOT EXISTS instrument_master (
        isin VARCHAR(20) PRIMARY KEY,
        stock_name VARCHAR(255) NOT NULL,
        symbol VARCHAR(50),
        exchange VARCHAR(10),
        sector VARCHAR(255),
        industry VARCHAR(255),
        sector_pe NUMERIC(14, 4),
        symbol_pe NUMERIC(14, 4),
        last_updated TIMESTAMPTZ DEFAULT NOW()
    );
    """
    try:
        cursor.execute(query)
        logger.info("[db-schema] ensured table instrument_master")
    except psycopg2.Error as e:
        logger.error("[db-schema] error creating instrument_master table: %s", e)


def create_holdings_table(cursor) -> None:
    """Ensure the ``holdings`` table exists (one row per client per ISIN).

    Parameters
    ----------
    cursor : psycopg2.extensions.cursor
        Open cursor bound to an active connection/transaction.
    """
    query = """
    CREATE TABLE IF NOT EXISTS holdings (
        id SERIAL PRIMARY KEY,
        client_id VARCHAR(50) NOT NULL,
        isin VARCHAR(20) NOT NULL,
        stock_name VARCHAR(255),
        open_qty NUMERIC(18, 4),
        last_updated TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (client_id, isin)
    );
    """
    try:
        cursor.execute(query)
        logger.info("[db-schema] ensured table holdings")
    except psycopg2.Error as e:
        logger.error("[db-schema] error creating holdings table: %s", e)


def create_daily_prices_table(cursor) -> None:
    """Ensure the ``daily_prices`` table and its indexes exist.

    The ``UNIQUE (isin, trade_date)`` constraint is what makes repeated and
    overlapping fetches safe to re-run.

    Parameters
    ----------
    cursor : psycopg2.extensions.cursor
        Open cursor bound to an active connection/transaction.
    """
    create_table_query = """
    CREATE TABLE IF NOT EXISTS daily_prices (
        id BIGSERIAL PRIMARY KEY,
        isin VARCHAR(20) NOT NULL,
        stock_name VARCHAR(255),
        symbol VARCHAR(50),
        exchange VARCHAR(10),
        trade_date DATE NOT NULL,
        open_price NUMERIC(14, 4),
        high_price NUMERIC(14, 4),
        low_price NUMERIC(14, 4),
        close_price NUMERIC(14, 4),
        volume BIGINT,
        current_price NUMERIC(14, 4),
        fifty_two_week_high NUMERIC(14, 4),
        fifty_two_week_low NUMERIC(14, 4),
        average_volume NUMERIC(20, 2),
        regular_market_volume BIGINT,
        trailing_pe NUMERIC(14, 4),
        forward_pe NUMERIC(14, 4),
        price_to_book NUMERIC(14, 4),
        market_cap NUMERIC(24, 2),
        dividend_yield NUMERIC(10, 6),
        source VARCHAR(20),
        last_fetched TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (isin, trade_date)
    );
    """
    try:
        cursor.execute(create_table_query)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS daily_prices_trade_date_idx ON daily_prices (trade_date);"
        )
        logger.info("[db-schema] ensured table daily_prices")
    except psycopg2.Error as e:
        logger.error("[db-schema] error creating daily_prices table: %s", e)


def create_refresh_jobs_table(cursor) -> None:
    """Ensure the ``refresh_jobs`` status table exists.

    One row per triggered run: state, pacing, checkpoint and aggregate counts.

    Parameters
    ----------
    cursor : psycopg2.extensions.cursor
        Open cursor bound to an active connection/transaction.
    """
    try:
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS refresh_jobs (
                job_id VARCHAR(36) PRIMARY KEY,
                state VARCHAR(20) NOT NULL,
                mode VARCHAR(20) NOT NULL,
                full_backfill BOOLEAN DEFAULT FALSE,
                client_id VARCHAR(50),
                total_instruments INT DEFAULT 0,
                batch_size INT DEFAULT 0,
                total_batches INT DEFAULT 0,
                pause_seconds NUMERIC(10, 2) DEFAULT 0,
                last_completed_batch INT DEFAULT -1,
                processed INT DEFAULT 0,
                succeeded INT DEFAULT 0,
                failed INT DEFAULT 0,
                no_data INT DEFAULT 0,
                records_stored INT DEFAULT 0,
                records_inserted INT DEFAULT 0,
                errors JSONB,
                resumed_from VARCHAR(36),
                cancel_requested BOOLEAN DEFAULT FALSE,
                started_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                finished_at TIMESTAMPTZ
            );
            """
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS refresh_jobs_started_at_idx ON refresh_jobs (started_at DESC);"
        )
        logger.info("[db-schema] ensured table refresh_jobs")
    except psycopg2.Error as e:
        logger.error("[db-schema] error creating refresh_jobs table: %s", e)


def create_all_tables(cursor) -> None:
    """Ensure every table used by the pipeline exists."""
    create_instrument_master_table(cursor)
    create_holdings_table(cursor)
    create_daily_prices_table(cursor)
    create_refresh_jobs_table(cursor)
