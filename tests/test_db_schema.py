import unittest
from unittest.mock import MagicMock, patch

from price_pipeline.db_init import init_database
from price_pipeline.db_schema import (
    create_all_tables,
    create_daily_prices_table,
    create_holdings_table,
    create_instrument_master_table,
    create_refresh_jobs_table,
)
from price_pipeline.fetch_from_db import connect_to_db


class TestDBSchema(unittest.TestCase):
    def setUp(self):
        self.conn = connect_to_db()
        if self.conn is None:
            self.skipTest("PostgreSQL not available; skipping schema tests")

    def tearDown(self):
        if self.conn:
            self.conn.close()

    def test_schema_creation_idempotent(self):
        with self.conn.cursor() as cursor:
            create_all_tables(cursor)
        self.conn.commit()
        # Run again to ensure idempotency
        with self.conn.cursor() as cursor:
            create_instrument_master_table(cursor)
            create_holdings_table(cursor)
            create_daily_prices_table(cursor)
            create_refresh_jobs_table(cursor)
        self.conn.commit()

    def test_daily_prices_unique_key_exists(self):
        with self.conn.cursor() as cursor:
            create_all_tables(cursor)
            cursor.execute(
                """
                SELECT COUNT(*) FROM pg_indexes
                WHERE tablename = 'daily_prices' AND indexdef ILIKE '%%UNIQUE%%(isin, trade_date)%%';
                """
            )
            self.assertEqual(cursor.fetchone()[0], 1)
        self.conn.commit()


class TestInitDatabase(unittest.TestCase):
    @patch("price_pipeline.db_init.connect_to_db", return_value=None)
    def test_no_database(self, _conn):
        self.assertFalse(init_database())

    @patch("price_pipeline.db_init.list_stale_jobs")
    @patch("price_pipeline.db_init.list_instrument_isins", return_value=["A", "B"])
    @patch("price_pipeline.db_init.create_all_tables")
    @patch("price_pipeline.db_init.connect_to_db")
    def test_reports_unfinished_jobs(self, mock_conn, mock_create, _isins, mock_stale):
        conn = MagicMock()
        mock_conn.return_value = conn
        mock_stale.return_value = [
            {"job_id": "j1", "state": "paused", "last_completed_batch": 4, "total_batches": 11},
        ]
        with self.assertLogs("price_pipeline.db_init", level="WARNING") as logs:
            self.assertTrue(init_database())
        self.assertIn("job=j1", logs.output[0])
        mock_create.assert_called_once()
        self.assertEqual(mock_stale.call_args[0][1], 0)
        self.assertTrue(mock_stale.call_args[1]["include_queued"])
        conn.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
