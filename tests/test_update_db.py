import unittest
from datetime import date
from unittest.mock import patch

import psycopg2

from price_pipeline.update_db import (
    PRICE_COLUMNS,
    UPSERT_QUERY,
    apply_recent_fundamentals,
    normalize_record,
    store_price_records,
    upsert_price_record,
    upsert_price_records,
)

MASTER = {"isin": "INE000A01001", "stock_name": "Alpha Industries", "symbol": "ALPHA", "exchange": "NSE"}


class RecordingCursor:
    """Cursor double: answers the upsert with a scripted ``inserted`` flag."""

    def __init__(self, inserted_flags=(), fail_on=None, rowcount=0):
        self.statements = []
        self.queries = []
        self.rowcount = rowcount
        self._flags = list(inserted_flags)
        self._fail_on = fail_on or set()
        self._last = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.queries.append((sql, params))
        self.statements.append(sql.strip().split()[0] if "SAVEPOINT" not in sql else sql.strip())
        if sql is UPSERT_QUERY:
            if params[1] in self._fail_on:
                raise psycopg2.DataError("numeric field overflow")
            self._last = (self._flags.pop(0) if self._flags else True,)

    def fetchone(self):
        return self._last


class DummyConn:
    def __init__(self, cursor):
        self._cursor = cursor
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self):
        return self._cursor

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


class TestNormalize(unittest.TestCase):
    def test_normalize_fills_every_column(self):
        bar = {"date": date(2025, 1, 2), "open": 1.0, "high": 2.0, "low": 0.5, "close": 1.5, "volume": 10}
        rec = normalize_record("INE000A01001", MASTER, bar, "yahoo")
        self.assertEqual(rec["trade_date"], date(2025, 1, 2))
        self.assertEqual(rec["symbol"], "ALPHA")
        self.assertEqual(rec["source"], "yahoo")
        self.assertEqual(rec["current_price"], 1.5)
        for key in PRICE_COLUMNS:
            self.assertIn(key, rec)
        self.assertIsNone(rec["trailing_pe"])

    def test_normalize_overrides_and_carry_forward(self):
        bar = {"date": "2025-01-02T00:00:00", "close": 5.0, "trailing_pe": None}
        rec = normalize_record(
            "INE000A01001", MASTER, bar, "yahoo", symbol="ALPHA", exchange="BSE",
            carry_forward={"trailing_pe": 19.0, "market_cap": 7},
        )
        self.assertEqual(rec["exchange"], "BSE")
        self.assertEqual(rec["trade_date"], date(2025, 1, 2))
        self.assertEqual(rec["trailing_pe"], 19.0)
        self.assertEqual(rec["market_cap"], 7)


class TestUpsert(unittest.TestCase):
    def test_upsert_query_never_blanks_stored_values(self):
        self.assertIn("ON CONFLICT (isin, trade_date) DO UPDATE", UPSERT_QUERY)
        self.assertIn("close_price = COALESCE(EXCLUDED.close_price, daily_prices.close_price)", UPSERT_QUERY)
        self.assertIn("volume = COALESCE(EXCLUDED.volume, daily_prices.volume)", UPSERT_QUERY)
        self.assertIn("RETURNING (xmax = 0)", UPSERT_QUERY)

    def test_upsert_requires_key(self):
        cur = RecordingCursor()
        with self.assertRaises(ValueError):
            upsert_price_record(cur, {"isin": "X", "trade_date": None})

    def test_upsert_many_counts_and_isolates_bad_rows(self):
        records = [
            normalize_record("I1", MASTER, {"date": date(2025, 1, d), "close": 1.0}, "yahoo")
            for d in (1, 2, 3)
        ]
        records.append({"isin": "I1", "trade_date": None})
        cur = RecordingCursor(inserted_flags=[True, False], fail_on={date(2025, 1, 3)})
        summary = upsert_price_records(cur, records)
        self.assertEqual((summary.inserted, summary.updated, summary.skipped), (1, 1, 2))
        self.assertEqual(summary.stored, 2)
        self.assertEqual(cur.statements.count("ROLLBACK TO SAVEPOINT price_row;"), 2)

    @patch("price_pipeline.update_db.connect_to_db")
    def test_store_commits(self, mock_conn):
        conn = DummyConn(RecordingCursor(inserted_flags=[True]))
        mock_conn.return_value = conn
        rec = normalize_record("I1", MASTER, {"date": date(2025, 1, 1), "close": 1.0}, "nse")
        summary = store_price_records([rec])
        self.assertEqual(summary.inserted, 1)
        self.assertTrue(conn.committed)
        self.assertTrue(conn.closed)

    def test_recent_fundamentals_only_write_known_values(self):
        cur = RecordingCursor(rowcount=40)
        since = date(2024, 12, 14)
        latest = {"trailing_pe": 18.0, "market_cap": None, "close": 9.0, "fifty_two_week_high": 12.0}
        self.assertEqual(apply_recent_fundamentals(cur, "I1", latest, since), 40)
        sql, params = cur.queries[-1]
        self.assertIn("fifty_two_week_high=%s, trailing_pe=%s", sql)
        self.assertIn("trade_date >= %s", sql)
        self.assertIn("IS DISTINCT FROM", sql)
        self.assertNotIn("market_cap", sql)
        self.assertNotIn("close_price", sql)
        self.assertEqual(params, (12.0, 18.0, "I1", since, 12.0, 18.0))

        empty = RecordingCursor()
        self.assertEqual(apply_recent_fundamentals(empty, "I1", {"close": 9.0}, since), 0)
        self.assertEqual(empty.queries, [])

    @patch("price_pipeline.update_db.connect_to_db")
    def test_store_spreads_fundamentals_in_same_transaction(self, mock_conn):
        cur = RecordingCursor(inserted_flags=[False], rowcount=7)
        conn = DummyConn(cur)
        mock_conn.return_value = conn
        bar = {"date": date(2025, 3, 14), "close": 1.0, "trailing_pe": 18.0}
        rec = normalize_record("I1", MASTER, bar, "yahoo")
        summary = store_price_records([rec], fundamentals_since=date(2024, 12, 14))
        self.assertEqual((summary.updated, summary.fundamentals_spread), (1, 7))
        self.assertTrue(cur.queries[-1][0].strip().startswith("UPDATE daily_prices"))
        self.assertTrue(conn.committed)

    @patch("price_pipeline.update_db.connect_to_db", return_value=None)
    def test_store_without_db_raises(self, _conn):
        with self.assertRaises(ConnectionError):
            store_price_records([{"isin": "I1", "trade_date": date(2025, 1, 1)}])
        self.assertEqual(store_price_records([]).stored, 0)


if __name__ == "__main__":
    unittest.main()
