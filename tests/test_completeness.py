import unittest
from dataclasses import replace
from datetime import date
from unittest.mock import patch

from price_pipeline.completeness import (
    classify_instruments,
    expected_coverage_start,
    has_complete_history,
    is_complete_count,
)
from price_pipeline.config import RefreshSettings

SETTINGS = RefreshSettings()


class TestCompleteness(unittest.TestCase):
    def test_threshold_boundary(self):
        self.assertFalse(is_complete_count(999, 1000))
        self.assertTrue(is_complete_count(1000, 1000))
        self.assertTrue(is_complete_count(1250, 1000))

    @patch("price_pipeline.completeness.count_price_records", return_value=1000)
    def test_has_complete_history_count_mode(self, _count):
        self.assertTrue(has_complete_history(object(), "I1", settings=SETTINGS))

    @patch("price_pipeline.completeness.count_price_records_bulk")
    def test_classify_preserves_order(self, mock_bulk):
        mock_bulk.return_value = {"A": 1200, "B": 0, "C": 999, "D": 1000}
        complete, incomplete = classify_instruments(object(), ["A", "B", "C", "D", "A"], settings=SETTINGS)
        self.assertEqual(complete, ["A", "D"])
        self.assertEqual(incomplete, ["B", "C"])

    @patch("price_pipeline.completeness.count_price_records_bulk")
    def test_classification_is_monotone_in_count(self, mock_bulk):
        # more stored rows never turns a complete instrument incomplete
        for n in (0, 500, 999, 1000, 1001, 5000):
            mock_bulk.return_value = {"A": n}
            complete, _ = classify_instruments(object(), ["A"], settings=SETTINGS)
            if n >= 1000:
                self.assertEqual(complete, ["A"])

    def test_expected_coverage_start_clipped_by_retention(self):
        today = date(2025, 6, 30)
        self.assertEqual(expected_coverage_start(today, SETTINGS), date(2023, 6, 30))
        no_sweep = replace(SETTINGS, retention_sweep_enabled=False)
        self.assertEqual(expected_coverage_start(today, no_sweep), date(2020, 7, 1))

    @patch("price_pipeline.completeness.get_earliest_trade_dates")
    def test_coverage_mode(self, mock_earliest):
        settings = replace(SETTINGS, completeness_mode="coverage")
        mock_earliest.return_value = {"OLD": date(2023, 7, 3), "NEW": date(2025, 1, 2)}
        complete, incomplete = classify_instruments(
            object(), ["OLD", "NEW", "NONE"], today=date(2025, 6, 30), settings=settings,
        )
        self.assertEqual(complete, ["OLD"])
        self.assertEqual(incomplete, ["NEW", "NONE"])


if __name__ == "__main__":
    unittest.main()
