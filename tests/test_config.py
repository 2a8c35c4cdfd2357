import os
import unittest
from unittest.mock import patch

from price_pipeline.config import RefreshSettings, _env, check_refresh_settings, get_db_settings, get_refresh_settings


class TestConfig(unittest.TestCase):
    def test_env_sanitization(self):
        with patch.dict(os.environ, {"TEST_QUOTED": '  " value "  '}):
            self.assertEqual(_env("TEST_QUOTED"), "value")
        self.assertEqual(_env("MISSING_VAR_FOR_TEST", "default"), "default")

    def test_db_password_alias(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "secret"}):
            os.environ.pop("DB_PASS", None)
            self.assertEqual(get_db_settings().password, "secret")

    def test_refresh_defaults(self):
        names = [
            "REFRESH_BATCH_SIZE", "REFRESH_PAUSE_SECONDS", "COMPLETENESS_THRESHOLD",
            "COMPLETENESS_MODE", "ERROR_LIST_CAP", "RETENTION_YEARS", "MARKET_TIMEZONE",
        ]
        with patch.dict(os.environ, {}, clear=False):
            for name in names:
                os.environ.pop(name, None)
            s = get_refresh_settings()
        self.assertEqual(s.batch_size, 250)
        self.assertEqual(s.pause_seconds, 600.0)
        self.assertEqual(s.completeness_threshold, 1000)
        self.assertEqual(s.completeness_mode, "count")
        self.assertEqual(s.error_list_cap, 10)
        self.assertEqual(s.retention_years, 2)
        self.assertEqual(s.market_timezone, "Asia/Kolkata")

    def test_refresh_overrides_and_bad_values(self):
        env = {
            "REFRESH_BATCH_SIZE": "100",
            "REFRESH_PAUSE_SECONDS": "not-a-number",
            "COMPLETENESS_MODE": "Coverage",
            "RETENTION_SWEEP_ENABLED": "false",
            "BATCH_CONCURRENCY": "0",
        }
        with patch.dict(os.environ, env):
            s = get_refresh_settings()
        self.assertEqual(s.batch_size, 100)
        self.assertEqual(s.pause_seconds, 600.0)
        self.assertEqual(s.completeness_mode, "coverage")
        self.assertFalse(s.retention_sweep_enabled)
        self.assertEqual(s.concurrency, 1)

    def test_unknown_completeness_mode_falls_back(self):
        with patch.dict(os.environ, {"COMPLETENESS_MODE": "dates"}):
            self.assertEqual(get_refresh_settings().completeness_mode, "count")

    def test_unreachable_count_threshold_is_reported(self):
        with self.assertLogs("price_pipeline.config", level="WARNING"):
            problems = check_refresh_settings(RefreshSettings())
        self.assertEqual(len(problems), 1)
        self.assertIn("COMPLETENESS_MODE=coverage", problems[0])
        self.assertEqual(check_refresh_settings(RefreshSettings(completeness_mode="coverage")), [])
        self.assertEqual(check_refresh_settings(RefreshSettings(retention_sweep_enabled=False)), [])
        self.assertEqual(check_refresh_settings(RefreshSettings(completeness_threshold=400)), [])


if __name__ == "__main__":
    unittest.main()
