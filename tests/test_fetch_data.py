import time
import unittest
from datetime import date, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from zoneinfo import ZoneInfo

import requests

import price_pipeline.fetch_data as fd
from price_pipeline.fetch_data import (
    ProviderError,
    ProviderTimeout,
    RateLimitError,
    fetch_current_price_bounded,
    fetch_current_price_nse,
    fetch_fundamentals_yahoo,
    fetch_history_yahoo,
    full_range_window,
    parse_chart_payload,
    parse_nse_quote,
    parse_quote_summary,
    short_range_window,
    yahoo_symbol,
)

IST = ZoneInfo("Asia/Kolkata")


def _resp(status=200, payload=None, cookies=None):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = payload
    r.cookies = cookies or []
    return r


def _ts(day: date) -> int:
    return int(datetime(day.year, day.month, day.day, 9, 15, tzinfo=IST).timestamp())


def _chart(days, closes, volumes=None, opens=None):
    return {
        "chart": {
            "result": [{
                "timestamp": [_ts(d) for d in days],
                "indicators": {"quote": [{
                    "open": opens or list(closes),
                    "high": list(closes),
                    "low": list(closes),
                    "close": list(closes),
                    "volume": volumes or [1000] * len(closes),
                }]},
            }],
            "error": None,
        }
    }


class TestWindows(unittest.TestCase):
    def test_full_range_window(self):
        today = date(2025, 1, 10)
        start, end = full_range_window(today, 5)
        self.assertEqual(end, today)
        self.assertEqual(start, today - timedelta(days=5 * 365))

    def test_short_range_window_covers_three_days(self):
        start, end = short_range_window(date(2025, 1, 10), 3)
        self.assertEqual((start, end), (date(2025, 1, 8), date(2025, 1, 10)))

    def test_yahoo_symbol_suffix(self):
        self.assertEqual(yahoo_symbol("INFY", "NSE"), "INFY.NS")
        self.assertEqual(yahoo_symbol("INFY", "bse"), "INFY.BO")
        self.assertEqual(yahoo_symbol("INFY", None), "INFY.NS")


class TestPrimaryAdapter(unittest.TestCase):
    def setUp(self):
        fd._nse_cookie_cache = None

    def test_parse_nse_quote_price_preference(self):
        q = parse_nse_quote("ABC", {"priceInfo": {"lastPrice": 0, "close": 101.5, "vwap": 100.0}})
        self.assertEqual(q.price, 101.5)
        q = parse_nse_quote("ABC", {"priceInfo": {"lastPrice": 102.0, "close": 101.5}})
        self.assertEqual(q.price, 102.0)
        self.assertIsNone(parse_nse_quote("ABC", {"priceInfo": {}}))

    def test_parse_nse_quote_metadata(self):
        payload = {
            "priceInfo": {"lastPrice": 10.0},
            "info": {"industry": "Software"},
            "metadata": {"pdSectorInd": "IT", "pdSectorPe": 28.1, "pdSymbolPe": 24.0,
                         "lastUpdateTime": "04-Nov-2025 16:00:00"},
        }
        q = parse_nse_quote("ABC", payload)
        self.assertEqual(q.profile_fields(), {
            "industry": "Software", "sector": "IT", "sector_pe": 28.1, "symbol_pe": 24.0,
        })
        self.assertEqual(q.as_of, datetime(2025, 11, 4, 16, 0, 0))

    @patch("price_pipeline.fetch_data._get_nse_session_cookies", return_value="nsit=x")
    @patch("price_pipeline.fetch_data.requests.get")
    def test_fetch_current_price_ok(self, mock_get, _cookies):
        mock_get.return_value = _resp(200, {"priceInfo": {"lastPrice": 1520.25}})
        q = fetch_current_price_nse("INFY", timeout=1)
        self.assertEqual(q.price, 1520.25)
        _, kwargs = mock_get.call_args
        self.assertEqual(kwargs["params"], {"symbol": "INFY"})
        self.assertEqual(kwargs["headers"]["Cookie"], "nsit=x")

    @patch("price_pipeline.fetch_data._get_nse_session_cookies", return_value="")
    @patch("price_pipeline.fetch_data.requests.get")
    def test_fetch_current_price_errors(self, mock_get, _cookies):
        mock_get.return_value = _resp(429)
        with self.assertRaises(RateLimitError):
            fetch_current_price_nse("INFY", timeout=1)
        mock_get.return_value = _resp(500)
        with self.assertRaises(ProviderError):
            fetch_current_price_nse("INFY", timeout=1)
        mock_get.return_value = _resp(200, {"priceInfo": {}})
        with self.assertRaises(ProviderError):
            fetch_current_price_nse("INFY", timeout=1)
        mock_get.side_effect = requests.Timeout("slow")
        with self.assertRaises(ProviderTimeout):
            fetch_current_price_nse("INFY", timeout=1)

    @patch("price_pipeline.fetch_data._get_nse_session_cookies", return_value="")
    @patch("price_pipeline.fetch_data.requests.get")
    def test_forbidden_drops_cookie_cache(self, mock_get, _cookies):
        fd._nse_cookie_cache = {"cookies": "a=b", "timestamp": time.time()}
        mock_get.return_value = _resp(403)
        with self.assertRaises(ProviderError):
            fetch_current_price_nse("INFY", timeout=1)
        self.assertIsNone(fd._nse_cookie_cache)

    @patch("price_pipeline.fetch_data.requests.get")
    def test_session_cookies_are_cached(self, mock_get):
        mock_get.return_value = _resp(200, cookies=[SimpleNamespace(name="nsit", value="abc")])
        self.assertEqual(fd._get_nse_session_cookies(1), "nsit=abc")
        self.assertEqual(fd._get_nse_session_cookies(1), "nsit=abc")
        self.assertEqual(mock_get.call_count, 1)

    @patch("price_pipeline.fetch_data.requests.get")
    def test_cookie_warmup_does_not_hold_lock(self, mock_get):
        lock_free = []

        def home_page(*args, **kwargs):
            acquired = fd._nse_cookie_lock.acquire(blocking=False)
            lock_free.append(acquired)
            if acquired:
                fd._nse_cookie_lock.release()
            return _resp(200, cookies=[SimpleNamespace(name="nsit", value="abc")])

        mock_get.side_effect = home_page
        self.assertEqual(fd._get_nse_session_cookies(1), "nsit=abc")
        self.assertEqual(lock_free, [True])
        self.assertEqual(fd._nse_cookie_cache["cookies"], "nsit=abc")

    def test_bounded_call_times_out(self):
        def slow(symbol, timeout):
            time.sleep(0.5)
            return None

        with patch("price_pipeline.fetch_data.fetch_current_price_nse", side_effect=slow):
            t0 = time.monotonic()
            with self.assertRaises(ProviderTimeout):
                fetch_current_price_bounded("INFY", bound_seconds=0.05)
            self.assertLess(time.monotonic() - t0, 0.4)


class TestSecondaryAdapter(unittest.TestCase):
    def test_parse_chart_skips_bad_bars_and_defaults_open(self):
        days = [date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3)]
        payload = _chart(days, [100.0, None, 102.0], opens=[None, None, 101.0])
        bars = parse_chart_payload(payload, today=date(2025, 1, 3), tz=IST)
        self.assertEqual([b["date"] for b in bars], [date(2025, 1, 1), date(2025, 1, 3)])
        self.assertEqual(bars[0]["open"], 100.0)
        self.assertEqual(bars[1]["open"], 101.0)
        self.assertEqual(bars[0]["fifty_two_week_high"], 102.0)
        self.assertEqual(bars[0]["fifty_two_week_low"], 100.0)
        self.assertEqual(bars[0]["average_volume"], 1000)

    def test_parse_chart_ratios_on_latest_bar_only(self):
        days = [date(2025, 1, 1), date(2025, 1, 2)]
        fundamentals = {"trailing_pe": 22.5, "market_cap": 1e12, "fifty_two_week_high": 150.0}
        bars = parse_chart_payload(_chart(days, [100.0, 101.0]), fundamentals, today=date(2025, 1, 2), tz=IST)
        self.assertNotIn("trailing_pe", bars[0])
        self.assertEqual(bars[1]["trailing_pe"], 22.5)
        self.assertEqual(bars[1]["market_cap"], 1e12)
        self.assertEqual(bars[0]["fifty_two_week_high"], 150.0)

    def test_parse_chart_empty_and_malformed(self):
        self.assertEqual(parse_chart_payload({"chart": {"result": [], "error": None}}, tz=IST), [])
        not_found = {"chart": {"result": None, "error": {"code": "Not Found", "description": "x"}}}
        self.assertEqual(parse_chart_payload(not_found, tz=IST), [])
        with self.assertRaises(ProviderError):
            parse_chart_payload({"unexpected": True}, tz=IST)
        with self.assertRaises(ProviderError):
            parse_chart_payload({"chart": {"result": None, "error": {"code": "Internal"}}}, tz=IST)

    @patch("price_pipeline.fetch_data.fetch_fundamentals_yahoo", return_value={"trailing_pe": 18.0})
    @patch("price_pipeline.fetch_data.requests.get")
    def test_fetch_history_ok(self, mock_get, mock_fund):
        days = [date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3)]
        mock_get.return_value = _resp(200, _chart(days, [10.0, 11.0, 12.0]))
        bars = fetch_history_yahoo("ABC", "NSE", days[0], days[-1], timeout=1)
        self.assertEqual(len(bars), 3)
        self.assertEqual(bars[-1]["trailing_pe"], 18.0)
        self.assertIn("ABC.NS", mock_get.call_args[0][0])
        mock_fund.assert_called_once()

    @patch("price_pipeline.fetch_data.fetch_fundamentals_yahoo")
    @patch("price_pipeline.fetch_data.requests.get")
    def test_fetch_history_status_handling(self, mock_get, mock_fund):
        start, end = date(2025, 1, 1), date(2025, 1, 3)
        mock_get.return_value = _resp(404)
        self.assertEqual(fetch_history_yahoo("ABC", "BSE", start, end, timeout=1), [])
        mock_get.return_value = _resp(200, {"chart": {"result": [], "error": None}})
        self.assertEqual(fetch_history_yahoo("ABC", "NSE", start, end, timeout=1), [])
        mock_fund.assert_not_called()
        mock_get.return_value = _resp(429)
        with self.assertRaises(RateLimitError):
            fetch_history_yahoo("ABC", "NSE", start, end, timeout=1)
        mock_get.return_value = _resp(502)
        with self.assertRaises(ProviderError):
            fetch_history_yahoo("ABC", "NSE", start, end, timeout=1)
        bad = _resp(200)
        bad.json.side_effect = ValueError("no json")
        mock_get.return_value = bad
        with self.assertRaises(ProviderError):
            fetch_history_yahoo("ABC", "NSE", start, end, timeout=1)

    def test_parse_quote_summary(self):
        payload = {"quoteSummary": {"result": [{
            "defaultKeyStatistics": {"trailingPE": {"raw": 21.3, "fmt": "21.30"}, "priceToBook": {"raw": 3.2}},
            "summaryDetail": {"dividendYield": {"raw": 0.012}},
            "price": {"marketCap": {"raw": 5000000}},
            "summaryProfile": {"sector": "Energy"},
        }]}}
        data = parse_quote_summary(payload)
        self.assertEqual(data["trailing_pe"], 21.3)
        self.assertEqual(data["price_to_book"], 3.2)
        self.assertEqual(data["market_cap"], 5000000)
        self.assertEqual(data["sector"], "Energy")
        self.assertNotIn("forward_pe", data)
        self.assertEqual(parse_quote_summary({"quoteSummary": {"result": []}}), {})

    @patch("price_pipeline.fetch_data.requests.get")
    def test_fundamentals_fall_back_to_second_host(self, mock_get):
        ok = {"quoteSummary": {"result": [{"defaultKeyStatistics": {"forwardPE": {"raw": 15.0}}}]}}
        mock_get.side_effect = [_resp(401), _resp(200, ok)]
        self.assertEqual(fetch_fundamentals_yahoo("ABC", "NSE", timeout=1), {"forward_pe": 15.0})
        self.assertEqual(mock_get.call_count, 2)

    @patch("price_pipeline.fetch_data.requests.get", side_effect=requests.ConnectionError("down"))
    def test_fundamentals_best_effort(self, _get):
        self.assertEqual(fetch_fundamentals_yahoo("ABC", "NSE", timeout=1), {})


if __name__ == "__main__":
    unittest.main()
