"""Provider adapters for the refresh pipeline.

Responsibilities
- Primary source: NSE ``quote-equity`` lookup by symbol. Session based (the
  NSE home page hands out cookies that the API requires), returns a single
  current price point plus slow-moving sector/PE metadata. Bounded to a few
  seconds so a hang cannot stall a batch.
- Secondary source: Yahoo Finance ``v8/finance/chart`` range query by symbol
  and exchange suffix (``.NS``/``.BO``), returning daily OHLCV bars, enriched
  with best-effort fundamentals from ``quoteSummary``.
- Date window helpers for full-range backfill and short-range refresh.

Notes
- Adapters never retry; the caller decides whether to fall through to the
  other source. Transient failures raise :class:`ProviderError`; a
  well-formed empty response is returned as an empty list (no-data).
- Tests mock ``requests.get``.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote
from zoneinfo import ZoneInfo

import requests

from .config import get_refresh_settings

logger = logging.getLogger(__name__)

NSE_HOME_URL = "https://www.nseindia.com"
NSE_QUOTE_URL = "https://www.nseindia.com/api/quote-equity"
YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
YAHOO_SUMMARY_URLS = (
    "https://query2.finance.yahoo.com/v10/finance/quoteSummary/{symbol}",
    "https://query1.finance.yahoo.com/v10/finance/quoteSummary/{symbol}",
)
YAHOO_SUMMARY_MODULES = "summaryProfile,defaultKeyStatistics,price,summaryDetail"

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class ProviderError(Exception):
    """Transient provider failure (HTTP error, malformed payload, network)."""


class ProviderTimeout(ProviderError):
    """The provider did not answer within the call bound."""


class RateLimitError(ProviderError):
    """The provider answered HTTP 429."""


@dataclass(frozen=True)
class QuoteResult:
    """Single price point from the primary source."""
    symbol: str
    price: float
    as_of: Optional[datetime] = None
    industry: Optional[str] = None
    sector: Optional[str] = None
    sector_pe: Optional[float] = None
    symbol_pe: Optional[float] = None

    def profile_fields(self) -> Dict[str, Any]:
        """Instrument master fields carried by the quote (``None`` when absent)."""
        return {
            "industry": self.industry,
            "sector": self.sector,
            "sector_pe": self.sector_pe,
            "symbol_pe": self.symbol_pe,
        }


# --- date windows ---

def full_range_window(today: date, years: Optional[int] = None) -> Tuple[date, date]:
    """Return the (start, end) window for a first backfill (~``years`` years)."""
    if years is None:
        years = get_refresh_settings().backfill_years
    return today - timedelta(days=365 * years), today


def short_range_window(today: date, days: Optional[int] = None) -> Tuple[date, date]:
    """Return the (start, end) window for an incremental refresh.

    Covers ``days`` calendar days including today (default 3: today and the
    two previous days), deliberately overlapping the previous run so a missed
    run or a holiday does not leave a gap.
    """
    if days is None:
        days = get_refresh_settings().refresh_window_days
    return today - timedelta(days=max(1, days) - 1), today


# --- primary source (NSE) ---

_nse_cookie_cache: Optional[Dict[str, Any]] = None  # {"cookies": str, "timestamp": float}
_nse_cookie_lock = threading.Lock()

# Shared pool used only to put a hard wall-clock bound on primary calls.
_primary_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="nse-quote")


def _nse_headers(symbol: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "User-Agent": BROWSER_UA,
        "Accept": "application/json, text/plain, */*",
        "Accept-Language": "en-US,en;q=0.9",
        "Origin": NSE_HOME_URL,
        "Connection": "keep-alive",
    }
    if symbol:
        headers["Referer"] = f"{NSE_HOME_URL}/get-quotes/equity?symbol={quote(symbol)}"
    return headers


def _get_nse_session_cookies(timeout: float) -> str:
    """Return NSE session cookies, visiting the home page when the cache is stale.

    Cookies are cached process-wide for ``NSE_COOKIE_TTL_SECONDS``. Failure to
    obtain cookies is not fatal; the quote call is still attempted.

    The lock only guards reading and swapping the cache; the home page
    request runs outside it so concurrent quote calls are never serialized
    behind one slow warm-up.
    """
    global _nse_cookie_cache
    ttl = get_refresh_settings().nse_cookie_ttl_seconds
    with _nse_cookie_lock:
        cached = _nse_cookie_cache
    if cached and (time.time() - cached["timestamp"]) < ttl:
        return cached["cookies"]
    try:
        resp = requests.get(
            NSE_HOME_URL,
            headers={"User-Agent": BROWSER_UA, "Accept": "text/html,application/xhtml+xml"},
            timeout=timeout,
        )
        jar = getattr(resp, "cookies", None)
        cookies = "; ".join(f"{c.name}={c.value}" for c in jar) if jar else ""
    except requests.RequestException as e:
        logger.warning("[nse] failed to get session cookies: %s", e)
        return ""
    if not cookies:
        logger.warning("[nse] no cookies in home page response")
        return ""
    with _nse_cookie_lock:
        _nse_cookie_cache = {"cookies": cookies, "timestamp": time.time()}
    logger.info("[nse] refreshed session cookies")
    return cookies


def _positive_number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value > 0 else None


def _parse_nse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse NSE ``lastUpdateTime`` values like ``04-Nov-2025 16:00:00``."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    for fmt in ("%d-%b-%Y %H:%M:%S", "%d-%b-%Y"):
        try:
            return datetime.strptime(raw.strip(), fmt)
        except ValueError:
            continue
    return None


def parse_nse_quote(symbol: str, payload: Any) -> Optional[QuoteResult]:
    """Build a :class:`QuoteResult` from a ``quote-equity`` payload.

    Price preference is ``lastPrice`` > ``close`` > ``vwap``; the first
    positive value wins. Returns ``None`` when no usable price is present.
    """
    if not isinstance(payload, dict):
        return None
    price_info = payload.get("priceInfo") or {}
    price = None
    for key in ("lastPrice", "close", "vwap"):
        price = _positive_number(price_info.get(key))
        if price is not None:
            break
    if price is None:
        return None
    info = payload.get("info") or {}
    metadata = payload.get("metadata") or {}
    industry = info.get("industry") or metadata.get("industry")
    return QuoteResult(
        symbol=symbol,
        price=price,
        as_of=_parse_nse_timestamp(metadata.get("lastUpdateTime")),
        industry=industry or None,
        sector=metadata.get("pdSectorInd") or None,
        sector_pe=_positive_number(metadata.get("pdSectorPe")),
        symbol_pe=_positive_number(metadata.get("pdSymbolPe")),
    )


def fetch_current_price_nse(symbol: str, timeout: Optional[float] = None) -> QuoteResult:
    """Fetch the current price for an NSE ``symbol``.

    Parameters
    ----------
    symbol : str
        NSE ticker.
    timeout : Optional[float]
        Per-request socket timeout; defaults to ``PRIMARY_TIMEOUT_SECONDS``.

    Returns
    -------
    QuoteResult
        Price and metadata.

    Raises
    ------
    ProviderError
        On HTTP errors, network failures, malformed payloads or when the
        payload carries no usable price.
    """
    if not symbol:
        raise ProviderError("empty symbol")
    if timeout is None:
        timeout = get_refresh_settings().primary_timeout_seconds
    headers = _nse_headers(symbol)
    cookies = _get_nse_session_cookies(timeout)
    if cookies:
        headers["Cookie"] = cookies
    try:
        resp = requests.get(NSE_QUOTE_URL, params={"symbol": symbol}, headers=headers, timeout=timeout)
    except requests.Timeout as e:
        raise ProviderTimeout(f"NSE timeout for {symbol}") from e
    except requests.RequestException as e:
        raise ProviderError(f"NSE request error for {symbol}: {e}") from e

    status = int(getattr(resp, "status_code", 0) or 0)
    if status == 429:
        raise RateLimitError(f"NSE rate limited for {symbol}")
    if status in (401, 403):
        # cookies were rejected; drop them so the next call revisits the home page
        _invalidate_nse_cookies()
        raise ProviderError(f"NSE access denied ({status}) for {symbol}")
    if status != 200:
        raise ProviderError(f"NSE HTTP {status} for {symbol}")
    try:
        payload = resp.json()
    except ValueError as e:
        raise ProviderError(f"NSE malformed JSON for {symbol}") from e

    result = parse_nse_quote(symbol, payload)
    if result is None:
        raise ProviderError(f"NSE returned no usable price for {symbol}")
    logger.info("[nse] %s price=%.2f as_of=%s", symbol, result.price, result.as_of)
    return result


def _invalidate_nse_cookies() -> None:
    global _nse_cookie_cache
    with _nse_cookie_lock:
        _nse_cookie_cache = None


def fetch_current_price_bounded(symbol: str, bound_seconds: Optional[float] = None) -> QuoteResult:
    """Run :func:`fetch_current_price_nse` under a hard wall-clock bound.

    The socket timeout alone does not cap total time (cookie fetch plus
    quote), so the call runs on a helper pool and is abandoned once the
    bound elapses.

    Raises
    ------
    ProviderTimeout
        When the bound elapses first.
    ProviderError
        Propagated from the underlying call.
    """
    if bound_seconds is None:
        bound_seconds = get_refresh_settings().primary_timeout_seconds
    future = _primary_executor.submit(fetch_current_price_nse, symbol, bound_seconds)
    try:
        return future.result(timeout=bound_seconds)
    except FutureTimeout as e:
        future.cancel()
        raise ProviderTimeout(f"NSE call exceeded {bound_seconds}s for {symbol}") from e


# --- secondary source (Yahoo Finance) ---

def yahoo_symbol(symbol: str, exchange: Optional[str]) -> str:
    """Return the Yahoo ticker: ``.BO`` suffix for BSE, ``.NS`` otherwise."""
    suffix = "BO" if (exchange or "").upper() == "BSE" else "NS"
    return f"{symbol}.{suffix}"


def _raw(value):
    """Unwrap Yahoo's ``{"raw": x, "fmt": "..."}`` number wrappers."""
    if isinstance(value, dict):
        value = value.get("raw")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def parse_quote_summary(payload: Any) -> Dict[str, Any]:
    """Extract fundamentals from a ``quoteSummary`` payload (missing keys omitted)."""
    try:
        result = payload["quoteSummary"]["result"][0]
    except (KeyError, IndexError, TypeError):
        return {}
    if not isinstance(result, dict):
        return {}
    stats = result.get("defaultKeyStatistics") or {}
    price = result.get("price") or {}
    detail = result.get("summaryDetail") or {}
    profile = result.get("summaryProfile") or {}
    out = {
        "trailing_pe": _raw(stats.get("trailingPE")) or _raw(detail.get("trailingPE")),
        "forward_pe": _raw(stats.get("forwardPE")) or _raw(detail.get("forwardPE")),
        "price_to_book": _raw(stats.get("priceToBook")),
        "market_cap": _raw(stats.get("marketCap")) or _raw(price.get("marketCap")),
        "dividend_yield": _raw(detail.get("dividendYield")),
        "fifty_two_week_high": _raw(detail.get("fiftyTwoWeekHigh")) or _raw(price.get("fiftyTwoWeekHigh")),
        "fifty_two_week_low": _raw(detail.get("fiftyTwoWeekLow")) or _raw(price.get("fiftyTwoWeekLow")),
        "average_volume": _raw(detail.get("averageVolume")) or _raw(stats.get("averageDailyVolume10Day")),
        "regular_market_volume": _raw(price.get("regularMarketVolume")),
        "current_price": _raw(price.get("regularMarketPrice")) or _raw(price.get("preMarketPrice")),
        "sector": profile.get("sector") or None,
        "industry": profile.get("industry") or None,
    }
    return {k: v for k, v in out.items() if v is not None}


def fetch_fundamentals_yahoo(symbol: str, exchange: Optional[str], timeout: Optional[float] = None) -> Dict[str, Any]:
    """Best-effort fundamentals lookup; returns ``{}`` on any failure.

    Tries the ``query2`` host first, then ``query1`` (the former frequently
    answers 401 without a crumb).
    """
    if timeout is None:
        timeout = get_refresh_settings().secondary_timeout_seconds
    ysym = yahoo_symbol(symbol, exchange)
    headers = {
        "User-Agent": BROWSER_UA,
        "Accept": "application/json",
        "Referer": f"https://finance.yahoo.com/quote/{ysym}",
    }
    for url in YAHOO_SUMMARY_URLS:
        try:
            resp = requests.get(
                url.format(symbol=ysym),
                params={"modules": YAHOO_SUMMARY_MODULES},
                headers=headers,
                timeout=timeout,
            )
        except requests.RequestException as e:
            logger.debug("[yahoo] fundamentals request error %s: %s", ysym, e)
            continue
        if int(getattr(resp, "status_code", 0) or 0) != 200:
            logger.debug("[yahoo] fundamentals HTTP %s for %s", getattr(resp, "status_code", None), ysym)
            continue
        try:
            data = parse_quote_summary(resp.json())
        except ValueError:
            continue
        if data:
            logger.info(
                "[yahoo] fundamentals %s pe=%s mcap=%s",
                ysym, data.get("trailing_pe"), data.get("market_cap"),
            )
            return data
    return {}


def _epoch(day: date, tz: ZoneInfo) -> int:
    return int(datetime.combine(day, dtime.min, tzinfo=tz).timestamp())


def parse_chart_payload(
    payload: Any,
    fundamentals: Optional[Dict[str, Any]] = None,
    today: Optional[date] = None,
    tz: Optional[ZoneInfo] = None,
) -> List[Dict[str, Any]]:
    """Convert a ``v8/finance/chart`` payload into ordered daily bars.

    Parameters
    ----------
    payload : Any
        Decoded JSON response.
    fundamentals : Optional[dict]
        Output of :func:`fetch_fundamentals_yahoo`; point-in-time ratios
        (P/E, price-to-book, market cap, dividend yield) are attached to the
        latest bar only, range metrics to every bar.
    today : Optional[date]
        Reference day for the 52-week window.
    tz : Optional[ZoneInfo]
        Market timezone used to turn bar timestamps into trading dates.

    Returns
    -------
    list[dict]
        Bars sorted by date, one per trading date; empty for a well-formed
        response without bars.

    Raises
    ------
    ProviderError
        When the payload is not a chart response at all.
    """
    if not isinstance(payload, dict) or "chart" not in payload:
        raise ProviderError("malformed chart payload")
    chart = payload.get("chart") or {}
    results = chart.get("result") or []
    if not results:
        err = chart.get("error")
        if err and (err.get("code") or "").lower() not in ("not found", ""):
            raise ProviderError(f"chart error: {err}")
        return []
    result = results[0] or {}
    timestamps = result.get("timestamp") or []
    quotes = ((result.get("indicators") or {}).get("quote") or [{}])[0] or {}
    fundamentals = fundamentals or {}
    tz = tz or ZoneInfo(get_refresh_settings().market_timezone)
    today = today or datetime.now(tz).date()

    def _at(series: str, i: int):
        values = quotes.get(series) or []
        return values[i] if i < len(values) else None

    by_date: Dict[date, Dict[str, Any]] = {}
    for i, ts in enumerate(timestamps):
        close = _positive_number(_at("close", i))
        if close is None or ts is None:
            continue
        day = datetime.fromtimestamp(ts, tz=tz).date()
        volume = _at("volume", i)
        by_date[day] = {
            "date": day,
            "open": _positive_number(_at("open", i)) or close,
            "high": _positive_number(_at("high", i)) or close,
            "low": _positive_number(_at("low", i)) or close,
            "close": close,
            "volume": int(volume) if isinstance(volume, (int, float)) and volume >= 0 else None,
            "current_price": close,
        }
    bars = [by_date[d] for d in sorted(by_date)]
    if not bars:
        return []

    year_ago = today - timedelta(days=365)
    recent = [b for b in bars if b["date"] >= year_ago]
    calc_high = max((b["high"] for b in recent), default=None)
    calc_low = min((b["low"] for b in recent), default=None)
    volumes = [b["volume"] for b in bars if b["volume"]]
    calc_avg_volume = (sum(volumes) / len(volumes)) if volumes else None

    high_52 = fundamentals.get("fifty_two_week_high") or calc_high
    low_52 = fundamentals.get("fifty_two_week_low") or calc_low
    avg_volume = fundamentals.get("average_volume") or calc_avg_volume
    for bar in bars:
        bar["fifty_two_week_high"] = high_52
        bar["fifty_two_week_low"] = low_52
        bar["average_volume"] = avg_volume
        bar["regular_market_volume"] = bar["volume"]

    latest = bars[-1]
    if fundamentals.get("current_price"):
        latest["current_price"] = fundamentals["current_price"]
    if fundamentals.get("regular_market_volume"):
        latest["regular_market_volume"] = fundamentals["regular_market_volume"]
    for key in ("trailing_pe", "forward_pe", "price_to_book", "market_cap", "dividend_yield"):
        if fundamentals.get(key) is not None:
            latest[key] = fundamentals[key]
    return bars


def fetch_history_yahoo(
    symbol: str,
    exchange: Optional[str],
    start: date,
    end: date,
    timeout: Optional[float] = None,
    with_fundamentals: bool = True,
) -> List[Dict[str, Any]]:
    """Fetch daily OHLCV bars for ``symbol`` over the inclusive ``start..end`` range.

    Returns
    -------
    list[dict]
        Ordered bars (see :func:`parse_chart_payload`); empty means no data.

    Raises
    ------
    RateLimitError
        On HTTP 429.
    ProviderError
        On timeouts, other HTTP errors or malformed JSON.
    """
    settings = get_refresh_settings()
    if timeout is None:
        timeout = settings.secondary_timeout_seconds
    tz = ZoneInfo(settings.market_timezone)
    ysym = yahoo_symbol(symbol, exchange)
    params = {
        "period1": _epoch(start, tz),
        "period2": _epoch(end + timedelta(days=1), tz),
        "interval": "1d",
    }
    logger.info("[yahoo] fetch %s window=(%s..%s)", ysym, start, end)
    try:
        resp = requests.get(
            YAHOO_CHART_URL.format(symbol=ysym),
            params=params,
            headers={"User-Agent": BROWSER_UA, "Accept": "application/json"},
            timeout=timeout,
        )
    except requests.Timeout as e:
        raise ProviderTimeout(f"Yahoo timeout for {ysym}") from e
    except requests.RequestException as e:
        raise ProviderError(f"Yahoo request error for {ysym}: {e}") from e

    status = int(getattr(resp, "status_code", 0) or 0)
    if status == 429:
        raise RateLimitError(f"Yahoo rate limited for {ysym}")
    if status == 404:
        # unknown symbol on this exchange: a well-formed "nothing here"
        logger.info("[yahoo] %s not found", ysym)
        return []
    if status >= 400 or status == 0:
        raise ProviderError(f"Yahoo HTTP {status} for {ysym}")
    try:
        payload = resp.json()
    except ValueError as e:
        raise ProviderError(f"Yahoo malformed JSON for {ysym}") from e

    bars = parse_chart_payload(payload, None, today=end, tz=tz)
    if bars and with_fundamentals:
        fundamentals = fetch_fundamentals_yahoo(symbol, exchange, timeout)
        if fundamentals:
            bars = parse_chart_payload(payload, fundamentals, today=end, tz=tz)
    logger.info("[yahoo] %s bars=%d", ysym, len(bars))
    return bars
