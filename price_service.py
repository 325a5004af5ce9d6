"""
Unified Price Service with Caching
- Finnhub as primary source (fast, <500ms)
- yfinance as fallback (slower but reliable)
- In-memory cache with TTL to reduce API calls
- Outbound quote calls go through a rate-limited FIFO queue
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import finnhub
import pandas as pd

import config
import models

logger = logging.getLogger(__name__)

# Lazy import yfinance to avoid slowing startup
_yfinance = None
def get_yfinance():
    global _yfinance
    if _yfinance is None:
        import yfinance
        _yfinance = yfinance
    return _yfinance


class PriceUnavailableError(Exception):
    """No provider returned a usable quote"""


# ============================================
# Cache Implementation
# ============================================

class PriceCache:
    """Thread-safe in-memory price cache with TTL."""

    def __init__(self, ttl: int = 60):
        self.ttl = ttl
        self._cache: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, symbol: str) -> Optional[dict]:
        """Get cached quote if not expired."""
        with self._lock:
            entry = self._cache.get(symbol)
            if entry is None:
                return None
            if time.time() - entry['timestamp'] < self.ttl:
                return dict(entry['data'])
            del self._cache[symbol]
        return None

    def set(self, symbol: str, data: dict):
        with self._lock:
            self._cache[symbol] = {'data': data, 'timestamp': time.time()}

    def clear(self):
        with self._lock:
            self._cache.clear()

    def stats(self) -> dict:
        with self._lock:
            return {'entries': len(self._cache), 'ttl': self.ttl}


# ============================================
# Rate-limited request queue
# ============================================

class RateLimitedQueue:
    """
    Runs submitted calls one at a time, in submission order, keeping at
    least `min_interval` seconds between the end of one call and the
    start of the next. A failing call raises in its caller only.
    """

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_finished: Optional[float] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="quote-queue")

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        return self._executor.submit(self._run, fn, args, kwargs)

    def call(self, fn: Callable, *args, timeout: Optional[float] = None, **kwargs):
        """Queue a call and block until its result (or exception) is ready."""
        return self.submit(fn, *args, **kwargs).result(timeout=timeout)

    def _run(self, fn, args, kwargs):
        # Only the single worker thread touches _last_finished
        if self._last_finished is not None:
            wait = self.min_interval - (self._clock() - self._last_finished)
            if wait > 0:
                self._sleep(wait)
        try:
            return fn(*args, **kwargs)
        finally:
            self._last_finished = self._clock()

    def shutdown(self):
        self._executor.shutdown(wait=False)


# Global instances (shared across all requests/users)
_price_cache = PriceCache(ttl=config.PRICE_CACHE_TTL)
_quote_queue = RateLimitedQueue(min_interval=config.QUOTE_MIN_INTERVAL)


# ============================================
# Finnhub Client
# ============================================

_finnhub_client = None

def get_finnhub_client():
    global _finnhub_client
    if not config.FINNHUB_API_KEY:
        return None  # No API key, fall back to yfinance
    if _finnhub_client is None:
        _finnhub_client = finnhub.Client(api_key=config.FINNHUB_API_KEY)
    return _finnhub_client


def resolve_symbol(symbol: str, market: Optional[str] = "US") -> str:
    """Map a journal symbol to the Yahoo ticker for its market."""
    symbol = symbol.upper().strip()
    if (market or "US").upper() == "IN" and not symbol.endswith((".NS", ".BO")):
        return f"{symbol}.NS"
    return symbol


# ============================================
# Price Fetching Functions
# ============================================

def get_price(symbol: str, use_cache: bool = True) -> dict:
    """
    Get current price for a single symbol.

    Returns:
        {'price', 'change', 'change_pct', 'prev_close', 'source', 'timestamp'}
    """
    symbol = symbol.upper().strip()

    if use_cache:
        cached = _price_cache.get(symbol)
        if cached:
            cached['source'] = 'cache'
            return cached

    data = _quote_queue.call(_fetch_quote, symbol)
    _price_cache.set(symbol, data)
    return data


def get_prices(symbols: List[str], use_cache: bool = True) -> Dict[str, dict]:
    """Quotes for several symbols; symbols without a quote are left out."""
    result = {}
    for symbol in {s.upper().strip() for s in symbols if s}:
        try:
            result[symbol] = get_price(symbol, use_cache=use_cache)
        except PriceUnavailableError as e:
            logger.warning(f"[PriceService] {e}")
    return result


def get_cached_price(db, symbol: str, max_age_seconds: Optional[int] = None) -> float:
    """
    Current price backed by the persistent price_cache table, so every
    worker shares the same recent quotes.
    """
    symbol = symbol.upper().strip()
    max_age = config.PRICE_DB_CACHE_SECONDS if max_age_seconds is None else max_age_seconds
    now = datetime.now(timezone.utc)

    entry = db.query(models.PriceCache).filter(models.PriceCache.symbol == symbol).first()
    if entry is not None:
        last = entry.last_updated
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        if (now - last).total_seconds() < max_age:
            return entry.price

    price = float(get_price(symbol)['price'])
    if entry is None:
        entry = models.PriceCache(symbol=symbol, price=price, last_updated=now)
        db.add(entry)
    else:
        entry.price = price
        entry.last_updated = now
    db.commit()
    return price


def get_benchmark_price() -> dict:
    return get_price(config.BENCHMARK_SYMBOL)


def get_benchmark_close(on_date: date) -> Optional[float]:
    """Benchmark close on the given date, or the last session before it."""
    return get_close_on(config.BENCHMARK_SYMBOL, on_date)


def get_close_on(symbol: str, on_date: date) -> Optional[float]:
    yf = get_yfinance()
    start = on_date - timedelta(days=7)
    end = on_date + timedelta(days=1)  # yfinance end is exclusive
    try:
        hist = _quote_queue.call(yf.Ticker(symbol).history, start=start.isoformat(), end=end.isoformat(), interval="1d")
    except Exception as e:
        logger.error(f"[PriceService] History error for {symbol} @ {on_date}: {e}")
        return None
    if hist is None or hist.empty:
        return None
    closes = hist['Close'].dropna()
    if closes.empty:
        return None
    return float(closes.iloc[-1])


def get_history(symbol: str, start: date, end: date, market: Optional[str] = "US") -> List[dict]:
    """Daily OHLC candles; rows with missing values are dropped."""
    yf = get_yfinance()
    ticker = resolve_symbol(symbol, market)
    hist = _quote_queue.call(yf.Ticker(ticker).history, start=start.isoformat(),
                             end=(end + timedelta(days=1)).isoformat(), interval="1d")
    if hist is None or hist.empty:
        raise PriceUnavailableError(f"No history available for {ticker}")

    hist = hist[['Open', 'High', 'Low', 'Close']].dropna()
    return [
        {
            "time": idx.strftime('%Y-%m-%d'),
            "open": float(row['Open']),
            "high": float(row['High']),
            "low": float(row['Low']),
            "close": float(row['Close']),
        }
        for idx, row in hist.iterrows()
    ]


def get_close_history(symbols: List[str], start: date) -> pd.DataFrame:
    """Daily closes since `start`, one column per symbol, index of dates."""
    symbols = sorted({s.upper().strip() for s in symbols if s})
    if not symbols:
        return pd.DataFrame()

    yf = get_yfinance()
    data = _quote_queue.call(yf.download, symbols, start=start.isoformat(), interval="1d",
                             progress=False, auto_adjust=True, threads=True)
    if data is None or data.empty:
        return pd.DataFrame()

    closes = data['Close']
    if isinstance(closes, pd.Series):
        closes = closes.to_frame(name=symbols[0])
    closes.index = pd.to_datetime(closes.index).date
    return closes


def chart_date_range(entry_date: date, exit_date: Optional[date] = None, today: Optional[date] = None) -> dict:
    """One month before entry until two weeks after exit (or today while open)."""
    start = (pd.Timestamp(entry_date) - pd.DateOffset(months=1)).date()
    if exit_date:
        end = exit_date + timedelta(days=14)
    else:
        end = today or date.today()
    return {"start_date": start, "end_date": end}


def cache_stats() -> dict:
    return _price_cache.stats()


# ============================================
# Internal Fetch Functions
# ============================================

def _fetch_quote(symbol: str) -> dict:
    try:
        data = _fetch_finnhub(symbol)
        if data and data.get('price'):
            return data
    except Exception as e:
        logger.warning(f"[PriceService] Finnhub error for {symbol}: {e}")

    try:
        data = _fetch_yfinance(symbol)
        if data and data.get('price'):
            return data
    except Exception as e:
        logger.warning(f"[PriceService] yfinance error for {symbol}: {e}")

    raise PriceUnavailableError(f"No quote available for {symbol}")


def _fetch_finnhub(symbol: str) -> Optional[dict]:
    """Fetch single symbol from Finnhub."""
    client = get_finnhub_client()
    if not client:
        return None
    quote = client.quote(symbol)

    if not quote or not quote.get('c'):
        return None

    return {
        'price': quote['c'],  # Current price
        'change': quote.get('d', 0),
        'change_pct': quote.get('dp', 0),
        'prev_close': quote.get('pc', 0),
        'source': 'finnhub',
        'timestamp': time.time()
    }


def _fetch_yfinance(symbol: str) -> Optional[dict]:
    """Fetch single symbol from yfinance (history is steadier than fast_info)."""
    yf = get_yfinance()
    hist = yf.Ticker(symbol).history(period="5d")
    if hist.empty:
        return None

    closes = hist['Close'].dropna()
    if closes.empty:
        return None

    last_price = float(closes.iloc[-1])
    prev_close = float(closes.iloc[-2]) if len(closes) > 1 else last_price
    change = last_price - prev_close

    return {
        'price': last_price,
        'change': change,
        'change_pct': (change / prev_close * 100) if prev_close else 0,
        'prev_close': prev_close,
        'source': 'yfinance',
        'timestamp': time.time()
    }
