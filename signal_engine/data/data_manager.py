"""
Data Module
===========
Candle acquisition for the signal pipeline.

Features:
- Source abstraction (yfinance for live runs, in-memory for replay/tests)
- In-memory caching with TTL
- Automatic retry with exponential backoff
- Per-request timeout
- Performance metrics

Missing data is reported as ``DataUnavailableError``; nothing is synthesised.
"""

import yfinance as yf
import pandas as pd
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
import threading
import time
import logging

from ..exceptions import DataUnavailableError, InvalidParameterError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candle:
    """
    One OHLCV bar.

    Prices are floats; ``Decimal`` inputs are converted on construction so the
    numpy/pandas maths downstream sees a single numeric type.
    """
    symbol: str
    timeframe: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    timestamp: datetime

    def __post_init__(self):
        for name in ('open', 'high', 'low', 'close', 'volume'):
            value = getattr(self, name)
            if isinstance(value, (Decimal, int)):
                object.__setattr__(self, name, float(value))

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume
        }


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    """OHLCV frame indexed by timestamp, oldest first."""
    rows = [c.to_dict() for c in candles]
    if not rows:
        return pd.DataFrame(columns=['open', 'high', 'low', 'close', 'volume'], dtype=float)
    df = pd.DataFrame(rows).set_index('timestamp')
    return df[['open', 'high', 'low', 'close', 'volume']].astype(float)


def frame_to_candles(df: pd.DataFrame, symbol: str, timeframe: str) -> List[Candle]:
    """Inverse of ``candles_to_frame`` for frames with lowercase OHLCV columns."""
    candles = []
    for ts, row in df.iterrows():
        candles.append(Candle(
            symbol=symbol,
            timeframe=timeframe,
            open=float(row['open']),
            high=float(row['high']),
            low=float(row['low']),
            close=float(row['close']),
            volume=float(row.get('volume', 0.0) or 0.0),
            timestamp=ts.to_pydatetime() if hasattr(ts, 'to_pydatetime') else ts
        ))
    return candles


class MarketDataSource(ABC):
    """Abstract base class for data sources."""

    @abstractmethod
    def get_candles(self, symbol: str, timeframe: str, min_count: int) -> List[Candle]:
        """Candles oldest first; may return fewer than ``min_count``."""
        pass

    @abstractmethod
    def get_current_price(self, symbol: str) -> float:
        """Latest traded price."""
        pass


class YFinanceSource(MarketDataSource):
    """Yahoo Finance data source."""

    # timeframe -> (yfinance interval, history period, resample rule)
    INTERVALS: Dict[str, Tuple[str, str, Optional[str]]] = {
        '1m': ('1m', '7d', None),
        '5m': ('5m', '60d', None),
        '15m': ('15m', '60d', None),
        '30m': ('30m', '60d', None),
        '1h': ('1h', '730d', None),
        '4h': ('1h', '730d', '4h'),
        '1d': ('1d', '2y', None),
        '3d': ('1d', '5y', '3D'),
        '1w': ('1wk', '10y', None),
        '1M': ('1mo', 'max', None),
    }

    SYMBOL_MAP = {
        'NIFTY': '^NSEI',
        'BANKNIFTY': '^NSEBANK',
        'NIFTY50': '^NSEI',
        'SENSEX': '^BSESN',
        'INDIAVIX': '^INDIAVIX'
    }

    def __init__(self, exchange_suffix: str = ".NS"):
        self.exchange_suffix = exchange_suffix

    def get_candles(self, symbol: str, timeframe: str, min_count: int) -> List[Candle]:
        if timeframe not in self.INTERVALS:
            raise InvalidParameterError(f"Unsupported timeframe: {timeframe}")
        interval, period, resample = self.INTERVALS[timeframe]

        ticker = yf.Ticker(self._convert_symbol(symbol))
        df = ticker.history(period=period, interval=interval)

        if df is None or df.empty:
            raise DataUnavailableError(symbol, timeframe, "empty history from yfinance")

        # Standardize column names
        df.columns = df.columns.str.lower()
        df = df.dropna(subset=['open', 'high', 'low', 'close'])

        if resample:
            df = df.resample(resample).agg({
                'open': 'first',
                'high': 'max',
                'low': 'min',
                'close': 'last',
                'volume': 'sum'
            }).dropna(subset=['close'])

        return frame_to_candles(df, symbol, timeframe)

    def get_current_price(self, symbol: str) -> float:
        ticker = yf.Ticker(self._convert_symbol(symbol))
        data = ticker.history(period='1d', interval='1m')
        if data is None or data.empty:
            raise DataUnavailableError(symbol, reason="no quote from yfinance")
        return float(data['Close'].iloc[-1])

    def _convert_symbol(self, symbol: str) -> str:
        """Convert symbol to Yahoo Finance format."""
        if symbol in self.SYMBOL_MAP:
            return self.SYMBOL_MAP[symbol]
        if self.exchange_suffix and '.' not in symbol and not symbol.startswith('^') and '-' not in symbol:
            return f"{symbol}{self.exchange_suffix}"
        return symbol


class InMemorySource(MarketDataSource):
    """
    Serves candles supplied by the caller.

    Used for replays and tests. Unknown keys raise ``DataUnavailableError``;
    the source never invents bars.
    """

    def __init__(self, candles: Optional[Dict[Tuple[str, str], List[Candle]]] = None):
        self._candles: Dict[Tuple[str, str], Tuple[Candle, ...]] = {}
        self._lock = threading.Lock()
        for (symbol, timeframe), series in (candles or {}).items():
            self.set_candles(symbol, timeframe, series)

    def set_candles(self, symbol: str, timeframe: str, candles: Iterable[Candle]):
        ordered = tuple(sorted(candles, key=lambda c: c.timestamp))
        with self._lock:
            self._candles[(symbol, timeframe)] = ordered

    def remove(self, symbol: str, timeframe: str):
        with self._lock:
            self._candles.pop((symbol, timeframe), None)

    def get_candles(self, symbol: str, timeframe: str, min_count: int) -> List[Candle]:
        with self._lock:
            series = self._candles.get((symbol, timeframe))
        if series is None:
            raise DataUnavailableError(symbol, timeframe, "no candles loaded")
        return list(series)

    def get_current_price(self, symbol: str) -> float:
        with self._lock:
            latest = [s[-1] for (sym, _), s in self._candles.items() if sym == symbol and s]
        if not latest:
            raise DataUnavailableError(symbol, reason="no candles loaded")
        return max(latest, key=lambda c: c.timestamp).close


@dataclass
class CacheEntry:
    """Cache entry with expiration."""
    data: Any
    timestamp: datetime
    ttl_seconds: float

    def is_expired(self) -> bool:
        return datetime.now() - self.timestamp > timedelta(seconds=self.ttl_seconds)


class DataCache:
    """Thread-safe in-memory cache."""

    def __init__(self):
        self._cache: Dict[Any, CacheEntry] = {}
        self._lock = threading.RLock()

    def get(self, key) -> Optional[Any]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.is_expired():
                del self._cache[key]
                return None
            return entry.data

    def set(self, key, data: Any, ttl_seconds: float = 60):
        with self._lock:
            self._cache[key] = CacheEntry(
                data=data,
                timestamp=datetime.now(),
                ttl_seconds=ttl_seconds
            )

    def clear(self):
        with self._lock:
            self._cache.clear()

    def cleanup_expired(self):
        with self._lock:
            expired_keys = [
                key for key, entry in self._cache.items()
                if entry.is_expired()
            ]
            for key in expired_keys:
                del self._cache[key]


@dataclass
class DataMetrics:
    """Track data fetch performance."""
    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    failed_requests: int = 0
    timeouts: int = 0
    avg_fetch_time_ms: float = 0.0
    last_fetch_time: Optional[datetime] = None

    @property
    def cache_hit_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.cache_hits / self.total_requests) * 100


class DataManager:
    """
    Candle provider used by the scheduler.

    Wraps a ``MarketDataSource`` with a TTL cache, retries with exponential
    backoff and a hard per-request timeout. Every failure path ends in
    ``DataUnavailableError`` so the caller can skip the pair.
    """

    def __init__(self, source: MarketDataSource = None, config=None):
        from ..config import DataConfig
        self.config = config or DataConfig()
        self.source = source or YFinanceSource()
        self.cache = DataCache()
        self.metrics = DataMetrics()
        self._metrics_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="data-fetch")

    def get_candles(self, symbol: str, timeframe: str, min_count: int = None) -> List[Candle]:
        """
        Fetch candles with caching.

        Args:
            symbol: Instrument symbol
            timeframe: Candle timeframe ('5m', '1h', '1d', ...)
            min_count: Requested history length

        Returns:
            Candles oldest first (possibly fewer than requested)

        Raises:
            DataUnavailableError: nothing could be fetched in time
        """
        min_count = min_count or self.config.min_candles
        cache_key = ('candles', symbol, timeframe)
        self._count('total_requests')

        cached = self.cache.get(cache_key)
        if cached is not None:
            self._count('cache_hits')
            logger.debug(f"Cache hit for {symbol}/{timeframe}")
            return list(cached)

        self._count('cache_misses')
        candles = self._fetch_with_retry(
            symbol, timeframe, self.source.get_candles, symbol, timeframe, min_count
        )
        if not candles:
            self._count('failed_requests')
            raise DataUnavailableError(symbol, timeframe, "source returned no candles")

        self.cache.set(cache_key, tuple(candles), self.config.cache_ttl_seconds)
        return candles

    def get_current_price(self, symbol: str) -> float:
        cache_key = ('price', symbol)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached
        price = self._fetch_with_retry(symbol, None, self.source.get_current_price, symbol)
        if price is None or price <= 0:
            raise DataUnavailableError(symbol, reason="no valid price")
        self.cache.set(cache_key, price, self.config.cache_ttl_seconds)
        return price

    def _fetch_with_retry(self, symbol: str, timeframe: Optional[str], fetch_func, *args):
        """Execute fetch with timeout and exponential backoff retry."""
        last_error = None

        for attempt in range(self.config.max_retries):
            start_time = time.time()
            future = self._executor.submit(fetch_func, *args)
            try:
                result = future.result(timeout=self.config.request_timeout_seconds)
                self._update_fetch_time((time.time() - start_time) * 1000)
                return result
            except (DataUnavailableError, InvalidParameterError):
                # Source says the data does not exist; retrying will not help
                self._count('failed_requests')
                raise
            except FutureTimeoutError:
                future.cancel()
                self._count('timeouts')
                last_error = f"timed out after {self.config.request_timeout_seconds}s"
            except Exception as e:
                last_error = e

            if attempt < self.config.max_retries - 1:
                delay = self.config.retry_base_delay * (2 ** attempt)
                logger.warning(f"Fetch attempt {attempt + 1} for {symbol} failed: {last_error}. "
                               f"Retrying in {delay}s")
                time.sleep(delay)

        self._count('failed_requests')
        logger.error(f"All retry attempts failed for {symbol}: {last_error}")
        raise DataUnavailableError(symbol, timeframe, str(last_error))

    def _count(self, name: str):
        with self._metrics_lock:
            setattr(self.metrics, name, getattr(self.metrics, name) + 1)

    def _update_fetch_time(self, fetch_time_ms: float):
        """Update rolling average fetch time."""
        with self._metrics_lock:
            self.metrics.last_fetch_time = datetime.now()
            if self.metrics.avg_fetch_time_ms == 0:
                self.metrics.avg_fetch_time_ms = fetch_time_ms
            else:
                # Exponential moving average
                self.metrics.avg_fetch_time_ms = (
                    0.9 * self.metrics.avg_fetch_time_ms + 0.1 * fetch_time_ms
                )

    def get_metrics(self) -> Dict[str, Any]:
        """Get data manager metrics."""
        return {
            'total_requests': self.metrics.total_requests,
            'cache_hits': self.metrics.cache_hits,
            'cache_misses': self.metrics.cache_misses,
            'cache_hit_rate': f"{self.metrics.cache_hit_rate:.1f}%",
            'failed_requests': self.metrics.failed_requests,
            'timeouts': self.metrics.timeouts,
            'avg_fetch_time_ms': f"{self.metrics.avg_fetch_time_ms:.1f}",
            'last_fetch': self.metrics.last_fetch_time.isoformat() if self.metrics.last_fetch_time else None
        }

    def clear_cache(self):
        """Clear all cached data."""
        self.cache.clear()
        logger.info("Cache cleared")

    def shutdown(self):
        self._executor.shutdown(wait=False)
