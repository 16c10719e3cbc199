from datetime import datetime
from decimal import Decimal
import threading

import pandas as pd
import pytest

from signal_engine.config import DataConfig
from signal_engine.data import (
    Candle, DataCache, DataManager, InMemorySource, MarketDataSource, YFinanceSource,
    candles_to_frame, frame_to_candles
)
from signal_engine.data import data_manager as data_module
from signal_engine.exceptions import DataUnavailableError, InvalidParameterError

from conftest import make_candles, rising


class FlakySource(MarketDataSource):
    """Fails a fixed number of times before serving candles."""

    def __init__(self, failures, candles):
        self.failures = failures
        self.candles = candles
        self.calls = 0

    def get_candles(self, symbol, timeframe, min_count):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("connection reset")
        return self.candles

    def get_current_price(self, symbol):
        return self.candles[-1].close


class HangingSource(MarketDataSource):
    def __init__(self):
        self.release = threading.Event()

    def get_candles(self, symbol, timeframe, min_count):
        self.release.wait(2)
        return []

    def get_current_price(self, symbol):
        self.release.wait(2)
        return 0.0


def config(**overrides):
    values = dict(max_retries=3, retry_base_delay=0.0, cache_ttl_seconds=60)
    values.update(overrides)
    return DataConfig(**values)


def test_candle_converts_decimal_and_int_prices():
    candle = Candle("X", "1d", Decimal("100.5"), 101, Decimal("99"), 100, 1000, datetime(2024, 1, 1))
    assert isinstance(candle.open, float) and candle.open == 100.5
    assert isinstance(candle.high, float)
    assert isinstance(candle.volume, float)


def test_frame_conversion_preserves_order_and_values():
    candles = make_candles(rising(5), symbol="X")
    df = candles_to_frame(candles)

    assert list(df.columns) == ['open', 'high', 'low', 'close', 'volume']
    assert df['close'].tolist() == rising(5)
    assert frame_to_candles(df, "X", "1h") == candles
    assert candles_to_frame([]).empty


def test_retry_recovers_from_transient_failures():
    candles = make_candles(rising(10))
    source = FlakySource(failures=2, candles=candles)
    manager = DataManager(source, config())
    try:
        assert manager.get_candles("TEST", "1h") == candles
    finally:
        manager.shutdown()
    assert source.calls == 3


def test_retries_exhausted_raise_data_unavailable():
    source = FlakySource(failures=5, candles=make_candles(rising(10)))
    manager = DataManager(source, config(max_retries=2))
    try:
        with pytest.raises(DataUnavailableError):
            manager.get_candles("TEST", "1h")
    finally:
        manager.shutdown()
    assert source.calls == 2
    assert manager.metrics.failed_requests == 1


def test_slow_source_times_out():
    source = HangingSource()
    manager = DataManager(source, config(max_retries=1, request_timeout_seconds=0.05))
    try:
        with pytest.raises(DataUnavailableError, match="timed out"):
            manager.get_candles("TEST", "1h")
    finally:
        source.release.set()
        manager.shutdown()
    assert manager.get_metrics()['timeouts'] == 1


def test_empty_result_is_unavailable():
    manager = DataManager(FlakySource(0, []), config())
    try:
        with pytest.raises(DataUnavailableError):
            manager.get_candles("TEST", "1h")
    finally:
        manager.shutdown()


def test_unknown_key_is_not_retried():
    source = InMemorySource()
    manager = DataManager(source, config())
    try:
        with pytest.raises(DataUnavailableError):
            manager.get_candles("NOPE", "1h")
    finally:
        manager.shutdown()
    assert manager.metrics.failed_requests == 1


def test_cache_serves_repeat_requests():
    source = FlakySource(0, make_candles(rising(10)))
    manager = DataManager(source, config())
    try:
        manager.get_candles("TEST", "1h")
        manager.get_candles("TEST", "1h")
        assert source.calls == 1
        assert manager.get_metrics()['cache_hits'] == 1

        manager.clear_cache()
        manager.get_candles("TEST", "1h")
        assert source.calls == 2
    finally:
        manager.shutdown()


def test_current_price_from_memory_source():
    source = InMemorySource({("X", "1h"): make_candles(rising(5), symbol="X")})
    manager = DataManager(source, config())
    try:
        assert manager.get_current_price("X") == 104.0
        with pytest.raises(DataUnavailableError):
            manager.get_current_price("Y")
    finally:
        manager.shutdown()


def test_cache_entries_expire():
    cache = DataCache()
    cache.set("k", 1, ttl_seconds=-1)
    assert cache.get("k") is None
    cache.set("k", 2, ttl_seconds=60)
    assert cache.get("k") == 2


def test_yfinance_symbol_conversion():
    source = YFinanceSource()
    assert source._convert_symbol("NIFTY") == "^NSEI"
    assert source._convert_symbol("RELIANCE") == "RELIANCE.NS"
    assert source._convert_symbol("AAPL.US") == "AAPL.US"
    assert YFinanceSource(exchange_suffix="")._convert_symbol("AAPL") == "AAPL"


def test_yfinance_resamples_four_hour_bars(monkeypatch):
    index = pd.date_range("2024-01-01 00:00", periods=8, freq="1h")
    frame = pd.DataFrame({
        'Open': range(8), 'High': [x + 1 for x in range(8)], 'Low': range(8),
        'Close': [x + 0.5 for x in range(8)], 'Volume': [10] * 8
    }, index=index, dtype=float)

    class FakeTicker:
        def __init__(self, symbol):
            self.symbol = symbol

        def history(self, period, interval):
            assert interval == '1h'
            return frame.copy()

    monkeypatch.setattr(data_module.yf, "Ticker", FakeTicker)
    candles = YFinanceSource().get_candles("TEST", "4h", 10)

    assert len(candles) == 2
    assert candles[0].open == 0.0 and candles[0].close == 3.5
    assert candles[0].high == 4.0 and candles[0].volume == 40.0


def test_yfinance_rejects_unknown_timeframe():
    with pytest.raises(InvalidParameterError):
        YFinanceSource().get_candles("TEST", "2h", 10)
