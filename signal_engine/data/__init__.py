"""
Data Module
===========
"""
from .data_manager import (
    Candle,
    MarketDataSource,
    YFinanceSource,
    InMemorySource,
    DataManager,
    DataCache,
    DataMetrics,
    candles_to_frame,
    frame_to_candles
)

__all__ = [
    'Candle',
    'MarketDataSource',
    'YFinanceSource',
    'InMemorySource',
    'DataManager',
    'DataCache',
    'DataMetrics',
    'candles_to_frame',
    'frame_to_candles'
]
