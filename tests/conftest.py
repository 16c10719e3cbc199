"""Shared fixtures: deterministic candle series and a service wired to memory data."""

from datetime import datetime, timedelta
from typing import List, Optional, Sequence

import pytest

from signal_engine.alpha import Direction, Signal, risk_reward_ratio
from signal_engine.config import SystemConfig
from signal_engine.data import Candle, InMemorySource
from signal_engine.features import IndicatorSet
from signal_engine.regime import MarketRegime, RegimeState

START = datetime(2024, 1, 1, 9, 15)


def make_candles(closes: Sequence[float], symbol: str = "TEST", timeframe: str = "1h",
                 spread: float = 0.5, volumes: Optional[Sequence[float]] = None) -> List[Candle]:
    """Candles opening at the previous close, with ``spread`` beyond the body on each side."""
    candles = []
    prev = closes[0] if closes else 0.0
    for i, close in enumerate(closes):
        open_ = prev
        candles.append(Candle(
            symbol=symbol,
            timeframe=timeframe,
            open=open_,
            high=max(open_, close) + spread,
            low=min(open_, close) - spread,
            close=close,
            volume=volumes[i] if volumes is not None else 1000.0,
            timestamp=START + timedelta(hours=i)
        ))
        prev = close
    return candles


def make_signal(direction: Direction = Direction.LONG, entry: float = 100.0, stop: float = 95.0,
                target: float = 110.0, atr: float = 2.0, confidence: float = 60.0,
                symbol: str = "TEST", timeframe: str = "1h", votes=()) -> Signal:
    """A hand-built signal with fixed levels, for risk and outcome tests."""
    indicators = IndicatorSet(symbol=symbol, timeframe=timeframe, price=entry, atr=atr, candle_count=100)
    regime = RegimeState(symbol, timeframe, MarketRegime.SIDEWAYS, 0.5)
    return Signal(
        symbol=symbol,
        timeframe=timeframe,
        direction=direction,
        confidence=confidence,
        entry_price=entry,
        stop_loss=stop,
        take_profit=target,
        risk_reward_ratio=risk_reward_ratio(entry, stop, target),
        confluence_score=direction.sign * confidence,
        reasoning=("hand built",),
        indicator_snapshot=indicators,
        regime=regime,
        indicator_votes=tuple(votes)
    )


def rising(n: int, start: float = 100.0, step: float = 1.0) -> List[float]:
    return [start + step * i for i in range(n)]


def falling(n: int, start: float = 200.0, step: float = 1.0) -> List[float]:
    return [start - step * i for i in range(n)]


def flat(n: int, price: float = 100.0) -> List[float]:
    return [price] * n


def zigzag(n: int, low: float = 100.0, high: float = 112.0) -> List[float]:
    return [low if i % 2 == 0 else high for i in range(n)]


@pytest.fixture
def flat_candles():
    return make_candles(flat(30), spread=0.0)


@pytest.fixture
def rising_candles():
    return make_candles(rising(60))


@pytest.fixture
def test_config():
    config = SystemConfig()
    config.data.symbols = ["AAA", "BBB"]
    config.data.timeframes = ["1h"]
    config.data.max_retries = 1
    config.data.retry_base_delay = 0.0
    config.data.cache_ttl_seconds = 0
    config.scheduler.max_workers = 2
    config.scheduler.interval_seconds = 0.05
    config.logging.log_file = None
    return config


@pytest.fixture
def memory_source():
    return InMemorySource({
        ("AAA", "1h"): make_candles(rising(60), symbol="AAA"),
        ("BBB", "1h"): make_candles(falling(60), symbol="BBB"),
    })
