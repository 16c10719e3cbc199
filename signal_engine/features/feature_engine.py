"""
Indicator Calculator
====================
Technical indicators computed from a candle history.

The low-level functions in ``TechnicalIndicators`` raise
``InsufficientHistoryError`` when the history is too short.
``IndicatorCalculator`` turns that into the indicator's neutral default and
records the name in ``IndicatorSet.insufficient`` so the scorer can lower its
confidence.
"""

import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field
import threading
import logging

from ..data.data_manager import Candle, candles_to_frame
from ..exceptions import InsufficientHistoryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MacdValues:
    line: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


@dataclass(frozen=True)
class BollingerValues:
    upper: float = 0.0
    middle: float = 0.0
    lower: float = 0.0

    @property
    def width(self) -> float:
        return self.upper - self.lower


@dataclass(frozen=True)
class StochasticValues:
    k: float = 50.0
    d: float = 50.0


@dataclass(frozen=True)
class IndicatorSet:
    """Indicator values for one (symbol, timeframe) at the last candle."""
    symbol: str
    timeframe: str
    price: float
    rsi: float = 50.0
    macd: MacdValues = field(default_factory=MacdValues)
    bollinger: BollingerValues = field(default_factory=BollingerValues)
    atr: float = 0.0
    stochastic: StochasticValues = field(default_factory=StochasticValues)
    adx: float = 0.0
    sma_cross: int = 0  # +1 fast above slow, -1 below, 0 unknown
    volume_trend: float = 1.0  # Last volume / rolling mean
    momentum: float = 0.0  # Rate of change, percent
    support: float = 0.0
    resistance: float = 0.0
    candle_count: int = 0
    insufficient: Tuple[str, ...] = ()

    @property
    def is_degenerate(self) -> bool:
        """True when there is no usable price or every indicator was defaulted."""
        return self.price <= 0 or set(VOTING_INDICATORS).issubset(self.insufficient)

    @property
    def data_quality(self) -> float:
        """Share of voting indicators computed from real history."""
        missing = sum(1 for name in VOTING_INDICATORS if name in self.insufficient)
        return 1.0 - missing / len(VOTING_INDICATORS)

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'price': self.price,
            'rsi': self.rsi,
            'macd': {'line': self.macd.line, 'signal': self.macd.signal,
                     'histogram': self.macd.histogram},
            'bollinger': {'upper': self.bollinger.upper, 'middle': self.bollinger.middle,
                          'lower': self.bollinger.lower},
            'atr': self.atr,
            'stochastic': {'k': self.stochastic.k, 'd': self.stochastic.d},
            'adx': self.adx,
            'sma_cross': self.sma_cross,
            'volume_trend': self.volume_trend,
            'momentum': self.momentum,
            'support': self.support,
            'resistance': self.resistance,
            'candle_count': self.candle_count,
            'insufficient': list(self.insufficient)
        }


# Indicators that cast a directional vote in the confluence score
VOTING_INDICATORS = (
    'rsi', 'macd', 'bollinger', 'stochastic',
    'sma_cross', 'momentum', 'volume', 'support_resistance'
)


def _require(name: str, required: int, available: int):
    if available < required:
        raise InsufficientHistoryError(name, required, available)


class TechnicalIndicators:
    """Technical analysis indicators evaluated at the last bar."""

    @staticmethod
    def sma(prices: pd.Series, period: int) -> pd.Series:
        """Simple Moving Average."""
        return prices.rolling(window=period, min_periods=1).mean()

    @staticmethod
    def ema(prices: pd.Series, period: int) -> pd.Series:
        """Exponential Moving Average."""
        return prices.ewm(span=period, adjust=False).mean()

    @staticmethod
    def wilder_series(values: np.ndarray, period: int) -> np.ndarray:
        """
        Wilder smoothing.

        Seeded with the simple mean of the first ``period`` values, then
        ``avg = (avg * (period - 1) + value) / period``.
        """
        values = np.asarray(values, dtype=float)
        if len(values) < period:
            raise InsufficientHistoryError('wilder', period, len(values))
        out = np.empty(len(values) - period + 1)
        avg = values[:period].mean()
        out[0] = avg
        for i, value in enumerate(values[period:], start=1):
            avg = (avg * (period - 1) + value) / period
            out[i] = avg
        return out

    @staticmethod
    def rsi(prices: pd.Series, period: int = 14) -> float:
        """
        Relative Strength Index with Wilder smoothing.

        Zero average loss gives 100, including a window with no movement.
        """
        _require('rsi', period + 1, len(prices))
        delta = np.diff(prices.to_numpy(dtype=float))
        gains = np.clip(delta, 0, None)
        losses = np.clip(-delta, 0, None)

        avg_gain = TechnicalIndicators.wilder_series(gains, period)[-1]
        avg_loss = TechnicalIndicators.wilder_series(losses, period)[-1]

        if avg_loss == 0:
            return 100.0
        rs = avg_gain / avg_loss
        return float(100 - (100 / (1 + rs)))

    @staticmethod
    def macd(prices: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> MacdValues:
        """Moving Average Convergence Divergence."""
        _require('macd', slow + 1, len(prices))
        macd_line = TechnicalIndicators.ema(prices, fast) - TechnicalIndicators.ema(prices, slow)
        signal_line = macd_line.ewm(span=signal, adjust=False).mean()

        line = float(macd_line.iloc[-1])
        sig = float(signal_line.iloc[-1])
        return MacdValues(line=line, signal=sig, histogram=line - sig)

    @staticmethod
    def bollinger_bands(prices: pd.Series, period: int = 20, std_dev: float = 2.0) -> BollingerValues:
        """Bollinger Bands on population standard deviation."""
        _require('bollinger', period + 1, len(prices))
        window = prices.to_numpy(dtype=float)[-period:]
        middle = float(window.mean())
        std = float(window.std(ddof=0))
        return BollingerValues(upper=middle + std_dev * std, middle=middle, lower=middle - std_dev * std)

    @staticmethod
    def true_range(high: pd.Series, low: pd.Series, close: pd.Series) -> np.ndarray:
        """True range from the second bar on."""
        h = high.to_numpy(dtype=float)[1:]
        l = low.to_numpy(dtype=float)[1:]
        prev_close = close.to_numpy(dtype=float)[:-1]
        return np.maximum.reduce([h - l, np.abs(h - prev_close), np.abs(l - prev_close)])

    @staticmethod
    def atr(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> float:
        """Average True Range, Wilder-smoothed."""
        _require('atr', period + 1, len(close))
        tr = TechnicalIndicators.true_range(high, low, close)
        return float(TechnicalIndicators.wilder_series(tr, period)[-1])

    @staticmethod
    def adx(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> float:
        """Average Directional Index."""
        _require('adx', 2 * period, len(close))
        h = high.to_numpy(dtype=float)
        l = low.to_numpy(dtype=float)

        up_move = h[1:] - h[:-1]
        down_move = l[:-1] - l[1:]
        plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
        minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)
        tr = TechnicalIndicators.true_range(high, low, close)

        smooth_tr = TechnicalIndicators.wilder_series(tr, period)
        smooth_plus = TechnicalIndicators.wilder_series(plus_dm, period)
        smooth_minus = TechnicalIndicators.wilder_series(minus_dm, period)

        with np.errstate(divide='ignore', invalid='ignore'):
            plus_di = np.where(smooth_tr > 0, 100 * smooth_plus / smooth_tr, 0.0)
            minus_di = np.where(smooth_tr > 0, 100 * smooth_minus / smooth_tr, 0.0)
            di_sum = plus_di + minus_di
            dx = np.where(di_sum > 0, 100 * np.abs(plus_di - minus_di) / di_sum, 0.0)

        return float(TechnicalIndicators.wilder_series(dx, period)[-1])

    @staticmethod
    def stochastic(high: pd.Series, low: pd.Series, close: pd.Series,
                   k_period: int = 14, d_period: int = 3) -> StochasticValues:
        """Stochastic Oscillator; a flat range reads 50."""
        _require('stochastic', max(k_period + 1, k_period + d_period - 1), len(close))
        h = high.to_numpy(dtype=float)
        l = low.to_numpy(dtype=float)
        c = close.to_numpy(dtype=float)
        n = len(c)

        k_values = []
        for end in range(n - d_period + 1, n + 1):
            highest = h[end - k_period:end].max()
            lowest = l[end - k_period:end].min()
            if highest == lowest:
                k_values.append(50.0)
            else:
                k_values.append(100 * (c[end - 1] - lowest) / (highest - lowest))

        return StochasticValues(k=float(k_values[-1]), d=float(np.mean(k_values)))

    @staticmethod
    def sma_cross(prices: pd.Series, fast: int = 20, slow: int = 50) -> int:
        """+1 when the fast SMA is above the slow one, -1 below, 0 equal."""
        _require('sma_cross', slow, len(prices))
        fast_sma = float(prices.iloc[-fast:].mean())
        slow_sma = float(prices.iloc[-slow:].mean())
        if fast_sma > slow_sma:
            return 1
        if fast_sma < slow_sma:
            return -1
        return 0

    @staticmethod
    def momentum(prices: pd.Series, period: int = 10) -> float:
        """Rate of change over ``period`` bars, in percent."""
        _require('momentum', period + 1, len(prices))
        base = float(prices.iloc[-1 - period])
        if base == 0:
            return 0.0
        return (float(prices.iloc[-1]) - base) / base * 100

    @staticmethod
    def volume_ratio(volume: pd.Series, period: int = 20) -> float:
        """Last volume relative to its rolling mean."""
        _require('volume', period, len(volume))
        mean = float(volume.iloc[-period:].mean())
        if mean <= 0:
            return 1.0
        return float(volume.iloc[-1]) / mean

    @staticmethod
    def support_resistance(high: pd.Series, low: pd.Series, close: pd.Series,
                           window: int = 50, swing: int = 5) -> Tuple[float, float]:
        """
        Nearest swing low below and swing high above the last close.

        Falls back to the window's low / high when no swing qualifies.
        """
        _require('support_resistance', 2 * swing + 1, len(close))
        h = high.to_numpy(dtype=float)[-window:]
        l = low.to_numpy(dtype=float)[-window:]
        price = float(close.iloc[-1])

        swing_highs = []
        swing_lows = []
        for i in range(swing, len(h) - swing):
            if h[i] == h[i - swing:i + swing + 1].max():
                swing_highs.append(h[i])
            if l[i] == l[i - swing:i + swing + 1].min():
                swing_lows.append(l[i])

        below = [level for level in swing_lows if level < price]
        above = [level for level in swing_highs if level > price]
        support = max(below) if below else float(l.min())
        resistance = min(above) if above else float(h.max())
        return float(support), float(resistance)


class IndicatorCalculator:
    """
    Computes an ``IndicatorSet`` from candles.

    Never raises on short input: each indicator that lacks history takes its
    neutral default. Results are memoised per (symbol, timeframe) against a
    copy of the candle history, so an unchanged history returns the
    same object without recomputation.
    """

    def __init__(self, config=None):
        from ..config import IndicatorConfig
        self.config = config or IndicatorConfig()
        self._memo: Dict[Tuple[str, str], Tuple[Tuple[Candle, ...], IndicatorSet]] = {}
        self._lock = threading.Lock()

    def compute(self, candles: Sequence[Candle], symbol: str = None,
                timeframe: str = None) -> IndicatorSet:
        candles = tuple(candles)
        if candles:
            symbol = symbol or candles[-1].symbol
            timeframe = timeframe or candles[-1].timeframe
        symbol = symbol or ""
        timeframe = timeframe or ""

        key = (symbol, timeframe)
        if self.config.use_memo:
            with self._lock:
                cached = self._memo.get(key)
            if cached is not None and (cached[0] is candles or cached[0] == candles):
                return cached[1]

        result = self._compute(candles, symbol, timeframe)

        if self.config.use_memo:
            with self._lock:
                self._memo[key] = (candles, result)
        return result

    def clear(self):
        with self._lock:
            self._memo.clear()

    def _compute(self, candles: Tuple[Candle, ...], symbol: str, timeframe: str) -> IndicatorSet:
        cfg = self.config
        df = candles_to_frame(candles)
        close, high, low, volume = df['close'], df['high'], df['low'], df['volume']
        price = float(close.iloc[-1]) if len(close) else 0.0
        mean_close = float(close.mean()) if len(close) else 0.0
        insufficient: List[str] = []
        ti = TechnicalIndicators

        def safe(name, func, default):
            try:
                return func()
            except InsufficientHistoryError as e:
                logger.debug(f"{symbol}/{timeframe}: {e}")
                insufficient.append(name)
                return default

        # =====================
        # Oscillators
        # =====================
        rsi = safe('rsi', lambda: ti.rsi(close, cfg.rsi_period), 50.0)
        stochastic = safe('stochastic', lambda: ti.stochastic(
            high, low, close, cfg.stochastic_k, cfg.stochastic_d), StochasticValues())

        # =====================
        # Trend
        # =====================
        macd = safe('macd', lambda: ti.macd(close, cfg.macd_fast, cfg.macd_slow, cfg.macd_signal),
                    MacdValues())
        sma_cross = safe('sma_cross', lambda: ti.sma_cross(close, cfg.sma_fast, cfg.sma_slow), 0)
        momentum = safe('momentum', lambda: ti.momentum(close, cfg.momentum_period), 0.0)
        adx = safe('adx', lambda: ti.adx(high, low, close, cfg.adx_period), 0.0)

        # =====================
        # Volatility
        # =====================
        bollinger = safe('bollinger', lambda: ti.bollinger_bands(
            close, cfg.bollinger_period, cfg.bollinger_std),
            BollingerValues(mean_close, mean_close, mean_close))
        atr = safe('atr', lambda: ti.atr(high, low, close, cfg.atr_period), 0.0)

        # =====================
        # Volume & levels
        # =====================
        volume_trend = safe('volume', lambda: ti.volume_ratio(volume, cfg.volume_period), 1.0)
        support, resistance = safe('support_resistance', lambda: ti.support_resistance(
            high, low, close, cfg.support_resistance_window, cfg.swing_window), (price, price))

        if insufficient:
            logger.debug(f"{symbol}/{timeframe}: defaulted {insufficient} ({len(candles)} candles)")

        return IndicatorSet(
            symbol=symbol,
            timeframe=timeframe,
            price=price,
            rsi=rsi,
            macd=macd,
            bollinger=bollinger,
            atr=atr,
            stochastic=stochastic,
            adx=adx,
            sma_cross=sma_cross,
            volume_trend=volume_trend,
            momentum=momentum,
            support=support,
            resistance=resistance,
            candle_count=len(candles),
            insufficient=tuple(insufficient)
        )
