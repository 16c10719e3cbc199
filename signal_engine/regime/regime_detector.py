"""
Market Regime Detection
=======================
Classifies the prevailing trend / volatility state per symbol and timeframe.

    VOLATILE  - ATR / price above threshold, regardless of trend
    BULL      - strong, consistent up-slope confirmed by ADX
    BEAR      - strong, consistent down-slope confirmed by ADX
    SIDEWAYS  - everything else, and the default without enough data
"""

import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Sequence, Tuple
import logging

from ..config import get_timeframe_profile
from ..data.data_manager import Candle
from ..features.feature_engine import IndicatorSet

logger = logging.getLogger(__name__)


class MarketRegime(Enum):
    """Market regime classifications."""
    BULL = "bull"
    BEAR = "bear"
    SIDEWAYS = "sideways"
    VOLATILE = "volatile"


# Emphasis applied to indicator weights in each regime; unlisted indicators get 1.0.
# Oscillators lead in ranges, trend followers in trends, bands and volume in chop.
REGIME_INDICATOR_MULTIPLIERS: Dict[MarketRegime, Dict[str, float]] = {
    MarketRegime.BULL: {
        'macd': 1.2, 'sma_cross': 1.2, 'momentum': 1.15,
        'rsi': 0.9, 'stochastic': 0.9,
    },
    MarketRegime.BEAR: {
        'macd': 1.2, 'sma_cross': 1.2, 'momentum': 1.15,
        'rsi': 0.9, 'stochastic': 0.9,
    },
    MarketRegime.SIDEWAYS: {
        'rsi': 1.3, 'stochastic': 1.4, 'bollinger': 1.2, 'support_resistance': 1.2,
        'macd': 0.8, 'sma_cross': 0.8, 'momentum': 0.8,
    },
    MarketRegime.VOLATILE: {
        'bollinger': 1.3, 'volume': 1.2, 'support_resistance': 1.1,
        'momentum': 0.8, 'stochastic': 0.8,
    },
}


@dataclass(frozen=True)
class RegimeState:
    """Regime classification for one (symbol, timeframe)."""
    symbol: str
    timeframe: str
    regime: MarketRegime
    confidence: float  # 0-1
    trend_strength: float = 0.0  # Signed slope in units of the trend threshold
    volatility: float = 0.0  # ATR / price
    reasoning: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'regime': self.regime.value,
            'confidence': self.confidence,
            'trend_strength': self.trend_strength,
            'volatility': self.volatility,
            'reasoning': list(self.reasoning)
        }


class RegimeDetector:
    """Heuristic regime classifier over indicators and recent closes."""

    def __init__(self, config=None):
        from ..config import RegimeConfig
        self.config = config or RegimeConfig()

    @staticmethod
    def indicator_multipliers(regime: MarketRegime) -> Dict[str, float]:
        return dict(REGIME_INDICATOR_MULTIPLIERS.get(regime, {}))

    def classify(self, indicator_set: IndicatorSet, candles: Sequence[Candle]) -> RegimeState:
        cfg = self.config
        symbol, timeframe = indicator_set.symbol, indicator_set.timeframe

        if len(candles) < cfg.min_candles or indicator_set.price <= 0:
            return RegimeState(
                symbol=symbol,
                timeframe=timeframe,
                regime=MarketRegime.SIDEWAYS,
                confidence=cfg.insufficient_confidence,
                reasoning=("Insufficient data for regime detection",)
            )

        closes = np.array([c.close for c in candles], dtype=float)
        profile = get_timeframe_profile(timeframe)
        threshold = cfg.trend_threshold * profile.trend_multiplier

        slope, consistency = self._calculate_trend(closes)
        trend_strength = slope / threshold if threshold > 0 else 0.0
        volatility = self._calculate_volatility(indicator_set, closes)
        adx_known = 'adx' not in indicator_set.insufficient
        adx = indicator_set.adx

        reasoning: List[str] = [
            f"Slope {slope:+.4%}/bar ({trend_strength:+.2f}x threshold)",
            f"Volatility {volatility:.2%} of price",
        ]
        if adx_known:
            reasoning.append(f"ADX {adx:.1f}")

        if volatility > cfg.volatility_threshold:
            regime = MarketRegime.VOLATILE
            confidence = 0.5 + 0.5 * min(1.0, volatility / cfg.volatility_threshold - 1)
            reasoning.append("Volatility above threshold")
        elif (abs(trend_strength) >= 1 and consistency >= 2 / 3
              and (not adx_known or adx >= cfg.adx_threshold)):
            regime = MarketRegime.BULL if trend_strength > 0 else MarketRegime.BEAR
            confidence = 0.5 + 0.1 * min(abs(trend_strength), 3.0) / 3 + 0.1 * consistency
            if adx_known:
                confidence += 0.1 * min(1.0, adx / (2 * cfg.adx_threshold))
            reasoning.append(f"{'Up' if trend_strength > 0 else 'Down'}trend, "
                             f"{consistency:.0%} slope agreement")
        else:
            regime = MarketRegime.SIDEWAYS
            confidence = 0.5 + 0.3 * (1 - min(abs(trend_strength), 1.0))
            reasoning.append("No dominant trend")

        confidence = float(np.clip(confidence, cfg.min_confidence, cfg.max_confidence))
        logger.debug(f"{symbol}/{timeframe}: {regime.value} ({confidence:.2f})")

        return RegimeState(
            symbol=symbol,
            timeframe=timeframe,
            regime=regime,
            confidence=confidence,
            trend_strength=float(trend_strength),
            volatility=float(volatility),
            reasoning=tuple(reasoning)
        )

    def _calculate_trend(self, closes: np.ndarray) -> Tuple[float, float]:
        """Weighted normalised regression slope and the share of windows agreeing with it."""
        slopes = []
        weights = []
        for window, weight in zip(self.config.slope_windows, self.config.slope_weights):
            if len(closes) < window:
                continue
            segment = closes[-window:]
            mean = segment.mean()
            if mean <= 0:
                continue
            slopes.append(np.polyfit(np.arange(window), segment, 1)[0] / mean)
            weights.append(weight)

        if not slopes:
            return 0.0, 0.0

        slope = float(np.average(slopes, weights=weights))
        if slope == 0:
            return 0.0, 0.0
        agreeing = sum(1 for s in slopes if np.sign(s) == np.sign(slope))
        return slope, agreeing / len(slopes)

    def _calculate_volatility(self, indicator_set: IndicatorSet, closes: np.ndarray) -> float:
        """ATR / price, or the stdev of recent returns when ATR is unavailable."""
        if 'atr' not in indicator_set.insufficient and indicator_set.price > 0:
            return indicator_set.atr / indicator_set.price
        recent = closes[-21:]
        if len(recent) < 3 or np.any(recent[:-1] <= 0):
            return 0.0
        return float(np.std(np.diff(recent) / recent[:-1]))
