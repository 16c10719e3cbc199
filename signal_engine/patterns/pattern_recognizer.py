"""
Pattern Recognition
===================
Candlestick, chart, volume and Fibonacci patterns over the trailing window.

An empty result is normal. Each detector needs a minimum number of candles
and is skipped quietly when the window is shorter.
"""

import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence
import logging

from ..data.data_manager import Candle

logger = logging.getLogger(__name__)


class PatternType(Enum):
    DOJI = "doji"
    BULLISH_ENGULFING = "bullish_engulfing"
    BEARISH_ENGULFING = "bearish_engulfing"
    HAMMER = "hammer"
    SHOOTING_STAR = "shooting_star"
    DOUBLE_TOP = "double_top"
    DOUBLE_BOTTOM = "double_bottom"
    ASCENDING_TRIANGLE = "ascending_triangle"
    DESCENDING_TRIANGLE = "descending_triangle"
    SYMMETRICAL_TRIANGLE = "symmetrical_triangle"
    VOLUME_SPIKE = "volume_spike"
    FIBONACCI_RETRACEMENT = "fibonacci_retracement"


class PatternCategory(Enum):
    CANDLESTICK = "candlestick"
    CHART = "chart"
    VOLUME = "volume"
    FIBONACCI = "fibonacci"


class PatternSignal(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"

    @property
    def sign(self) -> int:
        return {'bullish': 1, 'bearish': -1}.get(self.value, 0)


class PatternStrength(Enum):
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"


@dataclass(frozen=True)
class Pattern:
    """A detected pattern with its directional bias."""
    pattern_type: PatternType
    category: PatternCategory
    signal: PatternSignal
    confidence: float  # 0-1
    timeframe: str
    description: str = ""

    @property
    def strength(self) -> PatternStrength:
        if self.confidence >= 0.75:
            return PatternStrength.STRONG
        if self.confidence >= 0.6:
            return PatternStrength.MODERATE
        return PatternStrength.WEAK

    def to_dict(self) -> dict:
        return {
            'type': self.pattern_type.value,
            'category': self.category.value,
            'signal': self.signal.value,
            'confidence': self.confidence,
            'strength': self.strength.value,
            'timeframe': self.timeframe,
            'description': self.description
        }


def summarize_patterns(patterns: Sequence[Pattern]) -> Dict[str, float]:
    """Counts by direction and mean confidence."""
    bullish = sum(1 for p in patterns if p.signal == PatternSignal.BULLISH)
    bearish = sum(1 for p in patterns if p.signal == PatternSignal.BEARISH)
    return {
        'total': len(patterns),
        'bullish': bullish,
        'bearish': bearish,
        'neutral': len(patterns) - bullish - bearish,
        'avg_confidence': float(np.mean([p.confidence for p in patterns])) if patterns else 0.0
    }


class PatternRecognizer:
    """
    Detects patterns in recent candles.

    Detectors:
    - Candlestick: doji, engulfing, hammer, shooting star
    - Chart: double top/bottom, triangles
    - Volume: spike against the rolling mean
    - Fibonacci: close near a retracement level of the window's swing
    """

    def __init__(self, config=None):
        from ..config import PatternConfig
        self.config = config or PatternConfig()

    def detect(self, candles: Sequence[Candle], timeframe: str = None) -> List[Pattern]:
        window = list(candles)[-self.config.lookback:]
        if not window:
            return []
        timeframe = timeframe or window[-1].timeframe

        o = np.array([bar.open for bar in window], dtype=float)
        h = np.array([bar.high for bar in window], dtype=float)
        l = np.array([bar.low for bar in window], dtype=float)
        c = np.array([bar.close for bar in window], dtype=float)
        v = np.array([bar.volume for bar in window], dtype=float)

        patterns: List[Pattern] = []
        patterns.extend(self._candlestick_patterns(o, h, l, c, timeframe))
        patterns.extend(self._chart_patterns(h, l, timeframe))

        spike = self._volume_spike(o, c, v, timeframe)
        if spike:
            patterns.append(spike)

        fib = self._fibonacci_retracement(h, l, c, timeframe)
        if fib:
            patterns.append(fib)

        if patterns:
            logger.debug(f"Detected {[p.pattern_type.value for p in patterns]} on {timeframe}")
        return patterns

    # =====================
    # Candlestick
    # =====================

    def _candlestick_patterns(self, o, h, l, c, timeframe) -> List[Pattern]:
        if len(c) < 2:
            return []
        found = []
        body = abs(c[-1] - o[-1])
        rng = h[-1] - l[-1]
        if rng <= 0:
            return found

        upper_shadow = h[-1] - max(o[-1], c[-1])
        lower_shadow = min(o[-1], c[-1]) - l[-1]
        body_ratio = body / rng

        if body_ratio < self.config.doji_body_ratio:
            found.append(Pattern(
                PatternType.DOJI, PatternCategory.CANDLESTICK, PatternSignal.NEUTRAL,
                0.5 + 0.2 * (1 - body_ratio / self.config.doji_body_ratio), timeframe,
                "Doji: indecision"
            ))
        else:
            # Direction of the move leading into the candle
            lookback = min(5, len(c) - 1)
            prior_move = c[-2] - c[-1 - lookback]
            ratio = self.config.shadow_body_ratio

            if lower_shadow >= ratio * body and upper_shadow <= body and prior_move < 0:
                found.append(Pattern(
                    PatternType.HAMMER, PatternCategory.CANDLESTICK, PatternSignal.BULLISH,
                    min(0.8, 0.6 + 0.05 * (lower_shadow / body - ratio)), timeframe,
                    "Hammer after decline"
                ))
            elif upper_shadow >= ratio * body and lower_shadow <= body and prior_move > 0:
                found.append(Pattern(
                    PatternType.SHOOTING_STAR, PatternCategory.CANDLESTICK, PatternSignal.BEARISH,
                    min(0.8, 0.6 + 0.05 * (upper_shadow / body - ratio)), timeframe,
                    "Shooting star after advance"
                ))

        prev_body = abs(c[-2] - o[-2])
        if prev_body > 0 and body > prev_body:
            if c[-2] < o[-2] and c[-1] > o[-1] and o[-1] <= c[-2] and c[-1] >= o[-2]:
                found.append(Pattern(
                    PatternType.BULLISH_ENGULFING, PatternCategory.CANDLESTICK, PatternSignal.BULLISH,
                    min(0.85, 0.6 + 0.2 * (body / prev_body - 1)), timeframe,
                    "Bullish engulfing"
                ))
            elif c[-2] > o[-2] and c[-1] < o[-1] and o[-1] >= c[-2] and c[-1] <= o[-2]:
                found.append(Pattern(
                    PatternType.BEARISH_ENGULFING, PatternCategory.CANDLESTICK, PatternSignal.BEARISH,
                    min(0.85, 0.6 + 0.2 * (body / prev_body - 1)), timeframe,
                    "Bearish engulfing"
                ))
        return found

    # =====================
    # Chart formations
    # =====================

    def _chart_patterns(self, h, l, timeframe) -> List[Pattern]:
        found = []
        if self._is_double_bottom(l[-30:]):
            found.append(Pattern(PatternType.DOUBLE_BOTTOM, PatternCategory.CHART,
                                 PatternSignal.BULLISH, 0.7, timeframe, "Double bottom"))
        if self._is_double_top(h[-30:]):
            found.append(Pattern(PatternType.DOUBLE_TOP, PatternCategory.CHART,
                                 PatternSignal.BEARISH, 0.7, timeframe, "Double top"))

        triangle = self._triangle(h[-20:], l[-20:], timeframe)
        if triangle:
            found.append(triangle)
        return found

    def _is_double_bottom(self, lows: np.ndarray) -> bool:
        """Two similar lows with a rally between them."""
        if len(lows) < 20:
            return False
        half = len(lows) // 2
        idx1 = int(np.argmin(lows[:half]))
        idx2 = int(np.argmin(lows[half:])) + half
        low1, low2 = lows[idx1], lows[idx2]
        if low1 <= 0 or abs(low1 - low2) / low1 >= self.config.double_top_tolerance:
            return False
        between = lows[idx1:idx2]
        return len(between) > 0 and between.max() > low1 * (1 + self.config.min_pullback)

    def _is_double_top(self, highs: np.ndarray) -> bool:
        """Two similar highs with a pullback between them."""
        if len(highs) < 20:
            return False
        half = len(highs) // 2
        idx1 = int(np.argmax(highs[:half]))
        idx2 = int(np.argmax(highs[half:])) + half
        high1, high2 = highs[idx1], highs[idx2]
        if high1 <= 0 or abs(high1 - high2) / high1 >= self.config.double_top_tolerance:
            return False
        between = highs[idx1:idx2]
        return len(between) > 0 and between.min() < high1 * (1 - self.config.min_pullback)

    def _triangle(self, highs: np.ndarray, lows: np.ndarray, timeframe: str) -> Optional[Pattern]:
        """Converging highs / lows from linear fits normalised by price."""
        if len(highs) < 10:
            return None
        scale = float(np.mean(highs + lows) / 2)
        if scale <= 0:
            return None
        x = np.arange(len(highs))
        high_slope = np.polyfit(x, highs, 1)[0] / scale
        low_slope = np.polyfit(x, lows, 1)[0] / scale
        flat = self.config.triangle_flat_slope

        if abs(high_slope) < flat and low_slope > flat:
            return Pattern(PatternType.ASCENDING_TRIANGLE, PatternCategory.CHART,
                           PatternSignal.BULLISH, 0.65, timeframe,
                           "Ascending triangle: flat resistance, rising lows")
        if abs(low_slope) < flat and high_slope < -flat:
            return Pattern(PatternType.DESCENDING_TRIANGLE, PatternCategory.CHART,
                           PatternSignal.BEARISH, 0.65, timeframe,
                           "Descending triangle: flat support, falling highs")
        if high_slope < -flat and low_slope > flat:
            return Pattern(PatternType.SYMMETRICAL_TRIANGLE, PatternCategory.CHART,
                           PatternSignal.NEUTRAL, 0.55, timeframe,
                           "Symmetrical triangle: converging range")
        return None

    # =====================
    # Volume
    # =====================

    def _volume_spike(self, o, c, v, timeframe) -> Optional[Pattern]:
        period = self.config.volume_period
        if len(v) < period + 1:
            return None
        mean = v[-period - 1:-1].mean()
        if mean <= 0:
            return None
        ratio = v[-1] / mean
        if ratio < self.config.volume_spike_ratio:
            return None

        if c[-1] > o[-1]:
            signal = PatternSignal.BULLISH
        elif c[-1] < o[-1]:
            signal = PatternSignal.BEARISH
        else:
            signal = PatternSignal.NEUTRAL
        confidence = min(0.9, 0.6 + 0.1 * (ratio - self.config.volume_spike_ratio))
        return Pattern(PatternType.VOLUME_SPIKE, PatternCategory.VOLUME, signal, confidence,
                       timeframe, f"Volume {ratio:.1f}x the {period}-bar average")

    # =====================
    # Fibonacci
    # =====================

    def _fibonacci_retracement(self, h, l, c, timeframe) -> Optional[Pattern]:
        if len(c) < 10:
            return None
        high_idx = int(np.argmax(h))
        low_idx = int(np.argmin(l))
        swing_high, swing_low = h[high_idx], l[low_idx]
        swing = swing_high - swing_low
        if swing <= 0:
            return None

        price = c[-1]
        uptrend = high_idx > low_idx
        tolerance = self.config.fibonacci_tolerance * swing

        best = None
        for ratio in self.config.fibonacci_levels:
            level = swing_high - ratio * swing if uptrend else swing_low + ratio * swing
            distance = abs(price - level)
            if distance <= tolerance and (best is None or distance < best[1]):
                best = (ratio, distance, level)

        if best is None:
            return None
        ratio, distance, level = best
        closeness = 1 - distance / tolerance if tolerance > 0 else 1.0
        signal = PatternSignal.BULLISH if uptrend else PatternSignal.BEARISH
        return Pattern(PatternType.FIBONACCI_RETRACEMENT, PatternCategory.FIBONACCI, signal,
                       0.65 + 0.1 * closeness, timeframe,
                       f"Price at {ratio:.1%} retracement ({level:.2f})")
