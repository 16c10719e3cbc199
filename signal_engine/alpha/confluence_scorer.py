"""
Confluence Scoring
==================
Combines indicator votes, patterns and the market regime into one Signal.

Score convention: positive favours LONG, negative favours SHORT, the range is
[-100, 100]. Evidence that points both ways above a small threshold is a
conflict: the signal survives but its confidence is damped.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import logging

import numpy as np

from ..config import get_timeframe_profile
from ..features.feature_engine import IndicatorSet, VOTING_INDICATORS
from ..patterns.pattern_recognizer import Pattern, PatternSignal, summarize_patterns
from ..regime.regime_detector import MarketRegime, RegimeState, RegimeDetector

logger = logging.getLogger(__name__)


class Direction(Enum):
    LONG = "long"
    SHORT = "short"
    NEUTRAL = "neutral"

    @property
    def sign(self) -> int:
        return {'long': 1, 'short': -1}.get(self.value, 0)

    @classmethod
    def from_sign(cls, value: float) -> 'Direction':
        if value > 0:
            return cls.LONG
        if value < 0:
            return cls.SHORT
        return cls.NEUTRAL


@dataclass(frozen=True)
class IndicatorVote:
    """One indicator's directional call."""
    indicator: str
    direction: Direction
    strength: float  # 0-100
    reason: str = ""


@dataclass(frozen=True)
class Signal:
    """A scored trading signal for one (symbol, timeframe)."""
    symbol: str
    timeframe: str
    direction: Direction
    confidence: float  # 0-100
    entry_price: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    risk_reward_ratio: float
    confluence_score: float  # -100 to 100
    reasoning: Tuple[str, ...]
    indicator_snapshot: IndicatorSet
    regime: RegimeState
    patterns: Tuple[Pattern, ...] = ()
    indicator_votes: Tuple[IndicatorVote, ...] = ()
    timestamp: datetime = field(default_factory=datetime.now)
    signal_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.symbol, self.timeframe)

    @property
    def is_actionable(self) -> bool:
        return self.direction != Direction.NEUTRAL

    def to_dict(self) -> dict:
        return {
            'signal_id': self.signal_id,
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'direction': self.direction.value,
            'confidence': self.confidence,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'risk_reward_ratio': self.risk_reward_ratio,
            'confluence_score': self.confluence_score,
            'reasoning': list(self.reasoning),
            'indicators': self.indicator_snapshot.to_dict(),
            'regime': self.regime.to_dict(),
            'patterns': [p.to_dict() for p in self.patterns],
            'votes': {v.indicator: v.direction.value for v in self.indicator_votes},
            'timestamp': self.timestamp.isoformat()
        }


def risk_reward_ratio(entry: float, stop_loss: Optional[float], take_profit: Optional[float]) -> float:
    """|take_profit - entry| / |entry - stop_loss|; 0.0 when undefined."""
    if stop_loss is None or take_profit is None:
        return 0.0
    risk = abs(entry - stop_loss)
    if risk == 0:
        return 0.0
    return abs(take_profit - entry) / risk


def _scaled(value: float, full: float) -> float:
    """Map |value| onto 0-100, reaching 100 at ``full``."""
    if full <= 0:
        return 0.0
    return float(min(100.0, abs(value) / full * 100))


class ConfluenceScorer:
    """
    Scores an IndicatorSet plus patterns and regime into a Signal.

    Weights are passed per call; the scorer keeps no weight state of its own.
    """

    # Momentum (percent ROC) that counts as a full-strength vote
    MOMENTUM_FULL = 5.0

    def __init__(self, config=None):
        from ..config import ConfluenceConfig
        self.config = config or ConfluenceConfig()

    def score(self, indicator_set: IndicatorSet, patterns: Sequence[Pattern],
              regime: RegimeState, weights: Mapping[str, float],
              timestamp: datetime = None) -> Signal:
        cfg = self.config
        timestamp = timestamp or datetime.now()
        patterns = tuple(patterns)

        if indicator_set.is_degenerate:
            return self._neutral_signal(
                indicator_set, regime, patterns, timestamp,
                ("Insufficient market data: all indicators at neutral defaults",)
            )

        votes = self.indicator_votes(indicator_set)
        effective = self._effective_weights(weights, regime.regime)

        # =====================
        # Indicator evidence
        # =====================
        long_evidence = 0.0
        short_evidence = 0.0
        for vote in votes:
            contribution = effective.get(vote.indicator, 0.0) * vote.strength
            if vote.direction == Direction.LONG:
                long_evidence += contribution
            elif vote.direction == Direction.SHORT:
                short_evidence += contribution

        # =====================
        # Pattern evidence
        # =====================
        pattern_long, pattern_short = self._pattern_evidence(patterns)
        long_evidence += pattern_long
        short_evidence += pattern_short

        # =====================
        # Regime bias
        # =====================
        if regime.regime == MarketRegime.BULL:
            long_evidence *= cfg.regime_favour
            short_evidence *= cfg.regime_oppose
        elif regime.regime == MarketRegime.BEAR:
            long_evidence *= cfg.regime_oppose
            short_evidence *= cfg.regime_favour
        elif regime.regime == MarketRegime.VOLATILE:
            long_evidence *= cfg.volatile_damping
            short_evidence *= cfg.volatile_damping

        score = float(np.clip(long_evidence - short_evidence, -100.0, 100.0))
        conflict = long_evidence > cfg.conflict_threshold and short_evidence > cfg.conflict_threshold

        confidence = abs(score)
        if conflict:
            confidence *= cfg.conflict_damping
        confidence *= 0.5 + 0.5 * indicator_set.data_quality
        confidence = float(np.clip(confidence, cfg.min_confidence, cfg.max_confidence))

        direction = Direction.NEUTRAL if abs(score) < cfg.neutral_threshold else Direction.from_sign(score)

        reasoning = self._reasoning(votes, patterns, regime, indicator_set, score, conflict)

        stop_loss, take_profit = self.risk_levels(
            direction, indicator_set.price, indicator_set.atr, indicator_set.timeframe
        )

        signal = Signal(
            symbol=indicator_set.symbol,
            timeframe=indicator_set.timeframe,
            direction=direction,
            confidence=confidence,
            entry_price=indicator_set.price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            risk_reward_ratio=risk_reward_ratio(indicator_set.price, stop_loss, take_profit),
            confluence_score=score,
            reasoning=tuple(reasoning),
            indicator_snapshot=indicator_set,
            regime=regime,
            patterns=patterns,
            indicator_votes=tuple(votes),
            timestamp=timestamp
        )
        logger.debug(f"{signal.symbol}/{signal.timeframe}: {direction.value} "
                     f"score={score:+.1f} confidence={confidence:.1f}")
        return signal

    # =====================
    # Votes
    # =====================

    def indicator_votes(self, ind: IndicatorSet) -> List[IndicatorVote]:
        """Directional vote per voting indicator; defaulted indicators vote NEUTRAL."""
        rules = {
            'rsi': self._vote_rsi,
            'macd': self._vote_macd,
            'bollinger': self._vote_bollinger,
            'stochastic': self._vote_stochastic,
            'sma_cross': self._vote_sma_cross,
            'momentum': self._vote_momentum,
            'volume': self._vote_volume,
            'support_resistance': self._vote_support_resistance,
        }
        votes = []
        for name in VOTING_INDICATORS:
            if name in ind.insufficient:
                votes.append(IndicatorVote(name, Direction.NEUTRAL, 0.0, "insufficient history"))
            else:
                votes.append(rules[name](ind))
        return votes

    def _vote_rsi(self, ind: IndicatorSet) -> IndicatorVote:
        v = ind.rsi
        if v <= 30:
            return IndicatorVote('rsi', Direction.LONG, (30 - v) / 30 * 100, f"RSI {v:.1f} oversold")
        if v >= 70:
            return IndicatorVote('rsi', Direction.SHORT, (v - 70) / 30 * 100, f"RSI {v:.1f} overbought")
        if v < 45:
            return IndicatorVote('rsi', Direction.LONG, (45 - v) / 15 * 20, f"RSI {v:.1f} weak")
        if v > 55:
            return IndicatorVote('rsi', Direction.SHORT, (v - 55) / 15 * 20, f"RSI {v:.1f} stretched")
        return IndicatorVote('rsi', Direction.NEUTRAL, 0.0, f"RSI {v:.1f} neutral")

    def _vote_macd(self, ind: IndicatorSet) -> IndicatorVote:
        line, hist = ind.macd.line, ind.macd.histogram
        scale = ind.atr if ind.atr > 0 else ind.price * 0.01
        strength = _scaled(hist / scale, 0.5) if scale > 0 else 0.0
        if hist == 0:
            return IndicatorVote('macd', Direction.NEUTRAL, 0.0, "MACD flat")
        direction = Direction.from_sign(hist)
        if np.sign(line) != np.sign(hist):
            # Histogram turning against the line: early, half weight
            return IndicatorVote('macd', direction, strength / 2, "MACD histogram diverging from line")
        label = "bullish" if direction == Direction.LONG else "bearish"
        return IndicatorVote('macd', direction, strength, f"MACD {label}")

    def _vote_bollinger(self, ind: IndicatorSet) -> IndicatorVote:
        bands = ind.bollinger
        if bands.width <= 0:
            return IndicatorVote('bollinger', Direction.NEUTRAL, 0.0, "Bollinger bands collapsed")
        position = (ind.price - bands.lower) / bands.width
        if position <= 0.2:
            return IndicatorVote('bollinger', Direction.LONG, min(100.0, (0.2 - position) / 0.2 * 100),
                                 "Price at lower Bollinger band")
        if position >= 0.8:
            return IndicatorVote('bollinger', Direction.SHORT, min(100.0, (position - 0.8) / 0.2 * 100),
                                 "Price at upper Bollinger band")
        return IndicatorVote('bollinger', Direction.NEUTRAL, 0.0, "Price inside Bollinger bands")

    def _vote_stochastic(self, ind: IndicatorSet) -> IndicatorVote:
        k = ind.stochastic.k
        if k <= 20:
            return IndicatorVote('stochastic', Direction.LONG, (20 - k) / 20 * 100, f"Stochastic {k:.1f} oversold")
        if k >= 80:
            return IndicatorVote('stochastic', Direction.SHORT, (k - 80) / 20 * 100, f"Stochastic {k:.1f} overbought")
        return IndicatorVote('stochastic', Direction.NEUTRAL, 0.0, f"Stochastic {k:.1f} neutral")

    def _vote_sma_cross(self, ind: IndicatorSet) -> IndicatorVote:
        if ind.sma_cross > 0:
            return IndicatorVote('sma_cross', Direction.LONG, 60.0, "Fast SMA above slow SMA")
        if ind.sma_cross < 0:
            return IndicatorVote('sma_cross', Direction.SHORT, 60.0, "Fast SMA below slow SMA")
        return IndicatorVote('sma_cross', Direction.NEUTRAL, 0.0, "SMAs level")

    def _vote_momentum(self, ind: IndicatorSet) -> IndicatorVote:
        m = ind.momentum
        if abs(m) < 0.1:
            return IndicatorVote('momentum', Direction.NEUTRAL, 0.0, f"Momentum {m:+.2f}% flat")
        return IndicatorVote('momentum', Direction.from_sign(m), _scaled(m, self.MOMENTUM_FULL),
                             f"Momentum {m:+.2f}%")

    def _vote_volume(self, ind: IndicatorSet) -> IndicatorVote:
        ratio = ind.volume_trend
        if ratio < 1.5 or abs(ind.momentum) < 0.1:
            return IndicatorVote('volume', Direction.NEUTRAL, 0.0, f"Volume {ratio:.2f}x average")
        return IndicatorVote('volume', Direction.from_sign(ind.momentum), min(100.0, (ratio - 1) * 100),
                             f"Volume {ratio:.2f}x average confirms momentum")

    def _vote_support_resistance(self, ind: IndicatorSet) -> IndicatorVote:
        span = ind.resistance - ind.support
        if span <= 0:
            return IndicatorVote('support_resistance', Direction.NEUTRAL, 0.0, "No support/resistance range")
        position = (ind.price - ind.support) / span
        if position <= 0.2:
            return IndicatorVote('support_resistance', Direction.LONG,
                                 min(100.0, (0.2 - position) / 0.2 * 100),
                                 f"Near support {ind.support:.2f}")
        if position >= 0.8:
            return IndicatorVote('support_resistance', Direction.SHORT,
                                 min(100.0, (position - 0.8) / 0.2 * 100),
                                 f"Near resistance {ind.resistance:.2f}")
        return IndicatorVote('support_resistance', Direction.NEUTRAL, 0.0, "Mid-range")

    # =====================
    # Helpers
    # =====================

    def _effective_weights(self, weights: Mapping[str, float], regime: MarketRegime) -> Dict[str, float]:
        """Apply regime emphasis and renormalise to 1.0."""
        multipliers = RegimeDetector.indicator_multipliers(regime)
        adjusted = {name: weights.get(name, 0.0) * multipliers.get(name, 1.0) for name in VOTING_INDICATORS}
        total = sum(adjusted.values())
        if total <= 0:
            return {name: 1.0 / len(VOTING_INDICATORS) for name in VOTING_INDICATORS}
        return {name: w / total for name, w in adjusted.items()}

    def _pattern_evidence(self, patterns: Sequence[Pattern]) -> Tuple[float, float]:
        category_weights = self.config.pattern_category_weights
        bullish = 0.0
        bearish = 0.0
        for pattern in patterns:
            contribution = pattern.confidence * category_weights.get(pattern.category.value, 0.0) * 100
            if pattern.signal == PatternSignal.BULLISH:
                bullish += contribution
            elif pattern.signal == PatternSignal.BEARISH:
                bearish += contribution
        cap = self.config.max_pattern_contribution
        return min(bullish, cap), min(bearish, cap)

    def risk_levels(self, direction: Direction, entry: float, atr: float,
                    timeframe: str) -> Tuple[Optional[float], Optional[float]]:
        """ATR-based stop and fixed-ratio target; None for NEUTRAL."""
        if direction == Direction.NEUTRAL or entry <= 0:
            return None, None
        cfg = self.config
        profile = get_timeframe_profile(timeframe)
        stop_distance = max(atr * profile.atr_stop_multiplier, entry * cfg.min_stop_fraction)
        # Keep both levels positive
        stop_distance = min(stop_distance, entry / (2 * max(cfg.reward_ratio, 1.0)))
        target_distance = stop_distance * cfg.reward_ratio
        sign = direction.sign
        return entry - sign * stop_distance, entry + sign * target_distance

    def _reasoning(self, votes: Sequence[IndicatorVote], patterns: Sequence[Pattern],
                   regime: RegimeState, ind: IndicatorSet, score: float, conflict: bool) -> List[str]:
        long_votes = [v for v in votes if v.direction == Direction.LONG]
        short_votes = [v for v in votes if v.direction == Direction.SHORT]
        neutral = len(votes) - len(long_votes) - len(short_votes)

        reasoning = [f"Indicator consensus: {len(long_votes)} long, {len(short_votes)} short, {neutral} neutral"]
        for vote in sorted(long_votes + short_votes, key=lambda v: -v.strength):
            reasoning.append(f"{vote.reason} ({vote.direction.value}, strength {vote.strength:.0f})")

        if patterns:
            summary = summarize_patterns(patterns)
            reasoning.append(f"Patterns: {summary['bullish']} bullish, {summary['bearish']} bearish "
                             f"(avg confidence {summary['avg_confidence']:.2f})")

        reasoning.append(f"Market regime: {regime.regime.value} ({regime.confidence:.2f})")
        if conflict:
            reasoning.append("Conflicting signals detected")
        if ind.insufficient:
            reasoning.append(f"Insufficient history for: {', '.join(ind.insufficient)}")

        magnitude = abs(score)
        if magnitude >= 50:
            label = "Strong"
        elif magnitude >= 25:
            label = "Moderate"
        else:
            label = "Weak"
        reasoning.append(f"{label} confluence (score {score:+.1f})")
        return reasoning

    def _neutral_signal(self, ind: IndicatorSet, regime: RegimeState, patterns: Tuple[Pattern, ...],
                        timestamp: datetime, reasoning: Tuple[str, ...]) -> Signal:
        return Signal(
            symbol=ind.symbol,
            timeframe=ind.timeframe,
            direction=Direction.NEUTRAL,
            confidence=self.config.degenerate_confidence,
            entry_price=ind.price,
            stop_loss=None,
            take_profit=None,
            risk_reward_ratio=0.0,
            confluence_score=0.0,
            reasoning=reasoning + (f"Market regime: {regime.regime.value} ({regime.confidence:.2f})",),
            indicator_snapshot=ind,
            regime=regime,
            patterns=patterns,
            indicator_votes=tuple(IndicatorVote(name, Direction.NEUTRAL, 0.0, "insufficient history")
                                  for name in VOTING_INDICATORS),
            timestamp=timestamp
        )
