"""
Adaptive Weight Manager
=======================
Per-indicator weights for the confluence score, rescaled from outcome feedback.

Weights are kept per (symbol, timeframe). Every update builds a new immutable
weight map and swaps the reference, so readers never lock and never see a
vector that is only partly renormalised.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Tuple
import threading
import logging

from ..exceptions import InvalidParameterError

logger = logging.getLogger(__name__)

WeightKey = Tuple[str, str]  # (symbol, timeframe)
StatKey = Tuple[str, str, str]  # (indicator, symbol, timeframe)


@dataclass(frozen=True)
class IndicatorWeight:
    """Weight and accuracy counters for one indicator on one key."""
    indicator: str
    weight: float
    total_signals: int = 0
    successful_signals: int = 0

    @property
    def accuracy(self) -> Optional[float]:
        if self.total_signals == 0:
            return None
        return self.successful_signals / self.total_signals


@dataclass(frozen=True)
class OutcomeRecord:
    indicator: str
    symbol: str
    timeframe: str
    successful: bool
    recorded_at: datetime


@dataclass
class _Counter:
    total: int = 0
    successful: int = 0
    pending: int = 0  # Outcomes since the last weight update


class WeightSnapshot:
    """
    Read-only view of every weight vector at one instant.

    The scheduler takes one at cycle start so every pair in the cycle scores
    against the same weights.
    """

    def __init__(self, weights: Mapping[WeightKey, Mapping[str, float]],
                 base: Mapping[str, float], version: int):
        self._weights = weights
        self._base = base
        self.version = version

    def get(self, symbol: str, timeframe: str) -> Mapping[str, float]:
        return self._weights.get((symbol, timeframe), self._base)

    def keys(self) -> List[WeightKey]:
        return list(self._weights.keys())


def normalize_weights(weights: Mapping[str, float], min_weight: float,
                      max_weight: float) -> Dict[str, float]:
    """
    Scale weights to sum to 1.0 while keeping each within [min_weight, max_weight].

    Finds the common scale factor at which the clipped weights sum to 1.0,
    so relative order is preserved and the bounds hold on every key.
    Negative weights count as zero; an all-zero vector is spread uniformly.
    """
    n = len(weights)
    if n == 0:
        return {}
    if n * min_weight > 1.0 + 1e-12 or n * max_weight < 1.0 - 1e-12:
        raise InvalidParameterError(f"Cannot fit {n} weights in [{min_weight}, {max_weight}] summing to 1")

    raw = {k: max(float(v), 0.0) for k, v in weights.items()}
    if sum(raw.values()) <= 0:
        raw = {k: 1.0 for k in raw}
    raw = {k: max(v, 1e-12) for k, v in raw.items()}

    def clipped(scale: float) -> Dict[str, float]:
        return {k: min(max(v * scale, min_weight), max_weight) for k, v in raw.items()}

    # sum(clipped(scale)) is monotone in scale, so bisect for the root
    lo, hi = 0.0, 1.0 / sum(raw.values())
    while sum(clipped(hi).values()) < 1.0 and hi < 1e300:
        lo, hi = hi, hi * 2.0
    for _ in range(200):
        mid = (lo + hi) / 2.0
        if sum(clipped(mid).values()) < 1.0:
            lo = mid
        else:
            hi = mid
    result = clipped(hi)

    # Spread the rounding residue over the keys strictly inside the bounds
    residue = 1.0 - sum(result.values())
    inside = [k for k, v in result.items() if min_weight < v < max_weight]
    if inside and residue:
        share = residue / len(inside)
        for k in inside:
            result[k] = min(max(result[k] + share, min_weight), max_weight)

    return {k: result[k] for k in weights}


class AdaptiveWeightManager:
    """
    Holds indicator weights and their accuracy counters.

    Every ``update_threshold`` outcomes for an (indicator, symbol, timeframe)
    the weight is rescaled by ``accuracy / target_accuracy``, clamped to the
    configured bounds, and the whole vector for that (symbol, timeframe) is
    renormalised to 1.0.
    """

    def __init__(self, config=None):
        from ..config import WeightConfig
        self.config = config or WeightConfig()

        base = normalize_weights(self.config.base_weights, self.config.min_weight, self.config.max_weight)
        self._base: Mapping[str, float] = MappingProxyType(base)
        self._weights: Mapping[WeightKey, Mapping[str, float]] = MappingProxyType({})
        self._version = 0

        self._counters: Dict[StatKey, _Counter] = {}
        self._history: Deque[OutcomeRecord] = deque(maxlen=self.config.history_limit)
        self._write_lock = threading.Lock()

        logger.info(f"AdaptiveWeightManager initialized with {len(base)} indicators")

    @property
    def indicators(self) -> Tuple[str, ...]:
        return tuple(self._base.keys())

    @property
    def base_weights(self) -> Mapping[str, float]:
        return self._base

    # =====================
    # Reads (lock free)
    # =====================

    def current_weights(self, symbol: str, timeframe: str) -> Mapping[str, float]:
        """Immutable weight vector for a key; base weights until feedback arrives."""
        return self._weights.get((symbol, timeframe), self._base)

    def snapshot(self) -> WeightSnapshot:
        return WeightSnapshot(self._weights, self._base, self._version)

    # =====================
    # Writes
    # =====================

    def record_outcome(self, indicator: str, symbol: str, timeframe: str, successful: bool):
        """Record whether an indicator's vote matched the realised move."""
        if indicator not in self._base:
            raise InvalidParameterError(f"Unknown indicator: {indicator}")

        with self._write_lock:
            counter = self._counters.setdefault((indicator, symbol, timeframe), _Counter())
            counter.total += 1
            counter.pending += 1
            if successful:
                counter.successful += 1
            self._history.append(OutcomeRecord(indicator, symbol, timeframe, bool(successful), datetime.now()))

            if counter.pending >= self.config.update_threshold:
                self._apply_updates([(indicator, symbol, timeframe)])

    def rebalance(self) -> int:
        """Apply every pending outcome now. Returns the number of indicators rescaled."""
        with self._write_lock:
            pending = [key for key, counter in self._counters.items() if counter.pending > 0]
            if pending:
                self._apply_updates(pending)
            return len(pending)

    def reset(self):
        """Drop all feedback and return to the base weights."""
        with self._write_lock:
            self._counters.clear()
            self._history.clear()
            self._weights = MappingProxyType({})
            self._version += 1
        logger.info("Indicator weights reset to base")

    def _apply_updates(self, keys: Iterable[StatKey]):
        """Rescale the given indicators and publish new vectors. Caller holds the write lock."""
        cfg = self.config
        by_pair: Dict[WeightKey, List[str]] = {}
        for indicator, symbol, timeframe in keys:
            by_pair.setdefault((symbol, timeframe), []).append(indicator)

        updated = dict(self._weights)
        for pair, indicators in by_pair.items():
            vector = dict(updated.get(pair, self._base))
            for indicator in indicators:
                counter = self._counters[(indicator, pair[0], pair[1])]
                accuracy = counter.successful / counter.total
                old = vector[indicator]
                vector[indicator] = min(max(old * accuracy / cfg.target_accuracy, cfg.min_weight),
                                        cfg.max_weight)
                counter.pending = 0
                logger.info(f"{indicator} {pair[0]}/{pair[1]}: accuracy {accuracy:.2f}, "
                            f"weight {old:.4f} -> {vector[indicator]:.4f}")
            updated[pair] = MappingProxyType(normalize_weights(vector, cfg.min_weight, cfg.max_weight))

        # Single reference swap publishes every changed vector at once
        self._weights = MappingProxyType(updated)
        self._version += 1

    # =====================
    # Reporting
    # =====================

    def indicator_weights(self, symbol: str, timeframe: str) -> List[IndicatorWeight]:
        weights = self.current_weights(symbol, timeframe)
        result = []
        for indicator, weight in weights.items():
            counter = self._counters.get((indicator, symbol, timeframe), _Counter())
            result.append(IndicatorWeight(indicator, weight, counter.total, counter.successful))
        return result

    def stats(self) -> Dict[str, Dict[str, float]]:
        """Accuracy and usage per indicator across all keys."""
        with self._write_lock:
            counters = [(key, _Counter(c.total, c.successful, c.pending)) for key, c in self._counters.items()]

        stats = {name: {'total_signals': 0, 'successful_signals': 0, 'accuracy': None,
                        'base_weight': weight} for name, weight in self._base.items()}
        for (indicator, _, _), counter in counters:
            stats[indicator]['total_signals'] += counter.total
            stats[indicator]['successful_signals'] += counter.successful
        for entry in stats.values():
            if entry['total_signals']:
                entry['accuracy'] = entry['successful_signals'] / entry['total_signals']
        return stats

    def recent_outcomes(self, limit: int = 100) -> List[OutcomeRecord]:
        return list(self._history)[-limit:]
