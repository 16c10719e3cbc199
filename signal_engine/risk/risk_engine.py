"""
Risk Engine Module
==================
Monte Carlo risk assessment for a published Signal.

Each iteration walks a price path from the entry, closing it at the stop or
the target when touched, or at the horizon otherwise. Normal shocks come from
a Box-Muller transform of a seeded generator, so a fixed seed reproduces the
assessment exactly.

All returns are fractions of the entry price (0.02 == +2%) and are signed in
the trade's direction.
"""

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple
import logging

import numpy as np

from ..alpha.confluence_scorer import Direction, Signal, risk_reward_ratio
from ..config import get_timeframe_profile
from ..data.data_manager import DataCache
from ..exceptions import ComputationTimeoutError, InvalidParameterError

logger = logging.getLogger(__name__)


class RiskLevel(Enum):
    """Risk levels from the composite risk score."""
    VERY_LOW = "very_low"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    VERY_HIGH = "very_high"


@dataclass(frozen=True)
class ReturnDistribution:
    mean: float
    std: float
    min: float
    max: float
    percentiles: Dict[int, float] = field(default_factory=dict)


@dataclass(frozen=True)
class RiskAssessment:
    """Monte Carlo risk metrics for one signal."""
    signal_id: str
    symbol: str
    timeframe: str
    expected_return: float
    volatility: float  # Annualised stddev of trade returns
    var_95: float
    cvar_95: float
    max_drawdown: float  # Worst simulated trade return
    win_probability: float
    sharpe_ratio: float  # Per trade: mean / stddev
    kelly_fraction: float
    recommended_position_size: float  # Fraction of capital
    distribution: ReturnDistribution
    confidence_interval: Tuple[float, float]
    risk_score: float  # 0-100, higher is safer
    risk_level: RiskLevel
    iterations: int
    seed: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'signal_id': self.signal_id,
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'expected_return': self.expected_return,
            'volatility': self.volatility,
            'var_95': self.var_95,
            'cvar_95': self.cvar_95,
            'max_drawdown': self.max_drawdown,
            'win_probability': self.win_probability,
            'sharpe_ratio': self.sharpe_ratio,
            'kelly_fraction': self.kelly_fraction,
            'recommended_position_size': self.recommended_position_size,
            'distribution': {
                'mean': self.distribution.mean,
                'std': self.distribution.std,
                'min': self.distribution.min,
                'max': self.distribution.max,
                'percentiles': dict(self.distribution.percentiles)
            },
            'confidence_interval': list(self.confidence_interval),
            'risk_score': self.risk_score,
            'risk_level': self.risk_level.value,
            'iterations': self.iterations,
            'seed': self.seed
        }


class PositionSizer:
    """Position sizing from simulated win rate and payoff."""

    @staticmethod
    def kelly_criterion(win_probability: float, payoff_ratio: float, max_fraction: float = 0.25) -> float:
        """
        Kelly fraction ``p - (1 - p) / b`` clamped to [0, max_fraction].
        """
        if payoff_ratio <= 0:
            return 0.0
        kelly = win_probability - (1 - win_probability) / payoff_ratio
        return float(min(max(kelly, 0.0), max_fraction))


class MonteCarloRiskEngine:
    """
    On-demand Monte Carlo risk assessment.

    Iterations run in fixed-size chunks; the run aborts with
    ``ComputationTimeoutError`` once it exceeds its time budget.
    """

    def __init__(self, config=None):
        from ..config import RiskConfig
        self.config = config or RiskConfig()
        self.cache = DataCache()

    def assess(self, signal: Signal, iterations: int = None, seed: int = None) -> RiskAssessment:
        cfg = self.config
        iterations = cfg.default_iterations if iterations is None else iterations
        self._validate(signal, iterations)

        cache_key = (signal.signal_id, iterations, seed)
        if seed is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        samples = self._simulate(signal, iterations, seed)
        assessment = self._summarize(samples, seed, signal.signal_id, signal.symbol,
                                     signal.timeframe, self._payoff(signal))

        if seed is not None:
            self.cache.set(cache_key, assessment, cfg.cache_ttl_seconds)
        logger.info(f"Risk {signal.symbol}/{signal.timeframe} {signal.direction.value}: "
                    f"E[r]={assessment.expected_return:+.4f} p(win)={assessment.win_probability:.2f} "
                    f"kelly={assessment.kelly_fraction:.3f} ({iterations} paths)")
        return assessment

    def assess_batch(self, signals: Sequence[Signal], iterations: int = None,
                     seed: int = None) -> Dict[str, RiskAssessment]:
        """
        Assess each signal independently, keyed by signal_id.

        With a seed, signal ``i`` runs with ``seed + i`` so results are
        reproducible without every signal sharing the same shocks.
        """
        results = {}
        for i, signal in enumerate(signals):
            results[signal.signal_id] = self.assess(
                signal, iterations, None if seed is None else seed + i)
        return results

    def assess_portfolio(self, signals: Sequence[Signal], weights: Sequence[float],
                         iterations: int = None, seed: int = None) -> RiskAssessment:
        """
        Assess a weighted basket of signals as one position.

        Weights are normalised to sum to 1. Every path's return is the
        weighted sum of each signal's simulated return, and the first signal's
        timeframe sets the annualisation.
        """
        signals = list(signals)
        weights = [float(w) for w in weights]
        if not signals:
            raise InvalidParameterError("Portfolio needs at least one signal")
        if len(signals) != len(weights):
            raise InvalidParameterError(
                f"Got {len(signals)} signals but {len(weights)} weights")
        if any(not math.isfinite(w) or w < 0 for w in weights) or sum(weights) <= 0:
            raise InvalidParameterError(f"Portfolio weights must be non-negative with a positive sum: {weights}")

        iterations = self.config.default_iterations if iterations is None else iterations
        for signal in signals:
            self._validate(signal, iterations)

        total = sum(weights)
        weights = [w / total for w in weights]
        rng = np.random.default_rng(seed)
        started = time.monotonic()
        samples = np.zeros(iterations)
        for signal, weight in zip(signals, weights):
            samples += weight * self._simulate(signal, iterations, rng, started)

        payoff = sum(w * self._payoff(s) for s, w in zip(signals, weights))
        assessment = self._summarize(
            samples, seed, "portfolio:" + "+".join(s.signal_id for s in signals),
            ",".join(s.symbol for s in signals), signals[0].timeframe, payoff)
        logger.info(f"Portfolio risk over {len(signals)} signals: "
                    f"E[r]={assessment.expected_return:+.4f} p(win)={assessment.win_probability:.2f} "
                    f"({iterations} paths)")
        return assessment

    @staticmethod
    def _payoff(signal: Signal) -> float:
        return signal.risk_reward_ratio or risk_reward_ratio(
            signal.entry_price, signal.stop_loss, signal.take_profit)

    def _validate(self, signal: Signal, iterations):
        if signal.direction == Direction.NEUTRAL:
            raise InvalidParameterError("Risk assessment requires a LONG or SHORT signal")
        if signal.entry_price is None or signal.stop_loss is None or signal.take_profit is None:
            raise InvalidParameterError("Signal is missing entry, stop or target")
        if signal.entry_price <= 0:
            raise InvalidParameterError(f"Invalid entry price: {signal.entry_price}")
        sign = signal.direction.sign
        if sign * (signal.stop_loss - signal.entry_price) >= 0 or sign * (signal.take_profit - signal.entry_price) <= 0:
            raise InvalidParameterError("Stop and target must straddle the entry in the trade's direction")
        if isinstance(iterations, bool) or not isinstance(iterations, (int, np.integer)):
            raise InvalidParameterError(f"Iterations must be an integer, got {iterations!r}")
        if not 1 <= iterations <= self.config.max_iterations:
            raise InvalidParameterError(f"Iterations must be in [1, {self.config.max_iterations}], got {iterations}")

    def step_volatility(self, signal: Signal) -> float:
        """Per-step volatility from ATR / entry, else from the stop and target distances."""
        cfg = self.config
        entry = signal.entry_price
        atr = signal.indicator_snapshot.atr if signal.indicator_snapshot is not None else 0.0
        if atr > 0:
            sigma = atr / entry
        else:
            stop_distance = abs(entry - signal.stop_loss)
            target_distance = abs(signal.take_profit - entry)
            uncertainty = 1 + (100 - signal.confidence) / 100
            sigma = (stop_distance + target_distance) / 2 / entry * uncertainty
        return float(min(max(sigma, cfg.min_step_volatility), cfg.max_step_volatility))

    def _simulate(self, signal: Signal, iterations: int, seed=None,
                  start: Optional[float] = None) -> np.ndarray:
        """Simulated trade returns; ``seed`` may be an int or a shared Generator."""
        cfg = self.config
        rng = np.random.default_rng(seed)
        steps = get_timeframe_profile(signal.timeframe).horizon_steps
        sign = signal.direction.sign
        entry = signal.entry_price

        drift = (signal.confidence / 100) * sign * cfg.base_drift
        sigma = self.step_volatility(signal)
        stop_return = sign * (signal.stop_loss - entry) / entry
        target_return = sign * (signal.take_profit - entry) / entry

        samples = np.empty(iterations)
        start = time.monotonic() if start is None else start
        done = 0
        while done < iterations:
            n = min(cfg.chunk_size, iterations - done)
            shocks = self._box_muller(rng, (n, steps))
            log_paths = np.cumsum((drift - 0.5 * sigma ** 2) + sigma * shocks, axis=1)
            returns = sign * (np.exp(log_paths) - 1)  # Trade return along the path

            hit_stop = returns <= stop_return
            hit_target = returns >= target_return
            stop_step = np.where(hit_stop.any(axis=1), hit_stop.argmax(axis=1), steps)
            target_step = np.where(hit_target.any(axis=1), hit_target.argmax(axis=1), steps)

            outcome = returns[:, -1].copy()
            outcome[stop_step < target_step] = stop_return
            outcome[target_step < stop_step] = target_return
            samples[done:done + n] = outcome
            done += n

            if done < iterations and time.monotonic() - start > cfg.timeout_seconds:
                raise ComputationTimeoutError(
                    f"Monte Carlo for {signal.symbol}/{signal.timeframe} exceeded "
                    f"{cfg.timeout_seconds}s after {done}/{iterations} paths"
                )
        return samples

    @staticmethod
    def _box_muller(rng: np.random.Generator, shape) -> np.ndarray:
        """Standard normals from pairs of uniforms."""
        u1 = 1.0 - rng.random(shape)  # (0, 1], keeps log finite
        u2 = rng.random(shape)
        return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)

    def _summarize(self, samples: np.ndarray, seed: Optional[int], signal_id: str, symbol: str,
                   timeframe: str, payoff: float) -> RiskAssessment:
        cfg = self.config
        n = len(samples)
        ordered = np.sort(samples)
        profile = get_timeframe_profile(timeframe)

        mean = float(ordered.mean())
        std = float(ordered.std(ddof=1)) if n > 1 else 0.0
        trades_per_year = profile.periods_per_year / profile.horizon_steps
        volatility = std * math.sqrt(trades_per_year)

        var_95 = float(ordered[int(math.floor(n * 0.05))])
        # The tail mean can round one ulp above its own upper bound
        cvar_95 = min(float(ordered[ordered <= var_95].mean()), var_95)
        win_probability = float((ordered > 0).mean())
        sharpe = mean / std if std > 0 else 0.0

        kelly = PositionSizer.kelly_criterion(win_probability, payoff, cfg.max_kelly_fraction)
        position_size = min(kelly * cfg.fractional_kelly, cfg.max_position_size_pct)

        margin = 1.96 * std / math.sqrt(n) if n > 0 else 0.0
        percentiles = {p: float(np.percentile(ordered, p)) for p in (5, 25, 50, 75, 95)}

        score = self._risk_score(win_probability, sharpe, var_95, kelly)
        return RiskAssessment(
            signal_id=signal_id,
            symbol=symbol,
            timeframe=timeframe,
            expected_return=mean,
            volatility=volatility,
            var_95=var_95,
            cvar_95=cvar_95,
            max_drawdown=float(ordered[0]),
            win_probability=win_probability,
            sharpe_ratio=sharpe,
            kelly_fraction=kelly,
            recommended_position_size=position_size,
            distribution=ReturnDistribution(
                mean=mean, std=std, min=float(ordered[0]), max=float(ordered[-1]),
                percentiles=percentiles
            ),
            confidence_interval=(mean - margin, mean + margin),
            risk_score=score,
            risk_level=self._risk_level(score),
            iterations=n,
            seed=seed
        )

    @staticmethod
    def _risk_score(win_probability: float, sharpe: float, var_95: float, kelly: float) -> float:
        """Composite 0-100 score, 50 is neutral and higher is safer."""
        score = 50.0
        score += (win_probability - 0.5) * 60
        score += float(np.clip(sharpe, -1.0, 1.0)) * 10
        score -= min(abs(min(var_95, 0.0)) * 500, 30)
        score += kelly * 40
        return float(np.clip(score, 0.0, 100.0))

    @staticmethod
    def _risk_level(score: float) -> RiskLevel:
        if score >= 80:
            return RiskLevel.VERY_LOW
        if score >= 60:
            return RiskLevel.LOW
        if score >= 40:
            return RiskLevel.MODERATE
        if score >= 20:
            return RiskLevel.HIGH
        return RiskLevel.VERY_HIGH
