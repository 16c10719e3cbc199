"""
Confluence Signal Engine
========================

Periodic multi-indicator trading signals with adaptive weights and
Monte Carlo risk assessment.

FEATURES:
- Indicator set per (symbol, timeframe): RSI, MACD, Bollinger, ATR,
  Stochastic, ADX, SMA cross, momentum, volume trend, support/resistance
- Candlestick, chart, volume and Fibonacci pattern recognition
- Market regime detection (Bull, Bear, Sideways, Volatile)
- Confluence scoring with conflict damping and ATR-based risk levels
- Indicator weights adapted from realised trade outcomes
- Monte Carlo VaR / CVaR, win probability and Kelly sizing
- Atomically published signal snapshots on a fixed cycle

PIPELINE:
    ┌─────────┐
    │  DATA   │  ← candles (CACHED, retried, timed out)
    └────┬────┘
         ↓
    ┌──────────────┐
    │ INDICATORS   │  ← RSI, MACD, BB, ATR, Stochastic, ADX
    └────┬─────────┘
         ↓
    ┌──────────────────┐
    │ PATTERNS/REGIME  │  ← candlestick, chart, volume, fib; trend/volatility state
    └────┬─────────────┘
         ↓
    ┌──────────────┐
    │ CONFLUENCE   │  ← weighted votes → direction, confidence, stop/target
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ SNAPSHOT     │  ← published every cycle
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ RISK ENGINE  │  ← Monte Carlo on demand
    └──────────────┘
         ↑ outcomes feed back into indicator weights

USAGE:
    # One cycle with live data
    python -m signal_engine.orchestrator --symbols RELIANCE TCS --timeframes 1h 1d --once

    # Continuous
    python -m signal_engine.orchestrator --interval 240

    # Programmatic usage
    from signal_engine import SignalService, SystemConfig

    service = SignalService(SystemConfig())
    service.run_cycle()
    signals = service.get_signals(symbol="TCS")

MODULES:
    - data: Candle sources, caching and retry
    - features: Indicator calculator
    - patterns: Pattern recognizer
    - regime: Regime detector
    - alpha: Confluence scorer, adaptive weights, outcome tracking
    - risk: Monte Carlo risk engine
"""

from .config import SystemConfig, TIMEFRAME_PROFILES
from .orchestrator import SignalService, CycleScheduler, SignalSnapshot, SchedulerState, main
from .data import Candle, DataManager, MarketDataSource, YFinanceSource, InMemorySource
from .features import IndicatorCalculator, IndicatorSet
from .patterns import PatternRecognizer, Pattern, PatternType, PatternCategory, PatternSignal
from .regime import RegimeDetector, RegimeState, MarketRegime
from .alpha import (
    ConfluenceScorer, Signal, Direction, AdaptiveWeightManager, OutcomeTracker, TradeOutcome
)
from .risk import MonteCarloRiskEngine, RiskAssessment, RiskLevel
from .exceptions import (
    SignalEngineError,
    DataUnavailableError,
    InsufficientHistoryError,
    InvalidParameterError,
    ComputationTimeoutError,
    SignalNotFoundError
)

__version__ = "1.0.0"
__all__ = [
    # Main
    'SignalService',
    'CycleScheduler',
    'SignalSnapshot',
    'SchedulerState',
    'SystemConfig',
    'TIMEFRAME_PROFILES',
    'main',

    # Data
    'Candle',
    'DataManager',
    'MarketDataSource',
    'YFinanceSource',
    'InMemorySource',

    # Indicators
    'IndicatorCalculator',
    'IndicatorSet',

    # Patterns
    'PatternRecognizer',
    'Pattern',
    'PatternType',
    'PatternCategory',
    'PatternSignal',

    # Regime
    'RegimeDetector',
    'RegimeState',
    'MarketRegime',

    # Alpha
    'ConfluenceScorer',
    'Signal',
    'Direction',
    'AdaptiveWeightManager',
    'OutcomeTracker',
    'TradeOutcome',

    # Risk
    'MonteCarloRiskEngine',
    'RiskAssessment',
    'RiskLevel',

    # Errors
    'SignalEngineError',
    'DataUnavailableError',
    'InsufficientHistoryError',
    'InvalidParameterError',
    'ComputationTimeoutError',
    'SignalNotFoundError'
]
