"""
Configuration Management
========================
Central configuration for the signal engine.

Every component takes its own section of ``SystemConfig``; the timeframe
profile table below is the one source of timeframe-dependent constants.
"""

from dataclasses import dataclass, field, asdict, fields, is_dataclass
from typing import List, Dict, Optional
import json
import os


@dataclass(frozen=True)
class TimeframeProfile:
    """Timeframe-dependent constants."""
    atr_stop_multiplier: float  # Stop distance in ATRs
    trend_multiplier: float  # Scales the regime trend threshold
    periods_per_year: float  # Used to annualise per-step volatility
    horizon_steps: int  # Monte Carlo path length in candles


# Single canonical table, applied by the scorer, regime detector and risk engine.
# Shorter timeframes get tighter stops and a lower bar for calling a trend.
TIMEFRAME_PROFILES: Dict[str, TimeframeProfile] = {
    "1m": TimeframeProfile(1.5, 0.5, 252 * 390, 60),
    "5m": TimeframeProfile(2.0, 0.7, 252 * 78, 48),
    "15m": TimeframeProfile(2.5, 0.8, 252 * 26, 32),
    "30m": TimeframeProfile(2.5, 0.9, 252 * 13, 24),
    "1h": TimeframeProfile(3.0, 1.0, 252 * 6.5, 24),
    "4h": TimeframeProfile(3.5, 1.2, 252 * 1.625, 18),
    "1d": TimeframeProfile(4.0, 1.4, 252, 10),
    "3d": TimeframeProfile(4.0, 1.5, 84, 8),
    "1w": TimeframeProfile(4.0, 1.6, 52, 6),
    "1M": TimeframeProfile(4.0, 1.6, 12, 4),
}

DEFAULT_TIMEFRAME_PROFILE = TimeframeProfile(2.5, 1.0, 252, 24)


def get_timeframe_profile(timeframe: Optional[str]) -> TimeframeProfile:
    """Profile for a timeframe, falling back to the default for unknown keys."""
    if timeframe is None:
        return DEFAULT_TIMEFRAME_PROFILE
    return TIMEFRAME_PROFILES.get(timeframe, DEFAULT_TIMEFRAME_PROFILE)


@dataclass
class DataConfig:
    """Market data configuration."""

    # Tracked universe
    symbols: List[str] = field(default_factory=lambda: ["NIFTY", "BANKNIFTY", "RELIANCE", "TCS", "INFY"])
    timeframes: List[str] = field(default_factory=lambda: ["15m", "1h", "1d"])

    # Candle history requested per pair
    min_candles: int = 100

    # Fetch behaviour
    request_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0  # Doubles every attempt
    cache_ttl_seconds: int = 60


@dataclass
class IndicatorConfig:
    """Indicator calculator configuration."""
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    bollinger_period: int = 20
    bollinger_std: float = 2.0
    atr_period: int = 14
    stochastic_k: int = 14
    stochastic_d: int = 3
    adx_period: int = 14
    sma_fast: int = 20
    sma_slow: int = 50
    momentum_period: int = 10
    volume_period: int = 20
    support_resistance_window: int = 50
    swing_window: int = 5

    # Per (symbol, timeframe) memo of the last computed set
    use_memo: bool = True


@dataclass
class PatternConfig:
    """Pattern recognizer configuration."""
    lookback: int = 50
    doji_body_ratio: float = 0.1  # Body / range below this is a doji
    shadow_body_ratio: float = 2.0  # Hammer / shooting star shadow vs body
    double_top_tolerance: float = 0.02  # Peaks within 2%
    min_pullback: float = 0.03  # Middle trough at least 3% off the peaks
    triangle_flat_slope: float = 0.001  # Normalised slope treated as flat
    volume_spike_ratio: float = 2.0
    volume_period: int = 20
    fibonacci_levels: List[float] = field(default_factory=lambda: [0.236, 0.382, 0.5, 0.618, 0.786])
    fibonacci_tolerance: float = 0.01  # Fraction of the swing range


@dataclass
class RegimeConfig:
    """Regime detector configuration."""
    min_candles: int = 20
    slope_windows: List[int] = field(default_factory=lambda: [5, 10, 20])
    slope_weights: List[float] = field(default_factory=lambda: [0.5, 0.3, 0.2])
    trend_threshold: float = 0.001  # Normalised slope per candle at 1h
    adx_threshold: float = 25.0
    volatility_threshold: float = 0.03  # ATR / price
    insufficient_confidence: float = 0.3
    min_confidence: float = 0.3
    max_confidence: float = 0.95


@dataclass
class ConfluenceConfig:
    """Confluence scorer configuration."""
    neutral_threshold: float = 10.0  # |score| below this is NEUTRAL
    conflict_threshold: float = 5.0  # Both sides above this is a conflict
    conflict_damping: float = 0.6
    min_confidence: float = 5.0
    max_confidence: float = 95.0
    degenerate_confidence: float = 5.0

    # Regime bias on LONG / SHORT evidence
    regime_favour: float = 1.15
    regime_oppose: float = 0.85
    volatile_damping: float = 0.85

    # Pattern contributions
    pattern_category_weights: Dict[str, float] = field(default_factory=lambda: {
        "candlestick": 0.10,
        "chart": 0.15,
        "volume": 0.05,
        "fibonacci": 0.08,
    })
    max_pattern_contribution: float = 25.0

    # Risk levels
    reward_ratio: float = 2.0
    min_stop_fraction: float = 0.005  # Stop no closer than 0.5% of entry


@dataclass
class WeightConfig:
    """Adaptive weight manager configuration."""
    base_weights: Dict[str, float] = field(default_factory=lambda: {
        "rsi": 0.16,
        "macd": 0.20,
        "bollinger": 0.14,
        "stochastic": 0.12,
        "sma_cross": 0.14,
        "momentum": 0.10,
        "volume": 0.06,
        "support_resistance": 0.08,
    })
    min_weight: float = 0.01
    max_weight: float = 0.5
    target_accuracy: float = 0.7
    update_threshold: int = 10
    history_limit: int = 1000


@dataclass
class RiskConfig:
    """Monte Carlo risk engine configuration."""
    default_iterations: int = 1000
    max_iterations: int = 100000
    chunk_size: int = 5000
    timeout_seconds: float = 5.0

    # Drift per step at 100% confidence
    base_drift: float = 0.001
    min_step_volatility: float = 0.001
    max_step_volatility: float = 0.05

    # Position sizing
    max_kelly_fraction: float = 0.25
    fractional_kelly: float = 0.5
    max_position_size_pct: float = 0.10  # Max 10% of portfolio per position

    cache_ttl_seconds: int = 30
    max_workers: int = 2


@dataclass
class SchedulerConfig:
    """Cycle scheduler configuration."""
    interval_seconds: float = 240.0  # 4 minute cycle
    max_workers: int = 8
    pair_timeout_seconds: float = 30.0
    signal_history: int = 5000


@dataclass
class LoggingConfig:
    """Logging configuration."""
    log_level: str = "INFO"
    log_file: Optional[str] = "./logs/signal_engine.log"
    log_format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class SystemConfig:
    """Master system configuration."""
    data: DataConfig = field(default_factory=DataConfig)
    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    patterns: PatternConfig = field(default_factory=PatternConfig)
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    confluence: ConfluenceConfig = field(default_factory=ConfluenceConfig)
    weights: WeightConfig = field(default_factory=WeightConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def save(self, filepath: str):
        """Save configuration to JSON file."""
        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(filepath, 'w') as f:
            json.dump(self._to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> 'SystemConfig':
        """Load configuration from JSON file."""
        with open(filepath, 'r') as f:
            data = json.load(f)
        return cls._from_dict(data)

    def _to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def _from_dict(cls, data: dict) -> 'SystemConfig':
        """Create from dictionary, keeping defaults for missing keys."""
        config = cls()
        for section in fields(cls):
            current = getattr(config, section.name)
            values = data.get(section.name)
            if not values or not is_dataclass(current):
                continue
            known = {f.name for f in fields(current)}
            unknown = set(values) - known
            if unknown:
                raise ValueError(f"Unknown keys in '{section.name}' config: {sorted(unknown)}")
            setattr(config, section.name, type(current)(**{**asdict(current), **values}))
        return config


# Default configuration instance
DEFAULT_CONFIG = SystemConfig()
