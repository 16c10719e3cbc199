"""
Regime Module
=============
"""
from .regime_detector import (
    RegimeDetector,
    RegimeState,
    MarketRegime,
    REGIME_INDICATOR_MULTIPLIERS
)

__all__ = [
    'RegimeDetector',
    'RegimeState',
    'MarketRegime',
    'REGIME_INDICATOR_MULTIPLIERS'
]
