"""
Indicator Module
================
"""
from .feature_engine import (
    IndicatorCalculator,
    IndicatorSet,
    MacdValues,
    BollingerValues,
    StochasticValues,
    TechnicalIndicators,
    VOTING_INDICATORS
)

__all__ = [
    'IndicatorCalculator',
    'IndicatorSet',
    'MacdValues',
    'BollingerValues',
    'StochasticValues',
    'TechnicalIndicators',
    'VOTING_INDICATORS'
]
