"""
Risk Management Module
======================
"""
from .risk_engine import (
    MonteCarloRiskEngine,
    RiskAssessment,
    ReturnDistribution,
    RiskLevel,
    PositionSizer
)

__all__ = [
    'MonteCarloRiskEngine',
    'RiskAssessment',
    'ReturnDistribution',
    'RiskLevel',
    'PositionSizer'
]
