"""
Alpha Module
============
Confluence scoring, adaptive indicator weights and outcome feedback.
"""
from .confluence_scorer import (
    ConfluenceScorer,
    Signal,
    Direction,
    IndicatorVote,
    risk_reward_ratio
)
from .adaptive_weights import (
    AdaptiveWeightManager,
    IndicatorWeight,
    WeightSnapshot,
    normalize_weights
)
from .outcome_tracker import OutcomeTracker, TradeOutcome

__all__ = [
    'ConfluenceScorer',
    'Signal',
    'Direction',
    'IndicatorVote',
    'risk_reward_ratio',
    'AdaptiveWeightManager',
    'IndicatorWeight',
    'WeightSnapshot',
    'normalize_weights',
    'OutcomeTracker',
    'TradeOutcome'
]
