"""
Pattern Module
==============
"""
from .pattern_recognizer import (
    PatternRecognizer,
    Pattern,
    PatternType,
    PatternCategory,
    PatternSignal,
    PatternStrength,
    summarize_patterns
)

__all__ = [
    'PatternRecognizer',
    'Pattern',
    'PatternType',
    'PatternCategory',
    'PatternSignal',
    'PatternStrength',
    'summarize_patterns'
]
