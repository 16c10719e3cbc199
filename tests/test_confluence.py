import numpy as np
import pytest

from signal_engine.alpha import AdaptiveWeightManager, ConfluenceScorer, Direction, risk_reward_ratio
from signal_engine.features import IndicatorCalculator, VOTING_INDICATORS
from signal_engine.patterns import PatternRecognizer
from signal_engine.regime import RegimeDetector

from conftest import make_candles, rising, falling, zigzag, flat


def score(candles, weights=None, symbol="TEST", timeframe="1h"):
    indicators = IndicatorCalculator().compute(candles, symbol, timeframe)
    patterns = PatternRecognizer().detect(candles, timeframe)
    regime = RegimeDetector().classify(indicators, candles)
    weights = weights or AdaptiveWeightManager().current_weights(symbol, timeframe)
    return ConfluenceScorer().score(indicators, patterns, regime, weights)


def test_overbought_rsi_alone_does_not_make_a_long():
    signal = score(make_candles(rising(20)))

    assert signal.indicator_snapshot.rsi > 70
    assert signal.direction != Direction.LONG
    assert "Conflicting signals detected" in signal.reasoning


def test_zero_candles_give_low_confidence_neutral():
    signal = score([])

    assert signal.direction == Direction.NEUTRAL
    assert signal.confidence <= 20
    assert signal.stop_loss is None and signal.take_profit is None
    assert signal.risk_reward_ratio == 0.0


def test_flat_series_only_rsi_takes_a_side(flat_candles):
    indicators = IndicatorCalculator().compute(flat_candles)
    votes = {v.indicator: v for v in ConfluenceScorer().indicator_votes(indicators)}

    # No losses in the window pins RSI at 100, the only non-neutral reading
    assert votes['rsi'].direction == Direction.SHORT
    assert all(v.direction == Direction.NEUTRAL for name, v in votes.items() if name != 'rsi')
    assert score(flat_candles).direction != Direction.LONG


@pytest.mark.parametrize("closes", [rising(60), falling(60), zigzag(60), rising(20),
                                    [100 + 8 * np.sin(i / 5) for i in range(80)]])
def test_directional_signals_have_valid_risk_levels(closes):
    signal = score(make_candles(closes))

    assert -100 <= signal.confluence_score <= 100
    assert 0 <= signal.confidence <= 100
    if signal.direction != Direction.NEUTRAL:
        assert signal.risk_reward_ratio > 0
        assert signal.stop_loss != signal.entry_price
        assert signal.take_profit != signal.entry_price


def test_injected_weights_change_the_outcome():
    candles = make_candles(rising(20))
    rsi_only = {name: 0.0 for name in VOTING_INDICATORS}
    rsi_only['rsi'] = 1.0

    signal = score(candles, weights=rsi_only)

    assert signal.direction == Direction.SHORT
    assert "Conflicting signals detected" not in signal.reasoning


def test_scoring_is_repeatable():
    candles = make_candles(zigzag(60))
    first = score(candles)
    second = score(candles)

    assert first.direction == second.direction
    assert first.confidence == pytest.approx(second.confidence)
    assert first.signal_id != second.signal_id


def test_risk_levels_use_timeframe_atr_multiplier():
    scorer = ConfluenceScorer()

    stop, target = scorer.risk_levels(Direction.LONG, 100.0, 2.0, "1h")
    assert (stop, target) == pytest.approx((94.0, 112.0))
    assert risk_reward_ratio(100.0, stop, target) == pytest.approx(2.0)

    stop, target = scorer.risk_levels(Direction.SHORT, 100.0, 2.0, "1m")
    assert (stop, target) == pytest.approx((103.0, 94.0))


def test_risk_levels_respect_minimum_stop_distance():
    stop, target = ConfluenceScorer().risk_levels(Direction.LONG, 100.0, 0.0, "1h")
    assert stop == pytest.approx(99.5)
    assert target == pytest.approx(101.0)


def test_neutral_has_no_risk_levels():
    assert ConfluenceScorer().risk_levels(Direction.NEUTRAL, 100.0, 2.0, "1h") == (None, None)


def test_votes_cover_every_indicator():
    indicators = IndicatorCalculator().compute(make_candles(flat(5)))
    votes = ConfluenceScorer().indicator_votes(indicators)
    assert [v.indicator for v in votes] == list(VOTING_INDICATORS)
