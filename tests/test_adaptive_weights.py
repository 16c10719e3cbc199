import threading

import pytest

from signal_engine.alpha import AdaptiveWeightManager, normalize_weights
from signal_engine.config import WeightConfig
from signal_engine.exceptions import InvalidParameterError


def feed(manager, outcomes, indicator='rsi', symbol='AAA', timeframe='1h'):
    for successful in outcomes:
        manager.record_outcome(indicator, symbol, timeframe, successful)


def test_base_weights_sum_to_one():
    weights = AdaptiveWeightManager().current_weights('AAA', '1h')
    assert sum(weights.values()) == pytest.approx(1.0)
    assert weights['rsi'] == pytest.approx(0.16)


def test_threshold_outcomes_rescale_and_renormalise():
    manager = AdaptiveWeightManager()
    feed(manager, [True] * 8 + [False] * 2)

    weights = manager.current_weights('AAA', '1h')
    expected = 0.16 * (0.8 / 0.7) / (0.84 + 0.16 * (0.8 / 0.7))
    assert weights['rsi'] == pytest.approx(expected, rel=1e-6)
    assert sum(weights.values()) == pytest.approx(1.0)
    # Other keys are untouched
    assert manager.current_weights('BBB', '1h')['rsi'] == pytest.approx(0.16)


def test_below_threshold_leaves_weights_alone():
    manager = AdaptiveWeightManager()
    feed(manager, [True] * 9)
    assert manager.current_weights('AAA', '1h')['rsi'] == pytest.approx(0.16)


def test_rebalance_applies_pending_outcomes():
    manager = AdaptiveWeightManager()
    feed(manager, [True] * 8 + [False] * 2)
    feed(manager, [True] * 4 + [False])

    assert manager.rebalance() == 1
    weights = manager.current_weights('AAA', '1h')
    assert weights['rsi'] == pytest.approx(0.19922, abs=1e-4)
    assert sum(weights.values()) == pytest.approx(1.0)
    assert manager.rebalance() == 0


def test_poor_accuracy_hits_the_floor():
    config = WeightConfig(min_weight=0.05)
    manager = AdaptiveWeightManager(config)
    for _ in range(5):
        feed(manager, [False] * 10, indicator='macd')

    weights = manager.current_weights('AAA', '1h')
    # Clamped to the floor, then nudged slightly above it by renormalisation
    assert weights['macd'] == pytest.approx(0.05, abs=0.005)
    assert all(config.min_weight - 1e-9 <= w <= config.max_weight + 1e-9 for w in weights.values())
    assert sum(weights.values()) == pytest.approx(1.0)


def test_held_weights_are_not_mutated_by_updates():
    manager = AdaptiveWeightManager()
    held = manager.current_weights('AAA', '1h')
    snapshot = manager.snapshot()

    feed(manager, [True] * 10)

    assert held['rsi'] == pytest.approx(0.16)
    assert snapshot.get('AAA', '1h')['rsi'] == pytest.approx(0.16)
    assert manager.snapshot().version > snapshot.version
    with pytest.raises(TypeError):
        held['rsi'] = 0.5


def test_unknown_indicator_is_rejected():
    with pytest.raises(InvalidParameterError):
        AdaptiveWeightManager().record_outcome('vwap', 'AAA', '1h', True)


def test_reset_returns_to_base():
    manager = AdaptiveWeightManager()
    feed(manager, [True] * 10)
    manager.reset()

    assert manager.current_weights('AAA', '1h')['rsi'] == pytest.approx(0.16)
    assert manager.stats()['rsi']['total_signals'] == 0


def test_stats_and_history():
    manager = AdaptiveWeightManager()
    feed(manager, [True, True, False])

    stats = manager.stats()
    assert stats['rsi']['total_signals'] == 3
    assert stats['rsi']['accuracy'] == pytest.approx(2 / 3)
    assert stats['macd']['accuracy'] is None
    assert len(manager.recent_outcomes()) == 3


def test_normalize_weights_pins_to_bounds():
    result = normalize_weights({'a': 10.0, 'b': 1.0, 'c': 1.0}, 0.1, 0.5)
    assert result == pytest.approx({'a': 0.5, 'b': 0.25, 'c': 0.25})


def test_normalize_weights_sums_to_one_with_both_bounds_active():
    result = normalize_weights({'a': 100.0, 'b': 30.0, 'c': 1.0, 'd': 0.5, 'e': 0.0}, 0.05, 0.4)

    assert sum(result.values()) == pytest.approx(1.0)
    assert result['a'] == pytest.approx(0.4)
    assert result['d'] == pytest.approx(0.05)
    assert result['e'] == pytest.approx(0.05)
    assert all(0.05 - 1e-12 <= w <= 0.4 + 1e-12 for w in result.values())
    assert result['a'] >= result['b'] >= result['c'] >= result['d']


def test_skewed_base_weights_are_normalised():
    others = dict.fromkeys(WeightConfig().base_weights, 0.001)
    manager = AdaptiveWeightManager(WeightConfig(base_weights={**others, 'rsi': 10.0}))

    weights = manager.current_weights('AAA', '1h')

    assert sum(weights.values()) == pytest.approx(1.0)
    assert weights['rsi'] == pytest.approx(0.5)
    assert weights['macd'] == pytest.approx(0.5 / 7)


def test_normalize_weights_rejects_impossible_bounds():
    with pytest.raises(InvalidParameterError):
        normalize_weights({'a': 1.0, 'b': 1.0}, 0.6, 0.9)


def test_readers_always_see_normalised_vectors():
    manager = AdaptiveWeightManager()
    errors = []
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            total = sum(manager.current_weights('AAA', '1h').values())
            if abs(total - 1.0) > 1e-9:
                errors.append(total)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for i in range(200):
        manager.record_outcome('rsi', 'AAA', '1h', i % 3 != 0)
        manager.record_outcome('macd', 'AAA', '1h', i % 4 == 0)
    stop.set()
    for t in threads:
        t.join()

    assert errors == []
