import numpy as np
import pandas as pd
import pytest

from signal_engine.exceptions import InsufficientHistoryError
from signal_engine.features import IndicatorCalculator, TechnicalIndicators, VOTING_INDICATORS

from conftest import make_candles, rising, falling, flat, zigzag


def test_wilder_smoothing_seeds_with_simple_mean():
    result = TechnicalIndicators.wilder_series(np.array([1.0, 2.0, 3.0, 4.0]), 2)
    assert result == pytest.approx([1.5, 2.25, 3.125])


def test_rsi_known_value():
    # gains [1, 0, 1], losses [0, 1, 0] with period 2 -> avg gain 0.75, avg loss 0.25
    assert TechnicalIndicators.rsi(pd.Series([1.0, 2.0, 1.0, 2.0]), period=2) == pytest.approx(75.0)


@pytest.mark.parametrize("closes", [rising(40), falling(40), zigzag(40), flat(40),
                                    [100 + 10 * np.sin(i / 3) for i in range(80)]])
def test_rsi_bounded(closes):
    value = TechnicalIndicators.rsi(pd.Series(closes))
    assert 0.0 <= value <= 100.0


def test_rsi_is_100_whenever_average_loss_is_zero():
    assert TechnicalIndicators.rsi(pd.Series(rising(20))) == 100.0
    assert TechnicalIndicators.rsi(pd.Series(falling(20))) == 0.0
    assert TechnicalIndicators.rsi(pd.Series(flat(20))) == 100.0


def test_rsi_requires_period_plus_one():
    with pytest.raises(InsufficientHistoryError):
        TechnicalIndicators.rsi(pd.Series(rising(14)), period=14)


def test_macd_histogram_is_line_minus_signal():
    calc = IndicatorCalculator()
    for closes in (rising(60), falling(60), zigzag(60), [100 + 5 * np.cos(i / 4) for i in range(90)]):
        macd = calc.compute(make_candles(closes)).macd
        assert macd.histogram == macd.line - macd.signal


def test_flat_series_collapses_bands_and_atr(flat_candles):
    result = IndicatorCalculator().compute(flat_candles)

    assert result.bollinger.upper == result.bollinger.middle == result.bollinger.lower == 100.0
    assert result.atr == 0.0
    assert result.rsi == 100.0
    assert result.stochastic.k == 50.0
    assert result.stochastic.d == 50.0


def test_twenty_rising_candles_are_overbought():
    result = IndicatorCalculator().compute(make_candles(rising(20)))

    assert result.rsi > 70
    # 20 candles is not enough for MACD, Bollinger or the 50-period SMA
    assert {'macd', 'bollinger', 'sma_cross'} <= set(result.insufficient)
    assert 'rsi' not in result.insufficient


def test_zero_candles_return_full_defaults():
    result = IndicatorCalculator().compute([], symbol="NONE", timeframe="1h")

    assert result.price == 0.0
    assert result.rsi == 50.0
    assert (result.macd.line, result.macd.signal, result.macd.histogram) == (0.0, 0.0, 0.0)
    assert result.bollinger.upper == result.bollinger.lower == 0.0
    assert result.atr == 0.0
    assert (result.stochastic.k, result.stochastic.d) == (50.0, 50.0)
    assert set(VOTING_INDICATORS) <= set(result.insufficient)
    assert result.is_degenerate


def test_short_history_bollinger_collapses_to_available_mean():
    result = IndicatorCalculator().compute(make_candles([100.0, 102.0, 104.0]))
    assert result.bollinger.upper == result.bollinger.middle == result.bollinger.lower == pytest.approx(102.0)


def test_sma_cross_and_momentum_follow_trend():
    calc = IndicatorCalculator()
    up = calc.compute(make_candles(rising(60)))
    down = calc.compute(make_candles(falling(60)))

    assert up.sma_cross == 1 and up.momentum > 0
    assert down.sma_cross == -1 and down.momentum < 0


def test_strong_trend_has_high_adx():
    result = IndicatorCalculator().compute(make_candles(rising(60)))
    assert result.adx > 25


def test_volume_trend_reflects_last_bar():
    volumes = [1000.0] * 29 + [3000.0]
    result = IndicatorCalculator().compute(make_candles(rising(30), volumes=volumes))
    assert result.volume_trend == pytest.approx(3000.0 / np.mean(volumes[-20:]))


def test_support_below_and_resistance_above_price():
    closes = [100 + 10 * np.sin(i / 3) for i in range(60)]
    result = IndicatorCalculator().compute(make_candles(closes))
    assert result.support <= result.price <= result.resistance


def test_memo_returns_same_result_for_unchanged_history():
    calc = IndicatorCalculator()
    candles = make_candles(zigzag(40))

    first = calc.compute(candles)
    assert calc.compute(list(candles)) is first

    changed = calc.compute(candles + make_candles([150.0], spread=0.5)[:1])
    assert changed is not first


def test_memo_compares_histories_not_fingerprints(monkeypatch):
    from signal_engine.features import feature_engine

    # Every history gets the same hash, so only a full comparison tells them apart
    monkeypatch.setattr(feature_engine, "hash", lambda obj: 0, raising=False)
    calc = IndicatorCalculator()
    up = make_candles(rising(40))
    down = make_candles(falling(40))

    first = calc.compute(up)
    second = calc.compute(down)

    assert second is not first
    assert second.price == 161.0
    assert calc.compute(up) is not second
