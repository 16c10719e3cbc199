import logging
import threading
import time

import pytest

from signal_engine.alpha import Direction, IndicatorVote
from signal_engine.data import InMemorySource
from signal_engine.exceptions import InvalidParameterError, SignalEngineError, SignalNotFoundError
from signal_engine.orchestrator import SchedulerState, SignalService

from conftest import make_candles, make_signal, rising, flat


class BlockingSource(InMemorySource):
    """Holds fetches for the blocked symbols (every symbol by default) until released."""

    def __init__(self, candles, blocked=None):
        super().__init__(candles)
        self.blocked = blocked
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_candles(self, symbol, timeframe, min_count):
        if self.blocked is None or symbol in self.blocked:
            self.entered.set()
            self.release.wait(5)
        return super().get_candles(symbol, timeframe, min_count)


@pytest.fixture
def service(test_config, memory_source):
    service = SignalService(test_config, source=memory_source)
    yield service
    service.shutdown()


def test_cycle_publishes_every_pair(service):
    snapshot = service.run_cycle()

    assert snapshot.cycle_id == 1
    assert set(snapshot.signals) == {("AAA", "1h"), ("BBB", "1h")}
    assert snapshot.failures == {}
    signals = service.get_signals()
    assert [s.symbol for s in signals] == ["AAA", "BBB"]
    assert service.get_signals(symbol="BBB")[0].symbol == "BBB"


def test_published_snapshot_is_never_mutated(service):
    first = service.run_cycle()
    held = dict(first.signals)

    second = service.run_cycle()

    assert second is not first
    assert dict(first.signals) == held
    with pytest.raises(TypeError):
        first.signals[("AAA", "1h")] = None


def test_unchanged_data_gives_equivalent_signals(service):
    first = service.run_cycle().get("AAA", "1h")
    second = service.run_cycle().get("AAA", "1h")

    assert first.direction == second.direction
    assert first.confidence == pytest.approx(second.confidence)
    assert first.confluence_score == pytest.approx(second.confluence_score)


def test_failed_pair_keeps_previous_signal(service, memory_source):
    first = service.run_cycle()
    memory_source.remove("BBB", "1h")
    service.data_manager.clear_cache()

    second = service.run_cycle()

    assert ("BBB", "1h") in second.failures
    assert second.get("BBB", "1h") is first.get("BBB", "1h")
    assert second.get("AAA", "1h") is not first.get("AAA", "1h")
    assert second.stale_keys() == [("BBB", "1h")]
    assert service.get_status()['stale_signals'] == 1


def test_pair_with_no_data_is_skipped(test_config):
    source = InMemorySource({("AAA", "1h"): make_candles(rising(60), symbol="AAA")})
    service = SignalService(test_config, source=source)
    try:
        snapshot = service.run_cycle()
    finally:
        service.shutdown()

    assert snapshot.get("AAA", "1h") is not None
    assert snapshot.get("BBB", "1h") is None
    assert ("BBB", "1h") in snapshot.failures


def test_state_machine_transitions(service):
    service.run_cycle()
    assert service.scheduler.transitions() == [
        SchedulerState.COMPUTING, SchedulerState.PUBLISHED, SchedulerState.IDLE
    ]
    assert service.scheduler.state == SchedulerState.IDLE


def test_stopped_scheduler_refuses_cycles(service):
    service.scheduler.stop()
    assert service.scheduler.state == SchedulerState.STOPPED
    with pytest.raises(SignalEngineError):
        service.run_cycle()


def test_overlapping_trigger_waits_for_running_cycle(test_config, caplog):
    source = BlockingSource({
        ("AAA", "1h"): make_candles(rising(60), symbol="AAA"),
        ("BBB", "1h"): make_candles(rising(60), symbol="BBB"),
    })
    service = SignalService(test_config, source=source)
    results = []
    try:
        first = threading.Thread(target=lambda: results.append(service.run_cycle()))
        first.start()
        assert source.entered.wait(5)

        with caplog.at_level(logging.INFO, logger="signal_engine.orchestrator"):
            second = threading.Thread(target=lambda: results.append(service.run_cycle()))
            second.start()
            second.join(0.2)
            assert second.is_alive()

            source.release.set()
            first.join(5)
            second.join(5)
    finally:
        service.shutdown()

    assert sorted(s.cycle_id for s in results) == [1, 2]
    assert "deferring trigger" in caplog.text
    states = service.scheduler.transitions()
    for previous, current in zip(states, states[1:]):
        assert not (previous == current == SchedulerState.COMPUTING)


def test_recompute_patches_only_that_symbol(service, memory_source):
    first = service.run_cycle()
    memory_source.set_candles("AAA", "1h", make_candles(flat(60), symbol="AAA", spread=0.0))
    service.data_manager.clear_cache()

    updated = service.recompute_symbol("AAA")

    current = service.scheduler.published()
    assert len(updated) == 1
    assert current.get("AAA", "1h") is updated[0]
    assert current.get("BBB", "1h") is first.get("BBB", "1h")
    assert current.cycle_id == first.cycle_id
    assert current.get("AAA", "1h").entry_price == 100.0


def test_recompute_rejects_unknown_symbol(service):
    with pytest.raises(InvalidParameterError):
        service.recompute_symbol("ZZZ")
    with pytest.raises(InvalidParameterError):
        service.recompute_symbol("AAA", ["4h"])


def test_unknown_keys_are_rejected(service):
    with pytest.raises(InvalidParameterError):
        service.get_signals(symbol="ZZZ")
    with pytest.raises(InvalidParameterError):
        service.get_risk_assessment("AAA", "1d")


def test_risk_assessment_before_first_cycle(service):
    with pytest.raises(SignalNotFoundError):
        service.get_risk_assessment("AAA", "1h")


def test_risk_assessment_for_published_signal(service):
    service.run_cycle()
    signal = service.scheduler.published().get("AAA", "1h")

    if signal.direction == Direction.NEUTRAL:
        with pytest.raises(InvalidParameterError):
            service.get_risk_assessment("AAA", "1h", iterations=200, seed=5)
    else:
        assessment = service.get_risk_assessment("AAA", "1h", iterations=200, seed=5)
        assert assessment.signal_id == signal.signal_id
        assert 0.0 <= assessment.win_probability <= 1.0
        assert assessment.cvar_95 <= assessment.var_95


def test_outcome_feedback_through_service(service):
    signal = make_signal(symbol="AAA", votes=(
        IndicatorVote('rsi', Direction.LONG, 50.0),
        IndicatorVote('momentum', Direction.SHORT, 20.0),
    ))
    service.tracker.track(signal)

    outcome = service.record_outcome(signal.signal_id, 102.0)

    assert outcome.successful
    stats = service.indicator_stats()
    assert stats['rsi']['successful_signals'] == 1
    assert stats['momentum']['successful_signals'] == 0
    assert service.get_status()['win_rate'] == 1.0


def test_cycle_signals_are_tracked_for_outcomes(service):
    service.run_cycle()
    for signal in service.get_signals():
        assert service.tracker.get_signal(signal.signal_id) is signal


def test_status_reports_cycle_and_data_metrics(service):
    service.run_cycle()
    status = service.get_status()

    assert status['cycle_count'] == 1
    assert status['tracked_pairs'] == 2
    assert status['published_signals'] == 2
    assert status['data']['total_requests'] >= 2


def test_background_loop_runs_cycles(service):
    done = threading.Event()
    original = service.scheduler._run_cycle_locked

    def counting():
        snapshot = original()
        if snapshot.cycle_id >= 2:
            done.set()
        return snapshot

    service.scheduler._run_cycle_locked = counting
    service.start()
    assert done.wait(5)
    service.scheduler.stop()
    assert service.scheduler.state == SchedulerState.STOPPED


def pair_candles():
    return {
        ("AAA", "1h"): make_candles(rising(60), symbol="AAA"),
        ("BBB", "1h"): make_candles(rising(60), symbol="BBB"),
    }


def test_slow_pair_times_out_without_holding_back_the_rest(test_config):
    test_config.scheduler.pair_timeout_seconds = 1.0
    source = BlockingSource(pair_candles(), blocked={"BBB"})
    service = SignalService(test_config, source=source)
    try:
        first = service.run_cycle()
        assert first.get("AAA", "1h") is not None
        assert first.get("BBB", "1h") is None
        assert "timed out" in first.failures[("BBB", "1h")]

        second = service.run_cycle()
        assert second.failures[("BBB", "1h")] == "previous computation still running"
        assert ("AAA", "1h") not in second.failures

        source.release.set()
        for _ in range(50):
            latest = service.run_cycle()
            if ("BBB", "1h") not in latest.failures:
                break
            time.sleep(0.05)
        assert latest.get("BBB", "1h") is not None
    finally:
        source.release.set()
        service.shutdown()


def test_recompute_during_cycle_keeps_the_newer_signal(test_config):
    # One worker runs AAA to completion before BBB blocks
    test_config.scheduler.max_workers = 1
    source = BlockingSource(pair_candles(), blocked={"BBB"})
    service = SignalService(test_config, source=source)
    results = []
    try:
        cycle = threading.Thread(target=lambda: results.append(service.run_cycle()))
        cycle.start()
        assert source.entered.wait(5)

        recomputed = service.recompute_symbol("AAA")[0]
        source.release.set()
        cycle.join(5)
    finally:
        source.release.set()
        service.shutdown()

    snapshot = results[0]
    assert snapshot.get("AAA", "1h") is recomputed
    assert snapshot.get("BBB", "1h") is not None
    assert service.scheduler.published() is snapshot
