"""
Signal Engine Orchestrator
==========================
Periodic cycle scheduler and service facade:
    CANDLES → INDICATORS → PATTERNS / REGIME → CONFLUENCE → PUBLISHED SNAPSHOT

Cycle state machine:
    IDLE → COMPUTING → PUBLISHED → IDLE   (STOPPED after stop())

A cycle takes one weight snapshot, fans the tracked pairs out to a worker
pool, collects their results into a staging map and publishes it with a
single reference swap. Readers always see a complete cycle.
"""

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple
import logging
import math
import os
import threading
import time

from .config import SystemConfig, LoggingConfig
from .data import DataManager, MarketDataSource
from .features import IndicatorCalculator
from .patterns import PatternRecognizer
from .regime import RegimeDetector
from .alpha import (
    AdaptiveWeightManager, ConfluenceScorer, OutcomeTracker, Signal, TradeOutcome
)
from .risk import MonteCarloRiskEngine, RiskAssessment
from .exceptions import (
    ComputationTimeoutError, DataUnavailableError, InvalidParameterError, SignalEngineError,
    SignalNotFoundError
)

logger = logging.getLogger(__name__)

PairKey = Tuple[str, str]


class SchedulerState(Enum):
    IDLE = "idle"
    COMPUTING = "computing"
    PUBLISHED = "published"
    STOPPED = "stopped"


@dataclass(frozen=True)
class PairResult:
    """Message from a worker back to the scheduler."""
    symbol: str
    timeframe: str
    signal: Optional[Signal] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def key(self) -> PairKey:
        return (self.symbol, self.timeframe)


@dataclass(frozen=True)
class SignalSnapshot:
    """Immutable set of signals published by one cycle (plus later patches)."""
    cycle_id: int
    published_at: Optional[datetime]
    signals: Mapping[PairKey, Signal] = field(default_factory=lambda: MappingProxyType({}))
    failures: Mapping[PairKey, str] = field(default_factory=lambda: MappingProxyType({}))
    weights_version: int = 0

    def get(self, symbol: str, timeframe: str) -> Optional[Signal]:
        return self.signals.get((symbol, timeframe))

    def filter(self, symbol: str = None, timeframe: str = None) -> List[Signal]:
        return [
            signal for (sym, tf), signal in sorted(self.signals.items())
            if (symbol is None or sym == symbol) and (timeframe is None or tf == timeframe)
        ]

    def stale_keys(self) -> List[PairKey]:
        """Pairs served from an earlier cycle because this one failed for them."""
        return [key for key in self.failures if key in self.signals]


class SignalPipeline:
    """Per-pair computation: candles, indicators, patterns, regime, confluence."""

    def __init__(self, data_manager: DataManager, calculator: IndicatorCalculator,
                 recognizer: PatternRecognizer, regime_detector: RegimeDetector,
                 scorer: ConfluenceScorer, min_candles: int = 100):
        self.data_manager = data_manager
        self.calculator = calculator
        self.recognizer = recognizer
        self.regime_detector = regime_detector
        self.scorer = scorer
        self.min_candles = min_candles

    def evaluate(self, symbol: str, timeframe: str, weights: Mapping[str, float]) -> Signal:
        candles = self.data_manager.get_candles(symbol, timeframe, self.min_candles)
        indicator_set = self.calculator.compute(candles, symbol, timeframe)
        patterns = self.recognizer.detect(candles, timeframe)
        regime = self.regime_detector.classify(indicator_set, candles)
        return self.scorer.score(indicator_set, patterns, regime, weights)


class CycleScheduler:
    """
    Drives periodic signal cycles over all tracked (symbol, timeframe) pairs.

    Full cycles never overlap: a trigger that arrives while one is computing
    waits for it to finish. ``recompute_symbol`` may run alongside a cycle; it
    patches the published snapshot under a per-symbol lock, and the next swap
    keeps whichever entry is newer.
    """

    def __init__(self, pipeline: SignalPipeline, weight_manager: AdaptiveWeightManager,
                 tracker: OutcomeTracker, symbols: Sequence[str], timeframes: Sequence[str],
                 config=None):
        from .config import SchedulerConfig
        self.config = config or SchedulerConfig()
        self.pipeline = pipeline
        self.weight_manager = weight_manager
        self.tracker = tracker
        self.symbols = tuple(dict.fromkeys(symbols))
        self.timeframes = tuple(dict.fromkeys(timeframes))

        self._published = SignalSnapshot(cycle_id=0, published_at=None)
        self._state = SchedulerState.IDLE
        self._transitions: Deque[Tuple[SchedulerState, datetime]] = deque(maxlen=100)

        self._cycle_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._symbol_locks: Dict[str, threading.Lock] = {}
        self._symbol_locks_guard = threading.Lock()

        self._executor = ThreadPoolExecutor(max_workers=self.config.max_workers,
                                            thread_name_prefix="signal-pair")
        self._hung: Dict[PairKey, Future] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.cycle_count = 0
        self.last_cycle_started: Optional[datetime] = None
        self.last_cycle_duration: Optional[float] = None
        self._next_run_at: Optional[float] = None

    # =====================
    # State
    # =====================

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def pairs(self) -> List[PairKey]:
        return [(s, tf) for s in self.symbols for tf in self.timeframes]

    def transitions(self) -> List[SchedulerState]:
        return [state for state, _ in list(self._transitions)]

    def _set_state(self, state: SchedulerState):
        with self._state_lock:
            if self._state == SchedulerState.STOPPED and state != SchedulerState.STOPPED:
                return
            self._state = state
            self._transitions.append((state, datetime.now()))
        logger.debug(f"Scheduler state -> {state.value}")

    def published(self) -> SignalSnapshot:
        """Current snapshot; lock free."""
        return self._published

    # =====================
    # Full cycle
    # =====================

    def run_cycle(self) -> SignalSnapshot:
        """Compute every tracked pair and publish the result atomically."""
        if self._state == SchedulerState.STOPPED:
            raise SignalEngineError("Scheduler is stopped")

        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Cycle already in progress; deferring trigger until it completes")
            self._cycle_lock.acquire()
        try:
            return self._run_cycle_locked()
        finally:
            self._cycle_lock.release()

    def _run_cycle_locked(self) -> SignalSnapshot:
        start = time.monotonic()
        self.last_cycle_started = datetime.now()
        self._set_state(SchedulerState.COMPUTING)

        cycle_id = self.cycle_count + 1
        weights = self.weight_manager.snapshot()
        previous = self._published

        staging: Dict[PairKey, Signal] = {}
        fresh: List[Signal] = []
        failures: Dict[PairKey, str] = {}

        # A pair still running from a timed-out cycle is not submitted again
        self._hung = {key: f for key, f in self._hung.items() if not f.done()}
        for symbol, timeframe in self._hung:
            failures[(symbol, timeframe)] = "previous computation still running"
            logger.warning(f"{symbol}/{timeframe}: previous computation still running, skipped this cycle")

        futures = {
            self._executor.submit(self._compute_pair, symbol, timeframe, weights.get(symbol, timeframe)):
                (symbol, timeframe)
            for symbol, timeframe in self.pairs
            if (symbol, timeframe) not in self._hung
        }
        waves = max(1, math.ceil(len(futures) / self.config.max_workers))
        collected: Set[Future] = set()
        try:
            for future in as_completed(futures, timeout=self.config.pair_timeout_seconds * waves):
                collected.add(future)
                self._collect(future.result(), staging, fresh, failures)
        except FutureTimeoutError:
            for future, key in futures.items():
                if future in collected:
                    continue
                if future.done():
                    self._collect(future.result(), staging, fresh, failures)
                    continue
                if not future.cancel():
                    self._hung[key] = future
                failures[key] = "computation timed out"
                logger.warning(f"{key[0]}/{key[1]}: computation timed out, skipped this cycle")

        # Failed pairs keep their last signal; its timestamp marks it stale
        for key in failures:
            prior = previous.signals.get(key)
            if prior is not None:
                staging[key] = prior

        with self._publish_lock:
            current = self._published
            for key, signal in current.signals.items():
                staged = staging.get(key)
                if staged is None or signal.timestamp > staged.timestamp:
                    staging[key] = signal
            snapshot = SignalSnapshot(
                cycle_id=cycle_id,
                published_at=datetime.now(),
                signals=MappingProxyType(staging),
                failures=MappingProxyType(failures),
                weights_version=weights.version
            )
            self._published = snapshot

        for signal in fresh:
            self.tracker.track(signal)

        self.cycle_count = cycle_id
        self.last_cycle_duration = time.monotonic() - start
        self._set_state(SchedulerState.PUBLISHED)
        logger.info(f"Cycle {cycle_id} published {len(fresh)} signals, {len(failures)} failures "
                    f"in {self.last_cycle_duration:.2f}s")
        self._set_state(SchedulerState.IDLE)
        return snapshot

    @staticmethod
    def _collect(result: PairResult, staging: Dict[PairKey, Signal], fresh: List[Signal],
                 failures: Dict[PairKey, str]):
        if result.signal is not None:
            staging[result.key] = result.signal
            fresh.append(result.signal)
        else:
            failures[result.key] = result.error or "unknown error"

    def _compute_pair(self, symbol: str, timeframe: str, weights: Mapping[str, float]) -> PairResult:
        start = time.monotonic()
        try:
            signal = self.pipeline.evaluate(symbol, timeframe, weights)
            return PairResult(symbol, timeframe, signal=signal,
                              duration_ms=(time.monotonic() - start) * 1000)
        except DataUnavailableError as e:
            logger.warning(f"{symbol}/{timeframe}: {e}")
            error = str(e)
        except ComputationTimeoutError as e:
            logger.warning(f"{symbol}/{timeframe}: {e}")
            error = str(e)
        except Exception as e:
            logger.error(f"{symbol}/{timeframe}: signal computation failed: {e}", exc_info=True)
            error = f"{type(e).__name__}: {e}"
        return PairResult(symbol, timeframe, error=error, duration_ms=(time.monotonic() - start) * 1000)

    # =====================
    # Priority recompute
    # =====================

    def _symbol_lock(self, symbol: str) -> threading.Lock:
        with self._symbol_locks_guard:
            return self._symbol_locks.setdefault(symbol, threading.Lock())

    def recompute_symbol(self, symbol: str, timeframes: Iterable[str] = None) -> List[Signal]:
        """Recompute one symbol now and patch only its entries in the published snapshot."""
        if symbol not in self.symbols:
            raise InvalidParameterError(f"Unknown symbol: {symbol}")
        timeframes = tuple(timeframes) if timeframes else self.timeframes
        for timeframe in timeframes:
            if timeframe not in self.timeframes:
                raise InvalidParameterError(f"Unknown timeframe: {timeframe}")

        with self._symbol_lock(symbol):
            results = [
                self._compute_pair(symbol, tf, self.weight_manager.current_weights(symbol, tf))
                for tf in timeframes
            ]
            signals = [r.signal for r in results if r.signal is not None]

            with self._publish_lock:
                current = self._published
                patched = dict(current.signals)
                failures = dict(current.failures)
                for result in results:
                    if result.signal is not None:
                        patched[result.key] = result.signal
                        failures.pop(result.key, None)
                    else:
                        failures[result.key] = result.error or "unknown error"
                self._published = replace(
                    current,
                    signals=MappingProxyType(patched),
                    failures=MappingProxyType(failures)
                )

        for signal in signals:
            self.tracker.track(signal)
        logger.info(f"Priority recompute {symbol}: {len(signals)}/{len(timeframes)} signals updated")
        return signals

    # =====================
    # Loop
    # =====================

    def start(self):
        """Run cycles on a background coordinating thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="signal-scheduler", daemon=True)
        self._thread.start()

    def run_forever(self):
        """Blocking cycle loop until ``stop()``."""
        logger.info(f"Starting scheduler loop: {len(self.pairs)} pairs every {self.config.interval_seconds}s")
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_cycle()
            except Exception as e:
                if self._stop_event.is_set():
                    break
                logger.error(f"Error in scheduler loop: {e}", exc_info=True)
            # An overrunning cycle starts the next one straight away
            wait = max(0.0, self.config.interval_seconds - (time.monotonic() - started))
            self._next_run_at = time.monotonic() + wait
            self._stop_event.wait(wait)
        logger.info("Scheduler loop exited")

    def stop(self, wait: bool = True):
        """Kill switch: no further cycles are started."""
        self._stop_event.set()
        self._set_state(SchedulerState.STOPPED)
        if wait and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.config.pair_timeout_seconds)
        self._executor.shutdown(wait=False)

    def get_status(self) -> Dict:
        snapshot = self._published
        next_in = None
        if self._next_run_at is not None and not self._stop_event.is_set():
            next_in = max(0.0, self._next_run_at - time.monotonic())
        return {
            'state': self._state.value,
            'running': self._thread is not None and self._thread.is_alive(),
            'cycle_count': self.cycle_count,
            'last_cycle_started': self.last_cycle_started.isoformat() if self.last_cycle_started else None,
            'last_cycle_duration': self.last_cycle_duration,
            'next_cycle_in': next_in,
            'tracked_pairs': len(self.pairs),
            'published_signals': len(snapshot.signals),
            'failures': len(snapshot.failures),
            'stale_signals': len(snapshot.stale_keys())
        }


class SignalService:
    """
    Facade over the scheduler, weight manager, outcome tracker and risk engine.

    This is the surface an API layer talks to.
    """

    def __init__(self, config: SystemConfig = None, source: MarketDataSource = None):
        self.config = config or SystemConfig()

        self.data_manager = DataManager(source=source, config=self.config.data)
        self.weight_manager = AdaptiveWeightManager(config=self.config.weights)
        self.tracker = OutcomeTracker(self.weight_manager, history_limit=self.config.scheduler.signal_history)
        self.risk_engine = MonteCarloRiskEngine(config=self.config.risk)

        self.pipeline = SignalPipeline(
            data_manager=self.data_manager,
            calculator=IndicatorCalculator(config=self.config.indicators),
            recognizer=PatternRecognizer(config=self.config.patterns),
            regime_detector=RegimeDetector(config=self.config.regime),
            scorer=ConfluenceScorer(config=self.config.confluence),
            min_candles=self.config.data.min_candles
        )
        self.scheduler = CycleScheduler(
            pipeline=self.pipeline,
            weight_manager=self.weight_manager,
            tracker=self.tracker,
            symbols=self.config.data.symbols,
            timeframes=self.config.data.timeframes,
            config=self.config.scheduler
        )
        self._risk_executor = ThreadPoolExecutor(max_workers=self.config.risk.max_workers,
                                                 thread_name_prefix="risk")

        logger.info(f"SignalService initialized: {len(self.scheduler.symbols)} symbols x "
                    f"{len(self.scheduler.timeframes)} timeframes")

    # =====================
    # Reads
    # =====================

    def get_signals(self, symbol: str = None, timeframe: str = None) -> List[Signal]:
        """Latest published signals, optionally filtered."""
        self._validate_key(symbol, timeframe)
        return self.scheduler.published().filter(symbol, timeframe)

    def get_risk_assessment(self, symbol: str, timeframe: str, iterations: int = None,
                            seed: int = None) -> RiskAssessment:
        """
        Monte Carlo assessment of the currently published signal.

        Raises:
            InvalidParameterError: unknown key, bad iteration count, or a NEUTRAL signal
            SignalNotFoundError: no signal published for the key
            ComputationTimeoutError: the simulation exceeded its budget
        """
        if symbol is None or timeframe is None:
            raise InvalidParameterError("Both symbol and timeframe are required")
        self._validate_key(symbol, timeframe)

        signal = self.scheduler.published().get(symbol, timeframe)
        if signal is None:
            raise SignalNotFoundError(symbol, timeframe)

        future = self._risk_executor.submit(self.risk_engine.assess, signal, iterations, seed)
        return future.result()

    def get_status(self) -> Dict:
        return {
            **self.scheduler.get_status(),
            'data': self.data_manager.get_metrics(),
            'win_rate': self.tracker.win_rate(),
        }

    def indicator_stats(self) -> Dict[str, Dict[str, float]]:
        return self.weight_manager.stats()

    # =====================
    # Writes
    # =====================

    def record_outcome(self, signal_id: str, exit_price: float, exit_time: datetime = None) -> TradeOutcome:
        """Feed a realised exit back into the indicator weights."""
        return self.tracker.record_outcome(signal_id, exit_price, exit_time)

    def run_cycle(self) -> SignalSnapshot:
        return self.scheduler.run_cycle()

    def recompute_symbol(self, symbol: str, timeframes: Iterable[str] = None) -> List[Signal]:
        return self.scheduler.recompute_symbol(symbol, timeframes)

    def rebalance_weights(self) -> int:
        return self.weight_manager.rebalance()

    # =====================
    # Lifecycle
    # =====================

    def start(self):
        self.scheduler.start()

    def run(self):
        """Blocking main loop."""
        self.scheduler.run_forever()

    def shutdown(self):
        logger.info("Shutting down signal service...")
        self.scheduler.stop()
        self._risk_executor.shutdown(wait=False)
        self.data_manager.shutdown()
        logger.info("Signal service shutdown complete")

    def _validate_key(self, symbol: Optional[str], timeframe: Optional[str]):
        if symbol is not None and symbol not in self.scheduler.symbols:
            raise InvalidParameterError(f"Unknown symbol: {symbol}")
        if timeframe is not None and timeframe not in self.scheduler.timeframes:
            raise InvalidParameterError(f"Unknown timeframe: {timeframe}")


def setup_logging(config: LoggingConfig = None, level: str = None):
    """Configure root logging from LoggingConfig."""
    config = config or LoggingConfig()
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        directory = os.path.dirname(config.log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.FileHandler(config.log_file))
    logging.basicConfig(
        level=getattr(logging, (level or config.log_level).upper(), logging.INFO),
        format=config.log_format,
        handlers=handlers
    )


def main():
    """Main entry point for the signal engine."""
    import argparse

    parser = argparse.ArgumentParser(description='Confluence Signal Engine')
    parser.add_argument('--config', type=str, help='Path to config file')
    parser.add_argument('--symbols', nargs='+', help='Symbols to track')
    parser.add_argument('--timeframes', nargs='+', help='Timeframes to track')
    parser.add_argument('--interval', type=float, help='Seconds between cycles')
    parser.add_argument('--once', action='store_true', help='Run a single cycle and exit')
    parser.add_argument('--log-level', type=str, help='Logging level')

    args = parser.parse_args()

    config = SystemConfig.load(args.config) if args.config else SystemConfig()
    if args.symbols:
        config.data.symbols = args.symbols
    if args.timeframes:
        config.data.timeframes = args.timeframes
    if args.interval:
        config.scheduler.interval_seconds = args.interval

    setup_logging(config.logging, args.log_level)

    service = SignalService(config)
    try:
        if args.once:
            snapshot = service.run_cycle()
            print("\n" + "=" * 60)
            print(f"CYCLE {snapshot.cycle_id} SIGNALS")
            print("=" * 60)
            for signal in snapshot.filter():
                print(f"{signal.symbol:<12} {signal.timeframe:<4} {signal.direction.value:<8} "
                      f"conf={signal.confidence:5.1f} score={signal.confluence_score:+6.1f} "
                      f"entry={signal.entry_price:.2f}")
            for (symbol, timeframe), error in snapshot.failures.items():
                print(f"{symbol:<12} {timeframe:<4} FAILED   {error}")
        else:
            service.run()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        service.shutdown()


if __name__ == "__main__":
    main()
