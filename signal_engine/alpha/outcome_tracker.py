"""
Outcome Tracking
================
Keeps a bounded history of published signals and turns realised trade exits
into per-indicator feedback for the AdaptiveWeightManager.
"""

from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, List, Optional, Set, Tuple
import threading
import logging

from .adaptive_weights import AdaptiveWeightManager
from .confluence_scorer import Direction, Signal
from ..exceptions import InvalidParameterError, SignalNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeOutcome:
    """Realised result of one signal."""
    signal_id: str
    symbol: str
    timeframe: str
    direction: Direction
    entry_price: float
    exit_price: float
    exit_time: datetime
    return_pct: float  # Signed in the trade's direction
    successful: bool
    credited: Tuple[Tuple[str, bool], ...] = ()  # (indicator, vote was right)

    def to_dict(self) -> dict:
        return {
            'signal_id': self.signal_id,
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'exit_time': self.exit_time.isoformat(),
            'return_pct': self.return_pct,
            'successful': self.successful,
            'credited': dict(self.credited)
        }


class OutcomeTracker:
    """
    Signal history plus outcome attribution.

    Each indicator that voted LONG or SHORT on the signal is credited with
    success when its vote matches the realised move from entry to exit.
    """

    def __init__(self, weight_manager: AdaptiveWeightManager, history_limit: int = 5000):
        self.weight_manager = weight_manager
        self.history_limit = history_limit
        self._signals: "OrderedDict[str, Signal]" = OrderedDict()
        self._outcomes: Deque[TradeOutcome] = deque(maxlen=history_limit)
        self._recorded: Set[str] = set()
        self._lock = threading.Lock()

    def track(self, signal: Signal):
        with self._lock:
            self._signals[signal.signal_id] = signal
            self._signals.move_to_end(signal.signal_id)
            while len(self._signals) > self.history_limit:
                evicted, _ = self._signals.popitem(last=False)
                self._recorded.discard(evicted)

    def get_signal(self, signal_id: str) -> Optional[Signal]:
        with self._lock:
            return self._signals.get(signal_id)

    def record_outcome(self, signal_id: str, exit_price: float, exit_time: datetime = None) -> TradeOutcome:
        """
        Evaluate a closed signal and feed its indicators' results to the weight manager.

        Raises:
            SignalNotFoundError: the id is unknown or has aged out of history
            InvalidParameterError: non-positive exit price, a NEUTRAL signal,
                or an outcome already recorded for this id
        """
        if exit_price is None or exit_price <= 0:
            raise InvalidParameterError(f"Invalid exit price: {exit_price}")

        with self._lock:
            signal = self._signals.get(signal_id)
            if signal is None:
                raise SignalNotFoundError(signal_id)
            if signal.direction == Direction.NEUTRAL:
                raise InvalidParameterError(f"Signal {signal_id} is NEUTRAL; there is no trade to evaluate")
            if signal_id in self._recorded:
                raise InvalidParameterError(f"Outcome for signal {signal_id} already recorded")
            # Claimed before crediting so a concurrent call for the same id is refused
            self._recorded.add(signal_id)

        move = exit_price - signal.entry_price
        realised = Direction.from_sign(move)
        return_pct = signal.direction.sign * move / signal.entry_price * 100

        credited: List[Tuple[str, bool]] = []
        try:
            for vote in signal.indicator_votes:
                if vote.direction == Direction.NEUTRAL:
                    continue
                correct = vote.direction == realised
                self.weight_manager.record_outcome(vote.indicator, signal.symbol, signal.timeframe, correct)
                credited.append((vote.indicator, correct))
        except Exception:
            if not credited:
                with self._lock:
                    self._recorded.discard(signal_id)
            raise

        outcome = TradeOutcome(
            signal_id=signal_id,
            symbol=signal.symbol,
            timeframe=signal.timeframe,
            direction=signal.direction,
            entry_price=signal.entry_price,
            exit_price=float(exit_price),
            exit_time=exit_time or datetime.now(),
            return_pct=return_pct,
            successful=return_pct > 0,
            credited=tuple(credited)
        )
        with self._lock:
            self._outcomes.append(outcome)

        logger.info(f"Outcome {signal.symbol}/{signal.timeframe} {signal.direction.value}: "
                    f"{return_pct:+.2f}%, credited {len(credited)} indicators")
        return outcome

    def outcomes(self, limit: int = 100) -> List[TradeOutcome]:
        with self._lock:
            return list(self._outcomes)[-limit:]

    def win_rate(self) -> Optional[float]:
        with self._lock:
            outcomes = list(self._outcomes)
        if not outcomes:
            return None
        return sum(1 for o in outcomes if o.successful) / len(outcomes)
