"""
Exceptions
==========
Error taxonomy for the signal pipeline.

Per-pair errors (data, history, timeouts) are isolated by the scheduler;
request errors (invalid parameters, missing signals) propagate to the caller.
"""


class SignalEngineError(Exception):
    """Base class for all signal engine errors."""


class DataUnavailableError(SignalEngineError):
    """No candles or price could be obtained for a symbol."""

    def __init__(self, symbol: str, timeframe: str = None, reason: str = ""):
        self.symbol = symbol
        self.timeframe = timeframe
        self.reason = reason
        where = f"{symbol}/{timeframe}" if timeframe else symbol
        super().__init__(f"Market data unavailable for {where}" + (f": {reason}" if reason else ""))


class InsufficientHistoryError(SignalEngineError):
    """Fewer candles than an indicator needs."""

    def __init__(self, indicator: str, required: int, available: int):
        self.indicator = indicator
        self.required = required
        self.available = available
        super().__init__(f"{indicator} needs {required} candles, got {available}")


class InvalidParameterError(SignalEngineError, ValueError):
    """A request carried an unknown symbol, timeframe or bad argument."""


class ComputationTimeoutError(SignalEngineError):
    """A computation exceeded its time budget."""


class SignalNotFoundError(SignalEngineError, LookupError):
    """No active signal for the requested key."""

    def __init__(self, symbol: str, timeframe: str = None):
        self.symbol = symbol
        self.timeframe = timeframe
        where = f"{symbol}/{timeframe}" if timeframe else symbol
        super().__init__(f"No active signal for {where}")
