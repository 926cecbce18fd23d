"""Trades, candles and the time-based rule that closes them."""

from __future__ import annotations

import math
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Trade:
    """A trade as the aggregator sees it: time, price and signed size."""

    timestamp: int
    price: float
    size: float


@dataclass(frozen=True)
class PublicTrade:
    """A public trade as received from an exchange stream."""

    id: str
    price: float
    amount: float
    side: str


@dataclass(frozen=True)
class TimeRangeValue:
    """The first and last trade times of a candle."""

    open: int = 0
    close: int = 0

    def duration(self) -> int:
        return self.close - self.open


@dataclass
class FastTimeRange:
    """Tracks the time of the first and the latest trade seen."""

    open_time: int = 0
    close_time: int = 0
    _initialized: bool = field(default=False, repr=False, compare=False)

    def update(self, trade: Trade) -> None:
        if not self._initialized:
            self.open_time = trade.timestamp
            self._initialized = True
        self.close_time = trade.timestamp

    def reset(self) -> None:
        self.open_time = 0
        self.close_time = 0
        self._initialized = False

    def value(self) -> TimeRangeValue:
        return TimeRangeValue(open=self.open_time, close=self.close_time)


@dataclass
class Candle:
    """Open, high, low, close, volume, trade count and time range of trades."""

    open: float = 0.0
    high: float = -math.inf
    low: float = math.inf
    close: float = 0.0
    volume: float = 0.0
    num_trades: int = 0
    time_range: FastTimeRange = field(default_factory=FastTimeRange)
    _opened: bool = field(default=False, repr=False, compare=False)

    def update(self, trade: Trade) -> None:
        if not self._opened:
            self.open = trade.price
            self._opened = True
        self.high = max(self.high, trade.price)
        self.low = min(self.low, trade.price)
        self.close = trade.price
        self.volume += abs(trade.size)
        self.num_trades += 1
        self.time_range.update(trade)

    def reset(self) -> None:
        self.open = 0.0
        self.high = -math.inf
        self.low = math.inf
        self.close = 0.0
        self.volume = 0.0
        self.num_trades = 0
        self.time_range.reset()
        self._opened = False


@dataclass
class TimeRule:
    """Starts a new candle once a trade falls past the current period.

    ``period_s`` is in seconds; ``ts_multiplier`` converts it to the unit of
    trade timestamps (1000 for milliseconds).
    """

    period_s: int
    ts_multiplier: int = 1_000
    _reference: int = field(default=0, repr=False, compare=False)
    _initialized: bool = field(default=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.period_s <= 0 or self.ts_multiplier <= 0:
            raise ValueError("period and timestamp multiplier must be positive")

    @property
    def _span(self) -> int:
        return self.period_s * self.ts_multiplier

    def _align(self, timestamp: int) -> int:
        return timestamp - timestamp % self._span

    def is_new_candle(self, trade: Trade) -> bool:
        if not self._initialized:
            self._reference = self._align(trade.timestamp)
            self._initialized = True
            return False
        if trade.timestamp >= self._reference + self._span:
            self._reference = self._align(trade.timestamp)
            return True
        return False


class CandleAggregator:
    """Feeds trades into a candle and hands it back when the rule closes it."""

    def __init__(self, rule: TimeRule, include_trade_that_triggered_rule: bool = False):
        self.rule = rule
        self.include_trade_that_triggered_rule = include_trade_that_triggered_rule
        self.candle = Candle()

    def update(self, trade: Trade) -> Candle | None:
        """Add a trade; return the finished candle if this trade closed one."""
        if self.rule.is_new_candle(trade):
            finished = self.candle
            self.candle = Candle()
            if self.include_trade_that_triggered_rule:
                finished.update(trade)
            else:
                self.candle.update(trade)
            return finished
        self.candle.update(trade)
        return None


def to_agg_trade(trade: PublicTrade, timestamp: int) -> Trade:
    """Turn an exchange trade into an aggregator trade at the given time."""
    return Trade(timestamp=timestamp, price=trade.price, size=trade.amount)