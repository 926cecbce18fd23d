"""Multi-time-frame candle aggregation driven by live trades."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping, Union

from klinehub.candles import Candle, CandleAggregator, PublicTrade, TimeRule, to_agg_trade
from klinehub.model import DEFAULT_TIMEFRAMES, MarketKline, TimeFrame
from klinehub.services import get_ck_db

logger = logging.getLogger(__name__)

DEFAULT_SYMBOLS: tuple[str, ...] = ("btc", "eth", "bnb", "sol")
MILLIS_PER_SECOND = 1_000

SymbolConfig = Union[
    Mapping[str, Iterable[TimeFrame]], Iterable[tuple[str, Iterable[TimeFrame]]]
]


class MultiTimeFrameAggregator:
    """Builds candles per symbol and time frame and stores each one that closes.

    Symbols without their own configuration use the aggregator's time frames.
    Candles are written to ``db`` when given, otherwise to the shared database.
    """

    def __init__(
        self,
        timeframes: Iterable[TimeFrame],
        *,
        db: Any = None,
        symbol_timeframes: Mapping[str, Iterable[TimeFrame]] | None = None,
    ):
        self.timeframes: list[TimeFrame] = list(timeframes)
        self._db = db
        self._symbol_timeframes: dict[str, list[TimeFrame]] = {
            symbol: list(tfs) for symbol, tfs in (symbol_timeframes or {}).items()
        }
        self._aggregators: dict[tuple[str, TimeFrame], CandleAggregator] = {}
        self._config_lock = asyncio.Lock()
        self._aggregators_lock = asyncio.Lock()

    @classmethod
    def new_with_defaults(cls) -> "MultiTimeFrameAggregator":
        """Default time frames, preconfigured for the major symbols."""
        return cls(
            DEFAULT_TIMEFRAMES,
            symbol_timeframes={symbol: DEFAULT_TIMEFRAMES for symbol in DEFAULT_SYMBOLS},
        )

    async def merge_symbols_timeframes(self, configs: SymbolConfig) -> None:
        """Add time frames to symbols, keeping each symbol's list unique and sorted."""
        pairs = configs.items() if isinstance(configs, Mapping) else configs
        async with self._config_lock:
            for symbol, new_tfs in pairs:
                combined = set(self._symbol_timeframes.get(str(symbol), ()))
                combined.update(new_tfs)
                self._symbol_timeframes[str(symbol)] = sorted(combined)

    def timeframes_for(self, symbol: str) -> list[TimeFrame]:
        """The time frames a symbol is aggregated on."""
        return list(self._symbol_timeframes.get(symbol, self.timeframes))

    async def remove_symbol(self, symbol: str) -> None:
        """Drop a symbol's configuration and every candle in progress for it."""
        async with self._config_lock:
            self._symbol_timeframes.pop(symbol, None)
        async with self._aggregators_lock:
            self._aggregators = {
                key: aggr for key, aggr in self._aggregators.items() if key[0] != symbol
            }

    def _aggregator_for(self, symbol: str, tf: TimeFrame) -> CandleAggregator:
        key = (symbol, tf)
        aggr = self._aggregators.get(key)
        if aggr is None:
            aggr = CandleAggregator(TimeRule(tf.to_period(), MILLIS_PER_SECOND), False)
            self._aggregators[key] = aggr
        return aggr

    @staticmethod
    def _to_market_kline(exchange: str, symbol: str, period: str, candle: Candle) -> MarketKline:
        return MarketKline(
            exchange=exchange,
            symbol=symbol,
            period=period,
            open_time=candle.time_range.open_time,
            open=candle.open,
            high=candle.high,
            low=candle.low,
            close=candle.close,
            volume=candle.volume,
            close_time=candle.time_range.close_time,
            quote_asset_volume=0.0,
            number_of_trades=candle.num_trades,
            taker_buy_base_asset_volume=0.0,
            taker_buy_quote_asset_volume=0.0,
        )

    async def process_trade(
        self, symbol: str, exchange: str, timestamp: int, trade: PublicTrade
    ) -> MarketKline | None:
        """Feed a trade to every time frame of the symbol.

        When candles close, the one of the last time frame in order is stored
        and returned.
        """
        agg_trade = to_agg_trade(trade, timestamp)
        async with self._config_lock:
            timeframes = self.timeframes_for(symbol)

        market_kline: MarketKline | None = None
        async with self._aggregators_lock:
            for tf in timeframes:
                candle = self._aggregator_for(symbol, tf).update(agg_trade)
                if candle is not None:
                    market_kline = self._to_market_kline(exchange, symbol, tf.to_str(), candle)

        if market_kline is not None:
            logger.info(
                "Generated %r, market_kline for %r, symbol %s", agg_trade, market_kline, symbol
            )
            db = self._db if self._db is not None else get_ck_db()
            await db.insert(market_kline)
        return market_kline