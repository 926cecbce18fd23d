"""Archiving of historical candles from the exchange into ClickHouse."""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import backoff

from klinehub.model import KlineSummary, MarketKline, TimeFrame
from klinehub.services import get_ck_db, get_futures_market

logger = logging.getLogger(__name__)

FETCH_LIMIT = 1000
DEFAULT_LOOKBACK_MS = 86_400_000
DEFAULT_MAX_RETRY_SECONDS = 900.0
DEFAULT_BACKOFF_FACTOR = 0.5


class ArchiveDirection(enum.Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


@dataclass
class ArchiveWindow:
    start_time: int | None = None
    end_time: int | None = None


@dataclass
class ArchiveTask:
    symbol: str
    exchange: str
    tf: TimeFrame
    window: ArchiveWindow
    direction: ArchiveDirection


@dataclass
class ArchiveProgress:
    symbol: str
    exchange: str
    tf: str
    direction: str
    last_processed_time: int
    completed: bool


class ProgressTracker:
    """Remembers how far each archive run has got."""

    def __init__(self) -> None:
        self._progress: dict[tuple[str, str, str, str], ArchiveProgress] = {}

    async def get_progress(
        self, symbol: str, exchange: str, tf: str, direction: str
    ) -> ArchiveProgress | None:
        return self._progress.get((symbol, exchange, tf, direction))

    async def update_progress(self, progress: ArchiveProgress) -> None:
        key = (progress.symbol, progress.exchange, progress.tf, progress.direction)
        self._progress[key] = progress


def is_kline_continuous(klines: Sequence[KlineSummary], tf_ms: int) -> bool:
    """True when consecutive candles open exactly ``tf_ms`` apart."""
    return all(b.open_time - a.open_time == tf_ms for a, b in zip(klines, klines[1:]))


def kline_to_market(summary: KlineSummary, exchange: str, symbol: str, period: str) -> MarketKline:
    """Label an exchange candle with its market for storage."""
    return MarketKline(
        exchange=exchange,
        symbol=symbol,
        period=period,
        open_time=summary.open_time,
        open=summary.open,
        high=summary.high,
        low=summary.low,
        close=summary.close,
        volume=summary.volume,
        close_time=summary.close_time,
        quote_asset_volume=summary.quote_asset_volume,
        number_of_trades=int(summary.number_of_trades),
        taker_buy_base_asset_volume=summary.taker_buy_base_asset_volume,
        taker_buy_quote_asset_volume=summary.taker_buy_quote_asset_volume,
    )


class BinanceFetcher:
    """Fetches candles from the futures market client."""

    def __init__(self, market: Any = None):
        self._market = market

    async def klines(
        self,
        symbol: str,
        tf: str,
        limit: int | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> list[KlineSummary]:
        market = self._market if self._market is not None else get_futures_market()
        return list(await market.klines(symbol, tf, limit, start, end))


class ClickhouseWriter:
    """Stores exchange candles as market klines."""

    def __init__(self, db: Any = None):
        self._db = db

    async def write_batch(
        self, klines: Iterable[KlineSummary], exchange: str, symbol: str, period: str
    ) -> None:
        market_klines = [kline_to_market(k, exchange, symbol, period) for k in klines]
        if not market_klines:
            return
        db = self._db if self._db is not None else get_ck_db()
        await db.insert_batch(market_klines)


def _now_millis() -> int:
    return int(time.time() * 1000)


def _log_retry(details: dict[str, Any]) -> None:
    logger.warning("Failed to fetch Klines, retrying (attempt %s)", details.get("tries"))


async def run_archive_task(
    task: ArchiveTask,
    fetcher: BinanceFetcher | None = None,
    writer: ClickhouseWriter | None = None,
    tracker: ProgressTracker | None = None,
) -> None:
    """Walk the task's window in steps, fetching, storing and recording progress."""
    fetcher = fetcher if fetcher is not None else BinanceFetcher()
    writer = writer if writer is not None else ClickhouseWriter()
    tracker = tracker if tracker is not None else ProgressTracker()

    tf_str = task.tf.to_str()
    step = task.tf.to_period()
    forward = task.direction is ArchiveDirection.FORWARD
    direction = task.direction.value

    if task.window.start_time is not None:
        current = task.window.start_time
    else:
        progress = await tracker.get_progress(task.symbol, task.exchange, tf_str, direction)
        if progress is not None:
            current = progress.last_processed_time + step
        else:
            current = _now_millis() - DEFAULT_LOOKBACK_MS if forward else _now_millis()

    end_time = task.window.end_time if task.window.end_time is not None else _now_millis()

    @backoff.on_exception(
        backoff.expo,
        Exception,
        max_time=DEFAULT_MAX_RETRY_SECONDS,
        on_backoff=_log_retry,
        factor=DEFAULT_BACKOFF_FACTOR,
    )
    async def fetch(start: int, end: int) -> list[KlineSummary]:
        return await fetcher.klines(task.symbol, tf_str, FETCH_LIMIT, start, end)

    while current < end_time if forward else current > end_time:
        if forward:
            start, end = current, current + step * 1000
        else:
            start, end = current - step * 1000, current

        klines = await fetch(start, end)
        if not klines:
            logger.info("No data between %s ~ %s", start, end)
            break

        if not is_kline_continuous(klines, step):
            logger.warning("Gap detected in klines between %s ~ %s", start, end)

        await writer.write_batch(klines, task.exchange, task.symbol, tf_str)

        last_ts = max(k.close_time for k in klines)
        await tracker.update_progress(
            ArchiveProgress(
                symbol=task.symbol,
                exchange=task.exchange,
                tf=tf_str,
                direction=direction,
                last_processed_time=last_ts,
                completed=last_ts >= end_time,
            )
        )
        current = last_ts + step if forward else last_ts - step