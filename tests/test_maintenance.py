import logging
import time
from unittest.mock import AsyncMock, patch

import pytest

from klinehub.maintenance import (
    ArchiveDirection,
    ArchiveProgress,
    ArchiveTask,
    ArchiveWindow,
    BinanceFetcher,
    ClickhouseWriter,
    ProgressTracker,
    is_kline_continuous,
    kline_to_market,
    run_archive_task,
)
from klinehub.model import KlineSummary, MarketKline, TimeFrame


def summary(open_time, close_time=None):
    return KlineSummary(
        open_time=open_time,
        open=1.0,
        high=2.0,
        low=0.5,
        close=1.5,
        volume=10.0,
        close_time=close_time if close_time is not None else open_time + 59,
        quote_asset_volume=15.0,
        number_of_trades=7,
        taker_buy_base_asset_volume=4.0,
        taker_buy_quote_asset_volume=6.0,
    )


class FakeDb:
    def __init__(self):
        self.batches = []

    async def insert_batch(self, data):
        self.batches.append(list(data))


class RecordingFetcher:
    def __init__(self, respond, failures=0):
        self.respond = respond
        self.failures = failures
        self.calls = []

    async def klines(self, symbol, tf, limit=None, start=None, end=None):
        self.calls.append((symbol, tf, limit, start, end))
        if self.failures:
            self.failures -= 1
            raise ConnectionError("boom")
        return self.respond(start, end)


class RecordingTracker(ProgressTracker):
    def __init__(self):
        super().__init__()
        self.history = []

    async def update_progress(self, progress):
        self.history.append(progress)
        await super().update_progress(progress)


def make_task(direction, start, end, tf=TimeFrame.M1):
    return ArchiveTask("BTCUSDT", "binance", tf, ArchiveWindow(start, end), direction)


def test_continuity():
    assert is_kline_continuous([], 60)
    assert is_kline_continuous([summary(0)], 60)
    assert is_kline_continuous([summary(0), summary(60), summary(120)], 60)
    assert not is_kline_continuous([summary(0), summary(120)], 60)


def test_kline_to_market_copies_fields():
    s = summary(100, 200)
    kline = kline_to_market(s, "binance", "BTCUSDT", "1m")
    assert isinstance(kline, MarketKline)
    assert (kline.exchange, kline.symbol, kline.period) == ("binance", "BTCUSDT", "1m")
    assert (kline.open_time, kline.close_time) == (s.open_time, s.close_time)
    assert (kline.open, kline.high, kline.low, kline.close) == (s.open, s.high, s.low, s.close)
    assert kline.number_of_trades == s.number_of_trades
    assert kline.taker_buy_quote_asset_volume == s.taker_buy_quote_asset_volume


@pytest.mark.asyncio
async def test_progress_tracker_round_trip():
    tracker = ProgressTracker()
    assert await tracker.get_progress("BTCUSDT", "binance", "1m", "forward") is None
    first = ArchiveProgress("BTCUSDT", "binance", "1m", "forward", 10, False)
    second = ArchiveProgress("BTCUSDT", "binance", "1m", "forward", 20, True)
    await tracker.update_progress(first)
    await tracker.update_progress(second)
    assert await tracker.get_progress("BTCUSDT", "binance", "1m", "forward") == second
    assert await tracker.get_progress("BTCUSDT", "binance", "1m", "backward") is None


@pytest.mark.asyncio
async def test_writer_converts_and_skips_empty():
    db = FakeDb()
    writer = ClickhouseWriter(db)
    await writer.write_batch([], "binance", "BTCUSDT", "1m")
    assert db.batches == []
    klines = [summary(0), summary(60)]
    await writer.write_batch(klines, "binance", "BTCUSDT", "1m")
    assert db.batches == [[kline_to_market(k, "binance", "BTCUSDT", "1m") for k in klines]]


@pytest.mark.asyncio
async def test_fetcher_passes_arguments():
    market = RecordingFetcher(lambda start, end: [summary(start)])
    fetcher = BinanceFetcher(market)
    result = await fetcher.klines("BTCUSDT", "1m", 5, 100, 200)
    assert result == [summary(100)]
    assert market.calls == [("BTCUSDT", "1m", 5, 100, 200)]


@pytest.mark.asyncio
async def test_empty_fetch_stops_without_writing():
    db, tracker = FakeDb(), RecordingTracker()
    fetcher = RecordingFetcher(lambda start, end: [])
    await run_archive_task(
        make_task(ArchiveDirection.FORWARD, 0, 150_000), fetcher, ClickhouseWriter(db), tracker
    )
    assert len(fetcher.calls) == 1
    assert db.batches == []
    assert tracker.history == []


@pytest.mark.asyncio
async def test_forward_archive_walks_to_end():
    db, tracker = FakeDb(), RecordingTracker()
    fetcher = RecordingFetcher(lambda start, end: [summary(start, end)])
    end_time = 150_000
    await run_archive_task(
        make_task(ArchiveDirection.FORWARD, 0, end_time), fetcher, ClickhouseWriter(db), tracker
    )
    step = TimeFrame.M1.to_period()
    assert fetcher.calls[0][3] == 0
    for (_, tf, limit, start, end), progress in zip(fetcher.calls, tracker.history):
        assert tf == "1m" and limit == 1000
        assert start < end
        assert progress.last_processed_time == end
    for previous, call in zip(tracker.history, fetcher.calls[1:]):
        assert call[3] == previous.last_processed_time + step
    assert len(db.batches) == len(fetcher.calls) == len(tracker.history)
    assert tracker.history[-1].completed
    assert all(not p.completed for p in tracker.history[:-1])
    assert tracker.history[-1].last_processed_time + step >= end_time
    stored = await tracker.get_progress("BTCUSDT", "binance", "1m", "forward")
    assert stored == tracker.history[-1]


@pytest.mark.asyncio
async def test_backward_archive_moves_back():
    db, tracker = FakeDb(), RecordingTracker()
    fetcher = RecordingFetcher(lambda start, end: [summary(start, start)])
    await run_archive_task(
        make_task(ArchiveDirection.BACKWARD, 200_000, 50_000),
        fetcher,
        ClickhouseWriter(db),
        tracker,
    )
    assert fetcher.calls[0][4] == 200_000
    ends = [call[4] for call in fetcher.calls]
    assert ends == sorted(ends, reverse=True)
    assert all(call[3] < call[4] for call in fetcher.calls)
    assert all(p.direction == "backward" for p in tracker.history)
    assert tracker.history[-1].last_processed_time - TimeFrame.M1.to_period() <= 50_000


@pytest.mark.asyncio
async def test_resumes_from_recorded_progress():
    tracker = ProgressTracker()
    await tracker.update_progress(
        ArchiveProgress("BTCUSDT", "binance", "1m", "forward", 1_000, False)
    )
    fetcher = RecordingFetcher(lambda start, end: [])
    await run_archive_task(
        make_task(ArchiveDirection.FORWARD, None, 10_000_000),
        fetcher,
        ClickhouseWriter(FakeDb()),
        tracker,
    )
    assert fetcher.calls[0][3] == 1_000 + TimeFrame.M1.to_period()


@pytest.mark.asyncio
async def test_defaults_to_one_day_back():
    fetcher = RecordingFetcher(lambda start, end: [])
    before = int(time.time() * 1000) - 1
    await run_archive_task(
        make_task(ArchiveDirection.FORWARD, None, None),
        fetcher,
        ClickhouseWriter(FakeDb()),
        ProgressTracker(),
    )
    after = int(time.time() * 1000) + 1
    start = fetcher.calls[0][3]
    assert before - 86_400_000 <= start <= after - 86_400_000


@pytest.mark.asyncio
async def test_retries_transient_failure():
    db = FakeDb()
    fetcher = RecordingFetcher(lambda start, end: [summary(start, end)], failures=1)
    with patch("asyncio.sleep", new=AsyncMock()):
        await run_archive_task(
            make_task(ArchiveDirection.FORWARD, 0, 1_000),
            fetcher,
            ClickhouseWriter(db),
            ProgressTracker(),
        )
    assert len(fetcher.calls) == 2
    assert fetcher.calls[0] == fetcher.calls[1]
    assert len(db.batches) == 1


@pytest.mark.asyncio
async def test_retries_until_fetch_succeeds():
    db = FakeDb()
    fetcher = RecordingFetcher(lambda start, end: [summary(start, end)], failures=5)
    with patch("asyncio.sleep", new=AsyncMock()):
        await run_archive_task(
            make_task(ArchiveDirection.FORWARD, 0, 1_000),
            fetcher,
            ClickhouseWriter(db),
            ProgressTracker(),
        )
    assert len(fetcher.calls) == 6
    assert len(set(fetcher.calls)) == 1
    assert len(db.batches) == 1


@pytest.mark.asyncio
async def test_gap_is_logged(caplog):
    fetcher = RecordingFetcher(lambda start, end: [summary(start, end), summary(start + 7, end)])
    with caplog.at_level(logging.WARNING, logger="klinehub.maintenance"):
        await run_archive_task(
            make_task(ArchiveDirection.FORWARD, 0, 1_000),
            fetcher,
            ClickhouseWriter(FakeDb()),
            ProgressTracker(),
        )
    assert any("Gap detected" in record.getMessage() for record in caplog.records)