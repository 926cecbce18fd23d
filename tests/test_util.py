import json

import httpx
import pytest

from klinehub.model import KlineSummary
from klinehub.util import (
    FuturesMarket,
    is_local,
    make_binance_client,
    make_db,
    make_kv_store,
    must_get_env,
    round_to_decimals,
    write_json,
)


def test_is_local_follows_env(monkeypatch):
    monkeypatch.setenv("LOCAL", "1")
    assert is_local() is True
    monkeypatch.delenv("LOCAL")
    assert is_local() is False


def test_must_get_env(monkeypatch):
    monkeypatch.setenv("KLINEHUB_SAMPLE", "value")
    assert must_get_env("KLINEHUB_SAMPLE") == "value"
    monkeypatch.delenv("KLINEHUB_SAMPLE")
    with pytest.raises(RuntimeError, match="KLINEHUB_SAMPLE must be set"):
        must_get_env("KLINEHUB_SAMPLE")


def test_round_half_away_from_zero():
    assert round_to_decimals(2.5, 0) == 3.0
    assert round_to_decimals(-2.5, 0) == -3.0


@pytest.mark.parametrize("x", [0.25, 1.5, 123.75, -7.125])
def test_round_keeps_exact_values(x):
    assert round_to_decimals(x, 3) == x


@pytest.mark.parametrize("x", [1.23456, 9.87654, 0.000123])
def test_round_is_idempotent_and_symmetric(x):
    once = round_to_decimals(x, 2)
    assert round_to_decimals(once, 2) == once
    assert round_to_decimals(-x, 2) == -once
    assert abs(once - x) <= 0.005 + 1e-12


def test_round_rejects_too_many_decimals():
    with pytest.raises(OverflowError):
        round_to_decimals(1.0, 10)


def test_write_json_round_trip(tmp_path):
    target = tmp_path / "out.json"
    data = 'line "quoted" ünïcode'
    write_json(data, str(target))
    text = target.read_text(encoding="utf-8")
    assert text.startswith('"')
    assert json.loads(text) == data


@pytest.mark.asyncio
async def test_futures_market_klines_parses_rows():
    seen = []
    row = [1000, "1.5", "2.0", "1.0", "1.8", "12.5", 1999, "20.0", 7, "3.0", "4.0"]

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[row])

    market = FuturesMarket("http://futures.example.com", transport=httpx.MockTransport(handler))
    result = await market.klines("BTCUSDT", "1m", limit=1000, start_time=1000, end_time=2000)
    await market.close()
    assert result == [KlineSummary.from_row(row)]
    params = seen[0].url.params
    assert seen[0].url.path == "/fapi/v1/klines"
    assert params["symbol"] == "BTCUSDT"
    assert params["interval"] == "1m"
    assert params["limit"] == "1000"
    assert params["startTime"] == "1000"
    assert params["endTime"] == "2000"


@pytest.mark.asyncio
async def test_futures_market_omits_missing_params_and_non_list():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"code": 0})

    market = FuturesMarket("http://futures.example.com", transport=httpx.MockTransport(handler))
    assert await market.klines("BTCUSDT", "1h") == []
    await market.close()
    assert set(seen[0].url.params.keys()) == {"symbol", "interval"}


@pytest.mark.asyncio
async def test_futures_market_http_error():
    market = FuturesMarket(
        "http://futures.example.com",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await market.klines("BTCUSDT", "1m")
    await market.close()


@pytest.mark.asyncio
async def test_make_binance_client_uses_env(monkeypatch):
    monkeypatch.setenv("BINANCE_FUTURES_URL", "http://futures.example.com")
    market = await make_binance_client()
    assert market.base_url == "http://futures.example.com"
    await market.close()
    monkeypatch.delenv("BINANCE_FUTURES_URL")
    with pytest.raises(RuntimeError, match="BINANCE_FUTURES_URL must be set"):
        await make_binance_client()


@pytest.mark.asyncio
async def test_make_kv_store_needs_redis_url(monkeypatch):
    monkeypatch.delenv("LOCAL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    with pytest.raises(RuntimeError, match="REDIS_URL must be set"):
        await make_kv_store()


@pytest.mark.asyncio
async def test_make_db_needs_clickhouse_env(monkeypatch):
    monkeypatch.delenv("LOCAL", raising=False)
    monkeypatch.delenv("CLICKHOUSE_URL", raising=False)
    with pytest.raises(RuntimeError, match="CLICKHOUSE_URL must be set"):
        await make_db()