"""Environment helpers and factories for the external services."""

from __future__ import annotations

import json
import math
import os
from typing import Any

import httpx

from klinehub.ckdb import ClickhouseDb
from klinehub.kv_store import RedisKVStore
from klinehub.model import KlineSummary

KLINES_PATH = "/fapi/v1/klines"
LOCAL_REDIS_URL = "redis://localhost:6379"
LOCAL_CLICKHOUSE_URL = "http://localhost:8123"
_MAX_DECIMALS = 9


def is_local() -> bool:
    """True when the LOCAL environment variable is set."""
    return "LOCAL" in os.environ


def must_get_env(key: str) -> str:
    """Return an environment variable, failing when it is missing."""
    try:
        return os.environ[key]
    except KeyError:
        raise RuntimeError(f"{key} must be set") from None


def round_to_decimals(x: float, decimals: int) -> float:
    """Round to a number of decimals, halves away from zero."""
    if decimals < 0 or decimals > _MAX_DECIMALS:
        raise OverflowError(f"decimals must be between 0 and {_MAX_DECIMALS}")
    scale = float(10**decimals)
    scaled = x * scale
    return math.copysign(math.floor(abs(scaled) + 0.5), scaled) / scale


def write_json(data: str, file_name: str) -> None:
    """Write a string to a file as a JSON string literal."""
    with open(file_name, "w", encoding="utf-8") as handle:
        json.dump(data, handle, ensure_ascii=False)


class FuturesMarket:
    """Client for the USD-margined futures market data endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)

    async def klines(
        self,
        symbol: str,
        interval: str,
        limit: int | None = None,
        start_time: int | None = None,
        end_time: int | None = None,
    ) -> list[KlineSummary]:
        """Fetch candles; an unexpected response shape yields an empty list."""
        params: dict[str, Any] = {"symbol": symbol, "interval": interval}
        optional = {"limit": limit, "startTime": start_time, "endTime": end_time}
        params.update({name: value for name, value in optional.items() if value is not None})
        response = await self._http.get(KLINES_PATH, params=params)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, list):
            return []
        return [KlineSummary.from_row(row) for row in payload]

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "FuturesMarket":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def make_binance_client() -> FuturesMarket:
    """Build the futures client from BINANCE_FUTURES_URL."""
    return FuturesMarket(must_get_env("BINANCE_FUTURES_URL"))


async def make_kv_store() -> RedisKVStore:
    """Connect to the local Redis, or to REDIS_URL outside local mode."""
    url = LOCAL_REDIS_URL if is_local() else must_get_env("REDIS_URL")
    return await RedisKVStore.connect(url)


async def make_db() -> ClickhouseDb:
    """Connect to ClickHouse and create its tables."""
    if is_local():
        db = ClickhouseDb(LOCAL_CLICKHOUSE_URL, "default", "default", "default")
    else:
        db = ClickhouseDb(
            must_get_env("CLICKHOUSE_URL"),
            must_get_env("CLICKHOUSE_PASSWORD"),
            must_get_env("CLICKHOUSE_USER"),
            must_get_env("CLICKHOUSE_DATABASE"),
        )
    try:
        await db.initialize()
    except BaseException:
        await db.client.close()
        raise
    return db