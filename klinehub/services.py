"""Process-wide shared service instances, set once at start-up."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from klinehub.util import make_binance_client, make_db, make_kv_store


@dataclass
class _Registry:
    ck_db: Any = None
    kv_store: Any = None
    futures_market: Any = None


_registry = _Registry()


def _install(ck_db: Any, kv_store: Any, futures_market: Any) -> None:
    # The database and market keep their first value; a second KV store is an error.
    if _registry.ck_db is None:
        _registry.ck_db = ck_db
    if _registry.kv_store is not None:
        raise RuntimeError("KV Store already initialized")
    _registry.kv_store = kv_store
    if _registry.futures_market is None:
        _registry.futures_market = futures_market


def _reset() -> None:
    _registry.ck_db = None
    _registry.kv_store = None
    _registry.futures_market = None


async def init_global_services() -> None:
    """Create the database, KV store and market client and register them."""
    ck_db = await make_db()
    kv_store = await make_kv_store()
    futures_market = await make_binance_client()
    _install(ck_db, kv_store, futures_market)


def get_ck_db() -> Any:
    """The shared ClickHouse database."""
    if _registry.ck_db is None:
        raise RuntimeError("ClickhouseDb not initialized")
    return _registry.ck_db


def get_kv() -> Any:
    """The shared Redis KV store."""
    if _registry.kv_store is None:
        raise RuntimeError("KvStore not initialized")
    return _registry.kv_store


def get_futures_market() -> Any:
    """The shared futures market client."""
    if _registry.futures_market is None:
        raise RuntimeError("FuturesMarket not initialized")
    return _registry.futures_market