"""JSON key-value storage on Redis."""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

POOL_MAX_SIZE = 200


def create_redis_pool(redis_url: str) -> aioredis.ConnectionPool:
    """Build a connection pool for the given Redis URL."""
    return aioredis.ConnectionPool.from_url(
        redis_url,
        max_connections=POOL_MAX_SIZE,
        decode_responses=True,
    )


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, enum.Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class RedisKVStore:
    """Stores values as JSON strings under plain keys."""

    def __init__(self, client: Any):
        self._client = client

    @classmethod
    async def connect(cls, redis_url: str) -> "RedisKVStore":
        """Open a pooled client and check that the server answers."""
        client = aioredis.Redis.from_pool(create_redis_pool(redis_url))
        try:
            await client.ping()
        except RedisError:
            await client.aclose()
            raise
        logger.info("Connected to Redis KV store at %s", redis_url)
        return cls(client)

    async def get(self, key: str) -> Any | None:
        """Return the decoded value, or None if the key is absent."""
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            raise RedisError(f"Failed to execute GET for key: {key}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise ValueError(f"Failed to deserialize value for key: {key}") from exc

    async def set(self, key: str, value: Any) -> None:
        """Store a value as JSON; dataclasses are stored as objects."""
        encoded = json.dumps(value, default=_json_default)
        try:
            await self._client.set(key, encoded)
        except RedisError as exc:
            raise RedisError(f"Failed to set key: {key}") from exc
        logger.debug("redis set ok: %s", key)

    async def exists(self, key: str) -> bool:
        try:
            count = await self._client.exists(key)
        except RedisError as exc:
            raise RedisError(f"Failed to query exists for key: {key}") from exc
        found = bool(count)
        logger.debug("redis exists ok: %s=%s", key, found)
        return found

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RedisKVStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @staticmethod
    def _price_key(mint: str) -> str:
        return f"solana:price:{mint}"

    @staticmethod
    def _metadata_key(mint: str) -> str:
        return f"solana:metadata:{mint}"