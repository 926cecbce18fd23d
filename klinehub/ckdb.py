"""ClickHouse storage over HTTP with buffered, batched inserts."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

import httpx

from klinehub.model import MarketKline, PriceUpdate

logger = logging.getLogger(__name__)

INSERT_MAX_BYTES = 1_000_000
INSERT_PERIOD_SECONDS = 15.0
SEND_TIMEOUT_SECONDS = 5.0
END_TIMEOUT_SECONDS = 20.0

TABLE_SCHEMAS: tuple[tuple[str, str], ...] = (
    (
        "price_updates",
        """
            CREATE TABLE IF NOT EXISTS price_updates (
                name String,
                pubkey String,
                price Float64,
                market_cap Float64,
                timestamp UInt64,
                slot UInt64,
                swap_amount Float64,
                owner String,
                signature String,
                multi_hop Bool,
                is_buy Bool,
                is_pump Bool,
                INDEX idx_mints (name, pubkey) TYPE minmax GRANULARITY 1
            ) ENGINE = MergeTree()
            ORDER BY (name, pubkey, timestamp)
        """,
    ),
    (
        "market_klines",
        """
            CREATE TABLE IF NOT EXISTS market_klines (
                exchange String,
                symbol String,
                period String,
                open_time UInt64,
                open Float64,
                high Float64,
                low Float64,
                close Float64,
                volume Float64,
                close_time UInt64,
                quote_asset_volume Float64,
                number_of_trades UInt64,
                taker_buy_base_asset_volume Float64,
                taker_buy_quote_asset_volume Float64,
                PRIMARY KEY (exchange, symbol, period, close_time, open_time)
            ) ENGINE = MergeTree()
            ORDER BY (exchange, symbol, period, close_time, open_time)
        """,
    ),
    (
        "archive_progress",
        """
            CREATE TABLE IF NOT EXISTS archive_progress (
                exchange String,
                symbol String,
                period String,
                last_archived_time UInt64,
                updated_at DateTime DEFAULT now(),
                PRIMARY KEY (exchange, symbol, period)
            ) ENGINE = ReplacingMergeTree(updated_at)
            ORDER BY (exchange, symbol, period)
        """,
    ),
)

RECORD_TYPES: tuple[type, ...] = (PriceUpdate, MarketKline)


class DatabaseError(Exception):
    """A ClickHouse request or insert failed."""


class ClickhouseClient:
    """Minimal ClickHouse HTTP interface client."""

    def __init__(
        self,
        url: str,
        user: str,
        password: str,
        database: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.user = user
        self.database = database
        self._http = httpx.AsyncClient(
            headers={"X-ClickHouse-User": user, "X-ClickHouse-Key": password},
            timeout=httpx.Timeout(END_TIMEOUT_SECONDS, connect=SEND_TIMEOUT_SECONDS),
            transport=transport,
        )

    async def _post(self, body: bytes, params: Mapping[str, str]) -> str:
        try:
            response = await self._http.post(self.url, params=dict(params), content=body)
        except httpx.HTTPError as exc:
            raise DatabaseError(f"request to {self.url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise DatabaseError(
                f"HTTP {response.status_code}: {response.text.strip()}"
            )
        return response.text

    async def execute(self, query: str) -> str:
        """Run a statement and return the raw response text."""
        return await self._post(query.encode("utf-8"), {"database": self.database})

    async def insert_rows(self, table: str, rows: Iterable[Mapping[str, Any]]) -> None:
        """Send rows to a table in one JSONEachRow request."""
        lines = [json.dumps(dict(row)) for row in rows]
        if not lines:
            return
        body = "".join(f"{line}\n" for line in lines).encode("utf-8")
        params = {
            "database": self.database,
            "query": f"INSERT INTO {table} FORMAT JSONEachRow",
        }
        await self._post(body, params)

    async def close(self) -> None:
        await self._http.aclose()


class Inserter:
    """Buffers rows for one table and sends them once a limit is reached."""

    def __init__(
        self,
        client: ClickhouseClient,
        table: str,
        *,
        max_rows: int = 1000,
        max_bytes: int = INSERT_MAX_BYTES,
        period: float | None = INSERT_PERIOD_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.table = table
        self.max_rows = max_rows
        self.max_bytes = max_bytes
        self.period = period
        self._clock = clock
        self._rows: list[dict[str, Any]] = []
        self._bytes = 0
        self._last_flush = clock()

    @property
    def pending(self) -> int:
        """Number of rows written but not yet sent."""
        return len(self._rows)

    async def write(self, row: Mapping[str, Any]) -> None:
        """Buffer a row, sending the buffer if a limit has been reached."""
        encoded = json.dumps(dict(row))
        self._rows.append(dict(row))
        self._bytes += len(encoded.encode("utf-8")) + 1
        await self.commit()

    def _is_due(self) -> bool:
        if len(self._rows) >= self.max_rows or self._bytes >= self.max_bytes:
            return True
        return self.period is not None and self._clock() - self._last_flush >= self.period

    async def commit(self) -> int:
        """Send buffered rows if a limit is reached; return how many were sent."""
        if not self._rows or not self._is_due():
            return 0
        return await self._flush()

    async def end(self) -> int:
        """Send every buffered row; return how many were sent."""
        return await self._flush()

    async def _flush(self) -> int:
        rows = self._rows
        if rows:
            await self.client.insert_rows(self.table, rows)
        self._rows = []
        self._bytes = 0
        self._last_flush = self._clock()
        return len(rows)


@dataclass
class _TableSlot:
    record_type: type
    inserter: Inserter
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ClickhouseDb:
    """Creates the schema and batches record inserts into ClickHouse."""

    def __init__(
        self,
        database_url: str,
        password: str,
        user: str,
        database: str,
        *,
        max_rows: int = 1000,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = ClickhouseClient(
            database_url, user, password, database, transport=transport
        )
        self.max_rows = max_rows
        self.is_initialized = False
        self._clock = clock
        self._slots: dict[str, _TableSlot] = {}
        logger.info("Connecting to ClickHouse at %s", database_url)

    def _create_inserter(self, record_type: type) -> Inserter:
        return Inserter(
            self.client,
            record_type.TABLE_NAME,
            max_rows=self.max_rows,
            max_bytes=INSERT_MAX_BYTES,
            period=INSERT_PERIOD_SECONDS,
            clock=self._clock,
        )

    async def initialize(self) -> None:
        """Create the tables concurrently and prepare an inserter per record type."""
        logger.debug("initializing clickhouse")
        results = await asyncio.gather(
            *(self.create_table_if_not_exists(name, query) for name, query in TABLE_SCHEMAS),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        for record_type in RECORD_TYPES:
            self._slots[record_type.TABLE_NAME] = _TableSlot(
                record_type, self._create_inserter(record_type)
            )
        self.is_initialized = True

    async def health_check(self) -> None:
        logger.debug("clickhouse healthz")
        try:
            await self.client.execute("SELECT 1")
        except DatabaseError as exc:
            raise DatabaseError("Failed to execute health check query") from exc

    async def create_table_if_not_exists(self, table_name: str, create_query: str) -> None:
        try:
            await self.client.execute(create_query)
        except DatabaseError as exc:
            raise DatabaseError(f"Failed to create table: {table_name}") from exc

    def _slot_for(self, records: Sequence[Any]) -> _TableSlot:
        table = getattr(type(records[0]), "TABLE_NAME", type(records[0]).__name__)
        slot = self._slots.get(table)
        if slot is None:
            raise DatabaseError(f"No inserter found for {table}")
        if not all(isinstance(record, slot.record_type) for record in records):
            raise DatabaseError(f"Type mismatch for {table}")
        return slot

    async def insert(self, data: Any) -> None:
        """Queue one record; it is sent with the next batch."""
        slot = self._slot_for([data])
        async with slot.lock:
            try:
                await slot.inserter.write(data.to_row())
            except DatabaseError as exc:
                raise DatabaseError("Insert failed") from exc

    async def insert_batch(self, data: Iterable[Any]) -> None:
        """Queue several records of one type."""
        records = list(data)
        if not records:
            return
        slot = self._slot_for(records)
        async with slot.lock:
            try:
                for record in records:
                    await slot.inserter.write(record.to_row())
            except DatabaseError as exc:
                raise DatabaseError("Batch insert failed") from exc

    async def close(self) -> None:
        """Send what is still buffered and release the connection."""
        try:
            for slot in self._slots.values():
                async with slot.lock:
                    await slot.inserter.end()
        finally:
            await self.client.close()

    async def __aenter__(self) -> "ClickhouseDb":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()