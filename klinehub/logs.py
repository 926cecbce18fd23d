"""In-memory log history and live log broadcasting for the HTTP server."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

DEFAULT_CAPACITY = 1024
DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 100

_COUNT = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class LogEntry:
    """One log line as kept in the history and sent to listeners."""

    timestamp: str
    level: str
    target: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> "LogEntry":
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return cls(
            timestamp=created.isoformat(),
            level=record.levelname,
            target=record.name,
            message=record.getMessage(),
        )


def _parse_count(params: Mapping[str, str], name: str) -> int | None:
    value = params.get(name)
    if value is None:
        return None
    if not _COUNT.fullmatch(value):
        raise ValueError(f"invalid {name}: {value!r}")
    return int(value)


@dataclass(frozen=True)
class LogQuery:
    """Filters and paging for a history request; unset fields match everything."""

    level: str | None = None
    keyword: str | None = None
    page: int | None = None
    page_size: int | None = None

    def __post_init__(self) -> None:
        if self.page is not None and self.page < 1:
            raise ValueError("page must be at least 1")
        if self.page_size is not None and self.page_size < 0:
            raise ValueError("page_size must not be negative")

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> "LogQuery":
        """Build from URL query parameters."""
        return cls(
            level=params.get("level"),
            keyword=params.get("keyword"),
            page=_parse_count(params, "page"),
            page_size=_parse_count(params, "page_size"),
        )


class LogCache:
    """Thread-safe history of log entries, oldest first."""

    def __init__(self, max_entries: int | None = None):
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> list[LogEntry]:
        """A snapshot of the history."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _deliver(queue: asyncio.Queue, entry: LogEntry) -> None:
    if queue.full():
        queue.get_nowait()  # a lagging listener loses its oldest entry
    queue.put_nowait(entry)


class LogBroadcaster:
    """Fans log entries out to every subscribed queue, from any thread."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._subscribers: dict[asyncio.Queue, asyncio.AbstractEventLoop] = {}
        self._lock = threading.Lock()

    def subscribe(self) -> asyncio.Queue:
        """A new queue receiving every entry published from now on."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.capacity)
        with self._lock:
            self._subscribers[queue] = loop
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.pop(queue, None)

    def publish(self, entry: LogEntry) -> int:
        """Send an entry to all subscribers; return how many there were."""
        with self._lock:
            targets = list(self._subscribers.items())
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        delivered = 0
        for queue, loop in targets:
            if loop is current:
                _deliver(queue, entry)
            elif not loop.is_closed():
                loop.call_soon_threadsafe(_deliver, queue, entry)
            else:
                self.unsubscribe(queue)
                continue
            delivered += 1
        return delivered


class BroadcastHandler(logging.Handler):
    """Logging handler that records entries in a cache and broadcasts them."""

    def __init__(self, broadcaster: LogBroadcaster, cache: LogCache, level: int = logging.NOTSET):
        super().__init__(level)
        self.broadcaster = broadcaster
        self.cache = cache

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry.from_record(record)
            self.cache.append(entry)
            self.broadcaster.publish(entry)
        except Exception:
            self.handleError(record)


def setup_log_broadcast(broadcaster: LogBroadcaster, cache: LogCache) -> BroadcastHandler:
    """Attach a broadcasting handler to the root logger at INFO, alongside console output."""
    root = logging.getLogger()
    if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        root.addHandler(console)
    handler = BroadcastHandler(broadcaster, cache)
    root.addHandler(handler)
    root.setLevel(logging.INFO)
    return handler


def filter_logs(entries: Iterable[LogEntry], query: LogQuery) -> list[LogEntry]:
    """Matching entries, newest first, cut to the requested page."""
    level = query.level.lower() if query.level is not None else None
    keyword = query.keyword
    matched = [
        entry
        for entry in entries
        if (level is None or entry.level.lower() == level)
        and (keyword is None or keyword in entry.message)
    ]
    matched.reverse()
    page = query.page if query.page is not None else DEFAULT_PAGE
    page_size = query.page_size if query.page_size is not None else DEFAULT_PAGE_SIZE
    start = (page - 1) * page_size
    return matched[start : start + page_size]