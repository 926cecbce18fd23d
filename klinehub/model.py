"""Market data records and the candle time frames they are built on."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, fields
from datetime import timedelta
from typing import Any, ClassVar, Mapping, Sequence

# Candle periods in seconds.
M1 = 60
M3 = 180
M5 = 300
M15 = 900
M30 = 1_800
H1 = 3_600
H2 = 7_200
H4 = 14_400
H6 = 21_600
H8 = 28_800
H12 = 43_200
D1 = 86_400
D3 = 259_200
W1 = 604_800
M1L = 2_592_000


class TimeFrame(enum.Enum):
    """A candle interval; members order by declaration, shortest first."""

    M1 = "m1"
    M3 = "m3"
    M5 = "m5"
    M15 = "m15"
    M30 = "m30"
    H1 = "h1"
    H2 = "h2"
    H4 = "h4"
    H6 = "h6"
    H8 = "h8"
    H12 = "h12"
    D1 = "d1"
    D3 = "d3"
    W1 = "w1"
    M1L = "m1_l"

    @property
    def _rank(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, TimeFrame):
            return NotImplemented
        return self._rank < other._rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, TimeFrame):
            return NotImplemented
        return self._rank <= other._rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, TimeFrame):
            return NotImplemented
        return self._rank > other._rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, TimeFrame):
            return NotImplemented
        return self._rank >= other._rank

    def to_millis(self) -> int:
        """Length of the interval in milliseconds."""
        return _DURATIONS[self] // timedelta(milliseconds=1)

    def to_period(self) -> int:
        """Length of the interval in seconds, as used by the aggregator."""
        return _PERIODS[self]

    def to_str(self) -> str:
        """Exchange notation such as ``1m`` or ``4h``."""
        return _LABELS[self]

    def __str__(self) -> str:
        return self.to_str()


_DURATIONS: dict[TimeFrame, timedelta] = {
    TimeFrame.M1: timedelta(minutes=1),
    TimeFrame.M3: timedelta(minutes=3),
    TimeFrame.M5: timedelta(minutes=5),
    TimeFrame.M15: timedelta(minutes=15),
    TimeFrame.M30: timedelta(minutes=30),
    TimeFrame.H1: timedelta(hours=1),
    TimeFrame.H2: timedelta(hours=2),
    TimeFrame.H4: timedelta(hours=4),
    TimeFrame.H6: timedelta(hours=6),
    TimeFrame.H8: timedelta(hours=8),
    TimeFrame.H12: timedelta(hours=12),
    TimeFrame.D1: timedelta(days=1),
    TimeFrame.D3: timedelta(days=3),
    TimeFrame.W1: timedelta(days=7),
    TimeFrame.M1L: timedelta(days=30),
}

_PERIODS: dict[TimeFrame, int] = {
    TimeFrame.M1: M1,
    TimeFrame.M3: M3,
    TimeFrame.M5: M5,
    TimeFrame.M15: M15,
    TimeFrame.M30: M30,
    TimeFrame.H1: H1,
    TimeFrame.H2: H2,
    TimeFrame.H4: H4,
    TimeFrame.H6: H6,
    TimeFrame.H8: H8,
    TimeFrame.H12: H12,
    TimeFrame.D1: D1,
    TimeFrame.D3: D3,
    TimeFrame.W1: W1,
    TimeFrame.M1L: M1L,
}

_LABELS: dict[TimeFrame, str] = {
    TimeFrame.M1: "1m",
    TimeFrame.M3: "3m",
    TimeFrame.M5: "5m",
    TimeFrame.M15: "15m",
    TimeFrame.M30: "30m",
    TimeFrame.H1: "1h",
    TimeFrame.H2: "2h",
    TimeFrame.H4: "4h",
    TimeFrame.H6: "6h",
    TimeFrame.H8: "8h",
    TimeFrame.H12: "12h",
    TimeFrame.D1: "1d",
    TimeFrame.D3: "3d",
    TimeFrame.W1: "1w",
    TimeFrame.M1L: "1M",
}

DEFAULT_TIMEFRAMES: tuple[TimeFrame, ...] = (
    TimeFrame.M1,
    TimeFrame.M5,
    TimeFrame.M15,
    TimeFrame.M30,
    TimeFrame.H1,
    TimeFrame.H2,
    TimeFrame.H4,
    TimeFrame.H8,
    TimeFrame.H12,
    TimeFrame.D1,
)


def _from_mapping(cls: Any, data: Mapping[str, Any]) -> Any:
    try:
        return cls(**{f.name: data[f.name] for f in fields(cls)})
    except KeyError as exc:
        raise ValueError(f"missing field {exc.args[0]!r} for {cls.__name__}") from exc


@dataclass
class MarketKline:
    """One candle as stored in the ``market_klines`` table."""

    TABLE_NAME: ClassVar[str] = "market_klines"

    exchange: str
    symbol: str
    period: str
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int
    quote_asset_volume: float
    number_of_trades: int
    taker_buy_base_asset_volume: float
    taker_buy_quote_asset_volume: float

    def to_row(self) -> dict[str, Any]:
        """Column name to value mapping for insertion."""
        return asdict(self)


@dataclass
class KlineSummary:
    """A candle as returned by the futures kline endpoint."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int
    quote_asset_volume: float
    number_of_trades: int
    taker_buy_base_asset_volume: float
    taker_buy_quote_asset_volume: float

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "KlineSummary":
        """Build from the array form the exchange sends, numbers often as strings."""
        if len(row) < 11:
            raise ValueError(f"kline row needs at least 11 fields, got {len(row)}")
        return cls(
            open_time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=int(row[6]),
            quote_asset_volume=float(row[7]),
            number_of_trades=int(row[8]),
            taker_buy_base_asset_volume=float(row[9]),
            taker_buy_quote_asset_volume=float(row[10]),
        )


@dataclass
class Price:
    """A pool price quote between a coin and its pair currency."""

    coin_price: float
    coin_mint: str
    pc_mint: str
    coin_decimals: int
    pc_decimals: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Price":
        return _from_mapping(cls, data)


@dataclass
class PriceUpdate:
    """A swap-driven price change, stored in the ``price_updates`` table."""

    TABLE_NAME: ClassVar[str] = "price_updates"

    name: str
    pubkey: str
    price: float
    market_cap: float
    timestamp: int
    slot: int
    swap_amount: float  # in USD
    owner: str
    signature: str
    multi_hop: bool
    is_buy: bool
    is_pump: bool

    def to_row(self) -> dict[str, Any]:
        """Column name to value mapping for insertion."""
        return asdict(self)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PriceUpdate":
        return _from_mapping(cls, data)