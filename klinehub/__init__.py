"""Multi-timeframe kline aggregation from trades, with ClickHouse storage and history archiving."""

__version__ = "0.1.0"