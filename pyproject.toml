[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "klinehub"
version = "0.1.0"
description = "Trade-driven multi-timeframe kline aggregation and historical kline archiving into ClickHouse"
requires-python = ">=3.10"
keywords = [
    "kline",
    "candlestick",
    "ohlcv",
    "trading",
    "market-data",
    "binance",
    "clickhouse",
    "redis",
    "aggregation",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Office/Business :: Financial :: Investment",
]
dependencies = [
    "httpx",
    "redis",
    "backoff",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["klinehub"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
