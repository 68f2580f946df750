"""
测试公共夹具：内存版数据库仓库、行情源、日线样本
"""

import os
import sys
from datetime import date, timedelta

import pytest

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from market_data_service.errors import AggregationUnavailable, TransientFetchError  # noqa: E402

START = "2024-01-01"
END = "2024-12-31"


def sample_records(n: int = 30, start: str = "2024-01-02", close: float = 100.0,
                   step: float = 0.01, store: bool = False) -> list:
    """生成连续日期的日线记录；store=True 时生成数据库行格式（bar_date + daily_return）"""
    d0 = date.fromisoformat(start)
    records = []
    prev = None
    for i in range(n):
        c = round(close * (1 + step) ** i, 6)
        row = {
            "date": (d0 + timedelta(days=i)).isoformat(),
            "open": c * 0.99,
            "high": c * 1.01,
            "low": c * 0.98,
            "close": c,
            "volume": 1_000_000 + i,
            "vwap": c,
        }
        if store:
            row["bar_date"] = row.pop("date")
            row["daily_return"] = None if prev is None else (c - prev) / prev
        records.append(row)
        prev = c
    return records


class FakeRepository:
    """BarRepository 的内存替身"""

    def __init__(self, rows=None, aggregate=None, correlations=None, fail_upsert=False):
        self.rows = rows or {}
        self.aggregate = aggregate
        self.correlations = correlations or []
        self.fail_upsert = fail_upsert
        self.fetch_calls = []
        self.upserts = []
        self.saved = []

    async def fetch_bars(self, tickers, start_date, end_date):
        self.fetch_calls.append(list(tickers))
        return {
            t: [r for r in self.rows[t] if start_date <= r["bar_date"] <= end_date]
            for t in tickers if t in self.rows
        }

    async def upsert_bars(self, ticker, bars):
        if self.fail_upsert:
            raise RuntimeError("write failed")
        self.upserts.append((ticker, len(bars)))
        return len(bars)

    async def aggregate_portfolio_returns(self, tickers, weights, start_date, end_date):
        if self.aggregate is None:
            raise AggregationUnavailable("no pipeline")
        return self.aggregate

    async def fetch_correlations(self, tickers, period_days):
        return [
            c for c in self.correlations
            if c["ticker_a"] in tickers and c["ticker_b"] in tickers
        ]

    async def save_correlations(self, rows, period_days):
        self.saved.extend(rows)


class FakeAcquisition:
    """AcquisitionLayer 的内存替身"""

    def __init__(self, bars=None, quotes=None, failing=()):
        self.bars = bars or {}
        self.quotes = quotes or {}
        self.failing = set(failing)
        self.calls = []
        self.quote_calls = []

    def get_daily_bars(self, ticker, start_date, end_date):
        self.calls.append(ticker)
        if ticker in self.failing:
            raise TransientFetchError(ticker, "HTTP 503")
        return list(self.bars.get(ticker, []))

    def get_batch_quotes(self, tickers):
        self.quote_calls.append(list(tickers))
        return {t: self.quotes[t] for t in tickers if t in self.quotes}


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def acquisition():
    return FakeAcquisition()
