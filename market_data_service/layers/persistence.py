"""
Tier-2 – 持久化层
MongoDB 日线表（market_daily_bars）与相关性表（ticker_correlations）的读写，
以及组合收益的服务端聚合管道。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from pymongo import ASCENDING, UpdateOne
from pymongo.errors import PyMongoError

from market_data_service.config import settings
from market_data_service.db import BARS_COLLECTION, CORRELATIONS_COLLECTION, get_mongo_db
from market_data_service.errors import AggregationUnavailable
from market_data_service.models.schemas import Bar

logger = logging.getLogger(__name__)

_BAR_PROJECTION = {
    "_id": 0,
    "ticker": 1,
    "bar_date": 1,
    "open": 1,
    "high": 1,
    "low": 1,
    "close": 1,
    "volume": 1,
    "vwap": 1,
    "daily_return": 1,
}


def _chunks(items: Sequence, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _bar_update(ticker: str, bar: Bar, now: datetime) -> Dict[str, Any]:
    """构造单条日线的 $set 内容；空的 vwap / daily_return 不覆盖库中已有值"""
    doc = {
        "ticker": ticker,
        "bar_date": bar.date,
        "open": bar.open,
        "high": bar.high,
        "low": bar.low,
        "close": bar.close,
        "volume": bar.volume,
        "updated_at": now,
    }
    for field in ("vwap", "daily_return"):
        value = getattr(bar, field)
        if value is not None:
            doc[field] = value
    return doc


class BarRepository:
    """日线 / 相关性持久化仓库，MongoDB 不可用时所有读操作返回空"""

    def __init__(self, db_getter=get_mongo_db):
        self._db_getter = db_getter

    @property
    def available(self) -> bool:
        return self._db_getter() is not None

    async def ensure_indexes(self) -> None:
        """创建唯一索引（启动时调用）"""
        db = self._db_getter()
        if db is None:
            return
        try:
            await db[BARS_COLLECTION].create_index(
                [("ticker", ASCENDING), ("bar_date", ASCENDING)], unique=True
            )
            await db[CORRELATIONS_COLLECTION].create_index(
                [("ticker_a", ASCENDING), ("ticker_b", ASCENDING), ("period_days", ASCENDING)],
                unique=True,
            )
        except PyMongoError as exc:
            logger.warning(f"索引创建失败: {exc}")

    # ── 日线 ──────────────────────────────────────────────

    async def fetch_bars(
        self,
        tickers: List[str],
        start_date: str,
        end_date: str,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        按代码列表 + 日期区间批量读取日线

        按 TIER2_BATCH_SIZE 分批顺序查询以限制单次结果集大小；
        某一批失败只记录日志，该批代码视为缺失。

        Returns:
            {代码: 按日期升序的原始行}
        """
        db = self._db_getter()
        if db is None or not tickers:
            return {}

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for batch in _chunks(tickers, settings.TIER2_BATCH_SIZE):
            query = {
                "ticker": {"$in": list(batch)},
                "bar_date": {"$gte": start_date, "$lte": end_date},
            }
            try:
                cursor = (
                    db[BARS_COLLECTION]
                    .find(query, _BAR_PROJECTION)
                    .sort("bar_date", ASCENDING)
                    .limit(settings.TIER2_ROW_LIMIT)
                )
                rows = await cursor.to_list(length=None)
            except PyMongoError as exc:
                logger.error(f"数据库日线查询失败 {list(batch)}: {exc}")
                continue
            for row in rows:
                grouped.setdefault(row["ticker"], []).append(row)
        return grouped

    async def upsert_bars(self, ticker: str, bars: List[Bar]) -> int:
        """按 (ticker, bar_date) 幂等写入日线，返回写入条数；失败直接抛出"""
        db = self._db_getter()
        if db is None:
            raise RuntimeError("MongoDB 不可用，无法回写日线")
        now = datetime.now(tz=timezone.utc)
        written = 0
        for chunk in _chunks(bars, settings.WRITE_BACK_CHUNK_SIZE):
            ops = [
                UpdateOne(
                    {"ticker": ticker, "bar_date": bar.date},
                    {"$set": _bar_update(ticker, bar, now)},
                    upsert=True,
                )
                for bar in chunk
            ]
            await db[BARS_COLLECTION].bulk_write(ops, ordered=False)
            written += len(ops)
        return written

    # ── 服务端聚合 ────────────────────────────────────────

    async def aggregate_portfolio_returns(
        self,
        tickers: List[str],
        weights: List[float],
        start_date: str,
        end_date: str,
    ) -> List[Dict[str, Any]]:
        """
        服务端计算组合日收益

        仅保留每只代码当天都有收益的日期（按条数等于代码数判断），
        返回 [{"bar_date": ..., "portfolio_return": ...}]，按日期升序。
        """
        db = self._db_getter()
        if db is None:
            raise AggregationUnavailable("MongoDB 不可用")
        if not tickers:
            return []

        weight_of = {
            "$switch": {
                "branches": [
                    {"case": {"$eq": ["$ticker", t]}, "then": w}
                    for t, w in zip(tickers, weights)
                ],
                "default": 0,
            }
        }
        pipeline = [
            {"$match": {
                "ticker": {"$in": list(tickers)},
                "bar_date": {"$gte": start_date, "$lte": end_date},
                "daily_return": {"$ne": None},
            }},
            {"$group": {
                "_id": "$bar_date",
                "portfolio_return": {"$sum": {"$multiply": ["$daily_return", weight_of]}},
                "n": {"$sum": 1},
            }},
            {"$match": {"n": len(tickers)}},
            {"$sort": {"_id": 1}},
            {"$project": {"_id": 0, "bar_date": "$_id", "portfolio_return": 1}},
        ]
        try:
            cursor = db[BARS_COLLECTION].aggregate(pipeline)
            return await cursor.to_list(length=None)
        except PyMongoError as exc:
            raise AggregationUnavailable(str(exc)) from exc

    # ── 相关性 ────────────────────────────────────────────

    async def fetch_correlations(
        self, tickers: List[str], period_days: int
    ) -> List[Dict[str, Any]]:
        db = self._db_getter()
        if db is None or not tickers:
            return []
        query = {
            "ticker_a": {"$in": list(tickers)},
            "ticker_b": {"$in": list(tickers)},
            "period_days": period_days,
        }
        try:
            cursor = db[CORRELATIONS_COLLECTION].find(
                query, {"_id": 0, "ticker_a": 1, "ticker_b": 1, "correlation": 1}
            )
            return await cursor.to_list(length=None)
        except PyMongoError as exc:
            logger.error(f"相关性查询失败: {exc}")
            return []

    async def save_correlations(
        self, rows: List[Dict[str, Any]], period_days: int
    ) -> None:
        db = self._db_getter()
        if db is None or not rows:
            return
        now = datetime.now(tz=timezone.utc)
        ops = [
            UpdateOne(
                {"ticker_a": r["ticker_a"], "ticker_b": r["ticker_b"], "period_days": period_days},
                {"$set": {**r, "period_days": period_days, "calculated_at": now}},
                upsert=True,
            )
            for r in rows
        ]
        await db[CORRELATIONS_COLLECTION].bulk_write(ops, ordered=False)


# ── 模块级别单例 ──────────────────────────────────────────
_repository: Optional[BarRepository] = None


def get_bar_repository() -> BarRepository:
    global _repository
    if _repository is None:
        _repository = BarRepository()
    return _repository
