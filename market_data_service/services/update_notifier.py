"""
日线更新通知
监听 market_daily_bars 的插入事件（MongoDB 变更流，服务端按代码过滤），
命中订阅代码时清除该代码全部内存缓存并通知订阅方重新计算。

服务启动后以 memory-cache 订阅方跟踪内存缓存中的代码集合，新代码进入缓存时重建通道。
变更流需要 MongoDB 副本集；不可用时订阅保持静默并记录日志。
"""

import asyncio
import hashlib
import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Union

from pymongo.errors import PyMongoError

from market_data_service.config import settings
from market_data_service.db import BARS_COLLECTION, get_mongo_db, supports_change_streams
from market_data_service.services.price_store import (
    TieredPriceStore,
    get_price_store,
    unique_tickers,
)

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[str], Union[None, Awaitable[None]]]

CACHE_CONSUMER = "memory-cache"


def channel_name(tickers: List[str]) -> str:
    """由完整代码集合（排序后）的哈希生成通道名，避免截断造成的冲突"""
    joined = ",".join(sorted(unique_tickers(tickers)))
    return f"market-data-{hashlib.md5(joined.encode()).hexdigest()}"


class Subscription:
    """一个订阅方对应的通知通道"""

    def __init__(self, notifier: "UpdateNotifier", consumer_id: str, tickers: List[str],
                 callback: UpdateCallback):
        self.consumer_id = consumer_id
        self.tickers = tickers
        self.channel = channel_name(tickers)
        self.reconnects = 0
        self._notifier = notifier
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=self.channel)

    async def _run(self) -> None:
        db = get_mongo_db()
        if db is None:
            logger.warning(f"MongoDB 不可用，通知通道 {self.channel} 未启动")
            return
        if not supports_change_streams():
            logger.warning(f"MongoDB 非副本集，变更流不可用，通知通道 {self.channel} 未启动")
            return
        pipeline = [{"$match": {
            "operationType": "insert",
            "fullDocument.ticker": {"$in": self.tickers},
        }}]
        delay = settings.CHANGE_STREAM_RETRY_DELAY
        while True:
            try:
                async with db[BARS_COLLECTION].watch(pipeline) as stream:
                    logger.info(f"通知通道已建立 {self.channel}: {self.tickers}")
                    delay = settings.CHANGE_STREAM_RETRY_DELAY
                    async for change in stream:
                        ticker = (change.get("fullDocument") or {}).get("ticker")
                        if ticker:
                            await self.handle_insert(ticker)
                return
            except asyncio.CancelledError:
                raise
            except PyMongoError as exc:
                self.reconnects += 1
                logger.error(f"通知通道异常 {self.channel}: {exc}，{delay:.0f}s 后重连")
                await asyncio.sleep(delay)
                delay = min(delay * 2, settings.CHANGE_STREAM_MAX_RETRY_DELAY)

    async def handle_insert(self, ticker: str) -> bool:
        """处理一条插入事件，返回是否命中订阅"""
        ticker = ticker.upper()
        if ticker not in self.tickers:
            return False
        self._notifier.price_store.invalidate_cache(ticker)
        try:
            result = self._callback(ticker)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error(f"订阅回调异常 {self.consumer_id}/{ticker}: {exc}", exc_info=True)
        return True

    async def unsubscribe(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._notifier._forget(self)
        logger.info(f"通知通道已关闭 {self.channel}")


class UpdateNotifier:
    """按订阅方管理通知通道：同一订阅方重新订阅时先关闭旧通道"""

    def __init__(self, price_store: Optional[TieredPriceStore] = None):
        self.price_store = price_store or get_price_store()
        self._subscriptions: Dict[str, Subscription] = {}
        self._tracking = False
        self._sync_task: Optional[asyncio.Task] = None

    async def subscribe(
        self,
        consumer_id: str,
        tickers: List[str],
        callback: UpdateCallback,
    ) -> Subscription:
        existing = self._subscriptions.get(consumer_id)
        if existing is not None:
            await existing.unsubscribe()
        sub = Subscription(self, consumer_id, unique_tickers(tickers), callback)
        self._subscriptions[consumer_id] = sub
        sub.start()
        return sub

    async def dispatch(self, ticker: str) -> int:
        """将一条插入事件分发给所有订阅方，返回命中的订阅数"""
        hits = 0
        for sub in list(self._subscriptions.values()):
            if await sub.handle_insert(ticker):
                hits += 1
        return hits

    # ── 内存缓存跟踪 ──────────────────────────────────────

    async def track_memory_cache(self) -> None:
        """让 memory-cache 订阅覆盖内存缓存中的全部代码"""
        self._tracking = True
        self.price_store.add_cache_listener(self._on_cached)
        await self.sync_cache_channel()

    def _on_cached(self, ticker: str) -> None:
        if not self._tracking:
            return
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(self.sync_cache_channel())

    async def sync_cache_channel(self) -> Optional[Subscription]:
        """重建通道直到其代码集合与缓存一致"""
        while True:
            tickers = self.price_store.cached_tickers()
            current = self._subscriptions.get(CACHE_CONSUMER)
            if not tickers or (current is not None and current.tickers == tickers):
                return current
            await self.subscribe(CACHE_CONSUMER, tickers, self._cache_updated)

    @staticmethod
    def _cache_updated(ticker: str) -> None:
        logger.info(f"日线已更新，内存缓存已失效: {ticker}")

    # ── 管理 ──────────────────────────────────────────────

    def _forget(self, sub: Subscription) -> None:
        if self._subscriptions.get(sub.consumer_id) is sub:
            del self._subscriptions[sub.consumer_id]

    def channels(self) -> Dict[str, List[str]]:
        return {s.channel: s.tickers for s in self._subscriptions.values()}

    def channel_status(self) -> List[dict]:
        return [
            {
                "consumer_id": s.consumer_id,
                "channel": s.channel,
                "tickers": s.tickers,
                "active": s.active,
                "reconnects": s.reconnects,
            }
            for s in self._subscriptions.values()
        ]

    async def close_all(self) -> None:
        self._tracking = False
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
        self._sync_task = None
        for sub in list(self._subscriptions.values()):
            await sub.unsubscribe()


# ── 模块级别单例 ──────────────────────────────────────────
_notifier: Optional[UpdateNotifier] = None


def get_update_notifier() -> UpdateNotifier:
    global _notifier
    if _notifier is None:
        _notifier = UpdateNotifier()
    return _notifier
