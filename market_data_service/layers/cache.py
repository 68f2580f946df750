"""
Tier-1 – 进程内缓存层
键：代码:开始日期:结束日期，按 TTL 过期，读取时惰性清理，不做后台扫描。

未加锁：仅在单事件循环（协作式调度）下安全，两次 await 之间的读写是原子的。
"""

import logging
import time
from typing import Dict, List, Optional, Tuple

from market_data_service.config import settings
from market_data_service.models.schemas import TickerSeries

logger = logging.getLogger(__name__)


def _make_key(ticker: str, start_date: str, end_date: str) -> str:
    """生成规范化缓存键"""
    return f"{ticker}:{start_date}:{end_date}"


class MemoryCache:
    """代码 + 日期区间粒度的 TTL 缓存"""

    def __init__(self, ttl: Optional[float] = None, clock=time.monotonic):
        self._ttl = settings.MEMORY_CACHE_TTL if ttl is None else ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[TickerSeries, float]] = {}

    def get(self, ticker: str, start_date: str, end_date: str) -> Optional[TickerSeries]:
        key = _make_key(ticker, start_date, end_date)
        entry = self._entries.get(key)
        if entry is None:
            return None
        data, expiry = entry
        if expiry > self._clock():
            logger.debug(f"缓存命中（内存）: {key}")
            return data
        # 过期条目在读取时删除
        del self._entries[key]
        return None

    def set(self, data: TickerSeries, start_date: str, end_date: str) -> None:
        key = _make_key(data.ticker, start_date, end_date)
        self._entries[key] = (data, self._clock() + self._ttl)
        logger.debug(f"缓存写入（内存）: {key}")

    def purge_ticker(self, ticker: str) -> int:
        """删除该代码的全部条目（不区分日期区间），返回删除数量"""
        prefix = f"{ticker}:"
        stale = [k for k in self._entries if k.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"缓存失效（内存）: {ticker}，共 {len(stale)} 条")
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        return list(self._entries)

    def tickers(self) -> List[str]:
        """当前缓存中出现的代码（排序、去重）"""
        return sorted({k.split(":", 1)[0] for k in self._entries})

    def stats(self) -> dict:
        return {"memory_size": len(self._entries), "entries": self.keys()}


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[MemoryCache] = None


def get_memory_cache() -> MemoryCache:
    global _cache
    if _cache is None:
        _cache = MemoryCache()
    return _cache
