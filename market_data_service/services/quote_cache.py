"""
最新报价缓存
与多日日线分层缓存独立：报价刷新频率高，TTL 以分钟计。
Redis 可用时写入 Redis（SETEX），否则降级为进程内缓存。
"""

import asyncio
import json
import logging
import time
from datetime import datetime, time as dtime
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from market_data_service.config import settings
from market_data_service.db import get_redis
from market_data_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from market_data_service.models.schemas import Quote
from market_data_service.services.price_store import unique_tickers

logger = logging.getLogger(__name__)

_NS = "quote"
_MARKET_TZ = ZoneInfo("America/New_York")
_MARKET_OPEN = dtime(9, 30)
_MARKET_CLOSE = dtime(16, 0)


def is_market_open(now: Optional[datetime] = None) -> bool:
    """美股常规交易时段：周一至周五 09:30-16:00（纽约时间）"""
    now = (now or datetime.now(tz=_MARKET_TZ)).astimezone(_MARKET_TZ)
    if now.weekday() >= 5:
        return False
    return _MARKET_OPEN <= now.time() < _MARKET_CLOSE


def quote_ttl(now: Optional[datetime] = None) -> int:
    if is_market_open(now):
        return settings.QUOTE_TTL_MARKET_OPEN
    return settings.QUOTE_TTL_MARKET_CLOSED


def _key(ticker: str) -> str:
    return f"{_NS}:{ticker}"


class QuoteCache:
    """单值报价缓存，批量读取时只对未命中的代码发起一次批量请求"""

    def __init__(self, acquisition: Optional[AcquisitionLayer] = None, clock=time.monotonic):
        self._acq = acquisition or get_acquisition_layer()
        self._clock = clock
        self._local: Dict[str, Tuple[Quote, float]] = {}

    async def get_quote(self, ticker: str) -> Optional[Quote]:
        quotes = await self.get_quotes([ticker])
        return next(iter(quotes.values()), None)

    async def get_quotes(self, tickers: List[str]) -> Dict[str, Quote]:
        """
        批量获取报价

        Returns:
            {代码: Quote}，取不到的代码不出现在结果中
        """
        wanted = unique_tickers(tickers)
        results: Dict[str, Quote] = {}
        misses = []
        for ticker in wanted:
            cached = await self._read(ticker)
            if cached is not None:
                results[ticker] = cached
            else:
                misses.append(ticker)

        if misses:
            logger.debug(f"报价缓存未命中 {len(misses)} 只（命中 {len(results)} 只）")
            fetched = await self._fetch(misses)
            ttl = quote_ttl()
            for ticker, quote in fetched.items():
                results[ticker] = quote
                await self._write(quote, ttl)

        return {t: results[t] for t in wanted if t in results}

    async def _fetch(self, tickers: List[str]) -> Dict[str, Quote]:
        fetched: Dict[str, Quote] = {}
        size = settings.QUOTE_BATCH_SIZE
        for i in range(0, len(tickers), size):
            chunk = tickers[i:i + size]
            try:
                raw = await asyncio.to_thread(self._acq.get_batch_quotes, chunk)
            except Exception as exc:
                logger.warning(f"批量报价获取失败 {chunk}: {exc}")
                continue
            for ticker, data in raw.items():
                ticker = ticker.upper()
                if ticker in chunk:
                    fetched[ticker] = Quote(**{**data, "ticker": ticker})
        return fetched

    # ── 存储后端 ──────────────────────────────────────────

    async def _read(self, ticker: str) -> Optional[Quote]:
        redis = get_redis()
        if redis is not None:
            try:
                raw = await redis.get(_key(ticker))
                if raw:
                    logger.debug(f"报价命中（Redis）: {ticker}")
                    return Quote(**json.loads(raw))
                return None
            except Exception as exc:
                logger.debug(f"Redis 读取失败: {exc}")

        entry = self._local.get(ticker)
        if entry is None:
            return None
        quote, expiry = entry
        if expiry > self._clock():
            return quote
        del self._local[ticker]
        return None

    async def _write(self, quote: Quote, ttl: int) -> None:
        redis = get_redis()
        if redis is not None:
            try:
                await redis.setex(_key(quote.ticker), ttl, quote.model_dump_json())
                return
            except Exception as exc:
                logger.debug(f"Redis 写入失败: {exc}")
        self._local[quote.ticker] = (quote, self._clock() + ttl)

    async def clear(self, ticker: Optional[str] = None) -> None:
        """清除报价缓存，下次读取强制重新拉取"""
        targets = unique_tickers([ticker]) if ticker else list(self._local)
        redis = get_redis()
        if redis is not None:
            try:
                if ticker:
                    await redis.delete(*[_key(t) for t in targets])
                else:
                    keys = [k async for k in redis.scan_iter(match=f"{_NS}:*")]
                    if keys:
                        await redis.delete(*keys)
            except Exception as exc:
                logger.warning(f"Redis 报价缓存清理失败: {exc}")
        if ticker:
            for t in targets:
                self._local.pop(t, None)
        else:
            self._local.clear()
        logger.info(f"报价缓存已清理: {ticker or '全部'}")

    def stats(self) -> dict:
        return {
            "backend": "redis" if get_redis() is not None else "memory",
            "local_entries": len(self._local),
            "ttl_seconds": quote_ttl(),
            "market_open": is_market_open(),
        }


# ── 模块级别单例 ──────────────────────────────────────────
_quote_cache: Optional[QuoteCache] = None


def get_quote_cache() -> QuoteCache:
    global _quote_cache
    if _quote_cache is None:
        _quote_cache = QuoteCache()
    return _quote_cache
