"""
三级行情取数服务
内存缓存 → 数据库 → 外部行情源，外部取数成功后异步回写数据库
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from market_data_service.config import settings
from market_data_service.errors import IncompleteDataError, TransientFetchError
from market_data_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from market_data_service.layers.cache import MemoryCache, get_memory_cache
from market_data_service.layers.persistence import BarRepository, get_bar_repository
from market_data_service.layers.processing import (
    completeness_threshold,
    default_start_date,
    get_processing_layer,
    today,
)
from market_data_service.models.schemas import FetchProgress, TickerSeries, canonical_ticker

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[FetchProgress], None]


def unique_tickers(tickers: List[str]) -> List[str]:
    """规范化并去重，保持原有顺序"""
    seen = {}
    for t in tickers:
        t = canonical_ticker(t)
        if t:
            seen.setdefault(t, None)
    return list(seen)


class TieredPriceStore:
    """三级行情取数"""

    def __init__(
        self,
        cache: Optional[MemoryCache] = None,
        repository: Optional[BarRepository] = None,
        acquisition: Optional[AcquisitionLayer] = None,
        fetch_delay: Optional[float] = None,
    ):
        self._cache = cache or get_memory_cache()
        self._repo = repository or get_bar_repository()
        self._acq = acquisition or get_acquisition_layer()
        self._proc = get_processing_layer()
        self._fetch_delay = settings.API_FETCH_DELAY if fetch_delay is None else fetch_delay
        self._background: Set[asyncio.Task] = set()
        self._cache_listeners: List[Callable[[str], None]] = []

    # ── 主入口 ────────────────────────────────────────────

    async def get_tickers_data(
        self,
        tickers: List[str],
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        force_refresh: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, TickerSeries]:
        """
        获取多只代码的日线序列

        Args:
            tickers: 代码列表（自动大写、去重）
            start_date: 开始日期 YYYY-MM-DD，默认为行情源可回溯的最早日期
            end_date: 结束日期 YYYY-MM-DD，默认今天
            force_refresh: 跳过内存缓存（数据库仍优先于外部行情源）
            on_progress: 进度回调

        Returns:
            {代码: TickerSeries}，取数失败的代码不出现在结果中
        """
        start = start_date or default_start_date()
        end = end_date or today()
        wanted = unique_tickers(tickers)
        total = len(wanted)
        if not wanted:
            return {}

        def progress(status: str, current: int, **kw) -> None:
            if on_progress:
                on_progress(FetchProgress(status=status, current=current, total=total, **kw))

        results: Dict[str, TickerSeries] = {}
        progress("fetching", 0, message="检查内存缓存")

        # Tier-1: 内存缓存
        to_fetch: List[str] = []
        for ticker in wanted:
            if not force_refresh:
                cached = self._cache.get(ticker, start, end)
                if cached is not None:
                    results[ticker] = cached.model_copy(update={"source": "cache"})
                    continue
            to_fetch.append(ticker)

        if not to_fetch:
            progress("complete", total, message="全部来自缓存")
            return results

        # Tier-2: 数据库
        progress("fetching", len(results), message="从数据库加载")
        still_missing = await self._load_from_store(to_fetch, start, end, results)

        # Tier-3: 外部行情源（顺序调用，固定间隔限流）
        if still_missing:
            logger.info(f"{len(still_missing)} 只代码需从外部行情源获取: {still_missing}")
            progress("fetching", len(results), message=f"从行情源获取 {len(still_missing)} 只代码")
            for i, ticker in enumerate(still_missing):
                progress("fetching", len(results), current_ticker=ticker)
                series = await self._fetch_from_api(ticker, start, end)
                if series is not None:
                    results[ticker] = series
                    self._remember(series, start, end)
                    self._schedule_write_back(series)
                if i < len(still_missing) - 1 and self._fetch_delay > 0:
                    await asyncio.sleep(self._fetch_delay)

        progress("complete", total)
        return {t: results[t] for t in wanted if t in results}

    async def get_ticker_with_latest_price(self, ticker: str) -> Optional[TickerSeries]:
        """获取单只代码的默认区间日线（末条即最新收盘）"""
        data = await self.get_tickers_data([ticker])
        return data.get(canonical_ticker(ticker))

    # ── Tier-2 ────────────────────────────────────────────

    async def _load_from_store(
        self,
        tickers: List[str],
        start: str,
        end: str,
        results: Dict[str, TickerSeries],
    ) -> List[str]:
        """读取数据库并写入 results，返回仍缺失的代码"""
        rows = await self._repo.fetch_bars(tickers, start, end)
        threshold = completeness_threshold(start, end)
        missing = []
        for ticker in tickers:
            bars = self._proc.normalize_bars(ticker, rows.get(ticker, []), start, end)
            try:
                self._proc.ensure_complete(ticker, bars, threshold)
            except IncompleteDataError as exc:
                logger.debug(f"数据库数据不完整，回退到行情源: {exc}")
                missing.append(ticker)
                continue
            series = self._proc.build_series(ticker, bars, "store", start, end)
            results[ticker] = series
            self._remember(series, start, end)
        return missing

    # ── Tier-3 ────────────────────────────────────────────

    async def _fetch_from_api(self, ticker: str, start: str, end: str) -> Optional[TickerSeries]:
        try:
            raw = await asyncio.to_thread(self._acq.get_daily_bars, ticker, start, end)
        except TransientFetchError as exc:
            logger.warning(f"行情源获取失败，跳过 {ticker}: {exc.reason}")
            return None
        except Exception as exc:
            logger.error(f"行情源获取异常，跳过 {ticker}: {exc}", exc_info=True)
            return None
        bars = self._proc.normalize_bars(ticker, raw, start, end, derive_returns=True)
        if not bars:
            logger.warning(f"{ticker} 行情源返回空数据")
            return None
        return self._proc.build_series(ticker, bars, "api", start, end)

    # ── 后台回写 ──────────────────────────────────────────

    def _schedule_write_back(self, series: TickerSeries) -> None:
        """分离的回写任务，不等待完成；失败只记录日志"""
        task = asyncio.create_task(self._write_back(series))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_back(self, series: TickerSeries) -> None:
        try:
            n = await self._repo.upsert_bars(series.ticker, series.bars)
            logger.info(f"后台回写完成 {series.ticker}: {n} 条")
        except Exception as exc:
            logger.warning(f"后台回写失败 {series.ticker}: {exc}")

    async def drain_background_tasks(self) -> None:
        """等待所有未完成的回写任务（关闭服务 / 测试时使用）"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── 缓存管理 ──────────────────────────────────────────

    def _remember(self, series: TickerSeries, start: str, end: str) -> None:
        """写入内存缓存；代码首次进入缓存时通知监听方"""
        is_new = series.ticker not in self._cache.tickers()
        self._cache.set(series, start, end)
        if is_new:
            for listener in list(self._cache_listeners):
                listener(series.ticker)

    def add_cache_listener(self, listener: Callable[[str], None]) -> None:
        if listener not in self._cache_listeners:
            self._cache_listeners.append(listener)

    def cached_tickers(self) -> List[str]:
        return self._cache.tickers()

    def invalidate_cache(self, ticker: str) -> int:
        """清除该代码所有日期区间的内存缓存"""
        return self._cache.purge_ticker(canonical_ticker(ticker))

    def clear_all_caches(self) -> None:
        self._cache.clear()
        logger.info("内存缓存已清空")

    def get_cache_stats(self) -> dict:
        stats = self._cache.stats()
        stats["pending_write_backs"] = len(self._background)
        return stats


# ── 模块级别单例 ──────────────────────────────────────────
_price_store: Optional[TieredPriceStore] = None


def get_price_store() -> TieredPriceStore:
    global _price_store
    if _price_store is None:
        _price_store = TieredPriceStore()
    return _price_store
