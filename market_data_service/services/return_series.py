"""
组合收益服务
优先使用数据库聚合管道计算组合日收益，失败或无结果时回退为本地按日期对齐计算
"""

import logging
from typing import Callable, List, Optional, Sequence

from market_data_service.errors import AggregationUnavailable
from market_data_service.layers.analysis import NOTIONAL_BASE, get_analysis_layer
from market_data_service.layers.persistence import BarRepository, get_bar_repository
from market_data_service.layers.processing import default_start_date, get_processing_layer, today
from market_data_service.models.schemas import (
    Allocation,
    FetchProgress,
    PortfolioReturnSeries,
    canonical_ticker,
)
from market_data_service.services.price_store import TieredPriceStore, get_price_store

logger = logging.getLogger(__name__)


class ReturnSeriesBuilder:
    """组合收益 / 净值序列构建"""

    def __init__(
        self,
        price_store: Optional[TieredPriceStore] = None,
        repository: Optional[BarRepository] = None,
    ):
        self._store = price_store or get_price_store()
        self._repo = repository or get_bar_repository()
        self._analysis = get_analysis_layer()
        self._proc = get_processing_layer()

    async def get_portfolio_returns(
        self,
        tickers: Sequence[str],
        weights: Sequence[float],
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        unit: Optional[str] = None,
        on_progress: Optional[Callable[[FetchProgress], None]] = None,
    ) -> PortfolioReturnSeries:
        """
        计算加权组合收益

        Args:
            tickers: 代码列表，与 weights 一一对应
            weights: 权重（小数或百分比）
            start_date: 开始日期，默认行情源最早日期
            end_date: 结束日期，默认今天
            unit: "fraction" / "percent"，为空时按权重总和推断

        Returns:
            PortfolioReturnSeries，values[0] 恒为 100000
        """
        if len(tickers) != len(weights):
            raise ValueError(f"代码数量 ({len(tickers)}) 与权重数量 ({len(weights)}) 不一致")
        start = start_date or default_start_date()
        end = end_date or today()

        canonical = [canonical_ticker(t) for t in tickers]
        if any(not t for t in canonical):
            raise ValueError(f"代码不能为空（第 {canonical.index('') + 1} 项）")
        names, raw = self._analysis.merge_duplicates(canonical, weights)
        norm = self._analysis.normalize_weights(raw, unit)
        if not names:
            return self._assemble([], [])

        # 服务端聚合
        try:
            rows = await self._repo.aggregate_portfolio_returns(names, norm, start, end)
            if rows:
                if on_progress:
                    on_progress(FetchProgress(status="complete", current=1, total=1))
                return self._assemble(
                    [r["bar_date"] for r in rows],
                    [float(r["portfolio_return"]) for r in rows],
                )
            logger.info("聚合管道无结果，回退到本地计算")
        except AggregationUnavailable as exc:
            logger.info(f"聚合管道不可用，回退到本地计算: {exc}")

        # 本地回退
        series = await self._store.get_tickers_data(
            names, start_date=start, end_date=end, on_progress=on_progress
        )
        returns_by_ticker = {t: self._proc.returns_by_date(s) for t, s in series.items()}
        dates, returns = self._analysis.blend_returns(returns_by_ticker, names, norm)
        return self._assemble(dates, returns)

    async def get_allocation_returns(
        self,
        allocations: List[Allocation],
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        unit: Optional[str] = None,
        on_progress: Optional[Callable[[FetchProgress], None]] = None,
    ) -> PortfolioReturnSeries:
        return await self.get_portfolio_returns(
            [a.ticker for a in allocations],
            [a.weight for a in allocations],
            start_date=start_date,
            end_date=end_date,
            unit=unit,
            on_progress=on_progress,
        )

    def _assemble(self, dates: List[str], returns: List[float]) -> PortfolioReturnSeries:
        return PortfolioReturnSeries(
            dates=dates,
            returns=returns,
            values=self._analysis.build_values(returns, NOTIONAL_BASE),
        )


# ── 模块级别单例 ──────────────────────────────────────────
_builder: Optional[ReturnSeriesBuilder] = None


def get_return_series_builder() -> ReturnSeriesBuilder:
    global _builder
    if _builder is None:
        _builder = ReturnSeriesBuilder()
    return _builder
