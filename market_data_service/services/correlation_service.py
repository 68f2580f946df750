"""
相关性矩阵服务
先读取持久化的两两相关系数，缺失的组合按需由日收益计算
"""

import logging
import math
from datetime import date, timedelta
from typing import List, Optional

from market_data_service.config import settings
from market_data_service.layers.analysis import get_analysis_layer
from market_data_service.layers.persistence import BarRepository, get_bar_repository
from market_data_service.models.schemas import CorrelationMatrix
from market_data_service.services.price_store import (
    TieredPriceStore,
    get_price_store,
    unique_tickers,
)

logger = logging.getLogger(__name__)


def lookback_start(period_days: int, end: Optional[date] = None) -> str:
    """覆盖 period_days 个交易日（外加一日用于首条收益）所需的日历起点"""
    end = end or date.today()
    calendar_days = math.ceil((period_days + 1) * 365 / 252) + 7
    return (end - timedelta(days=calendar_days)).isoformat()


class CorrelationEngine:
    """N×N 相关性矩阵"""

    def __init__(
        self,
        price_store: Optional[TieredPriceStore] = None,
        repository: Optional[BarRepository] = None,
        write_through: Optional[bool] = None,
    ):
        self._store = price_store or get_price_store()
        self._repo = repository or get_bar_repository()
        self._analysis = get_analysis_layer()
        self._write_through = (
            settings.CORRELATION_WRITE_THROUGH if write_through is None else write_through
        )

    async def get_correlation_matrix(
        self,
        tickers: List[str],
        period_days: Optional[int] = None,
    ) -> CorrelationMatrix:
        """
        获取对称相关性矩阵

        对角线恒为 1；数据库已有的组合直接填充，
        其余组合取两只代码的日收益按共同长度计算 Pearson 系数，
        任一代码无数据时该格保持 0。
        """
        period = period_days or settings.CORRELATION_PERIOD_DAYS
        names = unique_tickers(tickers)
        n = len(names)
        matrix = [[1.0 if i == j else 0.0 for j in range(n)] for i in range(n)]
        filled = [[i == j for j in range(n)] for i in range(n)]
        if n < 2:
            return CorrelationMatrix(tickers=names, period_days=period, matrix=matrix)

        index = {t: i for i, t in enumerate(names)}
        for row in await self._repo.fetch_correlations(names, period):
            i = index.get(row["ticker_a"])
            j = index.get(row["ticker_b"])
            if i is None or j is None or i == j:
                continue
            value = float(row["correlation"])
            matrix[i][j] = matrix[j][i] = value
            filled[i][j] = filled[j][i] = True

        pending = [(i, j) for i in range(n) for j in range(i + 1, n) if not filled[i][j]]
        if not pending:
            return CorrelationMatrix(tickers=names, period_days=period, matrix=matrix)

        involved = sorted({k for pair in pending for k in pair})
        logger.info(f"按需计算 {len(pending)} 组相关系数（周期 {period} 天）")
        series = await self._store.get_tickers_data(
            [names[k] for k in involved], start_date=lookback_start(period)
        )
        returns = {
            t: [b.daily_return for b in s.bars if b.daily_return is not None][-period:]
            for t, s in series.items()
        }

        computed = []
        for i, j in pending:
            x = returns.get(names[i])
            y = returns.get(names[j])
            if x is None or y is None:
                continue
            value = self._analysis.pearson(x, y)
            matrix[i][j] = matrix[j][i] = value
            computed.append({"ticker_a": names[i], "ticker_b": names[j], "correlation": value})

        if self._write_through and computed:
            try:
                await self._repo.save_correlations(computed, period)
            except Exception as exc:
                logger.warning(f"相关系数回写失败: {exc}")

        return CorrelationMatrix(tickers=names, period_days=period, matrix=matrix)


# ── 模块级别单例 ──────────────────────────────────────────
_engine: Optional[CorrelationEngine] = None


def get_correlation_engine() -> CorrelationEngine:
    global _engine
    if _engine is None:
        _engine = CorrelationEngine()
    return _engine
