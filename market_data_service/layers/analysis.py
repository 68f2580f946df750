"""
分析层
组合权重归一化、按日期对齐的加权收益、净值重建、Pearson 相关系数
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from market_data_service.config import settings
from market_data_service.errors import ComputeDegenerate

logger = logging.getLogger(__name__)

NOTIONAL_BASE = 100_000.0


class AnalysisLayer:
    """分析层：在处理层输出的收益序列上计算组合指标"""

    # ── 权重 ──────────────────────────────────────────────

    def normalize_weights(
        self, weights: Sequence[float], unit: Optional[str] = None
    ) -> List[float]:
        """
        权重归一化

        - unit="percent"  : 除以 100
        - unit="fraction" : 原样使用
        - unit=None       : 启发式，总和 > WEIGHT_PERCENT_THRESHOLD 视为百分比，除以总和
        """
        weights = [float(w) for w in weights]
        if unit == "percent":
            return [w / 100.0 for w in weights]
        if unit == "fraction":
            return weights
        total = sum(weights)
        if total > settings.WEIGHT_PERCENT_THRESHOLD:
            return [w / total for w in weights]
        return weights

    def merge_duplicates(
        self, tickers: Sequence[str], weights: Sequence[float]
    ) -> Tuple[List[str], List[float]]:
        """重复代码合并，权重相加，保持首次出现顺序"""
        merged: Dict[str, float] = {}
        for ticker, weight in zip(tickers, weights):
            merged[ticker] = merged.get(ticker, 0.0) + float(weight)
        return list(merged), list(merged.values())

    # ── 组合收益 ──────────────────────────────────────────

    def blend_returns(
        self,
        returns_by_ticker: Mapping[str, Mapping[str, float]],
        tickers: Sequence[str],
        weights: Sequence[float],
    ) -> Tuple[List[str], List[float]]:
        """
        按日期对齐并加权求和

        取所有代码日期的并集，某日只要有一只代码缺少收益即整日剔除，
        不做部分加权。

        Returns:
            (升序日期列表, 组合日收益列表)
        """
        if not tickers:
            return [], []
        df = pd.DataFrame({
            t: pd.Series(returns_by_ticker.get(t, {}), dtype="float64")
            for t in tickers
        })
        if df.empty:
            return [], []
        df = df.sort_index().dropna(how="any")
        if df.empty:
            return [], []
        blended = df[list(tickers)].to_numpy() @ np.asarray(weights, dtype="float64")
        return [str(d) for d in df.index], [float(r) for r in blended]

    def build_values(
        self, returns: Sequence[float], base: float = NOTIONAL_BASE
    ) -> List[float]:
        """净值序列：values[0] = base，values[i+1] = values[i] * (1 + r[i])"""
        values = [base]
        value = base
        for r in returns:
            value *= (1 + r)
            values.append(value)
        return values

    # ── 相关系数 ──────────────────────────────────────────

    def pearson(self, x: Sequence[float], y: Sequence[float]) -> float:
        """
        Pearson 相关系数 cov(x, y) / sqrt(var(x) * var(y))

        两序列截取到共同长度（取最近的 n 个点）；少于 2 个点或分母为零时返回 0。
        """
        n = min(len(x), len(y))
        if n < 2:
            return 0.0
        try:
            return self._pearson(
                np.asarray(x[len(x) - n:], dtype="float64"),
                np.asarray(y[len(y) - n:], dtype="float64"),
            )
        except ComputeDegenerate:
            return 0.0

    @staticmethod
    def _pearson(x: np.ndarray, y: np.ndarray) -> float:
        dx = x - x.mean()
        dy = y - y.mean()
        den = np.sqrt(np.dot(dx, dx) * np.dot(dy, dy))
        if den == 0 or not np.isfinite(den):
            raise ComputeDegenerate("零方差序列")
        return float(np.dot(dx, dy) / den)


# ── 模块级别单例 ──────────────────────────────────────────
_analysis: Optional[AnalysisLayer] = None


def get_analysis_layer() -> AnalysisLayer:
    global _analysis
    if _analysis is None:
        _analysis = AnalysisLayer()
    return _analysis
