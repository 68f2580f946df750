"""
数据处理层
对 Tier-2 / Tier-3 原始日线进行清洗、去重、区间过滤与日收益推导，
输出按日期严格升序、无重复日期的 Bar 列表。
"""

import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

from market_data_service.config import settings
from market_data_service.errors import IncompleteDataError
from market_data_service.models.schemas import Bar, DateRange, SeriesSource, TickerSeries

logger = logging.getLogger(__name__)

_TRADING_DAYS_PER_YEAR = 252
_PRICE_COLS = ["open", "high", "low", "close", "volume"]


def today() -> str:
    return date.today().isoformat()


def default_start_date() -> str:
    """默认起始日期：外部行情源可回溯的最早日期"""
    d = date.today()
    try:
        return d.replace(year=d.year - settings.PROVIDER_HISTORY_YEARS).isoformat()
    except ValueError:
        # 2 月 29 日
        return d.replace(year=d.year - settings.PROVIDER_HISTORY_YEARS, day=28).isoformat()


def completeness_threshold(start_date: str, end_date: str) -> int:
    """
    Tier-2 完整性阈值

    按区间长度估算交易日数 × TIER2_COMPLETENESS_RATIO，
    上限为 TIER2_MIN_BARS，下限为 1。
    """
    try:
        days = (date.fromisoformat(end_date) - date.fromisoformat(start_date)).days + 1
    except ValueError:
        return settings.TIER2_MIN_BARS
    expected = days * _TRADING_DAYS_PER_YEAR / 365
    proportional = math.floor(expected * settings.TIER2_COMPLETENESS_RATIO)
    return min(settings.TIER2_MIN_BARS, max(1, proportional))


class ProcessingLayer:
    """数据处理层：清洗 + 去重 + 区间过滤 + 日收益"""

    def normalize_bars(
        self,
        ticker: str,
        records: List[Dict[str, Any]],
        start_date: str,
        end_date: str,
        derive_returns: bool = False,
    ) -> List[Bar]:
        """
        将原始日线记录标准化为 Bar 列表

        Args:
            ticker: 规范化后的代码
            records: 含 date/open/high/low/close/volume[/vwap/daily_return] 的字典列表
            start_date: 区间起点（含）
            end_date: 区间终点（含）
            derive_returns: 是否由前收盘价推导 daily_return（外部行情源数据）
        """
        if not records:
            return []

        df = pd.DataFrame(records)
        if "date" not in df.columns and "bar_date" in df.columns:
            df = df.rename(columns={"bar_date": "date"})

        for col in _PRICE_COLS:
            if col not in df.columns:
                df[col] = 0.0
        for col in ("vwap", "daily_return"):
            if col not in df.columns:
                df[col] = None

        for col in _PRICE_COLS + ["vwap", "daily_return"]:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df[_PRICE_COLS] = df[_PRICE_COLS].fillna(0.0)

        # 日期格式统一
        df["date"] = pd.to_datetime(df["date"], errors="coerce")
        df = df.dropna(subset=["date"])
        df["date"] = df["date"].dt.strftime("%Y-%m-%d")

        # 删除重复日期，保留最新数据
        df = df.drop_duplicates(subset=["date"], keep="last")
        df = df.sort_values("date").reset_index(drop=True)

        if derive_returns:
            df["daily_return"] = self._daily_returns(df["close"])

        df = df[(df["date"] >= start_date) & (df["date"] <= end_date)]

        bars = []
        for row in df.itertuples(index=False):
            bars.append(Bar(
                ticker=ticker,
                date=row.date,
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume),
                vwap=_optional(row.vwap),
                daily_return=_optional(row.daily_return),
            ))
        return bars

    @staticmethod
    def _daily_returns(close: pd.Series) -> pd.Series:
        """(close - prev_close) / prev_close，前收盘价缺失或非正时为空"""
        prev = close.shift(1)
        returns = (close - prev) / prev
        return returns.where(prev > 0)

    def build_series(
        self,
        ticker: str,
        bars: List[Bar],
        source: SeriesSource,
        start_date: str,
        end_date: str,
    ) -> TickerSeries:
        return TickerSeries(
            ticker=ticker,
            bars=bars,
            source=source,
            data_range=DateRange(start=start_date, end=end_date),
            last_updated=datetime.now(tz=timezone.utc).isoformat(),
        )

    def ensure_complete(self, ticker: str, bars: List[Bar], threshold: int) -> List[Bar]:
        """数量低于阈值时抛出 IncompleteDataError（视为缺失而非部分可用）"""
        if len(bars) < threshold:
            raise IncompleteDataError(ticker, len(bars), threshold)
        return bars

    def returns_by_date(self, series: TickerSeries) -> Dict[str, float]:
        """提取 {日期: 日收益}，跳过无收益的日线"""
        return {b.date: b.daily_return for b in series.bars if b.daily_return is not None}


def _optional(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
