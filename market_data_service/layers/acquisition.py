"""
Tier-3 – 数据获取层
从外部行情提供商（Polygon / yfinance）拉取日线与最新报价，
统一规范化为字典记录后向上层提供标准接口。

所有方法均为阻塞调用，由上层通过 asyncio.to_thread 调度。
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

from market_data_service.config import settings
from market_data_service.errors import TransientFetchError

logger = logging.getLogger(__name__)


# ── 行情提供商优先级顺序 ──────────────────────────────────
_PROVIDER_ORDER = ["polygon", "yfinance"]


class AcquisitionLayer:
    """数据获取层：封装多数据源，提供统一的数据拉取接口"""

    def __init__(self, session: Optional[requests.Session] = None):
        self._default = settings.DEFAULT_MARKET_PROVIDER
        self._session = session or requests.Session()

    def _providers(self) -> List[str]:
        return [self._default] + [p for p in _PROVIDER_ORDER if p != self._default]

    # ── 日线 ──────────────────────────────────────────────

    def get_daily_bars(
        self,
        ticker: str,
        start_date: str,
        end_date: str,
    ) -> List[Dict[str, Any]]:
        """
        获取单只代码的日线数据

        依次尝试各提供商，返回第一个非空结果；全部无数据时返回空列表，
        全部请求失败时抛出 TransientFetchError。
        """
        errors = []
        for provider in self._providers():
            try:
                result = self._fetch_history(provider, ticker, start_date, end_date)
                if result:
                    logger.info(f"{ticker} 日线获取成功（来源：{provider}），共 {len(result)} 条")
                    return result
            except Exception as exc:
                logger.warning(f"{ticker} 日线获取失败（来源：{provider}）: {exc}")
                errors.append(f"{provider}: {exc}")
        if errors and len(errors) == len(self._providers()):
            raise TransientFetchError(ticker, "; ".join(errors))
        logger.warning(f"{ticker} 外部行情源无数据")
        return []

    def _fetch_history(
        self, provider: str, ticker: str, start_date: str, end_date: str
    ) -> List[Dict[str, Any]]:
        if provider == "polygon":
            return self._polygon_daily_bars(ticker, start_date, end_date)
        if provider == "yfinance":
            return self._yfinance_daily_bars(ticker, start_date, end_date)
        return []

    # ── 最新报价 ──────────────────────────────────────────

    def get_batch_quotes(self, tickers: List[str]) -> Dict[str, Dict[str, Any]]:
        """
        批量获取最新报价（一次请求覆盖多只代码）

        Returns:
            {代码: 报价字典}，未取到的代码不出现在结果中
        """
        if not tickers:
            return {}
        for provider in self._providers():
            try:
                if provider == "polygon":
                    result = self._polygon_snapshots(tickers)
                elif provider == "yfinance":
                    result = self._yfinance_quotes(tickers)
                else:
                    continue
                if result:
                    return result
            except Exception as exc:
                logger.warning(f"批量报价获取失败（来源：{provider}）: {exc}")
        return {}

    # ── Polygon ───────────────────────────────────────────

    def _polygon_get(self, subject: str, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not settings.POLYGON_API_KEY:
            raise RuntimeError("POLYGON_API_KEY 未配置")
        url = f"{settings.POLYGON_BASE_URL.rstrip('/')}{path}"
        try:
            response = self._session.get(
                url,
                params={**params, "apiKey": settings.POLYGON_API_KEY},
                timeout=settings.PROVIDER_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise TransientFetchError(subject, f"网络错误: {exc}") from exc
        if response.status_code == 429:
            raise TransientFetchError(subject, "触发限流 (HTTP 429)")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise TransientFetchError(subject, f"HTTP {response.status_code}") from exc
        return response.json()

    def _polygon_daily_bars(
        self, ticker: str, start_date: str, end_date: str
    ) -> List[Dict[str, Any]]:
        payload = self._polygon_get(
            ticker,
            f"/v2/aggs/ticker/{ticker}/range/1/day/{start_date}/{end_date}",
            {"adjusted": "true", "sort": "asc", "limit": 50000},
        )
        records = []
        for bar in payload.get("results") or []:
            records.append({
                "date": datetime.fromtimestamp(bar["t"] / 1000, tz=timezone.utc).strftime("%Y-%m-%d"),
                "open": bar.get("o"),
                "high": bar.get("h"),
                "low": bar.get("l"),
                "close": bar.get("c"),
                "volume": bar.get("v"),
                "vwap": bar.get("vw"),
            })
        return records

    def _polygon_snapshots(self, tickers: List[str]) -> Dict[str, Dict[str, Any]]:
        payload = self._polygon_get(
            ",".join(tickers),
            "/v2/snapshot/locale/us/markets/stocks/tickers",
            {"tickers": ",".join(tickers)},
        )
        quotes = {}
        for snap in payload.get("tickers") or []:
            day = snap.get("day") or {}
            prev = snap.get("prevDay") or {}
            last = snap.get("lastTrade") or {}
            price = last.get("p") or day.get("c") or prev.get("c")
            if not price:
                continue
            updated = snap.get("updated")
            quotes[snap["ticker"]] = {
                "ticker": snap["ticker"],
                "price": float(price),
                "change": snap.get("todaysChange"),
                "change_percent": snap.get("todaysChangePerc"),
                "open": day.get("o"),
                "high": day.get("h"),
                "low": day.get("l"),
                "previous_close": prev.get("c"),
                "volume": day.get("v"),
                "timestamp": (
                    datetime.fromtimestamp(updated / 1e9, tz=timezone.utc).isoformat()
                    if updated else None
                ),
            }
        return quotes

    # ── yfinance ──────────────────────────────────────────

    def _yfinance_daily_bars(
        self, ticker: str, start_date: str, end_date: str
    ) -> List[Dict[str, Any]]:
        import yfinance as yf
        # yfinance 的 end 为开区间
        end = (datetime.strptime(end_date, "%Y-%m-%d") + timedelta(days=1)).strftime("%Y-%m-%d")
        df = yf.Ticker(ticker).history(start=start_date, end=end, auto_adjust=True)
        df = df.reset_index()
        records = []
        for _, row in df.iterrows():
            records.append({
                "date": str(row["Date"])[:10],
                "open": float(row["Open"]),
                "high": float(row["High"]),
                "low": float(row["Low"]),
                "close": float(row["Close"]),
                "volume": float(row["Volume"]),
            })
        return records

    def _yfinance_quotes(self, tickers: List[str]) -> Dict[str, Dict[str, Any]]:
        import yfinance as yf
        bundle = yf.Tickers(" ".join(tickers))
        quotes = {}
        for ticker in tickers:
            try:
                info = bundle.tickers[ticker].fast_info
                price = info.last_price
                prev_close = info.previous_close
            except Exception as exc:
                logger.debug(f"yfinance 报价缺失 {ticker}: {exc}")
                continue
            if not price:
                continue
            change = price - prev_close if prev_close else None
            quotes[ticker] = {
                "ticker": ticker,
                "price": float(price),
                "change": change,
                "change_percent": change / prev_close * 100 if change is not None else None,
                "open": info.open,
                "high": info.day_high,
                "low": info.day_low,
                "previous_close": prev_close,
                "volume": info.last_volume,
                "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            }
        return quotes


# ── 模块级别单例 ──────────────────────────────────────────
_acquisition: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acquisition
    if _acquisition is None:
        _acquisition = AcquisitionLayer()
    return _acquisition
