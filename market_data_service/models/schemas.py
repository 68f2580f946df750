"""数据模型：日线、代码序列、组合收益、相关性矩阵、报价及统一 API 响应"""

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

SeriesSource = Literal["cache", "store", "api"]
WeightUnit = Literal["fraction", "percent"]


def canonical_ticker(ticker: str) -> str:
    """代码规范化：去空白、转大写"""
    return ticker.strip().upper()


class Bar(BaseModel):
    """单只代码单个交易日的 OHLCV 记录"""
    ticker: str
    date: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    vwap: Optional[float] = None
    daily_return: Optional[float] = None


class DateRange(BaseModel):
    start: str
    end: str


class TickerSeries(BaseModel):
    """按日期升序排列的日线序列（请求级临时对象，不落库）"""
    ticker: str
    bars: List[Bar] = Field(default_factory=list)
    source: SeriesSource
    data_range: DateRange
    last_updated: str


class Allocation(BaseModel):
    ticker: str
    weight: float

    @field_validator("ticker")
    @classmethod
    def _upper(cls, v: str) -> str:
        return canonical_ticker(v)


class PortfolioReturnSeries(BaseModel):
    """组合收益序列，len(values) == len(returns) + 1"""
    dates: List[str] = Field(default_factory=list)
    returns: List[float] = Field(default_factory=list)
    values: List[float] = Field(default_factory=list)


class CorrelationMatrix(BaseModel):
    tickers: List[str] = Field(default_factory=list)
    period_days: int
    matrix: List[List[float]] = Field(default_factory=list)


class Quote(BaseModel):
    """最新报价"""
    ticker: str
    price: float
    change: Optional[float] = None
    change_percent: Optional[float] = None
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    previous_close: Optional[float] = None
    volume: Optional[float] = None
    timestamp: Optional[str] = None


class FetchProgress(BaseModel):
    """取数进度（供调用方展示）"""
    status: Literal["idle", "fetching", "complete", "error"]
    current: int = 0
    total: int = 0
    current_ticker: Optional[str] = None
    message: Optional[str] = None


class ApiResponse(BaseModel):
    """标准 API 响应封装"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)
