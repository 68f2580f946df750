"""
行情数据服务异常定义

均为内部控制流异常：单只代码失败不会中断批量请求，
调用方只会看到缺失的代码或空结果，不会收到这些异常。
"""


class MarketDataError(Exception):
    """行情数据服务异常基类"""


class TransientFetchError(MarketDataError):
    """Tier-3 外部行情源请求失败（网络 / 限流），按代码记录后跳过"""

    def __init__(self, ticker: str, reason: str):
        self.ticker = ticker
        self.reason = reason
        super().__init__(f"{ticker}: {reason}")


class IncompleteDataError(MarketDataError):
    """Tier-2 返回的日线数量低于完整性阈值，视为缺失"""

    def __init__(self, ticker: str, count: int, threshold: int):
        self.ticker = ticker
        self.count = count
        self.threshold = threshold
        super().__init__(f"{ticker}: {count} 条 < 阈值 {threshold}")


class AggregationUnavailable(MarketDataError):
    """服务端聚合管道不可用或执行失败，触发本地回退计算"""


class ComputeDegenerate(MarketDataError):
    """相关系数分母为零（零方差序列）"""
