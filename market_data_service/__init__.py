"""
行情数据与组合分析服务
三级取数 + 组合收益 + 相关性矩阵，提供 HTTP 接口

架构分层：
  获取层   (Acquisition)  → 外部行情提供商（Polygon / yfinance）
  缓存层   (Cache)        → 进程内 TTL 缓存（Tier-1）
  持久化层 (Persistence)  → MongoDB 日线表 / 相关性表（Tier-2）
  处理层   (Processing)   → 日线清洗、去重、区间过滤、日收益推导
  分析层   (Analysis)     → 权重归一化、收益对齐、Pearson 相关系数
"""

__version__ = "1.0.0"
