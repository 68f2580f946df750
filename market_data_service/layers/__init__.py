"""
三级取数分层
  Acquisition  – Tier-3 外部行情源（Polygon → yfinance）
  Persistence  – Tier-2 MongoDB 日线 / 相关性 / 聚合管道
  Cache        – Tier-1 进程内 TTL 缓存（代码 + 日期区间）
  Processing   – 日线标准化与日收益
  Analysis     – 组合收益与相关系数
"""
