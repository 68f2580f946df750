"""
行情数据服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class MarketDataSettings(BaseSettings):
    """行情数据服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 配置（Tier-2 持久化） ──────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="market_data")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_REPLICA_SET: str = Field(default="")     # 变更流需要副本集
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        query = []
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            prefix = f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}@"
            query.append(f"authSource={self.MONGODB_AUTH_SOURCE}")
        else:
            prefix = "mongodb://"
        if self.MONGODB_REPLICA_SET:
            query.append(f"replicaSet={self.MONGODB_REPLICA_SET}")
        uri = f"{prefix}{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"
        return f"{uri}?{'&'.join(query)}" if query else uri

    # ── Redis 配置（报价缓存） ─────────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 行情提供商配置（Tier-3） ───────────────────────────
    DEFAULT_MARKET_PROVIDER: str = Field(default="polygon")
    POLYGON_API_KEY: str = Field(default="")
    POLYGON_BASE_URL: str = Field(default="https://api.polygon.io")
    PROVIDER_TIMEOUT: int = Field(default=20)          # 单次请求超时（秒）
    PROVIDER_HISTORY_YEARS: int = Field(default=5)     # 默认回溯年数

    # ── 三级取数配置 ──────────────────────────────────────
    MEMORY_CACHE_TTL: int = Field(default=300)         # Tier-1 TTL（秒）
    TIER2_BATCH_SIZE: int = Field(default=10)          # 每批查询的代码数
    TIER2_MIN_BARS: int = Field(default=20)            # 完整性阈值上限
    TIER2_COMPLETENESS_RATIO: float = Field(default=0.8)
    TIER2_ROW_LIMIT: int = Field(default=50000)
    API_FETCH_DELAY: float = Field(default=0.2)        # Tier-3 调用间隔（秒）
    WRITE_BACK_CHUNK_SIZE: int = Field(default=500)

    # ── 组合分析配置 ──────────────────────────────────────
    WEIGHT_PERCENT_THRESHOLD: float = Field(default=1.5)
    CORRELATION_PERIOD_DAYS: int = Field(default=252)
    CORRELATION_WRITE_THROUGH: bool = Field(default=False)

    # ── 报价缓存配置 ──────────────────────────────────────
    QUOTE_TTL_MARKET_OPEN: int = Field(default=120)
    QUOTE_TTL_MARKET_CLOSED: int = Field(default=900)
    QUOTE_BATCH_SIZE: int = Field(default=50)

    # ── 更新通知配置 ──────────────────────────────────────
    CHANGE_STREAM_RETRY_DELAY: float = Field(default=1.0)    # 首次重连等待（秒）
    CHANGE_STREAM_MAX_RETRY_DELAY: float = Field(default=60.0)

    # ── 请求日志 ──────────────────────────────────────────
    SLOW_REQUEST_MS: float = Field(default=2000.0)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="America/New_York")


@lru_cache
def get_settings() -> MarketDataSettings:
    """获取全局配置（单例）"""
    return MarketDataSettings()


settings = get_settings()
