"""
数据库连接管理
MongoDB（motor）保存日线与相关系数，并通过变更流驱动缓存失效；
Redis（redis.asyncio）只用于最新报价缓存。

两者均可缺席：连接失败时对应功能降级，服务照常启动。
"""

import logging
from typing import Awaitable, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from redis.asyncio import Redis

from market_data_service.config import settings

logger = logging.getLogger(__name__)

BARS_COLLECTION = "market_daily_bars"
CORRELATIONS_COLLECTION = "ticker_correlations"

_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_change_streams = False
_redis_client: Optional[Redis] = None


async def init_mongodb() -> bool:
    """连接 MongoDB 并探测是否为副本集（变更流的前提），返回是否成功"""
    global _mongo_client, _mongo_db, _change_streams
    if not settings.MONGODB_ENABLED:
        logger.info("MongoDB 未启用，日线直接回退到外部行情源")
        return False
    try:
        client = AsyncIOMotorClient(
            settings.MONGO_URI,
            maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
            minPoolSize=settings.MONGO_MIN_CONNECTIONS,
            serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
            connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
            socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
        )
        hello = await client.admin.command("hello")
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 连接失败（Tier-2 不可用，直接回退到外部行情源）: {exc}")
        return False

    _mongo_client = client
    _mongo_db = client[settings.MONGODB_DATABASE]
    _change_streams = bool(hello.get("setName"))
    logger.info(
        f"✅ MongoDB 连接成功: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}/"
        f"{settings.MONGODB_DATABASE}（变更流{'可用' if _change_streams else '不可用'}）"
    )
    return True


async def init_redis() -> bool:
    """连接 Redis（报价缓存），返回是否成功"""
    global _redis_client
    if not settings.REDIS_ENABLED:
        logger.info("Redis 未启用，报价缓存使用进程内模式")
        return False
    client = Redis.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=10,
    )
    try:
        await client.ping()
    except Exception as exc:
        logger.warning(f"⚠️ Redis 连接失败（报价缓存降级为进程内模式）: {exc}")
        await client.aclose()
        return False
    _redis_client = client
    logger.info(f"✅ Redis 连接成功: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    return True


async def close_connections():
    global _mongo_client, _mongo_db, _change_streams, _redis_client
    if _mongo_client is not None:
        _mongo_client.close()
        _mongo_client = None
        _mongo_db = None
        _change_streams = False
        logger.info("MongoDB 连接已关闭")
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis 连接已关闭")


def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    """MongoDB 数据库实例，未连接时为 None"""
    return _mongo_db


def supports_change_streams() -> bool:
    return _change_streams


def get_redis() -> Optional[Redis]:
    """Redis 客户端，未连接时为 None"""
    return _redis_client


async def _probe(ping: Callable[[], Awaitable], host: str) -> dict:
    try:
        await ping()
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {"status": "healthy", "host": host}


async def check_health() -> dict:
    """各存储的连接状态（/health 使用）"""
    result = {"mongodb": {"status": "disabled"}, "redis": {"status": "disabled"}}

    if _mongo_client is not None:
        result["mongodb"] = await _probe(
            lambda: _mongo_client.admin.command("ping"), settings.MONGODB_HOST
        )
        result["mongodb"]["change_streams"] = _change_streams
    elif settings.MONGODB_ENABLED:
        result["mongodb"] = {"status": "disconnected"}

    if _redis_client is not None:
        result["redis"] = await _probe(_redis_client.ping, settings.REDIS_HOST)
    elif settings.REDIS_ENABLED:
        result["redis"] = {"status": "disconnected"}

    return result
