"""
行情数据与组合分析服务入口

启动时连接 MongoDB / Redis（失败降级），建立日线唯一索引，
并在副本集可用时为内存缓存建立日线更新通知通道；
关闭时依次停止通知通道、等待后台回写、断开连接。

启动方式:
    uvicorn market_data_service.main:app --host 0.0.0.0 --port 8002
    python -m market_data_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from market_data_service import __version__
from market_data_service.config import settings
from market_data_service.db import close_connections, init_mongodb, init_redis, supports_change_streams
from market_data_service.layers.persistence import get_bar_repository
from market_data_service.routers import health, market_data, portfolio, quotes, cache
from market_data_service.services.price_store import get_price_store
from market_data_service.services.update_notifier import get_update_notifier

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
def _log_tiers(mongo_ok: bool, redis_ok: bool) -> None:
    """启动时输出各级取数的实际可用情况"""
    tiers = [
        ("Tier-1 内存缓存", True, f"TTL {settings.MEMORY_CACHE_TTL}s"),
        ("Tier-2 MongoDB", mongo_ok, f"{settings.MONGODB_HOST}:{settings.MONGODB_PORT}"),
        ("Tier-3 行情源", True, f"{settings.DEFAULT_MARKET_PROVIDER}，间隔 {settings.API_FETCH_DELAY}s"),
        ("报价缓存 Redis", redis_ok, f"{settings.REDIS_HOST}:{settings.REDIS_PORT}"),
        ("更新通知（变更流）", supports_change_streams(), "需要副本集"),
    ]
    for name, ok, detail in tiers:
        log = logger.info if ok else logger.warning
        log(f"   {'✅' if ok else '⚠️'} {name:<12} {detail}")
    if not mongo_ok:
        logger.warning("⚠️ MongoDB 不可用：日线直接回退到外部行情源，组合收益改为本地计算")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 60)
    logger.info(f"🚀 MarketDataService v{__version__} 启动中")
    logger.info("=" * 60)

    # 数据库连接失败不阻断启动，降级运行
    mongo_ok = await init_mongodb()
    redis_ok = await init_redis()
    if mongo_ok:
        await get_bar_repository().ensure_indexes()
    _log_tiers(mongo_ok, redis_ok)
    if mongo_ok and supports_change_streams():
        await get_update_notifier().track_memory_cache()

    yield

    logger.info("🔄 行情数据服务正在关闭...")
    await get_update_notifier().close_all()
    await get_price_store().drain_background_tasks()
    await close_connections()
    logger.info("✅ 行情数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="行情数据与组合分析服务",
    description=(
        "三级行情取数与组合分析微服务，提供以下功能：\n"
        "- 📊 批量日线（内存 → MongoDB → Polygon / yfinance）\n"
        "- 💼 加权组合收益 / 净值序列\n"
        "- 🔗 相关性矩阵（持久化 + 按需计算）\n"
        "- ⚡ 最新报价缓存（Redis / 进程内）\n"
        "- 🔔 日线插入事件驱动的缓存失效\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 外部行情源（Tier-3）\n"
        "Persistence Layer  ← MongoDB 日线 / 相关性（Tier-2）\n"
        "Cache Layer        ← 进程内 TTL 缓存（Tier-1）\n"
        "Processing Layer   ← 清洗、去重、日收益\n"
        "Analysis Layer     ← 权重、组合收益、相关系数\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS：只读行情接口，不携带凭据 ─────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    expose_headers=["X-Process-Time"],
)


# ── 请求耗时 / 慢请求告警 ─────────────────────────────────
@app.middleware("http")
async def time_requests(request: Request, call_next):
    """记录耗时；超过 SLOW_REQUEST_MS 的请求（通常触发了外部行情源取数）输出告警"""
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Process-Time"] = f"{elapsed_ms:.1f}ms"
    if elapsed_ms > settings.SLOW_REQUEST_MS:
        logger.warning(f"慢请求 {request.method} {request.url.path}: {elapsed_ms:.0f}ms")
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "参数错误", "message": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(market_data.router)
app.include_router(portfolio.router)
app.include_router(quotes.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "MarketDataService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "endpoints": [
            "/api/market/bars",
            "/api/portfolio/returns",
            "/api/portfolio/correlation",
            "/api/quotes",
            "/api/cache/stats",
        ],
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "market_data_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
