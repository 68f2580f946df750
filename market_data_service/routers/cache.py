"""
缓存管理路由
GET  /api/cache/stats       - 缓存统计
POST /api/cache/invalidate  - 清除单只代码的内存缓存
POST /api/cache/clear       - 清空内存缓存
"""

from fastapi import APIRouter
from pydantic import BaseModel

from market_data_service.models.schemas import ApiResponse
from market_data_service.services.price_store import get_price_store
from market_data_service.services.quote_cache import get_quote_cache
from market_data_service.services.update_notifier import get_update_notifier

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class InvalidateRequest(BaseModel):
    ticker: str


@router.get("/stats", response_model=ApiResponse)
async def cache_stats():
    """获取缓存统计信息（内存缓存条目、报价缓存、通知通道）"""
    return ApiResponse.ok(data={
        "bars": get_price_store().get_cache_stats(),
        "quotes": get_quote_cache().stats(),
        "channels": get_update_notifier().channel_status(),
    })


@router.post("/invalidate", response_model=ApiResponse)
async def invalidate(body: InvalidateRequest):
    removed = get_price_store().invalidate_cache(body.ticker)
    return ApiResponse.ok(
        data={"removed": removed},
        message=f"缓存已清理: {body.ticker.upper()}",
    )


@router.post("/clear", response_model=ApiResponse)
async def clear_cache():
    get_price_store().clear_all_caches()
    return ApiResponse.ok(message="内存缓存已清空")
