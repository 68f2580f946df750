"""
日线数据路由
GET /api/market/bars   - 批量获取日线（内存 → 数据库 → 行情源）
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from market_data_service.models.schemas import ApiResponse
from market_data_service.services.price_store import get_price_store

router = APIRouter(prefix="/api/market", tags=["日线数据"])


def split_tickers(raw: str) -> list:
    return [t.strip() for t in raw.split(",") if t.strip()]


@router.get("/bars", response_model=ApiResponse)
async def get_bars(
    tickers: str = Query(..., description="逗号分隔的代码列表，如 AAPL,MSFT"),
    start_date: Optional[str] = Query(default=None, description="开始日期 YYYY-MM-DD"),
    end_date: Optional[str] = Query(default=None, description="结束日期 YYYY-MM-DD，默认今天"),
    force_refresh: bool = Query(default=False, description="跳过内存缓存"),
):
    """批量获取日线；取不到的代码记入 missing，不影响其余代码"""
    requested = split_tickers(tickers)
    if not requested:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tickers 不能为空")
    data = await get_price_store().get_tickers_data(
        requested,
        start_date=start_date,
        end_date=end_date,
        force_refresh=force_refresh,
    )
    missing = [t.upper() for t in requested if t.upper() not in data]
    return ApiResponse.ok(
        data={
            "count": len(data),
            "missing": missing,
            "series": {t: s.model_dump() for t, s in data.items()},
        },
    )
