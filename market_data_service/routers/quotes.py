"""
最新报价路由
GET  /api/quotes         - 批量获取最新报价
POST /api/quotes/clear   - 清除报价缓存
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from market_data_service.models.schemas import ApiResponse
from market_data_service.routers.market_data import split_tickers
from market_data_service.services.quote_cache import get_quote_cache

router = APIRouter(prefix="/api/quotes", tags=["最新报价"])


class ClearQuotesRequest(BaseModel):
    ticker: Optional[str] = None


@router.get("", response_model=ApiResponse)
async def get_quotes(
    tickers: str = Query(..., description="逗号分隔的代码列表"),
):
    requested = split_tickers(tickers)
    if not requested:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tickers 不能为空")
    quotes = await get_quote_cache().get_quotes(requested)
    return ApiResponse.ok(
        data={
            "count": len(quotes),
            "quotes": {t: q.model_dump() for t, q in quotes.items()},
        },
    )


@router.post("/clear", response_model=ApiResponse)
async def clear_quotes(body: ClearQuotesRequest):
    """清除报价缓存，下次读取强制实时拉取"""
    await get_quote_cache().clear(body.ticker)
    return ApiResponse.ok(message=f"报价缓存已清理: {body.ticker or '全部'}")
