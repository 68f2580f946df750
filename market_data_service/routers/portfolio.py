"""
组合分析路由
POST /api/portfolio/returns       - 组合收益 / 净值序列
GET  /api/portfolio/correlation   - 相关性矩阵
"""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from market_data_service.models.schemas import Allocation, ApiResponse, WeightUnit
from market_data_service.routers.market_data import split_tickers
from market_data_service.services.correlation_service import get_correlation_engine
from market_data_service.services.return_series import get_return_series_builder

router = APIRouter(prefix="/api/portfolio", tags=["组合分析"])


class ReturnsRequest(BaseModel):
    allocations: List[Allocation] = Field(default_factory=list)
    unit: Optional[WeightUnit] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@router.post("/returns", response_model=ApiResponse)
async def portfolio_returns(body: ReturnsRequest):
    """计算加权组合收益，返回 {dates, returns, values}"""
    result = await get_return_series_builder().get_allocation_returns(
        body.allocations,
        start_date=body.start_date,
        end_date=body.end_date,
        unit=body.unit,
    )
    return ApiResponse.ok(data=result.model_dump())


@router.get("/correlation", response_model=ApiResponse)
async def correlation_matrix(
    tickers: str = Query(..., description="逗号分隔的代码列表"),
    period_days: Optional[int] = Query(default=None, ge=2, description="回看交易日数，默认 252"),
):
    """获取相关性矩阵"""
    requested = split_tickers(tickers)
    if not requested:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tickers 不能为空")
    result = await get_correlation_engine().get_correlation_matrix(requested, period_days)
    return ApiResponse.ok(data=result.model_dump())
