"""Admin reporting endpoints"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from keyhub.api.dependencies import admin_rate_limit, get_services, require_admin
from keyhub.models.schemas import ExpiringResponse, RevenueResponse, StatsResponse
from keyhub.services.container import Services

router = APIRouter(
    prefix="/admin",
    tags=["Subscriptions"],
    dependencies=[Depends(admin_rate_limit), Depends(require_admin)],
)


@router.get("/subscriptions/expiring", response_model=ExpiringResponse, summary="Expiring Subscriptions")
async def expiring_subscriptions(
    days: int = Query(7, ge=0, le=365),
    status: str = Query("all", pattern="^(expiring|expired|all)$"),
    services: Services = Depends(get_services),
):
    """
    Enabled subscriptions ordered by end date.

    - `expiring`: ending within `days` and not yet lapsed
    - `expired`: past their end date
    - `all`: everything, with the computed state of each
    """
    return await services.admin.expiring_subscriptions(days, status)


@router.get("/subscriptions/revenue", response_model=RevenueResponse, summary="Revenue Report")
async def revenue_report(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    group_by: str = Query("date", alias="groupBy", pattern="^(date|month|key)$"),
    services: Services = Depends(get_services),
):
    """Completed payments in a period (default: last 30 days), grouped by date, month or key"""
    return await services.admin.revenue_report(start_date, end_date, group_by)


@router.get("/stats", response_model=StatsResponse, summary="Statistics")
async def stats(services: Services = Depends(get_services)):
    """Key, subscription, revenue and usage overview"""
    return await services.admin.stats()
