from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from app.analytics.entity.usage import Period
from app.analytics.service.usage_service import UsageService
from app.core.auth import CurrentUserIdDep

analytics_router = APIRouter(prefix="/analytics", tags=["Analytics"])


def get_usage_service(request: Request) -> UsageService:
    """Dependency to get the usage service from app.state."""
    return request.app.state.usage_service


UsageServiceDep = Annotated[UsageService, Depends(get_usage_service)]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@analytics_router.get("/usage")
async def get_user_usage(user_id: CurrentUserIdDep, usage: UsageServiceDep, period: Period = "day"):
    """Usage summary for the calling user."""
    return {"success": True, "data": usage.summarize(user_id, period)}


@analytics_router.get("/costs")
async def get_user_costs(user_id: CurrentUserIdDep, usage: UsageServiceDep, period: Period = "month"):
    """Cost breakdown by model and by day for the calling user."""
    return {"success": True, "data": usage.cost_tracking(user_id, period)}


@analytics_router.get("/global")
async def get_global_stats(usage: UsageServiceDep, period: Period = "day"):
    return {"success": True, "data": usage.global_stats(period)}


@analytics_router.get("/export")
async def export_usage(
    usage: UsageServiceDep,
    start: Annotated[Optional[datetime], Query()] = None,
    end: Annotated[Optional[datetime], Query()] = None,
):
    records = usage.export(_aware(start), _aware(end))
    return {"success": True, "data": [r.to_wire() for r in records]}
