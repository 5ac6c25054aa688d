"""Dashboard API Routes"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..deps import get_current_user_dep, get_correlation_id_dep
from ...domain.models import ActorContext
from ...domain.errors import DomainError
from ...services.dashboard_service import DashboardService

router = APIRouter()


class DashboardStatsResponse(BaseModel):
    """Home screen counters"""
    pending_steps: int
    active_workflows: int
    overdue_steps: int
    completed_this_month: int


@router.get("/stats", response_model=DashboardStatsResponse)
async def get_stats(
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Counters for the caller's tenant; pending steps are the caller's own"""
    try:
        return DashboardStatsResponse(**DashboardService().get_stats(actor))

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
