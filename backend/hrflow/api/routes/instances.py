"""Instance API Routes - Starting, inspecting and cancelling workflow instances"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from ..deps import get_current_user_dep, get_correlation_id_dep
from ...domain.models import ActorContext
from ...domain.enums import InstanceStatus
from ...domain.errors import DomainError
from ...services.instance_service import InstanceService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class StartInstanceRequest(BaseModel):
    """Request to start a workflow instance"""
    definition_id: str
    subject_employee_id: str = Field(..., min_length=1)
    source_type: str = Field(..., min_length=1, max_length=100)
    source_id: str = Field(..., min_length=1, max_length=200)
    due_date: Optional[datetime] = None
    context_data: Dict[str, Any] = Field(default_factory=dict)


class CancelInstanceRequest(BaseModel):
    """Request to cancel a workflow instance"""
    reason: Optional[str] = Field(None, max_length=2000)


class InstanceListResponse(BaseModel):
    """Response for instance list"""
    data: List[Dict[str, Any]]
    total: int
    has_more: bool


# ============================================================================
# Routes
# ============================================================================

@router.get("", response_model=InstanceListResponse)
async def list_instances(
    definition_id: Optional[str] = Query(None),
    subject_employee_id: Optional[str] = Query(None),
    source_type: Optional[str] = Query(None),
    source_id: Optional[str] = Query(None),
    status: Optional[InstanceStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    List workflow instances

    HR sees the whole tenant; everyone else only instances about themselves.
    """
    try:
        service = InstanceService()
        result = service.list_instances(
            actor,
            definition_id=definition_id,
            subject_employee_id=subject_employee_id,
            source_type=source_type,
            source_id=source_id,
            status=status,
            limit=limit,
            offset=offset
        )
        return InstanceListResponse(
            data=[i.model_dump(mode="json") for i in result["data"]],
            total=result["total"],
            has_more=result["has_more"]
        )

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_instance(
    request: StartInstanceRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Start a workflow instance

    The instance is pinned to the definition's current version and its
    first step is created right away.
    """
    try:
        service = InstanceService()
        instance = service.start_instance(
            actor,
            definition_id=request.definition_id,
            subject_employee_id=request.subject_employee_id,
            source_type=request.source_type,
            source_id=request.source_id,
            due_date=request.due_date,
            context_data=request.context_data
        )
        return instance.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{instance_id}")
async def get_instance(
    instance_id: str,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Get instance details

    Includes the definition version it runs on, its step instances,
    progress, a timeline and the actions available to the caller.
    """
    try:
        service = InstanceService()
        detail = service.get_instance_detail(actor, instance_id)
        return {
            **detail,
            "instance": detail["instance"].model_dump(mode="json"),
            "steps": [s.model_dump(mode="json") for s in detail["steps"]],
        }

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{instance_id}/cancel")
async def cancel_instance(
    instance_id: str,
    request: CancelInstanceRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Cancel a running instance (HR only)"""
    try:
        service = InstanceService()
        instance = service.cancel_instance(actor, instance_id, reason=request.reason)
        return instance.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{instance_id}/audit")
async def get_instance_audit(
    instance_id: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Audit trail of an instance, oldest first"""
    try:
        service = InstanceService()
        result = service.get_audit_trail(actor, instance_id, limit=limit, offset=offset)
        return {
            "data": [e.model_dump(mode="json") for e in result["data"]],
            "total": result["total"],
            "has_more": result["has_more"]
        }

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
