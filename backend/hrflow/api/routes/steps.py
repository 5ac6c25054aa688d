"""Step API Routes - The caller's inbox and step actions"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..deps import get_current_user_dep, get_correlation_id_dep
from ...domain.models import ActorContext
from ...domain.enums import ApprovalStatus
from ...domain.errors import DomainError
from ...services.step_service import StepService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class CompleteStepRequest(BaseModel):
    """Submit a form/review step or one branch of a parallel step"""
    payload: Dict[str, Any] = Field(default_factory=dict)
    form_submission_id: Optional[str] = None
    child_step_id: Optional[str] = None


class DecideStepRequest(BaseModel):
    """Approve or reject an approval step"""
    decision: ApprovalStatus
    comment: Optional[str] = Field(None, max_length=4000)
    child_step_id: Optional[str] = None


class SkipStepRequest(BaseModel):
    """Skip an optional step"""
    reason: Optional[str] = Field(None, max_length=2000)


class PendingStepsResponse(BaseModel):
    """Response for the caller's pending steps"""
    data: List[Dict[str, Any]]
    total: int
    has_more: bool


def _action_response(result: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "step": result["step"].model_dump(mode="json"),
        "instance": result["instance"].model_dump(mode="json"),
    }


# ============================================================================
# Routes
# ============================================================================

@router.get("/my-pending", response_model=PendingStepsResponse)
async def list_my_pending(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Open steps assigned to the caller, soonest due first"""
    try:
        service = StepService()
        result = service.list_my_pending(actor, limit=limit, offset=offset)
        return PendingStepsResponse(
            data=[s.model_dump(mode="json") for s in result["data"]],
            total=result["total"],
            has_more=result["has_more"]
        )

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{step_instance_id}/complete")
async def complete_step(
    step_instance_id: str,
    request: CompleteStepRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Complete a step

    The payload is stored on the step and merged into the context used
    for routing.
    """
    try:
        service = StepService()
        result = service.complete_step(
            actor,
            step_instance_id,
            request.payload,
            form_submission_id=request.form_submission_id,
            child_step_id=request.child_step_id
        )

        logger.info(
            f"Step completed: {step_instance_id}",
            extra={"step_instance_id": step_instance_id, "actor_id": actor.user_id}
        )
        return _action_response(result)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{step_instance_id}/decide")
async def decide_step(
    step_instance_id: str,
    request: DecideStepRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Approve or reject a step"""
    try:
        service = StepService()
        result = service.decide_step(
            actor,
            step_instance_id,
            request.decision,
            comment=request.comment,
            child_step_id=request.child_step_id
        )

        logger.info(
            f"Step {request.decision.value}: {step_instance_id}",
            extra={"step_instance_id": step_instance_id, "actor_id": actor.user_id}
        )
        return _action_response(result)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{step_instance_id}/skip")
async def skip_step(
    step_instance_id: str,
    request: SkipStepRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Skip an optional step"""
    try:
        service = StepService()
        result = service.skip_step(actor, step_instance_id, reason=request.reason)
        return _action_response(result)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
