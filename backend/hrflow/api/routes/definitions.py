"""Definition API Routes - Workflow template management"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from ..deps import get_current_user_dep, get_correlation_id_dep
from ...domain.models import ActorContext
from ...domain.enums import WorkflowModule
from ...domain.errors import DomainError
from ...services.definition_service import DefinitionService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class CreateDefinitionRequest(BaseModel):
    """Request to create a workflow definition"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    icon: Optional[str] = None
    module: WorkflowModule = WorkflowModule.SHARED
    category: Optional[str] = Field(None, max_length=100)
    steps: List[Dict[str, Any]]
    transitions: List[Dict[str, Any]] = Field(default_factory=list)
    default_durations: Dict[str, float] = Field(default_factory=dict)
    reminder_schedule: Optional[Dict[str, Any]] = None
    escalation_rules: List[Dict[str, Any]] = Field(default_factory=list)
    is_template: bool = False
    is_active: bool = True
    country_code: Optional[str] = Field(None, max_length=3)


class UpdateDefinitionRequest(BaseModel):
    """Partial update; steps or transitions produce a new version"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    icon: Optional[str] = None
    module: Optional[WorkflowModule] = None
    category: Optional[str] = Field(None, max_length=100)
    steps: Optional[List[Dict[str, Any]]] = None
    transitions: Optional[List[Dict[str, Any]]] = None
    default_durations: Optional[Dict[str, float]] = None
    reminder_schedule: Optional[Dict[str, Any]] = None
    escalation_rules: Optional[List[Dict[str, Any]]] = None
    is_template: Optional[bool] = None
    is_active: Optional[bool] = None
    country_code: Optional[str] = Field(None, max_length=3)


class CloneDefinitionRequest(BaseModel):
    """Request to clone a definition"""
    new_name: str = Field(..., min_length=1, max_length=200)


class DefinitionListResponse(BaseModel):
    """Response for definition list"""
    data: List[Dict[str, Any]]
    total: int
    has_more: bool


# ============================================================================
# Routes
# ============================================================================

@router.get("", response_model=DefinitionListResponse)
async def list_definitions(
    module: Optional[WorkflowModule] = Query(None),
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    is_active: Optional[bool] = Query(None),
    is_template: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    List workflow definitions

    Returns the tenant's own definitions plus system definitions,
    most recently updated first.
    """
    try:
        service = DefinitionService()
        result = service.list_definitions(
            actor,
            module=module,
            category=category,
            search=search,
            is_active=is_active,
            is_template=is_template,
            limit=limit,
            offset=offset
        )
        return DefinitionListResponse(
            data=[d.model_dump(mode="json") for d in result["data"]],
            total=result["total"],
            has_more=result["has_more"]
        )

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_definition(
    request: CreateDefinitionRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Create a workflow definition (HR only)

    The structure is validated; every problem found is listed in the
    error details.
    """
    try:
        service = DefinitionService()
        definition = service.create_definition(actor, request.model_dump(exclude_none=True))
        return definition.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/by-slug/{slug}")
async def get_definition_by_slug(
    slug: str,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Get a workflow definition by slug"""
    try:
        service = DefinitionService()
        return service.get_by_slug(actor, slug).model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{definition_id}")
async def get_definition(
    definition_id: str,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Get a workflow definition"""
    try:
        service = DefinitionService()
        return service.get_definition(actor, definition_id).model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.patch("/{definition_id}")
async def update_definition(
    definition_id: str,
    request: UpdateDefinitionRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Update a tenant-owned workflow definition (HR only)

    Running instances keep the version they started on.
    """
    try:
        service = DefinitionService()
        definition = service.update_definition(actor, definition_id, request.model_dump(exclude_unset=True))

        logger.info(
            f"Updated definition: {definition_id}",
            extra={"definition_id": definition_id, "actor_id": actor.user_id}
        )
        return definition.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{definition_id}/clone", status_code=status.HTTP_201_CREATED)
async def clone_definition(
    definition_id: str,
    request: CloneDefinitionRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Clone a definition (own or system) into an inactive tenant copy (HR only)"""
    try:
        service = DefinitionService()
        return service.clone_definition(actor, definition_id, request.new_name).model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/{definition_id}")
async def delete_definition(
    definition_id: str,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Deactivate a tenant-owned definition (HR only)"""
    try:
        service = DefinitionService()
        definition = service.delete_definition(actor, definition_id)
        return {"definition_id": definition.definition_id, "is_active": definition.is_active}

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
