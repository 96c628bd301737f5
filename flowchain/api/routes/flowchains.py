"""FlowChain API Routes - Publish and read definitions"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Body, Depends, status
from pydantic import BaseModel, Field

from ..deps import get_current_user_dep, get_correlation_id_dep, get_definition_service_dep
from ...domain.models import ActorContext, FlowChainDefinition
from ...services.definition_service import DefinitionService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class PublishResponse(BaseModel):
    """Response after publishing a version"""
    flow_chain_id: str
    version_number: int
    published_at: str


class ValidationResult(BaseModel):
    """Validation result"""
    is_valid: bool
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)


class VersionSummary(BaseModel):
    version_number: int
    name: str
    published_by: Optional[str] = None
    published_at: str


# ============================================================================
# Routes
# ============================================================================

@router.post("", response_model=PublishResponse, status_code=status.HTTP_201_CREATED)
async def create_flow_chain(
    definition: FlowChainDefinition,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    service: DefinitionService = Depends(get_definition_service_dep)
):
    """Publish version 1 of a new flow chain"""
    version = service.create_flow_chain(definition, actor_id=actor.actor_id)
    return PublishResponse(
        flow_chain_id=version.flow_chain_id,
        version_number=version.version_number,
        published_at=version.published_at.isoformat()
    )


@router.post("/validate", response_model=ValidationResult)
async def validate_flow_chain(
    payload: Dict[str, Any] = Body(...),
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    service: DefinitionService = Depends(get_definition_service_dep)
):
    """
    Validate a draft without publishing

    Schema problems are reported in the result rather than as a 400, so
    an editor can show every issue at once.
    """
    return ValidationResult(**service.validate(payload))


@router.post("/{flow_chain_id}/versions", response_model=PublishResponse, status_code=status.HTTP_201_CREATED)
async def publish_version(
    flow_chain_id: str,
    definition: FlowChainDefinition,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    service: DefinitionService = Depends(get_definition_service_dep)
):
    """Publish the next immutable version; running instances keep theirs"""
    version = service.publish(flow_chain_id, definition, actor_id=actor.actor_id)
    return PublishResponse(
        flow_chain_id=version.flow_chain_id,
        version_number=version.version_number,
        published_at=version.published_at.isoformat()
    )


@router.get("/{flow_chain_id}/versions", response_model=List[VersionSummary])
async def list_versions(
    flow_chain_id: str,
    actor: ActorContext = Depends(get_current_user_dep),
    service: DefinitionService = Depends(get_definition_service_dep)
):
    return [
        VersionSummary(
            version_number=v.version_number,
            name=v.definition.name,
            published_by=v.published_by,
            published_at=v.published_at.isoformat()
        )
        for v in service.list_versions(flow_chain_id)
    ]


@router.get("/{flow_chain_id}/versions/{version_number}")
async def get_version(
    flow_chain_id: str,
    version_number: int,
    actor: ActorContext = Depends(get_current_user_dep),
    service: DefinitionService = Depends(get_definition_service_dep)
):
    """Read a published version"""
    return service.get_version(flow_chain_id, version_number).model_dump(mode="json")
