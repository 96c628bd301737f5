"""Campaign API Routes - Attach flow chains to campaigns"""
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from ..deps import get_current_user_dep, get_correlation_id_dep, get_assignment_service_dep
from ...domain.models import ActorContext
from ...services.assignment_service import AssignmentService

router = APIRouter()


class AttachFlowRequest(BaseModel):
    flow_chain_id: str
    version_number: int = Field(..., ge=1)
    is_default: bool = False


@router.post("/{campaign_id}/flows", status_code=status.HTTP_201_CREATED)
async def attach_flow(
    campaign_id: str,
    request: AttachFlowRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    service: AssignmentService = Depends(get_assignment_service_dep)
):
    flow = service.attach_flow(
        campaign_id, request.flow_chain_id, request.version_number, is_default=request.is_default
    )
    return flow.model_dump(mode="json")


@router.get("/{campaign_id}/flows")
async def list_flows(
    campaign_id: str,
    actor: ActorContext = Depends(get_current_user_dep),
    service: AssignmentService = Depends(get_assignment_service_dep)
):
    return [f.model_dump(mode="json") for f in service.binding_repo.list_campaign_flows(campaign_id)]
