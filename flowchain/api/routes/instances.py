"""Instance API Routes - Create, decide, read, cancel, override"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from ..deps import (
    get_current_user_dep, get_correlation_id_dep, get_runtime_dep, get_assignment_service_dep
)
from ...domain.models import ActorContext, AssetRef, WorkflowInstance
from ...domain.enums import DecisionOutcome, InstanceStatus, TerminalOutcome
from ...engine.runtime import WorkflowRuntime
from ...services.assignment_service import AssignmentService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class CreateInstanceRequest(BaseModel):
    """Explicit flow_chain_id (and version) or the campaign default"""
    asset: AssetRef
    flow_chain_id: Optional[str] = None
    version_number: Optional[int] = Field(None, ge=1)


class BulkCreateRequest(BaseModel):
    campaign_id: str = Field(..., min_length=1)
    assets: List[AssetRef] = Field(..., min_length=1, max_length=500)


class DecisionRequest(BaseModel):
    step_id: str
    role_id: str
    outcome: DecisionOutcome
    comment: Optional[str] = Field(None, max_length=2000)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class OverrideRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    target_stage_id: Optional[str] = None
    outcome: Optional[TerminalOutcome] = None


def _instance_payload(instance: WorkflowInstance) -> Dict[str, Any]:
    """Instance plus whether it now needs operator attention"""
    return {
        "instance": instance.model_dump(mode="json"),
        "halted": instance.status == InstanceStatus.BLOCKED
        or instance.terminal_outcome == TerminalOutcome.MAX_RETRIES_EXCEEDED
    }


# ============================================================================
# Routes
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_instance(
    request: CreateInstanceRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    service: AssignmentService = Depends(get_assignment_service_dep)
):
    """Bind the asset to a flow chain version and start its instance"""
    instance = service.assign(
        request.asset,
        flow_chain_id=request.flow_chain_id,
        version_number=request.version_number,
        actor_id=actor.actor_id
    )
    return _instance_payload(instance)


@router.post("/bulk")
async def create_instances_bulk(
    request: BulkCreateRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    service: AssignmentService = Depends(get_assignment_service_dep)
):
    """Start instances for many assets under the campaign default flow"""
    return service.create_instances_bulk(request.campaign_id, request.assets, actor_id=actor.actor_id)


@router.get("/{instance_id}")
async def get_instance(
    instance_id: str,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    runtime: WorkflowRuntime = Depends(get_runtime_dep)
):
    """State snapshot with the steps awaiting decisions"""
    snapshot = runtime.get_instance_state(instance_id)
    payload = _instance_payload(snapshot.instance)
    payload["active_steps"] = [s.model_dump(mode="json") for s in snapshot.active_steps]
    return payload


@router.post("/{instance_id}/decisions")
async def submit_decision(
    instance_id: str,
    request: DecisionRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    runtime: WorkflowRuntime = Depends(get_runtime_dep)
):
    """Record the caller's decision for a role and cascade"""
    instance = runtime.submit_decision(
        instance_id,
        step_id=request.step_id,
        role_id=request.role_id,
        actor_id=actor.actor_id,
        outcome=request.outcome,
        comment=request.comment
    )
    return _instance_payload(instance)


@router.post("/{instance_id}/cancel")
async def cancel_instance(
    instance_id: str,
    request: Optional[CancelRequest] = None,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    runtime: WorkflowRuntime = Depends(get_runtime_dep)
):
    instance = runtime.cancel_instance(
        instance_id, actor_id=actor.actor_id, reason=request.reason if request else None
    )
    return _instance_payload(instance)


@router.post("/{instance_id}/override")
async def override_instance(
    instance_id: str,
    request: OverrideRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    runtime: WorkflowRuntime = Depends(get_runtime_dep)
):
    """Move a halted instance to a stage or an outcome"""
    logger.info(
        f"Override requested on {instance_id}",
        extra={"instance_id": instance_id, "actor_id": actor.actor_id}
    )
    instance = runtime.override(
        instance_id,
        actor_id=actor.actor_id,
        reason=request.reason,
        target_stage_id=request.target_stage_id,
        outcome=request.outcome
    )
    return _instance_payload(instance)
