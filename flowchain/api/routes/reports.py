"""Report API Routes - Lock-free dashboards"""
from typing import Optional
from fastapi import APIRouter, Depends, Query

from ..deps import get_current_user_dep, get_reporting_service_dep
from ...domain.models import ActorContext
from ...domain.errors import ValidationError
from ...services.reporting_service import ReportingService
from ...utils.time import parse_iso

router = APIRouter()


@router.get("/flowchains/{flow_chain_id}/progress")
async def flow_chain_progress(
    flow_chain_id: str,
    actor: ActorContext = Depends(get_current_user_dep),
    service: ReportingService = Depends(get_reporting_service_dep)
):
    return service.flow_chain_progress(flow_chain_id)


@router.get("/halted")
async def list_halted(
    since: Optional[str] = Query(None, description="ISO 8601 timestamp"),
    actor: ActorContext = Depends(get_current_user_dep),
    service: ReportingService = Depends(get_reporting_service_dep)
):
    """Instances that need an operator: BLOCKED or failed on the rework bound"""
    since_dt = None
    if since:
        try:
            since_dt = parse_iso(since)
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {since}", details={"since": since})
    items = service.list_halted(since=since_dt)
    return {"items": items, "total": len(items)}
