"""API Routes module"""
from fastapi import APIRouter

from .flowchains import router as flowchains_router
from .instances import router as instances_router
from .campaigns import router as campaigns_router
from .reports import router as reports_router

# Main API router
api_router = APIRouter()

# Include all route modules
api_router.include_router(flowchains_router, prefix="/flowchains", tags=["FlowChains"])
api_router.include_router(instances_router, prefix="/instances", tags=["Instances"])
api_router.include_router(campaigns_router, prefix="/campaigns", tags=["Campaigns"])
api_router.include_router(reports_router, prefix="/reports", tags=["Reports"])

__all__ = ["api_router"]
