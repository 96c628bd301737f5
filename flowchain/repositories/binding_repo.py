"""Binding Repository - Campaign flows and asset bindings"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING, DESCENDING

from .mongo_client import get_collection
from ..domain.models import AssetBinding, CampaignFlow
from ..utils.logger import get_logger

logger = get_logger(__name__)


class BindingRepository:
    """Repository for campaign flow attachments and asset bindings"""

    def __init__(self, database: Optional[Database] = None):
        self._campaign_flows: Collection = get_collection("campaign_flows", database)
        self._bindings: Collection = get_collection("asset_bindings", database)

    # =========================================================================
    # Campaign flows
    # =========================================================================

    def save_campaign_flow(self, flow: CampaignFlow) -> CampaignFlow:
        """Attach (or re-pin) a flow chain version to a campaign"""
        if flow.is_default:
            # A campaign has at most one default
            self._campaign_flows.update_many(
                {"campaign_id": flow.campaign_id, "flow_chain_id": {"$ne": flow.flow_chain_id}},
                {"$set": {"is_default": False}}
            )
        self._campaign_flows.replace_one(
            {"campaign_id": flow.campaign_id, "flow_chain_id": flow.flow_chain_id},
            flow.model_dump(),
            upsert=True
        )
        logger.info(
            f"Campaign {flow.campaign_id} uses {flow.flow_chain_id} v{flow.version_number}"
            f"{' (default)' if flow.is_default else ''}",
            extra={"flow_chain_id": flow.flow_chain_id}
        )
        return flow

    def list_campaign_flows(self, campaign_id: str) -> List[CampaignFlow]:
        cursor = self._campaign_flows.find({"campaign_id": campaign_id}).sort("created_at", ASCENDING)
        return [CampaignFlow.model_validate(_strip_id(doc)) for doc in cursor]

    def get_default_flow(self, campaign_id: str) -> Optional[CampaignFlow]:
        """The campaign's default flow, else its first attached flow"""
        flows = self.list_campaign_flows(campaign_id)
        if not flows:
            return None
        return next((f for f in flows if f.is_default), flows[0])

    # =========================================================================
    # Asset bindings
    # =========================================================================

    def save_binding(self, binding: AssetBinding) -> AssetBinding:
        self._bindings.replace_one(
            {"asset_id": binding.asset_id, "flow_chain_id": binding.flow_chain_id},
            binding.model_dump(),
            upsert=True
        )
        return binding

    def get_binding(self, asset_id: str, flow_chain_id: Optional[str] = None) -> Optional[AssetBinding]:
        """Binding for the asset, the most recent one when no flow chain is given"""
        query: Dict[str, Any] = {"asset_id": asset_id}
        if flow_chain_id:
            query["flow_chain_id"] = flow_chain_id
        doc = self._bindings.find_one(query, sort=[("bound_at", DESCENDING)])
        return AssetBinding.model_validate(_strip_id(doc)) if doc else None

    def list_bindings(self, campaign_id: str) -> List[AssetBinding]:
        cursor = self._bindings.find({"campaign_id": campaign_id}).sort("bound_at", ASCENDING)
        return [AssetBinding.model_validate(_strip_id(doc)) for doc in cursor]


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc.pop("_id", None)
    return doc
