"""Assignment Service - Bind assets to FlowChain versions and start instances"""
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from ..domain.models import AssetBinding, AssetRef, CampaignFlow, WorkflowInstance
from ..domain.errors import DomainError, FlowChainNotFoundError, ValidationError
from ..repositories.binding_repo import BindingRepository
from ..repositories.definition_repo import DefinitionRepository
from ..utils.time import utc_now
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..engine.runtime import WorkflowRuntime

logger = get_logger(__name__)


class AssignmentService:
    """
    Service for campaign flows and asset bindings

    Instance creation always goes through an explicit binding record, so
    which version an asset runs is never looked up implicitly later on.
    """

    def __init__(
        self,
        runtime: "WorkflowRuntime",
        binding_repo: Optional[BindingRepository] = None,
        definition_repo: Optional[DefinitionRepository] = None
    ):
        self.runtime = runtime
        self.binding_repo = binding_repo or BindingRepository()
        self.definition_repo = definition_repo or runtime.definition_repo

    def attach_flow(
        self,
        campaign_id: str,
        flow_chain_id: str,
        version_number: int,
        is_default: bool = False
    ) -> CampaignFlow:
        """Attach a published version to a campaign"""
        self.definition_repo.get_version_or_raise(flow_chain_id, version_number)
        flow = CampaignFlow(
            campaign_id=campaign_id,
            flow_chain_id=flow_chain_id,
            version_number=version_number,
            is_default=is_default,
            created_at=utc_now()
        )
        return self.binding_repo.save_campaign_flow(flow)

    def resolve_binding(
        self,
        asset: AssetRef,
        flow_chain_id: Optional[str] = None,
        version_number: Optional[int] = None,
        actor_id: Optional[str] = None
    ) -> AssetBinding:
        """
        Decide which version the asset runs

        An explicit flow_chain_id@version wins; otherwise the default flow of
        the asset's campaign is used.
        """
        if flow_chain_id is not None:
            if version_number is None:
                version_number = self.definition_repo.get_latest_version_number(flow_chain_id)
                if version_number == 0:
                    raise FlowChainNotFoundError(
                        f"FlowChain {flow_chain_id} has no published version",
                        details={"flow_chain_id": flow_chain_id}
                    )
            explicit = True
        else:
            if not asset.campaign_id:
                raise ValidationError(
                    "Asset has no campaign and no explicit flow chain was given",
                    details={"asset_id": asset.asset_id}
                )
            flow = self.binding_repo.get_default_flow(asset.campaign_id)
            if flow is None:
                raise FlowChainNotFoundError(
                    f"Campaign {asset.campaign_id} has no flow chain attached",
                    details={"campaign_id": asset.campaign_id}
                )
            flow_chain_id, version_number = flow.flow_chain_id, flow.version_number
            explicit = False

        return AssetBinding(
            asset_id=asset.asset_id,
            asset_type=asset.asset_type,
            campaign_id=asset.campaign_id,
            flow_chain_id=flow_chain_id,
            version_number=version_number,
            explicit=explicit,
            bound_by=actor_id,
            bound_at=utc_now()
        )

    def assign(
        self,
        asset: AssetRef,
        flow_chain_id: Optional[str] = None,
        version_number: Optional[int] = None,
        actor_id: Optional[str] = None
    ) -> WorkflowInstance:
        """Bind the asset and create its instance"""
        binding = self.resolve_binding(asset, flow_chain_id, version_number, actor_id)
        instance = self.runtime.create_instance(
            binding.flow_chain_id, binding.version_number, asset, actor_id=actor_id
        )
        binding.instance_id = instance.instance_id
        self.binding_repo.save_binding(binding)
        return instance

    def create_instances_bulk(
        self,
        campaign_id: str,
        assets: List[AssetRef],
        actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Start an instance per asset under the campaign default

        A failing asset is reported as skipped and does not stop the rest.
        """
        flow = self.binding_repo.get_default_flow(campaign_id)
        if flow is None:
            raise FlowChainNotFoundError(
                f"Campaign {campaign_id} has no flow chain attached",
                details={"campaign_id": campaign_id}
            )

        results = []
        for asset in assets:
            if asset.campaign_id != campaign_id:
                asset = asset.model_copy(update={"campaign_id": campaign_id})
            try:
                instance = self.assign(asset, actor_id=actor_id)
                results.append({
                    "asset_id": asset.asset_id,
                    "status": "created",
                    "instance_id": instance.instance_id
                })
            except DomainError as e:
                logger.info(
                    f"Skipped asset {asset.asset_id}: {e.message}",
                    extra={"asset_id": asset.asset_id, "error_code": e.error_code}
                )
                results.append({
                    "asset_id": asset.asset_id,
                    "status": "skipped",
                    "error_code": e.error_code,
                    "message": e.message
                })

        created = sum(1 for r in results if r["status"] == "created")
        logger.info(
            f"Bulk assignment for campaign {campaign_id}: {created} created, {len(results) - created} skipped",
            extra={"flow_chain_id": flow.flow_chain_id}
        )
        return {
            "campaign_id": campaign_id,
            "flow_chain_id": flow.flow_chain_id,
            "version_number": flow.version_number,
            "created": created,
            "skipped": len(results) - created,
            "results": results
        }
