"""Definition Service - Validate and publish FlowChain versions"""
from typing import Any, Dict, List, Optional

from ..domain.models import FlowChainDefinition, FlowChainVersion
from ..domain.errors import AlreadyExistsError
from ..engine.definition_validator import DefinitionValidator
from ..repositories.definition_repo import DefinitionRepository
from ..utils.idgen import generate_flow_chain_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Concurrent publishes of the same flow chain race for the next number
PUBLISH_ATTEMPTS = 3


class DefinitionService:
    """Service for the write side of the Definition Store"""

    def __init__(
        self,
        repo: Optional[DefinitionRepository] = None,
        validator: Optional[DefinitionValidator] = None
    ):
        self.repo = repo or DefinitionRepository()
        self.validator = validator or DefinitionValidator()

    def validate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate a draft without publishing"""
        return self.validator.validate_payload(payload)

    def create_flow_chain(
        self,
        definition: FlowChainDefinition,
        actor_id: Optional[str] = None
    ) -> FlowChainVersion:
        """Publish version 1 of a new flow chain"""
        return self.publish(generate_flow_chain_id(), definition, actor_id)

    def publish(
        self,
        flow_chain_id: str,
        definition: FlowChainDefinition,
        actor_id: Optional[str] = None
    ) -> FlowChainVersion:
        """
        Publish definition as the next immutable version

        Raises:
            DefinitionValidationError: If validation fails
        """
        validation = self.validator.validate_or_raise(definition)
        for warning in validation["warnings"]:
            logger.warning(
                f"Publishing {flow_chain_id} with warning: {warning['message']}",
                extra={"flow_chain_id": flow_chain_id}
            )

        for attempt in range(PUBLISH_ATTEMPTS):
            version = FlowChainVersion(
                flow_chain_id=flow_chain_id,
                version_number=self.repo.get_latest_version_number(flow_chain_id) + 1,
                definition=definition,
                published_by=actor_id,
                published_at=utc_now()
            )
            try:
                return self.repo.create_version(version)
            except AlreadyExistsError:
                if attempt == PUBLISH_ATTEMPTS - 1:
                    raise
                logger.warning(
                    f"Version {version.version_number} of {flow_chain_id} taken, retrying",
                    extra={"flow_chain_id": flow_chain_id}
                )

    def get_version(self, flow_chain_id: str, version_number: int) -> FlowChainVersion:
        return self.repo.get_version_or_raise(flow_chain_id, version_number)

    def list_versions(self, flow_chain_id: str) -> List[FlowChainVersion]:
        return self.repo.list_versions(flow_chain_id)
