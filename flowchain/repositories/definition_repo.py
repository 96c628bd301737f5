"""Definition Repository - Published FlowChain versions"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection
from ..domain.models import FlowChainVersion
from ..domain.errors import FlowChainNotFoundError, AlreadyExistsError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DefinitionRepository:
    """Repository for immutable FlowChain versions (insert and read only)"""

    def __init__(self, database: Optional[Database] = None):
        self._versions: Collection = get_collection("flow_chain_versions", database)

    def create_version(self, version: FlowChainVersion) -> FlowChainVersion:
        """Insert a published version"""
        doc = self._to_doc(version)
        try:
            self._versions.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyExistsError(
                f"FlowChain {version.flow_chain_id} version {version.version_number} already exists",
                details={"flow_chain_id": version.flow_chain_id, "version_number": version.version_number}
            )
        logger.info(
            f"Published FlowChain {version.flow_chain_id} v{version.version_number}",
            extra={"flow_chain_id": version.flow_chain_id}
        )
        return version

    def get_version(self, flow_chain_id: str, version_number: int) -> Optional[FlowChainVersion]:
        doc = self._versions.find_one(
            {"flow_chain_id": flow_chain_id, "version_number": version_number}
        )
        return self._from_doc(doc) if doc else None

    def get_version_or_raise(self, flow_chain_id: str, version_number: int) -> FlowChainVersion:
        version = self.get_version(flow_chain_id, version_number)
        if not version:
            raise FlowChainNotFoundError(
                f"FlowChain {flow_chain_id} version {version_number} not found",
                details={"flow_chain_id": flow_chain_id, "version_number": version_number}
            )
        return version

    def get_latest_version_number(self, flow_chain_id: str) -> int:
        """Highest published version number, 0 if none"""
        doc = self._versions.find_one(
            {"flow_chain_id": flow_chain_id},
            sort=[("version_number", DESCENDING)],
            projection={"version_number": 1}
        )
        return doc["version_number"] if doc else 0

    def list_versions(self, flow_chain_id: str) -> List[FlowChainVersion]:
        cursor = self._versions.find({"flow_chain_id": flow_chain_id}).sort("version_number", ASCENDING)
        return [self._from_doc(doc) for doc in cursor]

    def _to_doc(self, version: FlowChainVersion) -> Dict[str, Any]:
        doc = version.model_dump()
        # Enums stored by value so the stored graph reads like the submitted one
        doc["definition"] = version.definition.model_dump(mode="json")
        doc["_id"] = f"{version.flow_chain_id}:{version.version_number}"
        return doc

    def _from_doc(self, doc: Dict[str, Any]) -> FlowChainVersion:
        doc.pop("_id", None)
        return FlowChainVersion.model_validate(doc)
