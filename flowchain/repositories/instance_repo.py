"""Instance Repository - Workflow instances and their append-only projections"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection
from ..domain.models import WorkflowInstance, Decision, HistoryEntry
from ..domain.enums import InstanceStatus
from ..domain.errors import (
    InstanceNotFoundError, ConcurrencyError, ActiveInstanceExists
)
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class InstanceRepository:
    """
    Repository for workflow instances

    The instance document embeds its decisions and history and carries a
    `version` counter. `commit` replaces the whole document only if the
    version is still the one that was read, so one write publishes a full
    cascade or nothing. The `decisions` and `instance_history` collections
    are projections written after the commit, keyed by their own ids.
    """

    def __init__(self, database: Optional[Database] = None):
        self._instances: Collection = get_collection("instances", database)
        self._decisions: Collection = get_collection("decisions", database)
        self._history: Collection = get_collection("instance_history", database)

    # =========================================================================
    # Instance CRUD
    # =========================================================================

    def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Insert a new instance"""
        if self.find_active(instance.asset.asset_id, instance.flow_chain_id):
            raise self._active_exists(instance)
        try:
            self._instances.insert_one(self._to_doc(instance))
        except DuplicateKeyError:
            # Lost the race against a concurrent create for the same asset
            raise self._active_exists(instance)

        self._project(instance.decisions, instance.history)
        logger.info(
            f"Created instance: {instance.instance_id}",
            extra={"instance_id": instance.instance_id, "asset_id": instance.asset.asset_id}
        )
        return instance

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        doc = self._instances.find_one({"instance_id": instance_id})
        return self._from_doc(doc) if doc else None

    def get_instance_or_raise(self, instance_id: str) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        if not instance:
            raise InstanceNotFoundError(
                f"Instance {instance_id} not found", details={"instance_id": instance_id}
            )
        return instance

    def find_active(self, asset_id: str, flow_chain_id: str) -> Optional[WorkflowInstance]:
        """Non-terminal instance of the flow chain for the asset, if any"""
        doc = self._instances.find_one({"active_key": f"{asset_id}:{flow_chain_id}"})
        return self._from_doc(doc) if doc else None

    def commit(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        new_decisions: Iterable[Decision] = (),
        new_history: Iterable[HistoryEntry] = ()
    ) -> WorkflowInstance:
        """
        Replace the instance if nobody committed since it was read

        Raises:
            ConcurrencyError: If the stored version moved on
            InstanceNotFoundError: If the instance does not exist
        """
        instance.version = expected_version + 1
        instance.updated_at = utc_now()

        result = self._instances.find_one_and_replace(
            {"instance_id": instance.instance_id, "version": expected_version},
            self._to_doc(instance),
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            if self._instances.find_one({"instance_id": instance.instance_id}, projection={"_id": 1}):
                raise ConcurrencyError(
                    f"Instance {instance.instance_id} was modified concurrently",
                    details={"instance_id": instance.instance_id, "expected_version": expected_version}
                )
            raise InstanceNotFoundError(
                f"Instance {instance.instance_id} not found",
                details={"instance_id": instance.instance_id}
            )

        self._project(new_decisions, new_history)
        logger.debug(
            f"Committed instance {instance.instance_id} at version {instance.version}",
            extra={"instance_id": instance.instance_id, "status": instance.status.value}
        )
        return self._from_doc(result)

    # =========================================================================
    # Queries (no instance lock; documents are read as committed)
    # =========================================================================

    def list_instances(
        self,
        flow_chain_id: Optional[str] = None,
        statuses: Optional[List[InstanceStatus]] = None,
        updated_since: Optional[datetime] = None,
        limit: int = 0
    ) -> List[WorkflowInstance]:
        query: Dict[str, Any] = {}
        if flow_chain_id:
            query["flow_chain_id"] = flow_chain_id
        if statuses:
            query["status"] = {"$in": [s.value for s in statuses]}
        if updated_since is not None:
            query["updated_at"] = {"$gte": updated_since}

        cursor = self._instances.find(query).sort("updated_at", DESCENDING)
        if limit:
            cursor = cursor.limit(limit)
        return [self._from_doc(doc) for doc in cursor]

    def list_decisions(self, instance_id: str, step_id: Optional[str] = None) -> List[Decision]:
        """Decisions from the append-only projection, oldest first"""
        query: Dict[str, Any] = {"instance_id": instance_id}
        if step_id:
            query["step_id"] = step_id
        cursor = self._decisions.find(query).sort("decided_at", ASCENDING)
        return [Decision.model_validate(_strip_id(doc)) for doc in cursor]

    def list_history(self, instance_id: str) -> List[HistoryEntry]:
        cursor = self._history.find({"instance_id": instance_id}).sort("timestamp", ASCENDING)
        return [HistoryEntry.model_validate(_strip_id(doc)) for doc in cursor]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _project(self, decisions: Iterable[Decision], history: Iterable[HistoryEntry]) -> None:
        """Mirror new entries into the append-only collections (idempotent)"""
        for decision in decisions:
            self._decisions.update_one(
                {"decision_id": decision.decision_id},
                {"$setOnInsert": decision.model_dump()},
                upsert=True
            )
        for entry in history:
            self._history.update_one(
                {"history_id": entry.history_id},
                {"$setOnInsert": entry.model_dump()},
                upsert=True
            )

    def _to_doc(self, instance: WorkflowInstance) -> Dict[str, Any]:
        # Don't use mode="json" - datetimes must stay sortable
        doc = instance.model_dump()
        doc["_id"] = instance.instance_id
        if not instance.is_terminal:
            doc["active_key"] = instance.active_key
        return doc

    def _from_doc(self, doc: Dict[str, Any]) -> WorkflowInstance:
        return WorkflowInstance.model_validate(_strip_id(doc))

    def _active_exists(self, instance: WorkflowInstance) -> ActiveInstanceExists:
        return ActiveInstanceExists(
            f"Asset {instance.asset.asset_id} already has an active instance of {instance.flow_chain_id}",
            details={"asset_id": instance.asset.asset_id, "flow_chain_id": instance.flow_chain_id}
        )


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc.pop("_id", None)
    return doc
