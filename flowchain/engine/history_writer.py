"""History Writer - Append-only instance history"""
from datetime import datetime
import logging
from typing import Any, Dict, Iterable, Optional

from ..domain.models import HistoryEntry, WorkflowInstance
from ..domain.enums import HistoryEventType
from ..utils.idgen import generate_history_id
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


# Halts are surfaced loudly
_ERROR_EVENTS = frozenset({
    HistoryEventType.INSTANCE_BLOCKED,
    HistoryEventType.MAX_RETRIES_EXCEEDED,
})


class HistoryWriter:
    """
    Append history entries to an instance being mutated

    Entries land on the instance document itself, so they commit (or
    vanish) together with the state change they describe. `emit` logs
    entries once their commit succeeded.
    """

    def record(
        self,
        instance: WorkflowInstance,
        event_type: HistoryEventType,
        actor_id: Optional[str] = None,
        stage_id: Optional[str] = None,
        step_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> HistoryEntry:
        entry = HistoryEntry(
            history_id=generate_history_id(),
            instance_id=instance.instance_id,
            event_type=event_type,
            stage_id=stage_id,
            step_id=step_id,
            actor_id=actor_id,
            details=details or {},
            timestamp=now or utc_now(),
            correlation_id=get_correlation_id()
        )
        instance.history.append(entry)
        return entry

    def emit(self, instance: WorkflowInstance, entries: Iterable[HistoryEntry]) -> None:
        """Log one line per committed entry"""
        for entry in entries:
            extra: Dict[str, Any] = {
                "instance_id": instance.instance_id,
                "flow_chain_id": instance.flow_chain_id,
                "asset_id": instance.asset.asset_id,
            }
            if entry.stage_id:
                extra["stage_id"] = entry.stage_id
            if entry.step_id:
                extra["step_id"] = entry.step_id
            if entry.actor_id:
                extra["actor_id"] = entry.actor_id
            level = logging.ERROR if entry.event_type in _ERROR_EVENTS else logging.INFO
            message = entry.event_type.value
            if entry.details:
                message = f"{message} {entry.details}"
            logger.log(level, message, extra=extra)
