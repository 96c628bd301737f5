"""Reporting Service - Cross-instance views for dashboards"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import WorkflowInstance
from ..domain.enums import InstanceStatus, StepStatus, TerminalOutcome
from ..repositories.instance_repo import InstanceRepository
from ..utils.time import utc_now, minutes_since
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ReportingService:
    """
    Read-only reports over many instances

    Reads committed instance documents without taking any instance lock;
    instances may advance while a report is built.
    """

    def __init__(self, instance_repo: Optional[InstanceRepository] = None):
        self.instance_repo = instance_repo or InstanceRepository()

    def flow_chain_progress(self, flow_chain_id: str) -> Dict[str, Any]:
        """Per-status totals and where running instances currently wait"""
        instances = self.instance_repo.list_instances(flow_chain_id=flow_chain_id)

        by_status: Dict[str, int] = {s.value: 0 for s in InstanceStatus}
        by_outcome: Dict[str, int] = {}
        stages: Dict[str, Dict[str, Any]] = {}

        for instance in instances:
            by_status[instance.status.value] += 1
            if instance.terminal_outcome is not None:
                key = instance.terminal_outcome.value
                by_outcome[key] = by_outcome.get(key, 0) + 1
            if instance.is_terminal or instance.current_stage_id is None:
                continue

            stage = stages.setdefault(instance.current_stage_id, {"instances": 0, "active_steps": {}})
            stage["instances"] += 1
            for runtime in instance.steps.values():
                if runtime.status == StepStatus.ACTIVE:
                    stage["active_steps"][runtime.step_id] = stage["active_steps"].get(runtime.step_id, 0) + 1

        return {
            "flow_chain_id": flow_chain_id,
            "total": len(instances),
            "by_status": by_status,
            "by_outcome": by_outcome,
            "stages": stages,
            "generated_at": utc_now()
        }

    def list_halted(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """BLOCKED instances and instances failed on the rework bound"""
        halted = self.instance_repo.list_instances(
            statuses=[InstanceStatus.BLOCKED, InstanceStatus.FAILED],
            updated_since=since
        )
        return [self._halt_summary(i) for i in halted if _is_halted(i)]

    def _halt_summary(self, instance: WorkflowInstance) -> Dict[str, Any]:
        return {
            "instance_id": instance.instance_id,
            "flow_chain_id": instance.flow_chain_id,
            "flow_chain_version": instance.flow_chain_version,
            "asset_id": instance.asset.asset_id,
            "status": instance.status.value,
            "terminal_outcome": instance.terminal_outcome.value if instance.terminal_outcome else None,
            "current_stage_id": instance.current_stage_id,
            "blocked_reason": instance.blocked_reason,
            "halted_at": instance.updated_at,
            "minutes_in_stage": minutes_since(instance.stage_entered_at)
        }


def _is_halted(instance: WorkflowInstance) -> bool:
    if instance.status == InstanceStatus.BLOCKED:
        return True
    return instance.terminal_outcome == TerminalOutcome.MAX_RETRIES_EXCEEDED
