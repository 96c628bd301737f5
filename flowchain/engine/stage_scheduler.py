"""Stage Scheduler - Drive the steps of a stage per its execution mode"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..domain.models import (
    FlowChainDefinition, Stage, Step, StepRuntime, Transition, WorkflowInstance
)
from ..domain.enums import (
    DecisionOutcome, ExecutionMode, HistoryEventType, Resolution, StepStatus
)
from ..domain.errors import MaxRetriesExceeded
from .approval_aggregator import ApprovalAggregator
from .condition_evaluator import ConditionEvaluator
from .history_writer import HistoryWriter
from .transition_resolver import TransitionResolver
from ..utils.logger import get_logger

logger = get_logger(__name__)


class StageOutcome(BaseModel):
    """Result of advancing a stage"""
    resolution: Resolution
    # Step-level transition that leaves the stage, overriding stage routing
    route: Optional[Transition] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolution != Resolution.PENDING


def build_condition_context(
    instance: WorkflowInstance,
    definition: FlowChainDefinition,
    stage: Optional[Stage] = None,
    resolution: Optional[Resolution] = None,
    step: Optional[Step] = None
) -> Dict[str, Any]:
    """
    Build the context predicates are evaluated against

    `decisions` counts the latest vote of each role in the current visit of
    the step's stage. `revision_requested` is scoped to `step` when given,
    otherwise to every step of `stage`.
    """
    aggregator = ApprovalAggregator()
    decisions: Dict[str, Dict[str, int]] = {}
    revision_requested = False
    scope = [step] if step is not None else (stage.steps if stage is not None else [])
    scope_ids = {s.step_id for s in scope}

    for each_stage in definition.stages:
        visit = instance.current_visit(each_stage.stage_id)
        for each_step in each_stage.steps:
            votes = aggregator.latest_votes(
                each_step, instance.decisions_for(each_step.step_id, visit)
            )
            outcomes = list(votes.values())
            decisions[each_step.step_id] = {
                "approve": outcomes.count(DecisionOutcome.APPROVE),
                "reject": outcomes.count(DecisionOutcome.REJECT),
                "revision": outcomes.count(DecisionOutcome.REQUEST_REVISION),
            }
            if each_step.step_id in scope_ids and DecisionOutcome.REQUEST_REVISION in outcomes:
                revision_requested = True

    return {
        "asset": instance.asset.model_dump(mode="json"),
        "resolution": resolution.value if resolution is not None else None,
        "revision_requested": revision_requested,
        "stage": {
            "stage_id": stage.stage_id if stage is not None else None,
            "visit": instance.current_visit(stage.stage_id) if stage is not None else 0,
        },
        "decisions": decisions,
        "steps": {
            step_id: {"status": rt.status.value, "resolution": rt.resolution.value}
            for step_id, rt in instance.steps.items()
        },
    }


class StageScheduler:
    """
    Activate and resolve the steps of one stage

    SEQUENTIAL activates one step at a time in order_in_stage and follows
    step-level transitions; a rejection without a step route ends the
    stage REJECTED and the remaining steps are SKIPPED. PARALLEL activates
    every step, CONDITIONAL only the selected ones (the rest are SKIPPED);
    both resolve ALL_MUST_APPROVE over their steps, and a rejection marks
    still-active siblings PENDING_ABANDONED.

    The scheduler mutates the instance in memory; the runtime commits.
    """

    def __init__(
        self,
        aggregator: Optional[ApprovalAggregator] = None,
        resolver: Optional[TransitionResolver] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        history_writer: Optional[HistoryWriter] = None
    ):
        self.aggregator = aggregator or ApprovalAggregator()
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()
        self.resolver = resolver or TransitionResolver(self.condition_evaluator)
        self.history = history_writer or HistoryWriter()

    # =========================================================================
    # Entry
    # =========================================================================

    def enter(
        self,
        instance: WorkflowInstance,
        definition: FlowChainDefinition,
        stage: Stage,
        max_visits: int,
        now: datetime,
        actor_id: Optional[str] = None
    ) -> None:
        """
        Enter (or re-enter) a stage

        Raises:
            MaxRetriesExceeded: If this entry would exceed max_visits. The
                instance is left as it was before the call.
        """
        visit = instance.current_visit(stage.stage_id) + 1
        if visit > max_visits:
            raise MaxRetriesExceeded(
                f"Stage {stage.stage_id} would be entered for the {visit}th time (max {max_visits})",
                details={"stage_id": stage.stage_id, "visit": visit, "max_stage_visits": max_visits}
            )

        instance.stage_visits[stage.stage_id] = visit
        instance.current_stage_id = stage.stage_id
        instance.stage_entered_at = now
        for step in stage.steps:
            instance.steps[step.step_id] = StepRuntime(step_id=step.step_id, stage_id=stage.stage_id)

        self.history.record(
            instance, HistoryEventType.STAGE_ENTERED,
            actor_id=actor_id, stage_id=stage.stage_id,
            details={"visit": visit, "execution_mode": stage.execution_mode.value},
            now=now
        )

        if stage.execution_mode == ExecutionMode.SEQUENTIAL:
            ordered = stage.ordered_steps()
            if ordered:
                self._activate(instance, stage, ordered[0], now)
        elif stage.execution_mode == ExecutionMode.PARALLEL:
            for step in stage.steps:
                self._activate(instance, stage, step, now)
        else:
            context = build_condition_context(instance, definition, stage)
            for step in stage.steps:
                if self._is_selected(step, instance, definition, context):
                    self._activate(instance, stage, step, now)
                else:
                    self._skip(instance, stage, step, now, reason="not_selected")

    def _is_selected(
        self,
        step: Step,
        instance: WorkflowInstance,
        definition: FlowChainDefinition,
        context: Dict[str, Any]
    ) -> bool:
        if step.asset_type is not None and step.asset_type != instance.asset.asset_type:
            return False
        if step.activation_predicate:
            return self.condition_evaluator.evaluate_predicate(
                definition.predicates, step.activation_predicate, context
            )
        return True

    # =========================================================================
    # Advance
    # =========================================================================

    def advance(
        self,
        instance: WorkflowInstance,
        definition: FlowChainDefinition,
        stage: Stage,
        now: datetime
    ) -> StageOutcome:
        """
        Resolve whatever the recorded decisions allow

        Raises:
            StuckInstance: If a step-level transition set has no match
        """
        if stage.execution_mode == ExecutionMode.SEQUENTIAL:
            return self._advance_sequential(instance, definition, stage, now)
        return self._advance_all_of(instance, stage, now)

    def _advance_sequential(
        self,
        instance: WorkflowInstance,
        definition: FlowChainDefinition,
        stage: Stage,
        now: datetime
    ) -> StageOutcome:
        ordered = stage.ordered_steps()
        if not ordered:
            return StageOutcome(resolution=Resolution.APPROVED)

        while True:
            current = next(
                (s for s in ordered if instance.steps[s.step_id].status == StepStatus.ACTIVE),
                None
            )
            if current is None:
                # Every step is settled, the last resolved one decides
                resolved = [s for s in ordered if instance.steps[s.step_id].status == StepStatus.RESOLVED]
                if not resolved:
                    return StageOutcome(resolution=Resolution.APPROVED)
                return StageOutcome(resolution=instance.steps[resolved[-1].step_id].resolution)

            resolution = self._resolve_step(instance, stage, current, now)
            if resolution == Resolution.PENDING:
                return StageOutcome(resolution=Resolution.PENDING)

            index = ordered.index(current)
            remaining = ordered[index + 1:]

            if current.transitions:
                context = build_condition_context(instance, definition, stage, resolution, current)
                route = self.resolver.next_node(
                    current.step_id, current.transitions, resolution, context, definition.predicates
                )
                if route.to_step_id is not None:
                    for step in remaining:
                        if step.step_id == route.to_step_id:
                            self._activate(instance, stage, step, now)
                            break
                        self._skip(instance, stage, step, now, reason=f"jumped_to:{route.to_step_id}")
                    continue
                for step in remaining:
                    self._skip(instance, stage, step, now, reason=f"routed:{route.target}")
                return StageOutcome(resolution=resolution, route=route)

            if resolution == Resolution.REJECTED:
                for step in remaining:
                    self._skip(instance, stage, step, now, reason=f"rejected:{current.step_id}")
                return StageOutcome(resolution=Resolution.REJECTED)

            if not remaining:
                return StageOutcome(resolution=resolution)
            self._activate(instance, stage, remaining[0], now)

    def _advance_all_of(self, instance: WorkflowInstance, stage: Stage, now: datetime) -> StageOutcome:
        """PARALLEL and CONDITIONAL: every selected step must approve"""
        for step in stage.steps:
            if instance.steps[step.step_id].status == StepStatus.ACTIVE:
                self._resolve_step(instance, stage, step, now)

        rejected = [
            s for s in stage.steps
            if instance.steps[s.step_id].status == StepStatus.RESOLVED
            and instance.steps[s.step_id].resolution == Resolution.REJECTED
        ]
        if rejected:
            for step in stage.steps:
                if instance.steps[step.step_id].status == StepStatus.ACTIVE:
                    self._abandon(instance, stage, step, now, rejected_by=rejected[0].step_id)
            return StageOutcome(resolution=Resolution.REJECTED)

        if any(instance.steps[s.step_id].status == StepStatus.ACTIVE for s in stage.steps):
            return StageOutcome(resolution=Resolution.PENDING)
        return StageOutcome(resolution=Resolution.APPROVED)

    # =========================================================================
    # Step status changes
    # =========================================================================

    def _resolve_step(self, instance: WorkflowInstance, stage: Stage, step: Step, now: datetime) -> Resolution:
        visit = instance.current_visit(stage.stage_id)
        resolution = self.aggregator.resolve(step, instance.decisions_for(step.step_id, visit))
        if resolution != Resolution.PENDING:
            runtime = instance.steps[step.step_id]
            runtime.status = StepStatus.RESOLVED
            runtime.resolution = resolution
            runtime.resolved_at = now
            self.history.record(
                instance, HistoryEventType.STEP_RESOLVED,
                stage_id=stage.stage_id, step_id=step.step_id,
                details={"resolution": resolution.value, "visit": visit},
                now=now
            )
        return resolution

    def _activate(self, instance: WorkflowInstance, stage: Stage, step: Step, now: datetime) -> None:
        runtime = instance.steps[step.step_id]
        runtime.status = StepStatus.ACTIVE
        runtime.activated_at = now
        self.history.record(
            instance, HistoryEventType.STEP_ACTIVATED,
            stage_id=stage.stage_id, step_id=step.step_id,
            details={"awaiting_roles": step.role_ids},
            now=now
        )

    def _skip(self, instance: WorkflowInstance, stage: Stage, step: Step, now: datetime, reason: str) -> None:
        instance.steps[step.step_id].status = StepStatus.SKIPPED
        self.history.record(
            instance, HistoryEventType.STEP_SKIPPED,
            stage_id=stage.stage_id, step_id=step.step_id,
            details={"reason": reason},
            now=now
        )

    def _abandon(self, instance: WorkflowInstance, stage: Stage, step: Step, now: datetime, rejected_by: str) -> None:
        instance.steps[step.step_id].status = StepStatus.PENDING_ABANDONED
        self.history.record(
            instance, HistoryEventType.STEP_ABANDONED,
            stage_id=stage.stage_id, step_id=step.step_id,
            details={"rejected_by": rejected_by},
            now=now
        )

    def abandon_active(self, instance: WorkflowInstance, now: datetime, reason: str) -> List[str]:
        """Mark every ACTIVE step PENDING_ABANDONED (cancel, override)"""
        abandoned = []
        for runtime in instance.steps.values():
            if runtime.status == StepStatus.ACTIVE:
                runtime.status = StepStatus.PENDING_ABANDONED
                abandoned.append(runtime.step_id)
                self.history.record(
                    instance, HistoryEventType.STEP_ABANDONED,
                    stage_id=runtime.stage_id, step_id=runtime.step_id,
                    details={"reason": reason},
                    now=now
                )
        return abandoned
