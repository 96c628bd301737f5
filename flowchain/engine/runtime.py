"""
Workflow Runtime - Drives instances through their pinned FlowChain

Every mutation follows the same shape:
1. Load the instance and its pinned definition
2. Check the request against the loaded state (typed errors, no writes)
3. Apply the change and cascade on a deep copy
4. Commit the copy only if nobody committed since step 1; on a
   concurrency conflict start over from step 1 with the fresh state
"""
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from ..domain.models import (
    ActiveStepView, AssetRef, Decision, FlowChainDefinition, InstanceSnapshot,
    Stage, Transition, WorkflowInstance
)
from ..domain.enums import (
    DecisionOutcome, HistoryEventType, InstanceStatus, StepStatus, TerminalOutcome,
    ROUTABLE_OUTCOMES
)
from ..domain.errors import (
    ActiveInstanceExists, ConcurrencyError, DomainError, InstanceBlocked, InstanceTerminal,
    MaxRetriesExceeded, StageNotFoundError, StepNotActive, StepNotFoundError, StuckInstance,
    ValidationError
)
from ..repositories.definition_repo import DefinitionRepository
from ..repositories.instance_repo import InstanceRepository
from ..services.role_service import RoleService, StaticRoleService
from .approval_aggregator import ApprovalAggregator
from .condition_evaluator import ConditionEvaluator
from .history_writer import HistoryWriter
from .permission_guard import PermissionGuard
from .stage_scheduler import StageScheduler, build_condition_context
from .transition_resolver import TransitionResolver
from ..config.settings import settings
from ..utils.idgen import generate_decision_id, generate_instance_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


Mutation = Callable[[WorkflowInstance, FlowChainDefinition, datetime], Optional[WorkflowInstance]]


class WorkflowRuntime:
    """
    Top-level driver of workflow instances

    Owns at most one non-terminal instance per (asset, flow chain) and
    advances it stage by stage with the StageScheduler and the
    TransitionResolver. A resolution nobody routes leaves the instance
    BLOCKED; the rework bound leaves it FAILED with MAX_RETRIES_EXCEEDED.
    Both are committed and returned, not raised, so the caller always
    sees the state that was persisted.
    """

    def __init__(
        self,
        definition_repo: Optional[DefinitionRepository] = None,
        instance_repo: Optional[InstanceRepository] = None,
        role_service: Optional[RoleService] = None,
        max_stage_visits: Optional[int] = None,
        max_write_retries: Optional[int] = None
    ):
        self.definition_repo = definition_repo or DefinitionRepository()
        self.instance_repo = instance_repo or InstanceRepository()
        self.role_service = role_service or StaticRoleService()
        self.max_stage_visits = max_stage_visits or settings.max_stage_visits
        self.max_write_retries = max_write_retries if max_write_retries is not None else settings.max_write_retries

        self.aggregator = ApprovalAggregator()
        self.condition_evaluator = ConditionEvaluator()
        self.resolver = TransitionResolver(self.condition_evaluator)
        self.history = HistoryWriter()
        self.scheduler = StageScheduler(
            aggregator=self.aggregator,
            resolver=self.resolver,
            condition_evaluator=self.condition_evaluator,
            history_writer=self.history
        )
        self.permission_guard = PermissionGuard()

        # Published versions never change, so they are safe to keep
        self._definitions: Dict[Tuple[str, int], FlowChainDefinition] = {}

    # =========================================================================
    # Operations
    # =========================================================================

    def create_instance(
        self,
        flow_chain_id: str,
        version_number: int,
        asset: AssetRef,
        actor_id: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Start an instance at the first stage of a pinned version

        Raises:
            FlowChainNotFoundError: If the version is not published
            ActiveInstanceExists: If the asset already runs this flow chain
        """
        definition = self._definition(flow_chain_id, version_number)

        existing = self.instance_repo.find_active(asset.asset_id, flow_chain_id)
        if existing:
            raise ActiveInstanceExists(
                f"Asset {asset.asset_id} already has an active instance of {flow_chain_id}",
                details={
                    "asset_id": asset.asset_id,
                    "flow_chain_id": flow_chain_id,
                    "instance_id": existing.instance_id
                }
            )

        now = utc_now()
        instance = WorkflowInstance(
            instance_id=generate_instance_id(),
            flow_chain_id=flow_chain_id,
            flow_chain_version=version_number,
            asset=asset,
            created_by=actor_id,
            created_at=now,
            updated_at=now
        )
        self.history.record(
            instance, HistoryEventType.INSTANCE_CREATED, actor_id=actor_id,
            details={"flow_chain_version": version_number, "asset_type": asset.asset_type.value},
            now=now
        )

        self._enter_stage(instance, definition, definition.first_stage(), actor_id, now)
        self._cascade(instance, definition, actor_id, now)

        self.instance_repo.create_instance(instance)
        self.history.emit(instance, instance.history)
        return instance

    def submit_decision(
        self,
        instance_id: str,
        step_id: str,
        role_id: str,
        actor_id: str,
        outcome: DecisionOutcome,
        comment: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Record a role's decision on an active step and cascade

        Checks run in this order, each rejecting the call without writes:
        InstanceTerminal, InstanceBlocked, StepNotFoundError, Unauthorized,
        then StepNotActive. Resubmitting the latest decision of a role for
        the current visit is a no-op that returns the current state.
        """
        actor_roles: List[str] = []
        roles_loaded = False

        def apply(instance: WorkflowInstance, definition: FlowChainDefinition, now: datetime):
            nonlocal actor_roles, roles_loaded
            self._ensure_open(instance)

            found = definition.find_step(step_id)
            if found is None:
                raise StepNotFoundError(
                    f"Step {step_id} is not part of {instance.flow_chain_id} v{instance.flow_chain_version}",
                    details={"instance_id": instance.instance_id, "step_id": step_id}
                )
            stage, step = found

            if not roles_loaded:
                actor_roles = self.role_service.get_actor_roles(actor_id)
                roles_loaded = True
            self.permission_guard.ensure_can_decide(step, role_id, actor_id, actor_roles)

            visit = instance.current_visit(stage.stage_id)
            previous = [d for d in instance.decisions_for(step_id, visit) if d.role_id == role_id]
            if previous and previous[-1].outcome == outcome:
                logger.info(
                    f"Duplicate decision ignored for role {role_id} on step {step_id}",
                    extra={"instance_id": instance.instance_id, "step_id": step_id, "role_id": role_id}
                )
                return instance

            runtime = instance.steps.get(step_id)
            if runtime is None or runtime.status != StepStatus.ACTIVE:
                raise StepNotActive(
                    f"Step {step_id} is not active",
                    details={
                        "instance_id": instance.instance_id,
                        "step_id": step_id,
                        "status": runtime.status.value if runtime else StepStatus.NOT_STARTED.value
                    }
                )

            decision = Decision(
                decision_id=generate_decision_id(),
                instance_id=instance.instance_id,
                stage_id=stage.stage_id,
                step_id=step_id,
                stage_visit=visit,
                role_id=role_id,
                actor_id=actor_id,
                outcome=outcome,
                comment=comment,
                supersedes=previous[-1].decision_id if previous else None,
                decided_at=now
            )
            instance.decisions.append(decision)
            self.history.record(
                instance, HistoryEventType.DECISION_RECORDED,
                actor_id=actor_id, stage_id=stage.stage_id, step_id=step_id,
                details={
                    "decision_id": decision.decision_id,
                    "role_id": role_id,
                    "outcome": outcome.value,
                    "supersedes": decision.supersedes
                },
                now=now
            )
            self._cascade(instance, definition, actor_id, now)
            return None

        return self._mutate(instance_id, apply)

    def get_instance_state(self, instance_id: str) -> InstanceSnapshot:
        """Read-only snapshot with the steps awaiting decisions"""
        instance = self.instance_repo.get_instance_or_raise(instance_id)
        definition = self._definition(instance.flow_chain_id, instance.flow_chain_version)

        active_steps = []
        for step_id in instance.active_step_ids():
            found = definition.find_step(step_id)
            if found is None:
                continue
            stage, step = found
            decisions = instance.decisions_for(step_id, instance.current_visit(stage.stage_id))
            active_steps.append(ActiveStepView(
                step_id=step.step_id,
                stage_id=stage.stage_id,
                name=step.name,
                action=step.action,
                approval_policy=step.approval_policy,
                assigned_role_ids=step.role_ids,
                awaiting_role_ids=self.aggregator.awaiting_roles(step, decisions),
                activated_at=instance.steps[step_id].activated_at
            ))
        return InstanceSnapshot(instance=instance, active_steps=active_steps)

    def cancel_instance(
        self,
        instance_id: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Cancel an instance (terminal)

        Raises:
            InstanceTerminal: If the instance already concluded
        """
        def apply(instance: WorkflowInstance, definition: FlowChainDefinition, now: datetime):
            if instance.is_terminal:
                raise self._terminal_error(instance)

            abandoned = self.scheduler.abandon_active(instance, now, reason="cancelled")
            instance.status = InstanceStatus.CANCELLED
            instance.terminal_outcome = TerminalOutcome.CANCELLED
            instance.blocked_reason = None
            instance.completed_at = now
            self.history.record(
                instance, HistoryEventType.INSTANCE_CANCELLED,
                actor_id=actor_id, stage_id=instance.current_stage_id,
                details={"reason": reason, "abandoned_steps": abandoned},
                now=now
            )
            return None

        return self._mutate(instance_id, apply)

    def override(
        self,
        instance_id: str,
        actor_id: str,
        reason: str,
        target_stage_id: Optional[str] = None,
        outcome: Optional[TerminalOutcome] = None
    ) -> WorkflowInstance:
        """
        Force a BLOCKED (or running) instance to a stage or an outcome

        Entering the target stage counts as a visit, so the rework bound
        still applies.
        """
        if (target_stage_id is None) == (outcome is None):
            raise ValidationError(
                "Override needs exactly one of target_stage_id or outcome",
                details={"target_stage_id": target_stage_id, "outcome": outcome}
            )
        if outcome is not None and outcome not in ROUTABLE_OUTCOMES:
            raise ValidationError(
                f"Outcome {outcome.value} cannot be an override target",
                details={"outcome": outcome.value}
            )

        def apply(instance: WorkflowInstance, definition: FlowChainDefinition, now: datetime):
            if instance.is_terminal:
                raise self._terminal_error(instance)

            target_stage = None
            if target_stage_id is not None:
                target_stage = definition.get_stage(target_stage_id)
                if target_stage is None:
                    raise StageNotFoundError(
                        f"Stage {target_stage_id} is not part of "
                        f"{instance.flow_chain_id} v{instance.flow_chain_version}",
                        details={"instance_id": instance.instance_id, "stage_id": target_stage_id}
                    )

            previous_status = instance.status
            abandoned = self.scheduler.abandon_active(instance, now, reason="override")
            instance.status = InstanceStatus.RUNNING
            instance.blocked_reason = None
            self.history.record(
                instance, HistoryEventType.MANUAL_OVERRIDE,
                actor_id=actor_id, stage_id=instance.current_stage_id,
                details={
                    "reason": reason,
                    "target": f"stage:{target_stage_id}" if target_stage else f"outcome:{outcome.value}",
                    "previous_status": previous_status.value,
                    "abandoned_steps": abandoned
                },
                now=now
            )

            if target_stage is None:
                self._complete(instance, outcome, actor_id, now)
            else:
                self._enter_stage(instance, definition, target_stage, actor_id, now)
                self._cascade(instance, definition, actor_id, now)
            return None

        return self._mutate(instance_id, apply)

    # =========================================================================
    # Write loop
    # =========================================================================

    def _mutate(self, instance_id: str, apply: Mutation) -> WorkflowInstance:
        """
        Run `apply` against a fresh copy and commit with compare-and-set

        `apply` returns an instance to short-circuit without writing, or
        None to commit the mutated copy.
        """
        for attempt in range(self.max_write_retries + 1):
            stored = self.instance_repo.get_instance_or_raise(instance_id)
            definition = self._definition(stored.flow_chain_id, stored.flow_chain_version)

            working = stored.model_copy(deep=True)
            decisions_before = len(working.decisions)
            history_before = len(working.history)

            unchanged = apply(working, definition, utc_now())
            if unchanged is not None:
                return stored

            new_history = working.history[history_before:]
            try:
                committed = self.instance_repo.commit(
                    working,
                    expected_version=stored.version,
                    new_decisions=working.decisions[decisions_before:],
                    new_history=new_history
                )
            except ConcurrencyError:
                logger.warning(
                    f"Concurrent write on instance {instance_id}, retrying (attempt {attempt + 1})",
                    extra={"instance_id": instance_id}
                )
                continue

            self.history.emit(committed, new_history)
            return committed

        raise ConcurrencyError(
            f"Instance {instance_id} kept changing, gave up after {self.max_write_retries + 1} attempts",
            details={"instance_id": instance_id, "attempts": self.max_write_retries + 1}
        )

    # =========================================================================
    # Cascade
    # =========================================================================

    def _cascade(
        self,
        instance: WorkflowInstance,
        definition: FlowChainDefinition,
        actor_id: Optional[str],
        now: datetime
    ) -> None:
        """Advance through every stage that resolves from recorded decisions"""
        try:
            while instance.status == InstanceStatus.RUNNING:
                stage = definition.get_stage(instance.current_stage_id)
                outcome = self.scheduler.advance(instance, definition, stage, now)
                if not outcome.is_resolved:
                    return

                self.history.record(
                    instance, HistoryEventType.STAGE_RESOLVED,
                    stage_id=stage.stage_id,
                    details={
                        "resolution": outcome.resolution.value,
                        "visit": instance.current_visit(stage.stage_id)
                    },
                    now=now
                )

                route = outcome.route
                if route is None:
                    context = build_condition_context(instance, definition, stage, outcome.resolution)
                    route = self.resolver.next_node(
                        stage.stage_id, stage.transitions, outcome.resolution, context, definition.predicates
                    )
                self._follow(instance, definition, stage, route, actor_id, now)
        except StuckInstance as e:
            self._block(instance, e, now)

    def _follow(
        self,
        instance: WorkflowInstance,
        definition: FlowChainDefinition,
        stage: Stage,
        route: Transition,
        actor_id: Optional[str],
        now: datetime
    ) -> None:
        self.history.record(
            instance, HistoryEventType.TRANSITION_TAKEN,
            stage_id=stage.stage_id,
            details={
                "transition_id": route.transition_id,
                "condition": route.condition.value,
                "target": route.target
            },
            now=now
        )
        if route.to_outcome is not None:
            self._complete(instance, route.to_outcome, actor_id, now)
            return

        target = definition.get_stage(route.to_stage_id)
        if target is None:
            raise StuckInstance(
                f"Transition from {stage.stage_id} targets unknown stage {route.to_stage_id}",
                details={"source_id": stage.stage_id, "target": route.target}
            )
        self._enter_stage(instance, definition, target, actor_id, now)

    def _enter_stage(
        self,
        instance: WorkflowInstance,
        definition: FlowChainDefinition,
        stage: Stage,
        actor_id: Optional[str],
        now: datetime
    ) -> None:
        max_visits = definition.max_stage_visits or self.max_stage_visits
        try:
            self.scheduler.enter(instance, definition, stage, max_visits, now, actor_id)
        except MaxRetriesExceeded as e:
            self._fail(instance, e, now)

    # =========================================================================
    # Terminal and halted states
    # =========================================================================

    def _complete(
        self,
        instance: WorkflowInstance,
        outcome: TerminalOutcome,
        actor_id: Optional[str],
        now: datetime
    ) -> None:
        instance.status = InstanceStatus.COMPLETED
        instance.terminal_outcome = outcome
        instance.completed_at = now
        self.history.record(
            instance, HistoryEventType.INSTANCE_COMPLETED,
            actor_id=actor_id, stage_id=instance.current_stage_id,
            details={"outcome": outcome.value},
            now=now
        )

    def _block(self, instance: WorkflowInstance, error: DomainError, now: datetime) -> None:
        instance.status = InstanceStatus.BLOCKED
        instance.blocked_reason = {
            "error_code": error.error_code,
            "message": error.message,
            **error.details
        }
        self.history.record(
            instance, HistoryEventType.INSTANCE_BLOCKED,
            stage_id=instance.current_stage_id,
            details=instance.blocked_reason,
            now=now
        )

    def _fail(self, instance: WorkflowInstance, error: MaxRetriesExceeded, now: datetime) -> None:
        self.scheduler.abandon_active(instance, now, reason="max_retries_exceeded")
        instance.status = InstanceStatus.FAILED
        instance.terminal_outcome = TerminalOutcome.MAX_RETRIES_EXCEEDED
        instance.completed_at = now
        self.history.record(
            instance, HistoryEventType.MAX_RETRIES_EXCEEDED,
            stage_id=error.details.get("stage_id"),
            details={"error_code": error.error_code, "message": error.message, **error.details},
            now=now
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _ensure_open(self, instance: WorkflowInstance) -> None:
        if instance.is_terminal:
            raise self._terminal_error(instance)
        if instance.status == InstanceStatus.BLOCKED:
            raise InstanceBlocked(
                f"Instance {instance.instance_id} is blocked awaiting an override",
                details={"instance_id": instance.instance_id, "blocked_reason": instance.blocked_reason}
            )

    def _terminal_error(self, instance: WorkflowInstance) -> InstanceTerminal:
        return InstanceTerminal(
            f"Instance {instance.instance_id} has already concluded",
            details={
                "instance_id": instance.instance_id,
                "status": instance.status.value,
                "terminal_outcome": instance.terminal_outcome.value if instance.terminal_outcome else None
            }
        )

    def _definition(self, flow_chain_id: str, version_number: int) -> FlowChainDefinition:
        key = (flow_chain_id, version_number)
        if key not in self._definitions:
            version = self.definition_repo.get_version_or_raise(flow_chain_id, version_number)
            self._definitions[key] = version.definition
        return self._definitions[key]
