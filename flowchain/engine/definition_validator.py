"""Definition Validator - Publish-time checks on a FlowChain definition"""
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import FlowChainDefinition, Stage, Step, Transition
from ..domain.enums import (
    ApprovalPolicy, ExecutionMode, Resolution, TransitionCondition, ROUTABLE_OUTCOMES
)
from ..domain.errors import DefinitionValidationError
from .transition_resolver import TransitionResolver
from ..utils.logger import get_logger

logger = get_logger(__name__)


_BOTH = {Resolution.APPROVED, Resolution.REJECTED}


class DefinitionValidator:
    """
    Validate a normalized definition graph before it can be published

    Returns validation result dicts shaped
    {"is_valid": bool, "errors": [...], "warnings": [...]} where every
    issue is {"type", "message", "path"}.
    """

    def __init__(self):
        self.resolver = TransitionResolver()

    def validate_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate a raw payload, reporting schema errors in the same shape"""
        try:
            definition = FlowChainDefinition.model_validate(payload)
        except PydanticValidationError as e:
            errors = [
                {
                    "type": "SCHEMA_ERROR",
                    "message": err["msg"],
                    "path": ".".join(str(p) for p in err["loc"]) or None
                }
                for err in e.errors()
            ]
            return {"is_valid": False, "errors": errors, "warnings": []}
        return self.validate(definition)

    def validate_or_raise(self, definition: FlowChainDefinition) -> Dict[str, Any]:
        result = self.validate(definition)
        if not result["is_valid"]:
            raise DefinitionValidationError(
                f"FlowChain definition '{definition.name}' is invalid",
                details={"errors": result["errors"], "warnings": result["warnings"]}
            )
        return result

    def validate(self, definition: FlowChainDefinition) -> Dict[str, Any]:
        errors: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = []

        if not definition.stages:
            errors.append(_issue("EMPTY_STAGES", "FlowChain must have at least one stage", "stages"))
            return {"is_valid": False, "errors": errors, "warnings": warnings}

        stage_ids: Set[str] = set()
        for i, stage in enumerate(definition.stages):
            if stage.stage_id in stage_ids:
                errors.append(_issue(
                    "DUPLICATE_STAGE_ID", f"Duplicate stage_id: {stage.stage_id}", f"stages[{i}].stage_id"
                ))
            stage_ids.add(stage.stage_id)

        self._check_stage_orders(definition, errors)

        step_ids: Set[str] = set()
        for i, stage in enumerate(definition.stages):
            for j, step in enumerate(stage.steps):
                if step.step_id in step_ids or step.step_id in stage_ids:
                    errors.append(_issue(
                        "DUPLICATE_STEP_ID", f"Duplicate step_id: {step.step_id}",
                        f"stages[{i}].steps[{j}].step_id"
                    ))
                step_ids.add(step.step_id)

        used_predicates: Set[str] = set()
        for i, stage in enumerate(definition.stages):
            path = f"stages[{i}]"
            self._check_stage(definition, stage, path, stage_ids, used_predicates, errors, warnings)

        for key in definition.predicates:
            if key not in used_predicates:
                warnings.append(_issue(
                    "UNUSED_PREDICATE", f"Predicate '{key}' is never referenced", f"predicates.{key}"
                ))

        if not errors:
            errors.extend(self._find_automatic_cycles(definition))
            for stage_id in self._find_unreachable_stages(definition):
                warnings.append(_issue(
                    "UNREACHABLE_STAGE", f"Stage {stage_id} is not reachable from the first stage", None
                ))

        return {
            "is_valid": len(errors) == 0,
            "errors": errors,
            "warnings": warnings
        }

    # =========================================================================
    # Stages and steps
    # =========================================================================

    def _check_stage_orders(self, definition: FlowChainDefinition, errors: List[Dict[str, Any]]) -> None:
        orders = [s.order for s in definition.stages]
        if len(set(orders)) != len(orders):
            errors.append(_issue("DUPLICATE_STAGE_ORDER", "Stage order values must be unique", "stages"))
        elif sorted(orders) != list(range(1, len(orders) + 1)):
            errors.append(_issue(
                "NON_CONTIGUOUS_STAGE_ORDER",
                f"Stage orders must run 1..{len(orders)}, got {sorted(orders)}",
                "stages"
            ))

    def _check_stage(
        self,
        definition: FlowChainDefinition,
        stage: Stage,
        path: str,
        stage_ids: Set[str],
        used_predicates: Set[str],
        errors: List[Dict[str, Any]],
        warnings: List[Dict[str, Any]]
    ) -> None:
        if not stage.steps:
            errors.append(_issue("EMPTY_STAGE", f"Stage {stage.stage_id} has no steps", f"{path}.steps"))

        sequential = stage.execution_mode == ExecutionMode.SEQUENTIAL
        if sequential:
            orders = [s.order_in_stage for s in stage.steps]
            if len(set(orders)) != len(orders):
                errors.append(_issue(
                    "DUPLICATE_STEP_ORDER",
                    f"Steps of SEQUENTIAL stage {stage.stage_id} need unique order_in_stage",
                    f"{path}.steps"
                ))

        for j, step in enumerate(stage.steps):
            step_path = f"{path}.steps[{j}]"
            self._check_step(definition, stage, step, step_path, stage_ids, used_predicates, errors, warnings)

        for k, transition in enumerate(stage.transitions):
            t_path = f"{path}.transitions[{k}]"
            if transition.to_step_id is not None:
                errors.append(_issue(
                    "STAGE_TRANSITION_TO_STEP",
                    f"Stage {stage.stage_id} transitions may only target a stage or an outcome",
                    t_path
                ))
            self._check_target(definition, transition, t_path, stage_ids, used_predicates, errors)

        # Stage routing is unused only when every sequential step routes itself
        self_routed = sequential and stage.steps and all(s.transitions for s in stage.steps)
        if not self_routed:
            missing = _BOTH - self.resolver.covered_resolutions(stage.transitions)
            if missing:
                errors.append(_issue(
                    "UNCOVERED_RESOLUTION",
                    f"Stage {stage.stage_id} has no transition for "
                    f"{', '.join(sorted(r.value for r in missing))} and no DEFAULT",
                    f"{path}.transitions"
                ))

    def _check_step(
        self,
        definition: FlowChainDefinition,
        stage: Stage,
        step: Step,
        path: str,
        stage_ids: Set[str],
        used_predicates: Set[str],
        errors: List[Dict[str, Any]],
        warnings: List[Dict[str, Any]]
    ) -> None:
        role_ids = step.role_ids
        if len(set(role_ids)) != len(role_ids):
            errors.append(_issue(
                "DUPLICATE_ROLE", f"Step {step.step_id} assigns a role more than once", f"{path}.assigned_roles"
            ))

        if step.approval_policy == ApprovalPolicy.ALL_MUST_APPROVE and not step.required_role_ids:
            warnings.append(_issue(
                "NO_REQUIRED_ROLES",
                f"Step {step.step_id} marks no role required, every role will be required",
                f"{path}.assigned_roles"
            ))

        if step.activation_predicate:
            used_predicates.add(step.activation_predicate)
            if step.activation_predicate not in definition.predicates:
                errors.append(_issue(
                    "UNKNOWN_PREDICATE",
                    f"Step {step.step_id} references unknown predicate '{step.activation_predicate}'",
                    f"{path}.activation_predicate"
                ))

        if stage.execution_mode != ExecutionMode.CONDITIONAL and (
            step.activation_predicate or step.asset_type is not None
        ):
            warnings.append(_issue(
                "SELECTION_IGNORED",
                f"Step {step.step_id} selection filters only apply in CONDITIONAL stages",
                path
            ))

        if not step.transitions:
            return

        if stage.execution_mode != ExecutionMode.SEQUENTIAL:
            errors.append(_issue(
                "STEP_TRANSITION_NOT_SEQUENTIAL",
                f"Step {step.step_id} has transitions but stage {stage.stage_id} is {stage.execution_mode.value}",
                f"{path}.transitions"
            ))

        for k, transition in enumerate(step.transitions):
            t_path = f"{path}.transitions[{k}]"
            if transition.to_step_id is not None:
                target = stage.get_step(transition.to_step_id)
                if target is None:
                    errors.append(_issue(
                        "INVALID_STEP_TARGET",
                        f"Step {step.step_id} targets {transition.to_step_id}, which is not in stage {stage.stage_id}",
                        t_path
                    ))
                elif target.order_in_stage <= step.order_in_stage:
                    errors.append(_issue(
                        "BACKWARD_STEP_TARGET",
                        f"Step {step.step_id} may only jump forward, {transition.to_step_id} is not after it",
                        t_path
                    ))
            self._check_target(definition, transition, t_path, stage_ids, used_predicates, errors)

        missing = _BOTH - self.resolver.covered_resolutions(step.transitions)
        if missing:
            errors.append(_issue(
                "UNCOVERED_RESOLUTION",
                f"Step {step.step_id} has no transition for "
                f"{', '.join(sorted(r.value for r in missing))} and no DEFAULT",
                f"{path}.transitions"
            ))

    def _check_target(
        self,
        definition: FlowChainDefinition,
        transition: Transition,
        path: str,
        stage_ids: Set[str],
        used_predicates: Set[str],
        errors: List[Dict[str, Any]]
    ) -> None:
        if transition.to_stage_id is not None and transition.to_stage_id not in stage_ids:
            errors.append(_issue(
                "DANGLING_TARGET", f"Transition targets unknown stage {transition.to_stage_id}", path
            ))
        if transition.to_outcome is not None and transition.to_outcome not in ROUTABLE_OUTCOMES:
            errors.append(_issue(
                "INVALID_OUTCOME",
                f"Outcome {transition.to_outcome.value} cannot be a transition target",
                path
            ))
        if transition.condition == TransitionCondition.CUSTOM:
            used_predicates.add(transition.predicate_key)
            if transition.predicate_key not in definition.predicates:
                errors.append(_issue(
                    "UNKNOWN_PREDICATE",
                    f"Transition references unknown predicate '{transition.predicate_key}'",
                    path
                ))

    # =========================================================================
    # Graph checks
    # =========================================================================

    def _stage_edges(self, definition: FlowChainDefinition) -> Dict[str, Set[str]]:
        """Stage -> stages reachable through one stage or step transition"""
        edges: Dict[str, Set[str]] = {s.stage_id: set() for s in definition.stages}
        for stage in definition.stages:
            transitions = list(stage.transitions)
            for step in stage.steps:
                transitions.extend(step.transitions)
            for t in transitions:
                if t.to_stage_id is not None:
                    edges[stage.stage_id].add(t.to_stage_id)
        return edges

    def _is_gated(self, stage: Stage) -> bool:
        """Whether resolving the stage always waits for a human decision"""
        if not stage.steps:
            return False
        if stage.execution_mode != ExecutionMode.CONDITIONAL:
            return True
        # A step with no selection filter is always activated
        return any(s.asset_type is None and not s.activation_predicate for s in stage.steps)

    def _find_automatic_cycles(self, definition: FlowChainDefinition) -> List[Dict[str, Any]]:
        """Cycles made only of stages that can resolve without a decision"""
        ungated = {s.stage_id for s in definition.stages if not self._is_gated(s)}
        edges = {
            stage_id: {t for t in targets if t in ungated}
            for stage_id, targets in self._stage_edges(definition).items()
            if stage_id in ungated
        }

        errors = []
        reported: Set[str] = set()
        for start in sorted(ungated):
            cycle = _find_cycle_from(start, edges)
            if cycle and not reported.intersection(cycle):
                reported.update(cycle)
                errors.append(_issue(
                    "AUTOMATIC_CYCLE",
                    f"Stages {' -> '.join(cycle + [cycle[0]])} can loop without a human decision",
                    "stages"
                ))
        return errors

    def _find_unreachable_stages(self, definition: FlowChainDefinition) -> List[str]:
        first = definition.first_stage()
        if first is None:
            return []
        edges = self._stage_edges(definition)
        reachable = {first.stage_id}
        queue = [first.stage_id]
        while queue:
            current = queue.pop(0)
            for target in edges.get(current, ()):
                if target not in reachable:
                    reachable.add(target)
                    queue.append(target)
        return [s.stage_id for s in definition.ordered_stages() if s.stage_id not in reachable]


def _find_cycle_from(start: str, edges: Dict[str, Set[str]]) -> Optional[List[str]]:
    """Depth-first search for a path from start back to start"""
    stack = [(start, [start])]
    seen: Set[str] = set()
    while stack:
        node, path = stack.pop()
        for target in sorted(edges.get(node, ())):
            if target == start:
                return path
            if target not in seen:
                seen.add(target)
                stack.append((target, path + [target]))
    return None


def _issue(issue_type: str, message: str, path: Optional[str]) -> Dict[str, Any]:
    return {"type": issue_type, "message": message, "path": path}
