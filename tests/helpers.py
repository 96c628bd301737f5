"""Builders for definitions, assets and decisions shared by the tests"""
from typing import Any, Dict, List, Optional

from flowchain.domain.models import AssetRef, Decision, FlowChainDefinition, Step
from flowchain.domain.enums import DecisionOutcome
from flowchain.utils.idgen import generate_decision_id
from flowchain.utils.time import utc_now


def actor(role_id: str) -> str:
    """Actor id that holds exactly `role_id` in the test role service"""
    return f"u-{role_id}"


def on(
    condition: str,
    stage: Optional[str] = None,
    outcome: Optional[str] = None,
    step: Optional[str] = None,
    predicate: Optional[str] = None
) -> Dict[str, Any]:
    transition: Dict[str, Any] = {"condition": condition}
    if stage is not None:
        transition["to_stage_id"] = stage
    if outcome is not None:
        transition["to_outcome"] = outcome
    if step is not None:
        transition["to_step_id"] = step
    if predicate is not None:
        transition["predicate_key"] = predicate
    return transition


def step(
    step_id: str,
    roles: List[Any],
    policy: str = "ALL_MUST_APPROVE",
    order: int = 1,
    action: str = "REVIEW",
    transitions: Optional[List[Dict[str, Any]]] = None,
    **extra: Any
) -> Dict[str, Any]:
    return {
        "step_id": step_id,
        "name": step_id.replace("_", " ").title(),
        "action": action,
        "approval_policy": policy,
        "assigned_roles": [r if isinstance(r, dict) else {"role_id": r} for r in roles],
        "order_in_stage": order,
        "transitions": transitions or [],
        **extra,
    }


def stage(
    stage_id: str,
    order: int,
    steps: List[Dict[str, Any]],
    mode: str = "SEQUENTIAL",
    transitions: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    return {
        "stage_id": stage_id,
        "name": stage_id.replace("_", " ").title(),
        "order": order,
        "execution_mode": mode,
        "steps": steps,
        "transitions": transitions or [],
    }


def definition(*stages: Dict[str, Any], predicates: Optional[Dict[str, Any]] = None, **extra: Any) -> FlowChainDefinition:
    return FlowChainDefinition.model_validate(payload(*stages, predicates=predicates, **extra))


def payload(*stages: Dict[str, Any], predicates: Optional[Dict[str, Any]] = None, **extra: Any) -> Dict[str, Any]:
    return {
        "name": extra.pop("name", "Launch Video Review"),
        "stages": list(stages),
        "predicates": predicates or {},
        **extra,
    }


def review_flow(**extra: Any) -> FlowChainDefinition:
    """
    Editor review, then legal and brand in parallel

    review --APPROVED--> legal --APPROVED--> PUBLISHED
    review --REJECTED--> REJECTED
    legal  --REJECTED--> review (rework)
    """
    return definition(
        stage(
            "review", 1,
            [step("edit_review", ["editor"])],
            transitions=[on("APPROVED", stage="legal"), on("REJECTED", outcome="REJECTED")],
        ),
        stage(
            "legal", 2,
            [step("legal_check", ["legal"], order=1), step("brand_check", ["brand"], order=2)],
            mode="PARALLEL",
            transitions=[on("APPROVED", outcome="PUBLISHED"), on("REJECTED", stage="review")],
        ),
        **extra
    )


def asset(
    asset_id: str = "asset-1",
    asset_type: str = "VIDEO",
    campaign_id: Optional[str] = None,
    **metadata: Any
) -> AssetRef:
    return AssetRef(asset_id=asset_id, asset_type=asset_type, campaign_id=campaign_id, metadata=metadata)


def vote(step_def: Step, role_id: str, outcome: str, stage_visit: int = 1) -> Decision:
    """Decision as the runtime would record it"""
    return Decision(
        decision_id=generate_decision_id(),
        instance_id="WFI-test",
        stage_id="stage",
        step_id=step_def.step_id,
        stage_visit=stage_visit,
        role_id=role_id,
        actor_id=actor(role_id),
        outcome=DecisionOutcome(outcome),
        decided_at=utc_now(),
    )


def decide(runtime, instance_id: str, step_id: str, role_id: str, outcome: str = "APPROVE", comment: Optional[str] = None):
    """Submit a decision as the actor holding `role_id`"""
    return runtime.submit_decision(
        instance_id, step_id, role_id, actor(role_id), DecisionOutcome(outcome), comment
    )
