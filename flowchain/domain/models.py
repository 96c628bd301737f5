"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict, model_validator

from .enums import (
    ExecutionMode, ApprovalPolicy, StepAction, AssetType, TransitionCondition,
    TerminalOutcome, ConditionOperator, Resolution, DecisionOutcome, StepStatus,
    InstanceStatus, HistoryEventType, TERMINAL_STATUSES
)


# ============================================================================
# Actor
# ============================================================================

class ActorContext(BaseModel):
    """Current actor context from the bearer token"""
    model_config = ConfigDict(extra="forbid")

    actor_id: str = Field(..., description="Opaque actor identity")
    display_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list, description="Role ids carried in the token")


# ============================================================================
# Condition
# ============================================================================

class Condition(BaseModel):
    """Single comparison against the condition context"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str = Field(..., description="Dot path into the condition context")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Value to compare against")


class ConditionGroup(BaseModel):
    """Group of conditions with AND/OR logic"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    logic: str = Field("AND", description="AND or OR")
    conditions: List[Condition] = Field(default_factory=list)


# ============================================================================
# FlowChain Definition (immutable once published)
# ============================================================================

class RoleAssignment(BaseModel):
    """Role that acts on a step"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    role_id: str
    required: bool = True


class Transition(BaseModel):
    """Conditional edge from a step or stage to the next node"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    transition_id: Optional[str] = None
    condition: TransitionCondition = TransitionCondition.DEFAULT
    predicate_key: Optional[str] = Field(None, description="Named predicate for CUSTOM transitions")
    to_step_id: Optional[str] = None
    to_stage_id: Optional[str] = None
    to_outcome: Optional[TerminalOutcome] = None

    @model_validator(mode="after")
    def _check_target(self) -> "Transition":
        targets = [t for t in (self.to_step_id, self.to_stage_id, self.to_outcome) if t is not None]
        if len(targets) != 1:
            raise ValueError("transition must have exactly one of to_step_id, to_stage_id, to_outcome")
        if self.condition == TransitionCondition.CUSTOM and not self.predicate_key:
            raise ValueError("CUSTOM transition requires predicate_key")
        return self

    @property
    def target(self) -> str:
        """Human readable target for logs and history"""
        if self.to_outcome is not None:
            return f"outcome:{self.to_outcome.value}"
        if self.to_stage_id is not None:
            return f"stage:{self.to_stage_id}"
        return f"step:{self.to_step_id}"


class Step(BaseModel):
    """Unit of work requiring role approvals under a policy"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    step_id: str
    name: str
    action: StepAction
    asset_type: Optional[AssetType] = Field(None, description="Only activate for this asset type (CONDITIONAL)")
    approval_policy: ApprovalPolicy = ApprovalPolicy.ALL_MUST_APPROVE
    assigned_roles: List[RoleAssignment] = Field(..., min_length=1)
    transitions: List[Transition] = Field(default_factory=list)
    order_in_stage: int = 0
    activation_predicate: Optional[str] = Field(None, description="Named predicate gating activation (CONDITIONAL)")
    description: Optional[str] = None

    @property
    def role_ids(self) -> List[str]:
        return [r.role_id for r in self.assigned_roles]

    @property
    def required_role_ids(self) -> List[str]:
        return [r.role_id for r in self.assigned_roles if r.required]

    def has_role(self, role_id: str) -> bool:
        return role_id in self.role_ids


class Stage(BaseModel):
    """Phase of a workflow containing steps and an execution mode"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    stage_id: str
    name: str
    order: int
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    steps: List[Step] = Field(default_factory=list)
    transitions: List[Transition] = Field(default_factory=list)

    def ordered_steps(self) -> List[Step]:
        """Steps sorted by order_in_stage"""
        return sorted(self.steps, key=lambda s: s.order_in_stage)

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.step_id == step_id), None)


class FlowChainDefinition(BaseModel):
    """Normalized definition graph submitted for publishing"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    description: Optional[str] = None
    stages: List[Stage] = Field(default_factory=list)
    predicates: Dict[str, ConditionGroup] = Field(default_factory=dict)
    max_stage_visits: Optional[int] = Field(None, ge=1, description="Overrides the configured rework bound")

    def ordered_stages(self) -> List[Stage]:
        return sorted(self.stages, key=lambda s: s.order)

    def first_stage(self) -> Optional[Stage]:
        stages = self.ordered_stages()
        return stages[0] if stages else None

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        return next((s for s in self.stages if s.stage_id == stage_id), None)

    def find_step(self, step_id: str) -> Optional[Tuple[Stage, Step]]:
        """Find a step and its parent stage"""
        for stage in self.stages:
            step = stage.get_step(step_id)
            if step is not None:
                return stage, step
        return None


class FlowChainVersion(BaseModel):
    """Published, immutable FlowChain version"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    flow_chain_id: str
    version_number: int
    definition: FlowChainDefinition
    published_by: Optional[str] = None
    published_at: datetime


# ============================================================================
# Bindings
# ============================================================================

class AssetRef(BaseModel):
    """Opaque asset reference supplied by the asset service"""
    model_config = ConfigDict(extra="forbid")

    asset_id: str
    asset_type: AssetType
    campaign_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CampaignFlow(BaseModel):
    """FlowChain version attached to a campaign"""
    model_config = ConfigDict(extra="ignore")

    campaign_id: str
    flow_chain_id: str
    version_number: int
    is_default: bool = False
    created_at: datetime


class AssetBinding(BaseModel):
    """Record of which FlowChain version an asset runs under"""
    model_config = ConfigDict(extra="ignore")

    asset_id: str
    asset_type: AssetType
    campaign_id: Optional[str] = None
    flow_chain_id: str
    version_number: int
    explicit: bool = Field(True, description="False when taken from the campaign default")
    instance_id: Optional[str] = None
    bound_by: Optional[str] = None
    bound_at: datetime


# ============================================================================
# Runtime
# ============================================================================

class Decision(BaseModel):
    """Decision recorded for a role on a step (append-only)"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    decision_id: str
    instance_id: str
    stage_id: str
    step_id: str
    stage_visit: int
    role_id: str
    actor_id: str
    outcome: DecisionOutcome
    comment: Optional[str] = None
    supersedes: Optional[str] = Field(None, description="Earlier decision of the same role this one replaces")
    decided_at: datetime


class StepRuntime(BaseModel):
    """Runtime state of one step within the current visit of its stage"""
    model_config = ConfigDict(extra="forbid")

    step_id: str
    stage_id: str
    status: StepStatus = StepStatus.NOT_STARTED
    resolution: Resolution = Resolution.PENDING
    activated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class HistoryEntry(BaseModel):
    """Instance history entry (append-only)"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    history_id: str
    instance_id: str
    event_type: HistoryEventType
    stage_id: Optional[str] = None
    step_id: Optional[str] = None
    actor_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    correlation_id: Optional[str] = None


class WorkflowInstance(BaseModel):
    """Runtime execution of a FlowChain version against one asset"""
    model_config = ConfigDict(extra="ignore")

    instance_id: str
    flow_chain_id: str
    flow_chain_version: int
    asset: AssetRef
    status: InstanceStatus = InstanceStatus.RUNNING
    current_stage_id: Optional[str] = None
    stage_entered_at: Optional[datetime] = None
    stage_visits: Dict[str, int] = Field(default_factory=dict)
    steps: Dict[str, StepRuntime] = Field(default_factory=dict)
    decisions: List[Decision] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    terminal_outcome: Optional[TerminalOutcome] = None
    blocked_reason: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    version: int = Field(default=1, description="Optimistic concurrency counter")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active_key(self) -> str:
        """Key enforcing one non-terminal instance per asset and flow chain"""
        return f"{self.asset.asset_id}:{self.flow_chain_id}"

    def current_visit(self, stage_id: str) -> int:
        return self.stage_visits.get(stage_id, 0)

    def decisions_for(self, step_id: str, stage_visit: int) -> List[Decision]:
        """Decisions on a step within one visit of its stage, in submission order"""
        return [
            d for d in self.decisions
            if d.step_id == step_id and d.stage_visit == stage_visit
        ]

    def active_step_ids(self) -> List[str]:
        return [s.step_id for s in self.steps.values() if s.status == StepStatus.ACTIVE]


class ActiveStepView(BaseModel):
    """Step awaiting decisions, as shown in a state snapshot"""
    step_id: str
    stage_id: str
    name: str
    action: StepAction
    approval_policy: ApprovalPolicy
    assigned_role_ids: List[str]
    awaiting_role_ids: List[str]
    activated_at: Optional[datetime] = None


class InstanceSnapshot(BaseModel):
    """Read-only view returned by get_instance_state"""
    instance: WorkflowInstance
    active_steps: List[ActiveStepView] = Field(default_factory=list)
