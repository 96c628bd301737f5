"""Domain Enumerations - All status and type definitions"""
from enum import Enum


# ============================================================================
# Definition
# ============================================================================

class ExecutionMode(str, Enum):
    """How the steps of a stage are activated"""
    SEQUENTIAL = "SEQUENTIAL"    # One at a time in order_in_stage
    PARALLEL = "PARALLEL"        # All at once, stage needs every step approved
    CONDITIONAL = "CONDITIONAL"  # Only steps whose activation predicate holds


class ApprovalPolicy(str, Enum):
    """How role decisions on a step aggregate into a resolution"""
    ALL_MUST_APPROVE = "ALL_MUST_APPROVE"
    ANY_CAN_APPROVE = "ANY_CAN_APPROVE"
    MAJORITY_MUST_APPROVE = "MAJORITY_MUST_APPROVE"


class StepAction(str, Enum):
    """What a step asks of its roles (opaque to the engine)"""
    UPLOAD = "UPLOAD"
    REVIEW = "REVIEW"
    EDIT = "EDIT"
    PROCESS = "PROCESS"
    ENHANCE = "ENHANCE"
    CUT = "CUT"
    COLOR_GRADE = "COLOR_GRADE"
    ADD_AUDIO = "ADD_AUDIO"
    ADD_TEXT = "ADD_TEXT"
    PUBLISH = "PUBLISH"
    ARCHIVE = "ARCHIVE"


class AssetType(str, Enum):
    """Content asset kinds (opaque comparison keys)"""
    VIDEO = "VIDEO"
    IMAGE = "IMAGE"
    DOCUMENT = "DOCUMENT"


class TransitionCondition(str, Enum):
    """When a transition fires"""
    SUCCESS = "SUCCESS"      # Alias of APPROVED
    APPROVED = "APPROVED"
    FAILURE = "FAILURE"      # Alias of REJECTED
    REJECTED = "REJECTED"
    CUSTOM = "CUSTOM"        # Named predicate evaluated against the condition context
    DEFAULT = "DEFAULT"      # Always matches


class TerminalOutcome(str, Enum):
    """How an instance concluded"""
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"                      # Set by cancel, never a transition target
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"  # Set by the rework bound, never a transition target


ROUTABLE_OUTCOMES = frozenset({
    TerminalOutcome.PUBLISHED,
    TerminalOutcome.ARCHIVED,
    TerminalOutcome.REJECTED,
})


class ConditionOperator(str, Enum):
    """Operators for condition evaluation"""
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_THAN_OR_EQUALS = "GREATER_THAN_OR_EQUALS"
    LESS_THAN_OR_EQUALS = "LESS_THAN_OR_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    IN = "IN"
    NOT_IN = "NOT_IN"
    IS_EMPTY = "IS_EMPTY"
    IS_NOT_EMPTY = "IS_NOT_EMPTY"


# ============================================================================
# Runtime
# ============================================================================

class Resolution(str, Enum):
    """Resolution of a step or a stage"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DecisionOutcome(str, Enum):
    """What an actor decided on behalf of a role"""
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_REVISION = "REQUEST_REVISION"  # Counts as a non-approval vote


class StepStatus(str, Enum):
    """Runtime status per step"""
    NOT_STARTED = "NOT_STARTED"
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"
    SKIPPED = "SKIPPED"                      # Never activated in this visit
    PENDING_ABANDONED = "PENDING_ABANDONED"  # Was active when its stage short-circuited


class InstanceStatus(str, Enum):
    """Global instance status"""
    RUNNING = "RUNNING"
    BLOCKED = "BLOCKED"      # No transition matched, awaiting a definition fix or override
    COMPLETED = "COMPLETED"  # Reached PUBLISHED / ARCHIVED / REJECTED
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"        # Rework loop bound hit


TERMINAL_STATUSES = frozenset({
    InstanceStatus.COMPLETED,
    InstanceStatus.CANCELLED,
    InstanceStatus.FAILED,
})


class HistoryEventType(str, Enum):
    """Types of instance history entries"""
    INSTANCE_CREATED = "INSTANCE_CREATED"
    STAGE_ENTERED = "STAGE_ENTERED"
    STAGE_RESOLVED = "STAGE_RESOLVED"
    STEP_ACTIVATED = "STEP_ACTIVATED"
    STEP_RESOLVED = "STEP_RESOLVED"
    STEP_SKIPPED = "STEP_SKIPPED"
    STEP_ABANDONED = "STEP_ABANDONED"
    DECISION_RECORDED = "DECISION_RECORDED"
    TRANSITION_TAKEN = "TRANSITION_TAKEN"
    INSTANCE_BLOCKED = "INSTANCE_BLOCKED"
    INSTANCE_COMPLETED = "INSTANCE_COMPLETED"
    INSTANCE_CANCELLED = "INSTANCE_CANCELLED"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
