"""Workflow Engine - Aggregation, routing and stage scheduling"""
from .runtime import WorkflowRuntime
from .approval_aggregator import ApprovalAggregator
from .transition_resolver import TransitionResolver
from .stage_scheduler import StageScheduler, StageOutcome, build_condition_context
from .condition_evaluator import ConditionEvaluator
from .definition_validator import DefinitionValidator
from .permission_guard import PermissionGuard
from .history_writer import HistoryWriter

__all__ = [
    "WorkflowRuntime",
    "ApprovalAggregator",
    "TransitionResolver",
    "StageScheduler",
    "StageOutcome",
    "build_condition_context",
    "ConditionEvaluator",
    "DefinitionValidator",
    "PermissionGuard",
    "HistoryWriter",
]
