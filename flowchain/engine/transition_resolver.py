"""Transition Resolver - Pick the next node for a resolution"""
from typing import Any, Dict, List, Mapping, Optional

from ..domain.models import ConditionGroup, Transition
from ..domain.enums import Resolution, TransitionCondition
from ..domain.errors import StuckInstance
from .condition_evaluator import ConditionEvaluator
from ..utils.logger import get_logger

logger = get_logger(__name__)


_APPROVED_CONDITIONS = frozenset({TransitionCondition.SUCCESS, TransitionCondition.APPROVED})
_REJECTED_CONDITIONS = frozenset({TransitionCondition.FAILURE, TransitionCondition.REJECTED})


class TransitionResolver:
    """
    Resolve the outgoing transition of a step or stage

    Given the source's transitions and a resolution:
    1. Walk the transitions in declaration order
    2. SUCCESS/APPROVED and FAILURE/REJECTED match on the resolution,
       CUSTOM evaluates its named predicate, DEFAULT always matches
    3. The first match wins; there is never more than one target
    4. If none matches -> raise StuckInstance
    """

    def __init__(self, condition_evaluator: Optional[ConditionEvaluator] = None):
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()

    def next_node(
        self,
        source_id: str,
        transitions: List[Transition],
        resolution: Resolution,
        context: Dict[str, Any],
        predicates: Mapping[str, ConditionGroup]
    ) -> Transition:
        """
        Select the winning transition

        Args:
            source_id: Step or stage id, for error details and logs
            transitions: Outgoing transitions in declaration order
            resolution: APPROVED or REJECTED
            context: Condition context for CUSTOM predicates
            predicates: Named predicates of the pinned definition

        Raises:
            StuckInstance: If no transition matches
        """
        for transition in transitions:
            if self.matches(transition, resolution, context, predicates):
                logger.info(
                    f"Resolved transition: {source_id} -> {transition.target}",
                    extra={"outcome": resolution.value}
                )
                return transition

        raise StuckInstance(
            f"No transition from {source_id} matched resolution {resolution.value}",
            details={
                "source_id": source_id,
                "resolution": resolution.value,
                "candidates_count": len(transitions)
            }
        )

    def matches(
        self,
        transition: Transition,
        resolution: Resolution,
        context: Dict[str, Any],
        predicates: Mapping[str, ConditionGroup]
    ) -> bool:
        condition = transition.condition
        if condition == TransitionCondition.DEFAULT:
            return True
        if condition in _APPROVED_CONDITIONS:
            return resolution == Resolution.APPROVED
        if condition in _REJECTED_CONDITIONS:
            return resolution == Resolution.REJECTED
        return self.condition_evaluator.evaluate_predicate(
            predicates, transition.predicate_key, context
        )

    def covered_resolutions(self, transitions: List[Transition]) -> set:
        """Resolutions guaranteed to find a match without evaluating predicates"""
        covered = set()
        for transition in transitions:
            if transition.condition == TransitionCondition.DEFAULT:
                return {Resolution.APPROVED, Resolution.REJECTED}
            if transition.condition in _APPROVED_CONDITIONS:
                covered.add(Resolution.APPROVED)
            elif transition.condition in _REJECTED_CONDITIONS:
                covered.add(Resolution.REJECTED)
        return covered
