"""Approval Aggregator - Resolve a step from its recorded decisions"""
from typing import Dict, Iterable, List

from ..domain.models import Step, Decision
from ..domain.enums import ApprovalPolicy, DecisionOutcome, Resolution
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ApprovalAggregator:
    """
    Resolve a step's approval policy over the decisions of one stage visit

    Only the latest decision of each assigned role counts; decisions from
    roles not assigned to the step are ignored. REQUEST_REVISION is a
    non-approval vote under every policy.

    Resolution is a pure function of (step, decisions), so resolving
    twice with the same decisions gives the same answer.
    """

    def resolve(self, step: Step, decisions: Iterable[Decision]) -> Resolution:
        votes = self.latest_votes(step, decisions)
        if not votes:
            return Resolution.PENDING

        if step.approval_policy == ApprovalPolicy.ANY_CAN_APPROVE:
            return self._resolve_any(step, votes)
        if step.approval_policy == ApprovalPolicy.MAJORITY_MUST_APPROVE:
            return self._resolve_majority(step, votes)
        return self._resolve_all(step, votes)

    def latest_votes(self, step: Step, decisions: Iterable[Decision]) -> Dict[str, DecisionOutcome]:
        """Latest outcome per assigned role, in submission order"""
        votes: Dict[str, DecisionOutcome] = {}
        for decision in decisions:
            if step.has_role(decision.role_id):
                votes[decision.role_id] = decision.outcome
        return votes

    def awaiting_roles(self, step: Step, decisions: Iterable[Decision]) -> List[str]:
        """Assigned roles that have not voted yet"""
        votes = self.latest_votes(step, decisions)
        return [role_id for role_id in step.role_ids if role_id not in votes]

    def _resolve_all(self, step: Step, votes: Dict[str, DecisionOutcome]) -> Resolution:
        # With no role marked required every role is treated as required
        required = step.required_role_ids or step.role_ids

        if any(_is_rejection(votes.get(role_id)) for role_id in required):
            return Resolution.REJECTED
        if all(votes.get(role_id) == DecisionOutcome.APPROVE for role_id in required):
            return Resolution.APPROVED
        return Resolution.PENDING

    def _resolve_any(self, step: Step, votes: Dict[str, DecisionOutcome]) -> Resolution:
        if any(outcome == DecisionOutcome.APPROVE for outcome in votes.values()):
            return Resolution.APPROVED
        if all(_is_rejection(votes.get(role_id)) for role_id in step.role_ids):
            return Resolution.REJECTED
        return Resolution.PENDING

    def _resolve_majority(self, step: Step, votes: Dict[str, DecisionOutcome]) -> Resolution:
        total = len(step.role_ids)
        approvals = sum(1 for outcome in votes.values() if outcome == DecisionOutcome.APPROVE)
        rejections = sum(1 for outcome in votes.values() if _is_rejection(outcome))

        if 2 * approvals > total:
            return Resolution.APPROVED
        # A majority is out of reach once ceil(n/2) roles have said no, so an
        # even split resolves to REJECTED
        if rejections >= (total + 1) // 2:
            return Resolution.REJECTED
        return Resolution.PENDING


def _is_rejection(outcome) -> bool:
    return outcome in (DecisionOutcome.REJECT, DecisionOutcome.REQUEST_REVISION)
