"""WorkflowRuntime tests against an in-memory MongoDB"""
import pytest

from flowchain.domain.models import FlowChainVersion
from flowchain.domain.enums import (
    DecisionOutcome, HistoryEventType, InstanceStatus, StepStatus, TerminalOutcome
)
from flowchain.domain.errors import (
    ActiveInstanceExists, ConcurrencyError, FlowChainNotFoundError, InstanceBlocked,
    InstanceTerminal, StageNotFoundError, StepNotActive, StepNotFoundError, Unauthorized,
    ValidationError
)
from flowchain.engine.runtime import WorkflowRuntime
from flowchain.repositories.instance_repo import InstanceRepository
from flowchain.utils.time import utc_now

from ..helpers import asset, decide, definition, on, review_flow, stage, step


def _events(instance):
    return [h.event_type for h in instance.history]


def _start(runtime, publish, flow=None, **asset_fields):
    version = publish(flow or review_flow())
    return runtime.create_instance(version.flow_chain_id, version.version_number, asset(**asset_fields), actor_id="u-producer")


# =============================================================================
# Creation
# =============================================================================

def test_create_instance_activates_first_stage(runtime, publish, instance_repo):
    instance = _start(runtime, publish)

    assert instance.status == InstanceStatus.RUNNING
    assert instance.current_stage_id == "review"
    assert instance.stage_visits == {"review": 1}
    assert instance.steps["edit_review"].status == StepStatus.ACTIVE
    assert _events(instance) == [
        HistoryEventType.INSTANCE_CREATED,
        HistoryEventType.STAGE_ENTERED,
        HistoryEventType.STEP_ACTIVATED,
    ]

    stored = instance_repo.get_instance(instance.instance_id)
    assert stored is not None
    assert len(instance_repo.list_history(instance.instance_id)) == 3


def test_create_instance_for_unknown_version(runtime):
    with pytest.raises(FlowChainNotFoundError):
        runtime.create_instance("FC-missing", 1, asset())


def test_one_active_instance_per_asset_and_flow_chain(runtime, publish):
    version = publish(review_flow())
    first = runtime.create_instance(version.flow_chain_id, 1, asset("asset-9"))

    with pytest.raises(ActiveInstanceExists):
        runtime.create_instance(version.flow_chain_id, 1, asset("asset-9"))

    runtime.cancel_instance(first.instance_id, actor_id="u-producer")
    again = runtime.create_instance(version.flow_chain_id, 1, asset("asset-9"))
    assert again.instance_id != first.instance_id


# =============================================================================
# Progression
# =============================================================================

def test_happy_path_to_published(runtime, publish, instance_repo):
    instance = _start(runtime, publish)

    instance = decide(runtime, instance.instance_id, "edit_review", "editor")
    assert instance.current_stage_id == "legal"
    assert instance.steps["legal_check"].status == StepStatus.ACTIVE
    assert instance.steps["brand_check"].status == StepStatus.ACTIVE

    instance = decide(runtime, instance.instance_id, "legal_check", "legal")
    assert instance.status == InstanceStatus.RUNNING

    instance = decide(runtime, instance.instance_id, "brand_check", "brand")
    assert instance.status == InstanceStatus.COMPLETED
    assert instance.terminal_outcome == TerminalOutcome.PUBLISHED
    assert instance.completed_at is not None
    assert _events(instance)[-1] == HistoryEventType.INSTANCE_COMPLETED
    assert len(instance_repo.list_decisions(instance.instance_id)) == 3
    assert instance_repo.find_active("asset-1", instance.flow_chain_id) is None


def test_parallel_rejection_abandons_pending_siblings(runtime, publish):
    instance = _start(runtime, publish)
    decide(runtime, instance.instance_id, "edit_review", "editor")

    instance = decide(runtime, instance.instance_id, "legal_check", "legal", "REJECT")

    assert instance.steps["legal_check"].status == StepStatus.RESOLVED
    assert instance.steps["brand_check"].status == StepStatus.PENDING_ABANDONED
    # Rework loop back to review
    assert instance.current_stage_id == "review"
    assert instance.stage_visits == {"review": 2, "legal": 1}
    assert instance.steps["edit_review"].status == StepStatus.ACTIVE


def test_sequential_rejection_skips_remaining_steps(runtime, publish):
    flow = definition(
        stage(
            "production", 1,
            [
                step("cut", ["editor"], order=1, action="CUT"),
                step("grade", ["producer"], order=2, action="COLOR_GRADE"),
                step("audio", ["director"], order=3, action="ADD_AUDIO"),
            ],
            transitions=[on("APPROVED", outcome="PUBLISHED"), on("REJECTED", outcome="ARCHIVED")],
        ),
    )
    instance = _start(runtime, publish, flow)
    assert instance.steps["grade"].status == StepStatus.NOT_STARTED

    instance = decide(runtime, instance.instance_id, "cut", "editor", "REJECT")

    assert instance.steps["grade"].status == StepStatus.SKIPPED
    assert instance.steps["audio"].status == StepStatus.SKIPPED
    assert instance.status == InstanceStatus.COMPLETED
    assert instance.terminal_outcome == TerminalOutcome.ARCHIVED


def _jump_flow():
    return definition(
        stage(
            "production", 1,
            [
                step(
                    "cut", ["editor"], order=1,
                    transitions=[on("APPROVED", step="publish_check"), on("REJECTED", outcome="ARCHIVED")],
                ),
                step("grade", ["producer"], order=2),
                step("publish_check", ["director"], order=3),
            ],
            transitions=[on("APPROVED", outcome="PUBLISHED"), on("REJECTED", outcome="REJECTED")],
        ),
    )


def test_step_transition_jumps_forward(runtime, publish):
    instance = _start(runtime, publish, _jump_flow())

    instance = decide(runtime, instance.instance_id, "cut", "editor")

    assert instance.steps["grade"].status == StepStatus.SKIPPED
    assert instance.steps["publish_check"].status == StepStatus.ACTIVE

    instance = decide(runtime, instance.instance_id, "publish_check", "director")
    assert instance.terminal_outcome == TerminalOutcome.PUBLISHED


def test_step_transition_leaving_the_stage(runtime, publish):
    instance = _start(runtime, publish, _jump_flow())

    instance = decide(runtime, instance.instance_id, "cut", "editor", "REJECT")

    assert instance.steps["grade"].status == StepStatus.SKIPPED
    assert instance.steps["publish_check"].status == StepStatus.SKIPPED
    assert instance.terminal_outcome == TerminalOutcome.ARCHIVED


def test_majority_tie_rejects_the_stage(runtime, publish):
    flow = definition(
        stage(
            "panel", 1,
            [step("vote", ["r1", "r2", "r3", "r4"], policy="MAJORITY_MUST_APPROVE")],
            transitions=[on("APPROVED", outcome="PUBLISHED"), on("REJECTED", outcome="REJECTED")],
        ),
    )
    instance = _start(runtime, publish, flow)

    decide(runtime, instance.instance_id, "vote", "r1", "APPROVE")
    decide(runtime, instance.instance_id, "vote", "r2", "REJECT")
    instance = decide(runtime, instance.instance_id, "vote", "r3", "APPROVE")
    assert instance.status == InstanceStatus.RUNNING

    instance = decide(runtime, instance.instance_id, "vote", "r4", "REJECT")
    assert instance.terminal_outcome == TerminalOutcome.REJECTED


def test_conditional_stage_selects_by_asset_type_and_predicate(runtime, publish):
    flow = definition(
        stage(
            "processing", 1,
            [
                step("video_cut", ["editor"], order=1, action="CUT", asset_type="VIDEO"),
                step("image_enhance", ["editor"], order=2, action="ENHANCE", asset_type="IMAGE"),
                step("budget_signoff", ["director"], order=3, activation_predicate="big_budget"),
            ],
            mode="CONDITIONAL",
            transitions=[on("APPROVED", outcome="PUBLISHED"), on("REJECTED", outcome="REJECTED")],
        ),
        predicates={
            "big_budget": {"conditions": [
                {"field": "asset.metadata.budget", "operator": "GREATER_THAN", "value": 10000}
            ]},
        },
    )
    version = publish(flow)

    small = runtime.create_instance(version.flow_chain_id, 1, asset("small", "VIDEO", budget=500))
    assert small.steps["video_cut"].status == StepStatus.ACTIVE
    assert small.steps["image_enhance"].status == StepStatus.SKIPPED
    assert small.steps["budget_signoff"].status == StepStatus.SKIPPED

    big = runtime.create_instance(version.flow_chain_id, 1, asset("big", "IMAGE", budget=50000))
    assert big.steps["video_cut"].status == StepStatus.SKIPPED
    assert big.steps["image_enhance"].status == StepStatus.ACTIVE
    assert big.steps["budget_signoff"].status == StepStatus.ACTIVE

    small = decide(runtime, small.instance_id, "video_cut", "editor")
    assert small.terminal_outcome == TerminalOutcome.PUBLISHED

    # Nothing selected for a document, the stage approves on entry
    doc = runtime.create_instance(version.flow_chain_id, 1, asset("doc", "DOCUMENT"))
    assert doc.status == InstanceStatus.COMPLETED
    assert doc.terminal_outcome == TerminalOutcome.PUBLISHED


def test_revision_request_routes_through_custom_predicate(runtime, publish):
    flow = definition(
        stage(
            "review", 1, [step("edit_review", ["editor"])],
            transitions=[
                on("CUSTOM", stage="rework", predicate="needs_revision"),
                on("APPROVED", outcome="PUBLISHED"),
                on("REJECTED", outcome="REJECTED"),
            ],
        ),
        stage(
            "rework", 2, [step("fix", ["producer"], action="EDIT")],
            transitions=[on("DEFAULT", stage="review")],
        ),
        predicates={
            "needs_revision": {"conditions": [
                {"field": "revision_requested", "operator": "EQUALS", "value": True}
            ]},
        },
    )
    instance = _start(runtime, publish, flow)

    instance = decide(runtime, instance.instance_id, "edit_review", "editor", "REQUEST_REVISION")
    assert instance.current_stage_id == "rework"

    instance = decide(runtime, instance.instance_id, "fix", "producer")
    assert instance.current_stage_id == "review"
    assert instance.stage_visits["review"] == 2

    instance = decide(runtime, instance.instance_id, "edit_review", "editor")
    assert instance.terminal_outcome == TerminalOutcome.PUBLISHED


# =============================================================================
# Decisions
# =============================================================================

def test_duplicate_decision_is_a_no_op(runtime, publish, instance_repo):
    instance = _start(runtime, publish)
    after_first = decide(runtime, instance.instance_id, "edit_review", "editor")

    after_second = decide(runtime, instance.instance_id, "edit_review", "editor")

    assert after_second.version == after_first.version
    assert len(after_second.decisions) == 1
    assert len(instance_repo.list_decisions(instance.instance_id)) == 1


def test_changed_vote_supersedes_the_previous_one(runtime, publish):
    flow = definition(
        stage(
            "panel", 1,
            [step("vote", ["r1", "r2", "r3", "r4"], policy="MAJORITY_MUST_APPROVE")],
            transitions=[on("APPROVED", outcome="PUBLISHED"), on("REJECTED", outcome="REJECTED")],
        ),
    )
    instance = _start(runtime, publish, flow)

    first = decide(runtime, instance.instance_id, "vote", "r1", "APPROVE").decisions[-1]
    instance = decide(runtime, instance.instance_id, "vote", "r1", "REJECT", comment="changed my mind")

    latest = instance.decisions[-1]
    assert latest.supersedes == first.decision_id
    assert latest.comment == "changed my mind"
    assert instance.status == InstanceStatus.RUNNING


def test_actor_without_the_role_is_unauthorized(runtime, publish):
    instance = _start(runtime, publish)

    with pytest.raises(Unauthorized):
        runtime.submit_decision(
            instance.instance_id, "edit_review", "editor", "u-brand", DecisionOutcome.APPROVE
        )
    # Role not assigned to the step, even though the actor holds it
    with pytest.raises(Unauthorized):
        decide(runtime, instance.instance_id, "edit_review", "legal")

    assert runtime.get_instance_state(instance.instance_id).instance.version == instance.version


def test_decision_on_inactive_step(runtime, publish):
    instance = _start(runtime, publish)

    with pytest.raises(StepNotActive):
        decide(runtime, instance.instance_id, "legal_check", "legal")


def test_decision_on_unknown_step(runtime, publish):
    instance = _start(runtime, publish)

    with pytest.raises(StepNotFoundError):
        decide(runtime, instance.instance_id, "no_such_step", "editor")


# =============================================================================
# Reads
# =============================================================================

def test_state_round_trip(runtime, publish):
    instance = _start(runtime, publish)
    committed = decide(runtime, instance.instance_id, "edit_review", "editor")

    snapshot = runtime.get_instance_state(instance.instance_id)

    assert snapshot.instance.model_dump() == committed.model_dump()
    assert [s.step_id for s in snapshot.active_steps] == ["legal_check", "brand_check"]
    assert snapshot.active_steps[0].awaiting_role_ids == ["legal"]


# =============================================================================
# Halts, cancel and override
# =============================================================================

def test_rework_bound_fails_the_instance(runtime, publish):
    instance = _start(runtime, publish)

    for _ in range(9):
        decide(runtime, instance.instance_id, "edit_review", "editor")
        instance = decide(runtime, instance.instance_id, "legal_check", "legal", "REJECT")
    assert instance.status == InstanceStatus.RUNNING
    assert instance.stage_visits["review"] == 10

    decide(runtime, instance.instance_id, "edit_review", "editor")
    instance = decide(runtime, instance.instance_id, "legal_check", "legal", "REJECT")

    assert instance.status == InstanceStatus.FAILED
    assert instance.terminal_outcome == TerminalOutcome.MAX_RETRIES_EXCEEDED
    assert instance.stage_visits["review"] == 10
    assert _events(instance)[-1] == HistoryEventType.MAX_RETRIES_EXCEEDED

    with pytest.raises(InstanceTerminal):
        decide(runtime, instance.instance_id, "edit_review", "editor")


def test_definition_can_tighten_the_rework_bound(runtime, publish):
    instance = _start(runtime, publish, review_flow(max_stage_visits=2))

    decide(runtime, instance.instance_id, "edit_review", "editor")
    decide(runtime, instance.instance_id, "legal_check", "legal", "REJECT")
    decide(runtime, instance.instance_id, "edit_review", "editor")
    instance = decide(runtime, instance.instance_id, "legal_check", "legal", "REJECT")

    assert instance.terminal_outcome == TerminalOutcome.MAX_RETRIES_EXCEEDED


def _publish_unvalidated(definition_repo, flow, flow_chain_id="FC-legacy"):
    """Store a version without publish-time validation"""
    return definition_repo.create_version(FlowChainVersion(
        flow_chain_id=flow_chain_id, version_number=1, definition=flow, published_at=utc_now()
    ))


def _blocking_flow():
    return definition(
        stage("review", 1, [step("edit_review", ["editor"])], transitions=[on("APPROVED", outcome="PUBLISHED")]),
        stage("polish", 2, [step("fix", ["producer"])], transitions=[on("DEFAULT", stage="review")]),
    )


def test_unrouted_resolution_blocks_the_instance(runtime, definition_repo):
    _publish_unvalidated(definition_repo, _blocking_flow())
    instance = runtime.create_instance("FC-legacy", 1, asset())

    instance = decide(runtime, instance.instance_id, "edit_review", "editor", "REJECT")

    assert instance.status == InstanceStatus.BLOCKED
    assert instance.blocked_reason["error_code"] == "STUCK_INSTANCE"
    assert instance.blocked_reason["source_id"] == "review"
    assert _events(instance)[-1] == HistoryEventType.INSTANCE_BLOCKED

    with pytest.raises(InstanceBlocked):
        decide(runtime, instance.instance_id, "edit_review", "editor", "APPROVE")


def test_override_blocked_instance_to_a_stage(runtime, definition_repo):
    _publish_unvalidated(definition_repo, _blocking_flow())
    instance = runtime.create_instance("FC-legacy", 1, asset())
    decide(runtime, instance.instance_id, "edit_review", "editor", "REJECT")

    instance = runtime.override(instance.instance_id, "u-ops", "send to polish", target_stage_id="polish")

    assert instance.status == InstanceStatus.RUNNING
    assert instance.blocked_reason is None
    assert instance.current_stage_id == "polish"
    assert instance.steps["fix"].status == StepStatus.ACTIVE
    assert HistoryEventType.MANUAL_OVERRIDE in _events(instance)


def test_override_to_an_outcome(runtime, definition_repo):
    _publish_unvalidated(definition_repo, _blocking_flow())
    instance = runtime.create_instance("FC-legacy", 1, asset())
    decide(runtime, instance.instance_id, "edit_review", "editor", "REJECT")

    instance = runtime.override(instance.instance_id, "u-ops", "archive it", outcome=TerminalOutcome.ARCHIVED)

    assert instance.status == InstanceStatus.COMPLETED
    assert instance.terminal_outcome == TerminalOutcome.ARCHIVED


def test_override_arguments(runtime, publish):
    instance = _start(runtime, publish)

    with pytest.raises(ValidationError):
        runtime.override(instance.instance_id, "u-ops", "both", target_stage_id="legal",
                         outcome=TerminalOutcome.PUBLISHED)
    with pytest.raises(ValidationError):
        runtime.override(instance.instance_id, "u-ops", "cancel", outcome=TerminalOutcome.CANCELLED)
    with pytest.raises(StageNotFoundError):
        runtime.override(instance.instance_id, "u-ops", "nowhere", target_stage_id="nowhere")


def test_override_running_instance_counts_a_visit(runtime, publish):
    instance = _start(runtime, publish)

    instance = runtime.override(instance.instance_id, "u-ops", "redo review", target_stage_id="review")

    assert instance.stage_visits["review"] == 2
    assert instance.steps["edit_review"].status == StepStatus.ACTIVE


def test_cancel(runtime, publish):
    instance = _start(runtime, publish)
    decide(runtime, instance.instance_id, "edit_review", "editor")

    instance = runtime.cancel_instance(instance.instance_id, actor_id="u-producer", reason="campaign pulled")

    assert instance.status == InstanceStatus.CANCELLED
    assert instance.terminal_outcome == TerminalOutcome.CANCELLED
    assert instance.steps["legal_check"].status == StepStatus.PENDING_ABANDONED
    assert instance.steps["brand_check"].status == StepStatus.PENDING_ABANDONED

    with pytest.raises(InstanceTerminal):
        runtime.cancel_instance(instance.instance_id)
    with pytest.raises(InstanceTerminal):
        decide(runtime, instance.instance_id, "legal_check", "legal")


# =============================================================================
# Concurrency
# =============================================================================

class RacingInstanceRepository(InstanceRepository):
    """Lets another writer commit just before the first commit attempt"""

    def __init__(self, database, competitor):
        super().__init__(database)
        self.competitor = competitor
        self.commit_calls = 0

    def commit(self, instance, expected_version, new_decisions=(), new_history=()):
        self.commit_calls += 1
        if self.commit_calls == 1:
            self.competitor()
        return super().commit(instance, expected_version, new_decisions, new_history)


class ConflictingInstanceRepository(InstanceRepository):
    """Every commit loses the race"""

    def __init__(self, database):
        super().__init__(database)
        self.commit_calls = 0

    def commit(self, instance, expected_version, new_decisions=(), new_history=()):
        self.commit_calls += 1
        raise ConcurrencyError("Instance was modified concurrently")


def test_concurrent_decisions_both_survive(db, runtime, publish, definition_repo, role_service):
    instance = _start(runtime, publish)
    decide(runtime, instance.instance_id, "edit_review", "editor")

    racing_repo = RacingInstanceRepository(
        db, competitor=lambda: decide(runtime, instance.instance_id, "brand_check", "brand")
    )
    racing = WorkflowRuntime(definition_repo, racing_repo, role_service)

    instance = decide(racing, instance.instance_id, "legal_check", "legal")

    assert racing_repo.commit_calls == 2
    assert instance.terminal_outcome == TerminalOutcome.PUBLISHED
    roles = sorted(d.role_id for d in instance.decisions if d.stage_id == "legal")
    assert roles == ["brand", "legal"]


def test_gives_up_after_max_write_retries(db, runtime, publish, definition_repo, role_service):
    instance = _start(runtime, publish)
    conflicting_repo = ConflictingInstanceRepository(db)
    conflicted = WorkflowRuntime(definition_repo, conflicting_repo, role_service, max_write_retries=2)

    with pytest.raises(ConcurrencyError):
        decide(conflicted, instance.instance_id, "edit_review", "editor")

    assert conflicting_repo.commit_calls == 3
