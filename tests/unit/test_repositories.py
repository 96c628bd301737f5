"""Repository tests against an in-memory MongoDB"""
import pytest

from flowchain.domain.models import AssetBinding, CampaignFlow, FlowChainVersion, WorkflowInstance
from flowchain.domain.enums import HistoryEventType, InstanceStatus, TerminalOutcome
from flowchain.domain.errors import (
    ActiveInstanceExists, AlreadyExistsError, ConcurrencyError, FlowChainNotFoundError,
    InstanceNotFoundError
)
from flowchain.engine.history_writer import HistoryWriter
from flowchain.utils.time import utc_now

from ..helpers import asset, review_flow


def _instance(instance_id="WFI-1", asset_id="asset-1", flow_chain_id="FC-1"):
    now = utc_now()
    return WorkflowInstance(
        instance_id=instance_id,
        flow_chain_id=flow_chain_id,
        flow_chain_version=1,
        asset=asset(asset_id),
        current_stage_id="review",
        created_at=now,
        updated_at=now,
    )


def _version(flow_chain_id="FC-1", version_number=1):
    return FlowChainVersion(
        flow_chain_id=flow_chain_id,
        version_number=version_number,
        definition=review_flow(),
        published_at=utc_now(),
    )


# =============================================================================
# DefinitionRepository
# =============================================================================

def test_versions_are_insert_only(definition_repo):
    definition_repo.create_version(_version())

    with pytest.raises(AlreadyExistsError):
        definition_repo.create_version(_version())


def test_version_lookup(definition_repo):
    assert definition_repo.get_latest_version_number("FC-1") == 0

    definition_repo.create_version(_version(version_number=1))
    definition_repo.create_version(_version(version_number=2))

    assert definition_repo.get_latest_version_number("FC-1") == 2
    assert [v.version_number for v in definition_repo.list_versions("FC-1")] == [1, 2]
    assert definition_repo.get_version("FC-1", 2).definition == review_flow()
    with pytest.raises(FlowChainNotFoundError):
        definition_repo.get_version_or_raise("FC-1", 3)


# =============================================================================
# InstanceRepository
# =============================================================================

def test_commit_bumps_version(instance_repo):
    instance = instance_repo.create_instance(_instance())

    instance.current_stage_id = "legal"
    committed = instance_repo.commit(instance, expected_version=1)

    assert committed.version == 2
    assert instance_repo.get_instance("WFI-1").current_stage_id == "legal"


def test_commit_with_stale_version_conflicts(instance_repo):
    instance_repo.create_instance(_instance())
    first = instance_repo.get_instance("WFI-1")
    second = instance_repo.get_instance("WFI-1")

    instance_repo.commit(first, expected_version=1)

    with pytest.raises(ConcurrencyError):
        instance_repo.commit(second, expected_version=1)


def test_commit_unknown_instance(instance_repo):
    with pytest.raises(InstanceNotFoundError):
        instance_repo.commit(_instance("WFI-ghost"), expected_version=1)


def test_one_active_instance_per_asset(instance_repo):
    instance_repo.create_instance(_instance("WFI-1"))

    with pytest.raises(ActiveInstanceExists):
        instance_repo.create_instance(_instance("WFI-2"))

    # Same asset under another flow chain is fine
    instance_repo.create_instance(_instance("WFI-3", flow_chain_id="FC-2"))


def test_terminal_instance_releases_the_asset(instance_repo):
    instance = instance_repo.create_instance(_instance("WFI-1"))
    instance.status = InstanceStatus.COMPLETED
    instance.terminal_outcome = TerminalOutcome.PUBLISHED
    instance_repo.commit(instance, expected_version=1)

    assert instance_repo.find_active("asset-1", "FC-1") is None
    instance_repo.create_instance(_instance("WFI-2"))
    assert instance_repo.find_active("asset-1", "FC-1").instance_id == "WFI-2"


def test_history_projection_is_idempotent(instance_repo):
    instance = instance_repo.create_instance(_instance())
    entry = HistoryWriter().record(instance, HistoryEventType.MANUAL_OVERRIDE, actor_id="u-ops")

    instance_repo.commit(instance, expected_version=1, new_history=[entry])
    instance_repo._project([], [entry])

    history = instance_repo.list_history("WFI-1")
    assert [h.history_id for h in history] == [entry.history_id]


def test_list_instances_filters(instance_repo):
    instance_repo.create_instance(_instance("WFI-1", asset_id="a1"))
    blocked = instance_repo.create_instance(_instance("WFI-2", asset_id="a2"))
    blocked.status = InstanceStatus.BLOCKED
    instance_repo.commit(blocked, expected_version=1)
    instance_repo.create_instance(_instance("WFI-3", asset_id="a3", flow_chain_id="FC-2"))

    assert {i.instance_id for i in instance_repo.list_instances(flow_chain_id="FC-1")} == {"WFI-1", "WFI-2"}
    assert [i.instance_id for i in instance_repo.list_instances(statuses=[InstanceStatus.BLOCKED])] == ["WFI-2"]


# =============================================================================
# BindingRepository
# =============================================================================

def _flow(flow_chain_id, is_default):
    return CampaignFlow(
        campaign_id="CMP-1", flow_chain_id=flow_chain_id, version_number=1,
        is_default=is_default, created_at=utc_now()
    )


def test_campaign_has_one_default_flow(binding_repo):
    binding_repo.save_campaign_flow(_flow("FC-1", True))
    binding_repo.save_campaign_flow(_flow("FC-2", True))

    flows = {f.flow_chain_id: f.is_default for f in binding_repo.list_campaign_flows("CMP-1")}
    assert flows == {"FC-1": False, "FC-2": True}
    assert binding_repo.get_default_flow("CMP-1").flow_chain_id == "FC-2"


def test_first_flow_is_the_fallback_default(binding_repo):
    assert binding_repo.get_default_flow("CMP-1") is None

    binding_repo.save_campaign_flow(_flow("FC-1", False))

    assert binding_repo.get_default_flow("CMP-1").flow_chain_id == "FC-1"


def test_binding_is_replaced_per_asset_and_flow_chain(binding_repo):
    for version_number in (1, 2):
        binding_repo.save_binding(AssetBinding(
            asset_id="asset-1", asset_type="VIDEO", campaign_id="CMP-1",
            flow_chain_id="FC-1", version_number=version_number, bound_at=utc_now()
        ))

    assert binding_repo.get_binding("asset-1", "FC-1").version_number == 2
    assert len(binding_repo.list_bindings("CMP-1")) == 1
