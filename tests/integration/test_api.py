"""HTTP API tests"""
import pytest

from ..helpers import on, payload, review_flow, stage, step

API = "/api/v1"


@pytest.fixture
def admin(auth_headers):
    return auth_headers("u-admin", ["admin"])


@pytest.fixture
def flow_chain_id(client, admin):
    resp = client.post(f"{API}/flowchains", json=review_flow().model_dump(mode="json"), headers=admin)
    assert resp.status_code == 201, resp.text
    return resp.json()["flow_chain_id"]


def _create(client, headers, flow_chain_id, asset_id="asset-1", **fields):
    body = {"asset": {"asset_id": asset_id, "asset_type": "VIDEO", **fields}, "flow_chain_id": flow_chain_id}
    return client.post(f"{API}/instances", json=body, headers=headers)


def _decide(client, headers, instance_id, step_id, role_id, outcome="APPROVE"):
    body = {"step_id": step_id, "role_id": role_id, "outcome": outcome}
    return client.post(f"{API}/instances/{instance_id}/decisions", json=body, headers=headers)


# =============================================================================
# Auth and errors
# =============================================================================

def test_missing_token_is_rejected(client):
    resp = client.get(f"{API}/instances/WFI-1")
    assert resp.status_code == 401, resp.text


def test_invalid_token_is_rejected(client):
    resp = client.get(f"{API}/instances/WFI-1", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401, resp.text


def test_unknown_instance(client, admin):
    resp = client.get(f"{API}/instances/WFI-missing", headers=admin)

    assert resp.status_code == 404, resp.text
    assert resp.json()["error"]["code"] == "INSTANCE_NOT_FOUND"


def test_correlation_id_is_echoed(client, admin):
    resp = client.get(f"{API}/instances/WFI-missing", headers={**admin, "X-Correlation-Id": "COR-test-1"})
    assert resp.headers["X-Correlation-Id"] == "COR-test-1"


def test_request_body_errors_are_400(client, admin, flow_chain_id):
    instance_id = _create(client, admin, flow_chain_id).json()["instance"]["instance_id"]

    resp = _decide(client, admin, instance_id, "edit_review", "editor", outcome="MAYBE")

    assert resp.status_code == 400, resp.text
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


# =============================================================================
# FlowChains
# =============================================================================

def test_publish_and_read_versions(client, admin, flow_chain_id):
    resp = client.post(
        f"{API}/flowchains/{flow_chain_id}/versions",
        json=review_flow(name="Launch Video Review v2").model_dump(mode="json"),
        headers=admin,
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["version_number"] == 2

    versions = client.get(f"{API}/flowchains/{flow_chain_id}/versions", headers=admin).json()
    assert [v["version_number"] for v in versions] == [1, 2]

    v1 = client.get(f"{API}/flowchains/{flow_chain_id}/versions/1", headers=admin)
    assert v1.status_code == 200, v1.text
    assert v1.json()["definition"]["name"] == "Launch Video Review"


def test_publish_invalid_definition(client, admin):
    body = payload(stage("a", 1, [step("s1", ["editor"])], transitions=[on("APPROVED", outcome="PUBLISHED")]))

    resp = client.post(f"{API}/flowchains", json=body, headers=admin)

    assert resp.status_code == 400, resp.text
    error = resp.json()["error"]
    assert error["code"] == "DEFINITION_VALIDATION_ERROR"
    assert error["details"]["errors"][0]["type"] == "UNCOVERED_RESOLUTION"


def test_validate_reports_every_issue(client, admin):
    body = payload(stage("a", 1, [step("s1", ["editor"])], transitions=[on("DEFAULT", stage="nowhere")]))
    body.pop("name")

    resp = client.post(f"{API}/flowchains/validate", json=body, headers=admin)

    assert resp.status_code == 200, resp.text
    assert resp.json()["is_valid"] is False
    assert resp.json()["errors"][0]["type"] == "SCHEMA_ERROR"


# =============================================================================
# Instances
# =============================================================================

def test_instance_lifecycle(client, admin, auth_headers, flow_chain_id):
    resp = _create(client, admin, flow_chain_id)
    assert resp.status_code == 201, resp.text
    instance_id = resp.json()["instance"]["instance_id"]
    assert resp.json()["halted"] is False

    state = client.get(f"{API}/instances/{instance_id}", headers=admin).json()
    assert [s["step_id"] for s in state["active_steps"]] == ["edit_review"]

    resp = _decide(client, auth_headers("u-ed", ["editor"]), instance_id, "edit_review", "editor")
    assert resp.status_code == 200, resp.text
    assert resp.json()["instance"]["current_stage_id"] == "legal"

    _decide(client, auth_headers("u-lg", ["legal"]), instance_id, "legal_check", "legal")
    resp = _decide(client, auth_headers("u-br", ["brand"]), instance_id, "brand_check", "brand")

    instance = resp.json()["instance"]
    assert instance["status"] == "COMPLETED"
    assert instance["terminal_outcome"] == "PUBLISHED"


def test_second_active_instance_conflicts(client, admin, flow_chain_id):
    assert _create(client, admin, flow_chain_id).status_code == 201

    resp = _create(client, admin, flow_chain_id)

    assert resp.status_code == 409, resp.text
    assert resp.json()["error"]["code"] == "ACTIVE_INSTANCE_EXISTS"


def test_decision_errors(client, admin, auth_headers, flow_chain_id):
    instance_id = _create(client, admin, flow_chain_id).json()["instance"]["instance_id"]

    resp = _decide(client, auth_headers("u-br", ["brand"]), instance_id, "edit_review", "editor")
    assert resp.status_code == 403, resp.text
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"

    resp = _decide(client, auth_headers("u-lg", ["legal"]), instance_id, "legal_check", "legal")
    assert resp.status_code == 409, resp.text
    assert resp.json()["error"]["code"] == "STEP_NOT_ACTIVE"


def test_cancel_then_decide(client, admin, auth_headers, flow_chain_id):
    instance_id = _create(client, admin, flow_chain_id).json()["instance"]["instance_id"]

    resp = client.post(f"{API}/instances/{instance_id}/cancel", json={"reason": "pulled"}, headers=admin)
    assert resp.status_code == 200, resp.text
    assert resp.json()["instance"]["status"] == "CANCELLED"

    resp = _decide(client, auth_headers("u-ed", ["editor"]), instance_id, "edit_review", "editor")
    assert resp.status_code == 409, resp.text
    assert resp.json()["error"]["code"] == "INSTANCE_TERMINAL"


def test_override_to_an_outcome(client, admin, flow_chain_id):
    instance_id = _create(client, admin, flow_chain_id).json()["instance"]["instance_id"]

    resp = client.post(
        f"{API}/instances/{instance_id}/override",
        json={"reason": "asset withdrawn", "outcome": "ARCHIVED"},
        headers=admin,
    )

    assert resp.status_code == 200, resp.text
    assert resp.json()["instance"]["terminal_outcome"] == "ARCHIVED"


# =============================================================================
# Campaigns and reports
# =============================================================================

def test_campaign_flow_and_bulk_creation(client, admin, flow_chain_id):
    resp = client.post(
        f"{API}/campaigns/CMP-1/flows",
        json={"flow_chain_id": flow_chain_id, "version_number": 1, "is_default": True},
        headers=admin,
    )
    assert resp.status_code == 201, resp.text

    flows = client.get(f"{API}/campaigns/CMP-1/flows", headers=admin).json()
    assert [f["flow_chain_id"] for f in flows] == [flow_chain_id]

    resp = client.post(
        f"{API}/instances/bulk",
        json={
            "campaign_id": "CMP-1",
            "assets": [
                {"asset_id": "a1", "asset_type": "VIDEO"},
                {"asset_id": "a2", "asset_type": "IMAGE"},
            ],
        },
        headers=admin,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["created"] == 2

    report = client.get(f"{API}/reports/flowchains/{flow_chain_id}/progress", headers=admin).json()
    assert report["total"] == 2
    assert report["stages"]["review"]["instances"] == 2


def test_halted_report(client, admin, auth_headers):
    resp = client.post(
        f"{API}/flowchains", json=review_flow(max_stage_visits=1).model_dump(mode="json"), headers=admin
    )
    flow_chain_id = resp.json()["flow_chain_id"]
    instance_id = _create(client, admin, flow_chain_id).json()["instance"]["instance_id"]
    _decide(client, auth_headers("u-ed", ["editor"]), instance_id, "edit_review", "editor")

    resp = _decide(client, auth_headers("u-lg", ["legal"]), instance_id, "legal_check", "legal", "REJECT")
    assert resp.json()["halted"] is True

    halted = client.get(f"{API}/reports/halted", headers=admin).json()
    assert [h["instance_id"] for h in halted["items"]] == [instance_id]

    resp = client.get(f"{API}/reports/halted", params={"since": "yesterday-ish"}, headers=admin)
    assert resp.status_code == 400, resp.text
