"""
Tests for the REST API

Exercises the FastAPI routes end to end against a temporary database.
"""

import pytest
from fastapi.testclient import TestClient

from changegate.approval.payloads import deployment_payload, table_create_payload
from changegate.communication.rest_server import ChangeRESTServer


ALICE = {"X-Actor-Id": "alice"}
DEVELOPER = {"X-Actor-Id": "bob", "X-Actor-Role": "developer"}
MANAGER = {"X-Actor-Id": "carol", "X-Actor-Role": "manager"}
ADMIN = {"X-Actor-Id": "dave", "X-Actor-Role": "admin"}


@pytest.fixture
def client(controller):
    server = ChangeRESTServer(controller)
    with TestClient(server.app) as test_client:
        yield test_client


def submit(client, kind="table_create", payload=None, scope_id="app-sales"):
    response = client.post(
        "/changes",
        json={
            "kind": kind,
            "payload": payload or table_create_payload("Orders"),
            "scope_id": scope_id
        },
        headers=ALICE
    )
    assert response.status_code == 201
    return response.json()


class TestChangeRoutes:
    """Test change lifecycle routes"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_submit_and_get(self, client):
        change = submit(client)

        assert change["status"] == "pending"
        assert len(change["step_plan"]) == 2

        response = client.get(f"/changes/{change['change_id']}")
        assert response.status_code == 200
        assert response.json()["current_step"] == 0

    def test_submit_requires_actor(self, client):
        response = client.post(
            "/changes",
            json={"kind": "table_create", "payload": table_create_payload("Orders"), "scope_id": "x"}
        )
        assert response.status_code == 401

    def test_invalid_payload(self, client):
        response = client.post(
            "/changes",
            json={"kind": "table_create", "payload": {"name": "9lives"}, "scope_id": "app-sales"},
            headers=ALICE
        )
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"
        assert response.json()["errors"]

    def test_unknown_change(self, client):
        assert client.get("/changes/chg-missing").status_code == 404

    def test_vote_flow_and_apply(self, client, effector):
        change_id = submit(client)["change_id"]

        # Apply before approval is a conflict
        assert client.post(f"/changes/{change_id}/apply", headers=ALICE).status_code == 409

        # Wrong role for the technical review
        response = client.post(f"/changes/{change_id}/votes", json={"decision": "approved"}, headers=MANAGER)
        assert response.status_code == 403

        # Voting needs a role
        response = client.post(f"/changes/{change_id}/votes", json={"decision": "approved"}, headers=ALICE)
        assert response.status_code == 403

        response = client.post(
            f"/changes/{change_id}/votes",
            json={"decision": "approved", "comments": "ok", "step_index": 0},
            headers=DEVELOPER
        )
        assert response.status_code == 200

        response = client.post(f"/changes/{change_id}/votes", json={"decision": "approved"}, headers=MANAGER)
        assert response.status_code == 200

        response = client.post(f"/changes/{change_id}/apply", headers=ADMIN)
        assert response.status_code == 200
        body = response.json()
        assert body["applied"] is True
        assert body["change"]["status"] == "applied"
        assert body["change"]["rollback_data"]

        approvals = client.get(f"/changes/{change_id}/approvals").json()
        assert [r["approver_id"] for r in approvals["records"]] == ["bob", "carol"]

        history = client.get(f"/changes/{change_id}/history").json()
        assert [e["event_type"] for e in history["events"]] == [
            "CHANGE_SUBMITTED", "VOTE_CAST", "VOTE_CAST", "CHANGE_APPLIED"
        ]

    def test_apply_failure_returns_502(self, client, effector):
        from changegate.errors import RetryableEffectorError

        change_id = submit(client, kind="table_update", payload={"name": "Invoices"})["change_id"]
        client.post(f"/changes/{change_id}/votes", json={"decision": "approved"}, headers=DEVELOPER)
        effector.apply_errors = [RetryableEffectorError("timeout")] * 3

        response = client.post(f"/changes/{change_id}/apply", headers=ALICE)

        assert response.status_code == 502
        assert response.json()["retryable"] is True
        assert response.json()["change"]["status"] == "pending"

    def test_reject_then_vote_conflicts(self, client):
        change_id = submit(client)["change_id"]

        response = client.post(f"/changes/{change_id}/votes", json={"decision": "rejected"}, headers=DEVELOPER)
        assert response.json()["status"] == "failed"
        assert response.json()["reason"] == "rejected"

        response = client.post(f"/changes/{change_id}/votes", json={"decision": "approved"}, headers=ADMIN)
        assert response.status_code == 409

    def test_withdraw(self, client):
        change_id = submit(client)["change_id"]

        assert client.post(f"/changes/{change_id}/withdraw", headers=DEVELOPER).status_code == 403

        response = client.post(f"/changes/{change_id}/withdraw", headers=ALICE)
        assert response.status_code == 200
        assert response.json()["reason"] == "withdrawn"

    def test_draft_submit(self, client):
        response = client.post(
            "/changes",
            json={"kind": "table_update", "payload": {"name": "Invoices"}, "scope_id": "tbl-1", "draft": True},
            headers=ALICE
        )
        change_id = response.json()["change_id"]
        assert response.json()["status"] == "draft"

        response = client.post(f"/changes/{change_id}/submit", headers=ALICE)
        assert response.json()["status"] == "pending"

    def test_rollback(self, client):
        change_id = submit(client, kind="table_update", payload={"name": "Invoices"})["change_id"]
        client.post(f"/changes/{change_id}/votes", json={"decision": "approved"}, headers=DEVELOPER)
        client.post(f"/changes/{change_id}/apply", headers=ALICE)

        assert client.post(f"/changes/{change_id}/rollback", json={"reason": ""}, headers=ALICE).status_code == 422

        response = client.post(f"/changes/{change_id}/rollback", json={"reason": "typo"}, headers=ALICE)
        assert response.status_code == 200
        assert response.json()["status"] == "rolled_back"

    def test_rollback_needing_approval(self, client):
        change_id = submit(client, kind="table_delete", payload={"table_id": "tbl-9"})["change_id"]
        for headers in (DEVELOPER, MANAGER, ADMIN):
            client.post(f"/changes/{change_id}/votes", json={"decision": "approved"}, headers=headers)
        client.post(f"/changes/{change_id}/apply", headers=ALICE)

        response = client.post(f"/changes/{change_id}/rollback", json={"reason": "restore"}, headers=ALICE)

        assert response.status_code == 202
        assert response.json()["linked_change_id"] == change_id

    def test_rollback_unavailable(self, client):
        change_id = submit(client)["change_id"]

        response = client.post(f"/changes/{change_id}/rollback", json={"reason": "x"}, headers=ALICE)
        assert response.status_code == 409
        assert response.json()["error"] == "RollbackUnavailableError"


class TestApprovalQueue:
    """Test the pending approvals query"""

    def test_pending_approvals_by_role(self, client):
        create_id = submit(client)["change_id"]
        update_id = submit(client, kind="table_update", payload={"name": "Invoices"}, scope_id="app-stock")["change_id"]
        client.post(f"/changes/{create_id}/votes", json={"decision": "approved"}, headers=DEVELOPER)

        everything = client.get("/approvals/pending").json()
        assert everything["count"] == 2

        # The caller's role header selects their own queue
        queue = client.get("/approvals/pending", headers=MANAGER).json()
        assert [c["change_id"] for c in queue["changes"]] == [create_id]
        assert queue["changes"][0]["current_step"] == 1

        queue = client.get("/approvals/pending", params={"role": "developer"}).json()
        assert [c["change_id"] for c in queue["changes"]] == [update_id]

        assert client.get("/approvals/pending", params={"role": "admin"}).json()["count"] == 2
        assert client.get("/approvals/pending", params={"scope_id": "app-stock"}).json()["count"] == 1

    def test_ready_and_closed_changes_leave_the_queue(self, client):
        change_id = submit(client, kind="table_update", payload={"name": "Invoices"})["change_id"]
        rejected_id = submit(client)["change_id"]

        client.post(f"/changes/{change_id}/votes", json={"decision": "approved"}, headers=DEVELOPER)
        client.post(f"/changes/{rejected_id}/votes", json={"decision": "rejected"}, headers=DEVELOPER)

        assert client.get("/approvals/pending").json()["count"] == 0

    def test_unknown_role(self, client):
        assert client.get("/approvals/pending", params={"role": "owner"}).status_code == 422


class TestAuditRoutes:
    """Test audit routes"""

    def test_audit_log_filters(self, client):
        submit(client, scope_id="app-sales")
        submit(client, scope_id="app-stock")

        response = client.get("/audit", params={"scope_id": "app-stock"})
        assert response.status_code == 200
        assert response.json()["total"] == 1

        response = client.get("/audit", params={"page": 1, "page_size": 1})
        assert response.json()["total"] == 2
        assert len(response.json()["items"]) == 1

    def test_audit_log_bad_range(self, client):
        response = client.get(
            "/audit",
            params={"from": "2026-01-02T00:00:00Z", "to": "2026-01-01T00:00:00Z"}
        )
        assert response.status_code == 422

    def test_audit_log_page_size_limit(self, client):
        assert client.get("/audit", params={"page_size": 1000}).status_code == 422

    def test_report(self, client):
        submit(client)

        report = client.get("/audit/report").json()
        assert report["total_events"] == 1


class TestPipelineRoutes:
    """Test environment, pipeline and run routes"""

    def test_pipeline_run(self, client):
        for env_id, env_type in (("dev", "development"), ("prod", "production")):
            response = client.post(
                "/environments",
                json={"name": env_id, "env_type": env_type, "environment_id": env_id},
                headers=ALICE
            )
            assert response.status_code == 201

        response = client.post(
            "/pipelines",
            json={"name": "release", "environments": ["dev", "prod"], "gated_environments": ["prod"]},
            headers=ALICE
        )
        assert response.status_code == 201
        pipeline_id = response.json()["pipeline_id"]

        response = client.post(
            f"/pipelines/{pipeline_id}/runs",
            json={"payload": deployment_payload("cp-1", "3.1.0")},
            headers=ALICE
        )
        assert response.status_code == 201
        run = response.json()
        assert run["state"] == "awaiting_promotion"

        response = client.post(f"/runs/{run['run_id']}/promote-next", headers=ALICE)
        assert response.json()["state"] == "awaiting_approval"

        assert client.post(f"/runs/{run['run_id']}/promote-next", headers=ALICE).status_code == 409
        assert client.get(f"/runs/{run['run_id']}").json()["state"] == "awaiting_approval"

    def test_unknown_run(self, client):
        assert client.get("/runs/run-missing").status_code == 404

    def test_environment_and_pipeline_reads(self, client):
        for env_id, env_type in (("dev", "development"), ("prod", "production")):
            client.post(
                "/environments",
                json={"name": env_id, "env_type": env_type, "environment_id": env_id},
                headers=ALICE
            )
        client.post(
            "/pipelines",
            json={"name": "release", "environments": ["dev", "prod"], "pipeline_id": "pipe-release"},
            headers=ALICE
        )

        environments = client.get("/environments").json()["environments"]
        assert sorted(e["environment_id"] for e in environments) == ["dev", "prod"]
        assert client.get("/environments/prod").json()["env_type"] == "production"
        assert client.get("/environments/qa").status_code == 404

        pipelines = client.get("/pipelines").json()["pipelines"]
        assert [p["pipeline_id"] for p in pipelines] == ["pipe-release"]
        assert client.get("/pipelines/pipe-release").json()["environments"] == ["dev", "prod"]
        assert client.get("/pipelines/pipe-missing").status_code == 404
