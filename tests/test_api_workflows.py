"""
REST API tests for the procurement blueprint (/api/v1/procurement).

Covers request parsing, status codes and the error envelope
({error, code, kind, details}) for each engine error kind.
"""

import pytest

from procurement.models import db
from procurement.models.procurement import Stage

BASE = "/api/v1/procurement"
ACTOR = "user-1"


def _create(client, template_id, **overrides):
    body = {
        "template_id": template_id,
        "vendor_id": "vendor-9",
        "evaluation_project_id": "proj-9",
        "planned_start_date": "2026-01-01",
        "actor_id": ACTOR,
    }
    body.update(overrides)
    return client.post(f"{BASE}/workflows", json=body)


@pytest.fixture()
def api_workflow(client, template):
    res = _create(client, template.id)
    assert res.status_code == 201
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


class TestTemplateRoutes:
    def test_list(self, client, seeded_templates):
        res = client.get(f"{BASE}/templates")
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 3

    def test_filter(self, client, seeded_templates):
        res = client.get(f"{BASE}/templates?procurement_type=services")
        assert [t["template_name"] for t in res.get_json()["items"]] == ["Professional Services"]

    def test_bad_filter(self, client, seeded_templates):
        res = client.get(f"{BASE}/templates?procurement_type=spaceships")
        assert res.status_code == 400
        assert res.get_json()["kind"] == "validation_error"

    def test_get_one(self, client, template):
        res = client.get(f"{BASE}/templates/{template.id}")
        assert res.status_code == 200
        assert res.get_json()["template_name"] == "Test Template"

    def test_missing(self, client):
        res = client.get(f"{BASE}/templates/999")
        assert res.status_code == 404
        body = res.get_json()
        assert body["code"] == "ERR_NOT_FOUND"
        assert body["kind"] == "template_not_found"


# ═════════════════════════════════════════════════════════════════════════════
# Workflow creation & queries
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkflowRoutes:
    def test_create_from_template(self, api_workflow):
        assert api_workflow["status"] == "not_started"
        assert len(api_workflow["stages"]) == 3
        assert api_workflow["created_by"] == ACTOR

    def test_create_requires_template_id(self, client):
        res = client.post(f"{BASE}/workflows", json={"actor_id": ACTOR})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_create_requires_actor(self, client, template):
        res = _create(client, template.id, actor_id="")
        assert res.status_code == 400
        assert res.get_json()["details"] == {"actor_id": "required"}

    def test_create_custom(self, client):
        res = client.post(f"{BASE}/workflows/custom", json={
            "name": "Custom",
            "vendor_id": "vendor-9",
            "evaluation_project_id": "proj-9",
            "actor_id": ACTOR,
            "stages": [{"name": "Only stage", "targetDays": 2, "milestones": ["Done"]}],
        })
        assert res.status_code == 201
        assert res.get_json()["stages"][0]["target_days"] == 2

    @pytest.mark.parametrize("overrides,field", [
        ({"vendor_id": {"a": 1}}, "vendor_id"),
        ({"evaluation_project_id": ["p"]}, "evaluation_project_id"),
        ({"planned_start_date": "2026-01-01junk"}, "planned_start_date"),
        ({"owner_name": 7}, "owner_name"),
    ])
    def test_create_rejects_malformed_fields(self, client, template, overrides, field):
        res = _create(client, template.id, **overrides)
        assert res.status_code == 400
        assert field in res.get_json()["details"]
        assert client.get(f"{BASE}/workflows?evaluation_project_id=proj-9").get_json()["total"] == 0

    def test_list_requires_project(self, client):
        assert client.get(f"{BASE}/workflows").status_code == 400

    def test_list_by_project(self, client, api_workflow):
        res = client.get(f"{BASE}/workflows?evaluation_project_id=proj-9")
        data = res.get_json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == api_workflow["id"]

    def test_vendor_lookup(self, client, api_workflow):
        res = client.get(f"{BASE}/workflows?evaluation_project_id=proj-9&vendor_id=vendor-9")
        assert res.get_json()["workflow"]["id"] == api_workflow["id"]
        res = client.get(f"{BASE}/workflows?evaluation_project_id=proj-9&vendor_id=nobody")
        assert res.status_code == 200
        assert res.get_json()["workflow"] is None

    def test_get_and_timeline(self, client, api_workflow):
        wf_id = api_workflow["id"]
        assert client.get(f"{BASE}/workflows/{wf_id}").get_json()["id"] == wf_id
        timeline = client.get(f"{BASE}/workflows/{wf_id}/timeline").get_json()
        assert len(timeline["stages"]) == 3

    def test_get_missing(self, client):
        res = client.get(f"{BASE}/workflows/404")
        assert res.status_code == 404
        assert res.get_json()["kind"] == "workflow_not_found"

    def test_activity_limit(self, client, api_workflow):
        wf_id = api_workflow["id"]
        client.post(f"{BASE}/workflows/{wf_id}/start", json={"actor_id": ACTOR})
        res = client.get(f"{BASE}/workflows/{wf_id}/activity?limit=1")
        data = res.get_json()
        assert data["total"] == 1
        assert data["items"][0]["activity_type"] == "workflow_started"
        # junk limit falls back to the default
        assert client.get(f"{BASE}/workflows/{wf_id}/activity?limit=abc").get_json()["total"] == 2


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitionRoutes:
    def test_workflow_lifecycle(self, client, api_workflow):
        wf_id = api_workflow["id"]
        res = client.post(f"{BASE}/workflows/{wf_id}/start", json={"actor_id": ACTOR})
        assert res.status_code == 200
        assert res.get_json()["status"] == "in_progress"

        res = client.post(f"{BASE}/workflows/{wf_id}/complete", json={"actor_id": ACTOR})
        assert res.get_json()["status"] == "completed"

        res = client.post(f"{BASE}/workflows/{wf_id}/cancel", json={"actor_id": ACTOR, "reason": "late"})
        assert res.status_code == 409
        body = res.get_json()
        assert body["kind"] == "invalid_transition"
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["current_status"] == "completed"

    def test_cancel_needs_reason(self, client, api_workflow):
        res = client.post(f"{BASE}/workflows/{api_workflow['id']}/cancel", json={"actor_id": ACTOR})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"reason": "required"}

    def test_missing_actor(self, client, api_workflow):
        res = client.post(f"{BASE}/workflows/{api_workflow['id']}/start", json={})
        assert res.status_code == 400

    def test_stage_routes(self, client, api_workflow):
        sid = api_workflow["stages"][0]["id"]
        for action, expected in [("start", "in_progress"), ("unblock", None)]:
            res = client.post(f"{BASE}/stages/{sid}/{action}", json={"actor_id": ACTOR})
            if expected:
                assert res.get_json()["stages"][0]["status"] == expected
            else:
                assert res.status_code == 409

        res = client.post(f"{BASE}/stages/{sid}/block", json={"actor_id": ACTOR, "reason": "legal"})
        assert res.get_json()["stages"][0]["blocked_reason"] == "legal"
        res = client.post(f"{BASE}/stages/{sid}/unblock", json={"actor_id": ACTOR})
        assert res.get_json()["stages"][0]["status"] == "in_progress"
        res = client.post(f"{BASE}/stages/{sid}/complete", json={"actor_id": ACTOR})
        assert res.get_json()["stages"][0]["status"] == "completed"

        sid2 = api_workflow["stages"][1]["id"]
        res = client.post(f"{BASE}/stages/{sid2}/skip", json={"actor_id": ACTOR})
        assert res.get_json()["stages"][1]["status"] == "skipped"
        assert res.get_json()["progress_percent"] == 50

    def test_block_without_reason(self, client, api_workflow):
        sid = api_workflow["stages"][0]["id"]
        client.post(f"{BASE}/stages/{sid}/start", json={"actor_id": ACTOR})
        res = client.post(f"{BASE}/stages/{sid}/block", json={"actor_id": ACTOR, "reason": "  "})
        assert res.status_code == 400
        assert db.session.get(Stage, sid).status == "in_progress"

    def test_owner(self, client, api_workflow):
        sid = api_workflow["stages"][2]["id"]
        res = client.put(f"{BASE}/stages/{sid}/owner", json={"actor_id": ACTOR, "owner_name": "Sam"})
        assert res.status_code == 200
        assert res.get_json()["stages"][2]["owner_name"] == "Sam"

    def test_milestone_routes(self, client, api_workflow):
        stage = api_workflow["stages"][0]
        m1, m2 = (m["id"] for m in stage["milestones"])

        res = client.post(f"{BASE}/milestones/{m1}/complete", json={"actor_id": ACTOR})
        assert res.status_code == 409
        assert res.get_json()["kind"] == "stage_not_active"
        assert res.get_json()["code"] == "ERR_STAGE_NOT_ACTIVE"

        client.post(f"{BASE}/stages/{stage['id']}/start", json={"actor_id": ACTOR})
        res = client.post(f"{BASE}/milestones/{m1}/complete", json={"actor_id": ACTOR})
        assert res.get_json()["stages"][0]["milestones"][0]["status"] == "completed"
        res = client.post(f"{BASE}/milestones/{m2}/skip", json={"actor_id": ACTOR})
        assert res.get_json()["stages"][0]["milestones"][1]["status"] == "skipped"

    def test_unknown_stage_and_milestone(self, client):
        res = client.post(f"{BASE}/stages/999/start", json={"actor_id": ACTOR})
        assert res.status_code == 404
        assert res.get_json()["kind"] == "stage_not_found"
        res = client.post(f"{BASE}/milestones/999/skip", json={"actor_id": ACTOR})
        assert res.get_json()["kind"] == "milestone_not_found"


# ═════════════════════════════════════════════════════════════════════════════
# Edits: workflow details, added milestones, notes
# ═════════════════════════════════════════════════════════════════════════════


class TestEditRoutes:
    def test_patch_workflow_dates(self, client, api_workflow):
        res = client.patch(f"{BASE}/workflows/{api_workflow['id']}", json={
            "actor_id": ACTOR, "planned_start_date": "2026-02-01", "status": "completed",
        })
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "not_started"
        assert body["planned_end_date"] == "2026-02-23"
        assert body["stages"][1]["planned_start_date"] == "2026-02-06"

    def test_patch_with_nothing_to_change(self, client, api_workflow):
        res = client.patch(f"{BASE}/workflows/{api_workflow['id']}", json={"actor_id": ACTOR})
        assert res.status_code == 400

    def test_add_milestone(self, client, api_workflow):
        sid = api_workflow["stages"][0]["id"]
        res = client.post(f"{BASE}/stages/{sid}/milestones", json={"actor_id": ACTOR, "name": "Escrow set up"})
        assert res.status_code == 201
        milestones = res.get_json()["stages"][0]["milestones"]
        assert milestones[-1]["name"] == "Escrow set up"
        assert milestones[-1]["milestone_order"] == 3

    def test_notes_routes(self, client, api_workflow):
        sid, sid2 = api_workflow["stages"][0]["id"], api_workflow["stages"][1]["id"]
        client.post(f"{BASE}/stages/{sid}/start", json={"actor_id": ACTOR})
        res = client.post(f"{BASE}/stages/{sid}/complete", json={"actor_id": ACTOR, "notes": "done early"})
        assert res.get_json()["stages"][0]["completion_notes"] == "done early"
        res = client.post(f"{BASE}/stages/{sid2}/skip", json={"actor_id": ACTOR, "reason": "not needed"})
        assert res.get_json()["stages"][1]["completion_notes"] == "not needed"


# ═════════════════════════════════════════════════════════════════════════════
# Dashboard, health, app-level handlers
# ═════════════════════════════════════════════════════════════════════════════


class TestMiscRoutes:
    def test_dashboard(self, client, api_workflow):
        res = client.get(f"{BASE}/dashboard?evaluation_project_id=proj-9")
        assert res.status_code == 200
        data = res.get_json()
        assert data["stats"]["total"] == 1
        assert data["stats"]["by_status"]["not_started"] == 1
        assert len(data["workflows"]) == 1
        assert data["upcoming_milestones"] == []

    def test_dashboard_requires_project(self, client):
        assert client.get(f"{BASE}/dashboard").status_code == 400

    def test_health(self, client, seeded_templates):
        assert client.get("/api/v1/health/ready").status_code == 200
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        assert res.get_json()["checks"]["templates"]["active"] == 3

    def test_request_id_header(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
        assert "X-Request-Duration-Ms" in res.headers

    def test_unknown_route(self, client):
        res = client.get("/api/v1/nope")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_wrong_method(self, client):
        assert client.delete(f"{BASE}/templates").status_code == 405
