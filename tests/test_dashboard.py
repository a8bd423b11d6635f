"""Dashboard aggregation tests (workflow_service.get_dashboard_data).

Uses a fixed ``today`` so overdue / at-risk / completed-this-week are
deterministic against the 2026-01-01 plan (planned end 2026-01-23).
"""

from datetime import date

from procurement.services import workflow_service as svc

ACTOR = "user-1"


def _new(template, vendor):
    return svc.create_workflow_from_template(
        template.id, vendor, "proj-dash", f"WF {vendor}", None, "2026-01-01", None, ACTOR,
    )


class TestDashboard:
    def test_overdue_and_at_risk_tallies(self, template):
        overdue = _new(template, "v-overdue")
        svc.start_workflow(overdue["id"], ACTOR)
        on_track = _new(template, "v-fine")
        svc.start_workflow(on_track["id"], ACTOR)
        _new(template, "v-waiting")

        # 2026-01-20: 3 days before planned end, 0% done → at risk
        data = svc.get_dashboard_data("proj-dash", today=date(2026, 1, 20))
        assert data["stats"]["at_risk"] == 2
        assert data["stats"]["overdue"] == 0

        # 2026-02-01: past planned end
        data = svc.get_dashboard_data("proj-dash", today=date(2026, 2, 1))
        assert data["stats"]["overdue"] == 3
        assert data["stats"]["at_risk"] == 0
        assert data["stats"]["by_status"] == {
            "not_started": 1, "in_progress": 2, "completed": 0, "cancelled": 0,
        }
        flags = {w["vendor_id"]: w["risk_level"] for w in data["workflows"]}
        assert flags == {"v-overdue": "overdue", "v-fine": "overdue", "v-waiting": "overdue"}

    def test_completed_this_week(self, template):
        wf = _new(template, "v-done")
        svc.start_workflow(wf["id"], ACTOR)
        done = svc.complete_workflow(wf["id"], ACTOR)
        finished_on = date.fromisoformat(done["actual_end_date"])

        data = svc.get_dashboard_data("proj-dash", today=finished_on)
        assert data["stats"]["completed_this_week"] == 1
        assert data["stats"]["overdue"] == 0

    def test_upcoming_milestones(self, template):
        first = _new(template, "v-1")
        second = _new(template, "v-2")
        # Second workflow's stage 1 ends earlier (01-06) than first's stage 2 (01-16)
        svc.start_stage(first["stages"][1]["id"], ACTOR)
        svc.start_stage(second["stages"][0]["id"], ACTOR)
        svc.complete_milestone(second["stages"][0]["milestones"][0]["id"], ACTOR)

        upcoming = svc.get_dashboard_data("proj-dash")["upcoming_milestones"]
        assert [(m["vendor_id"], m["name"]) for m in upcoming] == [
            ("v-2", "Pricing agreed"),
            ("v-1", "Redlines addressed"),
            ("v-1", "Contract approved"),
        ]
        assert upcoming[0]["due_date"] == "2026-01-06"
        assert upcoming[0]["stage_name"] == "Negotiation"

    def test_upcoming_respects_configured_limit(self, app, template):
        wf = _new(template, "v-1")
        for stage in wf["stages"]:
            svc.start_stage(stage["id"], ACTOR)
        app.config["WORKFLOW_DASHBOARD_UPCOMING_LIMIT"] = 4
        try:
            assert len(svc.get_dashboard_data("proj-dash")["upcoming_milestones"]) == 4
        finally:
            app.config["WORKFLOW_DASHBOARD_UPCOMING_LIMIT"] = 10

    def test_empty_project(self):
        data = svc.get_dashboard_data("nothing-here")
        assert data == {
            "workflows": [],
            "stats": {
                "total": 0,
                "by_status": {"not_started": 0, "in_progress": 0, "completed": 0, "cancelled": 0},
                "overdue": 0,
                "at_risk": 0,
                "completed_this_week": 0,
            },
            "upcoming_milestones": [],
        }
