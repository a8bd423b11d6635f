"""
Shared pytest fixtures for the Procurement Workflow Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - seeded_templates: the three default templates, committed
    - template: a small 3-stage template (5 / 10 / 7 target days)
    - workflow: a NOT_STARTED workflow instantiated from ``template``
"""

import pytest

from procurement import create_app
from procurement.models import db as _db
from procurement.models.procurement import WorkflowTemplate, seed_default_templates
from procurement.services import workflow_service

ACTOR = "user-1"
PROJECT = "proj-1"
VENDOR = "vendor-1"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def seeded_templates():
    """Seed and commit the default template catalog."""
    seed_default_templates()
    _db.session.commit()
    return WorkflowTemplate.query.order_by(WorkflowTemplate.id).all()


@pytest.fixture()
def template():
    """Three stages with 5, 10 and 7 target days; two milestones each."""
    t = WorkflowTemplate(
        template_name="Test Template",
        template_description="Three-stage template for tests",
        procurement_type="software",
        stages=[
            {"name": "Negotiation", "order": 1, "target_days": 5,
             "milestones": ["Terms agreed", "Pricing agreed"]},
            {"name": "Legal Review", "order": 2, "target_days": 10,
             "milestones": ["Redlines addressed", "Contract approved"]},
            {"name": "Kickoff", "order": 3, "target_days": 7,
             "milestones": ["Kickoff held", "Plan baselined"]},
        ],
        is_default=False,
        is_active=True,
    )
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def workflow(template):
    """A NOT_STARTED workflow dict created from ``template`` starting 2026-01-01."""
    return workflow_service.create_workflow_from_template(
        template_id=template.id,
        vendor_id=VENDOR,
        evaluation_project_id=PROJECT,
        name="Acme onboarding",
        description=None,
        planned_start_date="2026-01-01",
        owner_name="Dana",
        created_by=ACTOR,
    )


@pytest.fixture()
def started_workflow(workflow):
    """``workflow`` after start_workflow + start of its first stage."""
    workflow_service.start_workflow(workflow["id"], ACTOR)
    return workflow_service.start_stage(workflow["stages"][0]["id"], ACTOR)
