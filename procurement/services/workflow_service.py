"""
Procurement Workflow — Orchestrator (service façade).

The only module the REST layer calls. Each public function is one unit of
work: validate arguments, delegate to the template instantiator or the
lifecycle state machines, commit (or roll back everything), then return the
full serialized aggregate (workflow + stages + milestones + derived
progress / overdue / at-risk fields) so callers can refresh without a
second round trip.

Rules:
  - actor_id is always an explicit parameter (never from g / session).
  - db.session.commit() happens only in this file.
  - Any SQLAlchemyError surfaces as RepositoryUnavailable after rollback;
    a concurrent-update conflict surfaces as InvalidTransition.
  - No retries here; retry policy belongs to the caller.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from procurement.core.exceptions import (
    InvalidTransition,
    RepositoryUnavailable,
    WorkflowEngineError,
    WorkflowNotFound,
)
from procurement.models import db
from procurement.models.procurement import (
    MilestoneAction,
    StageAction,
    Workflow,
    WorkflowAction,
    WORKFLOW_TERMINAL_STATUSES,
    WorkflowStatus,
)
from procurement.services import activity_log, progress, template_service
from procurement.services.workflow_lifecycle import (
    transition_milestone,
    transition_stage,
    add_milestone as _add_milestone,
    transition_workflow,
    update_stage_owner as _update_stage_owner,
)

logger = logging.getLogger(__name__)


# ── Transaction helpers ──────────────────────────────────────────────────────


@contextmanager
def _unit_of_work(operation: str, entity: str = "workflow", entity_id=None, action: str | None = None):
    """Commit on success; roll back and translate storage errors otherwise."""
    try:
        yield
        db.session.commit()
    except WorkflowEngineError:
        db.session.rollback()
        raise
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Concurrent update on %s %s during %s: %s", entity, entity_id, operation, exc)
        raise InvalidTransition(
            entity, entity_id, action or operation, None,
            "changed concurrently; refresh and retry",
        ) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Repository failure during %s", operation)
        raise RepositoryUnavailable(operation, exc.__class__.__name__) from exc


@contextmanager
def _reading(operation: str):
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Repository failure during %s", operation)
        raise RepositoryUnavailable(operation, exc.__class__.__name__) from exc


def _setting(key: str, default):
    return current_app.config.get(key, default)


# ── Serialization ────────────────────────────────────────────────────────────


def serialize_workflow(workflow: Workflow, today: date | None = None) -> dict:
    """Workflow aggregate with nested stages/milestones and derived metrics."""
    result = workflow.to_dict(include_children=True)
    result.update(progress.derive_workflow_metrics(
        workflow,
        today,
        window_days=_setting("WORKFLOW_AT_RISK_WINDOW_DAYS", progress.AT_RISK_WINDOW_DAYS),
        progress_threshold=_setting(
            "WORKFLOW_AT_RISK_PROGRESS_THRESHOLD", progress.AT_RISK_PROGRESS_THRESHOLD,
        ),
    ))
    return result


def _load_workflow(workflow_id) -> Workflow:
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        raise WorkflowNotFound(workflow_id)
    return workflow


def _aggregate(workflow_id) -> dict:
    with _reading("load workflow"):
        return serialize_workflow(_load_workflow(workflow_id))


def _project_workflows(evaluation_project_id) -> list[Workflow]:
    stmt = (
        select(Workflow)
        .where(Workflow.evaluation_project_id == str(evaluation_project_id))
        .order_by(Workflow.created_at.desc(), Workflow.id.desc())
    )
    return list(db.session.execute(stmt).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


def get_templates(procurement_type: str | None = None) -> list[dict]:
    """Active templates (defaults first), optionally filtered by procurement type."""
    with _reading("list templates"):
        return [t.to_dict() for t in template_service.list_templates(procurement_type)]


def get_template(template_id) -> dict:
    with _reading("get template"):
        return template_service.get_template(template_id).to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


def create_workflow_from_template(
    template_id,
    vendor_id,
    evaluation_project_id,
    name: str | None,
    description: str | None,
    planned_start_date,
    owner_name: str | None,
    created_by,
) -> dict:
    """
    Instantiate a workflow tree from a template, atomically.

    Raises:
        TemplateNotFound, ValidationError, RepositoryUnavailable
    """
    with _unit_of_work("create workflow from template"):
        workflow = template_service.instantiate_workflow(
            template_id, vendor_id, evaluation_project_id, name, description,
            planned_start_date, owner_name, created_by,
        )
        workflow_id = workflow.id
    return _aggregate(workflow_id)


def create_custom_workflow(
    stages,
    vendor_id,
    evaluation_project_id,
    name: str,
    description: str | None,
    planned_start_date,
    owner_name: str | None,
    created_by,
) -> dict:
    """Create a workflow tree from caller-supplied stage definitions, atomically."""
    with _unit_of_work("create custom workflow"):
        workflow = template_service.create_custom_workflow(
            stages, vendor_id, evaluation_project_id, name, description,
            planned_start_date, owner_name, created_by,
        )
        workflow_id = workflow.id
    return _aggregate(workflow_id)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_workflows(evaluation_project_id) -> list[dict]:
    """All workflows of an evaluation project, newest first."""
    with _reading("list workflows"):
        return [serialize_workflow(w) for w in _project_workflows(evaluation_project_id)]


def get_workflow(workflow_id) -> dict:
    return _aggregate(workflow_id)


def get_vendor_workflow(evaluation_project_id, vendor_id) -> dict | None:
    """The vendor's workflow in a project: active ones first, then most recent."""
    with _reading("get vendor workflow"):
        candidates = [
            w for w in _project_workflows(evaluation_project_id)
            if w.vendor_id == str(vendor_id)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda w: WorkflowStatus(w.status) in WORKFLOW_TERMINAL_STATUSES)
        return serialize_workflow(candidates[0])


def get_timeline_data(workflow_id) -> dict:
    """Compact workflow + stage ranges for timeline visualisation."""
    with _reading("get timeline"):
        workflow = _load_workflow(workflow_id)
        stages = []
        for stage in workflow.stages:
            completed, total = progress.milestone_counts(stage)
            stages.append({
                "id": stage.id,
                "name": stage.name,
                "order_index": stage.order_index,
                "status": stage.status,
                "target_days": stage.target_days,
                "planned_start": stage.planned_start_date.isoformat() if stage.planned_start_date else None,
                "planned_end": stage.planned_end_date.isoformat() if stage.planned_end_date else None,
                "actual_start": stage.actual_start_date.isoformat() if stage.actual_start_date else None,
                "actual_end": stage.actual_end_date.isoformat() if stage.actual_end_date else None,
                "milestones": [
                    {"id": m.id, "name": m.name, "status": m.status,
                     "completed_at": m.completed_at.isoformat() if m.completed_at else None}
                    for m in stage.milestones
                ],
                "completed_milestones": completed,
                "total_milestones": total,
            })
        return {
            "workflow": {
                "id": workflow.id,
                "name": workflow.name,
                "status": workflow.status,
                "progress": progress.progress_percent(workflow),
                "planned_start": workflow.planned_start_date.isoformat() if workflow.planned_start_date else None,
                "planned_end": workflow.planned_end_date.isoformat() if workflow.planned_end_date else None,
                "actual_start": workflow.actual_start_date.isoformat() if workflow.actual_start_date else None,
                "actual_end": workflow.actual_end_date.isoformat() if workflow.actual_end_date else None,
            },
            "stages": stages,
        }


def get_activity_log(workflow_id, limit: int | None = None) -> list[dict]:
    """Activity entries for a workflow, newest first."""
    if limit is None:
        limit = _setting("WORKFLOW_ACTIVITY_LOG_LIMIT", activity_log.DEFAULT_LIMIT)
    with _reading("get activity log"):
        _load_workflow(workflow_id)
        return [e.to_dict() for e in activity_log.list_activity(workflow_id, limit)]


def get_dashboard_data(evaluation_project_id, today: date | None = None) -> dict:
    """
    Project dashboard: serialized workflows, status/risk stats and the
    cross-workflow "what's next" milestone list.
    """
    with _reading("get dashboard"):
        workflows = _project_workflows(evaluation_project_id)
        stats = progress.dashboard_stats(
            workflows,
            today,
            window_days=_setting("WORKFLOW_AT_RISK_WINDOW_DAYS", progress.AT_RISK_WINDOW_DAYS),
            progress_threshold=_setting(
                "WORKFLOW_AT_RISK_PROGRESS_THRESHOLD", progress.AT_RISK_PROGRESS_THRESHOLD,
            ),
            completed_window_days=_setting(
                "WORKFLOW_COMPLETED_WINDOW_DAYS", progress.COMPLETED_WINDOW_DAYS,
            ),
        )
        upcoming = progress.upcoming_milestones(
            workflows, limit=_setting("WORKFLOW_DASHBOARD_UPCOMING_LIMIT", 10),
        )
        return {
            "workflows": [serialize_workflow(w, today) for w in workflows],
            "stats": stats,
            "upcoming_milestones": upcoming,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Workflow transitions
# ═════════════════════════════════════════════════════════════════════════════


def _workflow_transition(workflow_id, action: WorkflowAction, actor_id, reason=None, notes=None) -> dict:
    with _unit_of_work(f"{action.value} workflow", "workflow", workflow_id, action.value):
        transition_workflow(workflow_id, action.value, actor_id, reason=reason, notes=notes)
    return _aggregate(workflow_id)


def start_workflow(workflow_id, actor_id) -> dict:
    return _workflow_transition(workflow_id, WorkflowAction.START, actor_id)


def complete_workflow(workflow_id, actor_id, notes=None) -> dict:
    return _workflow_transition(workflow_id, WorkflowAction.COMPLETE, actor_id, notes=notes)


def cancel_workflow(workflow_id, actor_id, reason) -> dict:
    return _workflow_transition(workflow_id, WorkflowAction.CANCEL, actor_id, reason)


def update_workflow(workflow_id, changes: dict, actor_id) -> dict:
    """
    Edit name, description, owner or planned dates; moving the start re-plans
    the stages. Not a status transition.

    Raises:
        WorkflowNotFound, InvalidTransition, ValidationError, RepositoryUnavailable
    """
    with _unit_of_work("update workflow", "workflow", workflow_id, "update"):
        template_service.update_workflow(workflow_id, changes, actor_id)
    return _aggregate(workflow_id)


# ═════════════════════════════════════════════════════════════════════════════
# Stage transitions
# ═════════════════════════════════════════════════════════════════════════════


def _stage_transition(stage_id, action: StageAction, actor_id, reason=None, notes=None) -> dict:
    with _unit_of_work(f"{action.value} stage", "stage", stage_id, action.value):
        stage = transition_stage(stage_id, action.value, actor_id, reason=reason, notes=notes)
        workflow_id = stage.workflow_id
    return _aggregate(workflow_id)


def start_stage(stage_id, actor_id) -> dict:
    return _stage_transition(stage_id, StageAction.START, actor_id)


def complete_stage(stage_id, actor_id, notes=None) -> dict:
    return _stage_transition(stage_id, StageAction.COMPLETE, actor_id, notes=notes)


def skip_stage(stage_id, actor_id, reason=None) -> dict:
    return _stage_transition(stage_id, StageAction.SKIP, actor_id, reason)


def block_stage(stage_id, reason, actor_id) -> dict:
    return _stage_transition(stage_id, StageAction.BLOCK, actor_id, reason)


def unblock_stage(stage_id, actor_id) -> dict:
    return _stage_transition(stage_id, StageAction.UNBLOCK, actor_id)


def update_stage_owner(stage_id, owner_name, actor_id) -> dict:
    with _unit_of_work("update stage owner", "stage", stage_id, "update_owner"):
        stage = _update_stage_owner(stage_id, owner_name, actor_id)
        workflow_id = stage.workflow_id
    return _aggregate(workflow_id)


def add_milestone(stage_id, name, actor_id, order=None) -> dict:
    """Append a PENDING milestone to an unfinished stage."""
    with _unit_of_work("add milestone", "stage", stage_id, "add_milestone"):
        milestone = _add_milestone(stage_id, name, actor_id, order)
        workflow_id = milestone.stage.workflow_id
    return _aggregate(workflow_id)


# ═════════════════════════════════════════════════════════════════════════════
# Milestone transitions
# ═════════════════════════════════════════════════════════════════════════════


def _milestone_transition(milestone_id, action: MilestoneAction, actor_id, **texts) -> dict:
    with _unit_of_work(f"{action.value} milestone", "milestone", milestone_id, action.value):
        milestone = transition_milestone(milestone_id, action.value, actor_id, **texts)
        workflow_id = milestone.stage.workflow_id
    return _aggregate(workflow_id)


def complete_milestone(milestone_id, actor_id, notes=None) -> dict:
    return _milestone_transition(milestone_id, MilestoneAction.COMPLETE, actor_id, notes=notes)


def skip_milestone(milestone_id, actor_id, reason=None) -> dict:
    return _milestone_transition(milestone_id, MilestoneAction.SKIP, actor_id, reason=reason)
