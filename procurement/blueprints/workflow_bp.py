"""
Procurement Workflow Blueprint.

Thin HTTP layer over procurement.services.workflow_service: parse the
request, call exactly one orchestrator function, return its dict.

Endpoints:
  Templates:   GET  /procurement/templates[?procurement_type=]
               GET  /procurement/templates/<id>
  Workflows:   POST /procurement/workflows                   (from template)
               POST /procurement/workflows/custom
               GET  /procurement/workflows?evaluation_project_id=[&vendor_id=]
               GET  /procurement/workflows/<id>
               PATCH /procurement/workflows/<id>                (name, dates, owner)
               GET  /procurement/workflows/<id>/timeline
               GET  /procurement/workflows/<id>/activity[?limit=]
               POST /procurement/workflows/<id>/start|complete|cancel
  Stages:      POST /procurement/stages/<id>/start|complete|skip|block|unblock
               PUT  /procurement/stages/<id>/owner
               POST /procurement/stages/<id>/milestones
  Milestones:  POST /procurement/milestones/<id>/complete|skip
  Dashboard:   GET  /procurement/dashboard?evaluation_project_id=

Every mutation takes the acting user from the JSON body (``actor_id``).
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from procurement.blueprints import parse_limit
from procurement.core.exceptions import (
    NotFoundError,
    RepositoryUnavailable,
    WorkflowEngineError,
)
from procurement.services import workflow_service
from procurement.services.template_service import UPDATABLE_FIELDS
from procurement.utils.errors import E, api_error, engine_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("procurement", __name__, url_prefix="/api/v1/procurement")


# ── Error handlers ───────────────────────────────────────────────────────────


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return engine_error(error)


@workflow_bp.errorhandler(RepositoryUnavailable)
def _handle_repository(error: RepositoryUnavailable):
    logger.error("Repository unavailable endpoint=%s: %s", request.endpoint, error)
    return engine_error(error)


@workflow_bp.errorhandler(WorkflowEngineError)
def _handle_engine(error: WorkflowEngineError):
    return engine_error(error)


@workflow_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in procurement endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/templates", methods=["GET"])
def list_templates():
    """Active templates, optionally filtered by procurement_type."""
    items = workflow_service.get_templates(request.args.get("procurement_type") or None)
    return jsonify({"items": items, "total": len(items)})


@workflow_bp.route("/templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(workflow_service.get_template(template_id))


# ═════════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    """Instantiate a workflow from a template."""
    data = _body()
    if data.get("template_id") is None:
        return api_error(E.VALIDATION_REQUIRED, "template_id is required")
    result = workflow_service.create_workflow_from_template(
        template_id=data["template_id"],
        vendor_id=data.get("vendor_id"),
        evaluation_project_id=data.get("evaluation_project_id"),
        name=data.get("name"),
        description=data.get("description"),
        planned_start_date=data.get("planned_start_date"),
        owner_name=data.get("owner_name"),
        created_by=data.get("actor_id"),
    )
    return jsonify(result), 201


@workflow_bp.route("/workflows/custom", methods=["POST"])
def create_custom_workflow():
    """Create a workflow from caller-supplied stage definitions."""
    data = _body()
    result = workflow_service.create_custom_workflow(
        stages=data.get("stages"),
        vendor_id=data.get("vendor_id"),
        evaluation_project_id=data.get("evaluation_project_id"),
        name=data.get("name"),
        description=data.get("description"),
        planned_start_date=data.get("planned_start_date"),
        owner_name=data.get("owner_name"),
        created_by=data.get("actor_id"),
    )
    return jsonify(result), 201


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    """Workflows of an evaluation project; with vendor_id, that vendor's workflow."""
    project_id = request.args.get("evaluation_project_id", "").strip()
    if not project_id:
        return api_error(E.VALIDATION_REQUIRED, "evaluation_project_id is required")

    vendor_id = request.args.get("vendor_id", "").strip()
    if vendor_id:
        return jsonify({"workflow": workflow_service.get_vendor_workflow(project_id, vendor_id)})

    items = workflow_service.get_workflows(project_id)
    return jsonify({"items": items, "total": len(items)})


@workflow_bp.route("/workflows/<int:workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    return jsonify(workflow_service.get_workflow(workflow_id))


@workflow_bp.route("/workflows/<int:workflow_id>", methods=["PATCH"])
def update_workflow(workflow_id):
    """Edit name, description, owner_name or planned dates."""
    data = _body()
    changes = {k: data[k] for k in UPDATABLE_FIELDS if k in data}
    return jsonify(workflow_service.update_workflow(workflow_id, changes, data.get("actor_id")))


@workflow_bp.route("/workflows/<int:workflow_id>/timeline", methods=["GET"])
def get_timeline(workflow_id):
    return jsonify(workflow_service.get_timeline_data(workflow_id))


@workflow_bp.route("/workflows/<int:workflow_id>/activity", methods=["GET"])
def get_activity(workflow_id):
    """Activity log, newest first."""
    limit = parse_limit(default_limit=current_app.config.get("WORKFLOW_ACTIVITY_LOG_LIMIT", 50))
    items = workflow_service.get_activity_log(workflow_id, limit)
    return jsonify({"items": items, "total": len(items)})


@workflow_bp.route("/workflows/<int:workflow_id>/start", methods=["POST"])
def start_workflow(workflow_id):
    return jsonify(workflow_service.start_workflow(workflow_id, _body().get("actor_id")))


@workflow_bp.route("/workflows/<int:workflow_id>/complete", methods=["POST"])
def complete_workflow(workflow_id):
    data = _body()
    return jsonify(workflow_service.complete_workflow(
        workflow_id, data.get("actor_id"), data.get("notes"),
    ))


@workflow_bp.route("/workflows/<int:workflow_id>/cancel", methods=["POST"])
def cancel_workflow(workflow_id):
    data = _body()
    return jsonify(workflow_service.cancel_workflow(
        workflow_id, data.get("actor_id"), data.get("reason"),
    ))


# ═════════════════════════════════════════════════════════════════════════════
# Stages
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/stages/<int:stage_id>/start", methods=["POST"])
def start_stage(stage_id):
    return jsonify(workflow_service.start_stage(stage_id, _body().get("actor_id")))


@workflow_bp.route("/stages/<int:stage_id>/complete", methods=["POST"])
def complete_stage(stage_id):
    data = _body()
    return jsonify(workflow_service.complete_stage(stage_id, data.get("actor_id"), data.get("notes")))


@workflow_bp.route("/stages/<int:stage_id>/skip", methods=["POST"])
def skip_stage(stage_id):
    data = _body()
    return jsonify(workflow_service.skip_stage(stage_id, data.get("actor_id"), data.get("reason")))


@workflow_bp.route("/stages/<int:stage_id>/block", methods=["POST"])
def block_stage(stage_id):
    data = _body()
    return jsonify(workflow_service.block_stage(stage_id, data.get("reason"), data.get("actor_id")))


@workflow_bp.route("/stages/<int:stage_id>/unblock", methods=["POST"])
def unblock_stage(stage_id):
    return jsonify(workflow_service.unblock_stage(stage_id, _body().get("actor_id")))


@workflow_bp.route("/stages/<int:stage_id>/milestones", methods=["POST"])
def add_milestone(stage_id):
    data = _body()
    result = workflow_service.add_milestone(
        stage_id, data.get("name"), data.get("actor_id"), data.get("order"),
    )
    return jsonify(result), 201


@workflow_bp.route("/stages/<int:stage_id>/owner", methods=["PUT"])
def update_stage_owner(stage_id):
    data = _body()
    return jsonify(workflow_service.update_stage_owner(
        stage_id, data.get("owner_name"), data.get("actor_id"),
    ))


# ═════════════════════════════════════════════════════════════════════════════
# Milestones
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/milestones/<int:milestone_id>/complete", methods=["POST"])
def complete_milestone(milestone_id):
    data = _body()
    return jsonify(workflow_service.complete_milestone(
        milestone_id, data.get("actor_id"), data.get("notes"),
    ))


@workflow_bp.route("/milestones/<int:milestone_id>/skip", methods=["POST"])
def skip_milestone(milestone_id):
    data = _body()
    return jsonify(workflow_service.skip_milestone(
        milestone_id, data.get("actor_id"), data.get("reason"),
    ))


# ═════════════════════════════════════════════════════════════════════════════
# Dashboard
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/dashboard", methods=["GET"])
def dashboard():
    """Workflows, stats and upcoming milestones for one evaluation project."""
    project_id = request.args.get("evaluation_project_id", "").strip()
    if not project_id:
        return api_error(E.VALIDATION_REQUIRED, "evaluation_project_id is required")
    return jsonify(workflow_service.get_dashboard_data(project_id))
