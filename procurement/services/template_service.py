"""
Procurement Workflow — Template catalog & instantiator.

Business logic for:
    - Template catalog:      active templates (defaults first), by procurement type
    - Stage date planning:   sequential planned ranges from target_days
    - Instantiation:         Workflow + Stage + Milestone tree from a template
    - Custom workflows:      same algorithm, caller-supplied stage definitions
    - Plan edits:            name, description, owner, planned dates (re-plans stages)

Templates are read-only here. Instantiation only adds rows to the session
and flushes; the orchestrator commits the whole tree (plus its
"created" activity entry) as one unit or rolls all of it back.
"""

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import select

from procurement.core.exceptions import InvalidTransition, TemplateNotFound, ValidationError
from procurement.models import db
from procurement.models.procurement import (
    PROCUREMENT_TYPES,
    ActivityType,
    Milestone,
    MilestoneStatus,
    Stage,
    StageStatus,
    Workflow,
    WorkflowStatus,
    WorkflowTemplate,
)
from procurement.services.activity_log import append_activity
from procurement.services.workflow_lifecycle import (
    lock_workflow,
    optional_text,
    require_actor,
    require_identifier,
    require_text,
)

logger = logging.getLogger(__name__)


# ── Template catalog ─────────────────────────────────────────────────────────


def list_templates(procurement_type: str | None = None) -> list[WorkflowTemplate]:
    """Active templates, defaults first, then by name."""
    stmt = select(WorkflowTemplate).where(WorkflowTemplate.is_active.is_(True))
    if procurement_type is not None:
        if procurement_type not in PROCUREMENT_TYPES:
            raise ValidationError(
                f"procurement_type must be one of: {', '.join(sorted(PROCUREMENT_TYPES))}",
                details={"procurement_type": procurement_type},
            )
        stmt = stmt.where(WorkflowTemplate.procurement_type == procurement_type)
    stmt = stmt.order_by(WorkflowTemplate.is_default.desc(), WorkflowTemplate.template_name)
    return list(db.session.execute(stmt).scalars())


def get_template(template_id) -> WorkflowTemplate:
    template = db.session.get(WorkflowTemplate, template_id) if template_id is not None else None
    if template is None:
        raise TemplateNotFound(template_id)
    return template


# ── Input coercion ───────────────────────────────────────────────────────────


def parse_date(value, field: str = "planned_start_date") -> date | None:
    """
    Accept a date, a datetime, an ISO ``YYYY-MM-DD`` string or a full ISO
    datetime string; blank → None. Trailing garbage is rejected.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text).date()
        except ValueError:
            pass
    raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", details={field: str(value)})


def normalize_stage_definitions(definitions) -> list[dict]:
    """
    Validate and normalize stage definitions:
        {"name": str, "target_days": int|None, "description": str, "milestones": [str]}

    Milestones may be plain names or ``{"name": ...}`` objects.
    """
    if not isinstance(definitions, list):
        raise ValidationError("stages must be a list", details={"stages": "must be a list"})

    normalized = []
    for position, definition in enumerate(definitions):
        if not isinstance(definition, dict):
            raise ValidationError(f"stages[{position}] must be an object")
        name = definition.get("name")
        name = name.strip() if isinstance(name, str) else ""
        if not name:
            raise ValidationError(
                f"stages[{position}].name is required",
                details={f"stages[{position}].name": "required"},
            )

        target_days = definition.get("target_days", definition.get("targetDays"))
        if target_days is not None:
            if isinstance(target_days, bool) or not isinstance(target_days, int) or target_days < 0:
                raise ValidationError(
                    f"stages[{position}].target_days must be a non-negative integer",
                    details={f"stages[{position}].target_days": str(target_days)},
                )

        milestones = []
        for item in definition.get("milestones") or []:
            milestone_name = item.get("name") if isinstance(item, dict) else item
            milestone_name = (milestone_name or "").strip() if isinstance(milestone_name, str) else ""
            if not milestone_name:
                raise ValidationError(f"stages[{position}] has a blank milestone name")
            milestones.append(milestone_name)

        normalized.append({
            "name": name,
            "target_days": target_days,
            "description": definition.get("description") or "",
            "milestones": milestones,
        })
    return normalized


# ── Stage date planning ──────────────────────────────────────────────────────


def plan_stage_dates(start: date | None, target_days: list) -> list[tuple]:
    """
    Sequential planned ranges: stage N starts where stage N-1 ends, the
    first starts at ``start``. Boundary dates are shared.

    A stage without target_days gets no planned end and the next stage
    starts from the same date. Without a start date nothing is planned.

    >>> plan_stage_dates(date(2026, 1, 1), [5, 10, 7])[1]
    (datetime.date(2026, 1, 6), datetime.date(2026, 1, 16))
    """
    ranges = []
    cursor = start
    for days in target_days:
        if cursor is None:
            ranges.append((None, None))
            continue
        if days is None:
            ranges.append((cursor, None))
            continue
        end = cursor + timedelta(days=days)
        ranges.append((cursor, end))
        cursor = end
    return ranges


# ── Instantiation ────────────────────────────────────────────────────────────


def build_workflow(
    *,
    stage_definitions: list[dict],
    vendor_id,
    evaluation_project_id,
    name: str,
    description: str | None,
    planned_start_date,
    owner_name: str | None,
    created_by,
    template: WorkflowTemplate | None = None,
) -> Workflow:
    """Materialize the Workflow → Stage → Milestone tree and flush it."""
    vendor_id = require_identifier(vendor_id, "vendor_id")
    evaluation_project_id = require_identifier(evaluation_project_id, "evaluation_project_id")
    creator = require_actor(created_by)
    name = require_text(name, "name")
    description = optional_text(description, "description")
    owner_name = optional_text(owner_name, "owner_name")
    start = parse_date(planned_start_date)

    ranges = plan_stage_dates(start, [d["target_days"] for d in stage_definitions])
    planned_ends = [end for _, end in ranges if end is not None]

    workflow = Workflow(
        evaluation_project_id=evaluation_project_id,
        vendor_id=vendor_id,
        template_id=template.id if template else None,
        name=name,
        description=description or "",
        status=WorkflowStatus.NOT_STARTED.value,
        planned_start_date=start,
        planned_end_date=max(planned_ends) if planned_ends else None,
        owner_name=owner_name,
        created_by=creator,
    )
    db.session.add(workflow)

    for order_index, (definition, (stage_start, stage_end)) in enumerate(zip(stage_definitions, ranges)):
        stage = Stage(
            order_index=order_index,
            name=definition["name"],
            description=definition.get("description") or "",
            status=StageStatus.PENDING.value,
            target_days=definition["target_days"],
            planned_start_date=stage_start,
            planned_end_date=stage_end,
        )
        for milestone_order, milestone_name in enumerate(definition["milestones"], start=1):
            stage.milestones.append(Milestone(
                name=milestone_name,
                milestone_order=milestone_order,
                status=MilestoneStatus.PENDING.value,
            ))
        workflow.stages.append(stage)

    db.session.flush()
    return workflow


def instantiate_workflow(
    template_id,
    vendor_id,
    evaluation_project_id,
    name: str | None,
    description: str | None,
    planned_start_date,
    owner_name: str | None,
    created_by,
) -> Workflow:
    """
    Create a NOT_STARTED workflow from a template and log its creation.

    Raises:
        TemplateNotFound, ValidationError
    """
    template = get_template(template_id)
    definitions = normalize_stage_definitions(template.stage_definitions())

    workflow = build_workflow(
        stage_definitions=definitions,
        vendor_id=vendor_id,
        evaluation_project_id=evaluation_project_id,
        name=name or template.template_name,
        description=description if description is not None else template.template_description,
        planned_start_date=planned_start_date,
        owner_name=owner_name,
        created_by=created_by,
        template=template,
    )
    append_activity(
        workflow_id=workflow.id,
        activity_type=ActivityType.WORKFLOW_CREATED,
        description=f"Workflow created from template {template.template_name}",
        performed_by=workflow.created_by,
    )
    logger.info(
        "Workflow %s instantiated from template %s (%d stages)",
        workflow.id, template.id, len(definitions),
        extra={"event_type": "workflow.create", "workflow_id": workflow.id, "actor_id": workflow.created_by},
    )
    return workflow


def create_custom_workflow(
    stages,
    vendor_id,
    evaluation_project_id,
    name: str,
    description: str | None,
    planned_start_date,
    owner_name: str | None,
    created_by,
) -> Workflow:
    """Create a NOT_STARTED workflow from caller-supplied stage definitions."""
    definitions = normalize_stage_definitions(stages)
    if not definitions:
        raise ValidationError("at least one stage is required", details={"stages": "empty"})

    workflow = build_workflow(
        stage_definitions=definitions,
        vendor_id=vendor_id,
        evaluation_project_id=evaluation_project_id,
        name=name,
        description=description,
        planned_start_date=planned_start_date,
        owner_name=owner_name,
        created_by=created_by,
    )
    append_activity(
        workflow_id=workflow.id,
        activity_type=ActivityType.WORKFLOW_CREATED,
        description="Custom workflow created",
        performed_by=workflow.created_by,
    )
    logger.info(
        "Custom workflow %s created (%d stages)", workflow.id, len(definitions),
        extra={"event_type": "workflow.create", "workflow_id": workflow.id, "actor_id": workflow.created_by},
    )
    return workflow


# ── Plan edits ───────────────────────────────────────────────────────────────

UPDATABLE_FIELDS = ("name", "description", "planned_start_date", "planned_end_date", "owner_name")
_DATE_FIELDS = ("planned_start_date", "planned_end_date")


def update_workflow(workflow_id, changes: dict, actor_id) -> Workflow:
    """
    Edit the non-status fields of a workflow that is not finished.

    Moving ``planned_start_date`` re-plans every stage's planned range from
    its target_days; the workflow's planned end is recomputed too unless the
    same call sets ``planned_end_date`` explicitly. Logs one
    ``date_changed`` entry when any planned date moved, otherwise one
    ``workflow_updated`` entry; a no-op edit logs nothing.

    Raises:
        WorkflowNotFound, InvalidTransition, ValidationError
    """
    actor = require_actor(actor_id)
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("no changes given", details={"fields": list(UPDATABLE_FIELDS)})
    unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(
            f"cannot update: {', '.join(unknown)}",
            details={field: "not updatable" for field in unknown},
        )

    values = {}
    if "name" in changes:
        values["name"] = require_text(changes["name"], "name")
    if "description" in changes:
        values["description"] = optional_text(changes["description"], "description") or ""
    if "owner_name" in changes:
        values["owner_name"] = optional_text(changes["owner_name"], "owner_name")
    for field in _DATE_FIELDS:
        if field in changes:
            values[field] = parse_date(changes[field], field)

    workflow = lock_workflow(workflow_id)
    if workflow.is_terminal:
        raise InvalidTransition(
            "workflow", workflow.id, "update", workflow.status, "finished workflows are read-only",
        )

    ranges = None
    if "planned_start_date" in values:
        ranges = plan_stage_dates(values["planned_start_date"], [s.target_days for s in workflow.stages])
        if "planned_end_date" not in values:
            planned_ends = [end for _, end in ranges if end is not None]
            values["planned_end_date"] = max(planned_ends) if planned_ends else None

    start = values.get("planned_start_date", workflow.planned_start_date)
    end = values.get("planned_end_date", workflow.planned_end_date)
    if start and end and end < start:
        raise ValidationError(
            "planned_end_date is before planned_start_date",
            details={"planned_end_date": end.isoformat(), "planned_start_date": start.isoformat()},
        )

    changed = [field for field, value in values.items() if getattr(workflow, field) != value]
    if not changed:
        return workflow

    before = {field: getattr(workflow, field) for field in _DATE_FIELDS}
    for field in changed:
        setattr(workflow, field, values[field])
    if ranges is not None and "planned_start_date" in changed:
        for stage, (stage_start, stage_end) in zip(workflow.stages, ranges):
            stage.planned_start_date = stage_start
            stage.planned_end_date = stage_end

    moved = [field for field in _DATE_FIELDS if field in changed]
    if moved:
        activity_type = ActivityType.DATE_CHANGED
        description = "Planned dates changed: " + ", ".join(
            f"{field.replace('_', ' ')} {_iso_or_none(before[field])} → {_iso_or_none(getattr(workflow, field))}"
            for field in moved
        )
    else:
        activity_type = ActivityType.WORKFLOW_UPDATED
        description = f"Workflow updated: {', '.join(changed)}"

    db.session.flush()
    append_activity(
        workflow_id=workflow.id,
        activity_type=activity_type,
        description=description,
        performed_by=actor,
    )
    logger.info(
        "Workflow %s updated (%s)", workflow.id, ", ".join(changed),
        extra={"event_type": "workflow.update", "workflow_id": workflow.id, "actor_id": actor},
    )
    return workflow


def _iso_or_none(value) -> str:
    return value.isoformat() if value else "none"
