"""
Procurement Workflow — Lifecycle Service (Workflow / Stage / Milestone state machines).

Manages status transitions for the three nested entities with:
  - Transition validation against the ``(status, action) → status`` tables
  - Required-argument checks (cancel / block reasons, acting user)
  - Optional completion notes / skip reasons (``completion_notes``)
  - Side effects (date stamping, blocked_reason, completed_by, ...)
  - Activity trail via ``append_activity`` (exactly one entry per transition)

Workflow actions:   start, complete, cancel
Stage actions:      start, complete, skip, block, unblock
Milestone actions:  complete, skip
Not transitions:    update_stage_owner, add_milestone (still logged)

Every function re-reads its target rows with ``SELECT ... FOR UPDATE`` and
``populate_existing`` so legality is checked against committed state at
write time. Nothing here commits; the orchestrator owns the transaction and
rolls back on any raised error, so a rejected transition leaves no writes
and no activity entry behind.

Usage:
    from procurement.services.workflow_lifecycle import transition_stage

    stage = transition_stage(stage_id=7, action="block", actor_id="u-1",
                             reason="awaiting legal")
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from procurement.core.exceptions import (
    InvalidTransition,
    MilestoneNotFound,
    StageNotActive,
    StageNotFound,
    ValidationError,
    WorkflowNotFound,
)
from procurement.models import db
from procurement.models.procurement import (
    MILESTONE_TRANSITIONS,
    STAGE_TRANSITIONS,
    WORKFLOW_TRANSITIONS,
    ActivityType,
    Milestone,
    STAGE_TERMINAL_STATUSES,
    MilestoneAction,
    MilestoneStatus,
    Stage,
    StageAction,
    StageStatus,
    Workflow,
    WorkflowAction,
    next_status,
)
from procurement.services.activity_log import append_activity
from procurement.services.progress import progress_percent

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_WORKFLOW_ACTIVITY = {
    WorkflowAction.START: ActivityType.WORKFLOW_STARTED,
    WorkflowAction.COMPLETE: ActivityType.WORKFLOW_COMPLETED,
    WorkflowAction.CANCEL: ActivityType.WORKFLOW_CANCELLED,
}

_STAGE_ACTIVITY = {
    StageAction.START: ActivityType.STAGE_STARTED,
    StageAction.COMPLETE: ActivityType.STAGE_COMPLETED,
    StageAction.SKIP: ActivityType.STAGE_SKIPPED,
    StageAction.BLOCK: ActivityType.STAGE_BLOCKED,
    StageAction.UNBLOCK: ActivityType.STAGE_UNBLOCKED,
}

_MILESTONE_ACTIVITY = {
    MilestoneAction.COMPLETE: ActivityType.MILESTONE_COMPLETED,
    MilestoneAction.SKIP: ActivityType.MILESTONE_SKIPPED,
}


# ── Validation helpers ───────────────────────────────────────────────────────


def validate_transition(table: dict, current: str, action: str) -> dict:
    """
    Validate whether an action is valid for the current state.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    target = next_status(table, current, action)
    if target is None:
        known_actions = {a.value for _, a in table}
        if action not in known_actions:
            reason = f"Unknown action: {action}"
        else:
            reason = f"Cannot '{action}' from status '{current}'"
        return {"valid": False, "from": current, "to": None, "reason": reason}
    return {"valid": True, "from": current, "to": target.value, "reason": None}


def require_actor(actor_id) -> str:
    """Return the stripped actor id or raise ValidationError."""
    actor = str(actor_id).strip() if actor_id is not None else ""
    if not actor:
        raise ValidationError("actor_id is required", details={"actor_id": "required"})
    return actor


def require_text(value, field: str) -> str:
    """Return the stripped value or raise ValidationError when blank."""
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text


def optional_text(value, field: str) -> str | None:
    """Stripped text, None when absent or blank; non-strings are rejected."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: type(value).__name__})
    return value.strip() or None


def require_identifier(value, field: str) -> str:
    """External reference (vendor, project): a non-blank string or an integer."""
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValidationError(
            f"{field} must be a string or integer",
            details={field: "required" if value is None else type(value).__name__},
        )
    return require_text(str(value), field)


# ── Locked loaders ───────────────────────────────────────────────────────────


def _locked(model, pk):
    return db.session.execute(
        select(model)
        .where(model.id == pk)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def lock_workflow(workflow_id: int) -> Workflow:
    workflow = _locked(Workflow, workflow_id)
    if workflow is None:
        raise WorkflowNotFound(workflow_id)
    return workflow


def lock_stage(stage_id: int) -> Stage:
    stage = _locked(Stage, stage_id)
    if stage is None:
        raise StageNotFound(stage_id)
    return stage


def lock_milestone(milestone_id: int) -> Milestone:
    milestone = _locked(Milestone, milestone_id)
    if milestone is None:
        raise MilestoneNotFound(milestone_id)
    return milestone


def _reject(entity: str, entity_id, action: str, current: str, reason: str | None):
    logger.info(
        "Rejected %s %s on %s %s: %s", entity, action, entity, entity_id, reason,
        extra={"event_type": f"{entity}.{action}.rejected", f"{entity}_id": entity_id},
    )
    raise InvalidTransition(entity, entity_id, action, current, reason)


def _ensure_workflow_active(entity: str, entity_id, action: str, current: str, workflow: Workflow):
    if workflow.is_terminal:
        _reject(entity, entity_id, action, current, f"workflow {workflow.id} is {workflow.status}")


# ── Workflow state machine ───────────────────────────────────────────────────


def transition_workflow(
    workflow_id: int,
    action: str,
    actor_id: str,
    *,
    reason: str | None = None,
    notes: str | None = None,
) -> Workflow:
    """
    Execute a workflow lifecycle transition.

    Args:
        workflow_id: PK of the workflow
        action: start | complete | cancel
        actor_id: Who is performing the action
        reason: Required for 'cancel'
        notes: Optional close-out notes for 'complete'

    Returns:
        The updated (flushed) Workflow.

    Raises:
        WorkflowNotFound, InvalidTransition, ValidationError
    """
    actor = require_actor(actor_id)
    notes = optional_text(notes, "notes")
    workflow = lock_workflow(workflow_id)

    validation = validate_transition(WORKFLOW_TRANSITIONS, workflow.status, action)
    if not validation["valid"]:
        _reject("workflow", workflow.id, action, workflow.status, validation["reason"])

    action = WorkflowAction(action)
    if action == WorkflowAction.CANCEL:
        reason = require_text(reason, "reason")

    now = _utcnow()
    previous_status = workflow.status
    workflow.status = validation["to"]

    if action == WorkflowAction.START:
        workflow.actual_start_date = now.date()
        description = "Workflow started"
    elif action == WorkflowAction.COMPLETE:
        progress = progress_percent(workflow)
        if progress < 100:
            # Manual close-out with an intentionally unfinished remainder.
            logger.warning(
                "Workflow %s completed at %d%% progress", workflow.id, progress,
                extra={"workflow_id": workflow.id, "actor_id": actor},
            )
        workflow.actual_end_date = now.date()
        workflow.completion_notes = notes
        description = "Workflow completed"
    else:
        workflow.cancellation_reason = reason
        description = f"Workflow cancelled: {reason}"

    append_activity(
        workflow_id=workflow.id,
        activity_type=_WORKFLOW_ACTIVITY[action],
        description=description,
        performed_by=actor,
        performed_at=now,
    )
    logger.info(
        "Workflow %s: %s → %s", workflow.id, previous_status, workflow.status,
        extra={"event_type": f"workflow.{action.value}", "workflow_id": workflow.id, "actor_id": actor},
    )
    return workflow


# ── Stage state machine ──────────────────────────────────────────────────────


def transition_stage(
    stage_id: int,
    action: str,
    actor_id: str,
    *,
    reason: str | None = None,
    notes: str | None = None,
) -> Stage:
    """
    Execute a stage lifecycle transition.

    A blank 'block' reason is rejected before the stage is even read, so it
    fails with ValidationError whatever the stage's current status.

    Args:
        stage_id: PK of the stage
        action: start | complete | skip | block | unblock
        actor_id: Who is performing the action
        reason: Required for 'block', optional for 'skip'
        notes: Optional completion notes for 'complete'

    Raises:
        StageNotFound, InvalidTransition, ValidationError
    """
    actor = require_actor(actor_id)
    if action == StageAction.BLOCK:
        reason = require_text(reason, "reason")
    else:
        reason = optional_text(reason, "reason")
    notes = optional_text(notes, "notes")

    stage = lock_stage(stage_id)
    workflow = lock_workflow(stage.workflow_id)

    validation = validate_transition(STAGE_TRANSITIONS, stage.status, action)
    if not validation["valid"]:
        _reject("stage", stage.id, action, stage.status, validation["reason"])
    _ensure_workflow_active("stage", stage.id, action, stage.status, workflow)

    action = StageAction(action)
    now = _utcnow()
    previous_status = stage.status
    stage.status = validation["to"]

    if action == StageAction.START:
        stage.actual_start_date = now.date()
        description = f"Stage {stage.name} started"
    elif action == StageAction.COMPLETE:
        # PENDING milestones stay PENDING; completion does not cascade.
        stage.actual_end_date = now.date()
        stage.completion_notes = notes
        description = f"Stage {stage.name} completed"
    elif action == StageAction.SKIP:
        stage.completion_notes = reason
        description = f"Stage {stage.name} skipped"
    elif action == StageAction.BLOCK:
        stage.blocked_reason = reason
        stage.blocked_at = now
        description = f"Stage {stage.name} blocked: {reason}"
    else:
        stage.blocked_reason = None
        stage.unblocked_at = now
        description = f"Stage {stage.name} unblocked"

    append_activity(
        workflow_id=workflow.id,
        stage_id=stage.id,
        activity_type=_STAGE_ACTIVITY[action],
        description=description,
        performed_by=actor,
        performed_at=now,
    )
    logger.info(
        "Stage %s (%s): %s → %s", stage.id, stage.name, previous_status, stage.status,
        extra={
            "event_type": f"stage.{action.value}",
            "workflow_id": workflow.id,
            "stage_id": stage.id,
            "actor_id": actor,
        },
    )
    return stage


def update_stage_owner(stage_id: int, owner_name: str, actor_id: str) -> Stage:
    """Reassign a stage owner. Not a status change, but still logged."""
    actor = require_actor(actor_id)
    owner = require_text(owner_name, "owner_name")
    stage = lock_stage(stage_id)
    workflow = lock_workflow(stage.workflow_id)
    _ensure_workflow_active("stage", stage.id, "update_owner", stage.status, workflow)

    stage.owner_name = owner
    append_activity(
        workflow_id=workflow.id,
        stage_id=stage.id,
        activity_type=ActivityType.OWNER_CHANGED,
        description=f"Stage {stage.name} owner changed to {owner}",
        performed_by=actor,
    )
    logger.info(
        "Stage %s owner → %s", stage.id, owner,
        extra={"event_type": "stage.owner_changed", "stage_id": stage.id, "actor_id": actor},
    )
    return stage


def add_milestone(stage_id: int, name: str, actor_id: str, order: int | None = None) -> Milestone:
    """
    Append a PENDING milestone to a stage that is not finished.

    ``order`` defaults to one past the stage's highest milestone_order.

    Raises:
        StageNotFound, InvalidTransition, ValidationError
    """
    actor = require_actor(actor_id)
    name = require_text(name, "name")
    if order is not None and (isinstance(order, bool) or not isinstance(order, int) or order < 1):
        raise ValidationError("order must be a positive integer", details={"order": str(order)})

    stage = lock_stage(stage_id)
    workflow = lock_workflow(stage.workflow_id)
    _ensure_workflow_active("stage", stage.id, "add_milestone", stage.status, workflow)
    if StageStatus(stage.status) in STAGE_TERMINAL_STATUSES:
        _reject("stage", stage.id, "add_milestone", stage.status, "stage is finished")

    if order is None:
        order = max((m.milestone_order for m in stage.milestones), default=0) + 1
    milestone = Milestone(
        name=name,
        milestone_order=order,
        status=MilestoneStatus.PENDING.value,
    )
    stage.milestones.append(milestone)
    db.session.flush()

    append_activity(
        workflow_id=workflow.id,
        stage_id=stage.id,
        milestone_id=milestone.id,
        activity_type=ActivityType.MILESTONE_ADDED,
        description=f"Milestone {name} added to stage {stage.name}",
        performed_by=actor,
    )
    logger.info(
        "Milestone %s added to stage %s at order %s", milestone.id, stage.id, order,
        extra={
            "event_type": "milestone.add",
            "workflow_id": workflow.id,
            "stage_id": stage.id,
            "milestone_id": milestone.id,
            "actor_id": actor,
        },
    )
    return milestone


# ── Milestone state machine ──────────────────────────────────────────────────


def transition_milestone(
    milestone_id: int,
    action: str,
    actor_id: str,
    *,
    notes: str | None = None,
    reason: str | None = None,
) -> Milestone:
    """
    Execute a milestone lifecycle transition.

    The owning stage must be IN_PROGRESS (not pending, blocked or finished).
    ``notes`` (complete) or ``reason`` (skip) land in ``completion_notes``.

    Raises:
        MilestoneNotFound, InvalidTransition, StageNotActive, ValidationError
    """
    actor = require_actor(actor_id)
    notes = optional_text(notes, "notes")
    reason = optional_text(reason, "reason")
    milestone = lock_milestone(milestone_id)
    stage = lock_stage(milestone.stage_id)
    workflow = lock_workflow(stage.workflow_id)

    validation = validate_transition(MILESTONE_TRANSITIONS, milestone.status, action)
    if not validation["valid"]:
        _reject("milestone", milestone.id, action, milestone.status, validation["reason"])

    if stage.status != StageStatus.IN_PROGRESS:
        logger.info(
            "Rejected milestone %s on %s: stage %s is %s", action, milestone.id, stage.id, stage.status,
            extra={"event_type": f"milestone.{action}.rejected", "milestone_id": milestone.id},
        )
        raise StageNotActive(milestone.id, stage.id, stage.status)
    _ensure_workflow_active("milestone", milestone.id, action, milestone.status, workflow)

    action = MilestoneAction(action)
    now = _utcnow()
    previous_status = milestone.status
    milestone.status = validation["to"]

    if action == MilestoneAction.COMPLETE:
        milestone.completed_at = now
        milestone.completed_by = actor
        milestone.completion_notes = notes
        description = f"Milestone {milestone.name} completed"
    else:
        milestone.completion_notes = reason
        description = f"Milestone {milestone.name} skipped"

    append_activity(
        workflow_id=workflow.id,
        stage_id=stage.id,
        milestone_id=milestone.id,
        activity_type=_MILESTONE_ACTIVITY[action],
        description=description,
        performed_by=actor,
        performed_at=now,
    )
    logger.info(
        "Milestone %s (%s): %s → %s", milestone.id, milestone.name, previous_status, milestone.status,
        extra={
            "event_type": f"milestone.{action.value}",
            "workflow_id": workflow.id,
            "stage_id": stage.id,
            "milestone_id": milestone.id,
            "actor_id": actor,
        },
    )
    return milestone
