"""
Procurement Workflow — Activity Logger.

Append-only write path for the workflow activity trail. Called by the
lifecycle service after a transition has been applied and before the
surrounding transaction commits, so an entry exists iff its transition
committed.

Read path returns entries newest-first. No update or delete API exists;
the model rejects both at flush time.

Consistency: a writer reads its own entries immediately after commit.
Other readers see them on their next poll; no push or subscription
guarantee is made.
"""

import logging

from sqlalchemy import select

from procurement.models import db
from procurement.models.procurement import ActivityType, WorkflowActivity

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50


def append_activity(
    *,
    workflow_id: int,
    activity_type: ActivityType,
    description: str,
    performed_by: str,
    performed_at=None,
    stage_id: int | None = None,
    milestone_id: int | None = None,
) -> WorkflowActivity:
    """
    Append a single activity row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) WorkflowActivity instance.
    """
    entry = WorkflowActivity(
        workflow_id=workflow_id,
        stage_id=stage_id,
        milestone_id=milestone_id,
        activity_type=ActivityType(activity_type).value,
        activity_description=description,
        performed_by=performed_by,
    )
    if performed_at is not None:
        entry.performed_at = performed_at
    db.session.add(entry)
    db.session.flush()
    logger.debug(
        "Activity appended: %s", description,
        extra={
            "event_type": entry.activity_type,
            "workflow_id": workflow_id,
            "stage_id": stage_id,
            "milestone_id": milestone_id,
            "actor_id": performed_by,
        },
    )
    return entry


def list_activity(workflow_id: int, limit: int | None = DEFAULT_LIMIT) -> list[WorkflowActivity]:
    """Entries for one workflow, newest first (``performed_at`` desc, ``id`` desc)."""
    stmt = (
        select(WorkflowActivity)
        .where(WorkflowActivity.workflow_id == workflow_id)
        .order_by(WorkflowActivity.performed_at.desc(), WorkflowActivity.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.session.execute(stmt).scalars())
