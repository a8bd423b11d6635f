"""
Procurement Workflow — Progress & Risk Calculator.

Pure, read-only derivations over a Workflow → Stage → Milestone tree.
Nothing here touches the session or writes a column: progress, overdue and
at-risk are recomputed on every read so stored and displayed state cannot
drift apart.

Two aggregation levels:
    Stage     — completed milestones / non-skipped milestones
    Workflow  — completed stages / non-skipped stages

Every function that depends on the calendar takes an optional ``today``
(``datetime.date``); it defaults to the current UTC date.

Usage:
    from procurement.services.progress import derive_workflow_metrics

    metrics = derive_workflow_metrics(workflow, today=date(2026, 3, 1))
    metrics["progress_percent"], metrics["is_overdue"], metrics["is_at_risk"]
"""

from datetime import date, datetime, timedelta, timezone

from procurement.models.procurement import (
    MilestoneStatus,
    StageStatus,
    WorkflowStatus,
    WORKFLOW_TERMINAL_STATUSES,
)

AT_RISK_WINDOW_DAYS = 7
AT_RISK_PROGRESS_THRESHOLD = 80
COMPLETED_WINDOW_DAYS = 7


def _today(today: date | None) -> date:
    if today is None:
        return datetime.now(timezone.utc).date()
    if isinstance(today, datetime):
        return today.date()
    return today


# ── Stage level ──────────────────────────────────────────────────────────────


def milestone_counts(stage) -> tuple[int, int]:
    """Return ``(completed, total)`` for a stage; SKIPPED milestones are not counted in total."""
    completed = 0
    total = 0
    for milestone in stage.milestones or []:
        if milestone.status == MilestoneStatus.SKIPPED:
            continue
        total += 1
        if milestone.status == MilestoneStatus.COMPLETED:
            completed += 1
    return completed, total


# ── Workflow level ───────────────────────────────────────────────────────────


def stage_counts(workflow) -> dict:
    """Count stages by role in the progress ratio."""
    stages = list(workflow.stages or [])
    completed = sum(1 for s in stages if s.status == StageStatus.COMPLETED)
    skipped = sum(1 for s in stages if s.status == StageStatus.SKIPPED)
    return {
        "total_stages": len(stages),
        "completed_stages": completed,
        "skipped_stages": skipped,
    }


def progress_percent(workflow) -> int:
    """
    completed / (total - skipped) * 100, floored to an int in [0, 100].

    SKIPPED stages leave both numerator and denominator. Zero when every
    stage is skipped or the workflow has no stages.
    """
    counts = stage_counts(workflow)
    denominator = counts["total_stages"] - counts["skipped_stages"]
    if denominator <= 0:
        return 0
    return counts["completed_stages"] * 100 // denominator


def days_remaining(workflow, today: date | None = None) -> int | None:
    """Whole days from ``today`` to planned_end_date (negative once past); None without a plan."""
    if not workflow.planned_end_date:
        return None
    return (workflow.planned_end_date - _today(today)).days


def is_overdue(workflow, today: date | None = None) -> bool:
    """planned_end_date has passed while the workflow is still active."""
    if not workflow.planned_end_date:
        return False
    if WorkflowStatus(workflow.status) in WORKFLOW_TERMINAL_STATUSES:
        return False
    return workflow.planned_end_date < _today(today)


def is_at_risk(
    workflow,
    today: date | None = None,
    *,
    window_days: int = AT_RISK_WINDOW_DAYS,
    progress_threshold: int = AT_RISK_PROGRESS_THRESHOLD,
) -> bool:
    """In progress, within ``window_days`` of planned end, and below ``progress_threshold``."""
    if workflow.status != WorkflowStatus.IN_PROGRESS:
        return False
    remaining = days_remaining(workflow, today)
    if remaining is None or not 0 <= remaining <= window_days:
        return False
    return progress_percent(workflow) < progress_threshold


def risk_level(overdue: bool, at_risk: bool) -> str:
    """Single display label; overdue takes precedence over at-risk."""
    if overdue:
        return "overdue"
    if at_risk:
        return "at_risk"
    return "on_track"


def derive_workflow_metrics(
    workflow,
    today: date | None = None,
    *,
    window_days: int = AT_RISK_WINDOW_DAYS,
    progress_threshold: int = AT_RISK_PROGRESS_THRESHOLD,
) -> dict:
    """All derived display fields for one workflow."""
    today = _today(today)
    overdue = is_overdue(workflow, today)
    at_risk = is_at_risk(
        workflow, today, window_days=window_days, progress_threshold=progress_threshold,
    )
    return {
        **stage_counts(workflow),
        "progress_percent": progress_percent(workflow),
        "days_remaining": days_remaining(workflow, today),
        "is_overdue": overdue,
        "is_at_risk": at_risk,
        "risk_level": risk_level(overdue, at_risk),
    }


# ── Cross-workflow views ─────────────────────────────────────────────────────


def upcoming_milestones(workflows, limit: int | None = None) -> list[dict]:
    """
    PENDING milestones of IN_PROGRESS stages across non-terminal workflows,
    sorted by the owning stage's planned_end_date (undated stages last).
    """
    rows = []
    for workflow in workflows:
        if WorkflowStatus(workflow.status) in WORKFLOW_TERMINAL_STATUSES:
            continue
        for stage in workflow.stages or []:
            if stage.status != StageStatus.IN_PROGRESS:
                continue
            for milestone in stage.milestones or []:
                if milestone.status != MilestoneStatus.PENDING:
                    continue
                rows.append((stage.planned_end_date, workflow, stage, milestone))

    rows.sort(key=lambda r: (r[0] is None, r[0] or date.max, r[2].order_index, r[3].milestone_order or 0))
    if limit is not None:
        rows = rows[:limit]

    return [
        {
            **milestone.to_dict(),
            "stage_id": stage.id,
            "stage_name": stage.name,
            "workflow_id": workflow.id,
            "workflow_name": workflow.name,
            "vendor_id": workflow.vendor_id,
            "due_date": due.isoformat() if due else None,
        }
        for due, workflow, stage, milestone in rows
    ]


def dashboard_stats(
    workflows,
    today: date | None = None,
    *,
    window_days: int = AT_RISK_WINDOW_DAYS,
    progress_threshold: int = AT_RISK_PROGRESS_THRESHOLD,
    completed_window_days: int = COMPLETED_WINDOW_DAYS,
) -> dict:
    """Counts by status plus overdue, at-risk and recently-completed tallies."""
    today = _today(today)
    window_start = today - timedelta(days=completed_window_days)

    stats = {
        "total": 0,
        "by_status": {status.value: 0 for status in WorkflowStatus},
        "overdue": 0,
        "at_risk": 0,
        "completed_this_week": 0,
    }
    for workflow in workflows:
        stats["total"] += 1
        stats["by_status"][WorkflowStatus(workflow.status).value] += 1
        if is_overdue(workflow, today):
            stats["overdue"] += 1
        if is_at_risk(workflow, today, window_days=window_days, progress_threshold=progress_threshold):
            stats["at_risk"] += 1
        if (
            workflow.status == WorkflowStatus.COMPLETED
            and workflow.actual_end_date
            and workflow.actual_end_date >= window_start
        ):
            stats["completed_this_week"] += 1
    return stats
