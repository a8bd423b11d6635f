"""
Procurement Workflow Engine — domain models.

Models:
    - WorkflowTemplate:  read-only blueprint (ordered stages, target days, milestone names)
    - Workflow:          one post-selection procurement process for one vendor
    - Stage:             ordered phase of a workflow
    - Milestone:         checkpoint inside a stage
    - WorkflowActivity:  immutable, append-only activity trail entry

Architecture:
    WorkflowTemplate ──1:N──▶ Workflow ──1:N──▶ Stage ──1:N──▶ Milestone
    Workflow ──1:N──▶ WorkflowActivity

Lifecycle states:
    Workflow:   not_started → in_progress → completed
                not_started | in_progress → cancelled
    Stage:      pending → in_progress → completed
                pending → skipped
                in_progress ⇄ blocked
    Milestone:  pending → completed | skipped

Legality is expressed as explicit ``(status, action) → status`` tables.
Status columns are only written by ``procurement.services.workflow_lifecycle``.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import event

from procurement.models import db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Status & action enums ────────────────────────────────────────────────────


class WorkflowStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class MilestoneStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class WorkflowAction(str, enum.Enum):
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"


class StageAction(str, enum.Enum):
    START = "start"
    COMPLETE = "complete"
    SKIP = "skip"
    BLOCK = "block"
    UNBLOCK = "unblock"


class MilestoneAction(str, enum.Enum):
    COMPLETE = "complete"
    SKIP = "skip"


class ActivityType(str, enum.Enum):
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_SKIPPED = "stage_skipped"
    STAGE_BLOCKED = "stage_blocked"
    STAGE_UNBLOCKED = "stage_unblocked"
    MILESTONE_COMPLETED = "milestone_completed"
    MILESTONE_SKIPPED = "milestone_skipped"
    OWNER_CHANGED = "owner_changed"
    MILESTONE_ADDED = "milestone_added"
    WORKFLOW_UPDATED = "workflow_updated"
    DATE_CHANGED = "date_changed"


PROCUREMENT_TYPES = {
    "software", "services", "hardware", "saas",
    "consulting", "managed_services", "custom",
}

WORKFLOW_TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED})
STAGE_TERMINAL_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.SKIPPED})
MILESTONE_TERMINAL_STATUSES = frozenset({MilestoneStatus.COMPLETED, MilestoneStatus.SKIPPED})


# ── Lifecycle Transition Tables ──────────────────────────────────────────────

WORKFLOW_TRANSITIONS = {
    (WorkflowStatus.NOT_STARTED, WorkflowAction.START):  WorkflowStatus.IN_PROGRESS,
    (WorkflowStatus.IN_PROGRESS, WorkflowAction.COMPLETE): WorkflowStatus.COMPLETED,
    (WorkflowStatus.NOT_STARTED, WorkflowAction.CANCEL): WorkflowStatus.CANCELLED,
    (WorkflowStatus.IN_PROGRESS, WorkflowAction.CANCEL): WorkflowStatus.CANCELLED,
}

STAGE_TRANSITIONS = {
    (StageStatus.PENDING, StageAction.START):        StageStatus.IN_PROGRESS,
    (StageStatus.PENDING, StageAction.SKIP):         StageStatus.SKIPPED,
    (StageStatus.IN_PROGRESS, StageAction.COMPLETE): StageStatus.COMPLETED,
    (StageStatus.IN_PROGRESS, StageAction.BLOCK):    StageStatus.BLOCKED,
    (StageStatus.BLOCKED, StageAction.UNBLOCK):      StageStatus.IN_PROGRESS,
}

MILESTONE_TRANSITIONS = {
    (MilestoneStatus.PENDING, MilestoneAction.COMPLETE): MilestoneStatus.COMPLETED,
    (MilestoneStatus.PENDING, MilestoneAction.SKIP):     MilestoneStatus.SKIPPED,
}


def next_status(table: dict, current, action):
    """Look up the target status for ``action`` from ``current``.

    Returns None when the pair is not in the table (illegal transition)
    or when either value is not a member of the table's enums.
    """
    try:
        status_cls = type(next(iter(table))[0])
        action_cls = type(next(iter(table))[1])
        key = (status_cls(current), action_cls(action))
    except ValueError:
        return None
    return table.get(key)


def _stage_order(definition: dict, position: int):
    """Template sort key: explicit integer ``order``, else list position."""
    order = definition.get("order")
    if isinstance(order, bool) or not isinstance(order, (int, float)):
        return position
    return order


# ═════════════════════════════════════════════════════════════════════════════
# 1. WorkflowTemplate
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplate(db.Model):
    """
    Reusable procurement blueprint. Read-only to the engine.

    ``stages`` is a JSON list:
        [{"name": "Contract Negotiation", "order": 1, "target_days": 14,
          "description": "...", "milestones": ["Commercial terms agreed", ...]}]
    """

    __tablename__ = "procurement_workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    template_name = db.Column(db.String(255), nullable=False)
    template_description = db.Column(db.Text, default="")
    procurement_type = db.Column(
        db.String(50), nullable=False, default="custom",
        comment="software | services | hardware | saas | consulting | managed_services | custom",
    )
    stages = db.Column(db.JSON, nullable=False, default=list)
    is_default = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "procurement_type IN ('software','services','hardware','saas',"
            "'consulting','managed_services','custom')",
            name="ck_workflow_template_type",
        ),
        db.Index("idx_workflow_templates_type", "procurement_type"),
    )

    def stage_definitions(self) -> list[dict]:
        """Stage definitions in template order (by ``order``, then list position)."""
        indexed = list(enumerate(self.stages or []))
        indexed.sort(key=lambda pair: (_stage_order(pair[1], pair[0]), pair[0]))
        return [definition for _, definition in indexed]

    def to_dict(self):
        return {
            "id": self.id,
            "template_name": self.template_name,
            "template_description": self.template_description,
            "procurement_type": self.procurement_type,
            "stages": self.stage_definitions(),
            "stage_count": len(self.stages or []),
            "total_target_days": sum(int(s.get("target_days") or 0) for s in self.stages or []),
            "is_default": bool(self.is_default),
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.template_name} [{self.procurement_type}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Workflow
# ═════════════════════════════════════════════════════════════════════════════


class Workflow(db.Model):
    """
    One procurement process for one vendor within one evaluation project.

    Progress, overdue and at-risk are derived on read
    (``procurement.services.progress``), never stored.
    """

    __tablename__ = "procurement_workflows"

    id = db.Column(db.Integer, primary_key=True)
    evaluation_project_id = db.Column(db.String(64), nullable=False, index=True)
    vendor_id = db.Column(db.String(64), nullable=False, index=True)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("procurement_workflow_templates.id", ondelete="SET NULL"),
        nullable=True,
    )

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(30), nullable=False, default=WorkflowStatus.NOT_STARTED.value,
        comment="not_started | in_progress | completed | cancelled",
    )

    # Timeline
    planned_start_date = db.Column(db.Date, nullable=True)
    planned_end_date = db.Column(db.Date, nullable=True)
    actual_start_date = db.Column(db.Date, nullable=True)
    actual_end_date = db.Column(db.Date, nullable=True)

    owner_name = db.Column(db.String(255), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    completion_notes = db.Column(db.Text, nullable=True)

    # Metadata
    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('not_started','in_progress','completed','cancelled')",
            name="ck_procurement_workflow_status",
        ),
        db.Index("idx_workflows_project_vendor", "evaluation_project_id", "vendor_id"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    stages = db.relationship(
        "Stage", backref="workflow", lazy="selectin",
        cascade="all, delete-orphan", order_by="Stage.order_index",
    )
    template = db.relationship("WorkflowTemplate", lazy="joined")

    @property
    def is_terminal(self) -> bool:
        return WorkflowStatus(self.status) in WORKFLOW_TERMINAL_STATUSES

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "evaluation_project_id": self.evaluation_project_id,
            "vendor_id": self.vendor_id,
            "template_id": self.template_id,
            "template_name": self.template.template_name if self.template else None,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "planned_start_date": _iso(self.planned_start_date),
            "planned_end_date": _iso(self.planned_end_date),
            "actual_start_date": _iso(self.actual_start_date),
            "actual_end_date": _iso(self.actual_end_date),
            "owner_name": self.owner_name,
            "cancellation_reason": self.cancellation_reason,
            "completion_notes": self.completion_notes,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "total_stages": len(self.stages),
        }
        if include_children:
            result["stages"] = [s.to_dict(include_children=True) for s in self.stages]
        return result

    def __repr__(self):
        return f"<Workflow {self.id}: {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Stage
# ═════════════════════════════════════════════════════════════════════════════


class Stage(db.Model):
    """
    One ordered phase of a workflow (e.g. "Contract Negotiation").
    ``order_index`` is 0-based, contiguous and fixed at creation.
    """

    __tablename__ = "procurement_workflow_stages"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("procurement_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    order_index = db.Column(db.Integer, nullable=False)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(30), nullable=False, default=StageStatus.PENDING.value,
        comment="pending | in_progress | blocked | completed | skipped",
    )
    target_days = db.Column(db.Integer, nullable=True)

    # Timeline
    planned_start_date = db.Column(db.Date, nullable=True)
    planned_end_date = db.Column(db.Date, nullable=True)
    actual_start_date = db.Column(db.Date, nullable=True)
    actual_end_date = db.Column(db.Date, nullable=True)

    owner_name = db.Column(db.String(255), nullable=True)

    # Blocking
    blocked_reason = db.Column(db.Text, nullable=True)
    blocked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    unblocked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    completion_notes = db.Column(db.Text, nullable=True, comment="complete notes or skip reason")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("workflow_id", "order_index", name="uq_stage_workflow_order"),
        db.CheckConstraint(
            "status IN ('pending','in_progress','blocked','completed','skipped')",
            name="ck_procurement_stage_status",
        ),
        db.Index("idx_stages_workflow_status", "workflow_id", "status"),
    )

    milestones = db.relationship(
        "Milestone", backref="stage", lazy="selectin",
        cascade="all, delete-orphan", order_by="Milestone.milestone_order",
    )

    def to_dict(self, include_children=False):
        from procurement.services.progress import milestone_counts

        completed, total = milestone_counts(self)
        result = {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "order_index": self.order_index,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "target_days": self.target_days,
            "planned_start_date": _iso(self.planned_start_date),
            "planned_end_date": _iso(self.planned_end_date),
            "actual_start_date": _iso(self.actual_start_date),
            "actual_end_date": _iso(self.actual_end_date),
            "owner_name": self.owner_name,
            "blocked_reason": self.blocked_reason,
            "blocked_at": _iso(self.blocked_at),
            "unblocked_at": _iso(self.unblocked_at),
            "completion_notes": self.completion_notes,
            "completed_milestones": completed,
            "total_milestones": total,
            "milestone_progress_percent": (completed * 100 // total) if total else 0,
        }
        if include_children:
            result["milestones"] = [m.to_dict() for m in self.milestones]
        return result

    def __repr__(self):
        return f"<Stage {self.id}: #{self.order_index} {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. Milestone
# ═════════════════════════════════════════════════════════════════════════════


class Milestone(db.Model):
    """Discrete checkpoint inside a stage. No sub-structure."""

    __tablename__ = "workflow_milestones"

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer, db.ForeignKey("procurement_workflow_stages.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    milestone_order = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(
        db.String(30), nullable=False, default=MilestoneStatus.PENDING.value,
        comment="pending | completed | skipped",
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(150), nullable=True)
    completion_notes = db.Column(db.Text, nullable=True, comment="complete notes or skip reason")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','completed','skipped')",
            name="ck_workflow_milestone_status",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "name": self.name,
            "milestone_order": self.milestone_order,
            "status": self.status,
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
            "completion_notes": self.completion_notes,
        }

    def __repr__(self):
        return f"<Milestone {self.id}: {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. WorkflowActivity
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowActivity(db.Model):
    """
    Immutable activity trail entry. One row per committed transition.
    Total order: ``performed_at`` then ``id``.
    """

    __tablename__ = "workflow_activity_log"
    __table_args__ = (
        db.Index("idx_activity_workflow_time", "workflow_id", "performed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("procurement_workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_id = db.Column(
        db.Integer, db.ForeignKey("procurement_workflow_stages.id", ondelete="SET NULL"),
        nullable=True,
    )
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("workflow_milestones.id", ondelete="SET NULL"),
        nullable=True,
    )
    activity_type = db.Column(db.String(50), nullable=False)
    activity_description = db.Column(db.Text, nullable=False)
    performed_by = db.Column(db.String(150), nullable=False)
    performed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "related_stage_id": self.stage_id,
            "related_milestone_id": self.milestone_id,
            "activity_type": self.activity_type,
            "activity_description": self.activity_description,
            "performed_by": self.performed_by,
            "performed_at": _iso(self.performed_at),
        }

    def __repr__(self):
        return f"<WorkflowActivity {self.id}: {self.activity_type} on workflow {self.workflow_id}>"


@event.listens_for(WorkflowActivity, "before_update")
def _reject_activity_update(mapper, connection, target):
    raise RuntimeError(f"WorkflowActivity {target.id} is append-only")


@event.listens_for(WorkflowActivity, "before_delete")
def _reject_activity_delete(mapper, connection, target):
    raise RuntimeError(f"WorkflowActivity {target.id} is append-only")


# ── Default Templates ────────────────────────────────────────────────────────

DEFAULT_TEMPLATES = [
    {
        "template_name": "Standard Software Procurement",
        "template_description": "Standard workflow for software procurement from vendor selection to go-live",
        "procurement_type": "software",
        "stages": [
            {
                "name": "Contract Negotiation", "order": 1, "target_days": 14,
                "description": "Finalize commercial terms and agreements",
                "milestones": [
                    "Commercial terms agreed",
                    "Pricing schedule finalized",
                    "Security addendum signed",
                    "SLA agreement signed",
                    "Data processing agreement signed",
                ],
            },
            {
                "name": "Reference & Background Checks", "order": 2, "target_days": 10,
                "description": "Validate vendor through references and due diligence",
                "milestones": [
                    "Reference calls completed (3-5)",
                    "Financial stability confirmed",
                    "Compliance verification done",
                    "Insurance certificates received",
                ],
            },
            {
                "name": "Legal Review", "order": 3, "target_days": 7,
                "description": "Legal review and approval of contract",
                "milestones": [
                    "Legal review completed",
                    "Redlines addressed",
                    "Regulatory approval (if required)",
                    "Final contract prepared",
                ],
            },
            {
                "name": "Contract Execution", "order": 4, "target_days": 5,
                "description": "Sign and execute the contract",
                "milestones": [
                    "Internal sign-off obtained",
                    "Contract signed by both parties",
                    "Purchase order issued",
                    "Contract filed and archived",
                ],
            },
            {
                "name": "Onboarding Kickoff", "order": 5, "target_days": 7,
                "description": "Initiate vendor onboarding and implementation",
                "milestones": [
                    "Kickoff meeting scheduled",
                    "Implementation plan agreed",
                    "Success metrics defined",
                    "Governance structure established",
                    "Communication channels set up",
                ],
            },
        ],
    },
    {
        "template_name": "SaaS Subscription",
        "template_description": "Streamlined workflow for SaaS subscription procurement",
        "procurement_type": "saas",
        "stages": [
            {
                "name": "Subscription Agreement", "order": 1, "target_days": 7,
                "description": "Review and agree subscription terms",
                "milestones": [
                    "Subscription terms reviewed",
                    "Pricing tier confirmed",
                    "User count agreed",
                    "Renewal terms confirmed",
                ],
            },
            {
                "name": "Security & Compliance", "order": 2, "target_days": 5,
                "description": "Verify security and compliance requirements",
                "milestones": [
                    "SOC 2 report reviewed",
                    "GDPR compliance confirmed",
                    "Data residency confirmed",
                    "SSO integration confirmed",
                ],
            },
            {
                "name": "Contract Sign-off", "order": 3, "target_days": 3,
                "description": "Final approval and signature",
                "milestones": [
                    "Budget approval obtained",
                    "Contract signed",
                    "Payment processed",
                ],
            },
            {
                "name": "Account Setup", "order": 4, "target_days": 5,
                "description": "Set up accounts and integrations",
                "milestones": [
                    "Admin account created",
                    "Users provisioned",
                    "SSO configured",
                    "Initial training scheduled",
                ],
            },
        ],
    },
    {
        "template_name": "Professional Services",
        "template_description": "Workflow for professional services and consulting engagements",
        "procurement_type": "services",
        "stages": [
            {
                "name": "Statement of Work", "order": 1, "target_days": 10,
                "description": "Finalize scope and deliverables",
                "milestones": [
                    "Scope definition complete",
                    "Deliverables agreed",
                    "Timeline confirmed",
                    "Resource plan approved",
                    "Acceptance criteria defined",
                ],
            },
            {
                "name": "Commercial Agreement", "order": 2, "target_days": 7,
                "description": "Agree commercial terms",
                "milestones": [
                    "Rate card agreed",
                    "Payment terms confirmed",
                    "Expense policy agreed",
                    "Change request process defined",
                ],
            },
            {
                "name": "Contract Execution", "order": 3, "target_days": 5,
                "description": "Execute the contract",
                "milestones": [
                    "MSA signed (if required)",
                    "SOW signed",
                    "NDA in place",
                    "PO issued",
                ],
            },
            {
                "name": "Engagement Kickoff", "order": 4, "target_days": 5,
                "description": "Start the engagement",
                "milestones": [
                    "Kickoff meeting held",
                    "Team introductions complete",
                    "Access provisioned",
                    "Project plan baselined",
                ],
            },
        ],
    },
]


def seed_default_templates():
    """
    Insert the default templates that are not present yet (matched by name).
    Caller commits. Returns the number of templates added.
    """
    existing = {
        name for (name,) in db.session.query(WorkflowTemplate.template_name).all()
    }
    added = 0
    for definition in DEFAULT_TEMPLATES:
        if definition["template_name"] in existing:
            continue
        db.session.add(WorkflowTemplate(
            template_name=definition["template_name"],
            template_description=definition["template_description"],
            procurement_type=definition["procurement_type"],
            stages=[dict(stage, milestones=list(stage["milestones"])) for stage in definition["stages"]],
            is_default=True,
            is_active=True,
        ))
        added += 1
    db.session.flush()
    return added
