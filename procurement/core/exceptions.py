"""
Engine-wide exception hierarchy.

Every failure the procurement workflow engine reports is one of the types
below. Each carries a machine-readable ``kind`` (stable string used by the
API envelope and by callers that branch on the failure) plus a
human-readable message (``str(exc)``).

Blueprints register handlers against these types once and get consistent
HTTP status codes everywhere.

Usage:
    from procurement.core.exceptions import InvalidTransition, ValidationError

    raise ValidationError("reason is required", details={"reason": "blank"})
    raise InvalidTransition("stage", stage.id, "complete", stage.status)
"""


class WorkflowEngineError(Exception):
    """Base class for every error raised by the engine."""

    kind = "engine_error"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self)}


class ValidationError(WorkflowEngineError):
    """Raised when input is missing or malformed (e.g. a blank reason).

    Recoverable: the user corrects the input and resubmits.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    kind = "validation_error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = super().to_dict()
        if self.details:
            result["details"] = self.details
        return result


class InvalidTransition(WorkflowEngineError):
    """Raised when an action is not legal from the entity's current status.

    Usually means the caller acted on stale state and should refresh.
    """

    kind = "invalid_transition"

    def __init__(
        self,
        entity: str,
        entity_id: int | str | None,
        action: str,
        current_status: str | None,
        reason: str | None = None,
    ) -> None:
        msg = f"Cannot '{action}' {entity} {entity_id} (status={current_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.entity = entity
        self.entity_id = entity_id
        self.action = action
        self.current_status = current_status
        self.reason = reason

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["details"] = {
            "entity": self.entity,
            "entity_id": self.entity_id,
            "action": self.action,
            "current_status": self.current_status,
        }
        return result


class StageNotActive(WorkflowEngineError):
    """Raised when a milestone action targets a stage that is not in progress."""

    kind = "stage_not_active"

    def __init__(self, milestone_id: int, stage_id: int, stage_status: str) -> None:
        super().__init__(
            f"Milestone {milestone_id} cannot change while stage {stage_id} "
            f"is '{stage_status}' (stage must be in_progress)"
        )
        self.milestone_id = milestone_id
        self.stage_id = stage_id
        self.stage_status = stage_status


class NotFoundError(WorkflowEngineError):
    """Raised when a referenced record does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Workflow", "Stage").
        resource_id: The PK that was looked up.
    """

    kind = "not_found"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class TemplateNotFound(NotFoundError):
    kind = "template_not_found"

    def __init__(self, template_id) -> None:
        super().__init__("WorkflowTemplate", template_id)


class WorkflowNotFound(NotFoundError):
    kind = "workflow_not_found"

    def __init__(self, workflow_id) -> None:
        super().__init__("Workflow", workflow_id)


class StageNotFound(NotFoundError):
    kind = "stage_not_found"

    def __init__(self, stage_id) -> None:
        super().__init__("Stage", stage_id)


class MilestoneNotFound(NotFoundError):
    kind = "milestone_not_found"

    def __init__(self, milestone_id) -> None:
        super().__init__("Milestone", milestone_id)


class RepositoryUnavailable(WorkflowEngineError):
    """Raised when the backing store fails (connection lost, timeout, ...).

    Nothing was committed; the caller may retry the whole operation.
    """

    kind = "repository_unavailable"

    def __init__(self, operation: str, detail: str | None = None) -> None:
        msg = f"Repository unavailable during {operation}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.operation = operation
