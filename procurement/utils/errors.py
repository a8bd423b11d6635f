"""Standardised API error responses.

Usage
-----
    from procurement.utils.errors import api_error, engine_error, E

    return api_error(E.VALIDATION_REQUIRED, "actor_id is required")
    return engine_error(exc)   # any WorkflowEngineError
"""

from __future__ import annotations

from flask import jsonify

from procurement.core.exceptions import (
    InvalidTransition,
    NotFoundError,
    RepositoryUnavailable,
    StageNotActive,
    ValidationError,
    WorkflowEngineError,
)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    STAGE_NOT_ACTIVE = "ERR_STAGE_NOT_ACTIVE"

    # Server – HTTP 500 / 503
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.STAGE_NOT_ACTIVE: 409,
    E.DATABASE: 503,
    E.INTERNAL: 500,
}

# Most specific class first.
_ENGINE_CODES: tuple[tuple[type, str], ...] = (
    (ValidationError, E.VALIDATION_INVALID),
    (NotFoundError, E.NOT_FOUND),
    (InvalidTransition, E.CONFLICT_STATE),
    (StageNotActive, E.STAGE_NOT_ACTIVE),
    (RepositoryUnavailable, E.DATABASE),
)


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    kind: str | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.
    kind : str, optional
        Engine error kind (``invalid_transition``, ``stage_not_active``, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if kind:
        body["kind"] = kind
    if details:
        body["details"] = details

    return jsonify(body), http_status


def engine_error(exc: WorkflowEngineError):
    """Map an engine exception to the standard envelope."""
    code = E.INTERNAL
    for exc_type, exc_code in _ENGINE_CODES:
        if isinstance(exc, exc_type):
            code = exc_code
            break
    payload = exc.to_dict()
    return api_error(code, str(exc), details=payload.get("details"), kind=exc.kind)
