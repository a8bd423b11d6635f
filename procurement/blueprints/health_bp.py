"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database round trip + template catalog size
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from procurement.models import db
from procurement.models.procurement import WorkflowTemplate

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Liveness check: always 200 while the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Template catalog ─────────────────────────────────────────────
    if overall:
        try:
            count = db.session.execute(
                select(func.count(WorkflowTemplate.id)).where(WorkflowTemplate.is_active.is_(True))
            ).scalar()
            checks["templates"] = {"status": "ok" if count else "empty", "active": count}
        except SQLAlchemyError as exc:
            db.session.rollback()
            checks["templates"] = {"status": "error", "detail": str(exc)}
            overall = False

    checks["app"] = {
        "name": "Procurement Workflow Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
