"""
Structured logging configuration.

- Development: one readable line per record, workflow context appended
- Production: one JSON object per record (log aggregator compatible)
- LOG_LEVEL picks the level; LOG_FORMAT=json|readable overrides the format

Engine modules attach context through ``extra=``:

    logger.info("Stage %s blocked", stage.id, extra={
        "event_type": "stage.block", "workflow_id": wf.id,
        "stage_id": stage.id, "actor_id": actor,
    })
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

REQUEST_KEYS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")
WORKFLOW_KEYS = ("event_type", "workflow_id", "stage_id", "milestone_id", "actor_id")


def _context(record: logging.LogRecord, keys) -> dict:
    return {key: getattr(record, key) for key in keys if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        entry.update(_context(record, REQUEST_KEYS))
        entry.update(_context(record, WORKFLOW_KEYS))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Single-line colored formatter for development.

    ``12:04:31 INFO     procurement.services.workflow_lifecycle: Stage 7 ... [workflow=3 stage=7 by=u-1]``
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    _LABELS = {"workflow_id": "workflow", "stage_id": "stage", "milestone_id": "milestone", "actor_id": "by"}

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"

        ctx = _context(record, WORKFLOW_KEYS[1:])
        if ctx:
            line += " [" + " ".join(f"{self._LABELS[k]}={v}" for k, v in ctx.items()) + "]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    Defaults: JSON at INFO in production, readable at DEBUG otherwise.
    Under TESTING the level is WARNING unless LOG_LEVEL says otherwise.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    default_level = "INFO" if is_prod else ("WARNING" if is_testing else "DEBUG")
    level_name = os.getenv("LOG_LEVEL", default_level).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = os.getenv("LOG_FORMAT", "json" if is_prod else "readable").lower()
    formatter = JSONFormatter() if fmt == "json" else ReadableFormatter()

    # Replace (not append) the root handler so repeated create_app() calls stay single-output
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
