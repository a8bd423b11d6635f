"""Tests for the ambient stack: config selection, JSON logging, error envelope."""

import json
import logging

import pytest

from procurement import create_app
from procurement.config import ProductionConfig, _env_int, _normalize_db_url, config
from procurement.core.exceptions import (
    InvalidTransition,
    RepositoryUnavailable,
    StageNotActive,
    ValidationError,
    WorkflowNotFound,
)
from procurement.middleware.logging_config import JSONFormatter, ReadableFormatter
from procurement.utils.errors import engine_error


class TestConfig:
    def test_testing_config(self, app):
        assert app.config["TESTING"] is True
        assert app.config["WORKFLOW_AT_RISK_WINDOW_DAYS"] == 7
        assert app.config["WORKFLOW_AT_RISK_PROGRESS_THRESHOLD"] == 80

    def test_config_names(self):
        assert set(config) == {"development", "testing", "production", "default"}

    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError):
            ProductionConfig()

    def test_env_int_parsing(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_X", "12")
        assert _env_int("WORKFLOW_X", 3) == 12
        monkeypatch.setenv("WORKFLOW_X", " ")
        assert _env_int("WORKFLOW_X", 3) == 3
        monkeypatch.delenv("WORKFLOW_X")
        assert _env_int("WORKFLOW_X", 3) == 3

    @pytest.mark.parametrize("raw", ["abc", "0"])
    def test_env_int_rejects_bad_values(self, monkeypatch, raw):
        monkeypatch.setenv("WORKFLOW_X", raw)
        with pytest.raises(RuntimeError):
            _env_int("WORKFLOW_X", 3, minimum=1)

    def test_postgres_scheme_normalized(self):
        assert _normalize_db_url("postgres://u@h/db") == "postgresql://u@h/db"


class TestReadableFormatter:
    def test_workflow_context_appended(self):
        record = logging.LogRecord("procurement", logging.INFO, __file__, 1, "Milestone done", (), None)
        record.workflow_id = 3
        record.milestone_id = 11
        record.actor_id = "user-1"
        line = ReadableFormatter().format(record)
        assert line.endswith("Milestone done [workflow=3 milestone=11 by=user-1]")

    def test_no_context_no_brackets(self):
        record = logging.LogRecord("procurement", logging.INFO, __file__, 1, "plain", (), None)
        line = ReadableFormatter().format(record)
        assert line.endswith("plain")
        assert " [" not in line


class TestJSONFormatter:
    def test_workflow_extras_serialized(self):
        record = logging.LogRecord("procurement", logging.INFO, __file__, 1, "Stage %s blocked", (7,), None)
        record.event_type = "stage.block"
        record.workflow_id = 3
        record.stage_id = 7
        record.actor_id = "user-1"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Stage 7 blocked"
        assert entry["event_type"] == "stage.block"
        assert (entry["workflow_id"], entry["stage_id"], entry["actor_id"]) == (3, 7, "user-1")
        assert "milestone_id" not in entry


class TestErrorEnvelope:
    @pytest.mark.parametrize("exc,status,code", [
        (ValidationError("bad", {"reason": "required"}), 400, "ERR_VALIDATION_INVALID"),
        (WorkflowNotFound(4), 404, "ERR_NOT_FOUND"),
        (InvalidTransition("stage", 1, "complete", "blocked"), 409, "ERR_CONFLICT_STATE"),
        (StageNotActive(1, 2, "pending"), 409, "ERR_STAGE_NOT_ACTIVE"),
        (RepositoryUnavailable("start workflow"), 503, "ERR_DATABASE"),
    ])
    def test_mapping(self, app, exc, status, code):
        with app.test_request_context():
            response, http_status = engine_error(exc)
        body = response.get_json()
        assert http_status == status
        assert body["code"] == code
        assert body["kind"] == exc.kind
        assert body["error"] == str(exc)

    def test_invalid_transition_message(self):
        exc = InvalidTransition("workflow", 9, "start", "completed")
        assert str(exc) == "Cannot 'start' workflow 9 (status=completed)"


def test_cli_seed_command(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["seed-workflow-templates"])
    assert result.exit_code == 0
    from procurement.models.procurement import WorkflowTemplate
    assert WorkflowTemplate.query.count() == 3


def test_create_app_is_repeatable():
    second = create_app("testing")
    assert "procurement" in second.blueprints
    assert "health" in second.blueprints
