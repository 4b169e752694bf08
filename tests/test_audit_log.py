"""
Tests: Audit log writers and ambient configuration.
"""

import json
import logging

import pytest

from template_center.core.exceptions import ConflictError
from template_center.middleware.logging_config import JSONFormatter, ReadableFormatter
from template_center.models import db as _db
from template_center.models.audit import AuditEvent, record_failure_event, write_audit_event
from template_center.models.governance import GateApproval


class TestAuditWriters:
    def test_success_event_rolls_back_with_its_transaction(self, project):
        _db.session.add(GateApproval(project_id=project.id, gate_key="g", decision="rejected", decided_by=1))
        write_audit_event(event_type="GATE_DECIDE", entity_type="GATE_APPROVAL", actor_id=1,
                          project_id=project.id)
        _db.session.rollback()

        assert AuditEvent.query.count() == 0
        assert GateApproval.query.count() == 0

    def test_failure_event_survives_rollback_of_failed_work(self, project):
        _db.session.add(GateApproval(project_id=project.id, gate_key="g", decision="approved", decided_by=1))
        _db.session.flush()

        record_failure_event(
            event_type="GATE_DECIDE_BLOCKED",
            entity_type="GATE_APPROVAL",
            project_id=project.id,
            actor_id=1,
            state={"gate_key": "g"},
            error=ConflictError("x" * 800, code="gate_blocked"),
        )
        _db.session.rollback()

        assert GateApproval.query.count() == 0
        event = AuditEvent.query.one()
        assert event.new_state["gate_key"] == "g"
        assert event.new_state["error_code"] == "gate_blocked"
        assert len(event.new_state["error_message"]) == 500

    def test_unclassified_error_uses_class_name(self, project):
        record_failure_event(event_type="TEMPLATE_APPLY_FAILED", entity_type="TEMPLATE_LINEAGE",
                             error=RuntimeError("boom"))
        assert AuditEvent.query.one().new_state["error_code"] == "RuntimeError"

    def test_entity_id_stored_as_string(self):
        event = write_audit_event(event_type="DOC_TRANSITION", entity_type="DOCUMENT_INSTANCE", entity_id=42)
        assert event.entity_id == "42"


class TestAmbientConfig:
    def test_testing_config(self, app):
        assert app.config["TESTING"] is True
        assert app.config["TEMPLATE_CENTER_ENABLED"] is True
        assert app.config["RATELIMIT_ENABLED"] is False

    def test_overrides_applied(self):
        from template_center import create_app
        app = create_app("testing", TEMPLATE_CENTER_WRITE_LIMIT="5 per minute")
        assert app.config["TEMPLATE_CENTER_WRITE_LIMIT"] == "5 per minute"

    def test_json_formatter_carries_governance_fields(self):
        record = logging.LogRecord("template_center.test", logging.INFO, __file__, 1, "gate decided", (), None)
        record.project_id = 7
        record.gate_key = "initiation_gate"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "gate decided"
        assert entry["project_id"] == 7
        assert entry["gate_key"] == "initiation_gate"
        assert "document_id" not in entry

    def test_readable_formatter_appends_governance_context(self):
        record = logging.LogRecord("template_center.test", logging.INFO, __file__, 1, "gate decided", (), None)
        record.event_type = "GATE_DECIDE"
        record.project_id = 7
        record.gate_key = "g1"
        line = ReadableFormatter().format(record)
        assert line.endswith("gate decided [project=7 gate=g1 event=GATE_DECIDE]")

    def test_request_timing_headers(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"
        assert "X-Request-Duration-Ms" in res.headers

    @pytest.mark.parametrize("name", ["development", "testing"])
    def test_known_config_names(self, name):
        from template_center.config import config
        assert config[name].SQLALCHEMY_DATABASE_URI
