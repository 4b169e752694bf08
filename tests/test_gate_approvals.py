"""
Tests: Gate policy resolution, blockers and decisions.

The v1 schema defines:
    initiation_gate: risk_register (explicit) + project_charter (via
                     blocks_gate_key), KPI schedule_variance
    closure_gate:    lessons_learned, which v1 never instantiates
"""

from datetime import datetime, timezone

import pytest

from conftest import OWNER_ID, PM_ID, make_template
from template_center.core.exceptions import (
    BadRequestError,
    ConflictError,
    DataIntegrityError,
    ForbiddenError,
    NotFoundError,
)
from template_center.models import db as _db
from template_center.models.audit import AuditEvent
from template_center.models.document import DocumentInstance
from template_center.models.governance import GateApproval, TemplateLineage
from template_center.models.template import TemplateVersion
from template_center.services import gate_approval_service
from template_center.services.gate_policy_resolver import GateRequirements, get_gate_requirements
from template_center.services.template_apply_service import apply_template


# ── Helpers ──────────────────────────────────────────────────────────────────


@pytest.fixture()
def applied(project, org, template):
    apply_template(
        project_id=project.id, template_key="waterfall_standard", version=1,
        actor_id=OWNER_ID, organization_id=org.id,
    )
    return project


def _set_status(project, doc_key, status):
    doc = DocumentInstance.query.filter_by(project_id=project.id, doc_key=doc_key).one()
    doc.status = status
    _db.session.commit()


def _decide(project, org, gate_key, decision, **kwargs):
    return gate_approval_service.decide(
        project_id=project.id,
        gate_key=gate_key,
        decision=decision,
        actor_id=kwargs.pop("actor_id", PM_ID),
        organization_id=org.id,
        **kwargs,
    )


# ── Policy resolver ──────────────────────────────────────────────────────────


class TestGateRequirements:
    def test_blocking_documents_are_added(self, applied):
        req = get_gate_requirements(applied.id, "initiation_gate")
        assert req.required_doc_keys == ["risk_register", "project_charter"]
        assert req.required_kpi_keys == ["schedule_variance"]
        assert req.required_doc_states == ["approved", "completed"]
        assert req.require_all_kpis is True

    def test_unknown_gate(self, applied):
        with pytest.raises(NotFoundError) as exc_info:
            get_gate_requirements(applied.id, "no_such_gate")
        assert exc_info.value.code == "gate_not_found"

    def test_template_not_applied(self, project):
        with pytest.raises(NotFoundError) as exc_info:
            get_gate_requirements(project.id, "initiation_gate")
        assert exc_info.value.code == "template_not_applied"

    def test_gates_as_list(self, project, org, library):
        make_template("listed", [{
            "documents": ["project_charter"],
            "gates": [{"gate_key": "kickoff", "required_doc_keys": ["project_charter"],
                       "required_doc_states": ["completed"]}],
        }])
        apply_template(project_id=project.id, template_key="listed", version=None,
                       actor_id=OWNER_ID, organization_id=org.id)
        req = get_gate_requirements(project.id, "kickoff")
        assert req.required_doc_keys == ["project_charter"]
        assert req.required_doc_states == ["completed"]

    def test_gate_named_only_by_blocking_document(self, project, org, library):
        make_template("t1", [{
            "kpis": [{"kpi_key": "spi", "required": True}],
            "documents": [{"doc_key": "charter", "blocks_gate_key": "g1"}],
        }])
        apply_template(project_id=project.id, template_key="t1", version=None,
                       actor_id=OWNER_ID, organization_id=org.id)

        req = get_gate_requirements(project.id, "g1")
        assert req.required_doc_keys == ["charter"]
        assert req.required_kpi_keys == []
        assert req.required_doc_states == ["approved", "completed"]

        with pytest.raises(NotFoundError) as exc_info:
            get_gate_requirements(project.id, "g2")
        assert exc_info.value.code == "gate_not_found"

    def test_schema_blocking_document_without_instance(self, project, org, library):
        v1 = {"documents": [{"doc_key": "charter", "blocks_gate_key": "g1"}]}
        v2 = {"documents": [{"doc_key": "charter", "blocks_gate_key": "g1"},
                            {"doc_key": "signoff_memo", "blocks_gate_key": "g1"}]}
        make_template("t1", [v1, v2])
        apply_template(project_id=project.id, template_key="t1", version=1,
                       actor_id=OWNER_ID, organization_id=org.id)
        # point the lineage at v2 without instantiating its documents
        lineage = TemplateLineage.query.filter_by(project_id=project.id).one()
        lineage.template_version_id = TemplateVersion.query.filter_by(version=2).one().id
        _db.session.commit()

        req = get_gate_requirements(project.id, "g1")
        assert req.required_doc_keys == ["charter", "signoff_memo"]
        blockers = gate_approval_service.get_blockers(project.id, "g1", req)
        assert {"type": "document", "key": "signoff_memo", "reason": "missing_doc_instance"} in blockers

    def test_malformed_gates_is_data_integrity_error(self, project, org, library):
        make_template("bad_gates", [{"documents": [], "gates": "initiation_gate"}])
        apply_template(project_id=project.id, template_key="bad_gates", version=None,
                       actor_id=OWNER_ID, organization_id=org.id)
        with pytest.raises(DataIntegrityError):
            get_gate_requirements(project.id, "initiation_gate")


# ── Blockers ─────────────────────────────────────────────────────────────────


class TestBlockers:
    def test_fresh_documents_are_in_invalid_state(self, applied):
        req = get_gate_requirements(applied.id, "initiation_gate")
        blockers = gate_approval_service.get_blockers(applied.id, "initiation_gate", req)
        assert blockers == [
            {"type": "document", "key": "risk_register", "reason": "doc_state_invalid"},
            {"type": "document", "key": "project_charter", "reason": "doc_state_invalid"},
        ]

    def test_missing_document_instance(self, applied):
        req = get_gate_requirements(applied.id, "closure_gate")
        blockers = gate_approval_service.get_blockers(applied.id, "closure_gate", req)
        assert blockers == [{"type": "document", "key": "lessons_learned", "reason": "missing_doc_instance"}]

    def test_missing_kpi_attachment(self, applied):
        req = GateRequirements(required_kpi_keys=["schedule_variance", "defect_density"])
        blockers = gate_approval_service.get_blockers(applied.id, "custom", req)
        assert blockers == [{"type": "kpi", "key": "defect_density", "reason": "missing_project_kpi"}]

    def test_any_of_kpis_satisfied_by_one_attachment(self, applied):
        req = GateRequirements(required_kpi_keys=["schedule_variance", "defect_density"],
                               require_all_kpis=False)
        assert gate_approval_service.get_blockers(applied.id, "custom", req) == []

    def test_any_of_kpis_blocks_when_none_attached(self, applied):
        req = GateRequirements(required_kpi_keys=["defect_density"], require_all_kpis=False)
        blockers = gate_approval_service.get_blockers(applied.id, "custom", req)
        assert [b["key"] for b in blockers] == ["defect_density"]

    def test_cleared_when_documents_approved_or_completed(self, applied):
        _set_status(applied, "risk_register", "approved")
        _set_status(applied, "project_charter", "completed")
        req = get_gate_requirements(applied.id, "initiation_gate")
        assert gate_approval_service.get_blockers(applied.id, "initiation_gate", req) == []

    def test_gate_blockers_read_is_scoped(self, applied, other_org):
        with pytest.raises(ForbiddenError):
            gate_approval_service.get_gate_blockers(applied.id, "initiation_gate", other_org.id)


# ── Decisions ────────────────────────────────────────────────────────────────


class TestDecide:
    def test_approve_blocked(self, applied, org):
        with pytest.raises(ConflictError) as exc_info:
            _decide(applied, org, "closure_gate", "approved")

        err = exc_info.value
        assert err.code == "gate_blocked"
        assert err.details["gate_key"] == "closure_gate"
        assert {"type": "document", "key": "lessons_learned", "reason": "missing_doc_instance"} in err.details["blockers"]
        assert GateApproval.query.count() == 0

        event = AuditEvent.query.filter_by(event_type="GATE_DECIDE_BLOCKED").one()
        assert event.new_state["blockers"][0]["key"] == "lessons_learned"

    def test_approved_with_comments_is_also_blocked(self, applied, org):
        with pytest.raises(ConflictError):
            _decide(applied, org, "initiation_gate", "approved_with_comments", comment="ok-ish")

    def test_reject_skips_blockers(self, applied, org):
        approval = _decide(applied, org, "closure_gate", "rejected", comment="Not ready")
        assert approval["decision"] == "rejected"
        assert approval["decided_by"] == PM_ID
        assert AuditEvent.query.filter_by(event_type="GATE_DECIDE").count() == 1

    def test_approve_when_clear(self, applied, org):
        _set_status(applied, "risk_register", "approved")
        _set_status(applied, "project_charter", "approved")

        approval = _decide(applied, org, "initiation_gate", "approved", evidence={"minutes": "s3://m.pdf"})

        row = _db.session.get(GateApproval, approval["id"])
        assert row.evidence == {"minutes": "s3://m.pdf"}
        event = AuditEvent.query.filter_by(event_type="GATE_DECIDE").one()
        assert event.entity_id == str(approval["id"])
        assert event.new_state == {"gate_key": "initiation_gate", "decision": "approved"}

    def test_explicit_requirements_override_policy(self, applied, org):
        approval = _decide(applied, org, "initiation_gate", "approved", requirements=GateRequirements())
        assert approval["decision"] == "approved"

    def test_invalid_decision(self, applied, org):
        with pytest.raises(BadRequestError):
            _decide(applied, org, "initiation_gate", "maybe")
        event = AuditEvent.query.filter_by(event_type="GATE_DECIDE_FAILED").one()
        assert event.new_state["error_code"] == "INVALID_DECISION"

    def test_unknown_gate_is_audited_failure(self, applied, org):
        with pytest.raises(NotFoundError):
            _decide(applied, org, "no_such_gate", "rejected")
        assert AuditEvent.query.filter_by(event_type="GATE_DECIDE_FAILED").count() == 1

    def test_cross_org_forbidden(self, applied, other_org):
        with pytest.raises(ForbiddenError):
            _decide(applied, other_org, "initiation_gate", "rejected")
        assert GateApproval.query.count() == 0


class TestGateHistory:
    def test_newest_first(self, applied, org):
        _decide(applied, org, "closure_gate", "rejected", comment="first")
        _decide(applied, org, "closure_gate", "rejected", comment="second")

        history = gate_approval_service.get_gate_history(applied.id, "closure_gate", org.id)
        assert [h["comment"] for h in history] == ["second", "first"]

    def test_same_timestamp_resolves_to_higher_id(self, applied, org):
        stamp = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for comment in ("older", "newer"):
            _db.session.add(GateApproval(
                project_id=applied.id, gate_key="closure_gate", decision="rejected",
                comment=comment, decided_by=PM_ID, decided_at=stamp,
            ))
            _db.session.commit()

        history = gate_approval_service.get_gate_history(applied.id, "closure_gate", org.id)
        assert history[0]["comment"] == "newer"

    def test_history_is_per_gate(self, applied, org):
        _decide(applied, org, "closure_gate", "rejected")
        assert gate_approval_service.get_gate_history(applied.id, "initiation_gate", org.id) == []
