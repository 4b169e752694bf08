"""
Template Center governance models.

Models:
    - TemplateLineage: binding of a project to the template version it was
      instantiated from (one row per project).
    - KpiAttachment: a KPI tracked by a project (one per project + KPI).
    - KpiValue: append-only time series of recorded KPI values.
    - GateApproval: append-only log of gate decisions.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON

from template_center.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

UPGRADE_STATES = ("none", "eligible", "pending", "applied", "blocked")

KPI_SOURCES = ("manual", "computed")

GATE_DECISIONS = ("approved", "approved_with_comments", "rejected")
APPROVING_DECISIONS = frozenset({"approved", "approved_with_comments"})


class TemplateLineage(db.Model):
    """
    Which template version a project was built from.

    Owned exclusively by the apply service; ``project_id`` is unique so a
    concurrent second insert fails on the constraint instead of creating a
    duplicate binding.
    """

    __tablename__ = "template_lineage"
    __table_args__ = (
        db.UniqueConstraint("project_id", name="uq_template_lineage_project"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    template_definition_id = db.Column(
        db.Integer,
        db.ForeignKey("template_definitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    template_version_id = db.Column(
        db.Integer,
        db.ForeignKey("template_versions.id", ondelete="CASCADE"),
        nullable=False,
    )
    applied_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    applied_by = db.Column(db.Integer, nullable=False)
    upgrade_state = db.Column(
        db.String(20), nullable=False, default="none",
        comment="none | eligible | pending | applied | blocked",
    )
    upgrade_notes = db.Column(db.Text, nullable=True)

    definition = db.relationship("TemplateDefinition")
    version = db.relationship("TemplateVersion")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "template_definition_id": self.template_definition_id,
            "template_version_id": self.template_version_id,
            "template_key": self.definition.template_key if self.definition else None,
            "template_name": self.definition.name if self.definition else None,
            "version": self.version.version if self.version else None,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "applied_by": self.applied_by,
            "upgrade_state": self.upgrade_state,
            "upgrade_notes": self.upgrade_notes,
        }

    def __repr__(self):
        return f"<TemplateLineage project={self.project_id} version={self.template_version_id}>"


class KpiAttachment(db.Model):
    """A KPI the project is required (or opted) to track."""

    __tablename__ = "project_kpis"
    __table_args__ = (
        db.UniqueConstraint("project_id", "kpi_definition_id", name="uq_project_kpis_project_kpi"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kpi_definition_id = db.Column(
        db.Integer,
        db.ForeignKey("kpi_definitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    is_required = db.Column(db.Boolean, nullable=False, default=False)
    source = db.Column(db.String(20), nullable=False, default="manual", comment="manual | computed")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    kpi_definition = db.relationship("KpiDefinition")

    def to_dict(self) -> dict:
        kpi = self.kpi_definition
        return {
            "id": self.id,
            "project_id": self.project_id,
            "kpi_definition_id": self.kpi_definition_id,
            "kpi_key": kpi.kpi_key if kpi else None,
            "name": kpi.name if kpi else None,
            "unit": kpi.unit if kpi else None,
            "is_required": self.is_required,
            "source": self.source,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class KpiValue(db.Model):
    """Append-only KPI measurement. Never updated in place."""

    __tablename__ = "kpi_values"
    __table_args__ = (
        db.Index("ix_kpi_values_project_kpi_recorded", "project_kpi_id", "recorded_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_kpi_id = db.Column(
        db.Integer,
        db.ForeignKey("project_kpis.id", ondelete="CASCADE"),
        nullable=False,
    )
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    value = db.Column(db.Numeric(18, 6), nullable=True)
    value_text = db.Column(db.Text, nullable=True)
    recorded_by = db.Column(db.Integer, nullable=True)
    meta = db.Column("metadata", JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_kpi_id": self.project_kpi_id,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
            "value": float(self.value) if self.value is not None else None,
            "value_text": self.value_text,
            "recorded_by": self.recorded_by,
            "metadata": self.meta,
        }


class GateApproval(db.Model):
    """
    Immutable gate decision record.

    Business rules:
    - Rows are NEVER updated or deleted; append-only log.
    - The current decision for (project_id, gate_key) is the row with the
      latest ``decided_at``; ties resolve to the higher ``id``.
    """

    __tablename__ = "gate_approvals"
    __table_args__ = (
        db.Index("ix_gate_approvals_project_gate_decided", "project_id", "gate_key", "decided_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    gate_key = db.Column(db.String(100), nullable=False)
    decision = db.Column(
        db.String(30), nullable=False,
        comment="approved | approved_with_comments | rejected",
    )
    comment = db.Column(db.Text, nullable=True)
    evidence = db.Column(JSON, nullable=True)
    decided_by = db.Column(db.Integer, nullable=False)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "gate_key": self.gate_key,
            "decision": self.decision,
            "comment": self.comment,
            "evidence": self.evidence,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }

    def __repr__(self):
        return f"<GateApproval #{self.id} {self.gate_key} {self.decision}>"
