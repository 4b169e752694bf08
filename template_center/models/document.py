"""
Document instances and their immutable versions.

Lifecycle:
    not_started → draft → in_review → approved → completed
                    ↑          │                    │
                    └──────────┘ (request_changes)  │
                    └────────────────────────────────┘ (create_new_version, version+1)

``superseded`` is terminal and reached only outside the transition table.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON

from template_center.models import db


def _utcnow():
    return datetime.now(timezone.utc)


DOCUMENT_STATUSES = (
    "not_started",
    "draft",
    "in_review",
    "approved",
    "completed",
    "superseded",
)

# action → {"from": status, "to": status, "roles": allowed role predicates}
DOCUMENT_TRANSITIONS = {
    "start_draft":        {"from": "not_started", "to": "draft",     "roles": ("owner",)},
    "submit_for_review":  {"from": "draft",       "to": "in_review", "roles": ("owner",)},
    "approve":            {"from": "in_review",   "to": "approved",  "roles": ("reviewer",)},
    "request_changes":    {"from": "in_review",   "to": "draft",     "roles": ("reviewer",)},
    "mark_complete":      {"from": "approved",    "to": "completed", "roles": ("owner", "pm")},
    "create_new_version": {"from": "completed",   "to": "draft",     "roles": ("owner",)},
}

DEFAULT_GATE_DOC_STATES = ("approved", "completed")


class DocumentInstance(db.Model):
    """A governed document required (or suggested) by the applied template."""

    __tablename__ = "document_instances"
    __table_args__ = (
        db.UniqueConstraint("project_id", "doc_key", name="uq_document_instances_project_doc_key"),
        db.Index("ix_document_instances_project_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    doc_template_id = db.Column(
        db.Integer,
        db.ForeignKey("doc_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    doc_key = db.Column(db.String(100), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    content_type = db.Column(db.String(30), nullable=False, default="rich_text")
    status = db.Column(
        db.String(20), nullable=False, default="not_started",
        comment="not_started | draft | in_review | approved | completed | superseded",
    )
    owner_id = db.Column(db.Integer, nullable=False)
    reviewer_ids = db.Column(JSON, nullable=False, default=list)
    current_version = db.Column(db.Integer, nullable=False, default=1)
    is_required = db.Column(db.Boolean, nullable=False, default=False)
    blocks_gate_key = db.Column(db.String(100), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    versions = db.relationship(
        "DocumentVersion",
        back_populates="document",
        order_by="DocumentVersion.version_number.desc()",
        lazy="dynamic",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "doc_template_id": self.doc_template_id,
            "doc_key": self.doc_key,
            "title": self.name,
            "content_type": self.content_type,
            "status": self.status,
            "owner_id": self.owner_id,
            "reviewer_ids": list(self.reviewer_ids or []),
            "version": self.current_version,
            "is_required": self.is_required,
            "blocks_gate_key": self.blocks_gate_key,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<DocumentInstance #{self.id} {self.doc_key} {self.status} v{self.current_version}>"


class DocumentVersion(db.Model):
    """Immutable content snapshot. One row per (document, version_number)."""

    __tablename__ = "document_versions"
    __table_args__ = (
        db.UniqueConstraint(
            "document_instance_id", "version_number",
            name="uq_document_versions_instance_version",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    document_instance_id = db.Column(
        db.Integer,
        db.ForeignKey("document_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    version_number = db.Column(db.Integer, nullable=False)
    content = db.Column(JSON, nullable=True)
    external_url = db.Column(db.String(1000), nullable=True)
    file_storage_key = db.Column(db.String(500), nullable=True)
    change_summary = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    document = db.relationship("DocumentInstance", back_populates="versions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_instance_id": self.document_instance_id,
            "version": self.version_number,
            "content": self.content,
            "external_url": self.external_url,
            "file_storage_key": self.file_storage_key,
            "change_summary": self.change_summary,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
