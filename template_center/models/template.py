"""Template catalog and reference library models.

TemplateDefinition / TemplateVersion hold the published template schemas.
KpiDefinition / DocTemplate are the reference libraries the schema keys
(``kpi_key``, ``doc_key``) resolve against.

Schema shape stored in ``TemplateVersion.schema``::

    {
        "kpis":      [{"kpi_key": "spi", "required": true}, ...],
        "documents": [{"doc_key": "charter", "required": true,
                       "blocks_gate_key": "g1"}, ...],
        "gates":     {"g1": {"required_doc_keys": [...],
                             "required_kpi_keys": [...],
                             "required_doc_states": ["approved", "completed"],
                             "require_all_kpis": true}}
    }
"""

from datetime import datetime, timezone

from sqlalchemy import JSON

from template_center.models import db


def _utcnow():
    return datetime.now(timezone.utc)


TEMPLATE_SCOPES = ("system", "org", "workspace")
VERSION_STATUSES = ("draft", "published", "deprecated")


class TemplateDefinition(db.Model):
    __tablename__ = "template_definitions"
    __table_args__ = (
        db.UniqueConstraint(
            "scope", "organization_id", "workspace_id", "template_key",
            name="uq_template_definitions_scope_key",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(20), nullable=False, default="system", comment="system | org | workspace")
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    workspace_id = db.Column(
        db.Integer, db.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    template_key = db.Column(db.String(100), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    versions = db.relationship(
        "TemplateVersion",
        back_populates="definition",
        order_by="TemplateVersion.version.desc()",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "scope": self.scope,
            "organization_id": self.organization_id,
            "workspace_id": self.workspace_id,
            "template_key": self.template_key,
            "name": self.name,
            "description": self.description,
            "category": self.category,
        }


class TemplateVersion(db.Model):
    __tablename__ = "template_versions"
    __table_args__ = (
        db.UniqueConstraint("template_definition_id", "version", name="uq_template_versions_def_version"),
        db.Index("ix_template_versions_def_status", "template_definition_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_definition_id = db.Column(
        db.Integer,
        db.ForeignKey("template_definitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    version = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="draft", comment="draft | published | deprecated")
    changelog = db.Column(db.Text, nullable=True)
    schema = db.Column(JSON, nullable=False)
    hash = db.Column(db.String(64), nullable=True)
    published_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    definition = db.relationship("TemplateDefinition", back_populates="versions")

    def to_dict(self):
        return {
            "id": self.id,
            "template_definition_id": self.template_definition_id,
            "version": self.version,
            "status": self.status,
            "changelog": self.changelog,
            "hash": self.hash,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }

    def __repr__(self):
        return f"<TemplateVersion def={self.template_definition_id} v{self.version} {self.status}>"


class KpiDefinition(db.Model):
    __tablename__ = "kpi_definitions"

    id = db.Column(db.Integer, primary_key=True)
    kpi_key = db.Column(db.String(100), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(50), nullable=False, default="delivery")
    unit = db.Column(db.String(30), nullable=False, default="ratio")
    direction = db.Column(db.String(20), nullable=False, default="higher_is_better")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "kpi_key": self.kpi_key,
            "name": self.name,
            "category": self.category,
            "unit": self.unit,
            "direction": self.direction,
            "is_active": self.is_active,
        }


class DocTemplate(db.Model):
    __tablename__ = "doc_templates"

    id = db.Column(db.Integer, primary_key=True)
    doc_key = db.Column(db.String(100), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(50), nullable=False, default="governance")
    content_type = db.Column(db.String(30), nullable=False, default="rich_text")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "doc_key": self.doc_key,
            "name": self.name,
            "category": self.category,
            "content_type": self.content_type,
            "is_active": self.is_active,
        }
