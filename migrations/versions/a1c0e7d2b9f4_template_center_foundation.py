"""template_center_foundation

Create the template-center schema: organizations / workspaces / projects,
the template catalog and reference libraries, lineage, KPI attachments and
values, document instances and versions, gate approvals and audit events.

Revision ID: a1c0e7d2b9f4
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c0e7d2b9f4"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "organizations" not in existing_tables:
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "workspaces" not in existing_tables:
        op.create_table(
            "workspaces",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workspaces_organization_id", "workspaces", ["organization_id"])

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("workspace_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
            sa.Column("project_manager_id", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_projects_organization_id", "projects", ["organization_id"])
        op.create_index("ix_projects_workspace_id", "projects", ["workspace_id"])

    if "template_definitions" not in existing_tables:
        op.create_table(
            "template_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("scope", sa.String(length=20), nullable=False, server_default="system"),
            sa.Column("organization_id", sa.Integer(), nullable=True),
            sa.Column("workspace_id", sa.Integer(), nullable=True),
            sa.Column("template_key", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=50), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "scope", "organization_id", "workspace_id", "template_key",
                name="uq_template_definitions_scope_key",
            ),
        )
        op.create_index("ix_template_definitions_organization_id", "template_definitions", ["organization_id"])
        op.create_index("ix_template_definitions_workspace_id", "template_definitions", ["workspace_id"])
        op.create_index("ix_template_definitions_template_key", "template_definitions", ["template_key"])

    if "template_versions" not in existing_tables:
        op.create_table(
            "template_versions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_definition_id", sa.Integer(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("changelog", sa.Text(), nullable=True),
            sa.Column("schema", sa.JSON(), nullable=False),
            sa.Column("hash", sa.String(length=64), nullable=True),
            _ts("published_at", nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["template_definition_id"], ["template_definitions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("template_definition_id", "version", name="uq_template_versions_def_version"),
        )
        op.create_index(
            "ix_template_versions_def_status", "template_versions", ["template_definition_id", "status"],
        )

    if "kpi_definitions" not in existing_tables:
        op.create_table(
            "kpi_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("kpi_key", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("category", sa.String(length=50), nullable=False, server_default="delivery"),
            sa.Column("unit", sa.String(length=30), nullable=False, server_default="ratio"),
            sa.Column("direction", sa.String(length=20), nullable=False, server_default="higher_is_better"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("kpi_key"),
        )

    if "doc_templates" not in existing_tables:
        op.create_table(
            "doc_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("doc_key", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("category", sa.String(length=50), nullable=False, server_default="governance"),
            sa.Column("content_type", sa.String(length=30), nullable=False, server_default="rich_text"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("doc_key"),
        )

    if "template_lineage" not in existing_tables:
        op.create_table(
            "template_lineage",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("template_definition_id", sa.Integer(), nullable=False),
            sa.Column("template_version_id", sa.Integer(), nullable=False),
            _ts("applied_at"),
            sa.Column("applied_by", sa.Integer(), nullable=False),
            sa.Column("upgrade_state", sa.String(length=20), nullable=False, server_default="none"),
            sa.Column("upgrade_notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["template_definition_id"], ["template_definitions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["template_version_id"], ["template_versions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", name="uq_template_lineage_project"),
        )

    if "project_kpis" not in existing_tables:
        op.create_table(
            "project_kpis",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("kpi_definition_id", sa.Integer(), nullable=False),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("source", sa.String(length=20), nullable=False, server_default="manual"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["kpi_definition_id"], ["kpi_definitions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "kpi_definition_id", name="uq_project_kpis_project_kpi"),
        )
        op.create_index("ix_project_kpis_project_id", "project_kpis", ["project_id"])

    if "kpi_values" not in existing_tables:
        op.create_table(
            "kpi_values",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_kpi_id", sa.Integer(), nullable=False),
            _ts("recorded_at"),
            sa.Column("value", sa.Numeric(18, 6), nullable=True),
            sa.Column("value_text", sa.Text(), nullable=True),
            sa.Column("recorded_by", sa.Integer(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.ForeignKeyConstraint(["project_kpi_id"], ["project_kpis.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_kpi_values_project_kpi_recorded", "kpi_values", ["project_kpi_id", "recorded_at"],
        )

    if "document_instances" not in existing_tables:
        op.create_table(
            "document_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("doc_template_id", sa.Integer(), nullable=True),
            sa.Column("doc_key", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("content_type", sa.String(length=30), nullable=False, server_default="rich_text"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="not_started"),
            sa.Column("owner_id", sa.Integer(), nullable=False),
            sa.Column("reviewer_ids", sa.JSON(), nullable=False),
            sa.Column("current_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("blocks_gate_key", sa.String(length=100), nullable=True),
            _ts("completed_at", nullable=True),
            sa.Column("completed_by", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["doc_template_id"], ["doc_templates.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "doc_key", name="uq_document_instances_project_doc_key"),
        )
        op.create_index(
            "ix_document_instances_project_status", "document_instances", ["project_id", "status"],
        )

    if "document_versions" not in existing_tables:
        op.create_table(
            "document_versions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("document_instance_id", sa.Integer(), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("content", sa.JSON(), nullable=True),
            sa.Column("external_url", sa.String(length=1000), nullable=True),
            sa.Column("file_storage_key", sa.String(length=500), nullable=True),
            sa.Column("change_summary", sa.Text(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=False),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["document_instance_id"], ["document_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "document_instance_id", "version_number",
                name="uq_document_versions_instance_version",
            ),
        )

    if "gate_approvals" not in existing_tables:
        op.create_table(
            "gate_approvals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("gate_key", sa.String(length=100), nullable=False),
            sa.Column("decision", sa.String(length=30), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("evidence", sa.JSON(), nullable=True),
            sa.Column("decided_by", sa.Integer(), nullable=False),
            _ts("decided_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_gate_approvals_project_gate_decided", "gate_approvals",
            ["project_id", "gate_key", "decided_at"],
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=True),
            sa.Column("workspace_id", sa.Integer(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("event_type", sa.String(length=60), nullable=False),
            sa.Column("entity_type", sa.String(length=40), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=True),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("old_state", sa.JSON(), nullable=True),
            sa.Column("new_state", sa.JSON(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_events_organization_id", "audit_events", ["organization_id"])
        op.create_index("ix_audit_events_entity", "audit_events", ["entity_type", "entity_id"])
        op.create_index("ix_audit_events_project", "audit_events", ["project_id"])
        op.create_index("ix_audit_events_type", "audit_events", ["event_type"])
        op.create_index("ix_audit_events_created", "audit_events", ["created_at"])


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    # Reverse dependency order; dropping a table drops its indexes.
    for table in (
        "audit_events",
        "gate_approvals",
        "document_versions",
        "document_instances",
        "kpi_values",
        "project_kpis",
        "template_lineage",
        "doc_templates",
        "kpi_definitions",
        "template_versions",
        "template_definitions",
        "projects",
        "workspaces",
        "organizations",
    ):
        if table in existing_tables:
            op.drop_table(table)
