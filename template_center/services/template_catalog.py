"""
Template Catalog: read side of template definitions and reference libraries.

Authoring and publishing happen elsewhere; this module only resolves what a
caller may apply:

    definition, versions = get_by_key("waterfall_standard", org_id, ws_id)
    version = get_published_version(definition.id, version=2)

Key resolution prefers the most specific scope: a workspace template shadows
an org template, which shadows a system template with the same key.
"""

from __future__ import annotations

import logging

from sqlalchemy import or_, select

from template_center.core.exceptions import NotFoundError
from template_center.models import db
from template_center.models.template import (
    DocTemplate,
    KpiDefinition,
    TemplateDefinition,
    TemplateVersion,
)

logger = logging.getLogger(__name__)

_SCOPE_PRECEDENCE = {"workspace": 0, "org": 1, "system": 2}


def get_by_key(
    template_key: str,
    organization_id: int,
    workspace_id: int | None = None,
) -> tuple[TemplateDefinition, list[TemplateVersion]]:
    """Resolve a template key visible to the caller.

    Returns:
        (definition, versions) with versions ordered newest first.

    Raises:
        NotFoundError: No definition with that key is visible in scope.
    """
    visible = [
        TemplateDefinition.scope == "system",
        (TemplateDefinition.scope == "org") & (TemplateDefinition.organization_id == organization_id),
    ]
    if workspace_id is not None:
        visible.append(
            (TemplateDefinition.scope == "workspace")
            & (TemplateDefinition.organization_id == organization_id)
            & (TemplateDefinition.workspace_id == workspace_id)
        )

    candidates = db.session.execute(
        select(TemplateDefinition).where(
            TemplateDefinition.template_key == template_key,
            or_(*visible),
        )
    ).scalars().all()

    if not candidates:
        raise NotFoundError(
            resource="Template",
            code="template_not_found",
            message=f'Template "{template_key}" not found',
        )

    definition = min(candidates, key=lambda d: _SCOPE_PRECEDENCE.get(d.scope, 99))
    versions = db.session.execute(
        select(TemplateVersion)
        .where(TemplateVersion.template_definition_id == definition.id)
        .order_by(TemplateVersion.version.desc())
    ).scalars().all()
    return definition, list(versions)


def get_published_version(definition_id: int, version: int | None = None) -> TemplateVersion:
    """Return the requested published version, or the latest published one.

    Raises:
        NotFoundError: No matching published version exists.
    """
    stmt = select(TemplateVersion).where(
        TemplateVersion.template_definition_id == definition_id,
        TemplateVersion.status == "published",
    )
    if version is not None:
        stmt = stmt.where(TemplateVersion.version == version)
    stmt = stmt.order_by(TemplateVersion.version.desc()).limit(1)

    found = db.session.execute(stmt).scalar_one_or_none()
    if found is None:
        if version is not None:
            message = f"Published version {version} not found for template definition {definition_id}"
        else:
            message = f"No published version found for template definition {definition_id}"
        raise NotFoundError(resource="TemplateVersion", code="version_not_found", message=message)
    return found


# ── Reference libraries ──────────────────────────────────────────────────


def get_kpis_by_keys(kpi_keys) -> dict[str, KpiDefinition]:
    """Map kpi_key → active KpiDefinition for the given keys."""
    keys = [k for k in set(kpi_keys) if k]
    if not keys:
        return {}
    rows = db.session.execute(
        select(KpiDefinition).where(
            KpiDefinition.kpi_key.in_(keys),
            KpiDefinition.is_active.is_(True),
        )
    ).scalars().all()
    return {row.kpi_key: row for row in rows}


def get_doc_templates_by_keys(doc_keys) -> dict[str, DocTemplate]:
    """Map doc_key → active DocTemplate for the given keys."""
    keys = [k for k in set(doc_keys) if k]
    if not keys:
        return {}
    rows = db.session.execute(
        select(DocTemplate).where(
            DocTemplate.doc_key.in_(keys),
            DocTemplate.is_active.is_(True),
        )
    ).scalars().all()
    return {row.doc_key: row for row in rows}
