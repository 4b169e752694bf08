"""
Template Apply Service: instantiate a published template on a project.

Applying creates the KPI attachments and document instances the template
schema asks for, exactly once per project, and records the binding in
TemplateLineage.

Concurrency:
    The project row is read ``FOR UPDATE`` (it exists even when no lineage
    does) and then the lineage row ``FOR UPDATE``. Concurrent applies for the
    same project therefore queue behind each other; the second one sees the
    first one's lineage and takes the idempotent path. Where the store has no
    row locks (SQLite), the unique constraint on ``template_lineage.project_id``
    catches the race: the loser rolls back and re-runs once, which re-reads the
    winner's lineage.

Usage:
    from template_center.services.template_apply_service import apply_template

    result = apply_template(
        project_id=1,
        template_key="waterfall_standard",
        version=None,            # latest published
        actor_id=7,
        organization_id=3,
    )
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from template_center.core.exceptions import BadRequestError, DataIntegrityError
from template_center.models import db
from template_center.models.audit import record_failure_event, write_audit_event
from template_center.models.document import DocumentInstance
from template_center.models.governance import KpiAttachment, TemplateLineage
from template_center.models.project import Project
from template_center.services import template_catalog
from template_center.services.project_scope import assert_in_scope

logger = logging.getLogger(__name__)

APPLY_MODES = ("create_missing_only", "full")


# ── Public API ─────────────────────────────────────────────────────────────────


def apply_template(
    project_id: int,
    template_key: str,
    version: int | None,
    actor_id: int,
    organization_id: int,
    workspace_id: int | None = None,
    mode: str = "create_missing_only",
) -> dict:
    """Apply a published template version to a project.

    Idempotent: re-applying the version the project already points at
    creates nothing and reports the existing counts. Applying a different
    version moves the lineage pointer and adds whatever is missing; it never
    deletes attachments or documents created earlier.

    Returns:
        {"applied", "idempotent", "template_key", "version", "lineage_id",
         "created_kpis", "created_docs", "existing_kpis", "existing_docs",
         "skipped_kpi_keys"}

    Raises:
        NotFoundError, ForbiddenError, BadRequestError, DataIntegrityError.
        Every failure is recorded as TEMPLATE_APPLY_FAILED before re-raising.
    """
    try:
        return _apply(project_id, template_key, version, actor_id, organization_id, workspace_id, mode)
    except Exception as exc:
        logger.warning(
            "template_apply_failed project_id=%s template_key=%s error=%s",
            project_id, template_key, exc,
            extra={"project_id": project_id, "template_key": template_key, "event_type": "TEMPLATE_APPLY_FAILED"},
        )
        record_failure_event(
            event_type="TEMPLATE_APPLY_FAILED",
            entity_type="TEMPLATE_LINEAGE",
            entity_id=None,
            actor_id=actor_id,
            organization_id=organization_id,
            workspace_id=workspace_id,
            project_id=project_id,
            state={"template_key": template_key, "version": version, "project_id": project_id},
            error=exc,
        )
        raise


# ── Internals ─────────────────────────────────────────────────────────────────


def _apply(project_id, template_key, version, actor_id, organization_id, workspace_id, mode) -> dict:
    logger.info(
        "template_apply_started project_id=%s template_key=%s version=%s",
        project_id, template_key, version,
        extra={"project_id": project_id, "template_key": template_key},
    )
    if mode not in APPLY_MODES:
        raise BadRequestError(
            f"Invalid apply mode '{mode}'. Must be one of: {', '.join(APPLY_MODES)}",
            code="INVALID_MODE",
        )

    project = assert_in_scope(project_id, organization_id, workspace_id)
    definition, _versions = template_catalog.get_by_key(template_key, organization_id, workspace_id)
    published = template_catalog.get_published_version(definition.id, version)

    schema = published.schema
    if not isinstance(schema, dict):
        raise DataIntegrityError(
            f"Template version {published.id} has a malformed schema",
            details={"template_version_id": published.id},
        )
    kpi_items = _schema_items(schema, "kpis", "kpi_key", published.id)
    doc_items = _schema_items(schema, "documents", "doc_key", published.id)

    plan = {
        "project_id": project.id,
        "workspace_id": project.workspace_id,
        "definition_id": definition.id,
        "version_id": published.id,
        "version_number": published.version,
    }

    try:
        result = _reconcile(plan, kpi_items, doc_items, actor_id, mode)
    except IntegrityError:
        # Another apply inserted the lineage first; re-read it.
        db.session.rollback()
        logger.info(
            "template_apply_lineage_conflict project_id=%s, re-reading lineage",
            project_id,
            extra={"project_id": project_id, "template_key": template_key},
        )
        result = _reconcile(plan, kpi_items, doc_items, actor_id, mode)

    write_audit_event(
        event_type="TEMPLATE_APPLIED",
        entity_type="TEMPLATE_LINEAGE",
        entity_id=result["lineage_id"],
        actor_id=actor_id,
        organization_id=organization_id,
        workspace_id=plan["workspace_id"],
        project_id=project_id,
        old_state=result.pop("_previous"),
        new_state={
            "template_key": template_key,
            "version": plan["version_number"],
            "created_kpis": result["created_kpis"],
            "created_docs": result["created_docs"],
            "existing_kpis": result["existing_kpis"],
            "existing_docs": result["existing_docs"],
        },
        metadata={"template_definition_id": plan["definition_id"], "mode": mode},
    )
    db.session.commit()

    logger.info(
        "template_apply_completed project_id=%s template_key=%s version=%s created_kpis=%s created_docs=%s",
        project_id, template_key, plan["version_number"], result["created_kpis"], result["created_docs"],
        extra={"project_id": project_id, "template_key": template_key, "event_type": "TEMPLATE_APPLIED"},
    )

    result.update({
        "applied": True,
        "template_key": template_key,
        "version": plan["version_number"],
    })
    return result


def _schema_items(schema: dict, section: str, key_field: str, version_id: int) -> list[dict]:
    """Normalise ``schema[section]`` to a list of dicts carrying ``key_field``.

    Plain string entries are accepted as shorthand for ``{key_field: value}``.
    """
    raw = schema.get(section) or []
    if not isinstance(raw, list):
        raise DataIntegrityError(
            f"Template version {version_id}: '{section}' must be a list",
            details={"template_version_id": version_id, "section": section},
        )
    items = []
    for entry in raw:
        if isinstance(entry, str):
            entry = {key_field: entry}
        if not isinstance(entry, dict) or not entry.get(key_field):
            raise DataIntegrityError(
                f"Template version {version_id}: every '{section}' entry needs '{key_field}'",
                details={"template_version_id": version_id, "section": section},
            )
        items.append(entry)
    return items


def _lock_project(project_id: int) -> None:
    db.session.execute(
        select(Project.id).where(Project.id == project_id).with_for_update()
    )


def _lock_lineage(project_id: int) -> TemplateLineage | None:
    return db.session.execute(
        select(TemplateLineage)
        .where(TemplateLineage.project_id == project_id)
        .with_for_update()
    ).scalar_one_or_none()


def _count_existing(project_id: int) -> tuple[int, int]:
    kpis = db.session.execute(
        select(func.count(KpiAttachment.id)).where(KpiAttachment.project_id == project_id)
    ).scalar_one()
    docs = db.session.execute(
        select(func.count(DocumentInstance.id)).where(DocumentInstance.project_id == project_id)
    ).scalar_one()
    return kpis, docs


def _reconcile(plan: dict, kpi_items: list[dict], doc_items: list[dict], actor_id: int, mode: str) -> dict:
    """Upsert lineage and create missing attachments/instances.

    Runs inside the session's current transaction; the caller commits.
    """
    project_id = plan["project_id"]

    _lock_project(project_id)
    lineage = _lock_lineage(project_id)

    if lineage is not None and lineage.template_version_id == plan["version_id"]:
        existing_kpis, existing_docs = _count_existing(project_id)
        logger.info(
            "template_apply_idempotent project_id=%s lineage_id=%s",
            project_id, lineage.id,
            extra={"project_id": project_id},
        )
        return {
            "idempotent": True,
            "lineage_id": lineage.id,
            "created_kpis": 0,
            "created_docs": 0,
            "existing_kpis": existing_kpis,
            "existing_docs": existing_docs,
            "skipped_kpi_keys": [],
            "_previous": {"template_version_id": lineage.template_version_id},
        }

    now = datetime.now(timezone.utc)
    if lineage is not None:
        previous = {
            "template_definition_id": lineage.template_definition_id,
            "template_version_id": lineage.template_version_id,
        }
        lineage.template_definition_id = plan["definition_id"]
        lineage.template_version_id = plan["version_id"]
        lineage.applied_at = now
        lineage.applied_by = actor_id
        lineage.upgrade_state = "none"
    else:
        previous = None
        lineage = TemplateLineage(
            project_id=project_id,
            template_definition_id=plan["definition_id"],
            template_version_id=plan["version_id"],
            applied_at=now,
            applied_by=actor_id,
            upgrade_state="none",
        )
        db.session.add(lineage)
    db.session.flush()

    kpi_counts = _reconcile_kpis(project_id, kpi_items, mode)
    doc_counts = _reconcile_documents(project_id, doc_items, actor_id)
    db.session.flush()

    return {
        "idempotent": False,
        "lineage_id": lineage.id,
        "created_kpis": kpi_counts["created"],
        "created_docs": doc_counts["created"],
        "existing_kpis": kpi_counts["existing"],
        "existing_docs": doc_counts["existing"],
        "skipped_kpi_keys": kpi_counts["skipped"],
        "_previous": previous,
    }


def _reconcile_kpis(project_id: int, kpi_items: list[dict], mode: str) -> dict:
    kpi_defs = template_catalog.get_kpis_by_keys(item["kpi_key"] for item in kpi_items)
    attached = {
        a.kpi_definition_id: a
        for a in KpiAttachment.query.filter_by(project_id=project_id).all()
    }

    created = existing = 0
    skipped: list[str] = []
    for item in kpi_items:
        kpi_key = item["kpi_key"]
        kpi_def = kpi_defs.get(kpi_key)
        if kpi_def is None:
            logger.warning(
                "template_apply_unknown_kpi project_id=%s kpi_key=%s", project_id, kpi_key,
                extra={"project_id": project_id},
            )
            skipped.append(kpi_key)
            continue

        required = bool(item.get("required"))
        attachment = attached.get(kpi_def.id)
        if attachment is not None:
            existing += 1
            if required and not attachment.is_required:
                attachment.is_required = True
            elif mode == "full" and attachment.is_required != required:
                attachment.is_required = required
            continue

        attachment = KpiAttachment(
            project_id=project_id,
            kpi_definition_id=kpi_def.id,
            is_required=required,
            source=item.get("source") if item.get("source") in ("manual", "computed") else "manual",
        )
        db.session.add(attachment)
        attached[kpi_def.id] = attachment
        created += 1

    return {"created": created, "existing": existing, "skipped": skipped}


def _reconcile_documents(project_id: int, doc_items: list[dict], actor_id: int) -> dict:
    doc_templates = template_catalog.get_doc_templates_by_keys(item["doc_key"] for item in doc_items)
    instances = {
        d.doc_key: d
        for d in DocumentInstance.query.filter_by(project_id=project_id).all()
    }

    created = existing = 0
    for item in doc_items:
        doc_key = item["doc_key"]
        required = bool(item.get("required"))
        blocks_gate_key = item.get("blocks_gate_key") or None

        instance = instances.get(doc_key)
        if instance is not None:
            existing += 1
            instance.is_required = required
            instance.blocks_gate_key = blocks_gate_key
            continue

        tmpl = doc_templates.get(doc_key)
        instance = DocumentInstance(
            project_id=project_id,
            doc_template_id=tmpl.id if tmpl else None,
            doc_key=doc_key,
            name=(tmpl.name if tmpl else None) or item.get("name") or doc_key,
            content_type=tmpl.content_type if tmpl else "rich_text",
            status="not_started",
            owner_id=actor_id,
            reviewer_ids=[],
            current_version=1,
            is_required=required,
            blocks_gate_key=blocks_gate_key,
        )
        db.session.add(instance)
        instances[doc_key] = instance
        created += 1

    return {"created": created, "existing": existing}
