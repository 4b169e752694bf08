"""Project KPI reads and value recording."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select

from template_center.core.exceptions import BadRequestError, NotFoundError
from template_center.models import db
from template_center.models.audit import record_failure_event, write_audit_event
from template_center.models.governance import KpiAttachment, KpiValue
from template_center.models.template import KpiDefinition
from template_center.services.project_scope import assert_in_scope

logger = logging.getLogger(__name__)


def latest_value(attachment_id: int) -> KpiValue | None:
    return db.session.execute(
        select(KpiValue)
        .where(KpiValue.project_kpi_id == attachment_id)
        .order_by(KpiValue.recorded_at.desc(), KpiValue.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def project_attachments(project_id: int) -> list[KpiAttachment]:
    return db.session.execute(
        select(KpiAttachment)
        .join(KpiDefinition, KpiAttachment.kpi_definition_id == KpiDefinition.id)
        .where(KpiAttachment.project_id == project_id)
        .order_by(KpiDefinition.kpi_key)
    ).scalars().all()


def attachments_with_latest(project_id: int) -> list[dict]:
    result = []
    for attachment in project_attachments(project_id):
        item = attachment.to_dict()
        latest = latest_value(attachment.id)
        item["latest_value"] = latest.to_dict() if latest else None
        result.append(item)
    return result


def list_project_kpis(project_id: int, organization_id: int, workspace_id: int | None = None) -> list[dict]:
    """Attached KPIs with their latest recorded value (None if never recorded)."""
    assert_in_scope(project_id, organization_id, workspace_id)
    return attachments_with_latest(project_id)


def record_value(
    project_id: int,
    kpi_key: str,
    actor_id: int,
    organization_id: int,
    workspace_id: int | None = None,
    *,
    value=None,
    value_text: str | None = None,
    note: str | None = None,
) -> dict:
    """Append a value for an attached KPI and emit KPI_VALUE_RECORDED.

    Failures after the attachment is resolved are recorded as
    KPI_VALUE_RECORD_FAILED before the error propagates.

    Raises:
        NotFoundError: the KPI is not attached to the project.
        BadRequestError: neither ``value`` nor ``value_text`` given, or
            ``value`` is not numeric.
    """
    project = assert_in_scope(project_id, organization_id, workspace_id)

    attachment = db.session.execute(
        select(KpiAttachment)
        .join(KpiDefinition, KpiAttachment.kpi_definition_id == KpiDefinition.id)
        .where(KpiAttachment.project_id == project_id, KpiDefinition.kpi_key == kpi_key)
    ).scalar_one_or_none()
    if attachment is None:
        raise NotFoundError(
            resource="ProjectKpi",
            resource_id=kpi_key,
            code="kpi_not_attached",
            message=f'KPI "{kpi_key}" is not attached to project {project_id}',
        )

    attachment_id, workspace = attachment.id, project.workspace_id
    try:
        row = _append_value(attachment, project, kpi_key, actor_id, organization_id,
                            value=value, value_text=value_text, note=note)
    except Exception as exc:
        record_failure_event(
            event_type="KPI_VALUE_RECORD_FAILED",
            entity_type="PROJECT_KPI",
            error=exc,
            entity_id=attachment_id,
            actor_id=actor_id,
            organization_id=organization_id,
            workspace_id=workspace,
            project_id=project_id,
            state={"kpi_key": kpi_key},
        )
        raise

    logger.info(
        "kpi_value_recorded project_id=%s kpi_key=%s",
        project_id, kpi_key,
        extra={"project_id": project_id, "event_type": "KPI_VALUE_RECORDED"},
    )
    return row


def _parse_value(value, value_text):
    if value is None and not value_text:
        raise BadRequestError("value or value_text is required", code="VALIDATION_REQUIRED")
    if value is None:
        return None
    if isinstance(value, bool):
        raise BadRequestError("value must be numeric", code="VALIDATION_INVALID")
    try:
        numeric = Decimal(str(value))
    except InvalidOperation:
        raise BadRequestError("value must be numeric", code="VALIDATION_INVALID")
    if not numeric.is_finite():
        raise BadRequestError("value must be a finite number", code="VALIDATION_INVALID")
    return numeric


def _append_value(attachment, project, kpi_key, actor_id, organization_id, *, value, value_text, note) -> dict:
    numeric = _parse_value(value, value_text)

    row = KpiValue(
        project_kpi_id=attachment.id,
        recorded_at=datetime.now(timezone.utc),
        value=numeric,
        value_text=value_text,
        recorded_by=actor_id,
        meta={"note": note} if note else None,
    )
    db.session.add(row)
    db.session.flush()

    write_audit_event(
        event_type="KPI_VALUE_RECORDED",
        entity_type="PROJECT_KPI",
        entity_id=attachment.id,
        actor_id=actor_id,
        organization_id=organization_id,
        workspace_id=project.workspace_id,
        project_id=project.id,
        new_state={"kpi_key": kpi_key, "value": str(numeric) if numeric is not None else None,
                   "value_text": value_text},
    )
    db.session.commit()
    return row.to_dict()
