"""
Template Center audit domain model.

Models:
    - AuditEvent: immutable, append-only audit trail for governance events.

Writers:
    - write_audit_event: flush one event inside the caller's transaction.
    - record_failure_event: roll back the failed work, then write and commit
      the failure event on its own so it survives the rollback.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import JSON

from template_center.core.exceptions import error_code
from template_center.models import db

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "TEMPLATE_LINEAGE",
    "DOCUMENT_INSTANCE",
    "GATE_APPROVAL",
    "PROJECT_KPI",
}

AUDIT_EVENT_TYPES = {
    # Apply
    "TEMPLATE_APPLIED",
    "TEMPLATE_APPLY_FAILED",
    # Documents
    "DOC_TRANSITION",
    "DOCUMENT_TRANSITION_FAILED",
    "DOCUMENT_ASSIGNED",
    "DOCUMENT_ASSIGN_FAILED",
    # Gates
    "GATE_DECIDE",
    "GATE_DECIDE_BLOCKED",
    "GATE_DECIDE_FAILED",
    # KPIs
    "KPI_VALUE_RECORDED",
    "KPI_VALUE_RECORD_FAILED",
}

_MAX_ERROR_MESSAGE = 500


class AuditEvent(db.Model):
    """
    Immutable audit trail row.

    One row per mutating action, success or failure. ``old_state`` /
    ``new_state`` carry the before/after snapshot; failure rows carry
    ``error_code`` / ``error_message`` in ``new_state``.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        db.Index("ix_audit_events_project", "project_id"),
        db.Index("ix_audit_events_type", "event_type"),
        db.Index("ix_audit_events_created", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=True, index=True)
    workspace_id = db.Column(db.Integer, nullable=True)
    # Plain column: failure events may reference a project that does not exist.
    project_id = db.Column(db.Integer, nullable=True)

    event_type = db.Column(db.String(60), nullable=False)
    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)

    old_state = db.Column(JSON, nullable=True)
    new_state = db.Column(JSON, nullable=True)
    meta = db.Column("metadata", JSON, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "workspace_id": self.workspace_id,
            "project_id": self.project_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "old_state": self.old_state,
            "new_state": self.new_state,
            "metadata": self.meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditEvent {self.id}: {self.event_type} on {self.entity_type}/{self.entity_id}>"


# ── Writers ──────────────────────────────────────────────────────────────────


def write_audit_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id=None,
    actor_id: int | None = None,
    organization_id: int | None = None,
    workspace_id: int | None = None,
    project_id: int | None = None,
    old_state: dict | None = None,
    new_state: dict | None = None,
    metadata: dict | None = None,
) -> AuditEvent:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control: the event commits or rolls back with the
    mutation it describes.
    """
    event = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        actor_id=actor_id,
        organization_id=organization_id,
        workspace_id=workspace_id,
        project_id=project_id,
        old_state=old_state,
        new_state=new_state,
        meta=metadata,
    )
    db.session.add(event)
    db.session.flush()
    return event


def record_failure_event(
    *,
    event_type: str,
    entity_type: str,
    error: Exception,
    entity_id=None,
    actor_id: int | None = None,
    organization_id: int | None = None,
    workspace_id: int | None = None,
    project_id: int | None = None,
    state: dict | None = None,
    metadata: dict | None = None,
) -> AuditEvent:
    """
    Persist a failure event after discarding the failed transaction.

    The session is rolled back first so nothing from the failed operation
    is committed alongside the event; the event is then committed alone.
    """
    db.session.rollback()

    new_state = dict(state or {})
    new_state["error_code"] = error_code(error)
    new_state["error_message"] = str(error)[:_MAX_ERROR_MESSAGE]

    event = write_audit_event(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        organization_id=organization_id,
        workspace_id=workspace_id,
        project_id=project_id,
        new_state=new_state,
        metadata=metadata,
    )
    db.session.commit()

    logger.info(
        "Audit failure event recorded",
        extra={
            "event_type": event_type,
            "project_id": project_id,
            "organization_id": organization_id,
        },
    )
    return event
