"""
Document Lifecycle Service: approval workflow for governed documents.

Manages document status transitions with:
  - Transition validation (DOCUMENT_TRANSITIONS)
  - Role checks via capability predicates (owner / reviewer / pm)
  - Side effects (mark_complete stamps completion, create_new_version
    advances the version counter)
  - Immutable version rows (DocumentVersion)
  - Audit trail: DOC_TRANSITION on success, DOCUMENT_TRANSITION_FAILED with
    the specific code on every rejection

Usage:
    from template_center.services import document_lifecycle

    doc = document_lifecycle.transition_document(
        project_id=1,
        document_id=12,
        action="submit_for_review",
        actor_id=7,
        organization_id=3,
    )
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from template_center.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from template_center.models import db
from template_center.models.audit import record_failure_event, write_audit_event
from template_center.models.document import (
    DOCUMENT_TRANSITIONS,
    DocumentInstance,
    DocumentVersion,
)
from template_center.services.project_scope import assert_in_scope

logger = logging.getLogger(__name__)


# ── Role predicates ──────────────────────────────────────────────────────────


def _is_owner(doc: DocumentInstance, actor_id: int, is_pm: bool) -> bool:
    return doc.owner_id == actor_id


def _is_reviewer(doc: DocumentInstance, actor_id: int, is_pm: bool) -> bool:
    return actor_id in (doc.reviewer_ids or [])


def _is_pm(doc: DocumentInstance, actor_id: int, is_pm: bool) -> bool:
    return bool(is_pm)


ROLE_PREDICATES = {
    "owner": _is_owner,
    "reviewer": _is_reviewer,
    "pm": _is_pm,
}


def can_act(doc: DocumentInstance, roles, actor_id: int, is_pm: bool = False) -> bool:
    """True if the actor satisfies at least one of ``roles`` for this document."""
    return any(ROLE_PREDICATES[role](doc, actor_id, is_pm) for role in roles)


# ── Private helpers ──────────────────────────────────────────────────────────


def _get_document(project_id: int, document_id: int) -> DocumentInstance:
    doc = db.session.execute(
        select(DocumentInstance).where(
            DocumentInstance.id == document_id,
            DocumentInstance.project_id == project_id,
        )
    ).scalar_one_or_none()
    if doc is None:
        raise NotFoundError(resource="Document", resource_id=document_id)
    return doc


def _version_exists(document_id: int, version_number: int) -> bool:
    return db.session.execute(
        select(DocumentVersion.id).where(
            DocumentVersion.document_instance_id == document_id,
            DocumentVersion.version_number == version_number,
        )
    ).first() is not None


def latest_version(document_id: int) -> DocumentVersion | None:
    return db.session.execute(
        select(DocumentVersion)
        .where(DocumentVersion.document_instance_id == document_id)
        .order_by(DocumentVersion.version_number.desc())
        .limit(1)
    ).scalar_one_or_none()


def _reject(exc: Exception, *, event_type: str, project_id, document_id, actor_id,
            organization_id, workspace_id, action=None):
    """Audit a rejected document operation, then raise ``exc``."""
    logger.info(
        "document_operation_rejected project_id=%s document_id=%s action=%s code=%s",
        project_id, document_id, action, getattr(exc, "code", None),
        extra={"project_id": project_id, "document_id": document_id, "event_type": event_type},
    )
    state = {"project_id": project_id, "document_id": document_id}
    if action is not None:
        state["action"] = action
    record_failure_event(
        event_type=event_type,
        entity_type="DOCUMENT_INSTANCE",
        entity_id=document_id,
        actor_id=actor_id,
        organization_id=organization_id,
        workspace_id=workspace_id,
        project_id=project_id,
        state=state,
        error=exc,
    )
    raise exc


# ── Public API ───────────────────────────────────────────────────────────────


def transition_document(
    project_id: int,
    document_id: int,
    action: str,
    actor_id: int,
    organization_id: int,
    workspace_id: int | None = None,
    *,
    is_pm: bool = False,
    content=None,
    external_url: str | None = None,
    file_storage_key: str | None = None,
    change_summary: str | None = None,
) -> dict:
    """
    Execute a document lifecycle transition.

    Args:
        project_id / organization_id / workspace_id: Scope; validated first.
        document_id: DocumentInstance id within the project.
        action: One of DOCUMENT_TRANSITIONS.
        actor_id: Who is performing the action.
        is_pm: Caller-supplied project-manager flag (pm role predicate).
        content / external_url / file_storage_key / change_summary: Optional
            payload written as an immutable DocumentVersion row.

    Returns:
        {"document": {...}, "previous_status", "new_status", "action",
         "version_written": int | None}

    Raises:
        NotFoundError: Project or document missing (not audited).
        ForbiddenError: Cross-org/workspace scope, or actor lacks the role.
        BadRequestError: INVALID_ACTION / INVALID_STATE_TRANSITION.
        ConflictError: DOCUMENT_VERSION_EXISTS.
    """
    project = assert_in_scope(project_id, organization_id, workspace_id)
    doc = _get_document(project_id, document_id)

    reject_ctx = {
        "event_type": "DOCUMENT_TRANSITION_FAILED",
        "project_id": project_id,
        "document_id": document_id,
        "actor_id": actor_id,
        "organization_id": organization_id,
        "workspace_id": project.workspace_id,
        "action": action,
    }

    logger.info(
        "document_transition_attempted project_id=%s document_id=%s action=%s",
        project_id, document_id, action,
        extra={"project_id": project_id, "document_id": document_id},
    )

    # 1. Validate action and source state
    rule = DOCUMENT_TRANSITIONS.get(action)
    if rule is None:
        _reject(
            BadRequestError(
                f"Invalid action: {action}",
                code="INVALID_ACTION",
                details={"valid_actions": sorted(DOCUMENT_TRANSITIONS)},
            ),
            **reject_ctx,
        )

    if doc.status != rule["from"]:
        _reject(
            BadRequestError(
                f'Transition from "{doc.status}" via "{action}" is not allowed',
                code="INVALID_STATE_TRANSITION",
                details={"from": doc.status, "action": action},
            ),
            **reject_ctx,
        )

    # 2. Role check
    if not can_act(doc, rule["roles"], actor_id, is_pm):
        _reject(
            ForbiddenError(
                "You do not have permission to perform this transition",
                code="FORBIDDEN",
                details={"required_roles": list(rule["roles"])},
            ),
            **reject_ctx,
        )

    # 3. Version immutability
    has_payload = content is not None or bool(external_url or file_storage_key or change_summary)
    write_version = action == "create_new_version" or has_payload
    target_version = doc.current_version + 1 if action == "create_new_version" else doc.current_version
    if write_version and _version_exists(doc.id, target_version):
        _reject(
            ConflictError(
                f"Version {target_version} of this document is already written; "
                "complete the document and create a new version instead",
                code="DOCUMENT_VERSION_EXISTS",
                details={"version": target_version},
            ),
            **reject_ctx,
        )

    # 4. Execute transition
    now = datetime.now(timezone.utc)
    previous_status = doc.status
    previous_version = doc.current_version
    doc.status = rule["to"]

    if action == "mark_complete":
        doc.completed_at = now
        doc.completed_by = actor_id
    elif action == "create_new_version":
        doc.current_version = target_version

    if write_version:
        db.session.add(DocumentVersion(
            document_instance_id=doc.id,
            version_number=target_version,
            content=content,
            external_url=external_url,
            file_storage_key=file_storage_key,
            change_summary=change_summary,
            created_by=actor_id,
            created_at=now,
        ))

    try:
        db.session.flush()
    except IntegrityError:
        # A concurrent transition wrote the same version row first.
        _reject(
            ConflictError(
                f"Version {target_version} of this document was written concurrently",
                code="DOCUMENT_VERSION_EXISTS",
                details={"version": target_version},
            ),
            **reject_ctx,
        )

    # 5. Audit log
    write_audit_event(
        event_type="DOC_TRANSITION",
        entity_type="DOCUMENT_INSTANCE",
        entity_id=doc.id,
        actor_id=actor_id,
        organization_id=organization_id,
        workspace_id=project.workspace_id,
        project_id=project_id,
        old_state={"status": previous_status, "version": previous_version},
        new_state={"status": doc.status, "action": action, "version": doc.current_version},
        metadata={"change_summary": change_summary} if change_summary else None,
    )
    db.session.commit()

    logger.info(
        "document_transition_completed project_id=%s document_id=%s %s -> %s",
        project_id, document_id, previous_status, doc.status,
        extra={"project_id": project_id, "document_id": document_id, "event_type": "DOC_TRANSITION"},
    )

    return {
        "document": doc.to_dict(),
        "previous_status": previous_status,
        "new_status": doc.status,
        "action": action,
        "version_written": target_version if write_version else None,
    }


def list_project_documents(project_id: int, organization_id: int, workspace_id: int | None = None) -> list[dict]:
    """All document instances of the project, most recently updated first."""
    assert_in_scope(project_id, organization_id, workspace_id)
    docs = db.session.execute(
        select(DocumentInstance)
        .where(DocumentInstance.project_id == project_id)
        .order_by(DocumentInstance.updated_at.desc(), DocumentInstance.id.desc())
    ).scalars().all()
    return [d.to_dict() for d in docs]


def get_latest(project_id: int, document_id: int, organization_id: int, workspace_id: int | None = None) -> dict:
    """Document instance merged with its latest version payload (if any)."""
    assert_in_scope(project_id, organization_id, workspace_id)
    doc = _get_document(project_id, document_id)
    latest = latest_version(doc.id)

    result = doc.to_dict()
    result.update({
        "content": latest.content if latest else None,
        "external_url": latest.external_url if latest else None,
        "file_storage_key": latest.file_storage_key if latest else None,
        "change_summary": latest.change_summary if latest else None,
        "latest_version_number": latest.version_number if latest else None,
    })
    return result


def get_history(project_id: int, document_id: int, organization_id: int, workspace_id: int | None = None) -> list[dict]:
    """Immutable version log, newest first. Empty list if nothing was written."""
    assert_in_scope(project_id, organization_id, workspace_id)
    doc = _get_document(project_id, document_id)
    versions = db.session.execute(
        select(DocumentVersion)
        .where(DocumentVersion.document_instance_id == doc.id)
        .order_by(DocumentVersion.version_number.desc())
    ).scalars().all()
    return [
        {
            "version": v.version_number,
            "status": doc.status if v.version_number == doc.current_version else "superseded",
            "change_summary": v.change_summary,
            "external_url": v.external_url,
            "file_storage_key": v.file_storage_key,
            "created_at": v.created_at.isoformat() if v.created_at else None,
            "created_by": v.created_by,
        }
        for v in versions
    ]


def assign(
    project_id: int,
    document_id: int,
    actor_id: int,
    organization_id: int,
    workspace_id: int | None = None,
    *,
    owner_id: int | None = None,
    reviewer_ids: list[int] | None = None,
) -> dict:
    """Change the owner and/or reviewers of a document.

    Bypasses the transition table: assignment is not a status change.
    Emits DOCUMENT_ASSIGNED with the before/after assignment.
    """
    project = assert_in_scope(project_id, organization_id, workspace_id)
    doc = _get_document(project_id, document_id)

    reject_ctx = {
        "event_type": "DOCUMENT_ASSIGN_FAILED",
        "project_id": project_id,
        "document_id": document_id,
        "actor_id": actor_id,
        "organization_id": organization_id,
        "workspace_id": project.workspace_id,
    }

    if owner_id is None and reviewer_ids is None:
        _reject(BadRequestError("owner_id or reviewer_ids is required", code="INVALID_ASSIGNMENT"), **reject_ctx)
    if reviewer_ids is not None and (
        not isinstance(reviewer_ids, list)
        or not all(isinstance(r, int) and not isinstance(r, bool) for r in reviewer_ids)
    ):
        _reject(BadRequestError("reviewer_ids must be a list of user ids", code="INVALID_ASSIGNMENT"), **reject_ctx)

    before = {"owner_id": doc.owner_id, "reviewer_ids": list(doc.reviewer_ids or [])}
    if owner_id is not None:
        doc.owner_id = owner_id
    if reviewer_ids is not None:
        # dict.fromkeys keeps first-seen order while dropping duplicates
        doc.reviewer_ids = list(dict.fromkeys(reviewer_ids))
    db.session.flush()

    write_audit_event(
        event_type="DOCUMENT_ASSIGNED",
        entity_type="DOCUMENT_INSTANCE",
        entity_id=doc.id,
        actor_id=actor_id,
        organization_id=organization_id,
        workspace_id=project.workspace_id,
        project_id=project_id,
        old_state=before,
        new_state={"owner_id": doc.owner_id, "reviewer_ids": list(doc.reviewer_ids or [])},
    )
    db.session.commit()

    logger.info(
        "document_assigned project_id=%s document_id=%s owner_id=%s",
        project_id, document_id, doc.owner_id,
        extra={"project_id": project_id, "document_id": document_id, "event_type": "DOCUMENT_ASSIGNED"},
    )
    return doc.to_dict()
