"""
Gate Approval Service: blocker evaluation and gate decisions.

Business rules:
    1. An approving decision (approved / approved_with_comments) is accepted
       only when the gate has no blockers.
    2. ``rejected`` is always accepted; blockers are not evaluated.
    3. Decisions are append-only GateApproval rows. The current decision is
       the latest ``decided_at`` (ties → highest id).
    4. The project row is locked before blockers are read, and the approval
       row is inserted in the same transaction, so a document regressing
       between check and insert cannot slip an approval through.

Audit events:
    GATE_DECIDE          accepted decision
    GATE_DECIDE_BLOCKED  approving decision refused because of blockers
    GATE_DECIDE_FAILED   any other failure (bad decision, unknown gate, ...)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from template_center.core.exceptions import BadRequestError, ConflictError
from template_center.models import db
from template_center.models.audit import record_failure_event, write_audit_event
from template_center.models.document import DocumentInstance
from template_center.models.governance import (
    APPROVING_DECISIONS,
    GATE_DECISIONS,
    GateApproval,
    KpiAttachment,
)
from template_center.models.template import KpiDefinition
from template_center.services.gate_policy_resolver import GateRequirements, get_gate_requirements
from template_center.services.project_scope import assert_in_scope

logger = logging.getLogger(__name__)


# ── Blockers ─────────────────────────────────────────────────────────────────


def get_blockers(project_id: int, gate_key: str, requirements: GateRequirements) -> list[dict]:
    """Compute unmet prerequisites for a gate.

    Returns a list of ``{"type", "key", "reason"}`` dicts, documents first,
    in the order the requirements list them. Empty list → gate may be approved.
    KPI blockers only check that the KPI is attached; values are not inspected.
    """
    blockers: list[dict] = []

    if requirements.required_doc_keys:
        docs = db.session.execute(
            select(DocumentInstance.doc_key, DocumentInstance.status).where(
                DocumentInstance.project_id == project_id,
                DocumentInstance.doc_key.in_(requirements.required_doc_keys),
            )
        ).all()
        status_by_key = {row.doc_key: row.status for row in docs}
        for key in requirements.required_doc_keys:
            status = status_by_key.get(key)
            if status is None:
                blockers.append({"type": "document", "key": key, "reason": "missing_doc_instance"})
            elif status not in requirements.required_doc_states:
                blockers.append({"type": "document", "key": key, "reason": "doc_state_invalid"})

    if requirements.required_kpi_keys:
        attached = set(db.session.execute(
            select(KpiDefinition.kpi_key)
            .join(KpiAttachment, KpiAttachment.kpi_definition_id == KpiDefinition.id)
            .where(
                KpiAttachment.project_id == project_id,
                KpiDefinition.kpi_key.in_(requirements.required_kpi_keys),
            )
        ).scalars().all())
        missing = [k for k in requirements.required_kpi_keys if k not in attached]
        # any-of: one attached KPI satisfies the gate
        if not requirements.require_all_kpis and attached:
            missing = []
        blockers.extend(
            {"type": "kpi", "key": k, "reason": "missing_project_kpi"} for k in missing
        )

    return blockers


def get_gate_blockers(
    project_id: int,
    gate_key: str,
    organization_id: int,
    workspace_id: int | None = None,
) -> dict:
    """Scope-checked blocker read for the API: requirements plus blockers."""
    assert_in_scope(project_id, organization_id, workspace_id)
    requirements = get_gate_requirements(project_id, gate_key)
    blockers = get_blockers(project_id, gate_key, requirements)
    return {
        "project_id": project_id,
        "gate_key": gate_key,
        "requirements": requirements.to_dict(),
        "blockers": blockers,
        "can_approve": not blockers,
    }


# ── Decisions ────────────────────────────────────────────────────────────────


def decide(
    project_id: int,
    gate_key: str,
    decision: str,
    actor_id: int,
    organization_id: int,
    workspace_id: int | None = None,
    *,
    comment: str | None = None,
    evidence: dict | list | None = None,
    requirements: GateRequirements | None = None,
) -> dict:
    """Record a gate decision.

    Raises:
        BadRequestError: decision not in GATE_DECISIONS.
        ConflictError: code ``gate_blocked``, details ``{gate_key, blockers}``.
        NotFoundError / ForbiddenError / DataIntegrityError: scope and policy.
    """
    try:
        return _decide(
            project_id, gate_key, decision, actor_id, organization_id, workspace_id,
            comment, evidence, requirements,
        )
    except Exception as exc:
        blocked = isinstance(exc, ConflictError) and exc.code == "gate_blocked"
        event_type = "GATE_DECIDE_BLOCKED" if blocked else "GATE_DECIDE_FAILED"
        state = {"gate_key": gate_key, "decision": decision}
        if blocked:
            state["blockers"] = exc.details.get("blockers", [])
        logger.warning(
            "gate_decide_rejected project_id=%s gate_key=%s decision=%s error=%s",
            project_id, gate_key, decision, exc,
            extra={"project_id": project_id, "gate_key": gate_key, "event_type": event_type},
        )
        record_failure_event(
            event_type=event_type,
            entity_type="GATE_APPROVAL",
            actor_id=actor_id,
            organization_id=organization_id,
            workspace_id=workspace_id,
            project_id=project_id,
            state=state,
            error=exc,
        )
        raise


def _decide(project_id, gate_key, decision, actor_id, organization_id, workspace_id,
            comment, evidence, requirements) -> dict:
    if decision not in GATE_DECISIONS:
        raise BadRequestError(
            f"Invalid decision '{decision}'. Must be one of: {', '.join(GATE_DECISIONS)}",
            code="INVALID_DECISION",
        )

    # Locks the project row for the rest of the transaction.
    project = assert_in_scope(project_id, organization_id, workspace_id, for_update=True)

    if requirements is None:
        requirements = get_gate_requirements(project_id, gate_key)

    if decision in APPROVING_DECISIONS:
        blockers = get_blockers(project_id, gate_key, requirements)
        if blockers:
            raise ConflictError(
                f'Gate "{gate_key}" is blocked by {len(blockers)} unmet prerequisite(s)',
                code="gate_blocked",
                details={"gate_key": gate_key, "blockers": blockers},
            )

    approval = GateApproval(
        project_id=project_id,
        gate_key=gate_key,
        decision=decision,
        comment=comment,
        evidence=evidence,
        decided_by=actor_id,
        decided_at=datetime.now(timezone.utc),
    )
    db.session.add(approval)
    db.session.flush()

    write_audit_event(
        event_type="GATE_DECIDE",
        entity_type="GATE_APPROVAL",
        entity_id=approval.id,
        actor_id=actor_id,
        organization_id=organization_id,
        workspace_id=project.workspace_id,
        project_id=project_id,
        new_state={"gate_key": gate_key, "decision": decision},
        metadata={"comment": comment} if comment else None,
    )
    db.session.commit()

    logger.info(
        "gate_decided project_id=%s gate_key=%s decision=%s",
        project_id, gate_key, decision,
        extra={"project_id": project_id, "gate_key": gate_key, "event_type": "GATE_DECIDE"},
    )
    return approval.to_dict()


# ── Reads ────────────────────────────────────────────────────────────────────


def _decisions_newest_first():
    return (GateApproval.decided_at.desc(), GateApproval.id.desc())


def get_gate_history(
    project_id: int,
    gate_key: str,
    organization_id: int,
    workspace_id: int | None = None,
) -> list[dict]:
    """Decision log for one gate, newest first."""
    assert_in_scope(project_id, organization_id, workspace_id)
    rows = db.session.execute(
        select(GateApproval)
        .where(GateApproval.project_id == project_id, GateApproval.gate_key == gate_key)
        .order_by(*_decisions_newest_first())
    ).scalars().all()
    return [r.to_dict() for r in rows]
