"""
Evidence Pack Service: read-only governance snapshot of a project.

The pack is assembled from the current rows at call time; nothing is stored.
Shape::

    {
        "project_id": 1,
        "generated_at": "...",
        "template_lineage": {...} | None,
        "documents": [...],   # every instance + latest version summary
        "kpis": [...],        # every attachment + latest value
        "gates": [...],       # one entry per decided gate, newest decision first
    }
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from template_center.models import db
from template_center.models.document import DocumentInstance
from template_center.models.governance import GateApproval, TemplateLineage
from template_center.services.document_lifecycle import latest_version
from template_center.services.project_kpi_service import attachments_with_latest
from template_center.services.project_scope import assert_in_scope

logger = logging.getLogger(__name__)


def _documents(project_id: int) -> list[dict]:
    docs = db.session.execute(
        select(DocumentInstance)
        .where(DocumentInstance.project_id == project_id)
        .order_by(DocumentInstance.doc_key)
    ).scalars().all()

    result = []
    for doc in docs:
        latest = latest_version(doc.id)
        item = doc.to_dict()
        item["latest_version"] = (
            {
                "version": latest.version_number,
                "change_summary": latest.change_summary,
                "created_at": latest.created_at.isoformat() if latest.created_at else None,
                "created_by": latest.created_by,
            }
            if latest else None
        )
        result.append(item)
    return result


def _gates(project_id: int) -> list[dict]:
    approvals = db.session.execute(
        select(GateApproval)
        .where(GateApproval.project_id == project_id)
        .order_by(GateApproval.decided_at.desc(), GateApproval.id.desc())
    ).scalars().all()

    # Insertion order follows the newest-first query, so the most recently
    # decided gate comes first and each gate's first row is its current decision.
    by_gate: dict[str, dict] = {}
    for approval in approvals:
        entry = by_gate.setdefault(
            approval.gate_key,
            {"gate_key": approval.gate_key, "current_decision": approval.to_dict(), "history": []},
        )
        entry["history"].append(approval.to_dict())
    return list(by_gate.values())


def get_evidence_pack(project_id: int, organization_id: int, workspace_id: int | None = None) -> dict:
    """Compile the evidence pack for a project the caller may see."""
    assert_in_scope(project_id, organization_id, workspace_id)

    lineage = db.session.execute(
        select(TemplateLineage).where(TemplateLineage.project_id == project_id)
    ).scalar_one_or_none()

    pack = {
        "project_id": project_id,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "template_lineage": lineage.to_dict() if lineage else None,
        "documents": _documents(project_id),
        "kpis": attachments_with_latest(project_id),
        "gates": _gates(project_id),
    }
    logger.info(
        "evidence_pack_generated project_id=%s documents=%d kpis=%d gates=%d",
        project_id, len(pack["documents"]), len(pack["kpis"]), len(pack["gates"]),
        extra={"project_id": project_id, "organization_id": organization_id},
    )
    return pack
