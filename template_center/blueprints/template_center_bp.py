"""
Template Center Blueprint: governance HTTP surface.

All routes are scoped under /api/v1/template-center/projects/<project_id>/...
and every service call re-validates that the project belongs to the caller's
organization (and workspace, when given).

Caller identity (set by the gateway in front of this service):
    X-User-Id          required, actor id
    X-Organization-Id  required
    X-Workspace-Id     optional, narrows scope to one workspace
    X-Project-Role     "pm" grants the project-manager capability

Endpoints:
    POST   /projects/<pid>/apply
           Body: { "template_key": "...", "version": <int optional>,
                   "mode": "create_missing_only|full" }
    GET    /projects/<pid>/documents
    GET    /projects/<pid>/documents/<doc_id>
    GET    /projects/<pid>/documents/<doc_id>/history
    POST   /projects/<pid>/documents/<doc_id>/transition
           Body: { "action": "...", "content": ..., "external_url": "...",
                   "file_storage_key": "...", "change_summary": "..." }
    PATCH  /projects/<pid>/documents/<doc_id>/assign
           Body: { "owner_id": <int>, "reviewer_ids": [<int>, ...] }
    GET    /projects/<pid>/gates/<gate_key>/blockers
    POST   /projects/<pid>/gates/<gate_key>/decide
           Body: { "decision": "approved|approved_with_comments|rejected",
                   "comment": "...", "evidence": {...} }
    GET    /projects/<pid>/gates/<gate_key>/history
    GET    /projects/<pid>/kpis
    POST   /projects/<pid>/kpis/<kpi_key>/values
           Body: { "value": <number>, "value_text": "...", "note": "..." }
    GET    /projects/<pid>/evidence

Layer contract:
    - Blueprint: parse + validate input, resolve caller, call service,
      return JSON. Service exceptions map to HTTP via the handlers below.
    - NO db.session calls here; all writes owned by the services.
    - The TEMPLATE_CENTER_ENABLED flag is checked here only.
"""

import logging
from dataclasses import dataclass

from flask import Blueprint, abort, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from template_center.core.exceptions import (
    BadRequestError,
    ConflictError,
    DataIntegrityError,
    ForbiddenError,
    NotFoundError,
)
from template_center.services import (
    document_lifecycle,
    evidence_pack_service,
    gate_approval_service,
    project_kpi_service,
    template_apply_service,
)
from template_center.utils.errors import E, api_error

logger = logging.getLogger(__name__)

template_center_bp = Blueprint("template_center", __name__, url_prefix="/api/v1/template-center")


# ── Feature flag ───────────────────────────────────────────────────────────────


@template_center_bp.before_request
def _require_feature_enabled():
    if not current_app.config.get("TEMPLATE_CENTER_ENABLED", False):
        abort(404)


# ── Error handlers ─────────────────────────────────────────────────────────────


def _service_error(error):
    return api_error(error.code, str(error), status=error.status, details=error.details or None)


@template_center_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return _service_error(error)


@template_center_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return _service_error(error)


@template_center_bp.errorhandler(BadRequestError)
def _handle_bad_request(error: BadRequestError):
    return _service_error(error)


@template_center_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return _service_error(error)


@template_center_bp.errorhandler(DataIntegrityError)
def _handle_data_integrity(error: DataIntegrityError):
    logger.error("Data integrity fault endpoint=%s error=%s", request.endpoint, error)
    return _service_error(error)


@template_center_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return jsonify({"error": error.name, "code": error.name.lower().replace(" ", "_")}), error.code
    logger.exception("Unexpected error in template_center_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error", status=500)


# ── Helpers ────────────────────────────────────────────────────────────────────


@dataclass
class Caller:
    user_id: int
    organization_id: int
    workspace_id: int | None
    is_pm: bool


def _int_header(name: str):
    raw = request.headers.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise BadRequestError(f"Header {name} must be an integer", code=E.VALIDATION_INVALID)


def _resolve_caller():
    """Returns (caller, err_response)."""
    user_id = _int_header("X-User-Id")
    organization_id = _int_header("X-Organization-Id")
    if user_id is None or organization_id is None:
        return None, api_error(
            E.UNAUTHENTICATED,
            "X-User-Id and X-Organization-Id headers are required",
            status=401,
        )
    return Caller(
        user_id=user_id,
        organization_id=organization_id,
        workspace_id=_int_header("X-Workspace-Id"),
        is_pm=request.headers.get("X-Project-Role", "").strip().lower() == "pm",
    ), None


def _optional_int(data: dict, field: str):
    value = data.get(field)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadRequestError(f"Field '{field}' must be an integer.", code=E.VALIDATION_INVALID)
    return value


def _optional_str(data: dict, field: str):
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise BadRequestError(f"Field '{field}' must be a string.", code=E.VALIDATION_INVALID)
    return value.strip() or None


# ── Apply ──────────────────────────────────────────────────────────────────────


@template_center_bp.route("/projects/<int:project_id>/apply", methods=["POST"])
def apply_template(project_id: int):
    """Apply a published template to the project. Idempotent per version."""
    caller, err = _resolve_caller()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    template_key = _optional_str(data, "template_key")
    if not template_key:
        return api_error(E.VALIDATION_REQUIRED, "Field 'template_key' is required.")

    result = template_apply_service.apply_template(
        project_id=project_id,
        template_key=template_key,
        version=_optional_int(data, "version"),
        actor_id=caller.user_id,
        organization_id=caller.organization_id,
        workspace_id=caller.workspace_id,
        mode=_optional_str(data, "mode") or "create_missing_only",
    )
    return jsonify(result), 200


# ── Documents ──────────────────────────────────────────────────────────────────


@template_center_bp.route("/projects/<int:project_id>/documents", methods=["GET"])
def list_documents(project_id: int):
    caller, err = _resolve_caller()
    if err:
        return err
    docs = document_lifecycle.list_project_documents(project_id, caller.organization_id, caller.workspace_id)
    return jsonify({"items": docs, "total": len(docs)}), 200


@template_center_bp.route("/projects/<int:project_id>/documents/<int:document_id>", methods=["GET"])
def get_document(project_id: int, document_id: int):
    caller, err = _resolve_caller()
    if err:
        return err
    doc = document_lifecycle.get_latest(project_id, document_id, caller.organization_id, caller.workspace_id)
    return jsonify(doc), 200


@template_center_bp.route("/projects/<int:project_id>/documents/<int:document_id>/history", methods=["GET"])
def get_document_history(project_id: int, document_id: int):
    caller, err = _resolve_caller()
    if err:
        return err
    versions = document_lifecycle.get_history(project_id, document_id, caller.organization_id, caller.workspace_id)
    return jsonify({"document_id": document_id, "versions": versions}), 200


@template_center_bp.route("/projects/<int:project_id>/documents/<int:document_id>/transition", methods=["POST"])
def transition_document(project_id: int, document_id: int):
    """Run a lifecycle action. Role and state rules are enforced by the service."""
    caller, err = _resolve_caller()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    action = _optional_str(data, "action")
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "Field 'action' is required.")

    result = document_lifecycle.transition_document(
        project_id=project_id,
        document_id=document_id,
        action=action,
        actor_id=caller.user_id,
        organization_id=caller.organization_id,
        workspace_id=caller.workspace_id,
        is_pm=caller.is_pm,
        content=data.get("content"),
        external_url=_optional_str(data, "external_url"),
        file_storage_key=_optional_str(data, "file_storage_key"),
        change_summary=_optional_str(data, "change_summary"),
    )
    return jsonify(result), 200


@template_center_bp.route("/projects/<int:project_id>/documents/<int:document_id>/assign", methods=["PATCH"])
def assign_document(project_id: int, document_id: int):
    caller, err = _resolve_caller()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    doc = document_lifecycle.assign(
        project_id=project_id,
        document_id=document_id,
        actor_id=caller.user_id,
        organization_id=caller.organization_id,
        workspace_id=caller.workspace_id,
        owner_id=_optional_int(data, "owner_id"),
        reviewer_ids=data.get("reviewer_ids"),
    )
    return jsonify(doc), 200


# ── Gates ──────────────────────────────────────────────────────────────────────


@template_center_bp.route("/projects/<int:project_id>/gates/<gate_key>/blockers", methods=["GET"])
def get_gate_blockers(project_id: int, gate_key: str):
    caller, err = _resolve_caller()
    if err:
        return err
    result = gate_approval_service.get_gate_blockers(
        project_id, gate_key, caller.organization_id, caller.workspace_id,
    )
    return jsonify(result), 200


@template_center_bp.route("/projects/<int:project_id>/gates/<gate_key>/decide", methods=["POST"])
def decide_gate(project_id: int, gate_key: str):
    """Record a gate decision. 409 with blockers when an approval is blocked."""
    caller, err = _resolve_caller()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    decision = _optional_str(data, "decision")
    if not decision:
        return api_error(E.VALIDATION_REQUIRED, "Field 'decision' is required.")

    approval = gate_approval_service.decide(
        project_id=project_id,
        gate_key=gate_key,
        decision=decision,
        actor_id=caller.user_id,
        organization_id=caller.organization_id,
        workspace_id=caller.workspace_id,
        comment=_optional_str(data, "comment"),
        evidence=data.get("evidence"),
    )
    return jsonify(approval), 201


@template_center_bp.route("/projects/<int:project_id>/gates/<gate_key>/history", methods=["GET"])
def get_gate_history(project_id: int, gate_key: str):
    caller, err = _resolve_caller()
    if err:
        return err
    history = gate_approval_service.get_gate_history(
        project_id, gate_key, caller.organization_id, caller.workspace_id,
    )
    return jsonify({"gate_key": gate_key, "decisions": history}), 200


# ── KPIs ───────────────────────────────────────────────────────────────────────


@template_center_bp.route("/projects/<int:project_id>/kpis", methods=["GET"])
def list_kpis(project_id: int):
    caller, err = _resolve_caller()
    if err:
        return err
    kpis = project_kpi_service.list_project_kpis(project_id, caller.organization_id, caller.workspace_id)
    return jsonify({"items": kpis, "total": len(kpis)}), 200


@template_center_bp.route("/projects/<int:project_id>/kpis/<kpi_key>/values", methods=["POST"])
def record_kpi_value(project_id: int, kpi_key: str):
    caller, err = _resolve_caller()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    row = project_kpi_service.record_value(
        project_id=project_id,
        kpi_key=kpi_key,
        actor_id=caller.user_id,
        organization_id=caller.organization_id,
        workspace_id=caller.workspace_id,
        value=data.get("value"),
        value_text=_optional_str(data, "value_text"),
        note=_optional_str(data, "note"),
    )
    return jsonify(row), 201


# ── Evidence ───────────────────────────────────────────────────────────────────


@template_center_bp.route("/projects/<int:project_id>/evidence", methods=["GET"])
def get_evidence_pack(project_id: int):
    caller, err = _resolve_caller()
    if err:
        return err
    pack = evidence_pack_service.get_evidence_pack(project_id, caller.organization_id, caller.workspace_id)
    return jsonify(pack), 200
