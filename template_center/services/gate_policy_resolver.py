"""
Gate Policy Resolver: derives what a gate needs from the applied template.

Gate configuration lives under ``schema["gates"]`` of the template version the
project's lineage points at. Two shapes are accepted:

    {"gates": {"design_signoff": {"required_doc_keys": ["charter"], ...}}}
    {"gates": [{"gate_key": "design_signoff", "required_doc_keys": [...]}]}

A gate also exists when only documents name it through ``blocks_gate_key``,
either in the schema or on the project's document instances:

    {"documents": [{"doc_key": "charter", "blocks_gate_key": "g1"}]}

Such gates require their blocking documents in the default states. Blocking
documents are always added to the required document keys.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from template_center.core.exceptions import DataIntegrityError, NotFoundError
from template_center.models import db
from template_center.models.document import DEFAULT_GATE_DOC_STATES, DocumentInstance
from template_center.models.governance import TemplateLineage
from template_center.models.template import TemplateVersion

logger = logging.getLogger(__name__)


@dataclass
class GateRequirements:
    required_doc_keys: list[str] = field(default_factory=list)
    required_kpi_keys: list[str] = field(default_factory=list)
    required_doc_states: list[str] = field(default_factory=lambda: list(DEFAULT_GATE_DOC_STATES))
    require_all_kpis: bool = True

    def to_dict(self) -> dict:
        return {
            "required_doc_keys": list(self.required_doc_keys),
            "required_kpi_keys": list(self.required_kpi_keys),
            "required_doc_states": list(self.required_doc_states),
            "require_all_kpis": self.require_all_kpis,
        }


def _string_list(value, *, gate_key: str, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DataIntegrityError(
            f'Gate "{gate_key}" has a malformed "{field_name}" (expected a list of strings)',
            details={"gate_key": gate_key, "field": field_name},
        )
    return list(dict.fromkeys(value))


def _gate_config(schema: dict, gate_key: str) -> dict | None:
    """Explicit gate config, or None when ``gates`` does not list the key."""
    gates = schema.get("gates") or {}
    if isinstance(gates, dict):
        config = gates.get(gate_key)
    elif isinstance(gates, list):
        config = next(
            (g for g in gates if isinstance(g, dict) and g.get("gate_key") == gate_key),
            None,
        )
    else:
        raise DataIntegrityError(
            'Template schema "gates" must be an object or a list',
            details={"gate_key": gate_key},
        )

    if config is not None and not isinstance(config, dict):
        raise DataIntegrityError(
            f'Gate "{gate_key}" configuration is not a JSON object',
            details={"gate_key": gate_key},
        )
    return config


def _schema_blocking_docs(schema: dict, gate_key: str) -> list[str]:
    documents = schema.get("documents") or []
    if not isinstance(documents, list):
        raise DataIntegrityError(
            'Template schema "documents" must be a list',
            details={"gate_key": gate_key},
        )
    return [
        item["doc_key"]
        for item in documents
        if isinstance(item, dict) and item.get("doc_key") and item.get("blocks_gate_key") == gate_key
    ]


def get_gate_requirements(project_id: int, gate_key: str) -> GateRequirements:
    """Resolve the requirements for one gate of a project.

    Raises:
        NotFoundError: ``template_not_applied`` when the project has no lineage,
            ``gate_not_found`` when neither the gate config nor any document
            references the gate.
        DataIntegrityError: The stored schema or gate config is malformed.
    """
    version = db.session.execute(
        select(TemplateVersion)
        .join(TemplateLineage, TemplateLineage.template_version_id == TemplateVersion.id)
        .where(TemplateLineage.project_id == project_id)
    ).scalar_one_or_none()
    if version is None:
        raise NotFoundError(
            resource="TemplateLineage",
            resource_id=project_id,
            code="template_not_applied",
            message=f"No template has been applied to project {project_id}",
        )

    schema = version.schema
    if not isinstance(schema, dict):
        raise DataIntegrityError(
            "Template version schema is not a JSON object",
            details={"gate_key": gate_key},
        )

    config = _gate_config(schema, gate_key)
    instance_blocking = db.session.execute(
        select(DocumentInstance.doc_key)
        .where(
            DocumentInstance.project_id == project_id,
            DocumentInstance.blocks_gate_key == gate_key,
        )
        .order_by(DocumentInstance.doc_key)
    ).scalars().all()
    schema_blocking = _schema_blocking_docs(schema, gate_key)

    if config is None and not instance_blocking and not schema_blocking:
        raise NotFoundError(
            resource="Gate",
            resource_id=gate_key,
            code="gate_not_found",
            message=f'Gate "{gate_key}" is not defined by the applied template',
        )
    config = config or {}

    doc_keys = _string_list(config.get("required_doc_keys"), gate_key=gate_key, field_name="required_doc_keys")
    for key in [*instance_blocking, *schema_blocking]:
        if key not in doc_keys:
            doc_keys.append(key)

    doc_states = _string_list(config.get("required_doc_states"), gate_key=gate_key, field_name="required_doc_states")

    requirements = GateRequirements(
        required_doc_keys=doc_keys,
        required_kpi_keys=_string_list(
            config.get("required_kpi_keys"), gate_key=gate_key, field_name="required_kpi_keys",
        ),
        required_doc_states=doc_states or list(DEFAULT_GATE_DOC_STATES),
        require_all_kpis=bool(config.get("require_all_kpis", True)),
    )
    logger.debug(
        "Gate requirements resolved project_id=%s gate_key=%s",
        project_id, gate_key,
        extra={"project_id": project_id, "gate_key": gate_key},
    )
    return requirements
