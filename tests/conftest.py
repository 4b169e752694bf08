"""
Shared pytest fixtures for the Template Center test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org / other_org / project / foreign_project: tenant fixtures
    - library: KPI definitions + document templates
    - template: system template "waterfall_standard" with published v1 and v2

Fixture rows are COMMITTED, not flushed: failure paths roll the session back
before writing their audit event, which would discard flushed-only rows.
"""

import pytest

from template_center import create_app
from template_center.models import db as _db
from template_center.models.project import Organization, Project, Workspace
from template_center.models.template import (
    DocTemplate,
    KpiDefinition,
    TemplateDefinition,
    TemplateVersion,
)

# Actor ids used throughout the suite
OWNER_ID = 101
REVIEWER_ID = 202
PM_ID = 303
STRANGER_ID = 404


SCHEMA_V1 = {
    "kpis": [
        {"kpi_key": "schedule_variance", "required": True},
        {"kpi_key": "budget_burn"},
    ],
    "documents": [
        {"doc_key": "project_charter", "required": True, "blocks_gate_key": "initiation_gate"},
        {"doc_key": "risk_register", "required": True},
    ],
    "gates": {
        "initiation_gate": {
            "required_doc_keys": ["risk_register"],
            "required_kpi_keys": ["schedule_variance"],
        },
        "closure_gate": {
            "required_doc_keys": ["lessons_learned"],
        },
    },
}

SCHEMA_V2 = {
    "kpis": [
        {"kpi_key": "schedule_variance", "required": True},
        {"kpi_key": "budget_burn"},
        {"kpi_key": "defect_density"},
    ],
    "documents": [
        {"doc_key": "project_charter", "required": True, "blocks_gate_key": "initiation_gate"},
        {"doc_key": "risk_register", "required": True},
        {"doc_key": "lessons_learned"},
    ],
    "gates": SCHEMA_V1["gates"],
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Builders ─────────────────────────────────────────────────────────────


def make_org(slug: str) -> Organization:
    org = Organization(name=slug.title(), slug=slug)
    _db.session.add(org)
    _db.session.commit()
    return org


def make_project(org: Organization, workspace: Workspace | None = None, name: str = "Apollo") -> Project:
    proj = Project(
        organization_id=org.id,
        workspace_id=workspace.id if workspace else None,
        name=name,
        project_manager_id=PM_ID,
    )
    _db.session.add(proj)
    _db.session.commit()
    return proj


def make_template(key: str, schemas: list, *, scope: str = "system", org_id=None, ws_id=None,
                  statuses: list | None = None) -> TemplateDefinition:
    """Definition with one version per schema (all published unless overridden)."""
    definition = TemplateDefinition(
        scope=scope,
        organization_id=org_id,
        workspace_id=ws_id,
        template_key=key,
        name=key.replace("_", " ").title(),
    )
    _db.session.add(definition)
    _db.session.flush()
    statuses = statuses or ["published"] * len(schemas)
    for number, (schema, status) in enumerate(zip(schemas, statuses), start=1):
        _db.session.add(TemplateVersion(
            template_definition_id=definition.id,
            version=number,
            status=status,
            schema=schema,
        ))
    _db.session.commit()
    return definition


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def org():
    return make_org("acme")


@pytest.fixture()
def other_org():
    return make_org("globex")


@pytest.fixture()
def workspace(org):
    ws = Workspace(organization_id=org.id, name="Delivery")
    _db.session.add(ws)
    _db.session.commit()
    return ws


@pytest.fixture()
def project(org, workspace):
    return make_project(org, workspace)


@pytest.fixture()
def foreign_project(other_org):
    return make_project(other_org, name="Rival")


@pytest.fixture()
def library():
    """Reference libraries the template schemas resolve against."""
    kpis = [
        KpiDefinition(kpi_key="schedule_variance", name="Schedule Variance", unit="days"),
        KpiDefinition(kpi_key="budget_burn", name="Budget Burn", unit="ratio"),
        KpiDefinition(kpi_key="defect_density", name="Defect Density", unit="per_kloc"),
        KpiDefinition(kpi_key="spi", name="Schedule Performance Index", unit="ratio"),
    ]
    docs = [
        DocTemplate(doc_key="project_charter", name="Project Charter"),
        DocTemplate(doc_key="risk_register", name="Risk Register", content_type="table"),
        DocTemplate(doc_key="lessons_learned", name="Lessons Learned"),
    ]
    _db.session.add_all(kpis + docs)
    _db.session.commit()
    return {"kpis": {k.kpi_key: k for k in kpis}, "docs": {d.doc_key: d for d in docs}}


@pytest.fixture()
def template(library):
    return make_template("waterfall_standard", [SCHEMA_V1, SCHEMA_V2])
