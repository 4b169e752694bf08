"""
Tests: Project scope validation.

Cross-organization access must surface as 403 (ForbiddenError), never as a
404 that would leak whether the project exists.
"""

import pytest

from conftest import make_project
from template_center.core.exceptions import ForbiddenError, NotFoundError
from template_center.models import db as _db
from template_center.models.project import Workspace
from template_center.services.project_scope import assert_in_scope


class TestAssertInScope:
    def test_returns_project_for_owner_org(self, project, org):
        assert assert_in_scope(project.id, org.id).id == project.id

    def test_matching_workspace(self, project, org, workspace):
        assert assert_in_scope(project.id, org.id, workspace.id).id == project.id

    def test_missing_project(self, org):
        with pytest.raises(NotFoundError):
            assert_in_scope(12345, org.id)

    def test_cross_org_is_forbidden_not_not_found(self, foreign_project, org):
        with pytest.raises(ForbiddenError) as exc_info:
            assert_in_scope(foreign_project.id, org.id)
        assert not isinstance(exc_info.value, NotFoundError)
        assert exc_info.value.code == "FORBIDDEN"

    def test_other_workspace_is_forbidden(self, project, org):
        other_ws = Workspace(organization_id=org.id, name="Finance")
        _db.session.add(other_ws)
        _db.session.commit()
        with pytest.raises(ForbiddenError):
            assert_in_scope(project.id, org.id, other_ws.id)

    def test_workspace_filter_on_project_without_workspace(self, org, workspace):
        loose = make_project(org, name="No Workspace")
        with pytest.raises(ForbiddenError):
            assert_in_scope(loose.id, org.id, workspace.id)

    def test_for_update_returns_same_project(self, project, org):
        assert assert_in_scope(project.id, org.id, for_update=True).id == project.id
