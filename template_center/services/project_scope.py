"""Project scope validation for every template-center operation."""

from __future__ import annotations

import logging

from sqlalchemy import select

from template_center.core.exceptions import ForbiddenError, NotFoundError
from template_center.models import db
from template_center.models.project import Project

logger = logging.getLogger(__name__)


def assert_in_scope(
    project_id: int,
    organization_id: int,
    workspace_id: int | None = None,
    *,
    for_update: bool = False,
) -> Project:
    """Return the project if the caller's organization/workspace owns it.

    Raises:
        NotFoundError: The project does not exist at all.
        ForbiddenError: The project exists but belongs to another organization,
            or to another workspace when ``workspace_id`` is given. Cross-org
            access is never reported as 404.

    With ``for_update=True`` the project row is read with
    ``SELECT ... FOR UPDATE`` so it can serve as a per-project lock target.
    """
    stmt = select(Project).where(Project.id == project_id)
    if for_update:
        stmt = stmt.with_for_update()
    project = db.session.execute(stmt).scalar_one_or_none()

    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)

    if project.organization_id != organization_id:
        logger.warning(
            "Cross-organization project access denied project_id=%s caller_org=%s",
            project_id,
            organization_id,
            extra={"project_id": project_id, "organization_id": organization_id},
        )
        raise ForbiddenError("Project does not belong to your organization")

    if workspace_id is not None and project.workspace_id != workspace_id:
        raise ForbiddenError("Project does not belong to this workspace")

    return project
