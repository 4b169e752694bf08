"""
Template Center: SQLAlchemy models.

All models share the single ``db`` extension instance created here and bound
to the Flask app in ``create_app``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Register every table on db.metadata (create_all / Alembic autogenerate).
from template_center.models import audit, document, governance, project, template  # noqa: E402,F401
