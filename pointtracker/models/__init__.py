# Import every model here so Alembic can discover them.

from pointtracker.models.user import Role, User  # noqa: F401
from pointtracker.models.point_assignment import (  # noqa: F401
    AssignmentStatus,
    PointAssignment,
)
from pointtracker.models.audit import AuditLog  # noqa: F401
