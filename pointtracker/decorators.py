"""
Custom route decorators for access control.

- role_required: ensures user is logged in AND passes a permissions predicate.
- reviewer_required: supervisors and admins (verify, reject, bulk assign).
- admin_required: admins only (user management, admin API).
"""

from functools import wraps

from flask import abort
from flask_login import current_user, login_required

from pointtracker import permissions


def role_required(predicate):
    """Require login + predicate(current_user) to be truthy."""

    def decorator(f):
        @wraps(f)
        @login_required
        def decorated(*args, **kwargs):
            if not predicate(current_user):
                abort(403)
            return f(*args, **kwargs)

        return decorated

    return decorator


reviewer_required = role_required(permissions.is_reviewer)
admin_required = role_required(permissions.can_manage_users)
