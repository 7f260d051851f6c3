"""Role-based permission predicates.

Pure functions over users (no DB access, no request state). The workflow
and user services call these before mutating anything; the route
decorators in decorators.py use the same predicates so the rules are
defined exactly once.
"""

from pointtracker.models.user import Role

REVIEWER_ROLES = frozenset({Role.SUPERVISOR.value, Role.ADMIN.value})


def is_reviewer(user):
    """Supervisors and admins may verify, reject and bulk-assign points."""
    return user is not None and user.role in REVIEWER_ROLES


def can_verify_points(user):
    return is_reviewer(user)


def auto_verifies(user):
    """Assignments made by reviewers skip the pending state."""
    return is_reviewer(user)


def can_bulk_assign(user):
    return is_reviewer(user)


def can_manage_users(user):
    return user is not None and user.role == Role.ADMIN.value


def can_view_user_stats(actor, target):
    """Reviewers see everyone; plain users only themselves."""
    if actor is None or target is None:
        return False
    return is_reviewer(actor) or actor.id == target.id


def receives_bulk_assignments(user, actor):
    """Bulk assignment skips admins and the assigning user."""
    return user.role != Role.ADMIN.value and user.id != actor.id


def is_valid_role(value):
    return value in Role.values()
