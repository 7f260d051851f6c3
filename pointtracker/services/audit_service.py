"""Audit service — best-effort append to the audit log.

record() writes inside a SAVEPOINT so a failing audit insert never rolls
back (or fails) the business operation that triggered it. Failures are
logged with a stack trace for operators.

Like the other services, it flushes but does NOT commit.
"""

import logging

from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from pointtracker.extensions import db
from pointtracker.models.audit import AuditLog

logger = logging.getLogger(__name__)

# Action tags
ASSIGNED_POINT = "assigned_point"
APPROVED_POINT = "approved_point"
REJECTED_POINT = "rejected_point"
ARCHIVED_POINT = "archived_point"
BULK_ASSIGNED_POINTS = "bulk_assigned_points"
BULK_APPROVED_POINTS = "bulk_approved_points"
BULK_REJECTED_POINTS = "bulk_rejected_points"
ROLE_CHANGED = "role_changed"
USER_CREATED = "user_created"
USER_REGISTERED = "user_registered"
USER_VERIFIED = "user_verified"
USER_DELETED = "user_deleted"
EMAIL_PREFERENCES_UPDATED = "email_preferences_updated"
TOTALS_RECONCILED = "totals_reconciled"


def _request_ip():
    if has_request_context():
        return request.remote_addr
    return None


def record(actor_id, action, data=None, ip_address=None):
    """Append an audit entry.

    Args:
        actor_id: User performing the action (may be None for system jobs).
        action: Action tag, e.g. "approved_point".
        data: JSON-serialisable payload specific to the action.
        ip_address: Defaults to the current request's remote address.

    Returns:
        The AuditLog row, or None if the write failed.
    """
    if not action:
        logger.error("Audit entry skipped — no action tag given.")
        return None

    try:
        with db.session.begin_nested():
            entry = AuditLog(
                user_id=actor_id,
                action=action,
                data=data or {},
                ip_address=ip_address or _request_ip(),
            )
            db.session.add(entry)
        return entry
    except SQLAlchemyError:
        logger.exception(f"Failed to write audit entry '{action}' for actor {actor_id}")
        return None
