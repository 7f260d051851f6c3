"""User service — registration, admin user management, email preferences.

Functions flush but do NOT commit — the caller commits.
"""

import html
import logging
import re
from datetime import datetime, timezone

import bleach
from sqlalchemy import delete, func, update
from werkzeug.security import generate_password_hash

from pointtracker import permissions
from pointtracker.errors import Forbidden, InvalidState, ValidationError
from pointtracker.extensions import db
from pointtracker.models.audit import AuditLog
from pointtracker.models.point_assignment import PointAssignment
from pointtracker.models.user import Role, User
from pointtracker.services import audit_service

logger = logging.getLogger(__name__)

PASSWORD_MIN_LENGTH = 8
NAME_MAX_LENGTH = 255

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _require_admin(actor):
    if not permissions.can_manage_users(actor):
        raise Forbidden("Only admins can manage users.")


def _clean_account_fields(name, email, password):
    """Validate and normalise the fields shared by register and create."""
    name = html.unescape(bleach.clean(name or "", tags=[], strip=True)).strip()
    email = (email or "").lower().strip()
    password = password or ""

    errors = []
    if not name:
        errors.append("Name is required.")
    elif len(name) > NAME_MAX_LENGTH:
        errors.append(f"Name must be at most {NAME_MAX_LENGTH} characters.")
    if not email or not _EMAIL_RE.match(email):
        errors.append("A valid email address is required.")
    elif User.query.filter(func.lower(User.email) == email).first():
        errors.append("An account with this email already exists.")
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")

    if errors:
        raise ValidationError(" ".join(errors))
    return name, email, password


def register_user(name, email, password):
    """Self-registration. New accounts always get the plain user role."""
    name, email, password = _clean_account_fields(name, email, password)

    user = User(
        name=name,
        email=email,
        password_hash=generate_password_hash(password),
        role=Role.USER.value,
    )
    db.session.add(user)
    db.session.flush()

    audit_service.record(
        user.id,
        audit_service.USER_REGISTERED,
        {"email": email},
    )
    logger.info(f"User registered: {email}")
    return user


def create_user(actor, name, email, password, role=Role.USER.value):
    """Admin-created account. Marked verified immediately."""
    _require_admin(actor)
    if not permissions.is_valid_role(role):
        raise ValidationError(f"Invalid role: {role}")
    name, email, password = _clean_account_fields(name, email, password)

    user = User(
        name=name,
        email=email,
        password_hash=generate_password_hash(password),
        role=role,
        email_verified_at=datetime.now(timezone.utc),
    )
    db.session.add(user)
    db.session.flush()

    audit_service.record(
        actor.id,
        audit_service.USER_CREATED,
        {
            "created_user_id": user.id,
            "created_user_name": user.name,
            "created_user_email": user.email,
            "created_user_role": user.role,
        },
    )
    return user


def update_role(actor, target, role):
    """Promote or demote a user.

    Raises:
        Forbidden: Actor is not an admin, or is demoting themselves.
        ValidationError: Unknown role.
    """
    _require_admin(actor)
    if not permissions.is_valid_role(role):
        raise ValidationError(f"Invalid role: {role}")
    if target.id == actor.id and role != Role.ADMIN.value:
        raise Forbidden("You cannot change your own admin role.")

    old_role = target.role
    target.role = role
    db.session.flush()

    audit_service.record(
        actor.id,
        audit_service.ROLE_CHANGED,
        {
            "target_user_id": target.id,
            "target_user_name": target.name,
            "old_role": old_role,
            "new_role": role,
        },
    )
    logger.info(f"Role of {target.email} changed {old_role} -> {role} by {actor.id}")
    return target


def verify_user(actor, target):
    """Mark a user's email address as verified (admin action)."""
    _require_admin(actor)
    if target.email_verified_at is not None:
        raise InvalidState("User is already verified.")

    target.email_verified_at = datetime.now(timezone.utc)
    db.session.flush()

    audit_service.record(
        actor.id,
        audit_service.USER_VERIFIED,
        {
            "target_user_id": target.id,
            "target_user_name": target.name,
            "target_user_email": target.email,
        },
    )
    return target


def delete_user(actor, target):
    """Delete a user account.

    Ledger rows where the user is the recipient are removed with them.
    Rows they only assigned are kept with assignor_id cleared, so other
    users' totals still match their verified rows. Verifier and audit
    actor references are cleared too.

    Raises:
        Forbidden: Actor is not an admin, is deleting themselves, or the
            target is the last remaining admin.
    """
    _require_admin(actor)
    if target.id == actor.id:
        raise Forbidden("You cannot delete your own account.")
    if target.role == Role.ADMIN.value:
        admin_count = User.query.filter_by(role=Role.ADMIN.value).count()
        if admin_count <= 1:
            raise Forbidden("Cannot delete the last admin user.")

    target_id = target.id
    snapshot = {
        "deleted_user_id": target_id,
        "deleted_user_name": target.name,
        "deleted_user_email": target.email,
        "deleted_user_role": target.role,
        "total_points": target.total_verified_points or 0,
    }

    db.session.execute(
        delete(PointAssignment)
        .where(PointAssignment.recipient_id == target_id)
        .execution_options(synchronize_session="fetch")
    )
    db.session.execute(
        update(PointAssignment)
        .where(PointAssignment.assignor_id == target_id)
        .values(assignor_id=None)
        .execution_options(synchronize_session="fetch")
    )
    db.session.execute(
        update(PointAssignment)
        .where(PointAssignment.verified_by == target_id)
        .values(verified_by=None)
        .execution_options(synchronize_session="fetch")
    )
    db.session.execute(
        update(AuditLog)
        .where(AuditLog.user_id == target_id)
        .values(user_id=None)
        .execution_options(synchronize_session="fetch")
    )

    db.session.delete(target)
    db.session.flush()

    audit_service.record(actor.id, audit_service.USER_DELETED, snapshot)
    logger.info(f"User {snapshot['deleted_user_email']} deleted by {actor.id}")
    return snapshot


# ─── Email preferences ─────────────────────────────────────

def update_email_preferences(user, changes):
    """Apply a partial update of the email preference flags.

    Only keys present in ``changes`` are touched; unknown keys are ignored.

    Raises:
        ValidationError: A known flag was given a non-boolean value.
    """
    if not isinstance(changes, dict):
        raise ValidationError("Expected a JSON object of preference flags.")

    applied = {}
    for flag in User.EMAIL_PREFERENCES:
        if flag not in changes:
            continue
        value = changes[flag]
        if not isinstance(value, bool):
            raise ValidationError(f"{flag} must be true or false.")
        applied[flag] = value

    for flag, value in applied.items():
        setattr(user, flag, value)
    db.session.flush()

    if applied:
        audit_service.record(
            user.id,
            audit_service.EMAIL_PREFERENCES_UPDATED,
            {"changes": applied},
        )
    return user.email_preferences()


def reset_email_preferences(user):
    """Turn every email notification back on."""
    return update_email_preferences(
        user, {flag: True for flag in User.EMAIL_PREFERENCES}
    )
