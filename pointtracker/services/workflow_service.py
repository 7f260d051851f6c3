"""Workflow service — point assignment creation and verification.

State machine per assignment:

    pending --approve--> verified   (terminal)
    pending --reject---> rejected   (terminal)

Rows created by a supervisor/admin start out verified. Every transition
is a guarded ``UPDATE ... WHERE status = 'pending'`` so two reviewers
racing on the same row cannot both win, and recipient totals are bumped
with an atomic ``total = total + n`` UPDATE rather than read-modify-write.

Each operation writes an audit entry and publishes a domain event
(events.bus) that is only dispatched once the surrounding transaction
commits.

Single-assignment functions flush but do NOT commit — the caller commits.
Bulk functions commit once per assignment: each row and its total
increment is its own unit of work, and one bad row never fails the batch.
"""

import html
import logging
from datetime import datetime, timezone

import bleach
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from pointtracker import permissions
from pointtracker.errors import Forbidden, InvalidState, NotFound, ValidationError
from pointtracker.events import AssignmentCreated, AssignmentStatusChanged, bus
from pointtracker.extensions import db
from pointtracker.models.point_assignment import AssignmentStatus, PointAssignment
from pointtracker.models.user import User
from pointtracker.services import audit_service

logger = logging.getLogger(__name__)

PENDING = AssignmentStatus.PENDING.value
VERIFIED = AssignmentStatus.VERIFIED.value
REJECTED = AssignmentStatus.REJECTED.value


# ─── Validation helpers ────────────────────────────────────

def _sanitize(text):
    """Strip all HTML tags from user input, returning plain unescaped text."""
    if text is None:
        return text
    return html.unescape(bleach.clean(str(text), tags=[], strip=True)).strip()


def _validate_points(points):
    if isinstance(points, bool) or points is None:
        raise ValidationError("Points must be a whole number.")
    if isinstance(points, float) and not points.is_integer():
        raise ValidationError("Points must be a whole number.")
    try:
        value = int(points)
    except (TypeError, ValueError):
        raise ValidationError("Points must be a whole number.") from None
    if value == 0:
        raise ValidationError("Points must not be zero.")
    return value


def _validate_reason(reason):
    reason = _sanitize(reason)
    if not reason:
        raise ValidationError("A reason is required.")
    return reason


def _validate_rejection_reason(rejection_reason):
    if not isinstance(rejection_reason, str):
        raise ValidationError("A rejection reason is required.")
    rejection_reason = _sanitize(rejection_reason)
    low = PointAssignment.REJECTION_REASON_MIN
    high = PointAssignment.REJECTION_REASON_MAX
    if not low <= len(rejection_reason) <= high:
        raise ValidationError(
            f"Rejection reason must be between {low} and {high} characters."
        )
    return rejection_reason


def _validate_ids(assignment_ids):
    if not isinstance(assignment_ids, (list, tuple, set)) or not assignment_ids:
        raise ValidationError("assignment_ids must be a non-empty list.")
    # Preserve order, drop duplicates
    return list(dict.fromkeys(str(i) for i in assignment_ids))


def _require_reviewer(actor, verb):
    if not permissions.can_verify_points(actor):
        raise Forbidden(f"Only supervisors and admins can {verb} assignments.")


def _ensure_pending(assignment):
    if assignment.deleted_at is not None or not assignment.is_pending:
        raise InvalidState("This assignment has already been processed.")


# ─── Ledger / total primitives ─────────────────────────────

def _increment_total(recipient_id, points):
    """Atomically add points to a user's verified total."""
    db.session.execute(
        update(User)
        .where(User.id == recipient_id)
        .values(total_verified_points=User.total_verified_points + points)
        .execution_options(synchronize_session=False)
    )
    recipient = db.session.get(User, recipient_id)
    if recipient is not None:
        db.session.expire(recipient, ["total_verified_points"])


def _transition(assignment, new_status, actor, **values):
    """Move a pending row to new_status; InvalidState if someone got there first."""
    if not assignment.can_transition_to(new_status):
        raise InvalidState("This assignment has already been processed.")

    now = datetime.now(timezone.utc)
    result = db.session.execute(
        update(PointAssignment)
        .where(
            PointAssignment.id == assignment.id,
            PointAssignment.status == PENDING,
            PointAssignment.deleted_at.is_(None),
        )
        .values(
            status=new_status,
            verified_by=actor.id,
            verified_at=now,
            updated_at=now,
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.expire(assignment)
        raise InvalidState("This assignment has already been processed.")

    db.session.refresh(assignment)
    return assignment


def get_assignment(assignment_id):
    """Load a non-archived assignment or raise NotFound."""
    assignment = db.session.get(PointAssignment, assignment_id) if assignment_id else None
    if assignment is None or assignment.deleted_at is not None:
        raise NotFound(f"Point assignment {assignment_id} not found.")
    return assignment


# ─── Create ────────────────────────────────────────────────

def create_assignment(assignor, recipient_id, points, reason,
                      is_bulk_assignment=False, audit=True):
    """Create a point assignment.

    Supervisors and admins auto-verify: the row starts out verified and
    the recipient's total moves in the same transaction. Everybody else
    creates a pending row.

    Args:
        assignor: Acting User.
        recipient_id: User id receiving the points.
        points: Nonzero integer (negative allowed).
        reason: Free text (sanitized; required).
        is_bulk_assignment: Set by bulk_assign_to_all.
        audit: Write the per-row "assigned_point" entry.

    Returns:
        The created PointAssignment.

    Raises:
        ValidationError: Bad points or empty reason.
        NotFound: Recipient does not exist.
    """
    points = _validate_points(points)
    reason = _validate_reason(reason)

    recipient = db.session.get(User, recipient_id) if recipient_id else None
    if recipient is None:
        raise NotFound(f"User {recipient_id} not found.")

    auto_verified = permissions.auto_verifies(assignor)
    status = VERIFIED if auto_verified else PENDING
    now = datetime.now(timezone.utc)

    assignment = PointAssignment(
        assignor_id=assignor.id,
        recipient_id=recipient.id,
        points=points,
        reason=reason,
        status=status,
        verified_by=assignor.id if auto_verified else None,
        verified_at=now if auto_verified else None,
        is_bulk_assignment=is_bulk_assignment,
    )
    db.session.add(assignment)
    db.session.flush()

    if auto_verified:
        _increment_total(recipient.id, points)

    if audit:
        audit_service.record(
            assignor.id,
            audit_service.ASSIGNED_POINT,
            {
                "assignment_id": assignment.id,
                "recipient_id": recipient.id,
                "points": points,
                "reason": reason,
                "status": status,
            },
        )

    bus.publish(AssignmentCreated(assignment_id=assignment.id, status=status))
    logger.info(
        f"Assignment {assignment.id} created by {assignor.id}: "
        f"{points:+d} to {recipient.id} ({status})"
    )
    return assignment


# ─── Approve / reject ──────────────────────────────────────

def approve_assignment(actor, assignment, audit=True):
    """Verify a pending assignment and credit the recipient.

    Raises:
        Forbidden: Actor is not a supervisor/admin.
        InvalidState: Assignment is no longer pending.
    """
    _require_reviewer(actor, "approve")
    _ensure_pending(assignment)

    previous_status = assignment.status
    recipient_id = assignment.recipient_id
    points = assignment.points

    _transition(assignment, VERIFIED, actor)
    _increment_total(recipient_id, points)

    if audit:
        audit_service.record(
            actor.id,
            audit_service.APPROVED_POINT,
            {
                "assignment_id": assignment.id,
                "recipient_id": recipient_id,
                "points": points,
            },
        )

    bus.publish(AssignmentStatusChanged(
        assignment_id=assignment.id,
        previous_status=previous_status,
        status=VERIFIED,
    ))
    return assignment


def reject_assignment(actor, assignment, rejection_reason, audit=True):
    """Reject a pending assignment. Totals are never touched.

    Raises:
        Forbidden: Actor is not a supervisor/admin.
        ValidationError: Rejection reason outside 3–500 characters.
        InvalidState: Assignment is no longer pending.
    """
    _require_reviewer(actor, "reject")
    rejection_reason = _validate_rejection_reason(rejection_reason)
    _ensure_pending(assignment)

    previous_status = assignment.status
    _transition(assignment, REJECTED, actor, rejection_reason=rejection_reason)

    if audit:
        audit_service.record(
            actor.id,
            audit_service.REJECTED_POINT,
            {
                "assignment_id": assignment.id,
                "recipient_id": assignment.recipient_id,
                "rejection_reason": rejection_reason,
            },
        )

    bus.publish(AssignmentStatusChanged(
        assignment_id=assignment.id,
        previous_status=previous_status,
        status=REJECTED,
    ))
    return assignment


def archive_assignment(actor, assignment):
    """Soft-delete a rejected assignment (admin only).

    Verified rows stay in the ledger forever so totals keep matching it.
    """
    if not permissions.can_manage_users(actor):
        raise Forbidden("Only admins can archive assignments.")
    if assignment.deleted_at is not None:
        raise InvalidState("This assignment is already archived.")
    if assignment.status != REJECTED:
        raise InvalidState("Only rejected assignments can be archived.")

    assignment.deleted_at = datetime.now(timezone.utc)
    db.session.flush()

    audit_service.record(
        actor.id,
        audit_service.ARCHIVED_POINT,
        {"assignment_id": assignment.id},
    )
    return assignment


# ─── Bulk operations ───────────────────────────────────────

def _pending_ids(assignment_ids):
    return db.session.execute(
        select(PointAssignment.id).where(
            PointAssignment.id.in_(assignment_ids),
            PointAssignment.status == PENDING,
            PointAssignment.deleted_at.is_(None),
        ).order_by(PointAssignment.created_at)
    ).scalars().all()


def _process_each(assignment_ids, operation, label):
    """Apply operation to each row, committing per row. Returns ids processed."""
    processed = []
    for assignment_id in assignment_ids:
        assignment = db.session.get(PointAssignment, assignment_id)
        if assignment is None:
            continue
        try:
            operation(assignment)
            db.session.commit()
        except InvalidState:
            logger.info(f"Bulk {label}: skipped {assignment_id} (already processed)")
            continue
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f"Bulk {label}: failed on {assignment_id}")
            continue
        processed.append(assignment_id)
    return processed


def bulk_approve(actor, assignment_ids):
    """Approve every still-pending assignment in assignment_ids.

    Already processed rows are skipped silently.

    Returns:
        int: Number of assignments approved.
    """
    _require_reviewer(actor, "approve")
    requested = _validate_ids(assignment_ids)
    actor_id = actor.id

    processed = _process_each(
        _pending_ids(requested),
        lambda a: approve_assignment(actor, a, audit=False),
        "approve",
    )

    audit_service.record(
        actor_id,
        audit_service.BULK_APPROVED_POINTS,
        {"approved_count": len(processed), "assignment_ids": requested},
    )
    db.session.commit()
    return len(processed)


def bulk_approve_all_pending(actor):
    """Approve everything currently pending (admin "approve all" action)."""
    _require_reviewer(actor, "approve")
    pending = db.session.execute(
        select(PointAssignment.id).where(
            PointAssignment.status == PENDING,
            PointAssignment.deleted_at.is_(None),
        )
    ).scalars().all()
    if not pending:
        audit_service.record(
            actor.id,
            audit_service.BULK_APPROVED_POINTS,
            {"approved_count": 0, "assignment_ids": []},
        )
        db.session.commit()
        return 0
    return bulk_approve(actor, pending)


def bulk_reject(actor, assignment_ids, rejection_reason):
    """Reject every still-pending assignment in assignment_ids.

    Returns:
        int: Number of assignments rejected.
    """
    _require_reviewer(actor, "reject")
    requested = _validate_ids(assignment_ids)
    rejection_reason = _validate_rejection_reason(rejection_reason)
    actor_id = actor.id

    processed = _process_each(
        _pending_ids(requested),
        lambda a: reject_assignment(actor, a, rejection_reason, audit=False),
        "reject",
    )

    audit_service.record(
        actor_id,
        audit_service.BULK_REJECTED_POINTS,
        {
            "rejected_count": len(processed),
            "assignment_ids": requested,
            "rejection_reason": rejection_reason,
        },
    )
    db.session.commit()
    return len(processed)


def bulk_assign_to_all(actor, points, reason):
    """Give every non-admin user (except the actor) an auto-verified assignment.

    Not atomic across the batch: each recipient is committed on its own,
    so a failure partway leaves earlier recipients credited.

    Returns:
        int: Number of recipients credited.
    """
    if not permissions.can_bulk_assign(actor):
        raise Forbidden("Only supervisors and admins can bulk assign points.")
    points = _validate_points(points)
    reason = _validate_reason(reason)
    actor_id = actor.id

    recipient_ids = [
        user.id
        for user in User.query.order_by(User.name).all()
        if permissions.receives_bulk_assignments(user, actor)
    ]

    credited = 0
    for recipient_id in recipient_ids:
        try:
            create_assignment(
                actor, recipient_id, points, reason,
                is_bulk_assignment=True, audit=False,
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f"Bulk assign: failed for recipient {recipient_id}")
            continue
        credited += 1

    audit_service.record(
        actor_id,
        audit_service.BULK_ASSIGNED_POINTS,
        {
            "points": points,
            "reason": reason,
            "recipients_count": credited,
        },
    )
    db.session.commit()
    return credited
