"""Notification service — turns committed workflow events into emails.

HANDLERS is the registration table consumed by register(); it runs once
per app in create_app(). Handlers receive only ids, reload the rows they
need and apply each recipient's preference flags.

Every send is isolated: a failing template or SMTP hand-off is logged
and the remaining recipients still get their email.
"""

import logging

from flask import current_app
from sqlalchemy.orm import joinedload

from pointtracker.events import AssignmentCreated, AssignmentStatusChanged
from pointtracker.extensions import db
from pointtracker.models.point_assignment import AssignmentStatus, PointAssignment
from pointtracker.models.user import Role, User
from pointtracker.services.email_service import send_email

logger = logging.getLogger(__name__)


def _safe_send(to, subject, template, context, sender=None):
    try:
        result = (sender or send_email)(
            to=to, subject=subject, template=template, context=context
        )
        return result is not False
    except Exception:
        logger.exception(f"Notification '{subject}' to {to} failed")
        return False


def _load_assignment(assignment_id):
    return (
        db.session.query(PointAssignment)
        .options(
            joinedload(PointAssignment.assignor),
            joinedload(PointAssignment.recipient),
            joinedload(PointAssignment.verifier),
        )
        .filter(PointAssignment.id == assignment_id)
        .first()
    )


def _pending_assignments():
    return (
        PointAssignment.active()
        .options(
            joinedload(PointAssignment.assignor),
            joinedload(PointAssignment.recipient),
        )
        .filter(PointAssignment.status == AssignmentStatus.PENDING.value)
        .order_by(PointAssignment.created_at.asc())
        .all()
    )


# ─── Individual emails ─────────────────────────────────────

def send_point_assigned(assignment, sender=None):
    """Tell the recipient they were given points."""
    subject = (
        f"New {assignment.point_type} points assigned to you "
        f"({assignment.points} points)"
    )
    return _safe_send(
        assignment.recipient.email,
        subject,
        "emails/point_assigned.html",
        {"assignment": assignment},
        sender,
    )


def send_admin_point_assigned(assignment, sender=None):
    """Copy of every assignment for the operational mailbox."""
    mailbox = current_app.config.get("ADMIN_NOTIFICATION_EMAIL")
    if not mailbox:
        return False
    subject = (
        f"Point Assignment Alert - {assignment.point_type} points assigned "
        f"({assignment.points} points)"
    )
    return _safe_send(
        mailbox,
        subject,
        "emails/admin_point_assigned.html",
        {"assignment": assignment},
        sender,
    )


def send_pending_summary(supervisor, pending, sender=None):
    count = len(pending)
    noun = "assignment" if count == 1 else "assignments"
    return _safe_send(
        supervisor.email,
        f"You have {count} pending point {noun} to review",
        "emails/pending_points.html",
        {"supervisor": supervisor, "pending": pending, "count": count},
        sender,
    )


def send_point_verified(assignment, sender=None):
    return _safe_send(
        assignment.recipient.email,
        "Your points have been approved",
        "emails/point_verified.html",
        {"assignment": assignment},
        sender,
    )


def send_point_rejected(assignment, audience, sender=None):
    """audience is "assignor" or "recipient"; it picks the copy."""
    if audience == "assignor":
        to = assignment.assignor.email
        subject = (
            f"Point Assignment Rejected - {assignment.points} points "
            f"you assigned were rejected"
        )
    else:
        to = assignment.recipient.email
        subject = (
            f"Point Assignment Rejected - {assignment.points} points "
            f"assigned to you were rejected"
        )
    return _safe_send(
        to,
        subject,
        "emails/point_rejected.html",
        {"assignment": assignment, "audience": audience},
        sender,
    )


# ─── Event handlers ────────────────────────────────────────

def on_assignment_created(evt):
    assignment = _load_assignment(evt.assignment_id)
    if assignment is None:
        logger.warning(f"AssignmentCreated for missing assignment {evt.assignment_id}")
        return

    if assignment.recipient.email_on_point_received:
        send_point_assigned(assignment)

    send_admin_point_assigned(assignment)

    if evt.status == AssignmentStatus.PENDING.value:
        notify_supervisors_of_pending()


def notify_supervisors_of_pending():
    """Send each opted-in supervisor a summary of everything pending."""
    supervisors = User.query.filter_by(
        role=Role.SUPERVISOR.value, email_on_pending_points=True
    ).all()
    if not supervisors:
        return 0

    pending = _pending_assignments()
    if not pending:
        return 0

    sent = 0
    for supervisor in supervisors:
        if send_pending_summary(supervisor, pending):
            sent += 1
    return sent


def on_assignment_status_changed(evt):
    if evt.previous_status != AssignmentStatus.PENDING.value:
        return

    assignment = _load_assignment(evt.assignment_id)
    if assignment is None:
        logger.warning(
            f"AssignmentStatusChanged for missing assignment {evt.assignment_id}"
        )
        return

    if evt.status == AssignmentStatus.VERIFIED.value:
        if assignment.recipient.email_on_point_verified:
            send_point_verified(assignment)

    elif evt.status == AssignmentStatus.REJECTED.value:
        assignor = assignment.assignor
        if assignor is not None and assignor.email_on_point_verified:
            send_point_rejected(assignment, "assignor")
        if assignment.recipient.email_on_point_verified:
            send_point_rejected(assignment, "recipient")


HANDLERS = {
    AssignmentCreated: [on_assignment_created],
    AssignmentStatusChanged: [on_assignment_status_changed],
}


def register(event_bus):
    for event_type, handlers in HANDLERS.items():
        for handler in handlers:
            event_bus.subscribe(event_type, handler)
