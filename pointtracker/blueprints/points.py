"""Points blueprint — /api/point-assignments/*, /api/points, /api/supervisor/*

JSON API over the verification workflow. Routes stay thin: parse the
body, call workflow_service / reporting_service, commit, serialise.
Service errors (Forbidden, InvalidState, ...) become JSON through the
app-level PointTrackerError handler.

Route Map:
  POST  /api/point-assignments                  — Assign points
  PATCH /api/point-assignments/<id>/approve     — Approve (reviewer)
  PATCH /api/point-assignments/<id>/reject      — Reject (reviewer)
  POST  /api/point-assignments/bulk-approve     — Approve many (reviewer)
  POST  /api/point-assignments/bulk-reject      — Reject many (reviewer)
  POST  /api/point-assignments/bulk-assign      — Give everyone points (reviewer)
  GET   /api/point-assignments/my               — Assignments I made
  GET   /api/point-assignments/received         — Assignments I received
  GET   /api/point-assignments/pending          — Review queue (reviewer)
  GET   /api/point-assignments/logs             — Assignment log
  GET   /api/point-assignments/stats            — Dashboard counters
  GET   /api/points                             — Verified vs pending chart
  GET   /api/supervisor/stats                   — Team counters (reviewer)
  GET   /api/supervisor/activity                — My review activity (reviewer)
  GET   /api/supervisor/trends                  — Verified points per day (reviewer)
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from pointtracker.decorators import reviewer_required
from pointtracker.extensions import db
from pointtracker.services import reporting_service, workflow_service

points_bp = Blueprint("points", __name__, url_prefix="/api")


def _payload():
    return request.get_json(silent=True) or {}


# ══════════════════════════════════════════════
#  WORKFLOW
# ══════════════════════════════════════════════

@points_bp.route("/point-assignments", methods=["POST"])
@login_required
def create_assignment():
    data = _payload()
    assignment = workflow_service.create_assignment(
        current_user,
        recipient_id=data.get("recipient_id"),
        points=data.get("points"),
        reason=data.get("reason"),
    )
    db.session.commit()

    if assignment.is_pending:
        message = "Points assigned and waiting for supervisor approval."
    else:
        message = "Points assigned and verified."
    return jsonify({"message": message, "data": assignment.to_dict()}), 201


@points_bp.route("/point-assignments/<assignment_id>/approve", methods=["PATCH"])
@login_required
def approve_assignment(assignment_id):
    assignment = workflow_service.get_assignment(assignment_id)
    workflow_service.approve_assignment(current_user, assignment)
    db.session.commit()
    return jsonify({
        "message": "Assignment approved successfully.",
        "assignment": assignment.to_dict(),
    })


@points_bp.route("/point-assignments/<assignment_id>/reject", methods=["PATCH"])
@login_required
def reject_assignment(assignment_id):
    assignment = workflow_service.get_assignment(assignment_id)
    workflow_service.reject_assignment(
        current_user, assignment, _payload().get("rejection_reason")
    )
    db.session.commit()
    return jsonify({
        "message": "Assignment rejected successfully.",
        "assignment": assignment.to_dict(),
    })


@points_bp.route("/point-assignments/bulk-approve", methods=["POST"])
@reviewer_required
def bulk_approve():
    count = workflow_service.bulk_approve(
        current_user, _payload().get("assignment_ids")
    )
    return jsonify({
        "message": f"Successfully approved {count} point assignments",
        "approved_count": count,
    })


@points_bp.route("/point-assignments/bulk-reject", methods=["POST"])
@reviewer_required
def bulk_reject():
    data = _payload()
    count = workflow_service.bulk_reject(
        current_user, data.get("assignment_ids"), data.get("rejection_reason")
    )
    return jsonify({
        "message": f"Successfully rejected {count} point assignments",
        "rejected_count": count,
    })


@points_bp.route("/point-assignments/bulk-assign", methods=["POST"])
@reviewer_required
def bulk_assign():
    data = _payload()
    count = workflow_service.bulk_assign_to_all(
        current_user, data.get("points"), data.get("reason")
    )
    return jsonify({
        "message": f"Points assigned to {count} users",
        "assignments_count": count,
    })


# ══════════════════════════════════════════════
#  READ VIEWS
# ══════════════════════════════════════════════

@points_bp.route("/point-assignments/my")
@login_required
def my_assignments():
    return jsonify(reporting_service.assignments_given(current_user))


@points_bp.route("/point-assignments/received")
@login_required
def received_assignments():
    return jsonify(reporting_service.assignments_received(current_user))


@points_bp.route("/point-assignments/pending")
@reviewer_required
def pending_assignments():
    detailed = request.args.get("detailed", "").lower() in ("1", "true", "yes")
    return jsonify(reporting_service.pending_assignments(detailed=detailed))


@points_bp.route("/point-assignments/logs")
@login_required
def point_logs():
    return jsonify(reporting_service.point_logs(current_user))


@points_bp.route("/point-assignments/stats")
@login_required
def stats():
    return jsonify(reporting_service.dashboard_stats(current_user))


@points_bp.route("/points")
@login_required
def points_overview():
    return jsonify(reporting_service.points_overview(current_user))


# ══════════════════════════════════════════════
#  SUPERVISOR
# ══════════════════════════════════════════════

@points_bp.route("/supervisor/stats")
@reviewer_required
def supervisor_stats():
    return jsonify(reporting_service.supervisor_stats(current_user))


@points_bp.route("/supervisor/activity")
@reviewer_required
def supervisor_activity():
    return jsonify(reporting_service.activity_summary(current_user))


@points_bp.route("/supervisor/trends")
@reviewer_required
def supervisor_trends():
    return jsonify(reporting_service.weekly_trends())
