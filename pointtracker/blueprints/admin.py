"""Admin blueprint — /admin/api/*

User management, system reports and bulk review tools.
All routes protected by @admin_required decorator.

Route Map:
  GET    /admin/api/users                              — All users
  POST   /admin/api/users                              — Create user
  GET    /admin/api/users/by-role                      — Users grouped by role
  PATCH  /admin/api/users/<id>/role                    — Promote / demote
  PATCH  /admin/api/users/<id>/verify                  — Mark email verified
  DELETE /admin/api/users/<id>                         — Delete user
  GET    /admin/api/users/<id>/activity                — User drill-down
  GET    /admin/api/stats                              — Dashboard counters
  GET    /admin/api/overview                           — System overview
  GET    /admin/api/reports                            — Per-user report
  GET    /admin/api/audit-logs                         — Paginated audit log
  POST   /admin/api/point-assignments/bulk-approve-all — Approve everything pending
  POST   /admin/api/point-assignments/bulk-reject      — Reject many
  POST   /admin/api/point-assignments/<id>/archive     — Archive a rejected row
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user

from pointtracker.decorators import admin_required
from pointtracker.errors import NotFound
from pointtracker.extensions import db
from pointtracker.models.point_assignment import PointAssignment
from pointtracker.models.user import Role, User
from pointtracker.services import reporting_service, user_service, workflow_service

admin_bp = Blueprint("admin", __name__, url_prefix="/admin/api")


def _payload():
    return request.get_json(silent=True) or {}


def _get_user_or_404(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found.")
    return user


# ══════════════════════════════════════════════
#  USERS
# ══════════════════════════════════════════════

@admin_bp.route("/users", methods=["GET"])
@admin_required
def list_users():
    users = User.query.order_by(User.name).all()
    return jsonify([u.to_dict(include_private=True) for u in users])


@admin_bp.route("/users", methods=["POST"])
@admin_required
def create_user():
    data = _payload()
    user = user_service.create_user(
        current_user,
        name=data.get("name"),
        email=data.get("email"),
        password=data.get("password"),
        role=data.get("role", Role.USER.value),
    )
    db.session.commit()
    return jsonify({
        "message": "User created successfully",
        "user": user.to_dict(include_private=True),
    }), 201


@admin_bp.route("/users/by-role")
@admin_required
def users_by_role():
    return jsonify(reporting_service.users_by_role(request.args.get("role")))


@admin_bp.route("/users/<user_id>/role", methods=["PATCH"])
@admin_required
def update_role(user_id):
    target = _get_user_or_404(user_id)
    user_service.update_role(current_user, target, _payload().get("role"))
    db.session.commit()
    return jsonify({
        "message": "User role updated successfully",
        "user": target.to_dict(),
    })


@admin_bp.route("/users/<user_id>/verify", methods=["PATCH"])
@admin_required
def verify_user(user_id):
    target = _get_user_or_404(user_id)
    user_service.verify_user(current_user, target)
    db.session.commit()
    return jsonify({
        "message": "User verified successfully",
        "user": target.to_dict(include_private=True),
    })


@admin_bp.route("/users/<user_id>", methods=["DELETE"])
@admin_required
def delete_user(user_id):
    target = _get_user_or_404(user_id)
    user_service.delete_user(current_user, target)
    db.session.commit()
    return jsonify({"message": "User deleted successfully"})


@admin_bp.route("/users/<user_id>/activity")
@admin_required
def user_activity(user_id):
    return jsonify(reporting_service.user_activity(_get_user_or_404(user_id)))


# ══════════════════════════════════════════════
#  REPORTS
# ══════════════════════════════════════════════

@admin_bp.route("/stats")
@admin_required
def stats():
    return jsonify(reporting_service.admin_stats())


@admin_bp.route("/overview")
@admin_required
def overview():
    return jsonify(reporting_service.system_overview())


@admin_bp.route("/reports")
@admin_required
def reports():
    return jsonify(reporting_service.user_reports())


@admin_bp.route("/audit-logs")
@admin_required
def audit_logs():
    page = request.args.get("page", 1, type=int)
    return jsonify(reporting_service.audit_logs(
        action=request.args.get("action"),
        from_date=request.args.get("from_date"),
        to_date=request.args.get("to_date"),
        page=max(page, 1),
    ))


# ══════════════════════════════════════════════
#  POINT ASSIGNMENTS
# ══════════════════════════════════════════════

@admin_bp.route("/point-assignments/bulk-approve-all", methods=["POST"])
@admin_required
def bulk_approve_all():
    count = workflow_service.bulk_approve_all_pending(current_user)
    return jsonify({
        "message": f"Successfully approved {count} point assignments",
        "approved_count": count,
    })


@admin_bp.route("/point-assignments/bulk-reject", methods=["POST"])
@admin_required
def bulk_reject():
    data = _payload()
    count = workflow_service.bulk_reject(
        current_user, data.get("assignment_ids"), data.get("rejection_reason")
    )
    return jsonify({
        "message": f"Successfully rejected {count} point assignments",
        "rejected_count": count,
    })


@admin_bp.route("/point-assignments/<assignment_id>/archive", methods=["POST"])
@admin_required
def archive_assignment(assignment_id):
    assignment = db.session.get(PointAssignment, assignment_id)
    if assignment is None:
        raise NotFound(f"Point assignment {assignment_id} not found.")
    workflow_service.archive_assignment(current_user, assignment)
    db.session.commit()
    return jsonify({
        "message": "Assignment archived.",
        "assignment": assignment.to_dict(),
    })
