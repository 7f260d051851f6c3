"""Users blueprint — /api/user*, /api/users*, leaderboard, dashboards.

Route Map:
  GET   /api/user                          — Current user + preferences
  GET   /api/user/email-preferences        — My email flags
  PATCH /api/user/email-preferences        — Partial update of my flags
  POST  /api/user/email-preferences/reset  — All flags back on
  GET   /api/users                         — Recipient picker
  GET   /api/users/search?query=           — Name/email search (reviewer)
  GET   /api/users/<id>/stats              — Per-user stats (self or reviewer)
  GET   /api/top-performers                — Ranking by total (reviewer)
  GET   /api/leaderboard                   — Verified points in a window
  GET   /api/dashboard-data                — Dashboard header data
  GET   /api/audit-logs                    — Recent entries involving me
"""

from flask import Blueprint, abort, jsonify, request
from flask_login import current_user, login_required

from pointtracker import permissions
from pointtracker.decorators import reviewer_required
from pointtracker.extensions import db
from pointtracker.errors import NotFound
from pointtracker.models.user import User
from pointtracker.services import reporting_service, user_service

users_bp = Blueprint("users", __name__, url_prefix="/api")


# ──────────────────────────────────────────────
# Current user
# ──────────────────────────────────────────────

@users_bp.route("/user")
@login_required
def current():
    return jsonify(current_user.to_dict(include_private=True))


@users_bp.route("/user/email-preferences", methods=["GET"])
@login_required
def get_email_preferences():
    return jsonify({"email_preferences": current_user.email_preferences()})


@users_bp.route("/user/email-preferences", methods=["PATCH"])
@login_required
def update_email_preferences():
    prefs = user_service.update_email_preferences(
        current_user, request.get_json(silent=True) or {}
    )
    db.session.commit()
    return jsonify({
        "message": "Email preferences updated successfully",
        "email_preferences": prefs,
    })


@users_bp.route("/user/email-preferences/reset", methods=["POST"])
@login_required
def reset_email_preferences():
    prefs = user_service.reset_email_preferences(current_user)
    db.session.commit()
    return jsonify({
        "message": "Email preferences reset to default",
        "email_preferences": prefs,
    })


# ──────────────────────────────────────────────
# Directory
# ──────────────────────────────────────────────

@users_bp.route("/users")
@login_required
def list_users():
    return jsonify(reporting_service.user_directory(current_user))


@users_bp.route("/users/search")
@reviewer_required
def search_users():
    return jsonify(
        reporting_service.search_users(current_user, request.args.get("query"))
    )


@users_bp.route("/users/<user_id>/stats")
@login_required
def user_stats(user_id):
    target = db.session.get(User, user_id)
    if target is None:
        raise NotFound(f"User {user_id} not found.")
    if not permissions.can_view_user_stats(current_user, target):
        abort(403)
    return jsonify(reporting_service.user_stats(target))


@users_bp.route("/top-performers")
@reviewer_required
def top_performers():
    return jsonify(reporting_service.top_performers(
        limit=request.args.get("limit", 10),
        period=request.args.get("period", "all"),
    ))


# ──────────────────────────────────────────────
# Dashboards
# ──────────────────────────────────────────────

@users_bp.route("/leaderboard")
@login_required
def leaderboard():
    return jsonify(reporting_service.leaderboard(
        period=request.args.get("period", "month"),
        start_date=request.args.get("start_date"),
        end_date=request.args.get("end_date"),
    ))


@users_bp.route("/dashboard-data")
@login_required
def dashboard_data():
    return jsonify(reporting_service.dashboard_data(current_user))


@users_bp.route("/audit-logs")
@login_required
def recent_audit_logs():
    return jsonify(reporting_service.recent_audit_logs(current_user))
