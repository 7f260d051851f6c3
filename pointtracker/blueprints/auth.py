"""Auth blueprint — /auth/*

Handles open self-registration, login, logout and the CSRF token
bootstrap for JSON clients.
"""

from datetime import datetime, timezone

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash

from pointtracker.extensions import db, limiter
from pointtracker.models.user import User
from pointtracker.services import user_service

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _payload():
    """Accept JSON bodies and classic form posts alike."""
    return request.get_json(silent=True) or request.form.to_dict()


# ──────────────────────────────────────────────
# GET /auth/csrf-token
# ──────────────────────────────────────────────

@auth_bp.route("/csrf-token")
def csrf_token():
    """Token to send back in the X-CSRFToken header on mutating requests."""
    return jsonify({"csrf_token": generate_csrf()})


# ──────────────────────────────────────────────
# POST /auth/register
# ──────────────────────────────────────────────

@auth_bp.route("/register", methods=["POST"])
@limiter.limit("10 per minute")
def register():
    """Create a plain-user account and log it in."""
    if current_user.is_authenticated:
        return jsonify({"error": "already_authenticated",
                        "message": "You are already logged in."}), 400

    data = _payload()
    user = user_service.register_user(
        name=data.get("name"),
        email=data.get("email"),
        password=data.get("password"),
    )
    user.last_login_at = datetime.now(timezone.utc)
    db.session.commit()

    login_user(user)
    return jsonify({
        "message": "Welcome! Your account has been created.",
        "user": user.to_dict(include_private=True),
    }), 201


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    """Standard email + password login."""
    data = _payload()
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    remember = bool(data.get("remember"))

    if not email or not password:
        return jsonify({"error": "validation_error",
                        "message": "Email and password are required."}), 422

    user = User.query.filter_by(email=email).first()

    if user is None or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "invalid_credentials",
                        "message": "Invalid email or password."}), 401

    if not user.is_active:
        return jsonify({"error": "forbidden",
                        "message": "Your account has been deactivated."}), 403

    login_user(user, remember=remember)
    user.last_login_at = datetime.now(timezone.utc)
    db.session.commit()

    return jsonify({
        "message": "Logged in successfully.",
        "user": user.to_dict(include_private=True),
    })


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"message": "You have been logged out."})
