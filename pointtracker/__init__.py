import os
import logging

import click
from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from pointtracker.config import config_by_name
from pointtracker.errors import PointTrackerError
from pointtracker.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from pointtracker import models  # noqa: F401

    # --- Domain events -> notifications ---
    from pointtracker.events import bus
    from pointtracker.services import notification_service

    bus.init_app(app)
    notification_service.register(bus)

    # --- Register blueprints ---
    from pointtracker.blueprints.auth import auth_bp
    from pointtracker.blueprints.points import points_bp
    from pointtracker.blueprints.users import users_bp
    from pointtracker.blueprints.admin import admin_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(points_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(admin_bp)

    # --- Root route ---
    @app.route("/")
    def index():
        return jsonify({"name": "Point Tracker", "status": "ok"})

    # --- Error handlers ---
    register_error_handlers(app)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=()"
        )
        # JSON API only: nothing to load, nothing to frame
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'; base-uri 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_error_handlers(app):
    """Every error leaves as {"error": <kind>, "message": <text>}."""

    @app.errorhandler(PointTrackerError)
    def domain_error(e):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        kind = {
            401: "unauthorized",
            403: "forbidden",
            404: "not_found",
            405: "method_not_allowed",
            429: "rate_limited",
        }.get(e.code, "http_error")
        return jsonify({"error": kind, "message": e.description}), e.code

    @app.errorhandler(SQLAlchemyError)
    def database_error(e):
        db.session.rollback()
        app.logger.exception("Database error")
        return jsonify({
            "error": "server_error",
            "message": "Something went wrong. Please try again.",
        }), 500

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({
            "error": "server_error",
            "message": "Something went wrong. Please try again.",
        }), 500


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@pointtracker.local", help="Admin email")
    @click.option("--password", default="admin12345", help="Admin password")
    @click.option("--name", default="Admin", help="Display name")
    def seed_admin(email, password, name):
        """Create (or promote) the first admin user.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret-pass
        """
        from datetime import datetime, timezone

        from pointtracker.models.user import Role, User

        email = email.lower().strip()
        existing = User.query.filter_by(email=email).first()
        if existing:
            existing.role = Role.ADMIN.value
            db.session.commit()
            click.echo(f"Admin user already exists: {email} (role ensured)")
            return

        admin = User(
            name=name,
            email=email,
            password_hash=generate_password_hash(password),
            role=Role.ADMIN.value,
            email_verified_at=datetime.now(timezone.utc),
        )
        db.session.add(admin)
        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Admin created successfully!")
        click.echo("=" * 60)
        click.echo(f"  Admin:  {email} / {password}")
        click.echo(f"  Login:  {app.config['APP_BASE_URL']}/auth/login")
        click.echo("=" * 60)

    @app.cli.command("test-emails")
    @click.option("--email", default=None, help="Send to this user instead of the first one")
    def test_emails(email):
        """Send one of every notification email, synchronously.

        Builds a throwaway assignment for the target user, sends each
        template through SMTP and rolls the assignment back afterwards.
        """
        from datetime import datetime, timezone

        from pointtracker.models.point_assignment import AssignmentStatus, PointAssignment
        from pointtracker.models.user import User
        from pointtracker.services import notification_service
        from pointtracker.services.email_service import send_email_sync

        query = User.query.order_by(User.created_at)
        user = query.filter_by(email=email.lower()).first() if email else query.first()
        if user is None:
            click.echo("No user found. Run `flask seed-admin` first.")
            return

        now = datetime.now(timezone.utc)
        assignment = PointAssignment(
            assignor_id=user.id,
            recipient_id=user.id,
            points=5,
            reason="Test email notification",
            status=AssignmentStatus.VERIFIED.value,
            verified_by=user.id,
            verified_at=now,
            rejection_reason="Test rejection reason",
        )
        db.session.add(assignment)
        db.session.flush()
        db.session.refresh(assignment)

        try:
            results = {
                "point assigned": notification_service.send_point_assigned(
                    assignment, sender=send_email_sync),
                "admin alert": notification_service.send_admin_point_assigned(
                    assignment, sender=send_email_sync),
                "pending summary": notification_service.send_pending_summary(
                    user, [assignment], sender=send_email_sync),
                "point verified": notification_service.send_point_verified(
                    assignment, sender=send_email_sync),
                "rejected (assignor)": notification_service.send_point_rejected(
                    assignment, "assignor", sender=send_email_sync),
                "rejected (recipient)": notification_service.send_point_rejected(
                    assignment, "recipient", sender=send_email_sync),
            }
        finally:
            db.session.rollback()

        click.echo(f"Test emails for {user.email}:")
        for label, ok in results.items():
            click.echo(f"  {label:<22} {'sent' if ok else 'FAILED'}")

    @app.cli.command("reconcile-totals")
    @click.option("--dry-run", is_flag=True, help="Report drift without fixing it.")
    def reconcile_totals(dry_run):
        """Recompute every user's verified total from the ledger.

        Usage:
            flask reconcile-totals
            flask reconcile-totals --dry-run
        """
        from pointtracker.services import reporting_service

        drifted = reporting_service.reconcile_totals(dry_run=dry_run)
        if not dry_run:
            db.session.commit()

        if not drifted:
            click.echo("All totals match the ledger.")
            return

        verb = "Would fix" if dry_run else "Fixed"
        for row in drifted:
            click.echo(
                f"  {verb} {row['email']}: {row['recorded']} -> {row['expected']} "
                f"(drift {row['drift']:+d})"
            )
        click.echo(f"{len(drifted)} user(s) drifted.")
