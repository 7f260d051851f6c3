"""User model.

Stores authentication credentials, role, email notification preferences
and the running verified-points total.
Flask-Login integration via UserMixin.
"""

import enum
import uuid

from flask_login import UserMixin

from pointtracker.extensions import db


class Role(str, enum.Enum):
    """Closed set of roles. Stored as its string value."""

    USER = "user"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"

    @classmethod
    def values(cls):
        return [role.value for role in cls]


class User(UserMixin, db.Model):
    __tablename__ = "users"

    # -- Preference flags, all default to True --
    EMAIL_PREFERENCES = [
        "email_on_point_received",
        "email_on_point_verified",
        "email_on_pending_points",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(
        db.String(20), default=Role.USER.value, nullable=False, index=True
    )  # user | supervisor | admin
    total_verified_points = db.Column(db.Integer, default=0, nullable=False)

    # --- Email notification preferences ---
    email_on_point_received = db.Column(db.Boolean, default=True, nullable=False)
    email_on_point_verified = db.Column(db.Boolean, default=True, nullable=False)
    email_on_pending_points = db.Column(
        db.Boolean, default=True, nullable=False
    )  # only meaningful for supervisors

    is_active = db.Column(db.Boolean, default=True)
    email_verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    assignments_given = db.relationship(
        "PointAssignment",
        foreign_keys="PointAssignment.assignor_id",
        back_populates="assignor",
        lazy="dynamic",
    )
    assignments_received = db.relationship(
        "PointAssignment",
        foreign_keys="PointAssignment.recipient_id",
        back_populates="recipient",
        lazy="dynamic",
    )
    assignments_verified = db.relationship(
        "PointAssignment",
        foreign_keys="PointAssignment.verified_by",
        back_populates="verifier",
        lazy="dynamic",
    )
    audit_logs = db.relationship(
        "AuditLog", back_populates="user", lazy="dynamic"
    )

    def email_preferences(self):
        return {flag: bool(getattr(self, flag)) for flag in self.EMAIL_PREFERENCES}

    def to_dict(self, include_private=False):
        data = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "total_verified_points": self.total_verified_points or 0,
        }
        if include_private:
            data.update(self.email_preferences())
            data["email_verified_at"] = (
                self.email_verified_at.isoformat() if self.email_verified_at else None
            )
            data["created_at"] = (
                self.created_at.isoformat() if self.created_at else None
            )
        return data

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"
