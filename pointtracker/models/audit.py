"""Audit log model.

Append-only record of every mutating action (point assignment, approval,
rejection, role changes, user deletion, ...). Written through
audit_service.record(); never updated or deleted by normal operation.
"""

import uuid

from pointtracker.extensions import db


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )  # actor; NULL once the actor account is deleted
    action = db.Column(db.String(255), nullable=False, index=True)  # e.g. "approved_point"
    data = db.Column(db.JSON, default=dict)
    ip_address = db.Column(db.String(45), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), index=True
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="audit_logs")

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else "Unknown",
            "data": self.data or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.action}>"
