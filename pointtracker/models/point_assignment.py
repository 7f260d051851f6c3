"""Point assignment model (the ledger).

One row per point transaction. Status moves at most once, from pending
to verified or rejected; the transition rules live in VALID_TRANSITIONS
and are enforced by workflow_service with a guarded UPDATE.
"""

import enum
import uuid

from pointtracker.extensions import db


class AssignmentStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class PointAssignment(db.Model):
    __tablename__ = "point_assignments"
    __table_args__ = (
        db.CheckConstraint("points <> 0", name="point_assignments_points_nonzero"),
        db.Index("ix_point_assignments_recipient_status", "recipient_id", "status"),
        db.Index("ix_point_assignments_assignor_created", "assignor_id", "created_at"),
    )

    # -- Valid statuses --
    STATUSES = [status.value for status in AssignmentStatus]

    # -- Valid status transitions (enforced in workflow_service) --
    VALID_TRANSITIONS = {
        AssignmentStatus.PENDING.value: [
            AssignmentStatus.VERIFIED.value,
            AssignmentStatus.REJECTED.value,
        ],
    }

    # -- Rejection reason bounds --
    REJECTION_REASON_MIN = 3
    REJECTION_REASON_MAX = 500

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    assignor_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )  # NULL only once the assignor account has been deleted
    recipient_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    points = db.Column(db.Integer, nullable=False)  # signed, never zero
    reason = db.Column(db.Text, nullable=False)
    status = db.Column(
        db.String(20), default=AssignmentStatus.PENDING.value, nullable=False, index=True
    )  # pending | verified | rejected
    verified_by = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    is_bulk_assignment = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    deleted_at = db.Column(
        db.DateTime(timezone=True), nullable=True
    )  # soft delete (archived rejected rows)

    # --- Relationships ---
    assignor = db.relationship(
        "User",
        foreign_keys=[assignor_id],
        back_populates="assignments_given",
    )
    recipient = db.relationship(
        "User",
        foreign_keys=[recipient_id],
        back_populates="assignments_received",
    )
    verifier = db.relationship(
        "User",
        foreign_keys=[verified_by],
        back_populates="assignments_verified",
    )

    @classmethod
    def active(cls):
        """Query over rows that have not been archived."""
        return cls.query.filter(cls.deleted_at.is_(None))

    @property
    def is_pending(self):
        return self.status == AssignmentStatus.PENDING.value

    @property
    def point_type(self):
        return "positive" if self.points >= 0 else "negative"

    def can_transition_to(self, new_status):
        return new_status in self.VALID_TRANSITIONS.get(self.status, [])

    def to_dict(self, include_users=True):
        data = {
            "id": self.id,
            "assignor_id": self.assignor_id,
            "recipient_id": self.recipient_id,
            "points": self.points,
            "point_type": self.point_type,
            "reason": self.reason,
            "status": self.status,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "rejection_reason": self.rejection_reason,
            "is_bulk_assignment": bool(self.is_bulk_assignment),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_users:
            data["assignor"] = _user_stub(self.assignor)
            data["recipient"] = _user_stub(self.recipient)
            data["verifier"] = _user_stub(self.verifier)
        return data

    def __repr__(self):
        return f"<PointAssignment {self.points:+d} -> {self.recipient_id} ({self.status})>"


def _user_stub(user):
    if user is None:
        return None
    return {"id": user.id, "name": user.name}
