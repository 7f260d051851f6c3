"""Tests for the verification workflow (workflow_service).

Covers:
- Create: role decides pending vs auto-verified, validation, sanitising
- Approve / reject: permissions, guarded transitions, totals
- Lost race: a concurrent approve wins, totals move exactly once
- Bulk approve / reject / assign: per-row processing and counts,
  one failing row does not stop the batch
- Archive of rejected rows
- Ledger invariant: totals always equal the sum of verified rows
"""

from unittest.mock import patch

import pytest
from sqlalchemy import func, update
from sqlalchemy.exc import OperationalError

from pointtracker.errors import Forbidden, InvalidState, NotFound, ValidationError
from pointtracker.events import AssignmentCreated, AssignmentStatusChanged, bus
from pointtracker.extensions import db
from pointtracker.models.audit import AuditLog
from pointtracker.models.point_assignment import PointAssignment
from pointtracker.models.user import User
from pointtracker.services import reporting_service, workflow_service


def _verified_sum(user_id):
    return db.session.query(
        func.coalesce(func.sum(PointAssignment.points), 0)
    ).filter(
        PointAssignment.recipient_id == user_id,
        PointAssignment.status == "verified",
    ).scalar()


def _queued_events():
    events = []
    while bus.pending_count():
        events.append(bus._queue.get_nowait())
    return events


def _pending(assignor, recipient, points=5, reason="Helped with release"):
    assignment = workflow_service.create_assignment(assignor, recipient.id, points, reason)
    db.session.commit()
    return assignment


def _fail_on_call(real, n):
    """Wrap real so that its n-th call raises a database error."""
    calls = []

    def wrapper(*args, **kwargs):
        calls.append(args)
        if len(calls) == n:
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        return real(*args, **kwargs)

    return wrapper


# ══════════════════════════════════════════════
#  CREATE
# ══════════════════════════════════════════════

class TestCreateAssignment:
    def test_user_assignment_is_pending_and_total_unchanged(self, seed_data):
        alice, bob = seed_data["alice"], seed_data["bob"]

        assignment = _pending(alice, bob, 5)

        assert assignment.status == "pending"
        assert assignment.verified_by is None
        assert assignment.verified_at is None
        assert db.session.get(User, bob.id).total_verified_points == 0

    def test_user_assignment_queues_one_created_event(self, seed_data):
        assignment = _pending(seed_data["alice"], seed_data["bob"], 5)

        events = _queued_events()
        assert events == [AssignmentCreated(assignment_id=assignment.id, status="pending")]

    def test_supervisor_assignment_is_verified_immediately(self, seed_data):
        sup, bob = seed_data["supervisor"], seed_data["bob"]

        assignment = workflow_service.create_assignment(sup, bob.id, -3, "Missed standup")
        db.session.commit()

        assert assignment.status == "verified"
        assert assignment.verified_by == sup.id
        assert assignment.verified_at is not None
        assert db.session.get(User, bob.id).total_verified_points == -3

    def test_admin_assignment_is_verified_immediately(self, seed_data):
        admin, alice = seed_data["admin"], seed_data["alice"]

        workflow_service.create_assignment(admin, alice.id, 10, "Quarterly award")
        db.session.commit()

        assert db.session.get(User, alice.id).total_verified_points == 10

    def test_reason_is_sanitized(self, seed_data):
        assignment = workflow_service.create_assignment(
            seed_data["alice"], seed_data["bob"].id, 2, "<script>x</script>Great <b>work</b>"
        )
        assert "<" not in assignment.reason
        assert "Great work" in assignment.reason

    @pytest.mark.parametrize("points", [0, None, "abc", 1.5, True])
    def test_bad_points_rejected(self, seed_data, points):
        with pytest.raises(ValidationError):
            workflow_service.create_assignment(
                seed_data["alice"], seed_data["bob"].id, points, "reason"
            )

    def test_empty_reason_rejected(self, seed_data):
        with pytest.raises(ValidationError):
            workflow_service.create_assignment(
                seed_data["alice"], seed_data["bob"].id, 5, "   <b></b> "
            )

    def test_unknown_recipient(self, seed_data):
        with pytest.raises(NotFound):
            workflow_service.create_assignment(seed_data["alice"], "missing-id", 5, "reason")

    def test_nothing_queued_when_validation_fails(self, seed_data):
        with pytest.raises(ValidationError):
            workflow_service.create_assignment(seed_data["alice"], seed_data["bob"].id, 0, "r")
        db.session.commit()
        assert bus.pending_count() == 0

    def test_rolled_back_assignment_queues_nothing(self, seed_data):
        workflow_service.create_assignment(seed_data["alice"], seed_data["bob"].id, 5, "r")
        db.session.rollback()
        assert bus.pending_count() == 0
        assert PointAssignment.query.count() == 0


# ══════════════════════════════════════════════
#  APPROVE / REJECT
# ══════════════════════════════════════════════

class TestApprove:
    def test_supervisor_approves(self, seed_data):
        sup, bob = seed_data["supervisor"], seed_data["bob"]
        assignment = _pending(seed_data["alice"], bob, 5)
        _queued_events()

        workflow_service.approve_assignment(sup, assignment)
        db.session.commit()

        assert assignment.status == "verified"
        assert assignment.verified_by == sup.id
        assert assignment.verified_at is not None
        assert db.session.get(User, bob.id).total_verified_points == 5
        assert _queued_events() == [AssignmentStatusChanged(
            assignment_id=assignment.id, previous_status="pending", status="verified",
        )]

    def test_plain_user_cannot_approve(self, seed_data):
        assignment = _pending(seed_data["alice"], seed_data["bob"])
        with pytest.raises(Forbidden):
            workflow_service.approve_assignment(seed_data["bob"], assignment)
        assert db.session.get(PointAssignment, assignment.id).status == "pending"

    def test_second_approve_is_invalid_state(self, seed_data):
        sup, bob = seed_data["supervisor"], seed_data["bob"]
        assignment = _pending(seed_data["alice"], bob, 5)

        workflow_service.approve_assignment(sup, assignment)
        db.session.commit()
        with pytest.raises(InvalidState):
            workflow_service.approve_assignment(seed_data["admin"], assignment)

        assert db.session.get(User, bob.id).total_verified_points == 5

    def test_lost_race_applies_nothing(self, seed_data):
        """Another reviewer approves between our read and our update."""
        sup, bob = seed_data["supervisor"], seed_data["bob"]
        assignment = _pending(seed_data["alice"], bob, 5)
        assert assignment.status == "pending"

        # The competing reviewer's transaction, bypassing our in-memory row.
        db.session.execute(
            update(PointAssignment)
            .where(PointAssignment.id == assignment.id)
            .values(status="verified", verified_by=seed_data["admin_id"])
            .execution_options(synchronize_session=False)
        )
        db.session.execute(
            update(User)
            .where(User.id == bob.id)
            .values(total_verified_points=User.total_verified_points + 5)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(InvalidState):
            workflow_service.approve_assignment(sup, assignment)
        db.session.commit()

        db.session.expire_all()
        assert db.session.get(User, bob.id).total_verified_points == 5
        assert db.session.get(PointAssignment, assignment.id).verified_by == seed_data["admin_id"]

    def test_cannot_approve_rejected(self, seed_data):
        sup = seed_data["supervisor"]
        assignment = _pending(seed_data["alice"], seed_data["bob"])
        workflow_service.reject_assignment(sup, assignment, "Not enough detail")
        db.session.commit()

        with pytest.raises(InvalidState):
            workflow_service.approve_assignment(sup, assignment)


class TestReject:
    def test_supervisor_rejects(self, seed_data):
        sup, bob = seed_data["supervisor"], seed_data["bob"]
        assignment = _pending(seed_data["alice"], bob, 5)

        workflow_service.reject_assignment(sup, assignment, "  Duplicate entry  ")
        db.session.commit()

        assert assignment.status == "rejected"
        assert assignment.rejection_reason == "Duplicate entry"
        assert assignment.verified_by == sup.id
        assert db.session.get(User, bob.id).total_verified_points == 0

    @pytest.mark.parametrize("reason", ["", "ab", "  ab  ", "x" * 501, None])
    def test_reason_length_enforced(self, seed_data, reason):
        assignment = _pending(seed_data["alice"], seed_data["bob"])
        with pytest.raises(ValidationError):
            workflow_service.reject_assignment(seed_data["supervisor"], assignment, reason)
        assert db.session.get(PointAssignment, assignment.id).status == "pending"

    @pytest.mark.parametrize("reason", ["abc", "x" * 500, "R&D " + "x" * 496])
    def test_reason_bounds_accepted(self, seed_data, reason):
        assignment = _pending(seed_data["alice"], seed_data["bob"])
        workflow_service.reject_assignment(seed_data["supervisor"], assignment, reason)
        assert assignment.status == "rejected"

    def test_reason_stored_as_plain_text(self, seed_data):
        assignment = _pending(seed_data["alice"], seed_data["bob"])
        workflow_service.reject_assignment(
            seed_data["supervisor"], assignment, "R&D: 2 < 3, <i>not</i> ok"
        )
        assert assignment.rejection_reason == "R&D: 2 < 3, not ok"

    def test_second_reject_is_invalid_state(self, seed_data):
        sup = seed_data["supervisor"]
        assignment = _pending(seed_data["alice"], seed_data["bob"])
        workflow_service.reject_assignment(sup, assignment, "First rejection")
        db.session.commit()

        with pytest.raises(InvalidState):
            workflow_service.reject_assignment(sup, assignment, "Second rejection")

    def test_plain_user_cannot_reject(self, seed_data):
        assignment = _pending(seed_data["alice"], seed_data["bob"])
        with pytest.raises(Forbidden):
            workflow_service.reject_assignment(seed_data["alice"], assignment, "Nope nope")


# ══════════════════════════════════════════════
#  BULK
# ══════════════════════════════════════════════

class TestBulk:
    def test_bulk_reject_skips_already_verified(self, seed_data):
        sup, alice, bob = seed_data["supervisor"], seed_data["alice"], seed_data["bob"]
        ids = [_pending(alice, bob, n + 1).id for n in range(5)]
        for assignment_id in ids[:2]:
            workflow_service.approve_assignment(sup, db.session.get(PointAssignment, assignment_id))
        db.session.commit()

        count = workflow_service.bulk_reject(sup, ids, "Batch cleanup")

        assert count == 3
        statuses = [db.session.get(PointAssignment, i).status for i in ids]
        assert statuses == ["verified", "verified", "rejected", "rejected", "rejected"]
        assert db.session.get(User, bob.id).total_verified_points == 1 + 2

    def test_bulk_reject_writes_one_summary_entry(self, seed_data):
        sup = seed_data["supervisor"]
        ids = [_pending(seed_data["alice"], seed_data["bob"]).id for _ in range(3)]

        workflow_service.bulk_reject(sup, ids, "Batch cleanup")

        entries = AuditLog.query.filter_by(action="bulk_rejected_points").all()
        assert len(entries) == 1
        assert entries[0].data["rejected_count"] == 3
        assert AuditLog.query.filter_by(action="rejected_point").count() == 0

    def test_bulk_reject_validates_reason_up_front(self, seed_data):
        ids = [_pending(seed_data["alice"], seed_data["bob"]).id]
        with pytest.raises(ValidationError):
            workflow_service.bulk_reject(seed_data["supervisor"], ids, "no")
        assert db.session.get(PointAssignment, ids[0]).status == "pending"

    def test_bulk_approve_counts_and_totals(self, seed_data):
        sup, bob = seed_data["supervisor"], seed_data["bob"]
        ids = [_pending(seed_data["alice"], bob, p).id for p in (2, 3, -1)]

        count = workflow_service.bulk_approve(sup, ids + ["unknown-id"])

        assert count == 3
        assert db.session.get(User, bob.id).total_verified_points == 4
        assert len(_queued_events()) == 3 + 3  # created + status changed

    def test_bulk_approve_requires_reviewer(self, seed_data):
        ids = [_pending(seed_data["alice"], seed_data["bob"]).id]
        with pytest.raises(Forbidden):
            workflow_service.bulk_approve(seed_data["alice"], ids)

    @pytest.mark.parametrize("ids", [None, [], "abc"])
    def test_bulk_approve_requires_id_list(self, seed_data, ids):
        with pytest.raises(ValidationError):
            workflow_service.bulk_approve(seed_data["supervisor"], ids)

    def test_bulk_approve_all_pending(self, seed_data):
        admin, bob = seed_data["admin"], seed_data["bob"]
        for points in (1, 2, 3):
            _pending(seed_data["alice"], bob, points)

        assert workflow_service.bulk_approve_all_pending(admin) == 3
        assert PointAssignment.query.filter_by(status="pending").count() == 0
        assert db.session.get(User, bob.id).total_verified_points == 6

    def test_bulk_approve_continues_after_row_failure(self, seed_data):
        sup, bob = seed_data["supervisor"], seed_data["bob"]
        ids = [_pending(seed_data["alice"], bob, 5).id for _ in range(3)]
        bus.clear()

        with patch.object(
            workflow_service, "_increment_total",
            side_effect=_fail_on_call(workflow_service._increment_total, 2),
        ):
            count = workflow_service.bulk_approve(sup, ids)

        assert count == 2
        assert db.session.get(User, bob.id).total_verified_points == 10
        statuses = sorted(db.session.get(PointAssignment, i).status for i in ids)
        assert statuses == ["pending", "verified", "verified"]
        failed_id = next(i for i in ids if db.session.get(PointAssignment, i).status == "pending")

        events = _queued_events()
        assert len(events) == 2
        assert failed_id not in {evt.assignment_id for evt in events}
        assert AuditLog.query.filter_by(action="bulk_approved_points").one().data["approved_count"] == 2

    def test_bulk_reject_continues_after_row_failure(self, seed_data):
        ids = [_pending(seed_data["alice"], seed_data["bob"]).id for _ in range(3)]
        bus.clear()

        with patch.object(
            workflow_service, "_transition",
            side_effect=_fail_on_call(workflow_service._transition, 2),
        ):
            count = workflow_service.bulk_reject(seed_data["supervisor"], ids, "Batch cleanup")

        assert count == 2
        statuses = sorted(db.session.get(PointAssignment, i).status for i in ids)
        assert statuses == ["pending", "rejected", "rejected"]
        assert len(_queued_events()) == 2

    def test_bulk_assign_continues_after_recipient_failure(self, seed_data):
        sup = seed_data["supervisor"]
        bus.clear()

        # recipients are processed by name: Alice Able, then Bob Baker
        with patch.object(
            workflow_service, "_increment_total",
            side_effect=_fail_on_call(workflow_service._increment_total, 2),
        ):
            count = workflow_service.bulk_assign_to_all(sup, 3, "Team offsite")

        assert count == 1
        assert db.session.get(User, seed_data["alice_id"]).total_verified_points == 3
        assert db.session.get(User, seed_data["bob_id"]).total_verified_points == 0
        assert PointAssignment.query.filter_by(recipient_id=seed_data["bob_id"]).count() == 0

        events = _queued_events()
        assert [type(evt) for evt in events] == [AssignmentCreated]
        entry = AuditLog.query.filter_by(action="bulk_assigned_points").one()
        assert entry.data["recipients_count"] == 1

    def test_bulk_assign_skips_admins_and_actor(self, seed_data):
        sup = seed_data["supervisor"]

        count = workflow_service.bulk_assign_to_all(sup, 2, "Team offsite")

        assert count == 2  # alice and bob
        rows = PointAssignment.query.all()
        assert {r.recipient_id for r in rows} == {seed_data["alice_id"], seed_data["bob_id"]}
        assert all(r.is_bulk_assignment and r.status == "verified" for r in rows)
        assert db.session.get(User, seed_data["alice_id"]).total_verified_points == 2
        assert db.session.get(User, seed_data["admin_id"]).total_verified_points == 0
        assert AuditLog.query.filter_by(action="bulk_assigned_points").count() == 1

    def test_bulk_assign_by_admin_includes_supervisors(self, seed_data):
        count = workflow_service.bulk_assign_to_all(seed_data["admin"], 1, "Holiday bonus")
        assert count == 3

    def test_bulk_assign_requires_reviewer(self, seed_data):
        with pytest.raises(Forbidden):
            workflow_service.bulk_assign_to_all(seed_data["alice"], 1, "Nope")


# ══════════════════════════════════════════════
#  ARCHIVE
# ══════════════════════════════════════════════

class TestArchive:
    def test_admin_archives_rejected(self, seed_data):
        admin = seed_data["admin"]
        assignment = _pending(seed_data["alice"], seed_data["bob"])
        workflow_service.reject_assignment(admin, assignment, "Wrong person")
        db.session.commit()

        workflow_service.archive_assignment(admin, assignment)
        db.session.commit()

        assert assignment.deleted_at is not None
        assert PointAssignment.active().count() == 0
        with pytest.raises(NotFound):
            workflow_service.get_assignment(assignment.id)

    def test_verified_rows_cannot_be_archived(self, seed_data):
        admin = seed_data["admin"]
        assignment = workflow_service.create_assignment(admin, seed_data["bob"].id, 5, "r")
        db.session.commit()
        with pytest.raises(InvalidState):
            workflow_service.archive_assignment(admin, assignment)

    def test_supervisor_cannot_archive(self, seed_data):
        assignment = _pending(seed_data["alice"], seed_data["bob"])
        with pytest.raises(Forbidden):
            workflow_service.archive_assignment(seed_data["supervisor"], assignment)


# ══════════════════════════════════════════════
#  INVARIANT
# ══════════════════════════════════════════════

class TestTotalsMatchLedger:
    def test_mixed_sequence_keeps_totals_consistent(self, seed_data):
        admin, sup = seed_data["admin"], seed_data["supervisor"]
        alice, bob = seed_data["alice"], seed_data["bob"]

        a1 = _pending(alice, bob, 5)
        a2 = _pending(bob, alice, -2)
        a3 = _pending(alice, bob, 7)
        workflow_service.create_assignment(sup, alice.id, 4, "Mentoring")
        workflow_service.approve_assignment(sup, a1)
        workflow_service.reject_assignment(admin, a3, "Not verified")
        workflow_service.approve_assignment(admin, a2)
        db.session.commit()
        workflow_service.bulk_assign_to_all(admin, -1, "Late timesheets")

        for user in User.query.all():
            assert user.total_verified_points == _verified_sum(user.id), user.email
        assert reporting_service.reconcile_totals(dry_run=True) == []

    def test_negative_totals_are_allowed(self, seed_data):
        workflow_service.create_assignment(seed_data["supervisor"], seed_data["bob"].id, -8, "r")
        db.session.commit()
        assert db.session.get(User, seed_data["bob_id"]).total_verified_points == -8
