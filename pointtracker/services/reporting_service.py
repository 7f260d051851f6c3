"""Reporting service — read-only aggregates behind the dashboards.

Every query here excludes archived (soft-deleted) assignments. All sums
are computed in SQL and default to 0 when no rows match.

reconcile_totals() is the one writer: it recomputes the cached
users.total_verified_points from the ledger. It flushes but does NOT
commit — the caller commits.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone

from flask import current_app
from sqlalchemy import and_, desc, func, or_, select
from sqlalchemy.orm import joinedload

from pointtracker import permissions
from pointtracker.errors import ValidationError
from pointtracker.extensions import db
from pointtracker.models.audit import AuditLog
from pointtracker.models.point_assignment import AssignmentStatus, PointAssignment
from pointtracker.models.user import Role, User
from pointtracker.services import audit_service

logger = logging.getLogger(__name__)

PENDING = AssignmentStatus.PENDING.value
VERIFIED = AssignmentStatus.VERIFIED.value
REJECTED = AssignmentStatus.REJECTED.value

AUDIT_PAGE_SIZE = 50
LEADERBOARD_PERIODS = ("month", "quarter", "year")
TOP_PERFORMER_PERIODS = {
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "quarter": timedelta(days=91),
}


# ─── Helpers ───────────────────────────────────────────────

def _now():
    return datetime.now(timezone.utc)


def _as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value):
    return value.isoformat() if value else None


def _not_archived():
    return PointAssignment.deleted_at.is_(None)


def _sum_points(*criteria):
    return db.session.execute(
        select(func.coalesce(func.sum(PointAssignment.points), 0))
        .where(_not_archived(), *criteria)
    ).scalar_one()


def _count(*criteria):
    return db.session.execute(
        select(func.count(PointAssignment.id)).where(_not_archived(), *criteria)
    ).scalar_one()


def _with_people(query):
    return query.options(
        joinedload(PointAssignment.assignor),
        joinedload(PointAssignment.recipient),
    )


def _parse_date(value, field):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD).") from None


def _urgent_days():
    return current_app.config.get("URGENT_PENDING_DAYS", 3)


def _non_admins():
    return User.query.filter(User.role != Role.ADMIN.value)


# ─── Personal / dashboard views ────────────────────────────

def points_overview(user):
    """Verified vs pending points for the chart: system wide for admins."""
    if permissions.can_manage_users(user):
        scope = ()
    else:
        scope = (PointAssignment.recipient_id == user.id,)

    verified_points = _sum_points(PointAssignment.status == VERIFIED, *scope)
    pending_points = _sum_points(PointAssignment.status == PENDING, *scope)

    return {
        "verified_points": verified_points,
        "unverified_points": pending_points,
        "total_assignments": _count(*scope),
        "verified_count": _count(PointAssignment.status == VERIFIED, *scope),
        "pending_count": _count(PointAssignment.status == PENDING, *scope),
        "chart_data": {
            "labels": ["Verified Points", "Pending Points"],
            "datasets": [{
                "data": [verified_points, pending_points],
                "backgroundColor": ["#10B981", "#F59E0B"],
            }],
        },
    }


def dashboard_stats(user):
    """Summary counters for the /point-assignments/stats card."""
    stats = {
        "assigned_by_me": _count(PointAssignment.assignor_id == user.id),
        "received_by_me": _count(PointAssignment.recipient_id == user.id),
        "total_verified_points": user.total_verified_points or 0,
    }
    if permissions.can_manage_users(user):
        stats.update({
            "verified_points": _sum_points(PointAssignment.status == VERIFIED),
            "pending_points": _sum_points(PointAssignment.status == PENDING),
            "total_assignments": _count(),
            "total_users": User.query.count(),
            "pending_count": _count(PointAssignment.status == PENDING),
        })
    else:
        mine = PointAssignment.recipient_id == user.id
        stats.update({
            "verified_points": _sum_points(PointAssignment.status == VERIFIED, mine),
            "pending_points": _sum_points(PointAssignment.status == PENDING, mine),
        })
    return stats


def dashboard_data(user):
    return {
        "user": user.to_dict(),
        "verified_count": _count(
            PointAssignment.recipient_id == user.id,
            PointAssignment.status == VERIFIED,
        ),
    }


def assignments_given(user):
    return [
        a.to_dict()
        for a in _with_people(PointAssignment.active())
        .filter(PointAssignment.assignor_id == user.id)
        .order_by(PointAssignment.created_at.desc())
        .all()
    ]


def assignments_received(user):
    return [
        a.to_dict()
        for a in _with_people(PointAssignment.active())
        .filter(PointAssignment.recipient_id == user.id)
        .order_by(PointAssignment.created_at.desc())
        .all()
    ]


def point_logs(viewer):
    """Assignment log. Admins see everything, others what involves them.

    The viewer's own name is replaced with "You".
    """
    is_admin = permissions.can_manage_users(viewer)
    query = _with_people(PointAssignment.active())
    if not is_admin:
        query = query.filter(or_(
            PointAssignment.assignor_id == viewer.id,
            PointAssignment.recipient_id == viewer.id,
        ))

    logs = []
    for a in query.order_by(PointAssignment.created_at.desc()).all():
        if a.assignor_id == viewer.id:
            assignor_name = "You"
        else:
            assignor_name = a.assignor.name if a.assignor else "Unknown"
        if a.recipient_id == viewer.id:
            recipient_name = "You"
        else:
            recipient_name = a.recipient.name if a.recipient else "Unknown"

        logs.append({
            "id": a.id,
            "assignor_id": a.assignor_id,
            "recipient_id": a.recipient_id,
            "assignor_name": assignor_name,
            "recipient_name": recipient_name,
            "points": a.points,
            "reason": a.reason,
            "status": a.status,
            "created_at": _iso(a.created_at),
            "verified_at": _iso(a.verified_at),
            "is_admin_view": is_admin,
        })
    return logs


# ─── Review queue ──────────────────────────────────────────

def _urgency(days_pending, urgent_days):
    if days_pending >= urgent_days:
        return "urgent"
    if days_pending >= 1:
        return "attention"
    return "normal"


def pending_assignments(detailed=False):
    """Everything awaiting review, newest first.

    detailed adds days_pending and an urgency label (urgent once a row
    has waited URGENT_PENDING_DAYS days).
    """
    rows = (
        _with_people(PointAssignment.active())
        .filter(PointAssignment.status == PENDING)
        .order_by(PointAssignment.created_at.desc())
        .all()
    )
    if not detailed:
        return {
            "pending_assignments": [a.to_dict() for a in rows],
            "count": len(rows),
        }

    now = _now()
    urgent_days = _urgent_days()
    items = []
    for a in rows:
        created = _as_utc(a.created_at) or now
        days_pending = max((now - created).days, 0)
        item = a.to_dict()
        item["days_pending"] = days_pending
        item["urgency"] = _urgency(days_pending, urgent_days)
        items.append(item)

    return {
        "pending_assignments": items,
        "count": len(items),
        "urgent_count": sum(1 for i in items if i["urgency"] == "urgent"),
        "attention_count": sum(1 for i in items if i["urgency"] == "attention"),
    }


def _urgent_count():
    cutoff = _now() - timedelta(days=_urgent_days())
    return _count(
        PointAssignment.status == PENDING,
        PointAssignment.created_at < cutoff,
    )


# ─── Supervisor views ──────────────────────────────────────

def supervisor_stats(actor):
    week_ago = _now() - timedelta(weeks=1)
    average = db.session.execute(
        select(func.avg(User.total_verified_points)).where(User.role != Role.ADMIN.value)
    ).scalar()

    return {
        "totalTeamMembers": _non_admins().count(),
        "pendingReviews": _count(PointAssignment.status == PENDING),
        "approvedThisWeek": _count(
            PointAssignment.status == VERIFIED,
            PointAssignment.verified_at >= week_ago,
        ),
        "rejectedThisWeek": _count(
            PointAssignment.status == REJECTED,
            PointAssignment.verified_at >= week_ago,
        ),
        "averageTeamPoints": round(float(average or 0), 1),
        "urgentAssignments": _urgent_count(),
        "myAssignmentsThisWeek": _count(
            PointAssignment.assignor_id == actor.id,
            PointAssignment.created_at >= week_ago,
        ),
    }


def average_review_hours(actor, since=None):
    """Mean hours between creation and review for rows actor reviewed."""
    since = since or _now() - timedelta(days=30)
    rows = db.session.execute(
        select(PointAssignment.created_at, PointAssignment.verified_at).where(
            _not_archived(),
            PointAssignment.verified_by == actor.id,
            PointAssignment.verified_at.is_not(None),
            PointAssignment.verified_at >= since,
        )
    ).all()
    if not rows:
        return 0
    hours = [
        (_as_utc(verified_at) - _as_utc(created_at)).total_seconds() / 3600
        for created_at, verified_at in rows
        if created_at is not None
    ]
    if not hours:
        return 0
    return round(sum(hours) / len(hours), 1)


def activity_summary(actor):
    now = _now()
    week_ago = now - timedelta(weeks=1)
    month_ago = now - timedelta(days=30)

    recent = (
        _with_people(PointAssignment.active())
        .filter(PointAssignment.verified_by == actor.id)
        .order_by(PointAssignment.verified_at.desc())
        .limit(10)
        .all()
    )
    return {
        "points_assigned_this_week": _sum_points(
            PointAssignment.assignor_id == actor.id,
            PointAssignment.created_at >= week_ago,
        ),
        "points_approved_this_week": _sum_points(
            PointAssignment.verified_by == actor.id,
            PointAssignment.status == VERIFIED,
            PointAssignment.verified_at >= week_ago,
        ),
        "assignments_reviewed_this_month": _count(
            PointAssignment.verified_by == actor.id,
            PointAssignment.verified_at >= month_ago,
        ),
        "average_review_time": average_review_hours(actor, since=month_ago),
        "recent_reviews": [a.to_dict() for a in recent],
    }


def weekly_trends(days=7):
    """Verified points per calendar day (UTC) for the last `days` days."""
    today = _now().date()
    first_day = today - timedelta(days=days - 1)
    start = datetime.combine(first_day, time.min, tzinfo=timezone.utc)

    rows = db.session.execute(
        select(PointAssignment.created_at, PointAssignment.points).where(
            _not_archived(),
            PointAssignment.status == VERIFIED,
            PointAssignment.created_at >= start,
        )
    ).all()

    buckets = {first_day + timedelta(days=i): [] for i in range(days)}
    for created_at, points in rows:
        day = _as_utc(created_at).date()
        if day in buckets:
            buckets[day].append(points)

    return [
        {
            "date": day.isoformat(),
            "day": day.strftime("%a"),
            "total_points": sum(points),
            "assignments_count": len(points),
            "positive_points": sum(p for p in points if p > 0),
            "negative_points": sum(p for p in points if p < 0),
        }
        for day, points in buckets.items()
    ]


# ─── Users ─────────────────────────────────────────────────

def user_directory(viewer):
    """Users the viewer may pick as a recipient (admins see everyone)."""
    if permissions.can_manage_users(viewer):
        users = User.query.order_by(User.name).all()
        return [u.to_dict() for u in users]

    users = (
        User.query.filter(User.id != viewer.id, User.role != Role.ADMIN.value)
        .order_by(User.name)
        .all()
    )
    return [
        {"id": u.id, "name": u.name, "email": u.email, "role": u.role}
        for u in users
    ]


def search_users(viewer, term, limit=20):
    term = (term or "").strip()
    if len(term) < 2:
        raise ValidationError("Search query must be at least 2 characters.")
    pattern = f"%{term.lower()}%"
    users = (
        User.query.filter(
            User.id != viewer.id,
            or_(func.lower(User.name).like(pattern), func.lower(User.email).like(pattern)),
        )
        .order_by(User.name)
        .limit(limit)
        .all()
    )
    return [u.to_dict() for u in users]


def user_stats(target):
    received = PointAssignment.recipient_id == target.id
    given = PointAssignment.assignor_id == target.id
    verified = PointAssignment.status == VERIFIED
    return {
        "user_id": target.id,
        "total_verified_points": target.total_verified_points or 0,
        "points_given": _sum_points(given, verified),
        "points_received": _sum_points(received, verified),
        "pending_points": _sum_points(received, PointAssignment.status == PENDING),
        "assignments_given_count": _count(given),
        "assignments_received_count": _count(received),
        "positive_points_received": _sum_points(received, verified, PointAssignment.points > 0),
        "negative_points_received": _sum_points(received, verified, PointAssignment.points < 0),
    }


def user_activity(target):
    """Admin drill-down: counts, recent assignments and audit entries."""
    recent = (
        _with_people(PointAssignment.active())
        .filter(or_(
            PointAssignment.assignor_id == target.id,
            PointAssignment.recipient_id == target.id,
        ))
        .order_by(PointAssignment.created_at.desc())
        .limit(10)
        .all()
    )
    audit_entries = (
        AuditLog.query.options(joinedload(AuditLog.user))
        .filter(or_(
            AuditLog.user_id == target.id,
            AuditLog.data["target_user_id"].as_string() == target.id,
        ))
        .order_by(AuditLog.created_at.desc())
        .limit(10)
        .all()
    )
    user = target.to_dict(include_private=True)
    return {
        "user": user,
        "points_given": _count(PointAssignment.assignor_id == target.id),
        "points_received": _count(PointAssignment.recipient_id == target.id),
        "pending_assignments": _count(
            PointAssignment.recipient_id == target.id,
            PointAssignment.status == PENDING,
        ),
        "recent_assignments": [a.to_dict() for a in recent],
        "audit_entries": [entry.to_dict() for entry in audit_entries],
    }


def top_performers(limit=10, period="all"):
    """Non-admin users by verified total.

    With a period, only users who received verified points in it qualify.
    """
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        raise ValidationError("limit must be a number.") from None
    if not 1 <= limit <= 100:
        raise ValidationError("limit must be between 1 and 100.")
    if period != "all" and period not in TOP_PERFORMER_PERIODS:
        raise ValidationError(f"Unknown period: {period}")

    query = _non_admins()
    if period != "all":
        since = _now() - TOP_PERFORMER_PERIODS[period]
        query = query.filter(
            select(PointAssignment.id)
            .where(
                PointAssignment.recipient_id == User.id,
                PointAssignment.status == VERIFIED,
                _not_archived(),
                PointAssignment.created_at >= since,
            )
            .exists()
        )

    users = query.order_by(User.total_verified_points.desc(), User.name).limit(limit).all()
    return {
        "top_performers": [u.to_dict() for u in users],
        "period": period,
        "limit": limit,
    }


def _period_start(period, now):
    if period == "quarter":
        first_month = 3 * ((now.month - 1) // 3) + 1
        return now.replace(month=first_month, day=1, hour=0, minute=0, second=0, microsecond=0)
    if period == "year":
        return now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def leaderboard(period="month", start_date=None, end_date=None):
    """Verified points received per user inside a window.

    An explicit start_date/end_date pair wins over period; passing only
    one of them is a ValidationError. Mailboxes in
    LEADERBOARD_EXCLUDED_EMAILS never appear.
    """
    start = _parse_date(start_date, "start_date")
    end = _parse_date(end_date, "end_date")
    now = _now()

    if bool(start) != bool(end):
        raise ValidationError("start_date and end_date must be given together.")

    if start and end:
        start = datetime.combine(start.date(), time.min, tzinfo=timezone.utc)
        end = datetime.combine(end.date(), time.max, tzinfo=timezone.utc)
        if start > end:
            raise ValidationError("start_date must be before end_date.")
    else:
        if period not in LEADERBOARD_PERIODS:
            period = "month"
        start = _period_start(period, now)
        end = datetime.combine(now.date(), time.max, tzinfo=timezone.utc)

    excluded = [
        e.lower() for e in current_app.config.get("LEADERBOARD_EXCLUDED_EMAILS", [])
    ]
    total = func.coalesce(func.sum(PointAssignment.points), 0).label("total_points")

    query = (
        db.session.query(User.id, User.name, total)
        .outerjoin(
            PointAssignment,
            and_(
                PointAssignment.recipient_id == User.id,
                PointAssignment.status == VERIFIED,
                _not_archived(),
                PointAssignment.created_at >= start,
                PointAssignment.created_at <= end,
            ),
        )
        .group_by(User.id, User.name)
        .order_by(desc("total_points"), User.name)
    )
    if excluded:
        query = query.filter(func.lower(User.email).notin_(excluded))

    return [
        {"id": user_id, "name": name, "total_points": int(points or 0)}
        for user_id, name, points in query.all()
    ]


# ─── Admin views ───────────────────────────────────────────

def admin_stats():
    verified = PointAssignment.status == VERIFIED
    pending = PointAssignment.status == PENDING
    recent = (
        _with_people(PointAssignment.active())
        .order_by(PointAssignment.created_at.desc())
        .limit(10)
        .all()
    )
    return {
        "totalUsers": User.query.count(),
        "totalSupervisors": User.query.filter_by(role=Role.SUPERVISOR.value).count(),
        "totalPendingPoints": _count(pending),
        "totalPointsAssigned": _sum_points(verified),
        "totalPositivePoints": _sum_points(verified, PointAssignment.points > 0),
        "totalNegativePoints": _sum_points(verified, PointAssignment.points < 0),
        "verifiedUsers": User.query.filter(User.email_verified_at.is_not(None)).count(),
        "unverifiedUsers": User.query.filter(User.email_verified_at.is_(None)).count(),
        "verifiedPoints": _sum_points(verified),
        "unverifiedPoints": _sum_points(pending),
        "recentActivity": [a.to_dict() for a in recent],
    }


def _recent_audit(action, limit=5):
    entries = (
        AuditLog.query.options(joinedload(AuditLog.user))
        .filter_by(action=action)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return [entry.to_dict() for entry in entries]


def system_overview():
    now = _now()
    top = _non_admins().order_by(User.total_verified_points.desc()).limit(5).all()
    return {
        "users_by_role": {
            "admins": User.query.filter_by(role=Role.ADMIN.value).count(),
            "supervisors": User.query.filter_by(role=Role.SUPERVISOR.value).count(),
            "users": User.query.filter_by(role=Role.USER.value).count(),
        },
        "verification_status": {
            "verified": User.query.filter(User.email_verified_at.is_not(None)).count(),
            "unverified": User.query.filter(User.email_verified_at.is_(None)).count(),
        },
        "points_summary": {
            "total_verified": _sum_points(PointAssignment.status == VERIFIED),
            "total_pending": _sum_points(PointAssignment.status == PENDING),
            "total_rejected": _count(PointAssignment.status == REJECTED),
            "assignments_this_week": _count(
                PointAssignment.created_at >= now - timedelta(weeks=1)
            ),
            "assignments_this_month": _count(
                PointAssignment.created_at >= now - timedelta(days=30)
            ),
        },
        "top_performers": [u.to_dict() for u in top],
        "recent_role_changes": _recent_audit(audit_service.ROLE_CHANGED),
        "recent_deletions": _recent_audit(audit_service.USER_DELETED),
        "urgent_assignments": _urgent_count(),
    }


def _counts_by(column, *criteria):
    rows = db.session.execute(
        select(column, func.count(PointAssignment.id))
        .where(_not_archived(), *criteria)
        .group_by(column)
    ).all()
    return {key: count for key, count in rows}


def user_reports():
    """Every user with given/received/verified/pending counts."""
    given = _counts_by(PointAssignment.assignor_id)
    received = _counts_by(PointAssignment.recipient_id)
    verified = _counts_by(PointAssignment.recipient_id, PointAssignment.status == VERIFIED)
    pending = _counts_by(PointAssignment.recipient_id, PointAssignment.status == PENDING)

    report = []
    for user in User.query.order_by(User.total_verified_points.desc(), User.name).all():
        row = user.to_dict(include_private=True)
        row.update({
            "points_given_count": given.get(user.id, 0),
            "points_received_count": received.get(user.id, 0),
            "verified_points_count": verified.get(user.id, 0),
            "pending_points_count": pending.get(user.id, 0),
        })
        report.append(row)
    return report


def users_by_role(role=None):
    if role is not None and not permissions.is_valid_role(role):
        raise ValidationError(f"Invalid role: {role}")
    query = User.query.order_by(User.name)
    if role:
        query = query.filter_by(role=role)
    users = [u.to_dict(include_private=True) for u in query.all()]
    return {
        "admins": [u for u in users if u["role"] == Role.ADMIN.value],
        "supervisors": [u for u in users if u["role"] == Role.SUPERVISOR.value],
        "users": [u for u in users if u["role"] == Role.USER.value],
        "total_count": len(users),
    }


# ─── Audit log views ───────────────────────────────────────

def recent_audit_logs(viewer, limit=10):
    """Entries the viewer performed or that credited/debited them."""
    entries = (
        AuditLog.query.options(joinedload(AuditLog.user))
        .filter(or_(
            AuditLog.user_id == viewer.id,
            AuditLog.data["recipient_id"].as_string() == viewer.id,
        ))
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return [entry.to_dict() for entry in entries]


def audit_logs(action=None, from_date=None, to_date=None, page=1, per_page=AUDIT_PAGE_SIZE):
    """Paginated, newest first, optionally filtered by action and date range."""
    start = _parse_date(from_date, "from_date")
    end = _parse_date(to_date, "to_date")

    stmt = (
        select(AuditLog)
        .options(joinedload(AuditLog.user))
        .order_by(AuditLog.created_at.desc())
    )
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if start:
        stmt = stmt.where(AuditLog.created_at >= start)
    if end:
        if end.time() == time.min:
            end = datetime.combine(end.date(), time.max)
        stmt = stmt.where(AuditLog.created_at <= end)

    pagination = db.paginate(stmt, page=page, per_page=per_page, error_out=False)
    return {
        "data": [entry.to_dict() for entry in pagination.items],
        "page": pagination.page,
        "per_page": pagination.per_page,
        "total": pagination.total,
        "pages": pagination.pages,
    }


# ─── Reconciliation ────────────────────────────────────────

def reconcile_totals(dry_run=False):
    """Recompute each user's verified total from the ledger.

    Returns:
        list of {user_id, email, recorded, expected, drift} for every user
        whose cached total disagreed. With dry_run the totals are left
        alone; otherwise they are corrected and one audit entry is written.
    """
    expected = dict(db.session.execute(
        select(PointAssignment.recipient_id, func.sum(PointAssignment.points))
        .where(PointAssignment.status == VERIFIED)
        .group_by(PointAssignment.recipient_id)
    ).all())

    drifted = []
    for user in User.query.order_by(User.email).all():
        should_be = int(expected.get(user.id) or 0)
        recorded = user.total_verified_points or 0
        if recorded == should_be:
            continue
        drifted.append({
            "user_id": user.id,
            "email": user.email,
            "recorded": recorded,
            "expected": should_be,
            "drift": recorded - should_be,
        })
        if not dry_run:
            user.total_verified_points = should_be

    if drifted:
        logger.warning(f"Total drift found for {len(drifted)} user(s)")
    if drifted and not dry_run:
        db.session.flush()
        audit_service.record(
            None,
            audit_service.TOTALS_RECONCILED,
            {"corrected": drifted},
        )
    return drifted
