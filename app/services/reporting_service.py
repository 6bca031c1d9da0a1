"""Reporting: admin dashboard statistics and the learner's own view.

Both surfaces derive statuses through ``status_resolver.resolve_assignment``
so an assignment is never reported one way to the admin and another way to
the learner.
"""
from collections import Counter

from app.models.company import Department, User
from app.services import assignment_service, status_resolver
from app.services.helpers.scoped_queries import get_scoped
from app.utils.helpers import as_utc, utcnow

STATUS_ORDER = ("overdue", "in_progress", "pending", "not_started", "locked", "completed")


def _target_of(kind_name, assignment):
    return assignment.program if kind_name == "program" else assignment.checklist


def _row(kind_name, assignment, status):
    target = _target_of(kind_name, assignment)
    due = as_utc(assignment.due_date)
    return {
        "kind": kind_name,
        "assignment_id": assignment.id,
        "target_id": target.id,
        "title": target.title,
        "status": status,
        "progress_percentage": assignment.progress_percentage or 0,
        "due_date": due.isoformat() if due else None,
        "is_auto_assigned": assignment.is_auto_assigned,
        "is_mandatory": assignment.is_mandatory,
    }


def my_learning(user_id, *, company_id, now=None):
    """All of the user's assignments, derived status included.

    Rows are ordered by status urgency, then due date, then title.
    """
    get_scoped(User, user_id, company_id=company_id)
    now = now or utcnow()

    rows = [
        _row(kind_name, a, status_resolver.resolve_assignment(kind_name, a, now))
        for kind_name, a in assignment_service.list_user_assignments(user_id, company_id=company_id)
    ]
    rows.sort(key=lambda r: (
        STATUS_ORDER.index(r["status"]),
        r["due_date"] is None,
        r["due_date"] or "",
        r["title"].lower(),
    ))
    counts = Counter(r["status"] for r in rows)
    return {
        "user_id": user_id,
        "total": len(rows),
        "by_status": {s: counts.get(s, 0) for s in STATUS_ORDER},
        "assignments": rows,
    }


def _user_rows(kind, company_id, department_id=None):
    model = kind.assignment_model
    q = model.query_for_company(company_id).filter(model.assigned_to_user_id.isnot(None))
    if department_id is not None:
        dept = get_scoped(Department, department_id, company_id=company_id)
        member_ids = dept.member_ids
        if not member_ids:
            return []
        q = q.filter(model.assigned_to_user_id.in_(member_ids))
    return q.order_by(model.id).all()


def dashboard_stats(company_id, *, department_id=None, now=None):
    """Company-wide (or one department's) assignment statistics.

    Returns per-kind status counts, completion rate and the overdue list.
    """
    now = now or utcnow()
    result = {"generated_at": now.isoformat(), "department_id": department_id, "kinds": {}}
    overdue = []

    for kind in assignment_service.KINDS.values():
        counts = Counter()
        for assignment in _user_rows(kind, company_id, department_id):
            status = status_resolver.resolve_assignment(kind, assignment, now)
            counts[status] += 1
            if status == "overdue":
                row = _row(kind.name, assignment, status)
                row["user_id"] = assignment.assigned_to_user_id
                overdue.append(row)

        total = sum(counts.values())
        result["kinds"][kind.name] = {
            "total": total,
            "by_status": {s: counts.get(s, 0) for s in STATUS_ORDER},
            "completion_rate": round(counts["completed"] / total * 100, 1) if total else 0.0,
        }

    overdue.sort(key=lambda r: (r["due_date"] or "", r["assignment_id"]))
    result["overdue"] = overdue
    result["active_learners"] = User.query_for_company(company_id).filter_by(is_active=True).count()
    return result
