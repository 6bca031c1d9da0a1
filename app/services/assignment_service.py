"""Assignment engine.

Keeps department membership, per-user assignments and per-item progress rows
consistent for both assignment kinds (programs and checklists).

Rules:
  - A department assignment is bookkeeping only; it fans out one
    auto-assigned user assignment per current member.
  - A user holds at most one assignment per target. Duplicate requests and
    lost insert races are reported as "already_assigned", never as errors.
  - An auto-assigned row is removed when no department of the user still
    holds an assignment to the same target. Whether a row is still justified
    is derived at removal time from the user's current departments; nothing
    records which department created it.
  - Direct (non-auto) rows are never touched by membership changes.

Transaction policy: every per-user step is its own commit unit. The
assignment row is committed before its progress rows are inserted, and
progress rows are only inserted for items that lack one, so a blind retry of
any operation converges on the same end state. Deletes go children-first.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.exceptions import ValidationError
from app.models import db
from app.models.assignment import (
    ChecklistAssignment, ChecklistItemStatus, ProgramAssignment, UserProgress,
)
from app.models.audit import write_audit
from app.models.catalog import DEFAULT_DEADLINE_DAYS, Checklist, ChecklistItem, Module, TrainingProgram
from app.models.company import Department, User, UserDepartment
from app.services.helpers.scoped_queries import get_scoped
from app.services.notification import NotificationService
from app.utils.helpers import parse_due_date, utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Assignment kinds
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AssignmentKind:
    """Table set backing one assignment kind."""

    name: str
    target_model: type
    item_model: type
    assignment_model: type
    progress_model: type
    target_fk: str
    item_fk: str

    @property
    def target_column(self):
        return getattr(self.assignment_model, self.target_fk)

    @property
    def audit_entity(self) -> str:
        return f"{self.name}_assignment"

    def new_progress_row(self, assignment, item):
        if self.name == "program":
            return UserProgress(
                assignment_id=assignment.id,
                user_id=assignment.assigned_to_user_id,
                program_id=assignment.program_id,
                module_id=item.id,
                status="not_started",
            )
        return ChecklistItemStatus(assignment_id=assignment.id, item_id=item.id, status="not_started")


PROGRAM = AssignmentKind(
    "program", TrainingProgram, Module, ProgramAssignment, UserProgress, "program_id", "module_id",
)
CHECKLIST = AssignmentKind(
    "checklist", Checklist, ChecklistItem, ChecklistAssignment, ChecklistItemStatus, "checklist_id", "item_id",
)
KINDS = {"program": PROGRAM, "checklist": CHECKLIST}


def get_kind(kind) -> AssignmentKind:
    if isinstance(kind, AssignmentKind):
        return kind
    try:
        return KINDS[kind]
    except KeyError:
        raise ValidationError(
            f"Unknown assignment kind: {kind}", details={"kind": f"must be one of {sorted(KINDS)}"},
        ) from None


# ═════════════════════════════════════════════════════════════════════════════
# Results
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class AssignmentResult:
    status: str  # created | already_assigned
    assignment: object | None = None
    user_id: int | None = None

    @property
    def created(self) -> bool:
        return self.status == "created"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "user_id": self.user_id,
            "assignment": self.assignment.to_dict() if self.assignment is not None else None,
        }


@dataclass
class DepartmentAssignmentResult:
    department_id: int
    department_assignment: object | None = None
    department_row_created: bool = False
    assigned_user_ids: list[int] = field(default_factory=list)
    already_assigned_user_ids: list[int] = field(default_factory=list)
    failed_user_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "department_id": self.department_id,
            "department_row_created": self.department_row_created,
            "assigned_user_ids": self.assigned_user_ids,
            "already_assigned_user_ids": self.already_assigned_user_ids,
            "failed_user_ids": self.failed_user_ids,
        }


@dataclass
class UnassignResult:
    removed_assignment_ids: list[int] = field(default_factory=list)
    removed_user_ids: list[int] = field(default_factory=list)
    preserved_user_ids: list[int] = field(default_factory=list)
    department_row_removed: bool = False

    @property
    def noop(self) -> bool:
        return not self.removed_assignment_ids and not self.department_row_removed

    def to_dict(self) -> dict:
        return {
            "removed_assignment_ids": self.removed_assignment_ids,
            "removed_user_ids": self.removed_user_ids,
            "preserved_user_ids": self.preserved_user_ids,
            "department_row_removed": self.department_row_removed,
        }


@dataclass
class BulkAssignResult:
    assigned_user_ids: set[int] = field(default_factory=set)
    already_assigned_user_ids: set[int] = field(default_factory=set)
    failed: list[dict] = field(default_factory=list)

    @property
    def summary(self) -> str:
        text = (
            f"{len(self.assigned_user_ids)} assigned, "
            f"{len(self.already_assigned_user_ids)} already had access"
        )
        if self.failed:
            labels = ", ".join(f"{f['recipient']} {f['id']}" for f in self.failed)
            text += f", could not process {labels}"
        return text

    def to_dict(self) -> dict:
        return {
            "assigned_user_ids": sorted(self.assigned_user_ids),
            "already_assigned_user_ids": sorted(self.already_assigned_user_ids),
            "failed": self.failed,
            "summary": self.summary,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Lookups
# ═════════════════════════════════════════════════════════════════════════════

def _find_user_assignment(kind, target_id, user_id):
    return (
        kind.assignment_model.query
        .filter(kind.target_column == target_id)
        .filter(kind.assignment_model.assigned_to_user_id == user_id)
        .first()
    )


def _find_department_assignment(kind, target_id, department_id):
    return (
        kind.assignment_model.query
        .filter(kind.target_column == target_id)
        .filter(kind.assignment_model.assigned_to_department_id == department_id)
        .first()
    )


def _user_department_ids(user_id) -> set[int]:
    rows = db.session.query(UserDepartment.department_id).filter_by(user_id=user_id).all()
    return {r[0] for r in rows}


def _is_justified(kind, target_id, user_id, *, exclude_department_id=None) -> bool:
    """True when another department of the user still holds an assignment to the target."""
    dept_ids = _user_department_ids(user_id)
    dept_ids.discard(exclude_department_id)
    if not dept_ids:
        return False
    return (
        kind.assignment_model.query
        .filter(kind.target_column == target_id)
        .filter(kind.assignment_model.assigned_to_department_id.in_(dept_ids))
        .first()
        is not None
    )


def progress_rows(kind, assignment):
    kind = get_kind(kind)
    return (
        kind.progress_model.query
        .filter_by(assignment_id=assignment.id)
        .order_by(kind.progress_model.id)
        .all()
    )


def _default_due_date(kind, target, assigned_at):
    if kind.name != "program":
        return None
    days = target.deadline_days or current_app.config.get("DEFAULT_DEADLINE_DAYS", DEFAULT_DEADLINE_DAYS)
    return assigned_at + timedelta(days=days)


# ═════════════════════════════════════════════════════════════════════════════
# Per-user fan-out
# ═════════════════════════════════════════════════════════════════════════════

def ensure_progress_rows(kind, assignment) -> int:
    """Insert a not_started progress row for every item lacking one. Returns rows created."""
    kind = get_kind(kind)
    existing = {
        getattr(row, kind.item_fk)
        for row in kind.progress_model.query.filter_by(assignment_id=assignment.id).all()
    }
    target = get_scoped(kind.target_model, assignment.target_id, company_id=assignment.company_id)
    created = 0
    for item in target.items:
        if item.id in existing:
            continue
        db.session.add(kind.new_progress_row(assignment, item))
        created += 1
    if created:
        db.session.commit()
    return created


def _fan_out_user(kind, target, user_id, *, company_id, assigned_by, due_date, notes,
                  is_mandatory, is_auto, notify) -> AssignmentResult:
    existing = _find_user_assignment(kind, target.id, user_id)
    if existing is not None:
        if existing.completed_at is None:
            # resume a fan-out that stopped between the two commits
            ensure_progress_rows(kind, existing)
        logger.debug("%s %s already assigned to user %s", kind.name, target.id, user_id)
        return AssignmentResult("already_assigned", existing, user_id)

    assigned_at = utcnow()
    assignment = kind.assignment_model(
        company_id=company_id,
        assigned_to_user_id=user_id,
        assigned_by=assigned_by,
        assigned_at=assigned_at,
        due_date=due_date or _default_due_date(kind, target, assigned_at),
        status="assigned",
        is_auto_assigned=is_auto,
        is_mandatory=is_mandatory,
        notes=notes,
        progress_percentage=0,
    )
    setattr(assignment, kind.target_fk, target.id)
    db.session.add(assignment)
    try:
        db.session.flush()
        write_audit(
            entity_type=kind.audit_entity,
            entity_id=assignment.id,
            action="assignment.auto_create" if is_auto else "assignment.create",
            company_id=company_id,
            actor_user_id=assigned_by,
            diff={"target_id": target.id, "user_id": user_id},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning(
            "Concurrent assignment of %s %s to user %s; treating as already assigned",
            kind.name, target.id, user_id,
        )
        return AssignmentResult("already_assigned", _find_user_assignment(kind, target.id, user_id), user_id)

    ensure_progress_rows(kind, assignment)

    if notify:
        NotificationService.notify_new_assignment(kind=kind.name, assignment=assignment, target_title=target.title)

    logger.info(
        "Assigned %s %s to user %s (auto=%s, assignment=%s)",
        kind.name, target.id, user_id, is_auto, assignment.id,
    )
    return AssignmentResult("created", assignment, user_id)


def _delete_assignment(kind, assignment, *, action, actor_user_id=None):
    """Children-first delete of one assignment in its own commit unit."""
    assignment_id = assignment.id
    kind.progress_model.query.filter_by(assignment_id=assignment_id).delete(synchronize_session=False)
    db.session.flush()
    write_audit(
        entity_type=kind.audit_entity,
        entity_id=assignment_id,
        action=action,
        company_id=assignment.company_id,
        actor_user_id=actor_user_id,
        diff={"target_id": assignment.target_id, "recipient": list(assignment.recipient)},
    )
    db.session.delete(assignment)
    db.session.commit()
    return assignment_id


# ═════════════════════════════════════════════════════════════════════════════
# Operations
# ═════════════════════════════════════════════════════════════════════════════

def assign_to_user(kind, target_id, user_id, *, company_id, assigned_by, due_date=None,
                   notes=None, is_mandatory=True, notify=True) -> AssignmentResult:
    """Directly assign a program/checklist to one user.

    Idempotent: an existing assignment (direct or auto) yields
    ``already_assigned`` and is left untouched.

    Raises:
        NotFoundError / CrossTenantError: target or user outside ``company_id``.
        ValidationError: malformed due date.
    """
    kind = get_kind(kind)
    target = get_scoped(kind.target_model, target_id, company_id=company_id)
    get_scoped(User, user_id, company_id=company_id)
    due = parse_due_date(due_date)

    return _fan_out_user(
        kind, target, user_id,
        company_id=company_id, assigned_by=assigned_by, due_date=due, notes=notes,
        is_mandatory=is_mandatory, is_auto=False, notify=notify,
    )


def assign_to_department(kind, target_id, department_id, *, company_id, assigned_by,
                         due_date=None, notes=None, notify=True) -> DepartmentAssignmentResult:
    """Assign a target to a department and fan out to its current members.

    Members who already hold any assignment to the target are reported as
    already assigned. A member whose fan-out hits a database error is
    reported in ``failed_user_ids``; the rest still proceed.
    """
    kind = get_kind(kind)
    target = get_scoped(kind.target_model, target_id, company_id=company_id)
    department = get_scoped(Department, department_id, company_id=company_id)
    due = parse_due_date(due_date)

    result = DepartmentAssignmentResult(department_id=department_id)

    dept_row = _find_department_assignment(kind, target.id, department_id)
    if dept_row is None:
        dept_row = kind.assignment_model(
            company_id=company_id,
            assigned_to_department_id=department_id,
            assigned_by=assigned_by,
            assigned_at=utcnow(),
            due_date=due,
            status="assigned",
            is_auto_assigned=False,
            notes=notes,
        )
        setattr(dept_row, kind.target_fk, target.id)
        db.session.add(dept_row)
        try:
            db.session.flush()
            write_audit(
                entity_type=kind.audit_entity,
                entity_id=dept_row.id,
                action="assignment.create",
                company_id=company_id,
                actor_user_id=assigned_by,
                diff={"target_id": target.id, "department_id": department_id},
            )
            db.session.commit()
            result.department_row_created = True
        except IntegrityError:
            db.session.rollback()
            logger.warning("Concurrent assignment of %s %s to department %s", kind.name, target_id, department_id)
            dept_row = _find_department_assignment(kind, target_id, department_id)
    result.department_assignment = dept_row

    for user_id in sorted(department.member_ids):
        try:
            outcome = _fan_out_user(
                kind, target, user_id,
                company_id=company_id,
                assigned_by=assigned_by,
                due_date=dept_row.due_date if dept_row is not None else due,
                notes=notes,
                is_mandatory=True,
                is_auto=True,
                notify=notify,
            )
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Fan-out of %s %s to user %s failed", kind.name, target_id, user_id)
            result.failed_user_ids.append(user_id)
            continue
        if outcome.created:
            result.assigned_user_ids.append(user_id)
        else:
            result.already_assigned_user_ids.append(user_id)

    logger.info(
        "Department %s assigned %s %s: %d assigned, %d already, %d failed",
        department_id, kind.name, target_id,
        len(result.assigned_user_ids), len(result.already_assigned_user_ids), len(result.failed_user_ids),
    )
    return result


def unassign(kind, target_id, *, company_id, user_id=None, department_id=None,
             actor_user_id=None) -> UnassignResult:
    """Remove a user's or a department's assignment to a target.

    Department removal deletes every auto-assigned member row that no other
    department of that member still justifies, then the department row
    itself. Direct rows are never removed this way. Unassigning something
    that is not assigned is a no-op.
    """
    kind = get_kind(kind)
    if (user_id is None) == (department_id is None):
        raise ValidationError("Provide exactly one of user_id or department_id")
    get_scoped(kind.target_model, target_id, company_id=company_id)

    result = UnassignResult()

    if user_id is not None:
        get_scoped(User, user_id, company_id=company_id)
        assignment = _find_user_assignment(kind, target_id, user_id)
        if assignment is None:
            logger.debug("Unassign %s %s from user %s: nothing to do", kind.name, target_id, user_id)
            return result
        result.removed_assignment_ids.append(
            _delete_assignment(kind, assignment, action="assignment.delete", actor_user_id=actor_user_id)
        )
        result.removed_user_ids.append(user_id)
        logger.info("Unassigned %s %s from user %s", kind.name, target_id, user_id)
        return result

    department = get_scoped(Department, department_id, company_id=company_id)
    dept_row = _find_department_assignment(kind, target_id, department_id)
    if dept_row is None:
        logger.debug("Unassign %s %s from department %s: nothing to do", kind.name, target_id, department_id)
        return result

    # Member rows go before the department row so an interrupted run can be repeated.
    for member_id in sorted(department.member_ids):
        assignment = _find_user_assignment(kind, target_id, member_id)
        if assignment is None or not assignment.is_auto_assigned:
            continue
        if _is_justified(kind, target_id, member_id, exclude_department_id=department_id):
            result.preserved_user_ids.append(member_id)
            continue
        result.removed_assignment_ids.append(
            _delete_assignment(kind, assignment, action="assignment.auto_remove", actor_user_id=actor_user_id)
        )
        result.removed_user_ids.append(member_id)

    result.removed_assignment_ids.append(
        _delete_assignment(kind, dept_row, action="assignment.delete", actor_user_id=actor_user_id)
    )
    result.department_row_removed = True

    logger.info(
        "Unassigned %s %s from department %s: removed users %s, preserved %s",
        kind.name, target_id, department_id, result.removed_user_ids, result.preserved_user_ids,
    )
    return result


# ── Membership hooks ─────────────────────────────────────────────────────────


def on_user_joins_department(user_id, department_id, *, company_id, notify=True) -> list[AssignmentResult]:
    """Fan out every department assignment of ``department_id`` to a new member."""
    get_scoped(User, user_id, company_id=company_id)
    get_scoped(Department, department_id, company_id=company_id)

    results = []
    for kind in KINDS.values():
        dept_rows = (
            kind.assignment_model.query_for_company(company_id)
            .filter_by(assigned_to_department_id=department_id)
            .order_by(kind.assignment_model.id)
            .all()
        )
        for row in dept_rows:
            target = get_scoped(kind.target_model, row.target_id, company_id=company_id)
            results.append(_fan_out_user(
                kind, target, user_id,
                company_id=company_id,
                assigned_by=row.assigned_by,
                due_date=row.due_date,
                notes=row.notes,
                is_mandatory=row.is_mandatory,
                is_auto=True,
                notify=notify,
            ))

    created = sum(1 for r in results if r.created)
    if results:
        logger.info("User %s joined department %s: %d new assignments", user_id, department_id, created)
    return results


def on_user_leaves_department(user_id, department_id, *, company_id) -> list[int]:
    """Remove auto-assignments no longer justified after ``user_id`` leaves ``department_id``.

    Returns the ids of removed assignments.
    """
    get_scoped(User, user_id, company_id=company_id)

    removed = []
    for kind in KINDS.values():
        target_ids = [
            r.target_id
            for r in kind.assignment_model.query_for_company(company_id)
            .filter_by(assigned_to_department_id=department_id)
            .all()
        ]
        for target_id in target_ids:
            assignment = _find_user_assignment(kind, target_id, user_id)
            if assignment is None or not assignment.is_auto_assigned:
                continue
            if _is_justified(kind, target_id, user_id, exclude_department_id=department_id):
                logger.debug("Keeping %s %s for user %s: still justified", kind.name, target_id, user_id)
                continue
            removed.append(_delete_assignment(kind, assignment, action="assignment.auto_remove"))

    if removed:
        logger.info("User %s left department %s: removed assignments %s", user_id, department_id, removed)
    return removed


def bulk_assign(kind, target_id, *, company_id, assigned_by, user_ids=(), department_ids=(),
                due_date=None, notes=None, notify=True) -> BulkAssignResult:
    """Assign a target to many users and departments and summarise the outcome.

    Every recipient is resolved before anything is written, so an unknown or
    foreign id fails the whole request with nothing applied.
    """
    kind = get_kind(kind)
    get_scoped(kind.target_model, target_id, company_id=company_id)
    for uid in user_ids:
        get_scoped(User, uid, company_id=company_id)
    for did in department_ids:
        get_scoped(Department, did, company_id=company_id)
    due = parse_due_date(due_date)

    result = BulkAssignResult()
    for did in department_ids:
        try:
            dept_result = assign_to_department(
                kind, target_id, did, company_id=company_id, assigned_by=assigned_by,
                due_date=due, notes=notes, notify=notify,
            )
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Bulk assign: department %s failed", did)
            result.failed.append({"recipient": "department", "id": did})
            continue
        result.assigned_user_ids.update(dept_result.assigned_user_ids)
        result.already_assigned_user_ids.update(dept_result.already_assigned_user_ids)
        result.failed.extend({"recipient": "user", "id": uid} for uid in dept_result.failed_user_ids)

    for uid in user_ids:
        try:
            outcome = assign_to_user(
                kind, target_id, uid, company_id=company_id, assigned_by=assigned_by,
                due_date=due, notes=notes, notify=notify,
            )
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Bulk assign: user %s failed", uid)
            result.failed.append({"recipient": "user", "id": uid})
            continue
        if outcome.created:
            result.assigned_user_ids.add(uid)
        elif uid not in result.assigned_user_ids:
            result.already_assigned_user_ids.add(uid)

    result.already_assigned_user_ids -= result.assigned_user_ids
    logger.info("Bulk assign %s %s: %s", kind.name, target_id, result.summary)
    return result


# ── Queries ──────────────────────────────────────────────────────────────────


def get_assignment(kind, assignment_id, *, company_id):
    kind = get_kind(kind)
    return get_scoped(kind.assignment_model, assignment_id, company_id=company_id)


def list_assignments_for_target(kind, target_id, *, company_id, include_departments=True):
    kind = get_kind(kind)
    get_scoped(kind.target_model, target_id, company_id=company_id)
    q = kind.assignment_model.query_for_company(company_id).filter(kind.target_column == target_id)
    if not include_departments:
        q = q.filter(kind.assignment_model.assigned_to_user_id.isnot(None))
    return q.order_by(kind.assignment_model.id).all()


def list_user_assignments(user_id, *, company_id, kind=None):
    """Return ``[(kind_name, assignment), ...]`` for one user, programs first."""
    get_scoped(User, user_id, company_id=company_id)
    kinds = [get_kind(kind)] if kind else list(KINDS.values())
    out = []
    for k in kinds:
        rows = (
            k.assignment_model.query_for_company(company_id)
            .filter_by(assigned_to_user_id=user_id)
            .order_by(k.assignment_model.assigned_at, k.assignment_model.id)
            .all()
        )
        out.extend((k.name, row) for row in rows)
    return out
