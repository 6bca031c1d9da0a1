"""Progress tracker.

Records learner activity on modules and checklist items and keeps each
assignment's aggregate (progress_percentage, completed_at, status) in step
with its progress rows.

    start_item     not_started → in_progress (never resets started_at)
    complete_item  → completed; a failed final quiz stays in_progress
    set_checklist_item_status  free toggle for checklist items

Percentages are completed rows / all rows of the assignment. Items added
after assignment are backfilled onto uncompleted assignments, so the row
count always matches the items the learner still has to do.
"""
import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.assignment import ITEM_STATUSES, Badge
from app.models.audit import write_audit
from app.models.company import Company, User
from app.services import assignment_service, status_resolver
from app.services.helpers.scoped_queries import get_scoped
from app.services.module_content import QuizOutcome, grade_quiz, load_content
from app.services.notification import NotificationService
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

GATED_STATUSES = {"locked", "pending"}


@dataclass
class ItemUpdate:
    """Result of a start/complete call."""

    row: object
    assignment: object
    outcome: QuizOutcome | None = None
    assignment_completed: bool = False
    badge: Badge | None = None

    def to_dict(self) -> dict:
        return {
            "progress": self.row.to_dict(),
            "assignment": self.assignment.to_dict(),
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "assignment_completed": self.assignment_completed,
            "badge": self.badge.to_dict() if self.badge else None,
        }


# ── Internals ────────────────────────────────────────────────────────────────


def _percentage(done, total):
    if not total:
        return 0
    return (done * 200 + total) // (2 * total)


def _load_for_learner(kind, assignment_id, item_id, *, user_id, company_id):
    """Resolve assignment + item and check the learner may work on it."""
    assignment = get_scoped(kind.assignment_model, assignment_id, company_id=company_id)
    if assignment.assigned_to_user_id is None:
        raise ValidationError("Department assignments carry no progress")
    if assignment.assigned_to_user_id != user_id:
        raise ValidationError(
            "Only the assignee can record progress on this assignment",
            details={"assignment_id": assignment_id},
        )

    scope = {kind.target_fk: assignment.target_id}
    item = get_scoped(kind.item_model, item_id, **scope)

    if kind.name == "program":
        status = status_resolver.resolve_assignment(kind, assignment)
        if status in GATED_STATUSES:
            raise ValidationError(
                f"Program is {status}; complete its prerequisites first",
                details={"status": status},
            )
    return assignment, item


def _get_or_create_row(kind, assignment, item):
    row = (
        kind.progress_model.query
        .filter_by(assignment_id=assignment.id)
        .filter(getattr(kind.progress_model, kind.item_fk) == item.id)
        .first()
    )
    if row is None:
        row = kind.new_progress_row(assignment, item)
        db.session.add(row)
        db.session.flush()
    return row


def _check_module_sequence(assignment, module):
    rows = assignment_service.progress_rows("program", assignment)
    available = module_availability(assignment.program, rows)
    if not available.get(module.id, False):
        raise ValidationError(
            "Complete the previous module first",
            details={"module_id": module.id},
        )


def _recompute(kind, assignment) -> str | None:
    """Refresh the aggregate of ``assignment``.

    Returns "completed" when this call completed it, "reopened" when it
    reverted a completed assignment, else None. Does not commit.
    """
    rows = assignment_service.progress_rows(kind, assignment)
    total = len(rows)
    done = sum(1 for r in rows if r.status == "completed")
    assignment.progress_percentage = _percentage(done, total)

    if total and done == total:
        if assignment.completed_at is None:
            assignment.completed_at = utcnow()
            assignment.status = "completed"
            write_audit(
                entity_type=kind.audit_entity,
                entity_id=assignment.id,
                action="assignment.complete",
                company_id=assignment.company_id,
                actor_user_id=assignment.assigned_to_user_id,
            )
            return "completed"
        return None

    if assignment.completed_at is not None:
        assignment.completed_at = None
        reopened_as = "assigned"
        if kind.name == "program" and assignment.program.prerequisite_type == "previous_manual":
            reopened_as = "available"
        assignment.status = reopened_as
        return "reopened"
    return None


def issue_badge(user_id, program):
    """Create the (user, program) badge once. Returns (badge, created)."""
    existing = Badge.query.filter_by(user_id=user_id, program_id=program.id).first()
    if existing is not None:
        return existing, False
    badge = Badge(user_id=user_id, program_id=program.id)
    db.session.add(badge)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning("Concurrent badge issue for user %s program %s", user_id, program.id)
        return Badge.query.filter_by(user_id=user_id, program_id=program.id).first(), False
    logger.info("Badge issued: user=%s program=%s", user_id, program.id)
    return badge, True


def _after_program_completed(assignment):
    """Badge (create-once) and completion notifications for a finished program."""
    program = assignment.program
    company = db.session.get(Company, assignment.company_id)
    badge = None
    if program.badge_enabled and company is not None and company.badge_system_enabled:
        badge, created = issue_badge(assignment.assigned_to_user_id, program)
        if created:
            NotificationService.notify_achievement(
                badge=badge, company_id=assignment.company_id, program_title=program.title,
            )
    NotificationService.notify_course_completed(assignment=assignment, program=program)
    return badge


# ── Operations ───────────────────────────────────────────────────────────────


def start_item(kind, assignment_id, item_id, *, user_id, company_id) -> ItemUpdate:
    """Mark an item opened. Idempotent; completed rows are left as they are."""
    kind = assignment_service.get_kind(kind)
    assignment, item = _load_for_learner(kind, assignment_id, item_id, user_id=user_id, company_id=company_id)
    if kind.name == "program":
        _check_module_sequence(assignment, item)

    row = _get_or_create_row(kind, assignment, item)
    if row.status == "not_started":
        row.status = "in_progress"
    if row.started_at is None:
        row.started_at = utcnow()
    db.session.commit()
    return ItemUpdate(row=row, assignment=assignment)


def complete_item(kind, assignment_id, item_id, *, user_id, company_id, outcome=None,
                  time_spent_minutes=0) -> ItemUpdate:
    """Record completion of one item and propagate it to the assignment.

    ``outcome`` is a QuizOutcome or raw answers ``{question_id: index}``.
    Raw answers are graded against the module. A final quiz without a
    passing outcome stays in_progress with the attempt recorded; retries are
    unlimited.
    """
    kind = assignment_service.get_kind(kind)
    assignment, item = _load_for_learner(kind, assignment_id, item_id, user_id=user_id, company_id=company_id)

    try:
        minutes = max(0, int(time_spent_minutes or 0))
    except (TypeError, ValueError) as exc:
        raise ValidationError("time_spent_minutes must be an integer") from exc

    graded = None
    if kind.name == "program":
        _check_module_sequence(assignment, item)
        content = load_content(item)
        if isinstance(outcome, dict):
            graded = grade_quiz(content, outcome, passing_score=assignment.program.passing_score)
        elif isinstance(outcome, QuizOutcome):
            graded = outcome
        elif outcome is not None:
            raise ValidationError("outcome must be a QuizOutcome or an answers object")
        if item.type == "final_quiz" and graded is None:
            raise ValidationError("A final quiz needs answers", details={"answers": "required"})

    row = _get_or_create_row(kind, assignment, item)
    now = utcnow()
    if row.started_at is None:
        row.started_at = now
    if hasattr(row, "time_spent_minutes"):
        row.time_spent_minutes = (row.time_spent_minutes or 0) + minutes

    if graded is not None:
        row.attempts = (row.attempts or 0) + 1
        row.score = graded.score
        row.passed = graded.passed
        row.questions_answered = graded.questions_answered
        row.questions_correct = graded.correct_count
        row.questions_total = graded.total_count

    if kind.name == "program" and item.type == "final_quiz" and not graded.passed:
        if row.status != "completed":
            row.status = "in_progress"
        db.session.commit()
        logger.info(
            "Final quiz failed: assignment=%s module=%s score=%s attempt=%s",
            assignment.id, item.id, graded.score, row.attempts,
        )
        return ItemUpdate(row=row, assignment=assignment, outcome=graded)

    if row.status != "completed":
        row.status = "completed"
        row.completed_at = now
        if kind.name == "checklist":
            row.completed_by = user_id
    db.session.flush()

    transition = _recompute(kind, assignment)
    db.session.commit()

    update = ItemUpdate(row=row, assignment=assignment, outcome=graded,
                        assignment_completed=transition == "completed")
    if update.assignment_completed:
        logger.info("Assignment %s (%s) completed by user %s", assignment.id, kind.name, user_id)
        if kind.name == "program":
            update.badge = _after_program_completed(assignment)
    return update


def set_checklist_item_status(assignment_id, item_id, status, *, user_id, company_id, notes=None) -> ItemUpdate:
    """Set a checklist item to any item status; admins may act on anyone's checklist."""
    if status not in ITEM_STATUSES:
        raise ValidationError(
            f"Invalid status: {status}", details={"status": f"must be one of {sorted(ITEM_STATUSES)}"},
        )
    kind = assignment_service.CHECKLIST
    assignment = get_scoped(kind.assignment_model, assignment_id, company_id=company_id)
    if assignment.assigned_to_user_id is None:
        raise ValidationError("Department assignments carry no progress")
    actor = get_scoped(User, user_id, company_id=company_id)
    if assignment.assigned_to_user_id != user_id and not actor.is_admin:
        raise ValidationError("Only the assignee or an admin can update this checklist")
    item = get_scoped(kind.item_model, item_id, checklist_id=assignment.checklist_id)

    row = _get_or_create_row(kind, assignment, item)
    now = utcnow()
    row.status = status
    if status == "not_started":
        row.started_at = None
    elif row.started_at is None:
        row.started_at = now
    if status == "completed":
        if row.completed_at is None:
            row.completed_at = now
        row.completed_by = user_id
    else:
        row.completed_at = None
        row.completed_by = None
    if notes is not None:
        row.notes = notes
    db.session.flush()

    transition = _recompute(kind, assignment)
    db.session.commit()
    return ItemUpdate(row=row, assignment=assignment, assignment_completed=transition == "completed")


def module_availability(program, progress_rows) -> dict[int, bool]:
    """Sequential unlocking inside a program.

    The first module is always available; every later one once the module
    before it is completed.
    """
    by_module = {row.module_id: row for row in progress_rows}
    available = {}
    previous_done = True
    for module in sorted(program.modules, key=lambda m: (m.order_index, m.id)):
        available[module.id] = previous_done
        row = by_module.get(module.id)
        previous_done = row is not None and row.status == "completed"
    return available


# ── Item lifecycle ───────────────────────────────────────────────────────────


def backfill_new_item(kind, item) -> int:
    """Give every uncompleted user assignment of the item's target a row for ``item``."""
    kind = assignment_service.get_kind(kind)
    target_id = getattr(item, kind.target_fk)
    assignments = (
        kind.assignment_model.query
        .filter(kind.target_column == target_id)
        .filter(kind.assignment_model.assigned_to_user_id.isnot(None))
        .filter(kind.assignment_model.completed_at.is_(None))
        .all()
    )
    created = 0
    for assignment in assignments:
        exists = (
            kind.progress_model.query
            .filter_by(assignment_id=assignment.id)
            .filter(getattr(kind.progress_model, kind.item_fk) == item.id)
            .first()
        )
        if exists is None:
            db.session.add(kind.new_progress_row(assignment, item))
            created += 1
    db.session.flush()
    for assignment in assignments:
        _recompute(kind, assignment)
    db.session.commit()
    if created:
        logger.info("Backfilled %d progress rows for new %s item %s", created, kind.name, item.id)
    return created


def remove_item_progress(kind, item) -> list[int]:
    """Delete the progress rows of ``item`` and recompute affected assignments.

    Assignments that become fully complete are finished the usual way.
    Returns the ids of assignments completed by the removal. Call before
    deleting the item itself.
    """
    kind = assignment_service.get_kind(kind)
    column = getattr(kind.progress_model, kind.item_fk)
    assignment_ids = [
        r[0] for r in db.session.query(kind.progress_model.assignment_id).filter(column == item.id).all()
    ]
    kind.progress_model.query.filter(column == item.id).delete(synchronize_session=False)
    db.session.flush()

    completed = []
    for assignment_id in assignment_ids:
        assignment = db.session.get(kind.assignment_model, assignment_id)
        if assignment is None:
            continue
        if _recompute(kind, assignment) == "completed":
            completed.append(assignment)
    db.session.commit()

    for assignment in completed:
        if kind.name == "program":
            _after_program_completed(assignment)
    return [a.id for a in completed]


def get_assignment_detail(kind, assignment_id, *, user_id, company_id, is_admin=False) -> dict:
    """Assignment with its rows, derived status and (for programs) module availability."""
    kind = assignment_service.get_kind(kind)
    assignment = get_scoped(kind.assignment_model, assignment_id, company_id=company_id)
    if assignment.assigned_to_user_id != user_id and not is_admin:
        raise NotFoundError(resource=kind.assignment_model.__name__, resource_id=assignment_id)
    rows = assignment_service.progress_rows(kind, assignment)
    d = assignment.to_dict()
    d["derived_status"] = status_resolver.resolve_assignment(kind, assignment)
    d["items"] = [r.to_dict() for r in rows]
    if kind.name == "program":
        d["module_availability"] = {
            str(k): v for k, v in module_availability(assignment.program, rows).items()
        }
    return d
