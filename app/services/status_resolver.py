"""Status resolver.

``resolve`` turns an assignment, its progress rows, the current time and the
prerequisite state into the display status. It never touches the database
and never raises for gating; locked and pending are statuses, not errors.

Precedence:
    1. completed_at set               → completed (even when late)
    2. program gated by prerequisites → locked / pending
    3. due date in the past           → overdue (even with partial progress)
    4. any row past not_started       → in_progress
    5. otherwise                      → not_started

``load_prerequisite_state`` reads the prerequisite graph fresh on every call,
so completing a predecessor unlocks the next program without any write to
the gated assignment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.exceptions import PermissionDeniedError, ValidationError
from app.models import db
from app.models.assignment import ProgramAssignment
from app.models.audit import write_audit
from app.models.catalog import TrainingProgram
from app.models.company import User
from app.services import assignment_service
from app.services.helpers.scoped_queries import get_scoped
from app.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrerequisiteState:
    """Snapshot of a program assignment's gating inputs."""

    prerequisite_type: str = "none"
    prerequisites_met: bool = True
    predecessor_completed: bool = True
    unlocked: bool = False


NO_PREREQUISITES = PrerequisiteState()


def _is_program_assignment(assignment) -> bool:
    return getattr(assignment, "program_id", None) is not None


def resolve(assignment, progress_rows, now, prerequisite_state: PrerequisiteState | None = None) -> str:
    if assignment.completed_at is not None:
        return "completed"

    state = prerequisite_state or NO_PREREQUISITES
    if _is_program_assignment(assignment):
        ptype = state.prerequisite_type
        if ptype in ("previous_auto", "specific_courses") and not state.prerequisites_met:
            return "locked"
        if ptype == "previous_manual":
            if not state.predecessor_completed:
                return "locked"
            unlocked = state.unlocked or getattr(assignment, "status", None) == "available"
            if not unlocked:
                return "pending"

    due = as_utc(assignment.due_date)
    if due is not None and due < as_utc(now):
        return "overdue"

    if any(row.status != "not_started" for row in progress_rows):
        return "in_progress"

    return "not_started"


# ── Database-backed inputs ───────────────────────────────────────────────────


def previous_program(program):
    """The program of the same theme with the nearest lower sort_order, if any."""
    if program.theme_id is None:
        return None
    return (
        TrainingProgram.query_for_company(program.company_id)
        .filter(TrainingProgram.theme_id == program.theme_id)
        .filter(TrainingProgram.sort_order < program.sort_order)
        .order_by(TrainingProgram.sort_order.desc(), TrainingProgram.id.desc())
        .first()
    )


def _completion_of(program_id, user_id, company_id):
    """True / False for the user's assignment to ``program_id``; None when not assigned."""
    row = (
        ProgramAssignment.query_for_company(company_id)
        .filter_by(program_id=program_id, assigned_to_user_id=user_id)
        .first()
    )
    if row is None:
        return None
    return row.completed_at is not None


def load_prerequisite_state(assignment) -> PrerequisiteState:
    """Compute gating inputs for a user's program assignment.

    Prerequisite programs the user holds no assignment for are ignored.
    """
    program = assignment.program
    ptype = program.prerequisite_type or "none"
    user_id = assignment.assigned_to_user_id
    unlocked = assignment.status == "available"

    if ptype == "none" or user_id is None:
        return PrerequisiteState(prerequisite_type="none", unlocked=unlocked)

    if ptype in ("previous_auto", "previous_manual"):
        predecessor = previous_program(program)
        if predecessor is None:
            return PrerequisiteState(prerequisite_type="none", unlocked=unlocked)
        done = _completion_of(predecessor.id, user_id, assignment.company_id) is not False
        return PrerequisiteState(
            prerequisite_type=ptype,
            prerequisites_met=done,
            predecessor_completed=done,
            unlocked=unlocked,
        )

    met = all(
        _completion_of(pid, user_id, assignment.company_id) is not False
        for pid in (program.prerequisite_course_ids or [])
    )
    return PrerequisiteState(
        prerequisite_type=ptype,
        prerequisites_met=met,
        predecessor_completed=met,
        unlocked=unlocked,
    )


def resolve_assignment(kind, assignment, now=None) -> str:
    """Load rows and prerequisite state for ``assignment`` and resolve it."""
    kind = assignment_service.get_kind(kind)
    rows = assignment_service.progress_rows(kind, assignment)
    state = load_prerequisite_state(assignment) if kind.name == "program" else None
    return resolve(assignment, rows, now or utcnow(), state)


def unlock(assignment_id, *, company_id, actor_user_id):
    """Admin approval of a pending previous_manual program assignment.

    Raises:
        PermissionDeniedError: actor is not an admin of the company.
        ValidationError: the assignment is not pending.
    """
    actor = get_scoped(User, actor_user_id, company_id=company_id)
    if actor.role != "admin":
        raise PermissionDeniedError("Only admins can unlock programs", required_role="admin")

    assignment = get_scoped(ProgramAssignment, assignment_id, company_id=company_id)
    status = resolve_assignment("program", assignment)
    if status != "pending":
        raise ValidationError(
            f"Assignment {assignment_id} is {status}, only pending assignments can be unlocked",
            details={"status": status},
        )

    assignment.status = "available"
    write_audit(
        entity_type="program_assignment",
        entity_id=assignment.id,
        action="assignment.unlock",
        company_id=company_id,
        actor_user_id=actor_user_id,
        diff={"status": {"old": "pending", "new": "available"}},
    )
    db.session.commit()
    logger.info("Assignment %s unlocked by user %s", assignment_id, actor_user_id)
    return assignment
