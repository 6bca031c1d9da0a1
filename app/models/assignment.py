"""
Training Portal
Assignment & progress models.

Models:
    - ProgramAssignment / ChecklistAssignment: a recipient's claim on a target.
      Exactly one of assigned_to_user_id / assigned_to_department_id is set.
      Department rows are bookkeeping only; progress hangs off user rows.
    - UserProgress: per-module progress row of a program assignment
    - ChecklistItemStatus: per-item progress row of a checklist assignment
    - Badge: issued once per (user, program) on completion
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

# Stored assignment status. "available" marks a manually unlocked assignment.
ASSIGNMENT_STATUSES = {"assigned", "available", "completed"}
ITEM_STATUSES = {"not_started", "in_progress", "completed"}
DERIVED_STATUSES = {"not_started", "in_progress", "completed", "overdue", "locked", "pending"}


def _iso(value):
    return value.isoformat() if value else None


class AssignmentMixin:
    """Columns and helpers shared by program and checklist assignments."""

    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                            nullable=False)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(20), default="assigned", nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_auto_assigned = db.Column(db.Boolean, default=False, nullable=False)
    is_mandatory = db.Column(db.Boolean, default=True, nullable=False)
    notes = db.Column(db.Text)
    progress_percentage = db.Column(db.Integer, default=0, nullable=False)
    reminder_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_department_assignment(self) -> bool:
        return self.assigned_to_department_id is not None

    @property
    def recipient(self) -> tuple[str, int]:
        if self.assigned_to_user_id is not None:
            return "user", self.assigned_to_user_id
        return "department", self.assigned_to_department_id

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "assigned_to_user_id": self.assigned_to_user_id,
            "assigned_to_department_id": self.assigned_to_department_id,
            "assignment_type": self.recipient[0],
            "assigned_by": self.assigned_by,
            "assigned_at": _iso(self.assigned_at),
            "due_date": _iso(self.due_date),
            "status": self.status,
            "completed_at": _iso(self.completed_at),
            "is_auto_assigned": self.is_auto_assigned,
            "is_mandatory": self.is_mandatory,
            "notes": self.notes,
            "progress_percentage": self.progress_percentage,
        }


class ProgramAssignment(AssignmentMixin, TenantModel):
    __tablename__ = "program_assignments"
    __table_args__ = (
        db.CheckConstraint(
            "(assigned_to_user_id IS NULL) <> (assigned_to_department_id IS NULL)",
            name="ck_program_assignment_one_target",
        ),
        db.UniqueConstraint("program_id", "assigned_to_user_id", name="uq_program_assignment_user"),
        db.UniqueConstraint("program_id", "assigned_to_department_id", name="uq_program_assignment_dept"),
    )

    id = db.Column(db.Integer, primary_key=True)
    program_id = db.Column(
        db.Integer, db.ForeignKey("training_programs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    assigned_to_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    assigned_to_department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    program = db.relationship("TrainingProgram")

    @property
    def target_id(self) -> int:
        return self.program_id

    def to_dict(self):
        d = self._base_dict()
        d["kind"] = "program"
        d["program_id"] = self.program_id
        return d

    def __repr__(self):
        kind, rid = self.recipient
        return f"<ProgramAssignment {self.id}: program={self.program_id} {kind}={rid}>"


class ChecklistAssignment(AssignmentMixin, TenantModel):
    __tablename__ = "checklist_assignments"
    __table_args__ = (
        db.CheckConstraint(
            "(assigned_to_user_id IS NULL) <> (assigned_to_department_id IS NULL)",
            name="ck_checklist_assignment_one_target",
        ),
        db.UniqueConstraint("checklist_id", "assigned_to_user_id", name="uq_checklist_assignment_user"),
        db.UniqueConstraint("checklist_id", "assigned_to_department_id", name="uq_checklist_assignment_dept"),
    )

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.Integer, db.ForeignKey("checklists.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    assigned_to_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    assigned_to_department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    checklist = db.relationship("Checklist")

    @property
    def target_id(self) -> int:
        return self.checklist_id

    def to_dict(self):
        d = self._base_dict()
        d["kind"] = "checklist"
        d["checklist_id"] = self.checklist_id
        return d

    def __repr__(self):
        kind, rid = self.recipient
        return f"<ChecklistAssignment {self.id}: checklist={self.checklist_id} {kind}={rid}>"


class UserProgress(db.Model):
    """Progress of one learner on one module, tied to one program assignment."""

    __tablename__ = "user_progress"
    __table_args__ = (
        db.UniqueConstraint("assignment_id", "module_id", name="uq_user_progress_assignment_module"),
    )

    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("program_assignments.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    program_id = db.Column(
        db.Integer, db.ForeignKey("training_programs.id", ondelete="CASCADE"), nullable=False,
    )
    module_id = db.Column(db.Integer, db.ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)
    status = db.Column(db.String(20), default="not_started", nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    time_spent_minutes = db.Column(db.Integer, default=0, nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)

    # Quiz outcome
    score = db.Column(db.Integer, nullable=True)
    passed = db.Column(db.Boolean, nullable=True)
    questions_answered = db.Column(db.JSON, default=list)
    questions_correct = db.Column(db.Integer, default=0)
    questions_total = db.Column(db.Integer, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def item_id(self) -> int:
        return self.module_id

    def to_dict(self):
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "user_id": self.user_id,
            "program_id": self.program_id,
            "module_id": self.module_id,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "time_spent_minutes": self.time_spent_minutes,
            "attempts": self.attempts,
            "score": self.score,
            "passed": self.passed,
            "questions_correct": self.questions_correct,
            "questions_total": self.questions_total,
        }


class ChecklistItemStatus(db.Model):
    """Completion of one checklist item, tied to one checklist assignment."""

    __tablename__ = "checklist_item_status"
    __table_args__ = (
        db.UniqueConstraint("assignment_id", "item_id", name="uq_checklist_item_status_assignment_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("checklist_assignments.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    item_id = db.Column(db.Integer, db.ForeignKey("checklist_items.id", ondelete="CASCADE"), nullable=False)
    status = db.Column(db.String(20), default="not_started", nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes = db.Column(db.Text)

    def to_dict(self):
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "item_id": self.item_id,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
            "notes": self.notes,
        }


class Badge(db.Model):
    __tablename__ = "badges"
    __table_args__ = (
        db.UniqueConstraint("user_id", "program_id", name="uq_badge_user_program"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    program_id = db.Column(
        db.Integer, db.ForeignKey("training_programs.id", ondelete="CASCADE"), nullable=False,
    )
    earned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "program_id": self.program_id,
            "earned_at": _iso(self.earned_at),
        }
