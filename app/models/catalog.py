"""
Training Portal
Catalog domain models.

Models:
    - Theme: grouping of programs; prerequisite chains live inside a theme
    - TrainingProgram: a course made of ordered modules
    - Module: one step of a program (content, video, question, final quiz)
    - Checklist: a list of binary tasks
    - ChecklistItem: one ordered task of a checklist
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

PREREQUISITE_TYPES = {"none", "previous_auto", "previous_manual", "specific_courses"}
MODULE_TYPES = {"content_section", "video_section", "question", "final_quiz"}

DEFAULT_DEADLINE_DAYS = 14
DEFAULT_PASSING_SCORE = 80


class Theme(TenantModel):
    """Ordered grouping of training programs."""

    __tablename__ = "themes"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    order_index = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    programs = db.relationship(
        "TrainingProgram", back_populates="theme", lazy="dynamic",
        order_by="TrainingProgram.sort_order",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "description": self.description,
            "order_index": self.order_index,
            "program_count": self.programs.count(),
        }


class TrainingProgram(TenantModel):
    """
    A training course.

    Prerequisite gating:
        none             - always available once assigned
        previous_auto    - unlocks when the previous program of the theme is completed
        previous_manual  - waits for admin approval after the previous program is completed
        specific_courses - unlocks when every program in prerequisite_course_ids is completed
    """

    __tablename__ = "training_programs"

    id = db.Column(db.Integer, primary_key=True)
    theme_id = db.Column(
        db.Integer, db.ForeignKey("themes.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    instructor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    deadline_days = db.Column(db.Integer, default=DEFAULT_DEADLINE_DAYS, nullable=False)
    passing_score = db.Column(db.Integer, default=DEFAULT_PASSING_SCORE, nullable=False)
    badge_enabled = db.Column(db.Boolean, default=True, nullable=False)
    sort_order = db.Column(db.Integer, default=0, nullable=False)
    prerequisite_type = db.Column(db.String(30), default="none", nullable=False)
    prerequisite_course_ids = db.Column(db.JSON, default=list)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    theme = db.relationship("Theme", back_populates="programs")
    instructor = db.relationship("User", foreign_keys=[instructor_id])
    modules = db.relationship(
        "Module", back_populates="program", order_by="Module.order_index",
        cascade="all, delete-orphan",
    )

    @property
    def items(self):
        return self.modules

    def to_dict(self, include_modules=False):
        d = {
            "id": self.id,
            "company_id": self.company_id,
            "theme_id": self.theme_id,
            "title": self.title,
            "description": self.description,
            "instructor_id": self.instructor_id,
            "deadline_days": self.deadline_days,
            "passing_score": self.passing_score,
            "badge_enabled": self.badge_enabled,
            "sort_order": self.sort_order,
            "prerequisite_type": self.prerequisite_type,
            "prerequisite_course_ids": list(self.prerequisite_course_ids or []),
            "module_count": len(self.modules),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_modules:
            d["modules"] = [m.to_dict() for m in self.modules]
        return d

    def __repr__(self):
        return f"<TrainingProgram {self.id}: {self.title[:40]}>"


class Module(db.Model):
    """One ordered step of a training program. ``content`` shape depends on ``type``."""

    __tablename__ = "modules"

    id = db.Column(db.Integer, primary_key=True)
    program_id = db.Column(
        db.Integer, db.ForeignKey("training_programs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    type = db.Column(db.String(30), nullable=False, default="content_section")
    content = db.Column(db.JSON, default=dict)
    order_index = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    program = db.relationship("TrainingProgram", back_populates="modules")

    def to_dict(self):
        return {
            "id": self.id,
            "program_id": self.program_id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "content": self.content or {},
            "order_index": self.order_index,
        }


class Checklist(TenantModel):
    """A checklist: ordered items with binary completion."""

    __tablename__ = "checklists"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    checklist_items = db.relationship(
        "ChecklistItem", back_populates="checklist", order_by="ChecklistItem.order_index",
        cascade="all, delete-orphan",
    )

    @property
    def items(self):
        return self.checklist_items

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "company_id": self.company_id,
            "title": self.title,
            "description": self.description,
            "item_count": len(self.checklist_items),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.checklist_items]
        return d


class ChecklistItem(db.Model):
    __tablename__ = "checklist_items"

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.Integer, db.ForeignKey("checklists.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    order_index = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    checklist = db.relationship("Checklist", back_populates="checklist_items")

    def to_dict(self):
        return {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "title": self.title,
            "description": self.description,
            "order_index": self.order_index,
        }
