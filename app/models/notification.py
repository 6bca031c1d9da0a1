"""
Training Portal
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
    - NotificationPreference: per-user opt-outs for notification families
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {
    "assignment_created",
    "deadline_reminder",
    "course_completed",
    "course_updated",
    "achievement_unlocked",
    "system_announcement",
}


class Notification(TenantModel):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("idx_notifications_user_read", "user_id", "read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False, default="system_announcement")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    link = db.Column(db.String(500), nullable=True)

    # Read tracking
    read = db.Column(db.Boolean, default=False, nullable=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # "metadata" is reserved on declarative classes
    meta = db.Column("metadata", db.JSON, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "link": self.link,
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "metadata": self.meta or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"


class NotificationPreference(db.Model):
    """
    Per-user notification switches.

    A user without a row gets the defaults (everything on).
    """

    __tablename__ = "notification_preferences"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False,
    )
    email_notifications = db.Column(db.Boolean, default=True, nullable=False)
    deadline_reminders = db.Column(db.Boolean, default=True, nullable=False)
    assignment_notifications = db.Column(db.Boolean, default=True, nullable=False)

    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "email_notifications": self.email_notifications,
            "deadline_reminders": self.deadline_reminders,
            "assignment_notifications": self.assignment_notifications,
        }

    def __repr__(self):
        return f"<NotificationPreference user={self.user_id}>"
