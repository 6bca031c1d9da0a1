"""
Training Portal
Notification Service.

Central service for creating, querying and pushing in-app notifications.

Push model: callers ``subscribe(user_id, callback)``; every notification row
inserted for that user is handed to the callback as a dict once the
inserting transaction commits. Rolled-back rows are never pushed.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import event
from sqlalchemy.orm import Session

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.notification import NOTIFICATION_TYPES, Notification, NotificationPreference

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_notifications"

_subscribers: dict[int, list[Callable[[dict], None]]] = {}
_subscribers_lock = threading.Lock()


# ── Commit hooks ─────────────────────────────────────────────────────────────

@event.listens_for(Session, "after_commit")
def _dispatch_after_commit(session):
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    for payload in pending:
        with _subscribers_lock:
            callbacks = list(_subscribers.get(payload["user_id"], ()))
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception("Notification subscriber failed for user %s", payload["user_id"])


@event.listens_for(Session, "after_soft_rollback")
def _discard_after_rollback(session, previous_transaction):
    session.info.pop(_PENDING_KEY, None)


def _queue_for_dispatch(notif):
    db.session.info.setdefault(_PENDING_KEY, []).append(notif.to_dict())


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Subscribe ─────────────────────────────────────────────────────────

    @staticmethod
    def subscribe(user_id, callback):
        """Register ``callback`` for new notifications of ``user_id``.

        Returns:
            A zero-argument function that removes the subscription.
        """
        with _subscribers_lock:
            _subscribers.setdefault(user_id, []).append(callback)

        def unsubscribe():
            with _subscribers_lock:
                callbacks = _subscribers.get(user_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    _subscribers.pop(user_id, None)

        return unsubscribe

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def _build(*, company_id, user_id, title, message="", type="system_announcement",
               link=None, metadata=None):
        if type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Invalid notification type: {type}")
        if not title:
            raise ValidationError("Notification title is required", details={"title": "required"})
        return Notification(
            company_id=company_id,
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            link=link,
            meta=metadata or {},
        )

    @staticmethod
    def create(*, company_id, user_id, title, message="", type="system_announcement",
               link=None, metadata=None, commit=True):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (committed unless commit=False).
        """
        notif = NotificationService._build(
            company_id=company_id, user_id=user_id, title=title, message=message,
            type=type, link=link, metadata=metadata,
        )
        db.session.add(notif)
        db.session.flush()
        _queue_for_dispatch(notif)
        if commit:
            db.session.commit()
        return notif

    @staticmethod
    def create_bulk(items, *, commit=True):
        """
        Insert many notifications in one transaction.

        Args:
            items: iterable of dicts with the keyword arguments of ``create``.

        Returns:
            List of created Notification instances.
        """
        notifications = [NotificationService._build(**item) for item in items]
        if not notifications:
            return []
        db.session.add_all(notifications)
        db.session.flush()
        for notif in notifications:
            _queue_for_dispatch(notif)
        if commit:
            db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, *, company_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a user, newest first."""
        q = Notification.query_for_company(company_id).filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id, *, company_id):
        return Notification.query_for_company(company_id).filter_by(user_id=user_id, read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def _get_own(notification_id, user_id, company_id):
        notif = (
            Notification.query_for_company(company_id)
            .filter_by(id=notification_id, user_id=user_id)
            .first()
        )
        if notif is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        return notif

    @staticmethod
    def mark_read(notification_id, *, user_id, company_id):
        """Mark a single notification of ``user_id`` as read."""
        notif = NotificationService._get_own(notification_id, user_id, company_id)
        if not notif.read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id, *, company_id):
        """Mark all notifications for a user as read. Returns the number changed."""
        now = datetime.now(timezone.utc)
        count = (
            Notification.query_for_company(company_id)
            .filter_by(user_id=user_id, read=False)
            .update({"read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count

    @staticmethod
    def delete(notification_id, *, user_id, company_id):
        notif = NotificationService._get_own(notification_id, user_id, company_id)
        db.session.delete(notif)
        db.session.commit()

    # ── Preferences ───────────────────────────────────────────────────────

    @staticmethod
    def get_preferences(user_id):
        """Return the user's preference row, or an unsaved row with defaults."""
        pref = NotificationPreference.query.filter_by(user_id=user_id).first()
        if pref is None:
            pref = NotificationPreference(
                user_id=user_id,
                email_notifications=True,
                deadline_reminders=True,
                assignment_notifications=True,
            )
        return pref

    @staticmethod
    def update_preferences(user_id, data):
        pref = NotificationPreference.query.filter_by(user_id=user_id).first()
        if pref is None:
            pref = NotificationService.get_preferences(user_id)
            db.session.add(pref)
        for field in ("email_notifications", "deadline_reminders", "assignment_notifications"):
            if field in data:
                setattr(pref, field, bool(data[field]))
        db.session.commit()
        return pref

    @staticmethod
    def _log_email_intent(user_id, pref, subject):
        # No mail transport; the intent is logged for the ops pipeline.
        if pref.email_notifications:
            logger.info("Email queued for user=%s: %s", user_id, subject)

    # ── Domain helpers ────────────────────────────────────────────────────

    @staticmethod
    def notify_new_assignment(*, kind, assignment, target_title, commit=True):
        """Tell the assignee about a new program/checklist. Honours preferences."""
        user_id = assignment.assigned_to_user_id
        pref = NotificationService.get_preferences(user_id)
        if not pref.assignment_notifications:
            logger.debug("Assignment notification suppressed for user=%s", user_id)
            return None

        due = assignment.due_date.date().isoformat() if assignment.due_date else None
        message = f"You have been assigned '{target_title}'."
        if due:
            message += f" Due date: {due}."
        notif = NotificationService.create(
            company_id=assignment.company_id,
            user_id=user_id,
            type="assignment_created",
            title=f"New {kind}: {target_title}",
            message=message,
            link=f"/{kind}s/{assignment.target_id}",
            metadata={"kind": kind, "assignment_id": assignment.id, "target_id": assignment.target_id},
            commit=commit,
        )
        NotificationService._log_email_intent(user_id, pref, notif.title)
        return notif

    @staticmethod
    def notify_course_completed(*, assignment, program, commit=True):
        user_id = assignment.assigned_to_user_id
        return NotificationService.create(
            company_id=assignment.company_id,
            user_id=user_id,
            type="course_completed",
            title=f"Completed: {program.title}",
            message=f"Congratulations! You have completed '{program.title}'.",
            link=f"/programs/{program.id}",
            metadata={"assignment_id": assignment.id, "program_id": program.id},
            commit=commit,
        )

    @staticmethod
    def notify_achievement(*, badge, company_id, program_title, commit=True):
        return NotificationService.create(
            company_id=company_id,
            user_id=badge.user_id,
            type="achievement_unlocked",
            title="New badge earned",
            message=f"You earned a badge for completing '{program_title}'.",
            link="/my-learning",
            metadata={"badge_id": badge.id, "program_id": badge.program_id},
            commit=commit,
        )

    @staticmethod
    def notify_deadline_reminder(*, kind, assignment, target_title, days_left, commit=True):
        """Reminder (days_left >= 1) or overdue notice (days_left < 0) for one assignee.

        Returns None when the user has switched deadline reminders off.
        """
        user_id = assignment.assigned_to_user_id
        pref = NotificationService.get_preferences(user_id)
        if not pref.deadline_reminders:
            logger.debug("Deadline reminder suppressed for user=%s", user_id)
            return None

        if days_left < 0:
            title = f"Overdue: {target_title}"
            message = f"The deadline for '{target_title}' has passed."
        elif days_left == 1:
            title = f"Due tomorrow: {target_title}"
            message = f"'{target_title}' is due tomorrow."
        else:
            title = f"Due in {days_left} days: {target_title}"
            message = f"'{target_title}' is due in {days_left} days."

        notif = NotificationService.create(
            company_id=assignment.company_id,
            user_id=user_id,
            type="deadline_reminder",
            title=title,
            message=message,
            link=f"/{kind}s/{assignment.target_id}",
            metadata={
                "kind": kind,
                "assignment_id": assignment.id,
                "days_left": days_left,
                "overdue": days_left < 0,
            },
            commit=commit,
        )
        NotificationService._log_email_intent(user_id, pref, title)
        return notif
