"""
Training Portal
Scheduled Jobs.

Concrete job implementations triggered by the external cron.

Jobs:
    - deadline_reminders: 7/3/1-day reminders and overdue notices for
      uncompleted user assignments, plus per-program aggregates for instructors
    - stale_notification_cleanup: deletes old read notifications
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any

from app.models import db
from app.models.company import User
from app.models.notification import Notification
from app.services.assignment_service import KINDS
from app.services.notification import NotificationService
from app.services.scheduler_service import register_job
from app.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


def _open_user_assignments(kind):
    model = kind.assignment_model
    return (
        model.query
        .filter(model.assigned_to_user_id.isnot(None))
        .filter(model.completed_at.is_(None))
        .filter(model.due_date.isnot(None))
        .order_by(model.id)
        .all()
    )


def _notify_instructors(aggregates, results):
    """One notification per (instructor, program, days_left) bucket."""
    for (instructor_id, program_id, days_left), entry in sorted(aggregates.items()):
        instructor = User.query.filter_by(id=instructor_id, company_id=entry["company_id"]).first()
        if instructor is None or not instructor.is_active:
            continue
        if not NotificationService.get_preferences(instructor_id).deadline_reminders:
            continue
        count = len(entry["user_ids"])
        title = entry["title"]
        if days_left < 0:
            heading = f"{count} learner(s) overdue: {title}"
            message = f"{count} learner(s) have not completed '{title}' before the deadline."
        else:
            heading = f"{count} learner(s) due in {days_left} day(s): {title}"
            message = f"{count} learner(s) still have to complete '{title}' within {days_left} day(s)."
        NotificationService.create(
            company_id=entry["company_id"],
            user_id=instructor_id,
            type="deadline_reminder",
            title=heading,
            message=message,
            link=f"/instructor/programs/{program_id}",
            metadata={"program_id": program_id, "user_ids": sorted(entry["user_ids"]), "days_left": days_left},
            commit=False,
        )
        results["instructor_notifications"] += 1


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Deadline Reminders
# ═══════════════════════════════════════════════════════════════════════════

@register_job("deadline_reminders", schedule={"hour": "6", "minute": "0", "description": "Daily at 06:00"})
def send_deadline_reminders(app) -> dict[str, Any]:
    """Send upcoming-deadline reminders and overdue notices."""
    windows = set(app.config.get("REMINDER_DAYS", (7, 3, 1)))
    now = utcnow()
    today = now.date()

    results = {"reminders_sent": 0, "overdue_sent": 0, "suppressed": 0, "instructor_notifications": 0}
    aggregates: dict[tuple, dict] = defaultdict(lambda: {"user_ids": set()})

    for kind in KINDS.values():
        for assignment in _open_user_assignments(kind):
            due = as_utc(assignment.due_date)
            stamped = as_utc(assignment.reminder_sent_at)
            days_left = (due.date() - today).days

            if due < now:
                if stamped is not None and stamped >= due:
                    continue
                days_left = -1
            elif days_left in windows:
                if stamped is not None and stamped.date() == today:
                    continue
            else:
                continue

            target = assignment.program if kind.name == "program" else assignment.checklist
            notif = NotificationService.notify_deadline_reminder(
                kind=kind.name, assignment=assignment, target_title=target.title,
                days_left=days_left, commit=False,
            )
            assignment.reminder_sent_at = now
            if notif is None:
                results["suppressed"] += 1
            elif days_left < 0:
                results["overdue_sent"] += 1
            else:
                results["reminders_sent"] += 1

            if kind.name == "program" and target.instructor_id:
                entry = aggregates[(target.instructor_id, target.id, days_left)]
                entry["company_id"] = assignment.company_id
                entry["title"] = target.title
                entry["user_ids"].add(assignment.assigned_to_user_id)

    _notify_instructors(aggregates, results)
    db.session.commit()
    logger.info("Deadline reminders: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Stale Notification Cleanup
# ═══════════════════════════════════════════════════════════════════════════

@register_job("stale_notification_cleanup", schedule={"hour": "2", "minute": "0", "description": "Daily at 02:00"})
def cleanup_stale_notifications(app) -> dict[str, Any]:
    """Delete read notifications older than the retention window."""
    days = int(app.config.get("NOTIFICATION_RETENTION_DAYS", 90))
    cutoff = utcnow() - timedelta(days=days)

    deleted = Notification.query.filter(
        Notification.read.is_(True),
        Notification.created_at < cutoff,
    ).delete(synchronize_session="fetch")

    db.session.commit()
    logger.info("Stale notification cleanup: deleted %d old read notifications", deleted)
    return {"deleted": deleted, "cutoff": cutoff.isoformat()}
