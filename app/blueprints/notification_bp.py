"""
Training Portal
Notification & Scheduling Blueprint.

Provides:
    - The caller's notification feed (list, read, read-all, delete, unread count)
    - The caller's notification preferences
    - Cron-triggered job execution (/api/v1/jobs/<name>/run), authenticated
      by the shared CRON_SECRET instead of a user token
"""

from __future__ import annotations

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from app.blueprints import current_company_id, current_user_id, json_body, register_error_handlers
from app.middleware.permission_required import require_role
from app.services.notification import NotificationService
from app.services.scheduler_service import SchedulerService
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

notification_bp = register_error_handlers(Blueprint("notification", __name__, url_prefix="/api/v1"))
jobs_bp = Blueprint("jobs", __name__, url_prefix="/api/v1/jobs")


# ═══════════════════════════════════════════════════════════════════════════
#  NOTIFICATION FEED
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Caller's notifications, newest first.

    Query params: unread_only (bool), limit (default 50, max 200), offset.
    """
    unread_only = request.args.get("unread_only", "false").lower() in ("1", "true", "yes")
    limit = min(request.args.get("limit", 50, type=int) or 50, 200)
    offset = max(request.args.get("offset", 0, type=int) or 0, 0)

    items, total = NotificationService.list_for_user(
        current_user_id(), company_id=current_company_id(),
        unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(current_user_id(), company_id=current_company_id()),
    })


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    return jsonify({
        "unread_count": NotificationService.unread_count(current_user_id(), company_id=current_company_id()),
    })


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH", "POST"])
def mark_read(nid):
    notif = NotificationService.mark_read(nid, user_id=current_user_id(), company_id=current_company_id())
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    count = NotificationService.mark_all_read(current_user_id(), company_id=current_company_id())
    return jsonify({"marked_read": count})


@notification_bp.route("/notifications/<int:nid>", methods=["DELETE"])
def delete_notification(nid):
    NotificationService.delete(nid, user_id=current_user_id(), company_id=current_company_id())
    return jsonify({"deleted": True, "id": nid})


# ═══════════════════════════════════════════════════════════════════════════
#  PREFERENCES
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications/preferences", methods=["GET"])
def get_preferences():
    return jsonify(NotificationService.get_preferences(current_user_id()).to_dict())


@notification_bp.route("/notifications/preferences", methods=["PUT", "PATCH"])
def update_preferences():
    pref = NotificationService.update_preferences(current_user_id(), json_body())
    return jsonify(pref.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/scheduler/jobs", methods=["GET"])
@require_role("admin")
def list_scheduled_jobs():
    jobs = SchedulerService.list_jobs()
    return jsonify({"items": jobs, "total": len(jobs)})


@notification_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
@require_role("admin")
def toggle_job_status(job_name):
    enabled = json_body().get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "enabled is required")
    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if result is None:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)


def _cron_authorized() -> bool:
    secret = current_app.config.get("CRON_SECRET")
    if not secret:
        return False
    header = request.headers.get("Authorization", "")
    return hmac.compare_digest(header.encode(), f"Bearer {secret}".encode())


@jobs_bp.route("/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Run a registered job now. Called by the external scheduler."""
    if not _cron_authorized():
        logger.warning("Rejected job trigger for %s from %s", job_name, request.remote_addr)
        return api_error(E.UNAUTHORIZED, "Unauthorized")

    result = SchedulerService.run_job(job_name)
    if result["status"] == "error":
        return api_error(E.NOT_FOUND, result["error"] or f"Job '{job_name}' not found")
    return jsonify(result), 200 if result["status"] != "failed" else 500
