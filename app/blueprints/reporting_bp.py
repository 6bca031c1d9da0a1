from flask import Blueprint, jsonify, request

from app.blueprints import current_company_id, register_error_handlers
from app.middleware.permission_required import require_role
from app.services import reporting_service

reporting_bp = register_error_handlers(Blueprint("reporting", __name__, url_prefix="/api/v1/reports"))


@reporting_bp.route("/dashboard", methods=["GET"])
@require_role("admin", "instructor")
def dashboard():
    """
    GET /api/v1/reports/dashboard[?department_id=<id>]
    Per-kind status counts, completion rate and the overdue list.
    """
    department_id = request.args.get("department_id", type=int)
    return jsonify(reporting_service.dashboard_stats(current_company_id(), department_id=department_id)), 200


@reporting_bp.route("/users/<int:user_id>/learning", methods=["GET"])
@require_role("admin", "instructor")
def user_learning(user_id):
    """
    GET /api/v1/reports/users/<user_id>/learning
    The same view the learner sees at /api/v1/me/learning.
    """
    return jsonify(reporting_service.my_learning(user_id, company_id=current_company_id())), 200
