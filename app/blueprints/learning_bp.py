"""
Learning Blueprint: the learner's own assignments and progress.

  GET  /api/v1/me/learning                                        all assignments with derived status
  GET  /api/v1/me/assignments/<kind>/<id>                         detail, items, module availability
  POST /api/v1/me/assignments/<kind>/<id>/items/<item_id>/start
  POST /api/v1/me/assignments/<kind>/<id>/items/<item_id>/complete
  PUT  /api/v1/checklist-assignments/<id>/items/<item_id>         set item status (assignee or admin)
"""

import logging

from flask import Blueprint, jsonify

from app.blueprints import current_company_id, current_user_id, json_body, register_error_handlers
from app.services import progress_service, reporting_service

logger = logging.getLogger(__name__)

learning_bp = register_error_handlers(Blueprint("learning", __name__, url_prefix="/api/v1"))


@learning_bp.route("/me/learning", methods=["GET"])
def my_learning():
    return jsonify(reporting_service.my_learning(current_user_id(), company_id=current_company_id()))


@learning_bp.route("/me/assignments/<kind>/<int:assignment_id>", methods=["GET"])
def assignment_detail(kind, assignment_id):
    detail = progress_service.get_assignment_detail(
        kind, assignment_id, user_id=current_user_id(), company_id=current_company_id(),
    )
    return jsonify(detail)


@learning_bp.route("/me/assignments/<kind>/<int:assignment_id>/items/<int:item_id>/start", methods=["POST"])
def start_item(kind, assignment_id, item_id):
    update = progress_service.start_item(
        kind, assignment_id, item_id, user_id=current_user_id(), company_id=current_company_id(),
    )
    return jsonify(update.to_dict())


@learning_bp.route("/me/assignments/<kind>/<int:assignment_id>/items/<int:item_id>/complete", methods=["POST"])
def complete_item(kind, assignment_id, item_id):
    """Body (optional): {"answers": {"q1": 0, ...}, "time_spent_minutes": 12}"""
    data = json_body()
    update = progress_service.complete_item(
        kind, assignment_id, item_id,
        user_id=current_user_id(),
        company_id=current_company_id(),
        outcome=data.get("answers"),
        time_spent_minutes=data.get("time_spent_minutes", 0),
    )
    return jsonify(update.to_dict())


@learning_bp.route("/checklist-assignments/<int:assignment_id>/items/<int:item_id>", methods=["PUT"])
def set_checklist_item_status(assignment_id, item_id):
    """Body: {"status": "completed", "notes": "..."}"""
    data = json_body()
    update = progress_service.set_checklist_item_status(
        assignment_id, item_id, data.get("status"),
        user_id=current_user_id(),
        company_id=current_company_id(),
        notes=data.get("notes"),
    )
    return jsonify(update.to_dict())
