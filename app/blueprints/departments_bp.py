"""
Departments & Users Blueprint.

API Endpoints (JSON):
  GET    /api/v1/departments                       - List departments with member counts
  POST   /api/v1/departments                       - Create department (admin)
  GET    /api/v1/departments/<id>                  - Department detail + assignment counts
  PUT    /api/v1/departments/<id>                  - Rename / describe (admin)
  DELETE /api/v1/departments/<id>                  - Delete, unassigning its assignments (admin)
  GET    /api/v1/departments/<id>/members          - List members
  POST   /api/v1/departments/<id>/members          - Add members (admin); fans out assignments
  DELETE /api/v1/departments/<id>/members/<uid>    - Remove member (admin)
  GET    /api/v1/users                             - List users (admin)
  POST   /api/v1/users                             - Create user (admin)
  PUT    /api/v1/users/<id>/departments            - Replace a user's departments (admin)
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import current_company_id, current_user_id, json_body, register_error_handlers
from app.middleware.permission_required import require_role
from app.models.company import Department, User
from app.services import membership_service
from app.services.helpers.scoped_queries import get_scoped
from app.utils.helpers import parse_id_list

logger = logging.getLogger(__name__)

departments_bp = register_error_handlers(Blueprint("departments", __name__, url_prefix="/api/v1"))


@departments_bp.route("/departments", methods=["GET"])
def list_departments():
    items = membership_service.list_departments(current_company_id())
    return jsonify({"items": [d.to_dict() for d in items], "total": len(items)})


@departments_bp.route("/departments", methods=["POST"])
@require_role("admin")
def create_department():
    dept = membership_service.create_department(current_company_id(), json_body())
    return jsonify(dept.to_dict()), 201


@departments_bp.route("/departments/<int:department_id>", methods=["GET"])
def get_department(department_id):
    company_id = current_company_id()
    dept = get_scoped(Department, department_id, company_id=company_id)
    d = dept.to_dict(include_members=True)
    d["assignment_counts"] = membership_service.department_assignment_counts(company_id, dept.id)
    return jsonify(d)


@departments_bp.route("/departments/<int:department_id>", methods=["PUT"])
@require_role("admin")
def update_department(department_id):
    dept = membership_service.update_department(current_company_id(), department_id, json_body())
    return jsonify(dept.to_dict())


@departments_bp.route("/departments/<int:department_id>", methods=["DELETE"])
@require_role("admin")
def delete_department(department_id):
    membership_service.delete_department(current_company_id(), department_id, actor_user_id=current_user_id())
    return jsonify({"deleted": True, "id": department_id})


# ── Members ──────────────────────────────────────────────────────────────────


@departments_bp.route("/departments/<int:department_id>/members", methods=["GET"])
def list_members(department_id):
    users = membership_service.list_users(current_company_id(), department_id=department_id)
    return jsonify({"items": [u.to_dict() for u in users], "total": len(users)})


@departments_bp.route("/departments/<int:department_id>/members", methods=["POST"])
@require_role("admin")
def add_members(department_id):
    """Body: {"user_ids": [..]}. Each join fans out the department's assignments."""
    company_id = current_company_id()
    user_ids = parse_id_list(json_body().get("user_ids"), "user_ids")
    get_scoped(Department, department_id, company_id=company_id)

    added = {}
    for uid in user_ids:
        results = membership_service.add_user_to_department(uid, department_id, company_id=company_id)
        added[uid] = [r.to_dict() for r in results]
    return jsonify({"department_id": department_id, "assignments": added}), 200


@departments_bp.route("/departments/<int:department_id>/members/<int:user_id>", methods=["DELETE"])
@require_role("admin")
def remove_member(department_id, user_id):
    removed = membership_service.remove_user_from_department(user_id, department_id, company_id=current_company_id())
    return jsonify({"department_id": department_id, "user_id": user_id, "removed_assignment_ids": removed})


# ── Users ────────────────────────────────────────────────────────────────────


@departments_bp.route("/users", methods=["GET"])
@require_role("admin")
def list_users():
    department_id = request.args.get("department_id", type=int)
    users = membership_service.list_users(current_company_id(), department_id=department_id)
    return jsonify({"items": [u.to_dict(include_departments=True) for u in users], "total": len(users)})


@departments_bp.route("/users", methods=["POST"])
@require_role("admin")
def create_user():
    data = json_body()
    company_id = current_company_id()
    user = membership_service.create_user(company_id, data)
    department_ids = parse_id_list(data.get("department_ids"), "department_ids")
    if department_ids:
        membership_service.set_user_departments(user.id, department_ids, company_id=company_id)
    return jsonify(user.to_dict(include_departments=True)), 201


@departments_bp.route("/users/<int:user_id>/departments", methods=["PUT"])
@require_role("admin")
def set_user_departments(user_id):
    company_id = current_company_id()
    department_ids = parse_id_list(json_body().get("department_ids"), "department_ids")
    membership_service.set_user_departments(user_id, department_ids, company_id=company_id)
    user = get_scoped(User, user_id, company_id=company_id)
    return jsonify(user.to_dict(include_departments=True))
