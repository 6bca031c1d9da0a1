"""
Assignment Blueprint: admin-facing assignment of programs and checklists.

  POST   /api/v1/<kind>s/<id>/assignments           bulk assign to users and/or departments
  GET    /api/v1/<kind>s/<id>/assignments           list user and department rows
  DELETE /api/v1/<kind>s/<id>/assignments           unassign one user or one department
  POST   /api/v1/program-assignments/<id>/unlock    approve a pending program

<kind> is ``program`` or ``checklist``.
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import current_company_id, current_user_id, json_body, register_error_handlers
from app.core.exceptions import ValidationError
from app.middleware.permission_required import require_role
from app.services import assignment_service, status_resolver
from app.utils.helpers import parse_id, parse_id_list

logger = logging.getLogger(__name__)

assignment_bp = register_error_handlers(Blueprint("assignments", __name__, url_prefix="/api/v1"))

_KIND_SEGMENTS = {"programs": "program", "checklists": "checklist"}


def _kind(segment):
    try:
        return assignment_service.get_kind(_KIND_SEGMENTS[segment])
    except KeyError:
        raise ValidationError(f"Unknown assignment target: {segment}") from None


@assignment_bp.route("/<segment>/<int:target_id>/assignments", methods=["POST"])
@require_role("admin")
def assign(segment, target_id):
    """
    Body: {"user_ids": [..], "department_ids": [..], "due_date": "YYYY-MM-DD", "notes": "..."}

    Returns a per-recipient breakdown and a one-line summary such as
    "3 assigned, 1 already had access".
    """
    kind = _kind(segment)
    data = json_body()
    user_ids = parse_id_list(data.get("user_ids"), "user_ids")
    department_ids = parse_id_list(data.get("department_ids"), "department_ids")
    if not user_ids and not department_ids:
        raise ValidationError("Select at least one user or department", details={"user_ids": "required"})

    result = assignment_service.bulk_assign(
        kind, target_id,
        company_id=current_company_id(),
        assigned_by=current_user_id(),
        user_ids=user_ids,
        department_ids=department_ids,
        due_date=data.get("due_date"),
        notes=data.get("notes"),
    )
    return jsonify(result.to_dict()), 200


@assignment_bp.route("/<segment>/<int:target_id>/assignments", methods=["GET"])
@require_role("admin", "instructor")
def list_assignments(segment, target_id):
    kind = _kind(segment)
    rows = assignment_service.list_assignments_for_target(kind, target_id, company_id=current_company_id())
    items = []
    for row in rows:
        d = row.to_dict()
        if row.assigned_to_user_id is not None:
            d["derived_status"] = status_resolver.resolve_assignment(kind, row)
        items.append(d)
    return jsonify({"items": items, "total": len(items)})


@assignment_bp.route("/<segment>/<int:target_id>/assignments", methods=["DELETE"])
@require_role("admin")
def unassign(segment, target_id):
    """Query or body: user_id=<id> or department_id=<id>."""
    kind = _kind(segment)
    data = json_body()
    user_id = request.args.get("user_id", type=int) or parse_id(data.get("user_id"), "user_id")
    department_id = (
        request.args.get("department_id", type=int)
        or parse_id(data.get("department_id"), "department_id")
    )
    result = assignment_service.unassign(
        kind, target_id,
        company_id=current_company_id(),
        user_id=user_id,
        department_id=department_id,
        actor_user_id=current_user_id(),
    )
    return jsonify(result.to_dict())


@assignment_bp.route("/program-assignments/<int:assignment_id>/unlock", methods=["POST"])
@require_role("admin")
def unlock(assignment_id):
    assignment = status_resolver.unlock(
        assignment_id, company_id=current_company_id(), actor_user_id=current_user_id(),
    )
    d = assignment.to_dict()
    d["derived_status"] = status_resolver.resolve_assignment("program", assignment)
    return jsonify(d)
