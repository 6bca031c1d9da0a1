"""
Catalog Blueprint: themes, programs, modules, checklists.

Reads are open to every member of the company; writes need an admin (or,
for module content, the program's instructor).

  /api/v1/themes                               GET, POST
  /api/v1/themes/<id>/order                    PUT   (program sequence)
  /api/v1/programs                             GET, POST
  /api/v1/programs/<id>                        GET, PUT, DELETE
  /api/v1/programs/<id>/prerequisites          PUT
  /api/v1/programs/<id>/modules                GET, POST
  /api/v1/programs/<id>/modules/order          PUT
  /api/v1/programs/<id>/modules/<mid>          PUT, DELETE
  /api/v1/checklists                           GET, POST
  /api/v1/checklists/<id>                      GET, DELETE
  /api/v1/checklists/<id>/items                POST
  /api/v1/checklists/<id>/items/<iid>          DELETE
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.blueprints import current_company_id, current_user_id, json_body, register_error_handlers
from app.core.exceptions import PermissionDeniedError
from app.middleware.permission_required import require_role
from app.models.catalog import Checklist, TrainingProgram
from app.services import catalog_service
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

catalog_bp = register_error_handlers(Blueprint("catalog", __name__, url_prefix="/api/v1"))


def _require_program_editor(program):
    user = g.current_user
    if user.role == "admin" or (user.role == "instructor" and program.instructor_id == user.id):
        return
    raise PermissionDeniedError("Only admins or the program's instructor can edit modules", required_role="admin")


# ── Themes ───────────────────────────────────────────────────────────────────


@catalog_bp.route("/themes", methods=["GET"])
def list_themes():
    themes = catalog_service.list_themes(current_company_id())
    return jsonify({"items": [t.to_dict() for t in themes], "total": len(themes)})


@catalog_bp.route("/themes", methods=["POST"])
@require_role("admin")
def create_theme():
    theme = catalog_service.create_theme(current_company_id(), json_body())
    return jsonify(theme.to_dict()), 201


@catalog_bp.route("/themes/<int:theme_id>/order", methods=["PUT"])
@require_role("admin")
def reorder_theme(theme_id):
    programs = catalog_service.reorder_theme(current_company_id(), theme_id, json_body().get("program_ids"))
    return jsonify({"items": [p.to_dict() for p in programs]})


# ── Programs ─────────────────────────────────────────────────────────────────


@catalog_bp.route("/programs", methods=["GET"])
def list_programs():
    theme_id = request.args.get("theme_id", type=int)
    programs = catalog_service.list_programs(current_company_id(), theme_id=theme_id)
    return jsonify({"items": [p.to_dict() for p in programs], "total": len(programs)})


@catalog_bp.route("/programs", methods=["POST"])
@require_role("admin")
def create_program():
    program = catalog_service.create_program(current_company_id(), json_body())
    return jsonify(program.to_dict(include_modules=True)), 201


@catalog_bp.route("/programs/<int:program_id>", methods=["GET"])
def get_program(program_id):
    program = get_scoped(TrainingProgram, program_id, company_id=current_company_id())
    return jsonify(program.to_dict(include_modules=True))


@catalog_bp.route("/programs/<int:program_id>", methods=["PUT"])
@require_role("admin")
def update_program(program_id):
    program = catalog_service.update_program(current_company_id(), program_id, json_body())
    return jsonify(program.to_dict())


@catalog_bp.route("/programs/<int:program_id>", methods=["DELETE"])
@require_role("admin")
def delete_program(program_id):
    catalog_service.delete_program(current_company_id(), program_id, actor_user_id=current_user_id())
    return jsonify({"deleted": True, "id": program_id})


@catalog_bp.route("/programs/<int:program_id>/prerequisites", methods=["PUT"])
@require_role("admin")
def set_prerequisites(program_id):
    """Body: {"prerequisite_type": "...", "prerequisite_course_ids": [..]}"""
    data = json_body()
    program = catalog_service.set_prerequisites(
        current_company_id(), program_id,
        data.get("prerequisite_type"), data.get("prerequisite_course_ids"),
    )
    return jsonify(program.to_dict())


# ── Modules ──────────────────────────────────────────────────────────────────


@catalog_bp.route("/programs/<int:program_id>/modules", methods=["GET"])
def list_modules(program_id):
    program = get_scoped(TrainingProgram, program_id, company_id=current_company_id())
    return jsonify({"items": [m.to_dict() for m in program.modules], "total": len(program.modules)})


@catalog_bp.route("/programs/<int:program_id>/modules", methods=["POST"])
def add_module(program_id):
    company_id = current_company_id()
    _require_program_editor(get_scoped(TrainingProgram, program_id, company_id=company_id))
    module = catalog_service.add_module(company_id, program_id, json_body())
    return jsonify(module.to_dict()), 201


@catalog_bp.route("/programs/<int:program_id>/modules/order", methods=["PUT"])
def reorder_modules(program_id):
    company_id = current_company_id()
    _require_program_editor(get_scoped(TrainingProgram, program_id, company_id=company_id))
    modules = catalog_service.reorder_modules(company_id, program_id, json_body().get("module_ids"))
    return jsonify({"items": [m.to_dict() for m in modules]})


@catalog_bp.route("/programs/<int:program_id>/modules/<int:module_id>", methods=["PUT"])
def update_module(program_id, module_id):
    company_id = current_company_id()
    _require_program_editor(get_scoped(TrainingProgram, program_id, company_id=company_id))
    module = catalog_service.update_module(company_id, program_id, module_id, json_body())
    return jsonify(module.to_dict())


@catalog_bp.route("/programs/<int:program_id>/modules/<int:module_id>", methods=["DELETE"])
def delete_module(program_id, module_id):
    company_id = current_company_id()
    _require_program_editor(get_scoped(TrainingProgram, program_id, company_id=company_id))
    catalog_service.delete_module(company_id, program_id, module_id)
    return jsonify({"deleted": True, "id": module_id})


# ── Checklists ───────────────────────────────────────────────────────────────


@catalog_bp.route("/checklists", methods=["GET"])
def list_checklists():
    checklists = catalog_service.list_checklists(current_company_id())
    return jsonify({"items": [c.to_dict() for c in checklists], "total": len(checklists)})


@catalog_bp.route("/checklists", methods=["POST"])
@require_role("admin")
def create_checklist():
    checklist = catalog_service.create_checklist(current_company_id(), json_body(), created_by=current_user_id())
    return jsonify(checklist.to_dict(include_items=True)), 201


@catalog_bp.route("/checklists/<int:checklist_id>", methods=["GET"])
def get_checklist(checklist_id):
    checklist = get_scoped(Checklist, checklist_id, company_id=current_company_id())
    return jsonify(checklist.to_dict(include_items=True))


@catalog_bp.route("/checklists/<int:checklist_id>", methods=["DELETE"])
@require_role("admin")
def delete_checklist(checklist_id):
    catalog_service.delete_checklist(current_company_id(), checklist_id, actor_user_id=current_user_id())
    return jsonify({"deleted": True, "id": checklist_id})


@catalog_bp.route("/checklists/<int:checklist_id>/items", methods=["POST"])
@require_role("admin")
def add_checklist_item(checklist_id):
    item = catalog_service.add_checklist_item(current_company_id(), checklist_id, json_body())
    return jsonify(item.to_dict()), 201


@catalog_bp.route("/checklists/<int:checklist_id>/items/<int:item_id>", methods=["DELETE"])
@require_role("admin")
def delete_checklist_item(checklist_id, item_id):
    catalog_service.delete_checklist_item(current_company_id(), checklist_id, item_id)
    return jsonify({"deleted": True, "id": item_id})
