"""Catalog service - themes, programs, modules, checklists and items.

All validation happens before the first write. Adding or removing an item
keeps existing assignments' progress rows in step through the progress
tracker's backfill/removal hooks.
"""
import logging

from flask import current_app

from app.core.exceptions import ValidationError
from app.models import db
from app.models.catalog import (
    DEFAULT_DEADLINE_DAYS, DEFAULT_PASSING_SCORE, PREREQUISITE_TYPES,
    Checklist, ChecklistItem, Module, Theme, TrainingProgram,
)
from app.models.company import User
from app.services import assignment_service, progress_service
from app.services.helpers.scoped_queries import get_scoped
from app.services.module_content import parse_content
from app.utils.helpers import parse_id_list

logger = logging.getLogger(__name__)


def _require_text(data, field, label):
    value = (data.get(field) or "").strip()
    if not value:
        raise ValidationError(f"{label} is required", details={field: "required"})
    return value


def _int_field(data, field, *, default, minimum=None, maximum=None):
    raw = data.get(field)
    if raw is None:
        raw = default
    if raw is None:
        raise ValidationError(f"{field} is required", details={field: "required"})
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"})
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"}) from exc
    if minimum is not None and value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", details={field: f"min {minimum}"})
    if maximum is not None and value > maximum:
        raise ValidationError(f"{field} must be at most {maximum}", details={field: f"max {maximum}"})
    return value


# ── Themes ───────────────────────────────────────────────────────────────────


def create_theme(company_id, data):
    theme = Theme(
        company_id=company_id,
        name=_require_text(data, "name", "Theme name"),
        description=data.get("description"),
        order_index=_int_field(data, "order_index", default=0),
    )
    db.session.add(theme)
    db.session.commit()
    return theme


def list_themes(company_id):
    return Theme.query_for_company(company_id).order_by(Theme.order_index, Theme.id).all()


def reorder_theme(company_id, theme_id, ordered_program_ids):
    """Set sort_order of the theme's programs to their position in ``ordered_program_ids``."""
    theme = get_scoped(Theme, theme_id, company_id=company_id)
    ids = parse_id_list(ordered_program_ids, "program_ids")
    current = {p.id: p for p in theme.programs.all()}
    if set(ids) != set(current) or len(ids) != len(current):
        raise ValidationError(
            "program_ids must list every program of the theme exactly once",
            details={"program_ids": sorted(current)},
        )
    for position, pid in enumerate(ids):
        current[pid].sort_order = position
    db.session.commit()
    return [current[pid] for pid in ids]


# ── Programs ─────────────────────────────────────────────────────────────────


def _unassign_everyone(kind, target_id, company_id, actor_user_id):
    """Remove every user and department assignment of a target, users first."""
    rows = assignment_service.list_assignments_for_target(kind, target_id, company_id=company_id)
    recipients = sorted((row.recipient for row in rows), key=lambda r: r[0] != "user")
    for recipient, recipient_id in recipients:
        assignment_service.unassign(
            kind, target_id, company_id=company_id, actor_user_id=actor_user_id,
            **{f"{recipient}_id": recipient_id},
        )


def _validate_instructor(company_id, instructor_id):
    if instructor_id is None:
        return None
    instructor = get_scoped(User, instructor_id, company_id=company_id)
    if instructor.role not in ("instructor", "admin"):
        raise ValidationError("instructor_id must reference an instructor or admin")
    return instructor.id


def create_program(company_id, data):
    title = _require_text(data, "title", "Program title")
    theme_id = data.get("theme_id")
    if theme_id is not None:
        get_scoped(Theme, theme_id, company_id=company_id)

    sort_order = data.get("sort_order")
    if sort_order is None and theme_id is not None:
        last = (
            TrainingProgram.query_for_company(company_id)
            .filter_by(theme_id=theme_id)
            .order_by(TrainingProgram.sort_order.desc())
            .first()
        )
        sort_order = (last.sort_order + 1) if last else 0

    cfg = current_app.config
    program = TrainingProgram(
        company_id=company_id,
        theme_id=theme_id,
        title=title,
        description=data.get("description"),
        instructor_id=_validate_instructor(company_id, data.get("instructor_id")),
        deadline_days=_int_field(
            data, "deadline_days", default=cfg.get("DEFAULT_DEADLINE_DAYS", DEFAULT_DEADLINE_DAYS), minimum=1,
        ),
        passing_score=_int_field(
            data, "passing_score", default=cfg.get("DEFAULT_PASSING_SCORE", DEFAULT_PASSING_SCORE),
            minimum=0, maximum=100,
        ),
        badge_enabled=bool(data.get("badge_enabled", True)),
        sort_order=_int_field({"sort_order": sort_order}, "sort_order", default=0),
        prerequisite_type="none",
        prerequisite_course_ids=[],
    )
    db.session.add(program)
    db.session.flush()

    if "prerequisite_type" in data:
        _apply_prerequisites(program, data.get("prerequisite_type"), data.get("prerequisite_course_ids"))
    db.session.commit()
    logger.info("Program created: id=%s company=%s", program.id, company_id)
    return program


def update_program(company_id, program_id, data):
    program = get_scoped(TrainingProgram, program_id, company_id=company_id)
    if "title" in data:
        program.title = _require_text(data, "title", "Program title")
    if "description" in data:
        program.description = data["description"]
    if "deadline_days" in data:
        program.deadline_days = _int_field(data, "deadline_days", default=None, minimum=1)
    if "passing_score" in data:
        program.passing_score = _int_field(data, "passing_score", default=None, minimum=0, maximum=100)
    if "badge_enabled" in data:
        program.badge_enabled = bool(data["badge_enabled"])
    if "instructor_id" in data:
        program.instructor_id = _validate_instructor(company_id, data["instructor_id"])
    if "theme_id" in data:
        if data["theme_id"] is not None:
            get_scoped(Theme, data["theme_id"], company_id=company_id)
        program.theme_id = data["theme_id"]
    if "prerequisite_type" in data or "prerequisite_course_ids" in data:
        _apply_prerequisites(
            program,
            data.get("prerequisite_type", program.prerequisite_type),
            data.get("prerequisite_course_ids", program.prerequisite_course_ids),
        )
    db.session.commit()
    return program


def delete_program(company_id, program_id, *, actor_user_id=None):
    """Delete a program with its assignments, progress and modules.

    Programs that list it as a specific prerequisite drop the reference.
    """
    program = get_scoped(TrainingProgram, program_id, company_id=company_id)
    kind = assignment_service.PROGRAM

    _unassign_everyone(kind, program.id, company_id, actor_user_id)

    dependents = (
        TrainingProgram.query_for_company(company_id)
        .filter(TrainingProgram.prerequisite_type == "specific_courses")
        .all()
    )
    for other in dependents:
        ids = list(other.prerequisite_course_ids or [])
        if program.id in ids:
            ids.remove(program.id)
            other.prerequisite_course_ids = ids
            if not ids:
                other.prerequisite_type = "none"

    db.session.delete(program)
    db.session.commit()
    logger.info("Program %s deleted", program_id)


def list_programs(company_id, *, theme_id=None):
    q = TrainingProgram.query_for_company(company_id)
    if theme_id is not None:
        q = q.filter_by(theme_id=theme_id)
    return q.order_by(TrainingProgram.theme_id, TrainingProgram.sort_order, TrainingProgram.id).all()


# ── Prerequisites ────────────────────────────────────────────────────────────


def _prerequisite_graph(company_id, theme_id):
    programs = (
        TrainingProgram.query_for_company(company_id)
        .filter_by(theme_id=theme_id, prerequisite_type="specific_courses")
        .all()
    )
    return {p.id: set(p.prerequisite_course_ids or []) for p in programs}


def _find_cycle(graph, start):
    """Return a path start → … → start through ``graph`` if one exists."""
    stack = [(start, [start])]
    seen = set()
    while stack:
        node, path = stack.pop()
        for nxt in graph.get(node, ()):
            if nxt == start:
                return path + [start]
            if nxt not in seen:
                seen.add(nxt)
                stack.append((nxt, path + [nxt]))
    return None


def _apply_prerequisites(program, prerequisite_type, course_ids):
    if prerequisite_type not in PREREQUISITE_TYPES:
        raise ValidationError(
            f"Invalid prerequisite_type: {prerequisite_type}",
            details={"prerequisite_type": f"must be one of {sorted(PREREQUISITE_TYPES)}"},
        )

    if prerequisite_type != "specific_courses":
        program.prerequisite_type = prerequisite_type
        program.prerequisite_course_ids = []
        return

    ids = list(dict.fromkeys(parse_id_list(course_ids, "prerequisite_course_ids")))
    if not ids:
        raise ValidationError(
            "specific_courses needs at least one prerequisite program",
            details={"prerequisite_course_ids": "required"},
        )
    if program.id in ids:
        raise ValidationError(
            "A program cannot be its own prerequisite",
            details={"prerequisite_course_ids": "self reference"},
        )
    if program.theme_id is None:
        raise ValidationError("Only programs inside a theme can declare specific prerequisites")

    for pid in ids:
        other = get_scoped(TrainingProgram, pid, company_id=program.company_id)
        if other.theme_id != program.theme_id:
            raise ValidationError(
                f"Prerequisite program {pid} belongs to another theme",
                details={"prerequisite_course_ids": "same theme only"},
            )

    graph = _prerequisite_graph(program.company_id, program.theme_id)
    graph[program.id] = set(ids)
    cycle = _find_cycle(graph, program.id)
    if cycle:
        raise ValidationError(
            "Prerequisites would form a cycle: " + " → ".join(str(c) for c in cycle),
            details={"cycle": cycle},
        )

    program.prerequisite_type = "specific_courses"
    program.prerequisite_course_ids = ids


def set_prerequisites(company_id, program_id, prerequisite_type, course_ids=None):
    """Replace a program's prerequisite declaration. Cycles are rejected."""
    program = get_scoped(TrainingProgram, program_id, company_id=company_id)
    _apply_prerequisites(program, prerequisite_type, course_ids)
    db.session.commit()
    logger.info(
        "Program %s prerequisites set: %s %s",
        program.id, program.prerequisite_type, program.prerequisite_course_ids,
    )
    return program


# ── Modules ──────────────────────────────────────────────────────────────────


def add_module(company_id, program_id, data):
    """Add a module at the end (or at ``order_index``) and backfill progress rows."""
    program = get_scoped(TrainingProgram, program_id, company_id=company_id)
    title = _require_text(data, "title", "Module title")
    module_type = data.get("type", "content_section")
    content = parse_content(module_type, data.get("content"))

    if data.get("order_index") is not None:
        order_index = _int_field(data, "order_index", default=0, minimum=0)
    else:
        order_index = (max((m.order_index for m in program.modules), default=-1)) + 1

    module = Module(
        program_id=program.id,
        title=title,
        description=data.get("description"),
        type=module_type,
        content=content.to_dict(),
        order_index=order_index,
    )
    db.session.add(module)
    db.session.commit()

    progress_service.backfill_new_item(assignment_service.PROGRAM, module)
    return module


def update_module(company_id, program_id, module_id, data):
    program = get_scoped(TrainingProgram, program_id, company_id=company_id)
    module = get_scoped(Module, module_id, program_id=program.id)
    if "title" in data:
        module.title = _require_text(data, "title", "Module title")
    if "description" in data:
        module.description = data["description"]
    if "type" in data or "content" in data:
        module_type = data.get("type", module.type)
        module.content = parse_content(module_type, data.get("content", module.content)).to_dict()
        module.type = module_type
    db.session.commit()
    return module


def delete_module(company_id, program_id, module_id):
    program = get_scoped(TrainingProgram, program_id, company_id=company_id)
    module = get_scoped(Module, module_id, program_id=program.id)
    progress_service.remove_item_progress(assignment_service.PROGRAM, module)
    db.session.delete(module)
    db.session.commit()
    logger.info("Module %s removed from program %s", module_id, program_id)


def reorder_modules(company_id, program_id, ordered_module_ids):
    program = get_scoped(TrainingProgram, program_id, company_id=company_id)
    ids = parse_id_list(ordered_module_ids, "module_ids")
    current = {m.id: m for m in program.modules}
    if set(ids) != set(current) or len(ids) != len(current):
        raise ValidationError(
            "module_ids must list every module of the program exactly once",
            details={"module_ids": sorted(current)},
        )
    for position, mid in enumerate(ids):
        current[mid].order_index = position
    db.session.commit()
    return [current[mid] for mid in ids]


# ── Checklists ───────────────────────────────────────────────────────────────


def create_checklist(company_id, data, *, created_by=None):
    checklist = Checklist(
        company_id=company_id,
        title=_require_text(data, "title", "Checklist title"),
        description=data.get("description"),
        created_by=created_by,
    )
    db.session.add(checklist)
    db.session.flush()
    for position, raw in enumerate(data.get("items") or []):
        db.session.add(ChecklistItem(
            checklist_id=checklist.id,
            title=_require_text(raw, "title", "Item title"),
            description=raw.get("description"),
            order_index=position,
        ))
    db.session.commit()
    return checklist


def list_checklists(company_id):
    return Checklist.query_for_company(company_id).order_by(Checklist.title).all()


def add_checklist_item(company_id, checklist_id, data):
    checklist = get_scoped(Checklist, checklist_id, company_id=company_id)
    item = ChecklistItem(
        checklist_id=checklist.id,
        title=_require_text(data, "title", "Item title"),
        description=data.get("description"),
        order_index=(max((i.order_index for i in checklist.checklist_items), default=-1)) + 1,
    )
    db.session.add(item)
    db.session.commit()

    progress_service.backfill_new_item(assignment_service.CHECKLIST, item)
    return item


def delete_checklist_item(company_id, checklist_id, item_id):
    checklist = get_scoped(Checklist, checklist_id, company_id=company_id)
    item = get_scoped(ChecklistItem, item_id, checklist_id=checklist.id)
    progress_service.remove_item_progress(assignment_service.CHECKLIST, item)
    db.session.delete(item)
    db.session.commit()


def delete_checklist(company_id, checklist_id, *, actor_user_id=None):
    checklist = get_scoped(Checklist, checklist_id, company_id=company_id)
    kind = assignment_service.CHECKLIST
    _unassign_everyone(kind, checklist.id, company_id, actor_user_id)
    db.session.delete(checklist)
    db.session.commit()
