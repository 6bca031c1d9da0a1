"""Membership service - companies, users, departments and memberships.

Every membership change calls the matching assignment-engine hook after the
membership row is committed, so department-derived assignments follow the
user in and out of departments.
"""
import logging

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.assignment import ChecklistAssignment, ProgramAssignment
from app.models.company import USER_ROLES, Company, Department, User, UserDepartment
from app.services import assignment_service
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)


# ── Companies & users ────────────────────────────────────────────────────────


def create_company(data):
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Company name is required", details={"name": "required"})
    company = Company(
        name=name,
        logo_url=data.get("logo_url"),
        badge_system_enabled=bool(data.get("badge_system_enabled", True)),
    )
    db.session.add(company)
    db.session.commit()
    logger.info("Company created: id=%s name=%s", company.id, company.name)
    return company


def create_user(company_id, data):
    if db.session.get(Company, company_id) is None:
        raise NotFoundError(resource="Company", resource_id=company_id)
    try:
        email = validate_email((data.get("email") or "").strip(), check_deliverability=False).normalized.lower()
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}", details={"email": "invalid"}) from None
    role = data.get("role", "user")
    if role not in USER_ROLES:
        raise ValidationError(f"Invalid role: {role}", details={"role": f"must be one of {sorted(USER_ROLES)}"})
    if User.query_for_company(company_id).filter_by(email=email).first():
        raise ConflictError("User", "email", email)

    user = User(
        company_id=company_id,
        email=email,
        full_name=(data.get("full_name") or "").strip(),
        role=role,
    )
    db.session.add(user)
    db.session.commit()
    return user


def list_users(company_id, *, department_id=None):
    q = User.query_for_company(company_id)
    if department_id is not None:
        get_scoped(Department, department_id, company_id=company_id)
        q = q.join(UserDepartment, UserDepartment.user_id == User.id).filter(
            UserDepartment.department_id == department_id
        )
    return q.order_by(User.full_name, User.id).all()


# ── Departments ──────────────────────────────────────────────────────────────


def _clean_name(data):
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Department name is required", details={"name": "required"})
    return name


def create_department(company_id, data):
    name = _clean_name(data)
    if Department.query_for_company(company_id).filter_by(name=name).first():
        raise ConflictError("Department", "name", name)
    dept = Department(company_id=company_id, name=name, description=data.get("description"))
    db.session.add(dept)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Department", "name", name) from None
    logger.info("Department created: id=%s company=%s", dept.id, company_id)
    return dept


def update_department(company_id, department_id, data):
    dept = get_scoped(Department, department_id, company_id=company_id)
    if "name" in data:
        name = _clean_name(data)
        clash = (
            Department.query_for_company(company_id)
            .filter(Department.name == name, Department.id != dept.id)
            .first()
        )
        if clash:
            raise ConflictError("Department", "name", name)
        dept.name = name
    if "description" in data:
        dept.description = data["description"]
    db.session.commit()
    return dept


def delete_department(company_id, department_id, *, actor_user_id=None):
    """Delete a department.

    Its assignments are unassigned first (removing the member rows nothing
    else justifies), then each membership is removed through the leave hook.
    """
    dept = get_scoped(Department, department_id, company_id=company_id)

    for kind in assignment_service.KINDS.values():
        target_ids = [
            row.target_id
            for row in kind.assignment_model.query_for_company(company_id)
            .filter_by(assigned_to_department_id=dept.id)
            .all()
        ]
        for target_id in target_ids:
            assignment_service.unassign(
                kind, target_id, company_id=company_id, department_id=dept.id,
                actor_user_id=actor_user_id,
            )

    for user_id in sorted(dept.member_ids):
        remove_user_from_department(user_id, dept.id, company_id=company_id)

    db.session.delete(dept)
    db.session.commit()
    logger.info("Department %s deleted", department_id)


def list_departments(company_id):
    return Department.query_for_company(company_id).order_by(Department.name).all()


def department_assignment_counts(company_id, department_id):
    return {
        "programs": ProgramAssignment.query_for_company(company_id)
        .filter_by(assigned_to_department_id=department_id).count(),
        "checklists": ChecklistAssignment.query_for_company(company_id)
        .filter_by(assigned_to_department_id=department_id).count(),
    }


# ── Memberships ──────────────────────────────────────────────────────────────


def add_user_to_department(user_id, department_id, *, company_id):
    """Add a membership and fan out the department's assignments to the user.

    Adding an existing membership is a no-op apart from re-running the
    (idempotent) fan-out.
    """
    get_scoped(User, user_id, company_id=company_id)
    get_scoped(Department, department_id, company_id=company_id)

    existing = UserDepartment.query.filter_by(user_id=user_id, department_id=department_id).first()
    if existing is None:
        db.session.add(UserDepartment(user_id=user_id, department_id=department_id))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.debug("Membership user=%s dept=%s created concurrently", user_id, department_id)
        else:
            logger.info("User %s joined department %s", user_id, department_id)

    return assignment_service.on_user_joins_department(user_id, department_id, company_id=company_id)


def remove_user_from_department(user_id, department_id, *, company_id):
    """Remove a membership and drop auto-assignments it alone justified."""
    get_scoped(User, user_id, company_id=company_id)
    get_scoped(Department, department_id, company_id=company_id)

    membership = UserDepartment.query.filter_by(user_id=user_id, department_id=department_id).first()
    if membership is not None:
        db.session.delete(membership)
        db.session.commit()
        logger.info("User %s left department %s", user_id, department_id)

    return assignment_service.on_user_leaves_department(user_id, department_id, company_id=company_id)


def set_user_departments(user_id, department_ids, *, company_id):
    """Make the user's memberships exactly ``department_ids``.

    Only the difference is applied; each join/leave runs its hook. Joins run
    first so a leave never drops material a new department still assigns.
    """
    user = get_scoped(User, user_id, company_id=company_id)
    wanted = set(department_ids)
    for did in wanted:
        get_scoped(Department, did, company_id=company_id)

    current = user.department_ids
    for did in sorted(wanted - current):
        add_user_to_department(user_id, did, company_id=company_id)
    for did in sorted(current - wanted):
        remove_user_from_department(user_id, did, company_id=company_id)
    return sorted(wanted)
