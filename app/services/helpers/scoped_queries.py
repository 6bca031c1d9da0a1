"""
Company-scoped query helpers.

Every get-by-id in the portal goes through these helpers instead of
Model.query.get(pk) or db.session.get(Model, pk). A direct .get() would
bypass company isolation.

Usage:
    # Scope by company_id (TenantModel subclasses)
    program = get_scoped(TrainingProgram, program_id, company_id=company_id)

    # Scope child rows by their parent
    module = get_scoped(Module, module_id, program_id=program.id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    If the model does not have that column, ValueError is raised at call
    time so the bug surfaces during development rather than silently
    allowing unscoped access.

A record that exists under another company raises CrossTenantError, a
NotFoundError subclass, so HTTP callers still see a plain 404.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import CrossTenantError, NotFoundError
from app.models import db

logger = logging.getLogger(__name__)


def get_scoped(
    model,
    pk: int,
    *,
    company_id: int | None = None,
    program_id: int | None = None,
    checklist_id: int | None = None,
):
    """Fetch a single entity by PK with a mandatory scope filter.

    Raises:
        ValueError: If no scope is provided, or a provided scope names a
                    column the model does not have.
        CrossTenantError: If the entity exists but under another company.
        NotFoundError: If the entity does not exist in the given scope.
    """
    provided = {
        "company_id": company_id,
        "program_id": program_id,
        "checklist_id": checklist_id,
    }
    provided = {k: v for k, v in provided.items() if v is not None}

    if not provided:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            "(company_id, program_id or checklist_id)."
        )

    missing = sorted(field for field in provided if not hasattr(model, field))
    if missing:
        raise ValueError(f"{model.__name__} has no scope column(s) {missing}")

    stmt = select(model).where(model.id == pk)
    for field, value in provided.items():
        stmt = stmt.where(getattr(model, field) == value)

    result = db.session.execute(stmt).scalar_one_or_none()
    if result is not None:
        return result

    if company_id is not None:
        owner = db.session.execute(
            select(model.company_id).where(model.id == pk)
        ).scalar_one_or_none()
        if owner is not None and owner != company_id:
            logger.warning(
                "Cross-company access to %s id=%s from company=%s (owner=%s)",
                model.__name__, pk, company_id, owner,
            )
            raise CrossTenantError(
                resource=model.__name__, resource_id=pk,
                company_id=company_id, owner_company_id=owner,
            )

    logger.debug("get_scoped: %s id=%s not found in scope %s", model.__name__, pk, provided)
    raise NotFoundError(resource=model.__name__, resource_id=pk, company_id=company_id)

