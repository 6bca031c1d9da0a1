"""
Training Portal
Blueprint registry and helpers shared by every API blueprint.
"""

import logging

from flask import g, request

from app.core.exceptions import (
    ConflictError,
    CrossTenantError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  - max items (default 200, capped at max_limit)
        offset - starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def current_company_id() -> int:
    return g.company.id


def current_user_id() -> int:
    return g.current_user.id


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_error_handlers(bp):
    """Map service exceptions to JSON error responses on ``bp``."""

    @bp.errorhandler(CrossTenantError)
    def _handle_cross_tenant(error):
        logger.warning(
            "Cross-company access: %s id=%s caller_company=%s owner=%s",
            error.resource, error.resource_id, error.company_id, error.owner_company_id,
        )
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(ValidationError)
    def _handle_validation(error):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(PermissionDeniedError)
    def _handle_permission(error):
        details = {"required_role": error.required_role} if error.required_role else None
        return api_error(E.FORBIDDEN, str(error), details=details)

    return bp
