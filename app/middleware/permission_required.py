"""
Role decorators for route protection.

Usage:
    @bp.route("/api/v1/departments", methods=["POST"])
    @require_role("admin")
    def create_department():
        ...

Roles come from the stored user record (g.current_user) rather than the
token, so a demoted admin loses access immediately.
"""

import functools
import logging

from flask import g

from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def require_role(*roles: str):
    """Decorator: require the current user to hold one of ``roles``."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None:
                return api_error(E.UNAUTHORIZED, "Authentication required")
            if user.role not in roles:
                logger.warning("User %d denied: role %s not in %s on %s", user.id, user.role, roles, f.__name__)
                return api_error(E.FORBIDDEN, "Permission denied", details={"required_role": list(roles)})
            return f(*args, **kwargs)
        return decorated
    return decorator
