"""
Tenant Context Middleware: every API request acts inside one company.

Chain order:
  jwt_auth.py  →  tenant_context.py  →  route handler

The token's company must exist and be active, and the token's user must be
an active member of it. g.company and g.current_user are set for handlers.
"""

import logging

from flask import g, request

from app.models import db
from app.models.company import Company, User
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/jobs/",
)


def init_tenant_context(app):
    @app.before_request
    def _tenant_context():
        g.company = None
        g.current_user = None

        if request.method == "OPTIONS" or not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith(TENANT_SKIP_PREFIXES):
            return None

        company_id = getattr(g, "jwt_tenant_id", None)
        user_id = getattr(g, "jwt_user_id", None)
        if company_id is None or user_id is None:
            return api_error(E.UNAUTHORIZED, "Authentication required")

        company = db.session.get(Company, company_id)
        if company is None or not company.is_active:
            logger.warning("Token company %s missing or inactive", company_id)
            return api_error(E.FORBIDDEN, "Company not found or inactive")

        user = db.session.get(User, user_id)
        if user is None or user.company_id != company.id or not user.is_active:
            logger.warning("Token user %s does not belong to company %s", user_id, company_id)
            return api_error(E.FORBIDDEN, "User not found or inactive")

        g.company = company
        g.current_user = user
        return None
