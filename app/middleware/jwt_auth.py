"""
JWT Auth Middleware: parses the Bearer token and sets g.jwt_*.

    g.jwt_user_id    int user id (``sub``)
    g.jwt_tenant_id  company id
    g.jwt_roles      role list

An absent or invalid token leaves the context empty; tenant_context
rejects the request afterwards.
"""

import logging

import jwt as pyjwt
from flask import g, request

from app.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/jobs/",
)


def init_jwt_middleware(app):
    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_roles = []

        path = request.path
        if not path.startswith("/api/v1/") or path.startswith(JWT_SKIP_PREFIXES):
            return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        try:
            payload = decode_access_token(auth_header[7:])
            g.jwt_user_id = int(payload["sub"])
            g.jwt_tenant_id = payload.get("company_id")
            g.jwt_roles = payload.get("roles", [])
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired token on %s", path)
        except (pyjwt.InvalidTokenError, KeyError, ValueError):
            logger.warning("Invalid token on %s", path)
