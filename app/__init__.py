"""
Training Portal
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from app.config import config
from app.middleware.jwt_auth import init_jwt_middleware
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.tenant_context import init_tenant_context
from app.middleware.timing import init_request_timing
from app.models import db
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to the APP_ENV env var, or "development".
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware (order matters) ───────────────────────────────
    init_request_timing(app)
    init_jwt_middleware(app)
    init_tenant_context(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)

    # ── Models (import to register with SQLAlchemy) ──────────────────────
    from app.models import assignment as _assignment_models      # noqa: F401
    from app.models import audit as _audit_models                # noqa: F401
    from app.models import catalog as _catalog_models            # noqa: F401
    from app.models import company as _company_models            # noqa: F401
    from app.models import notification as _notification_models  # noqa: F401
    from app.models import scheduling as _scheduling_models      # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.assignment_bp import assignment_bp
    from app.blueprints.catalog_bp import catalog_bp
    from app.blueprints.departments_bp import departments_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.learning_bp import learning_bp
    from app.blueprints.notification_bp import jobs_bp, notification_bp
    from app.blueprints.reporting_bp import reporting_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(departments_bp)
    app.register_blueprint(catalog_bp)
    app.register_blueprint(assignment_bp)
    app.register_blueprint(learning_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(jobs_bp)
    app.register_blueprint(reporting_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error on %s %s", request.method, request.path, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler (importing the jobs module registers them) ─────────────
    from app.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run a registered scheduled job once (deadline_reminders, ...)."""
        result = SchedulerService.run_job(job_name)
        click.echo(f"{result['job_name']}: {result['status']} {result.get('result') or result.get('error')}")

    return app
