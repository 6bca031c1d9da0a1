"""
Rate limiting configuration.

The Limiter instance is created in app/__init__.py with no default limits;
this module applies limits per blueprint once they are registered.

Limits (per remote IP):
    - Cron job trigger: 10/minute (unauthenticated surface guarded by a shared secret)
    - Write-heavy admin APIs: 120/minute
    - Learner and read APIs: 300/minute
    - Health check: exempt

Disabled when RATELIMIT_ENABLED is false (testing).
"""

import logging

logger = logging.getLogger(__name__)

JOB_TRIGGER_LIMIT = "10/minute"
WRITE_LIMIT = "120/minute"
READ_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    if not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (RATELIMIT_ENABLED=False)")
        return

    bp = app.blueprints.get("jobs")
    if bp:
        limiter.limit(JOB_TRIGGER_LIMIT)(bp)

    for bp_name in ("departments", "catalog", "assignments"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in ("learning", "notification", "reporting"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    logger.info("Rate limiter configured: jobs=%s write=%s read=%s", JOB_TRIGGER_LIMIT, WRITE_LIMIT, READ_LIMIT)
