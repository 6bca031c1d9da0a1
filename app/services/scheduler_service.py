"""
Training Portal
Scheduler Service.

In-process job registry. The portal does not run its own clock: an external
cron calls ``POST /api/v1/jobs/<name>/run`` (or ``SchedulerService.run_job``)
and every run is recorded in the ScheduledJob table.

    @register_job("deadline_reminders", schedule={"hour": "6", "minute": "0"})
    def send_deadline_reminders(app):
        ...
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_schedules: dict[str, dict] = {}

_DEFAULT_SCHEDULE = {"hour": "0", "minute": "0", "description": "Daily at midnight"}


def register_job(name: str, *, schedule: dict | None = None):
    """Decorator registering ``fn(app) -> dict`` under ``name``."""
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        _job_schedules[name] = schedule or dict(_DEFAULT_SCHEDULE)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


class SchedulerService:
    """Job registration, persistence and execution inside the Flask app context."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        # Importing the module registers its jobs
        from app.services import scheduled_jobs  # noqa: F401

        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        created = []
        for name, fn in _job_registry.items():
            if ScheduledJob.query.filter_by(job_name=name).first():
                continue
            job = ScheduledJob(
                job_name=name,
                description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                schedule_type="cron",
                schedule_config=_job_schedules.get(name, _DEFAULT_SCHEDULE),
                status="active",
                is_enabled=True,
            )
            db.session.add(job)
            created.append(job)
        if created:
            db.session.commit()
            logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name and record the run.

        A job that raises is recorded as failed; the error is returned in
        the result rather than re-raised so the trigger endpoint can report it.
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        cls.ensure_jobs_registered()
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if record is not None and not record.is_enabled:
            logger.info("Job %s skipped: disabled", job_name)
            return {"job_name": job_name, "status": "skipped", "result": None, "error": None}

        start = time.monotonic()
        result = None
        error = None
        status = "success"
        try:
            result = fn(cls._app)
        except Exception as exc:
            db.session.rollback()
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed", job_name)

        duration_ms = int((time.monotonic() - start) * 1000)

        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if record is not None:
            record.record_run(
                status=status,
                duration_ms=duration_ms,
                result=result if isinstance(result, dict) else {"output": str(result)},
                error=error,
            )
            db.session.commit()

        logger.info("Job %s finished: status=%s duration_ms=%d", job_name, status, duration_ms)
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name in _job_registry:
            record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "schedule": _job_schedules.get(name),
                "db_record": record.to_dict() if record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if record is None:
            return None
        record.is_enabled = enabled
        record.status = "active" if enabled else "paused"
        db.session.commit()
        return record.to_dict()
