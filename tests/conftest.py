"""
Shared pytest fixtures for the Training Portal test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: table creation/teardown (session-scoped)
    - session: per-test rollback + table recreate (autouse)
    - client: Flask test client
    - company / other_company: two tenants
    - admin / learner / learner2 / instructor: users of ``company``
    - make_user, make_department, make_program, make_checklist: factories
    - auth_headers: Bearer token headers for a user
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.catalog import Checklist, ChecklistItem, Module, Theme, TrainingProgram
from app.models.company import Company, Department, User, UserDepartment
from app.services.jwt_service import generate_access_token


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    return app.test_client()


# ── Tenants & users ──────────────────────────────────────────────────────


def _company(name, **kw):
    c = Company(name=name, **kw)
    _db.session.add(c)
    _db.session.commit()
    return c


@pytest.fixture()
def company():
    return _company("Acme Corp")


@pytest.fixture()
def other_company():
    return _company("Globex")


@pytest.fixture()
def make_user(company):
    counter = {"n": 0}

    def _make(role="user", *, company_id=None, name=None):
        counter["n"] += 1
        n = counter["n"]
        u = User(
            company_id=company_id or company.id,
            email=f"user{n}@acme.com",
            full_name=name or f"User {n}",
            role=role,
        )
        _db.session.add(u)
        _db.session.commit()
        return u

    return _make


@pytest.fixture()
def admin(make_user):
    return make_user("admin", name="Alice Admin")


@pytest.fixture()
def learner(make_user):
    return make_user("user", name="Lee Learner")


@pytest.fixture()
def learner2(make_user):
    return make_user("user", name="Robin Second")


@pytest.fixture()
def instructor(make_user):
    return make_user("instructor", name="Ira Instructor")


@pytest.fixture()
def make_department(company):
    def _make(name, *, members=(), company_id=None):
        d = Department(company_id=company_id or company.id, name=name)
        _db.session.add(d)
        _db.session.flush()
        for user in members:
            _db.session.add(UserDepartment(user_id=user.id, department_id=d.id))
        _db.session.commit()
        return d

    return _make


# ── Catalog factories ────────────────────────────────────────────────────


@pytest.fixture()
def make_theme(company):
    def _make(name="Onboarding", *, company_id=None):
        t = Theme(company_id=company_id or company.id, name=name)
        _db.session.add(t)
        _db.session.commit()
        return t

    return _make


@pytest.fixture()
def make_program(company):
    """Program with ``modules`` content_section modules (or explicit module specs)."""

    def _make(title="Safety 101", *, modules=2, company_id=None, theme=None, sort_order=0,
              prerequisite_type="none", prerequisite_course_ids=None, deadline_days=14,
              passing_score=80, badge_enabled=True, instructor_id=None):
        p = TrainingProgram(
            company_id=company_id or company.id,
            title=title,
            theme_id=theme.id if theme else None,
            sort_order=sort_order,
            prerequisite_type=prerequisite_type,
            prerequisite_course_ids=prerequisite_course_ids or [],
            deadline_days=deadline_days,
            passing_score=passing_score,
            badge_enabled=badge_enabled,
            instructor_id=instructor_id,
        )
        _db.session.add(p)
        _db.session.flush()
        module_specs = modules if isinstance(modules, list) else [
            {"type": "content_section", "content": {"text": f"Part {i + 1}"}} for i in range(modules)
        ]
        for i, module_spec in enumerate(module_specs):
            _db.session.add(Module(
                program_id=p.id,
                title=module_spec.get("title", f"Module {i + 1}"),
                type=module_spec["type"],
                content=module_spec.get("content", {}),
                order_index=i,
            ))
        _db.session.commit()
        return p

    return _make


@pytest.fixture()
def make_checklist(company):
    def _make(title="First week", *, items=3, company_id=None):
        c = Checklist(company_id=company_id or company.id, title=title)
        _db.session.add(c)
        _db.session.flush()
        for i in range(items):
            _db.session.add(ChecklistItem(checklist_id=c.id, title=f"Item {i + 1}", order_index=i))
        _db.session.commit()
        return c

    return _make


# ── Auth ─────────────────────────────────────────────────────────────────


@pytest.fixture()
def auth_headers():
    def _headers(user):
        token = generate_access_token(user.id, user.company_id, [user.role])
        return {"Authorization": f"Bearer {token}"}

    return _headers
