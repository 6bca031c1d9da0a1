"""
Membership models - companies, users, departments, department memberships.

A Company is the tenant. Users belong to exactly one company and to any
number of that company's departments through the user_departments join
table (many-to-many, no ownership).
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel


USER_ROLES = {"admin", "instructor", "user"}


# ═══════════════════════════════════════════════════════════════
# 1. COMPANIES
# ═══════════════════════════════════════════════════════════════
class Company(db.Model):
    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    logo_url = db.Column(db.String(500))
    badge_system_enabled = db.Column(db.Boolean, default=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    users = db.relationship("User", back_populates="company", lazy="dynamic")
    departments = db.relationship("Department", back_populates="company", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "logo_url": self.logo_url,
            "badge_system_enabled": self.badge_system_enabled,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. USERS (profiles)
# ═══════════════════════════════════════════════════════════════
class User(TenantModel):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200), default="")
    avatar_url = db.Column(db.String(500))
    role = db.Column(db.String(20), nullable=False, default="user")  # admin, instructor, user
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Same email may exist in different companies
    __table_args__ = (
        db.UniqueConstraint("company_id", "email", name="uq_user_company_email"),
    )

    company = db.relationship("Company", back_populates="users")
    memberships = db.relationship(
        "UserDepartment", back_populates="user", lazy="dynamic", cascade="all, delete-orphan",
    )

    @property
    def department_ids(self) -> set[int]:
        return {m.department_id for m in self.memberships.all()}

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self, include_departments=False):
        d = {
            "id": self.id,
            "company_id": self.company_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_departments:
            d["department_ids"] = sorted(self.department_ids)
        return d


# ═══════════════════════════════════════════════════════════════
# 3. DEPARTMENTS
# ═══════════════════════════════════════════════════════════════
class Department(TenantModel):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("company_id", "name", name="uq_department_company_name"),
    )

    company = db.relationship("Company", back_populates="departments")
    memberships = db.relationship(
        "UserDepartment", back_populates="department", lazy="dynamic", cascade="all, delete-orphan",
    )

    @property
    def member_ids(self) -> set[int]:
        return {m.user_id for m in self.memberships.all()}

    def to_dict(self, include_members=False):
        d = {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "description": self.description,
            "member_count": self.memberships.count(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_members:
            d["member_ids"] = sorted(self.member_ids)
        return d


# ═══════════════════════════════════════════════════════════════
# 4. USER_DEPARTMENTS (Junction table)
# ═══════════════════════════════════════════════════════════════
class UserDepartment(db.Model):
    __tablename__ = "user_departments"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "department_id", name="uq_user_department"),
    )

    user = db.relationship("User", back_populates="memberships")
    department = db.relationship("Department", back_populates="memberships")

    def __repr__(self):
        return f"<UserDepartment user={self.user_id} dept={self.department_id}>"
