"""
TenantModel - Abstract base class for company-scoped models.

A company is the tenant of this platform. Every model that belongs to one
company inherits from TenantModel instead of db.Model directly. This adds:
  - company_id FK column with index
  - query_for_company(company_id) classmethod
"""

from app.models import db


class TenantModel(db.Model):
    """Abstract base for company-scoped tables."""
    __abstract__ = True

    company_id = db.Column(
        db.Integer,
        db.ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_company(cls, company_id):
        """Return a query filtered by company_id."""
        return cls.query.filter_by(company_id=company_id)
