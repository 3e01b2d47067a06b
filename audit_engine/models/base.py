"""
OrganizationModel — Abstract base class for organization-scoped aggregates.

Every audit aggregate inherits from OrganizationModel instead of db.Model
directly. This adds:
  - opaque UUID string primary key
  - organization_id column with index
  - query_for_organization(organization_id) classmethod
  - created_at / updated_at timestamps
"""

import uuid
from datetime import datetime, timezone

from audit_engine.models import db


def _uuid():
    """Generate a UUID4 string for primary keys."""
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def iso(value):
    """Serialise an optional datetime for to_dict()."""
    return value.isoformat() if value else None


class OrganizationModel(db.Model):
    """Abstract base for organization-scoped tables."""
    __abstract__ = True

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    organization_id = db.Column(db.String(64), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    @classmethod
    def query_for_organization(cls, organization_id):
        """Return a query filtered by organization_id."""
        return cls.query.filter_by(organization_id=organization_id)

