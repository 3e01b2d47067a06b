"""
Organization-scoped query helpers.

Every get-by-id in the engine goes through ``get_scoped`` instead of
``db.session.get(Model, pk)``. A record owned by another organization is
indistinguishable from a missing one: both raise NotFoundError.

Usage:
    task = get_scoped(AuditTask, task_id, organization_id=organization_id)
"""

from sqlalchemy import select

from audit_engine.core.exceptions import NotFoundError
from audit_engine.models import db


def get_scoped(model, pk, *, organization_id: str, **extra_filters):
    """Fetch a single entity by PK within an organization.

    Args:
        model: OrganizationModel subclass.
        pk: Primary key value.
        organization_id: Owning organization; required.
        **extra_filters: Additional equality filters (e.g. user_id=...).

    Raises:
        ValueError: organization_id missing (unscoped lookups are a bug).
        NotFoundError: no such record in this organization.
    """
    if not organization_id:
        raise ValueError(f"{model.__name__} id={pk} requires organization_id")

    stmt = select(model).where(model.id == pk, model.organization_id == organization_id)
    for field, value in extra_filters.items():
        stmt = stmt.where(getattr(model, field) == value)

    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(resource=model.__name__, resource_id=pk, organization_id=organization_id)
    return obj
