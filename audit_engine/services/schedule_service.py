"""
Audit schedule registry.

Schedules are bookkeeping only: an external trigger (cron, queue) invokes
the engine operation named by ``schedule_type`` with the stored ``config``
and reports the outcome through ``record_schedule_run``.

Usage:
    from audit_engine.services.schedule_service import record_schedule_run

    record_schedule_run(org_id, schedule_id, "success", {"assessment_id": "..."})
"""

import calendar
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from audit_engine.core.exceptions import ValidationError
from audit_engine.models import db
from audit_engine.models.scheduling import (
    RUN_STATUSES,
    SCHEDULE_FREQUENCIES,
    SCHEDULE_TYPES,
    AuditSchedule,
)
from audit_engine.services.helpers.scoped_queries import get_scoped
from audit_engine.utils.helpers import as_utc

logger = logging.getLogger(__name__)

_MONTHS_PER_FREQUENCY = {"monthly": 1, "quarterly": 3}
_DAYS_PER_FREQUENCY = {"daily": 1, "weekly": 7}

_EDITABLE = ("name", "description", "schedule_type", "frequency", "config", "is_active")


def _add_months(moment, months):
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_run_after(moment, frequency):
    """Next run time one ``frequency`` period after ``moment``.

    Month-based periods keep the day of month, clamped to the month's length.
    """
    if frequency in _DAYS_PER_FREQUENCY:
        return moment + timedelta(days=_DAYS_PER_FREQUENCY[frequency])
    if frequency in _MONTHS_PER_FREQUENCY:
        return _add_months(moment, _MONTHS_PER_FREQUENCY[frequency])
    raise ValidationError(f"Invalid frequency: {frequency}", details={"frequency": sorted(SCHEDULE_FREQUENCIES)})


def _validate(data, *, partial=False):
    if not partial or "name" in data:
        if not isinstance(data.get("name"), str) or not data["name"].strip():
            raise ValidationError("name is required", details={"name": "required"})
    if "schedule_type" in data and data["schedule_type"] not in SCHEDULE_TYPES:
        raise ValidationError(f"Invalid schedule_type: {data['schedule_type']}",
                              details={"schedule_type": sorted(SCHEDULE_TYPES)})
    if "frequency" in data and data["frequency"] not in SCHEDULE_FREQUENCIES:
        raise ValidationError(f"Invalid frequency: {data['frequency']}",
                              details={"frequency": sorted(SCHEDULE_FREQUENCIES)})
    if "config" in data and not isinstance(data["config"], dict):
        raise ValidationError("config must be an object")


def create_schedule(organization_id, user_id, data):
    _validate(data)
    schedule = AuditSchedule(
        organization_id=organization_id,
        name=data["name"].strip(),
        description=data.get("description"),
        schedule_type=data.get("schedule_type", "risk_assessment"),
        frequency=data.get("frequency", "monthly"),
        config=dict(data.get("config") or {}),
        is_active=True,
        run_count=0,
        created_by=user_id,
    )
    db.session.add(schedule)
    db.session.commit()
    logger.info("Audit schedule created: %s (%s)", schedule.name, schedule.frequency,
                extra={"organization_id": organization_id})
    return schedule


def get_schedule(organization_id, schedule_id):
    return get_scoped(AuditSchedule, schedule_id, organization_id=organization_id)


def list_schedules(organization_id, filters=None):
    filters = filters or {}
    stmt = select(AuditSchedule).where(AuditSchedule.organization_id == organization_id)
    if filters.get("schedule_type"):
        stmt = stmt.where(AuditSchedule.schedule_type == filters["schedule_type"])
    if filters.get("is_active") is not None:
        active = str(filters["is_active"]).lower() in ("1", "true", "yes")
        stmt = stmt.where(AuditSchedule.is_active.is_(active))
    return db.session.execute(
        stmt.order_by(AuditSchedule.created_at.desc(), AuditSchedule.id)
    ).scalars().all()


def update_schedule(organization_id, schedule_id, data):
    schedule = get_schedule(organization_id, schedule_id)
    _validate(data, partial=True)
    for field in _EDITABLE:
        if field not in data:
            continue
        value = data[field]
        if field == "name":
            value = value.strip()
        elif field == "config":
            value = dict(value)
        elif field == "is_active":
            value = bool(value)
        setattr(schedule, field, value)

    if "frequency" in data and schedule.last_run_at is not None:
        schedule.next_run_at = next_run_after(as_utc(schedule.last_run_at), schedule.frequency)
    db.session.commit()
    return schedule


def delete_schedule(organization_id, schedule_id):
    schedule = get_schedule(organization_id, schedule_id)
    db.session.delete(schedule)
    db.session.commit()


def record_schedule_run(organization_id, schedule_id, status, result=None, *, ran_at=None):
    """Book one run reported by the external trigger."""
    if status not in RUN_STATUSES:
        raise ValidationError(f"Invalid run status: {status}", details={"status": sorted(RUN_STATUSES)})
    if result is not None and not isinstance(result, dict):
        raise ValidationError("result must be an object")

    schedule = get_schedule(organization_id, schedule_id)
    ran_at = as_utc(ran_at) if ran_at else datetime.now(timezone.utc)
    schedule.run_count = AuditSchedule.run_count + 1
    schedule.last_run_at = ran_at
    schedule.last_run_status = status
    schedule.last_run_result = result
    schedule.next_run_at = next_run_after(ran_at, schedule.frequency)
    db.session.commit()

    if status != "success":
        logger.warning("Scheduled %s run '%s' reported %s", schedule.schedule_type, schedule.name, status,
                       extra={"organization_id": organization_id})
    return schedule
