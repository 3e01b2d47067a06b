"""Audit task lifecycle service.

Task state machine (see TASK_TRANSITIONS):
    pending → in_progress → completed
    pending | in_progress → cancelled

Findings are children of a task. Completing a task first creates every
supplied finding, then closes the task; deleting a task removes its findings
before the task itself, so no finding ever outlives its task.

Finding analysis is advisory: when the inference call fails the finding is
stored with ``ai_analysis=None`` and no recommendations.

Every lifecycle write appends an AuditLog row. Transaction policy: public
functions commit; ``add_generated_tasks`` only flushes because the risk
service commits it together with the assessment counter.
"""

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, select

from audit_engine.ai import get_gateway, get_prompt_registry
from audit_engine.ai.assistants.finding_analyst import FindingAnalyst
from audit_engine.core.exceptions import TransitionError, ValidationError
from audit_engine.models import db
from audit_engine.models.audit import (
    AUDIT_TYPES,
    FINDING_SEVERITIES,
    FINDING_STATUSES,
    TASK_PRIORITIES,
    TASK_SOURCES,
    TASK_STATUSES,
    TASK_TRANSITIONS,
    AuditFinding,
    AuditTask,
    write_audit,
)
from audit_engine.services.helpers.numbering import FINDING_PREFIX, TASK_PREFIX, generate_number
from audit_engine.services.helpers.scoped_queries import get_scoped
from audit_engine.utils.helpers import parse_datetime, parse_pagination

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "in_progress")

_TASK_SORT_FIELDS = {
    "created_at": AuditTask.created_at,
    "due_date": AuditTask.due_date,
    "priority": AuditTask.priority,
    "risk_score": AuditTask.risk_score,
    "title": AuditTask.title,
}

_TASK_EDITABLE = ("title", "description", "audit_type", "priority", "entity_type",
                  "entity_id", "assigned_to", "due_date", "notes")

_FINDING_EDITABLE = ("title", "description", "severity", "category", "status",
                     "corrective_action", "corrective_action_due_date")


def _analyst(gateway=None):
    return FindingAnalyst(gateway or get_gateway(), get_prompt_registry())


# ═════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════


def _check_choice(value, allowed, field):
    if value not in allowed:
        raise ValidationError(f"Invalid {field}: {value}", details={field: sorted(allowed)})
    return value


def _validate_task_fields(data, *, partial=False):
    if not partial or "title" in data:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required", details={"title": "required"})
        if len(title) > 255:
            raise ValidationError("title must be at most 255 characters")
    if "audit_type" in data:
        _check_choice(data["audit_type"], AUDIT_TYPES, "audit_type")
    if "priority" in data:
        _check_choice(data["priority"], TASK_PRIORITIES, "priority")
    if "risk_score" in data and data["risk_score"] is not None:
        score = data["risk_score"]
        if not isinstance(score, (int, float)) or not 0 <= score <= 100:
            raise ValidationError("risk_score must be between 0 and 100")


def _validate_finding_fields(data, *, partial=False):
    if not partial or "title" in data:
        if not (data.get("title") or "").strip():
            raise ValidationError("finding title is required", details={"title": "required"})
    if not partial or "severity" in data:
        _check_choice(data.get("severity", "minor"), FINDING_SEVERITIES, "severity")
    if "status" in data:
        _check_choice(data["status"], FINDING_STATUSES, "status")
    if "corrective_action_due_date" in data:
        parse_datetime(data["corrective_action_due_date"], "corrective_action_due_date")


# ═════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════


def _build_task(organization_id, user_id, data, *, source, ai_generated=False,
                assessment_id=None, ai_confidence=None, ai_reasoning=None):
    task = AuditTask(
        organization_id=organization_id,
        task_number=generate_number(TASK_PREFIX),
        title=data["title"].strip(),
        description=data.get("description"),
        audit_type=data.get("audit_type", "quality"),
        source=source,
        priority=data.get("priority", "medium"),
        status="pending",
        entity_type=data.get("entity_type"),
        entity_id=data.get("entity_id"),
        assessment_id=assessment_id,
        risk_score=data.get("risk_score"),
        ai_generated=ai_generated,
        ai_confidence=ai_confidence,
        ai_reasoning=ai_reasoning,
        assigned_to=data.get("assigned_to"),
        due_date=parse_datetime(data.get("due_date"), "due_date"),
        notes=data.get("notes"),
        created_by=user_id,
    )
    db.session.add(task)
    db.session.flush()
    write_audit(
        entity_type="audit_task", entity_id=task.id, action="audit_task.create",
        actor=user_id, organization_id=organization_id,
        diff={"source": source, "ai_generated": ai_generated, "priority": task.priority},
    )
    return task


def create_task(organization_id, user_id, data):
    """Create a manual or scheduled task. Always starts pending, never AI-generated."""
    _validate_task_fields(data)
    source = data.get("source", "manual")
    _check_choice(source, TASK_SOURCES - {"risk_assessment"}, "source")

    task = _build_task(organization_id, user_id, data, source=source)
    db.session.commit()
    logger.info("Audit task %s created", task.task_number, extra={"organization_id": organization_id})
    return task


def add_generated_tasks(organization_id, user_id, assessment, proposals):
    """Persist model-proposed tasks for an assessment (flush only).

    Returns:
        List of created AuditTask rows.
    """
    created = []
    for proposal in proposals:
        task = _build_task(
            organization_id, user_id,
            {
                "title": proposal.title,
                "description": proposal.description,
                "audit_type": proposal.audit_type,
                "priority": proposal.priority,
                "risk_score": proposal.risk_score,
                "entity_type": assessment.entity_type,
                "entity_id": assessment.entity_id,
            },
            source="risk_assessment",
            ai_generated=True,
            assessment_id=assessment.id,
            ai_confidence=proposal.ai_confidence,
            ai_reasoning=proposal.ai_reasoning,
        )
        created.append(task)
    return created


def get_task(organization_id, task_id):
    return get_scoped(AuditTask, task_id, organization_id=organization_id)


def list_tasks(organization_id, filters=None):
    """Filtered, paginated task list.

    Returns:
        {items, total, page, limit, total_pages}
    """
    filters = filters or {}
    page, limit = parse_pagination(filters)

    stmt = select(AuditTask).where(AuditTask.organization_id == organization_id)
    for field in ("status", "audit_type", "source", "priority", "assigned_to", "entity_type", "entity_id"):
        if filters.get(field):
            stmt = stmt.where(getattr(AuditTask, field) == filters[field])
    if filters.get("ai_generated") is not None:
        flag = str(filters["ai_generated"]).lower() in ("1", "true", "yes")
        stmt = stmt.where(AuditTask.ai_generated.is_(flag))
    try:
        if filters.get("min_risk_score") is not None:
            stmt = stmt.where(AuditTask.risk_score >= float(filters["min_risk_score"]))
        if filters.get("max_risk_score") is not None:
            stmt = stmt.where(AuditTask.risk_score <= float(filters["max_risk_score"]))
    except (TypeError, ValueError) as exc:
        raise ValidationError("min_risk_score and max_risk_score must be numbers") from exc
    if filters.get("search"):
        term = f"%{filters['search']}%"
        stmt = stmt.where(or_(AuditTask.title.ilike(term), AuditTask.task_number.ilike(term)))

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0

    sort_col = _TASK_SORT_FIELDS.get(filters.get("sort_by", "created_at"), AuditTask.created_at)
    order = sort_col.asc() if filters.get("sort_order") == "asc" else sort_col.desc()
    items = db.session.execute(
        stmt.order_by(order, AuditTask.id).offset((page - 1) * limit).limit(limit)
    ).scalars().all()

    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


def update_task(organization_id, user_id, task_id, data):
    """Update editable fields of an open task. Status moves only via transitions."""
    task = get_task(organization_id, task_id)
    if task.status not in OPEN_STATUSES:
        raise TransitionError("AuditTask", task.id, "update", task.status, "task is closed")
    _validate_task_fields(data, partial=True)

    diff = {}
    for field in _TASK_EDITABLE:
        if field not in data:
            continue
        value = data[field]
        if field == "due_date":
            value = parse_datetime(value, "due_date")
        elif field == "title":
            value = value.strip()
        old = getattr(task, field)
        if old != value:
            diff[field] = {"old": old.isoformat() if isinstance(old, datetime) else old,
                           "new": value.isoformat() if isinstance(value, datetime) else value}
            setattr(task, field, value)

    if diff:
        write_audit(entity_type="audit_task", entity_id=task.id, action="audit_task.update",
                    actor=user_id, organization_id=organization_id, diff=diff)
    db.session.commit()
    return task


def _transition(task, action):
    rule = TASK_TRANSITIONS[action]
    if task.status not in rule["from"]:
        raise TransitionError("AuditTask", task.id, action, task.status)
    old = task.status
    task.status = rule["to"]
    return old


def start_task(organization_id, user_id, task_id):
    task = get_task(organization_id, task_id)
    old = _transition(task, "start")
    write_audit(entity_type="audit_task", entity_id=task.id, action="audit_task.start",
                actor=user_id, organization_id=organization_id,
                diff={"status": {"old": old, "new": task.status}})
    db.session.commit()
    return task


def cancel_task(organization_id, user_id, task_id, reason=None):
    task = get_task(organization_id, task_id)
    old = _transition(task, "cancel")
    if reason:
        task.notes = f"{task.notes}\n{reason}" if task.notes else reason
    write_audit(entity_type="audit_task", entity_id=task.id, action="audit_task.cancel",
                actor=user_id, organization_id=organization_id,
                diff={"status": {"old": old, "new": task.status}, "reason": reason})
    db.session.commit()
    return task


def complete_task(organization_id, user_id, task_id, data=None, *, gateway=None):
    """Create the supplied findings, then close the task.

    Zero findings is a clean audit. All finding payloads are validated before
    anything is written.

    Returns:
        (task, findings)
    """
    data = data or {}
    task = get_task(organization_id, task_id)
    if task.status not in TASK_TRANSITIONS["complete"]["from"]:
        raise TransitionError("AuditTask", task.id, "complete", task.status)

    payloads = data.get("findings") or []
    if not isinstance(payloads, list):
        raise ValidationError("findings must be a list")
    for payload in payloads:
        if not isinstance(payload, dict):
            raise ValidationError("each finding must be an object")
        _validate_finding_fields(payload)

    analyst = _analyst(gateway) if payloads else None
    findings = [_build_finding(organization_id, user_id, task, payload, analyst) for payload in payloads]

    old = _transition(task, "complete")
    task.completed_at = datetime.now(timezone.utc)
    if data.get("notes"):
        task.notes = data["notes"]
    write_audit(entity_type="audit_task", entity_id=task.id, action="audit_task.complete",
                actor=user_id, organization_id=organization_id,
                diff={"status": {"old": old, "new": task.status}, "findings": len(findings)})
    db.session.commit()
    logger.info("Audit task %s completed with %d finding(s)", task.task_number, len(findings),
                extra={"organization_id": organization_id})
    return task, findings


def delete_task(organization_id, user_id, task_id):
    """Delete a task's findings, then the task."""
    task = get_task(organization_id, task_id)
    finding_ids = db.session.execute(
        select(AuditFinding.id).where(AuditFinding.audit_task_id == task.id)
    ).scalars().all()

    db.session.execute(
        delete(AuditFinding)
        .where(AuditFinding.audit_task_id == task.id)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(task, ["findings"])
    write_audit(entity_type="audit_task", entity_id=task.id, action="audit_task.delete",
                actor=user_id, organization_id=organization_id,
                diff={"task_number": task.task_number, "deleted_findings": finding_ids})
    db.session.delete(task)
    db.session.commit()
    logger.info("Audit task %s deleted with %d finding(s)", task.task_number, len(finding_ids),
                extra={"organization_id": organization_id})


def get_task_stats(organization_id):
    """Counts by status, priority, type and source, plus AI-generated and overdue."""
    base = AuditTask.organization_id == organization_id

    def grouped(column):
        rows = db.session.execute(
            select(column, func.count(AuditTask.id)).where(base).group_by(column)
        ).all()
        return {key: count for key, count in rows}

    by_status = grouped(AuditTask.status)
    overdue = db.session.execute(
        select(func.count(AuditTask.id)).where(
            base,
            AuditTask.status.in_(OPEN_STATUSES),
            AuditTask.due_date.isnot(None),
            AuditTask.due_date < datetime.now(timezone.utc),
        )
    ).scalar() or 0
    ai_generated = db.session.execute(
        select(func.count(AuditTask.id)).where(base, AuditTask.ai_generated.is_(True))
    ).scalar() or 0

    return {
        "total": sum(by_status.values()),
        "by_status": {status: by_status.get(status, 0) for status in sorted(TASK_STATUSES)},
        "by_priority": grouped(AuditTask.priority),
        "by_audit_type": grouped(AuditTask.audit_type),
        "by_source": grouped(AuditTask.source),
        "ai_generated": ai_generated,
        "overdue": overdue,
    }


# ═════════════════════════════════════════════════════════════════════════
# Findings
# ═════════════════════════════════════════════════════════════════════════


def _build_finding(organization_id, user_id, task, data, analyst):
    analysis = analyst.analyze(
        title=data["title"],
        description=data.get("description"),
        severity=data.get("severity", "minor"),
        category=data.get("category"),
        organization_id=organization_id,
        user_id=user_id,
    )

    finding = AuditFinding(
        organization_id=organization_id,
        finding_number=generate_number(FINDING_PREFIX),
        audit_task_id=task.id,
        title=data["title"].strip(),
        description=data.get("description"),
        severity=data.get("severity", "minor"),
        category=data.get("category"),
        status="open",
        ai_analysis=analysis.analysis if analysis else None,
        ai_recommendations=list(analysis.recommendations) if analysis else [],
        corrective_action=data.get("corrective_action"),
        corrective_action_due_date=parse_datetime(
            data.get("corrective_action_due_date"), "corrective_action_due_date",
        ),
        created_by=user_id,
    )
    db.session.add(finding)
    db.session.flush()
    write_audit(entity_type="audit_finding", entity_id=finding.id, action="audit_finding.create",
                actor=user_id, organization_id=organization_id,
                diff={"audit_task_id": task.id, "severity": finding.severity,
                      "ai_analysis": analysis is not None})
    return finding


def create_finding(organization_id, user_id, data, *, gateway=None):
    """Create a finding on an existing, non-cancelled task."""
    _validate_finding_fields(data)
    task_id = data.get("audit_task_id")
    if not task_id:
        raise ValidationError("audit_task_id is required", details={"audit_task_id": "required"})
    task = get_task(organization_id, task_id)
    if task.status == "cancelled":
        raise TransitionError("AuditTask", task.id, "add_finding", task.status)

    finding = _build_finding(organization_id, user_id, task, data, _analyst(gateway))
    db.session.commit()
    return finding


def get_finding(organization_id, finding_id):
    return get_scoped(AuditFinding, finding_id, organization_id=organization_id)


def list_findings(organization_id, task_id=None, filters=None):
    filters = filters or {}
    stmt = select(AuditFinding).where(AuditFinding.organization_id == organization_id)
    if task_id:
        get_task(organization_id, task_id)
        stmt = stmt.where(AuditFinding.audit_task_id == task_id)
    for field in ("severity", "status", "category"):
        if filters.get(field):
            stmt = stmt.where(getattr(AuditFinding, field) == filters[field])
    return db.session.execute(
        stmt.order_by(AuditFinding.created_at.desc(), AuditFinding.id)
    ).scalars().all()


def update_finding(organization_id, user_id, finding_id, data):
    finding = get_finding(organization_id, finding_id)
    _validate_finding_fields(data, partial=True)

    diff = {}
    for field in _FINDING_EDITABLE:
        if field not in data:
            continue
        value = data[field]
        if field == "corrective_action_due_date":
            value = parse_datetime(value, field)
        old = getattr(finding, field)
        if old != value:
            diff[field] = {"old": old.isoformat() if isinstance(old, datetime) else old,
                           "new": value.isoformat() if isinstance(value, datetime) else value}
            setattr(finding, field, value)

    if diff:
        write_audit(entity_type="audit_finding", entity_id=finding.id, action="audit_finding.update",
                    actor=user_id, organization_id=organization_id, diff=diff)
    db.session.commit()
    return finding
