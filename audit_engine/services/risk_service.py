"""Risk data store and risk scoring service.

Data points are append-only signals. ``run_assessment`` scores a bounded
window of them; the assessment is always created, with neutral scores
(all 50) when scoring is unavailable. A new assessment supersedes the
previous active one for the same (type, entity).

``generate_tasks_from_assessment`` increments ``tasks_generated`` by the
number of tasks actually created, using an atomic column update.
"""

import logging
import math
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import func, select, update

from audit_engine.ai import get_gateway, get_prompt_registry
from audit_engine.ai.assistants.risk_scorer import RiskScorer
from audit_engine.core.exceptions import ValidationError
from audit_engine.models import db
from audit_engine.models.risk import ASSESSMENT_STATUSES, ASSESSMENT_TYPES, RiskAssessment, RiskDataPoint
from audit_engine.services import audit_task_service
from audit_engine.services.configuration_service import get_configuration
from audit_engine.services.helpers.numbering import ASSESSMENT_PREFIX, generate_number
from audit_engine.services.helpers.scoped_queries import get_scoped
from audit_engine.utils.helpers import parse_datetime, parse_pagination

logger = logging.getLogger(__name__)

AI_MODEL_VERSION = "1.0"
HIGH_RISK_SCORE = 70
AUTO_GENERATE_MAX_TASKS = 5
DEFAULT_MAX_TASKS = 5


def _scorer(gateway=None):
    return RiskScorer(gateway or get_gateway(), get_prompt_registry())


# ═════════════════════════════════════════════════════════════════════════
# Risk data points
# ═════════════════════════════════════════════════════════════════════════


def add_data_point(organization_id, data):
    """Append one operational signal."""
    missing = [f for f in ("entity_type", "entity_id", "metric_name") if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}",
                              details={f: "required" for f in missing})
    value = data.get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ValidationError("value must be a number", details={"value": "number"})

    point = RiskDataPoint(
        organization_id=organization_id,
        entity_type=data["entity_type"],
        entity_id=str(data["entity_id"]),
        metric_name=data["metric_name"],
        value=float(value),
        unit=data.get("unit"),
        source=data.get("source"),
        timestamp=parse_datetime(data.get("timestamp"), "timestamp") or datetime.now(timezone.utc),
        processed=False,
    )
    db.session.add(point)
    db.session.commit()
    return point


def _data_point_query(organization_id, *, entity_type=None, entity_id=None,
                      metric_name=None, start=None, end=None):
    stmt = select(RiskDataPoint).where(RiskDataPoint.organization_id == organization_id)
    if entity_type:
        stmt = stmt.where(RiskDataPoint.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(RiskDataPoint.entity_id == entity_id)
    if metric_name:
        stmt = stmt.where(RiskDataPoint.metric_name == metric_name)
    if start:
        stmt = stmt.where(RiskDataPoint.timestamp >= start)
    if end:
        stmt = stmt.where(RiskDataPoint.timestamp <= end)
    return stmt


def list_data_points(organization_id, filters=None):
    """Data points ordered by timestamp, oldest first."""
    filters = filters or {}
    _, limit = parse_pagination(filters, default_limit=100, max_limit=1000)
    stmt = _data_point_query(
        organization_id,
        entity_type=filters.get("entity_type"),
        entity_id=filters.get("entity_id"),
        metric_name=filters.get("metric_name"),
        start=parse_datetime(filters.get("start"), "start"),
        end=parse_datetime(filters.get("end"), "end"),
    )
    return db.session.execute(
        stmt.order_by(RiskDataPoint.timestamp.asc(), RiskDataPoint.id).limit(limit)
    ).scalars().all()


# ═════════════════════════════════════════════════════════════════════════
# Assessments
# ═════════════════════════════════════════════════════════════════════════


def _describe_entity(entity_type, entity_id):
    if entity_type and entity_id:
        return f"{entity_type} {entity_id}"
    return entity_type or "all entities"


def _describe_period(start, end):
    if not start and not end:
        return "not specified"
    return f"{start.isoformat() if start else 'open'} to {end.isoformat() if end else 'now'}"


def _supersede_previous(organization_id, assessment_type, entity_type, entity_id):
    stmt = update(RiskAssessment).where(
        RiskAssessment.organization_id == organization_id,
        RiskAssessment.assessment_type == assessment_type,
        RiskAssessment.status == "active",
    )
    stmt = stmt.where(RiskAssessment.entity_type == entity_type if entity_type
                      else RiskAssessment.entity_type.is_(None))
    stmt = stmt.where(RiskAssessment.entity_id == entity_id if entity_id
                      else RiskAssessment.entity_id.is_(None))
    result = db.session.execute(
        stmt.values(status="superseded").execution_options(synchronize_session=False)
    )
    return result.rowcount


def run_assessment(organization_id, user_id, data, *, gateway=None):
    """Score a window of data points and persist a RiskAssessment.

    Args:
        data: {assessment_type, entity_type?, entity_id?, period_start?, period_end?}

    Returns:
        RiskAssessment (committed).
    """
    assessment_type = data.get("assessment_type", "periodic")
    if assessment_type not in ASSESSMENT_TYPES:
        raise ValidationError(f"Invalid assessment_type: {assessment_type}",
                              details={"assessment_type": sorted(ASSESSMENT_TYPES)})
    entity_type = data.get("entity_type")
    entity_id = data.get("entity_id")
    period_start = parse_datetime(data.get("period_start"), "period_start")
    period_end = parse_datetime(data.get("period_end"), "period_end")
    if period_start and period_end and period_start > period_end:
        raise ValidationError("period_start must be before period_end")

    config = get_configuration(organization_id)
    cap = current_app.config["AUDIT_RISK_DATA_POINT_LIMIT"]
    points = db.session.execute(
        _data_point_query(organization_id, entity_type=entity_type, entity_id=entity_id,
                          start=period_start, end=period_end)
        .order_by(RiskDataPoint.timestamp.desc(), RiskDataPoint.id)
        .limit(cap)
    ).scalars().all()

    result, degraded = _scorer(gateway).score(
        points,
        organization_id=organization_id,
        user_id=user_id,
        assessment_type=assessment_type,
        entity=_describe_entity(entity_type, entity_id),
        period=_describe_period(period_start, period_end),
        weights=dict(config.risk_score_weights),
        prompt_points=current_app.config["AUDIT_RISK_PROMPT_POINTS"],
    )

    superseded = _supersede_previous(organization_id, assessment_type, entity_type, entity_id)

    assessment = RiskAssessment(
        organization_id=organization_id,
        assessment_number=generate_number(ASSESSMENT_PREFIX),
        assessment_type=assessment_type,
        entity_type=entity_type,
        entity_id=entity_id,
        assessment_date=datetime.now(timezone.utc),
        period_start=period_start,
        period_end=period_end,
        overall_risk_score=result.overall_score,
        quality_risk_score=result.quality_score,
        process_risk_score=result.process_score,
        supplier_risk_score=result.supplier_score,
        compliance_risk_score=result.compliance_score,
        risk_factors=[f.model_dump() for f in result.factors],
        ai_analysis=result.analysis,
        recommendations=list(result.recommendations),
        suggested_resources=[r.model_dump(exclude_none=True) for r in result.suggested_resources],
        input_data={"dataPointsCount": len(points)},
        ai_model_version=AI_MODEL_VERSION,
        degraded=degraded,
        tasks_generated=0,
        status="active",
        created_by=user_id,
    )
    db.session.add(assessment)
    db.session.commit()
    logger.info(
        "Risk assessment %s created: overall=%.1f points=%d superseded=%d degraded=%s",
        assessment.assessment_number, assessment.overall_risk_score, len(points), superseded, degraded,
        extra={"organization_id": organization_id},
    )

    if config.auto_generate_tasks and assessment.overall_risk_score >= config.auto_generate_threshold:
        generate_tasks_from_assessment(
            organization_id, user_id,
            {
                "assessment_id": assessment.id,
                "min_risk_score": config.auto_generate_threshold,
                "max_tasks": AUTO_GENERATE_MAX_TASKS,
            },
            gateway=gateway,
        )
        db.session.refresh(assessment)
    return assessment


def generate_tasks_from_assessment(organization_id, user_id, data, *, gateway=None):
    """Create up to ``max_tasks`` AI-generated tasks from an assessment.

    Returns:
        List of created AuditTask rows (possibly empty).
    """
    assessment_id = data.get("assessment_id")
    if not assessment_id:
        raise ValidationError("assessment_id is required", details={"assessment_id": "required"})
    try:
        min_risk_score = float(data.get("min_risk_score", HIGH_RISK_SCORE))
        max_tasks = int(data.get("max_tasks", DEFAULT_MAX_TASKS))
    except (TypeError, ValueError) as exc:
        raise ValidationError("min_risk_score and max_tasks must be numbers") from exc
    if max_tasks < 0 or not 0 <= min_risk_score <= 100:
        raise ValidationError("max_tasks must be >= 0 and min_risk_score within 0-100")

    assessment = get_assessment(organization_id, assessment_id)
    proposals = _scorer(gateway).propose_tasks(
        assessment,
        organization_id=organization_id,
        user_id=user_id,
        min_risk_score=min_risk_score,
        max_tasks=max_tasks,
    )

    created = audit_task_service.add_generated_tasks(organization_id, user_id, assessment, proposals)
    if created:
        db.session.execute(
            update(RiskAssessment)
            .where(RiskAssessment.id == assessment.id,
                   RiskAssessment.organization_id == organization_id)
            .values(tasks_generated=RiskAssessment.tasks_generated + len(created))
            .execution_options(synchronize_session=False)
        )
    db.session.commit()
    db.session.refresh(assessment)
    logger.info("Generated %d task(s) from %s", len(created), assessment.assessment_number,
                extra={"organization_id": organization_id})
    return created


def get_assessment(organization_id, assessment_id):
    return get_scoped(RiskAssessment, assessment_id, organization_id=organization_id)


def list_assessments(organization_id, filters=None):
    """Newest-first, filtered, paginated assessment list.

    Returns:
        {items, total, page, limit, total_pages}
    """
    filters = filters or {}
    page, limit = parse_pagination(filters)

    stmt = select(RiskAssessment).where(RiskAssessment.organization_id == organization_id)
    if filters.get("assessment_type"):
        stmt = stmt.where(RiskAssessment.assessment_type == filters["assessment_type"])
    if filters.get("status"):
        if filters["status"] not in ASSESSMENT_STATUSES:
            raise ValidationError(f"Invalid status: {filters['status']}")
        stmt = stmt.where(RiskAssessment.status == filters["status"])
    if filters.get("entity_id"):
        stmt = stmt.where(RiskAssessment.entity_id == filters["entity_id"])
    try:
        if filters.get("min_score") is not None:
            stmt = stmt.where(RiskAssessment.overall_risk_score >= float(filters["min_score"]))
        if filters.get("max_score") is not None:
            stmt = stmt.where(RiskAssessment.overall_risk_score <= float(filters["max_score"]))
    except (TypeError, ValueError) as exc:
        raise ValidationError("min_score and max_score must be numbers") from exc

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
    items = db.session.execute(
        stmt.order_by(RiskAssessment.assessment_date.desc(), RiskAssessment.id)
        .offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


def get_risk_dashboard(organization_id):
    """Recent assessments, 30-day daily average trend, and top high-risk items."""
    thresholds = dict(get_configuration(organization_id).risk_thresholds)
    base = RiskAssessment.organization_id == organization_id

    recent = db.session.execute(
        select(RiskAssessment).where(base)
        .order_by(RiskAssessment.assessment_date.desc(), RiskAssessment.id).limit(5)
    ).scalars().all()

    day = func.date(RiskAssessment.assessment_date)
    since = datetime.now(timezone.utc) - timedelta(days=30)
    trend_rows = db.session.execute(
        select(day.label("day"),
               func.avg(RiskAssessment.overall_risk_score),
               func.count(RiskAssessment.id))
        .where(base, RiskAssessment.assessment_date >= since)
        .group_by(day).order_by(day)
    ).all()

    high = db.session.execute(
        select(RiskAssessment)
        .where(base, RiskAssessment.overall_risk_score >= HIGH_RISK_SCORE)
        .order_by(RiskAssessment.overall_risk_score.desc(), RiskAssessment.id).limit(10)
    ).scalars().all()

    return {
        "recent_assessments": [a.to_dict(thresholds) for a in recent],
        "risk_trend": [
            {"date": str(row[0]), "average_score": round(float(row[1]), 2), "count": row[2]}
            for row in trend_rows
        ],
        "high_risk_items": [a.to_dict(thresholds) for a in high],
    }
