"""
Commonality study service.

Runs the commonality agent and persists its outcome. A study is written
once, after the loop has finished, with ``status=completed``; a run that
raises leaves nothing behind. Study sign-off (``approve_study``) is a
single decision, unrelated to the proposal approval chain.
"""

import logging
import math
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, select

from audit_engine.ai import get_gateway, get_prompt_registry
from audit_engine.ai.assistants.commonality_agent import CommonalityAgent
from audit_engine.core.exceptions import ValidationError
from audit_engine.models import db
from audit_engine.models.audit import write_audit
from audit_engine.models.commonality import (
    STUDY_APPROVAL_STATUSES,
    STUDY_STATUSES,
    STUDY_TYPES,
    CommonalityStudy,
)
from audit_engine.services.helpers.numbering import STUDY_PREFIX, generate_number
from audit_engine.services.helpers.scoped_queries import get_scoped
from audit_engine.utils.helpers import parse_datetime, parse_pagination

logger = logging.getLogger(__name__)


def _iteration_bound(requested):
    """Caller-supplied bound, defaulted and capped by the hard limit."""
    cfg = current_app.config
    if requested is None:
        return cfg["AUDIT_REACT_MAX_ITERATIONS"]
    if isinstance(requested, bool) or not isinstance(requested, int) or requested < 1:
        raise ValidationError("max_iterations must be a positive integer",
                              details={"max_iterations": requested})
    return min(requested, cfg["AUDIT_REACT_HARD_LIMIT"])


def run_commonality_analysis(organization_id, user_id, data, *, gateway=None, agent=None):
    """Investigate cross-entity patterns and persist the study.

    Args:
        data: {title, study_type, description?, entity_filters?,
               analysis_start_date?, analysis_end_date?, max_iterations?,
               requires_approval?}
        agent: optional pre-built CommonalityAgent (tests inject a clock).
    """
    if not isinstance(data.get("title"), str) or not data["title"].strip():
        raise ValidationError("title is required", details={"title": "required"})
    study_type = data.get("study_type", "defect")
    if study_type not in STUDY_TYPES:
        raise ValidationError(f"Invalid study_type: {study_type}", details={"study_type": sorted(STUDY_TYPES)})
    filters = data.get("entity_filters")
    if filters is not None and not isinstance(filters, dict):
        raise ValidationError("entity_filters must be an object")
    start = parse_datetime(data.get("analysis_start_date"), "analysis_start_date")
    end = parse_datetime(data.get("analysis_end_date"), "analysis_end_date")
    if start and end and start > end:
        raise ValidationError("analysis_start_date must not be after analysis_end_date")
    max_iterations = _iteration_bound(data.get("max_iterations"))

    agent = agent or CommonalityAgent(gateway or get_gateway(), get_prompt_registry())
    run = agent.run(
        study_type=study_type,
        filters=filters,
        organization_id=organization_id,
        user_id=user_id,
        max_iterations=max_iterations,
        wall_clock_seconds=current_app.config["AUDIT_REACT_WALL_CLOCK_SECONDS"],
    )

    synthesis = run.synthesis
    study = CommonalityStudy(
        organization_id=organization_id,
        study_number=generate_number(STUDY_PREFIX),
        title=data["title"].strip(),
        description=data.get("description"),
        study_type=study_type,
        analysis_start_date=start,
        analysis_end_date=end,
        entity_filters=filters,
        react_trace=list(run.trace),
        stop_reason=run.stop_reason,
        patterns_found=list(synthesis.patterns),
        recommendations=list(synthesis.recommendations),
        supplier_insights=[i.model_dump(by_alias=True) for i in synthesis.supplier_insights],
        variant_analysis=synthesis.variant_analysis,
        status="completed",
        requires_approval=bool(data.get("requires_approval", True)),
        approval_status="pending",
        created_by=user_id,
    )
    db.session.add(study)
    db.session.flush()
    write_audit(entity_type="commonality_study", entity_id=study.id, action="commonality_study.create",
                actor=user_id, organization_id=organization_id,
                diff={"steps": len(run.trace), "stop_reason": run.stop_reason})
    db.session.commit()
    logger.info("Commonality study %s completed in %d step(s) (%s)", study.study_number,
                len(run.trace), run.stop_reason, extra={"organization_id": organization_id})
    return study


def approve_study(organization_id, user_id, study_id, data):
    """Record the single sign-off decision on a study."""
    study = get_study(organization_id, study_id)
    approved = data.get("approved")
    if not isinstance(approved, bool):
        raise ValidationError("approved must be a boolean", details={"approved": "required"})

    study.approval_status = "approved" if approved else "rejected"
    study.approved_by = user_id
    study.approved_at = datetime.now(timezone.utc)
    study.approval_comments = data.get("comments")
    write_audit(entity_type="commonality_study", entity_id=study.id, action="commonality_study.approve",
                actor=user_id, organization_id=organization_id,
                diff={"approval_status": study.approval_status})
    db.session.commit()
    return study


def get_study(organization_id, study_id):
    return get_scoped(CommonalityStudy, study_id, organization_id=organization_id)


def list_studies(organization_id, filters=None):
    filters = filters or {}
    page, limit = parse_pagination(filters)

    stmt = select(CommonalityStudy).where(CommonalityStudy.organization_id == organization_id)
    for field, allowed in (("study_type", STUDY_TYPES), ("status", STUDY_STATUSES),
                           ("approval_status", STUDY_APPROVAL_STATUSES)):
        value = filters.get(field)
        if value:
            if value not in allowed:
                raise ValidationError(f"Invalid {field}: {value}", details={field: sorted(allowed)})
            stmt = stmt.where(getattr(CommonalityStudy, field) == value)
    if filters.get("created_by"):
        stmt = stmt.where(CommonalityStudy.created_by == filters["created_by"])

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
    items = db.session.execute(
        stmt.order_by(CommonalityStudy.created_at.desc(), CommonalityStudy.id)
        .offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


def get_supplier_insights(organization_id, supplier_id=None):
    """Supplier insights across completed studies, one per supplier.

    The first insight seen (oldest study first) is kept and ``study_count``
    counts the studies mentioning the supplier.
    """
    studies = db.session.execute(
        select(CommonalityStudy)
        .where(CommonalityStudy.organization_id == organization_id,
               CommonalityStudy.status == "completed")
        .order_by(CommonalityStudy.created_at, CommonalityStudy.id)
    ).scalars().all()

    insights = {}
    for study in studies:
        for insight in study.supplier_insights or []:
            key = insight.get("supplierId") if isinstance(insight, dict) else None
            if not key or (supplier_id and key != supplier_id):
                continue
            if key in insights:
                insights[key]["study_count"] += 1
            else:
                insights[key] = {**insight, "study_count": 1}
    return list(insights.values())
