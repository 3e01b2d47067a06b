"""
Improvement proposal service: CRUD plus the approval workflow.

Lifecycle:
    draft → submitted → under_review ⇄ (approved | rejected)
    approved → implementing → completed

Every status change is written as a conditional UPDATE that matches the
status (and, for approvals, the level) the caller read. Losing that race
raises InvariantViolationError instead of resolving a level twice.
"""

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import func, select, update

from audit_engine.core.exceptions import InvariantViolationError, TransitionError, ValidationError
from audit_engine.models import db
from audit_engine.models.audit import write_audit
from audit_engine.models.commonality import (
    PROPOSAL_CATEGORIES,
    PROPOSAL_PRIORITIES,
    PROPOSAL_STATUSES,
    PROPOSAL_TRANSITIONS,
    CommonalityStudy,
    ImprovementProposal,
)
from audit_engine.services.approval_chain import build_chain, levels_for_priority, resolve_level
from audit_engine.services.configuration_service import get_configuration
from audit_engine.services.helpers.numbering import PROPOSAL_PREFIX, generate_number
from audit_engine.services.helpers.scoped_queries import get_scoped
from audit_engine.utils.helpers import parse_datetime, parse_pagination

logger = logging.getLogger(__name__)

_CONTENT_FIELDS = ("title", "description", "category", "priority", "expected_benefits",
                   "estimated_cost_saving", "implementation_effort", "affected_processes",
                   "affected_suppliers", "implementation_steps")
_OUTCOME_FIELDS = ("actual_results", "lessons_learned")


# ═════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════


def _validate(data, *, partial=False):
    if not partial or "title" in data:
        if not isinstance(data.get("title"), str) or not data["title"].strip():
            raise ValidationError("title is required", details={"title": "required"})
    if "category" in data and data["category"] not in PROPOSAL_CATEGORIES:
        raise ValidationError(f"Invalid category: {data['category']}",
                              details={"category": sorted(PROPOSAL_CATEGORIES)})
    if "priority" in data and data["priority"] not in PROPOSAL_PRIORITIES:
        raise ValidationError(f"Invalid priority: {data['priority']}",
                              details={"priority": list(PROPOSAL_PRIORITIES)})
    if data.get("estimated_cost_saving") is not None:
        if isinstance(data["estimated_cost_saving"], bool) or \
                not isinstance(data["estimated_cost_saving"], (int, float)):
            raise ValidationError("estimated_cost_saving must be a number")
    for field in ("affected_processes", "affected_suppliers"):
        if field in data and not isinstance(data[field] or [], list):
            raise ValidationError(f"{field} must be a list")


def _build_steps(steps):
    """Number implementation steps; each starts pending."""
    if steps is None:
        return []
    if not isinstance(steps, list):
        raise ValidationError("implementation_steps must be a list")
    built = []
    for index, step in enumerate(steps, start=1):
        if not isinstance(step, dict) or not step.get("description"):
            raise ValidationError(f"implementation step {index} requires a description")
        due = parse_datetime(step.get("due_date"), "due_date")
        built.append({
            "step": step.get("step") or index,
            "description": step["description"],
            "assigned_to": step.get("assigned_to"),
            "due_date": due.isoformat() if due else None,
            "status": "pending",
            "completed_at": None,
        })
    return built


# ═════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════


def create_proposal(organization_id, user_id, data):
    _validate(data)
    if data.get("commonality_study_id"):
        get_scoped(CommonalityStudy, data["commonality_study_id"], organization_id=organization_id)

    proposal = ImprovementProposal(
        organization_id=organization_id,
        proposal_number=generate_number(PROPOSAL_PREFIX),
        commonality_study_id=data.get("commonality_study_id"),
        title=data["title"].strip(),
        description=data.get("description"),
        category=data.get("category", "process_improvement"),
        priority=data.get("priority", "medium"),
        expected_benefits=data.get("expected_benefits"),
        estimated_cost_saving=data.get("estimated_cost_saving"),
        implementation_effort=data.get("implementation_effort"),
        affected_processes=list(data.get("affected_processes") or []),
        affected_suppliers=list(data.get("affected_suppliers") or []),
        implementation_steps=_build_steps(data.get("implementation_steps")),
        status="draft",
        approval_chain=[],
        current_approval_level=0,
        ai_generated=False,
        created_by=user_id,
    )
    db.session.add(proposal)
    db.session.flush()
    write_audit(entity_type="improvement_proposal", entity_id=proposal.id,
                action="improvement_proposal.create", actor=user_id,
                organization_id=organization_id, diff={"title": proposal.title})
    db.session.commit()
    return proposal


def get_proposal(organization_id, proposal_id):
    return get_scoped(ImprovementProposal, proposal_id, organization_id=organization_id)


def list_proposals(organization_id, filters=None):
    filters = filters or {}
    page, limit = parse_pagination(filters)

    stmt = select(ImprovementProposal).where(ImprovementProposal.organization_id == organization_id)
    for field, allowed in (("status", PROPOSAL_STATUSES), ("category", PROPOSAL_CATEGORIES),
                           ("priority", PROPOSAL_PRIORITIES)):
        value = filters.get(field)
        if value:
            if value not in allowed:
                raise ValidationError(f"Invalid {field}: {value}", details={field: sorted(allowed)})
            stmt = stmt.where(getattr(ImprovementProposal, field) == value)
    if filters.get("commonality_study_id"):
        stmt = stmt.where(ImprovementProposal.commonality_study_id == filters["commonality_study_id"])
    if filters.get("ai_generated") is not None:
        flag = str(filters["ai_generated"]).lower() in ("1", "true", "yes")
        stmt = stmt.where(ImprovementProposal.ai_generated.is_(flag))

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
    items = db.session.execute(
        stmt.order_by(ImprovementProposal.created_at.desc(), ImprovementProposal.id)
        .offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


def update_proposal(organization_id, user_id, proposal_id, data):
    """Content fields are editable in draft only; outcome fields any time."""
    proposal = get_proposal(organization_id, proposal_id)
    _validate(data, partial=True)

    content = [f for f in _CONTENT_FIELDS if f in data]
    if content and proposal.status != "draft":
        raise TransitionError("ImprovementProposal", proposal.id, "update", proposal.status,
                              reason=f"{', '.join(content)} editable in draft only")

    diff = {}
    for field in content + [f for f in _OUTCOME_FIELDS if f in data]:
        value = data[field]
        if field == "implementation_steps":
            value = _build_steps(value)
        elif field in ("affected_processes", "affected_suppliers"):
            value = list(value or [])
        elif field == "title":
            value = value.strip()
        old = getattr(proposal, field)
        if old != value:
            diff[field] = {"old": old, "new": value}
            setattr(proposal, field, value)

    if diff:
        write_audit(entity_type="improvement_proposal", entity_id=proposal.id,
                    action="improvement_proposal.update", actor=user_id,
                    organization_id=organization_id, diff=diff)
    db.session.commit()
    return proposal


# ═════════════════════════════════════════════════════════════════════════
# Workflow
# ═════════════════════════════════════════════════════════════════════════


def _compare_and_set(proposal, *, expected_status, expected_level, values):
    """Apply ``values`` only if status and level still match what was read."""
    result = db.session.execute(
        update(ImprovementProposal)
        .where(
            ImprovementProposal.id == proposal.id,
            ImprovementProposal.organization_id == proposal.organization_id,
            ImprovementProposal.status == expected_status,
            ImprovementProposal.current_approval_level == expected_level,
        )
        .values(updated_at=datetime.now(timezone.utc), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise InvariantViolationError(
            f"ImprovementProposal {proposal.id} changed concurrently; reload and retry",
            resource="ImprovementProposal", resource_id=proposal.id,
        )


def _check_transition(proposal, action):
    rule = PROPOSAL_TRANSITIONS[action]
    if proposal.status not in rule["from"]:
        raise TransitionError("ImprovementProposal", proposal.id, action, proposal.status)
    return rule["to"]


def submit_proposal(organization_id, user_id, proposal_id, data=None):
    """Install the approval chain and move the proposal to ``submitted``.

    Without ``approval_chain`` in ``data`` the organization's configured
    levels applicable to the proposal's priority are used.
    """
    data = data or {}
    proposal = get_proposal(organization_id, proposal_id)
    read_status, read_level = proposal.status, proposal.current_approval_level
    target = _check_transition(proposal, "submit")

    levels = data.get("approval_chain")
    if levels is None:
        configured = get_configuration(organization_id).approval_levels
        levels = levels_for_priority(configured, proposal.priority)
        if not levels:
            raise ValidationError(
                f"No configured approval level applies to {proposal.priority} priority; "
                "send approval_chain explicitly",
                details={"approval_chain": "required", "priority": proposal.priority},
            )
    chain = build_chain(levels)

    _compare_and_set(
        proposal,
        expected_status=read_status,
        expected_level=read_level,
        values={
            "status": target,
            "submitted_at": datetime.now(timezone.utc),
            "submitted_by": user_id,
            "approval_chain": chain,
            "current_approval_level": 1,
        },
    )
    write_audit(entity_type="improvement_proposal", entity_id=proposal.id,
                action="improvement_proposal.submit", actor=user_id,
                organization_id=organization_id, diff={"levels": len(chain)})
    db.session.commit()
    logger.info("Proposal %s submitted with %d approval level(s)", proposal.proposal_number,
                len(chain), extra={"organization_id": organization_id})
    return get_proposal(organization_id, proposal_id)


def approve_proposal(organization_id, user_id, proposal_id, data):
    """Resolve the current approval level.

    Args:
        data: {approved: bool, comments?}

    Raises:
        InvariantViolationError: not under review, level already resolved,
            or another request resolved the level first.
    """
    approved = data.get("approved")
    if not isinstance(approved, bool):
        raise ValidationError("approved must be a boolean", details={"approved": "required"})

    proposal = get_proposal(organization_id, proposal_id)
    read_status, read_level = proposal.status, proposal.current_approval_level
    decision = resolve_level(
        list(proposal.approval_chain or []),
        read_level,
        read_status,
        approved=approved,
        approver_id=user_id,
        comments=data.get("comments"),
    )
    _compare_and_set(
        proposal,
        expected_status=read_status,
        expected_level=read_level,
        values={
            "status": decision.status,
            "approval_chain": decision.chain,
            "current_approval_level": decision.current_level,
        },
    )
    write_audit(entity_type="improvement_proposal", entity_id=proposal.id,
                action="improvement_proposal.approve" if approved else "improvement_proposal.reject",
                actor=user_id, organization_id=organization_id,
                diff={"level": decision.resolved_level, "status": decision.status})
    db.session.commit()
    logger.info("Proposal %s level %d %s", proposal.proposal_number, decision.resolved_level,
                "approved" if approved else "rejected", extra={"organization_id": organization_id})
    return get_proposal(organization_id, proposal_id)


def start_implementation(organization_id, user_id, proposal_id):
    proposal = get_proposal(organization_id, proposal_id)
    read_status, read_level = proposal.status, proposal.current_approval_level
    target = _check_transition(proposal, "start_implementation")
    _compare_and_set(
        proposal,
        expected_status=read_status,
        expected_level=read_level,
        values={"status": target, "implementation_start_date": datetime.now(timezone.utc)},
    )
    write_audit(entity_type="improvement_proposal", entity_id=proposal.id,
                action="improvement_proposal.start_implementation", actor=user_id,
                organization_id=organization_id)
    db.session.commit()
    return get_proposal(organization_id, proposal_id)


def complete_implementation(organization_id, user_id, proposal_id, data=None):
    """Close the implementation and record what it achieved."""
    data = data or {}
    proposal = get_proposal(organization_id, proposal_id)
    read_status, read_level = proposal.status, proposal.current_approval_level
    target = _check_transition(proposal, "complete_implementation")
    _compare_and_set(
        proposal,
        expected_status=read_status,
        expected_level=read_level,
        values={
            "status": target,
            "implementation_end_date": datetime.now(timezone.utc),
            "actual_results": data.get("actual_results", proposal.actual_results),
            "lessons_learned": data.get("lessons_learned", proposal.lessons_learned),
        },
    )
    write_audit(entity_type="improvement_proposal", entity_id=proposal.id,
                action="improvement_proposal.complete", actor=user_id,
                organization_id=organization_id)
    db.session.commit()
    return get_proposal(organization_id, proposal_id)
