"""Compliance copilot and compliance check service.

Chat:
    - a new conversation stores the copilot preamble and a title taken from
      the first user message (never overwritten afterwards)
    - an existing conversation must belong to the caller's organization AND
      user, otherwise NotFoundError
    - up to AUDIT_COPILOT_CONTEXT_DOCS knowledge entries are retrieved for
      the message (bumping their usage counters) and injected as context
    - the reply always exists: inference failure yields an apology
    - the transcript holds user/assistant turns only, appended in order

Compliance checks are write-once snapshots; on degradation the neutral
verdict (partially_compliant, 75) is stored.
"""

import logging
import math
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, select

from audit_engine.ai import get_gateway, get_prompt_registry
from audit_engine.ai.assistants.compliance_auditor import ComplianceAuditor
from audit_engine.ai.conversation import ComplianceCopilot
from audit_engine.core.exceptions import ValidationError
from audit_engine.models import db
from audit_engine.models.compliance import CHECK_STATUSES, ComplianceCheck, ComplianceConversation
from audit_engine.services import knowledge_service
from audit_engine.services.configuration_service import get_configuration
from audit_engine.services.helpers.numbering import CHECK_PREFIX, generate_number
from audit_engine.services.helpers.scoped_queries import get_scoped
from audit_engine.utils.helpers import parse_pagination

logger = logging.getLogger(__name__)


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


# ═════════════════════════════════════════════════════════════════════════
# Copilot
# ═════════════════════════════════════════════════════════════════════════


def chat(organization_id, user_id, data, *, gateway=None):
    """Run one copilot turn.

    Args:
        data: {message, conversation_id?, context?}

    Returns:
        {conversation_id, message, sources, degraded}
    """
    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("message is required", details={"message": "required"})
    message = message.strip()
    if data.get("context") is not None and not isinstance(data["context"], dict):
        raise ValidationError("context must be an object")

    gateway = gateway or get_gateway()
    copilot = ComplianceCopilot(gateway, get_prompt_registry())

    conversation = None
    if data.get("conversation_id"):
        conversation = get_conversation(organization_id, user_id, data["conversation_id"])

    hits = knowledge_service.search(
        organization_id,
        {"query": message, "limit": current_app.config["AUDIT_COPILOT_CONTEXT_DOCS"]},
    )

    if conversation is None:
        conversation = ComplianceConversation(
            organization_id=organization_id,
            user_id=user_id,
            title=copilot.title_for(message),
            system_prompt=copilot.system_preamble(),
            messages=[],
            context=data.get("context"),
        )
        db.session.add(conversation)
    elif data.get("context"):
        conversation.context = {**(conversation.context or {}), **data["context"]}

    transcript = list(conversation.messages or [])
    transcript.append({"role": "user", "content": message, "timestamp": _now_iso()})

    context_block = copilot.build_context_block([entry for entry, _ in hits], conversation.context)
    reply, degraded = copilot.reply(
        copilot.build_messages(conversation.system_prompt, context_block, transcript),
        organization_id=organization_id,
        user_id=user_id,
    )
    transcript.append({
        "role": "assistant",
        "content": reply,
        "timestamp": _now_iso(),
        "sources": [entry.id for entry, _ in hits],
    })
    conversation.messages = transcript
    db.session.commit()

    return {
        "conversation_id": conversation.id,
        "message": reply,
        "sources": [
            {"id": entry.id, "title": entry.title, "category": entry.category, "relevance_score": score}
            for entry, score in hits
        ],
        "degraded": degraded,
    }


def get_conversation(organization_id, user_id, conversation_id):
    return get_scoped(ComplianceConversation, conversation_id,
                      organization_id=organization_id, user_id=user_id)


def list_conversations(organization_id, user_id):
    return db.session.execute(
        select(ComplianceConversation)
        .where(ComplianceConversation.organization_id == organization_id,
               ComplianceConversation.user_id == user_id)
        .order_by(ComplianceConversation.updated_at.desc(), ComplianceConversation.id)
    ).scalars().all()


# ═════════════════════════════════════════════════════════════════════════
# Compliance checks
# ═════════════════════════════════════════════════════════════════════════


def run_compliance_check(organization_id, user_id, data, *, gateway=None):
    """Evaluate an entity against standards and persist the snapshot.

    Args:
        data: {entity_type, entity_id, standards?}; standards default to
            the organization's configured default standards.
    """
    missing = [f for f in ("entity_type", "entity_id") if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}",
                              details={f: "required" for f in missing})
    standards = data.get("standards")
    if standards is None:
        standards = list(get_configuration(organization_id).default_standards)
    if not isinstance(standards, list) or not all(isinstance(s, str) for s in standards):
        raise ValidationError("standards must be a list of strings")

    knowledge = knowledge_service.active_entries(
        organization_id, current_app.config["AUDIT_COMPLIANCE_CONTEXT_DOCS"],
    )
    auditor = ComplianceAuditor(gateway or get_gateway(), get_prompt_registry())
    result, degraded = auditor.check(
        entity_type=data["entity_type"],
        entity_id=str(data["entity_id"]),
        standards=standards,
        knowledge=knowledge,
        organization_id=organization_id,
        user_id=user_id,
    )

    check = ComplianceCheck(
        organization_id=organization_id,
        check_number=generate_number(CHECK_PREFIX),
        entity_type=data["entity_type"],
        entity_id=str(data["entity_id"]),
        standards_checked=list(standards),
        overall_status=result.overall_status,
        compliance_score=result.score,
        check_results=list(result.results),
        ai_analysis=result.analysis,
        ai_recommendations=list(result.recommendations),
        requires_action=result.requires_action,
        action_items=list(result.action_items),
        degraded=degraded,
        performed_by=user_id,
        performed_at=datetime.now(timezone.utc),
    )
    db.session.add(check)
    db.session.commit()
    logger.info("Compliance check %s: %s (%.0f)", check.check_number, check.overall_status,
                check.compliance_score, extra={"organization_id": organization_id})
    return check


def get_compliance_check(organization_id, check_id):
    return get_scoped(ComplianceCheck, check_id, organization_id=organization_id)


def list_compliance_checks(organization_id, filters=None):
    filters = filters or {}
    page, limit = parse_pagination(filters)

    stmt = select(ComplianceCheck).where(ComplianceCheck.organization_id == organization_id)
    for field in ("entity_type", "entity_id"):
        if filters.get(field):
            stmt = stmt.where(getattr(ComplianceCheck, field) == filters[field])
    if filters.get("overall_status"):
        if filters["overall_status"] not in CHECK_STATUSES:
            raise ValidationError(f"Invalid overall_status: {filters['overall_status']}")
        stmt = stmt.where(ComplianceCheck.overall_status == filters["overall_status"])

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
    items = db.session.execute(
        stmt.order_by(ComplianceCheck.performed_at.desc(), ComplianceCheck.id)
        .offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }
