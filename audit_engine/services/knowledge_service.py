"""Compliance knowledge store service.

Entries are versioned documents with an optional embedding. ``search`` is
not read-only: every returned entry's ``usage_count`` is incremented, on
cache hits too. Rankings (entry ids + scores) are memoized per organization,
query and filters for ``AUDIT_KB_SEARCH_CACHE_TTL`` seconds and invalidated
whenever the organization's knowledge changes.

Retrieval:
    1. SQL prefilter: active, unexpired, category/document_type, and any
       query term (or the full phrase) contained in title/summary/content
    2. BM25 ranking, ties broken by title then id
    3. ``semantic=True``: cosine similarity against stored embeddings fused
       with the keyword ranking (RRF); embedding failure keeps keyword order
"""

import hashlib
import json
import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import or_, select, update

from audit_engine.ai import get_gateway, get_prompt_registry
from audit_engine.ai.assistants.compliance_auditor import ComplianceAuditor
from audit_engine.ai.rag import KnowledgeRanker, query_terms
from audit_engine.core.exceptions import ValidationError
from audit_engine.models import db
from audit_engine.models.compliance import (
    KB_CATEGORIES,
    KB_DOCUMENT_TYPES,
    KB_STATUSES,
    ComplianceKnowledgeEntry,
)
from audit_engine.services import cache_service
from audit_engine.services.helpers.scoped_queries import get_scoped
from audit_engine.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10
MAX_SEARCH_LIMIT = 50
EMBED_SOURCE_CHARS = 8000

_EDITABLE = ("title", "content", "summary", "category", "document_type", "standard_code",
             "tags", "effective_date", "expiry_date", "status")


# ═════════════════════════════════════════════════════════════════════════
# Validation / enrichment
# ═════════════════════════════════════════════════════════════════════════


def _validate(data, *, partial=False):
    for field in ("title", "content"):
        if not partial or field in data:
            if not isinstance(data.get(field), str) or not data[field].strip():
                raise ValidationError(f"{field} is required", details={field: "required"})
    if "category" in data and data["category"] not in KB_CATEGORIES:
        raise ValidationError(f"Invalid category: {data['category']}", details={"category": sorted(KB_CATEGORIES)})
    if "document_type" in data and data["document_type"] not in KB_DOCUMENT_TYPES:
        raise ValidationError(f"Invalid document_type: {data['document_type']}",
                              details={"document_type": sorted(KB_DOCUMENT_TYPES)})
    if "status" in data and data["status"] not in KB_STATUSES:
        raise ValidationError(f"Invalid status: {data['status']}", details={"status": sorted(KB_STATUSES)})
    if "tags" in data and not isinstance(data["tags"], list):
        raise ValidationError("tags must be a list")


def _embed(gateway, entry, organization_id, user_id):
    """Attach an embedding to ``entry``; on failure leave it without one."""
    text = f"{entry.title}\n\n{entry.content[:EMBED_SOURCE_CHARS]}"
    try:
        vectors = gateway.embed([text], purpose="kb_embedding", user=user_id or "system",
                                organization_id=organization_id)
    except Exception as e:
        logger.warning("Embedding generation failed for knowledge entry: %s", e,
                       extra={"organization_id": organization_id, "purpose": "kb_embedding"})
        entry.embedding = None
        entry.embedding_model = None
        return
    entry.embedding = list(vectors[0]) if vectors else None
    entry.embedding_model = getattr(gateway, "DEFAULT_EMBED_MODEL", None) if vectors else None


def _invalidate_searches(organization_id):
    cache_service.invalidate_prefix(cache_service.kb_search_prefix(organization_id))


# ═════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════


def add_entry(organization_id, user_id, data, *, gateway=None):
    """Create an active entry with embedding and (when absent) a generated summary."""
    _validate(data)
    gateway = gateway or get_gateway()

    entry = ComplianceKnowledgeEntry(
        organization_id=organization_id,
        title=data["title"].strip(),
        content=data["content"],
        summary=data.get("summary"),
        category=data.get("category", "standard"),
        document_type=data.get("document_type", "reference"),
        standard_code=data.get("standard_code"),
        tags=list(data.get("tags") or []),
        effective_date=parse_datetime(data.get("effective_date"), "effective_date"),
        expiry_date=parse_datetime(data.get("expiry_date"), "expiry_date"),
        status="active",
        usage_count=0,
        version=1,
        created_by=user_id,
    )
    _embed(gateway, entry, organization_id, user_id)
    if not entry.summary:
        auditor = ComplianceAuditor(gateway, get_prompt_registry())
        entry.summary = auditor.summarize(entry.content, organization_id=organization_id, user_id=user_id)

    db.session.add(entry)
    db.session.commit()
    _invalidate_searches(organization_id)
    logger.info("Knowledge entry added: %s", entry.title, extra={"organization_id": organization_id})
    return entry


def update_entry(organization_id, user_id, entry_id, data, *, gateway=None):
    """Replace provided fields; re-embed when content changes."""
    entry = get_entry(organization_id, entry_id)
    _validate(data, partial=True)

    content_changed = "content" in data and data["content"] != entry.content
    title_changed = "title" in data and data["title"].strip() != entry.title
    for field in _EDITABLE:
        if field not in data:
            continue
        value = data[field]
        if field in ("effective_date", "expiry_date"):
            value = parse_datetime(value, field)
        elif field == "title":
            value = value.strip()
        elif field == "tags":
            value = list(value)
        setattr(entry, field, value)

    if content_changed or title_changed:
        entry.version = (entry.version or 1) + 1
        _embed(gateway or get_gateway(), entry, organization_id, user_id)

    db.session.commit()
    _invalidate_searches(organization_id)
    return entry


def delete_entry(organization_id, entry_id):
    entry = get_entry(organization_id, entry_id)
    db.session.delete(entry)
    db.session.commit()
    _invalidate_searches(organization_id)


def get_entry(organization_id, entry_id):
    return get_scoped(ComplianceKnowledgeEntry, entry_id, organization_id=organization_id)


def list_entries(organization_id, filters=None):
    filters = filters or {}
    stmt = select(ComplianceKnowledgeEntry).where(ComplianceKnowledgeEntry.organization_id == organization_id)
    for field in ("category", "document_type", "status", "standard_code"):
        if filters.get(field):
            stmt = stmt.where(getattr(ComplianceKnowledgeEntry, field) == filters[field])
    return db.session.execute(
        stmt.order_by(ComplianceKnowledgeEntry.title, ComplianceKnowledgeEntry.id)
    ).scalars().all()


def active_entries(organization_id, limit):
    """Most used active entries, used as compliance-check context."""
    return db.session.execute(
        select(ComplianceKnowledgeEntry)
        .where(ComplianceKnowledgeEntry.organization_id == organization_id,
               ComplianceKnowledgeEntry.status == "active")
        .order_by(ComplianceKnowledgeEntry.usage_count.desc(), ComplianceKnowledgeEntry.title,
                  ComplianceKnowledgeEntry.id)
        .limit(limit)
    ).scalars().all()


# ═════════════════════════════════════════════════════════════════════════
# Search
# ═════════════════════════════════════════════════════════════════════════


def _search_cache_key(organization_id, query, category, document_type, limit, semantic):
    payload = json.dumps(
        [" ".join(query.lower().split()), category, document_type, limit, semantic],
        separators=(",", ":"),
    )
    digest = hashlib.sha256(payload.encode()).hexdigest()[:32]
    return cache_service.kb_search_key(organization_id, digest)


def _candidates(organization_id, query, category, document_type):
    now = datetime.now(timezone.utc)
    stmt = select(ComplianceKnowledgeEntry).where(
        ComplianceKnowledgeEntry.organization_id == organization_id,
        ComplianceKnowledgeEntry.status == "active",
        or_(ComplianceKnowledgeEntry.expiry_date.is_(None), ComplianceKnowledgeEntry.expiry_date >= now),
    )
    if category:
        stmt = stmt.where(ComplianceKnowledgeEntry.category == category)
    if document_type:
        stmt = stmt.where(ComplianceKnowledgeEntry.document_type == document_type)

    patterns = [f"%{query.strip()}%"] + [f"%{term}%" for term in query_terms(query)]
    conditions = []
    for pattern in patterns:
        conditions.extend([
            ComplianceKnowledgeEntry.title.ilike(pattern),
            ComplianceKnowledgeEntry.summary.ilike(pattern),
            ComplianceKnowledgeEntry.content.ilike(pattern),
        ])
    return db.session.execute(stmt.where(or_(*conditions))).scalars().all()


def _load_ranked(organization_id, ranked_ids):
    if not ranked_ids:
        return []
    ids = [entry_id for entry_id, _ in ranked_ids]
    rows = db.session.execute(
        select(ComplianceKnowledgeEntry).where(
            ComplianceKnowledgeEntry.organization_id == organization_id,
            ComplianceKnowledgeEntry.id.in_(ids),
        )
    ).scalars().all()
    by_id = {row.id: row for row in rows}
    return [(by_id[entry_id], score) for entry_id, score in ranked_ids if entry_id in by_id]


def search(organization_id, data, *, gateway=None):
    """Rank knowledge entries for a query and bump their usage counters.

    Args:
        data: {query, category?, document_type?, limit?, semantic?}

    Returns:
        List of (entry, relevance_score), best first.
    """
    query = (data.get("query") or "").strip()
    if not query:
        raise ValidationError("query is required", details={"query": "required"})
    category = data.get("category")
    document_type = data.get("document_type")
    semantic = bool(data.get("semantic", False))
    try:
        limit = min(max(int(data.get("limit", DEFAULT_SEARCH_LIMIT)), 1), MAX_SEARCH_LIMIT)
    except (TypeError, ValueError) as exc:
        raise ValidationError("limit must be an integer") from exc

    key = _search_cache_key(organization_id, query, category, document_type, limit, semantic)
    ranked_ids = cache_service.get_cached(key)
    if ranked_ids is None:
        candidates = _candidates(organization_id, query, category, document_type)
        ranker = KnowledgeRanker((gateway or get_gateway()) if semantic else None)
        ranked = ranker.rank(query, candidates, semantic=semantic, organization_id=organization_id)[:limit]
        ranked_ids = [[entry.id, score] for entry, score in ranked]
        cache_service.set_cached(key, ranked_ids, ttl=current_app.config["AUDIT_KB_SEARCH_CACHE_TTL"])

    results = _load_ranked(organization_id, ranked_ids)
    if results:
        db.session.execute(
            update(ComplianceKnowledgeEntry)
            .where(ComplianceKnowledgeEntry.organization_id == organization_id,
                   ComplianceKnowledgeEntry.id.in_([entry.id for entry, _ in results]))
            .values(usage_count=ComplianceKnowledgeEntry.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    return results
