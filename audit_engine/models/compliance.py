"""
Audit Orchestration Engine
Compliance domain models.

Models:
    - ComplianceKnowledgeEntry: versioned compliance/process document with
      optional embedding vector; retrieval context for the copilot.
    - ComplianceCheck: write-once snapshot of a point-in-time evaluation.
    - ComplianceConversation: multi-turn copilot transcript.

In dev/test (SQLite) embeddings are stored as JSON and ranked in Python.
"""

from audit_engine.models import db
from audit_engine.models.base import OrganizationModel, iso

# ── Constants ────────────────────────────────────────────────────────────────

KB_CATEGORIES = {
    "standard", "regulation", "procedure", "work_instruction",
    "policy", "best_practice", "lesson_learned",
}

KB_DOCUMENT_TYPES = {
    "iso_standard", "regulatory_text", "sop", "checklist",
    "guideline", "form", "reference",
}

KB_STATUSES = {"active", "archived"}

CHECK_STATUSES = {"compliant", "non_compliant", "partially_compliant"}

MESSAGE_ROLES = {"user", "assistant"}


class ComplianceKnowledgeEntry(OrganizationModel):
    """
    Stored compliance/process document.

    ``usage_count`` increases every time the entry is surfaced by a search;
    ``version`` increases every time title/content are replaced.
    """

    __tablename__ = "compliance_knowledge_entries"
    __table_args__ = (
        db.Index("idx_kb_org_status", "organization_id", "status"),
    )

    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    summary = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(40), nullable=False, default="standard")
    document_type = db.Column(db.String(40), nullable=False, default="reference")
    standard_code = db.Column(db.String(60), nullable=True, comment="ISO 9001 | IATF 16949 | …")
    tags = db.Column(db.JSON, nullable=False, default=list)
    embedding = db.Column(db.JSON, nullable=True, comment="Float vector; NULL when not generated")
    embedding_model = db.Column(db.String(80), nullable=True)
    effective_date = db.Column(db.DateTime(timezone=True), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="active")
    usage_count = db.Column(db.Integer, nullable=False, default=0)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_by = db.Column(db.String(64), nullable=True)

    def to_dict(self, include_content=True):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "title": self.title,
            "summary": self.summary,
            "category": self.category,
            "document_type": self.document_type,
            "standard_code": self.standard_code,
            "tags": self.tags or [],
            "has_embedding": self.embedding is not None,
            "effective_date": iso(self.effective_date),
            "expiry_date": iso(self.expiry_date),
            "status": self.status,
            "usage_count": self.usage_count,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_content:
            d["content"] = self.content
        return d

    def context_snippet(self, limit=500):
        """Title + summary (or content prefix) for prompt context blocks."""
        body = self.summary or (self.content or "")[:limit]
        return f"[{self.title}]: {body}"


class ComplianceCheck(OrganizationModel):
    """Point-in-time compliance evaluation of one entity against standards."""

    __tablename__ = "compliance_checks"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "check_number",
                            name="uq_compliance_checks_org_number"),
        db.Index("idx_compliance_checks_entity", "entity_type", "entity_id"),
    )

    check_number = db.Column(db.String(40), nullable=False)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    standards_checked = db.Column(db.JSON, nullable=False, default=list)
    overall_status = db.Column(db.String(30), nullable=False, default="partially_compliant")
    compliance_score = db.Column(db.Float, nullable=False, default=75.0)
    check_results = db.Column(db.JSON, nullable=False, default=list,
                              comment="[{standard, requirement, status, evidence, gap, recommendation}]")
    ai_analysis = db.Column(db.Text, nullable=True)
    ai_recommendations = db.Column(db.JSON, nullable=False, default=list)
    requires_action = db.Column(db.Boolean, nullable=False, default=False)
    action_items = db.Column(db.JSON, nullable=False, default=list)
    degraded = db.Column(db.Boolean, nullable=False, default=False)
    performed_by = db.Column(db.String(64), nullable=True)
    performed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "check_number": self.check_number,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "standards_checked": self.standards_checked or [],
            "overall_status": self.overall_status,
            "compliance_score": self.compliance_score,
            "check_results": self.check_results or [],
            "ai_analysis": self.ai_analysis,
            "ai_recommendations": self.ai_recommendations or [],
            "requires_action": self.requires_action,
            "action_items": self.action_items or [],
            "degraded": self.degraded,
            "performed_by": self.performed_by,
            "performed_at": iso(self.performed_at),
            "created_at": iso(self.created_at),
        }


class ComplianceConversation(OrganizationModel):
    """
    Copilot conversation owned by one user.

    ``messages`` is an ordered, append-only list of
    {role, content, timestamp, sources?}. The system preamble is kept apart
    from the transcript so the transcript holds only user/assistant turns.
    """

    __tablename__ = "compliance_conversations"
    __table_args__ = (
        db.Index("idx_compliance_conv_owner", "organization_id", "user_id"),
    )

    user_id = db.Column(db.String(64), nullable=False)
    title = db.Column(db.String(255), nullable=True)
    system_prompt = db.Column(db.Text, nullable=True)
    messages = db.Column(db.JSON, nullable=False, default=list)
    context = db.Column(db.JSON, nullable=True)

    def to_dict(self, include_messages=True):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "title": self.title,
            "context": self.context,
            "message_count": len(self.messages or []),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_messages:
            d["messages"] = self.messages or []
        return d
