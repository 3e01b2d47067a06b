"""
Audit Orchestration Engine
Commonality study and improvement proposal models.

Models:
    - CommonalityStudy: output of one bounded ReAct investigation, with the
      full reasoning trace.
    - ImprovementProposal: improvement initiative driven through a
      sequential multi-level approval chain.

Proposal lifecycle:
    draft → submitted → under_review ⇄ (approved | rejected)
    approved → implementing → completed
"""

from audit_engine.models import db
from audit_engine.models.base import OrganizationModel, iso

# ── Constants ────────────────────────────────────────────────────────────────

STUDY_TYPES = {"defect", "supplier", "process", "product", "cross_functional"}

STUDY_STATUSES = {"running", "completed", "failed"}

STUDY_APPROVAL_STATUSES = {"pending", "approved", "rejected"}

STOP_REASONS = {"complete", "max_iterations", "time_budget"}

PROPOSAL_CATEGORIES = {
    "process_improvement", "supplier_development", "quality_control",
    "training", "equipment", "design_change", "other",
}

PROPOSAL_PRIORITIES = ("low", "medium", "high", "critical")

PROPOSAL_STATUSES = {
    "draft", "submitted", "under_review", "approved",
    "rejected", "implementing", "completed",
}

# action → {"from": [...], "to": ...}; approve/reject resolve through the chain
PROPOSAL_TRANSITIONS = {
    "submit": {"from": ["draft"], "to": "submitted"},
    "start_implementation": {"from": ["approved"], "to": "implementing"},
    "complete_implementation": {"from": ["implementing"], "to": "completed"},
}

# Statuses in which a chain level can still be resolved
PROPOSAL_REVIEWABLE = ("submitted", "under_review")


class CommonalityStudy(OrganizationModel):
    """
    Cross-entity quality pattern study.

    Persisted only once the loop has finished, with ``status=completed``.
    ``react_trace`` holds one entry per executed step.
    """

    __tablename__ = "commonality_studies"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "study_number",
                            name="uq_commonality_studies_org_number"),
    )

    study_number = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    study_type = db.Column(db.String(30), nullable=False, default="defect")
    analysis_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    analysis_end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    entity_filters = db.Column(db.JSON, nullable=True)

    react_trace = db.Column(db.JSON, nullable=False, default=list,
                            comment="[{step, thought, action, action_type, observation, timestamp}]")
    stop_reason = db.Column(db.String(30), nullable=True)
    patterns_found = db.Column(db.JSON, nullable=False, default=list)
    recommendations = db.Column(db.JSON, nullable=False, default=list)
    supplier_insights = db.Column(db.JSON, nullable=False, default=list)
    variant_analysis = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="completed")
    requires_approval = db.Column(db.Boolean, nullable=False, default=True)
    approval_status = db.Column(db.String(20), nullable=False, default="pending")
    approved_by = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approval_comments = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "study_number": self.study_number,
            "title": self.title,
            "description": self.description,
            "study_type": self.study_type,
            "analysis_start_date": iso(self.analysis_start_date),
            "analysis_end_date": iso(self.analysis_end_date),
            "entity_filters": self.entity_filters,
            "react_trace": self.react_trace or [],
            "stop_reason": self.stop_reason,
            "patterns_found": self.patterns_found or [],
            "recommendations": self.recommendations or [],
            "supplier_insights": self.supplier_insights or [],
            "variant_analysis": self.variant_analysis,
            "status": self.status,
            "requires_approval": self.requires_approval,
            "approval_status": self.approval_status,
            "approved_by": self.approved_by,
            "approved_at": iso(self.approved_at),
            "approval_comments": self.approval_comments,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class ImprovementProposal(OrganizationModel):
    """
    Improvement proposal with a sequential approval chain.

    ``current_approval_level`` is 1-based and points at the chain entry
    awaiting a decision; 0 means no chain has been installed yet.
    """

    __tablename__ = "improvement_proposals"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "proposal_number",
                            name="uq_improvement_proposals_org_number"),
        db.Index("idx_proposals_org_status", "organization_id", "status"),
    )

    proposal_number = db.Column(db.String(40), nullable=False)
    commonality_study_id = db.Column(
        db.String(36),
        db.ForeignKey("commonality_studies.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(40), nullable=False, default="process_improvement")
    priority = db.Column(db.String(20), nullable=False, default="medium")

    expected_benefits = db.Column(db.Text, nullable=True)
    estimated_cost_saving = db.Column(db.Float, nullable=True)
    implementation_effort = db.Column(db.String(20), nullable=True)
    affected_processes = db.Column(db.JSON, nullable=False, default=list)
    affected_suppliers = db.Column(db.JSON, nullable=False, default=list)
    implementation_steps = db.Column(db.JSON, nullable=False, default=list,
                                     comment="[{step, description, assigned_to, due_date, status, completed_at}]")

    status = db.Column(db.String(20), nullable=False, default="draft")
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_by = db.Column(db.String(64), nullable=True)
    approval_chain = db.Column(db.JSON, nullable=False, default=list,
                               comment="[{level, role, min_proposal_priority, approver_id, status, comments, timestamp}]")
    current_approval_level = db.Column(db.Integer, nullable=False, default=0)

    implementation_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    implementation_end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_results = db.Column(db.Text, nullable=True)
    lessons_learned = db.Column(db.Text, nullable=True)
    ai_generated = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.String(64), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "proposal_number": self.proposal_number,
            "commonality_study_id": self.commonality_study_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "expected_benefits": self.expected_benefits,
            "estimated_cost_saving": self.estimated_cost_saving,
            "implementation_effort": self.implementation_effort,
            "affected_processes": self.affected_processes or [],
            "affected_suppliers": self.affected_suppliers or [],
            "implementation_steps": self.implementation_steps or [],
            "status": self.status,
            "submitted_at": iso(self.submitted_at),
            "submitted_by": self.submitted_by,
            "approval_chain": self.approval_chain or [],
            "current_approval_level": self.current_approval_level,
            "implementation_start_date": iso(self.implementation_start_date),
            "implementation_end_date": iso(self.implementation_end_date),
            "actual_results": self.actual_results,
            "lessons_learned": self.lessons_learned,
            "ai_generated": self.ai_generated,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
