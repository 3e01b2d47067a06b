"""
Audit Orchestration Engine
Audit task domain model.

Models:
    - AuditTask: unit of audit work, manual, scheduled or derived from a risk assessment.
    - AuditFinding: observation recorded while completing a task; owned by its task.
    - AuditLog: immutable, append-only trail for lifecycle events.

Task lifecycle:
    pending → in_progress → completed
    pending | in_progress → cancelled
"""

from audit_engine.models import db
from audit_engine.models.base import OrganizationModel, _utcnow, iso

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_TYPES = {"quality", "process", "supplier", "safety", "compliance"}

TASK_SOURCES = {"manual", "risk_assessment", "scheduled"}

TASK_PRIORITIES = {"critical", "high", "medium", "low"}

TASK_STATUSES = {"pending", "in_progress", "completed", "cancelled"}

# action → {"from": [...], "to": ...}
TASK_TRANSITIONS = {
    "start": {"from": ["pending"], "to": "in_progress"},
    "complete": {"from": ["pending", "in_progress"], "to": "completed"},
    "cancel": {"from": ["pending", "in_progress"], "to": "cancelled"},
}

FINDING_SEVERITIES = {"critical", "major", "minor", "observation"}

FINDING_STATUSES = {"open", "in_progress", "closed"}


class AuditTask(OrganizationModel):
    """
    Audit task with an explicit lifecycle.

    ``ai_generated`` is only ever True for tasks derived from a risk
    assessment; manual creation always stores False.
    """

    __tablename__ = "audit_tasks"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "task_number", name="uq_audit_tasks_org_number"),
        db.Index("idx_audit_tasks_org_status", "organization_id", "status"),
    )

    task_number = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    audit_type = db.Column(db.String(30), nullable=False, default="quality")
    source = db.Column(db.String(30), nullable=False, default="manual")
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="pending")

    entity_type = db.Column(db.String(50), nullable=True)
    entity_id = db.Column(db.String(64), nullable=True)
    assessment_id = db.Column(
        db.String(36),
        db.ForeignKey("risk_assessments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    risk_score = db.Column(db.Float, nullable=True)
    ai_generated = db.Column(db.Boolean, nullable=False, default=False)
    ai_confidence = db.Column(db.Float, nullable=True)
    ai_reasoning = db.Column(db.Text, nullable=True)

    assigned_to = db.Column(db.String(64), nullable=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    findings = db.relationship(
        "AuditFinding",
        back_populates="task",
        order_by="AuditFinding.created_at",
        passive_deletes=True,
    )

    def to_dict(self, include_findings=False):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "task_number": self.task_number,
            "title": self.title,
            "description": self.description,
            "audit_type": self.audit_type,
            "source": self.source,
            "priority": self.priority,
            "status": self.status,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "assessment_id": self.assessment_id,
            "risk_score": self.risk_score,
            "ai_generated": self.ai_generated,
            "ai_confidence": self.ai_confidence,
            "ai_reasoning": self.ai_reasoning,
            "assigned_to": self.assigned_to,
            "due_date": iso(self.due_date),
            "notes": self.notes,
            "completed_at": iso(self.completed_at),
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_findings:
            d["findings"] = [f.to_dict() for f in self.findings]
        return d

    def __repr__(self):
        return f"<AuditTask {self.task_number}: {self.status}>"


class AuditFinding(OrganizationModel):
    """
    Finding recorded against an audit task.

    Never orphaned: the FK cascades and the service deletes findings before
    their task. ``ai_analysis`` / ``ai_recommendations`` are advisory and may
    be empty when the analysis call failed.
    """

    __tablename__ = "audit_findings"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "finding_number",
                            name="uq_audit_findings_org_number"),
    )

    finding_number = db.Column(db.String(40), nullable=False)
    audit_task_id = db.Column(
        db.String(36),
        db.ForeignKey("audit_tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    severity = db.Column(db.String(20), nullable=False, default="minor")
    category = db.Column(db.String(50), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="open")

    ai_analysis = db.Column(db.Text, nullable=True)
    ai_recommendations = db.Column(db.JSON, nullable=False, default=list)

    corrective_action = db.Column(db.Text, nullable=True)
    corrective_action_due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    task = db.relationship("AuditTask", back_populates="findings")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "finding_number": self.finding_number,
            "audit_task_id": self.audit_task_id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "category": self.category,
            "status": self.status,
            "ai_analysis": self.ai_analysis,
            "ai_recommendations": self.ai_recommendations or [],
            "corrective_action": self.corrective_action,
            "corrective_action_due_date": iso(self.corrective_action_due_date),
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action. ``diff`` carries old→new snapshots for field-level
    changes; AI entries carry provider/token metadata.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_log_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_log_org", "organization_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=True)
    entity_type = db.Column(db.String(40), nullable=False,
                            comment="audit_task | audit_finding | proposal | study | ai_call | …")
    entity_id = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(60), nullable=False,
                       comment="audit_task.complete | proposal.approve | ai.llm_call | …")
    actor = db.Column(db.String(150), nullable=False, default="system")
    diff = db.Column(db.JSON, nullable=False, default=dict)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff or {},
            "timestamp": iso(self.timestamp),
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str | None = "system",
    organization_id: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        organization_id=organization_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff=diff or {},
    )
    db.session.add(log)
    db.session.flush()
    return log
