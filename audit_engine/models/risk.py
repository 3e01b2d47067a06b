"""
Audit Orchestration Engine
Risk domain models.

Models:
    - RiskDataPoint: append-only timestamped operational signal tagged by entity.
    - RiskAssessment: composite risk score produced from a window of signals.

Risk levels are not stored; they are derived at read time from the
organization's configured thresholds (see classify_risk).
"""

from audit_engine.models import db
from audit_engine.models.base import OrganizationModel, _utcnow, iso

# ── Constants ────────────────────────────────────────────────────────────────

ASSESSMENT_TYPES = {"periodic", "entity", "supplier", "process", "product", "ad_hoc"}

ASSESSMENT_STATUSES = {"active", "superseded"}

RISK_DIMENSIONS = ("quality", "process", "supplier", "compliance")

RISK_LEVELS = ("low", "medium", "high", "critical")


def classify_risk(score, thresholds: dict) -> str | None:
    """Map a 0-100 score onto low / medium / high / critical.

    A score at or below a boundary belongs to that level; anything above the
    ``high`` boundary is critical.
    """
    if score is None:
        return None
    if score <= thresholds.get("low", 30):
        return "low"
    if score <= thresholds.get("medium", 60):
        return "medium"
    if score <= thresholds.get("high", 85):
        return "high"
    return "critical"


class RiskDataPoint(OrganizationModel):
    """
    Single timestamped measurement attributed to an entity.

    Immutable once created; there is no update path in the service layer.
    """

    __tablename__ = "risk_data_points"
    __table_args__ = (
        db.Index("idx_risk_dp_org_ts", "organization_id", "timestamp"),
        db.Index("idx_risk_dp_entity", "entity_type", "entity_id"),
    )

    entity_type = db.Column(db.String(50), nullable=False,
                            comment="supplier | process | product | machine | …")
    entity_id = db.Column(db.String(64), nullable=False)
    metric_name = db.Column(db.String(100), nullable=False,
                            comment="defect_rate | on_time_delivery | scrap_rate | …")
    value = db.Column(db.Float, nullable=False)
    unit = db.Column(db.String(30), nullable=True)
    source = db.Column(db.String(50), nullable=True, comment="Upstream module that emitted the signal")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    processed = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "metric_name": self.metric_name,
            "value": self.value,
            "unit": self.unit,
            "source": self.source,
            "timestamp": iso(self.timestamp),
            "processed": self.processed,
        }

    def to_prompt_dict(self):
        """Compact form rendered into scoring prompts."""
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "metric": self.metric_name,
            "value": self.value,
            "timestamp": iso(self.timestamp),
        }


class RiskAssessment(OrganizationModel):
    """
    Composite risk assessment over quality, process, supplier and compliance.

    Created once per run. ``tasks_generated`` only ever grows as audit tasks
    are derived from it; the row is superseded, never deleted.
    """

    __tablename__ = "risk_assessments"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "assessment_number",
                            name="uq_risk_assessments_org_number"),
        db.Index("idx_risk_assess_org_score", "organization_id", "overall_risk_score"),
    )

    assessment_number = db.Column(db.String(40), nullable=False)
    assessment_type = db.Column(db.String(30), nullable=False)
    entity_type = db.Column(db.String(50), nullable=True)
    entity_id = db.Column(db.String(64), nullable=True)
    assessment_date = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    period_end = db.Column(db.DateTime(timezone=True), nullable=True)

    overall_risk_score = db.Column(db.Float, nullable=False, default=50.0)
    quality_risk_score = db.Column(db.Float, nullable=False, default=50.0)
    process_risk_score = db.Column(db.Float, nullable=False, default=50.0)
    supplier_risk_score = db.Column(db.Float, nullable=False, default=50.0)
    compliance_risk_score = db.Column(db.Float, nullable=False, default=50.0)

    risk_factors = db.Column(db.JSON, nullable=False, default=list,
                             comment="[{factor, score, weight, description}]")
    ai_analysis = db.Column(db.Text, nullable=True)
    recommendations = db.Column(db.JSON, nullable=False, default=list)
    suggested_resources = db.Column(db.JSON, nullable=False, default=list)
    input_data = db.Column(db.JSON, nullable=False, default=dict)
    ai_model_version = db.Column(db.String(20), nullable=True)
    degraded = db.Column(db.Boolean, nullable=False, default=False,
                         comment="True when neutral defaults replaced the model output")

    tasks_generated = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="active")
    created_by = db.Column(db.String(64), nullable=True)

    def to_dict(self, thresholds: dict | None = None):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "assessment_number": self.assessment_number,
            "assessment_type": self.assessment_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "assessment_date": iso(self.assessment_date),
            "period_start": iso(self.period_start),
            "period_end": iso(self.period_end),
            "overall_risk_score": self.overall_risk_score,
            "quality_risk_score": self.quality_risk_score,
            "process_risk_score": self.process_risk_score,
            "supplier_risk_score": self.supplier_risk_score,
            "compliance_risk_score": self.compliance_risk_score,
            "risk_factors": self.risk_factors or [],
            "ai_analysis": self.ai_analysis,
            "recommendations": self.recommendations or [],
            "suggested_resources": self.suggested_resources or [],
            "input_data": self.input_data or {},
            "ai_model_version": self.ai_model_version,
            "degraded": self.degraded,
            "tasks_generated": self.tasks_generated,
            "status": self.status,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if thresholds is not None:
            d["risk_level"] = classify_risk(self.overall_risk_score, thresholds)
        return d

    def __repr__(self):
        return f"<RiskAssessment {self.assessment_number}: {self.overall_risk_score}>"
