"""
Audit Orchestration Engine
Schedule registry and per-organization configuration.

Models:
    - AuditSchedule: recurring-run bookkeeping; an external trigger (cron,
      queue) invokes the engine and reports back through record_schedule_run.
    - AuditConfiguration: tunable weights, thresholds and approval levels;
      one row per organization, created lazily with defaults.
"""

from audit_engine.models import db
from audit_engine.models.base import OrganizationModel, iso

# ── Constants ────────────────────────────────────────────────────────────────

SCHEDULE_TYPES = {"risk_assessment", "compliance_check", "commonality_study", "audit_task"}

SCHEDULE_FREQUENCIES = {"daily", "weekly", "monthly", "quarterly"}

RUN_STATUSES = {"success", "failed", "partial"}

DEFAULT_RISK_SCORE_WEIGHTS = {"quality": 0.3, "process": 0.25, "supplier": 0.25, "compliance": 0.2}

DEFAULT_RISK_THRESHOLDS = {"low": 30, "medium": 60, "high": 85, "critical": 100}

DEFAULT_APPROVAL_LEVELS = [
    {"level": 1, "role": "Quality Manager", "min_proposal_priority": "medium"},
    {"level": 2, "role": "Operations Director", "min_proposal_priority": "high"},
]

DEFAULT_STANDARDS = ["ISO 9001"]

DEFAULT_AUTO_GENERATE_THRESHOLD = 70

DEFAULT_NOTIFICATION_SETTINGS = {
    "email_on_high_risk": True,
    "email_on_non_compliance": True,
    "email_on_proposal_submission": True,
    "daily_digest": False,
}


class AuditSchedule(OrganizationModel):
    """Recurring audit run definition."""

    __tablename__ = "audit_schedules"

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    schedule_type = db.Column(db.String(30), nullable=False, default="risk_assessment")
    frequency = db.Column(db.String(20), nullable=False, default="monthly")
    config = db.Column(db.JSON, nullable=False, default=dict,
                       comment="Parameters passed to the engine operation on each run")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    next_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    run_count = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.String(64), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "schedule_type": self.schedule_type,
            "frequency": self.frequency,
            "config": self.config or {},
            "is_active": self.is_active,
            "last_run_at": iso(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_result": self.last_run_result,
            "next_run_at": iso(self.next_run_at),
            "run_count": self.run_count,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class AuditConfiguration(OrganizationModel):
    """
    Singleton configuration row per organization.

    Risk score weights are stored as given; they are not normalised to sum
    to 1.
    """

    __tablename__ = "audit_configurations"
    __table_args__ = (
        db.UniqueConstraint("organization_id", name="uq_audit_configurations_org"),
    )

    risk_score_weights = db.Column(db.JSON, nullable=False)
    risk_thresholds = db.Column(db.JSON, nullable=False)
    approval_levels = db.Column(db.JSON, nullable=False)
    default_standards = db.Column(db.JSON, nullable=False)
    auto_generate_tasks = db.Column(db.Boolean, nullable=False, default=False)
    auto_generate_threshold = db.Column(db.Float, nullable=False, default=DEFAULT_AUTO_GENERATE_THRESHOLD)
    notification_settings = db.Column(db.JSON, nullable=False)
