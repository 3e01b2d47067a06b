"""
Audit dashboard metrics.

One call, one dict of headline numbers for an organization:
  - task totals (total, pending, completed, overdue, AI generated)
  - average risk and number of assessments scoring >= 70
  - compliance rate over the last 100 checks (100 when there are none)
  - findings count and proposals in progress
"""

import logging

from sqlalchemy import case, func, select

from audit_engine.models import db
from audit_engine.models.audit import AuditFinding
from audit_engine.models.commonality import ImprovementProposal
from audit_engine.models.compliance import ComplianceCheck
from audit_engine.models.risk import RiskAssessment
from audit_engine.services.audit_task_service import get_task_stats
from audit_engine.services.risk_service import HIGH_RISK_SCORE

logger = logging.getLogger(__name__)

COMPLIANCE_RATE_WINDOW = 100

PROPOSALS_IN_PROGRESS = ("submitted", "under_review", "implementing")


def _compliance_rate(organization_id):
    statuses = db.session.execute(
        select(ComplianceCheck.overall_status)
        .where(ComplianceCheck.organization_id == organization_id)
        .order_by(ComplianceCheck.performed_at.desc(), ComplianceCheck.id)
        .limit(COMPLIANCE_RATE_WINDOW)
    ).scalars().all()
    if not statuses:
        return 100.0
    compliant = sum(1 for status in statuses if status == "compliant")
    return round(compliant / len(statuses) * 100, 2)


def get_dashboard(organization_id):
    task_stats = get_task_stats(organization_id)

    avg_risk, high_risk = db.session.execute(
        select(
            func.avg(RiskAssessment.overall_risk_score),
            func.sum(case((RiskAssessment.overall_risk_score >= HIGH_RISK_SCORE, 1), else_=0)),
        ).where(RiskAssessment.organization_id == organization_id)
    ).one()

    findings_count = db.session.execute(
        select(func.count(AuditFinding.id)).where(AuditFinding.organization_id == organization_id)
    ).scalar() or 0

    proposals_in_progress = db.session.execute(
        select(func.count(ImprovementProposal.id)).where(
            ImprovementProposal.organization_id == organization_id,
            ImprovementProposal.status.in_(PROPOSALS_IN_PROGRESS),
        )
    ).scalar() or 0

    return {
        "total_tasks": task_stats["total"],
        "pending_tasks": task_stats["by_status"].get("pending", 0),
        "completed_tasks": task_stats["by_status"].get("completed", 0),
        "overdue_tasks": task_stats["overdue"],
        "average_risk_score": round(float(avg_risk), 2) if avg_risk is not None else 0.0,
        "high_risk_assessments": int(high_risk or 0),
        "compliance_rate": _compliance_rate(organization_id),
        "findings_count": findings_count,
        "proposals_in_progress": proposals_in_progress,
        "tasks_generated_by_ai": task_stats["ai_generated"],
    }
