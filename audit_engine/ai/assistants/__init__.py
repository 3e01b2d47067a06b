"""
Audit Orchestration Engine
AI Assistants package.

Assistants:
    - risk_scorer: composite risk scoring + audit task proposals
    - finding_analyst: root-cause analysis and recommendations for findings
    - compliance_auditor: compliance checks + knowledge summaries
    - commonality_agent: bounded ReAct investigation for commonality studies
"""

from audit_engine.ai.assistants.commonality_agent import CommonalityAgent
from audit_engine.ai.assistants.compliance_auditor import ComplianceAuditor
from audit_engine.ai.assistants.finding_analyst import FindingAnalyst
from audit_engine.ai.assistants.risk_scorer import RiskScorer

__all__ = [
    "CommonalityAgent",
    "ComplianceAuditor",
    "FindingAnalyst",
    "RiskScorer",
]
