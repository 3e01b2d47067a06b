"""
Audit Orchestration Engine
Finding Analyst assistant.

Produces a short root-cause analysis and 3-5 recommendations for a new
audit finding. Advisory only: on any failure the caller stores the finding
with no analysis and an empty recommendation list.
"""

import logging

from audit_engine.ai.schemas import FindingAnalysis
from audit_engine.ai.structured import try_parse_structured

logger = logging.getLogger(__name__)


class FindingAnalyst:

    def __init__(self, gateway=None, prompt_registry=None):
        self.gateway = gateway
        self.prompt_registry = prompt_registry

    def analyze(self, *, title: str, description: str | None, severity: str,
                category: str | None, organization_id: str, user_id: str) -> FindingAnalysis | None:
        """Return the analysis, or None when it could not be produced."""
        messages = self.prompt_registry.render(
            "finding_analysis",
            title=title,
            description=description or "",
            severity=severity,
            category=category or "unspecified",
        )
        try:
            llm_result = self.gateway.chat(
                messages, purpose="finding_analysis", user=user_id,
                organization_id=organization_id, max_retries=1,
            )
        except Exception as e:
            logger.warning("Finding analysis unavailable: %s", e,
                           extra={"organization_id": organization_id, "purpose": "finding_analysis"})
            return None

        return try_parse_structured(llm_result.get("content"), FindingAnalysis, None)
