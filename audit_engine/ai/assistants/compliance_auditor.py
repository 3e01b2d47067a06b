"""
Audit Orchestration Engine
Compliance Auditor assistant.

    - check: point-in-time evaluation of an entity against standards,
      grounded on active knowledge entries
    - summarize: 2-3 sentence summary for a knowledge entry
"""

import logging

from audit_engine.ai.schemas import ComplianceCheckResult
from audit_engine.ai.structured import try_parse_structured

logger = logging.getLogger(__name__)

SUMMARY_SOURCE_CHARS = 5000


class ComplianceAuditor:

    def __init__(self, gateway=None, prompt_registry=None):
        self.gateway = gateway
        self.prompt_registry = prompt_registry

    def check(
        self,
        *,
        entity_type: str,
        entity_id: str,
        standards: list[str],
        knowledge: list,
        organization_id: str,
        user_id: str,
    ) -> tuple[ComplianceCheckResult, bool]:
        """
        Evaluate compliance.

        Returns:
            (result, degraded): the neutral partially_compliant/75 result is
            used when the call or its output is unusable.
        """
        messages = self.prompt_registry.render(
            "compliance_check",
            entity_type=entity_type,
            entity_id=entity_id,
            standards=", ".join(standards) or "none specified",
            knowledge="\n".join(e.context_snippet() for e in knowledge) or "(no knowledge entries)",
        )
        try:
            llm_result = self.gateway.chat(
                messages, purpose="compliance_check", user=user_id,
                organization_id=organization_id, max_retries=1,
            )
        except Exception as e:
            logger.warning("Compliance check unavailable, using neutral verdict: %s", e,
                           extra={"organization_id": organization_id, "purpose": "compliance_check"})
            return ComplianceCheckResult.neutral(), True

        parsed = try_parse_structured(llm_result.get("content"), ComplianceCheckResult, None)
        if parsed is None:
            return ComplianceCheckResult.neutral(), True
        return parsed, False

    def summarize(self, content: str, *, organization_id: str, user_id: str) -> str | None:
        """Summary text, or None when the call failed or returned nothing."""
        messages = self.prompt_registry.render("kb_summary", content=content[:SUMMARY_SOURCE_CHARS])
        try:
            llm_result = self.gateway.chat(
                messages, purpose="kb_summary", user=user_id,
                organization_id=organization_id, max_retries=1,
            )
        except Exception as e:
            logger.warning("Knowledge summary unavailable: %s", e,
                           extra={"organization_id": organization_id, "purpose": "kb_summary"})
            return None
        summary = (llm_result.get("content") or "").strip()
        return summary or None
