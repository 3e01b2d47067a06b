"""
Audit Orchestration Engine
Risk Scorer assistant.

Scoring pipeline:
    1. Render the most recent data points into the risk_assessment prompt
    2. Call the gateway once (no retry)
    3. Validate the JSON answer against RiskScoreResult (scores clamped to 0-100)
    4. Substitute the neutral result (all scores 50) on any failure

Task proposal pipeline:
    1. Keep only risk factors scoring at or above the requested minimum
    2. Ask for at most ``max_tasks`` audit tasks
    3. Validate the whole list; one malformed item rejects the batch
"""

import json
import logging

from audit_engine.ai.schemas import RiskScoreResult, TaskProposal
from audit_engine.ai.structured import try_parse_structured

logger = logging.getLogger(__name__)


class RiskScorer:
    """Scores risk from operational signals and proposes audit tasks."""

    def __init__(self, gateway=None, prompt_registry=None):
        self.gateway = gateway
        self.prompt_registry = prompt_registry

    def score(
        self,
        data_points: list,
        *,
        organization_id: str,
        user_id: str,
        assessment_type: str,
        entity: str = "all entities",
        period: str = "not specified",
        weights: dict | None = None,
        prompt_points: int = 20,
    ) -> tuple[RiskScoreResult, bool]:
        """
        Score a window of data points.

        Returns:
            (result, degraded): degraded is True when the neutral result was used.
        """
        messages = self.prompt_registry.render(
            "risk_assessment",
            assessment_type=assessment_type,
            entity=entity,
            period=period,
            weights=json.dumps(weights or {}),
            data_point_count=len(data_points),
            data_points=json.dumps([dp.to_prompt_dict() for dp in data_points[:prompt_points]], indent=2),
        )

        try:
            llm_result = self.gateway.chat(
                messages, purpose="risk_scoring", user=user_id,
                organization_id=organization_id, max_retries=1,
            )
        except Exception as e:
            logger.warning("Risk scoring unavailable, using neutral scores: %s", e,
                           extra={"organization_id": organization_id, "purpose": "risk_scoring"})
            return RiskScoreResult.neutral(), True

        parsed = try_parse_structured(llm_result.get("content"), RiskScoreResult, None)
        if parsed is None:
            return RiskScoreResult.neutral(), True
        return parsed, False

    def propose_tasks(
        self,
        assessment,
        *,
        organization_id: str,
        user_id: str,
        min_risk_score: float,
        max_tasks: int,
    ) -> list[TaskProposal]:
        """
        Propose up to ``max_tasks`` audit tasks for an assessment.

        Returns an empty list when nothing qualifies or the model output is
        unusable; never a partial batch.
        """
        if max_tasks <= 0:
            return []

        factors = [f for f in (assessment.risk_factors or []) if (f.get("score") or 0) >= min_risk_score]
        if not factors and (assessment.overall_risk_score or 0) < min_risk_score:
            logger.info("No risk factor reaches %s for %s; no tasks proposed",
                        min_risk_score, assessment.assessment_number,
                        extra={"organization_id": organization_id})
            return []

        messages = self.prompt_registry.render(
            "task_generation",
            max_tasks=max_tasks,
            min_risk_score=min_risk_score,
            assessment_number=assessment.assessment_number,
            overall_score=assessment.overall_risk_score,
            factors=json.dumps(factors, indent=2) if factors else "(overall score only)",
            analysis=assessment.ai_analysis or "",
        )

        try:
            llm_result = self.gateway.chat(
                messages, purpose="task_generation", user=user_id,
                organization_id=organization_id, max_retries=1,
            )
        except Exception as e:
            logger.warning("Task generation unavailable: %s", e,
                           extra={"organization_id": organization_id, "purpose": "task_generation"})
            return []

        proposals = try_parse_structured(llm_result.get("content"), list[TaskProposal], [])
        proposals = [
            p for p in proposals
            if p.risk_score is None or p.risk_score >= min_risk_score
        ]
        return proposals[:max_tasks]
