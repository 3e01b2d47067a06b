"""Pydantic schemas for structured model responses.

Each inference call site validates model output against one of these
before it touches the database. Field names follow the JSON keys the
prompts ask for (camelCase); ``populate_by_name`` lets code and tests
build them with snake_case attributes too.

Schemas:
- RiskScoreResult — risk_assessment prompt
- TaskProposal — task_generation prompt (validated as list[TaskProposal])
- FindingAnalysis — finding_analysis prompt
- ComplianceCheckResult — compliance_check prompt
- ReActAction — react_action prompt
- CommonalitySynthesis — commonality_synthesis prompt
"""

import enum
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field


def _clamp(low: float, high: float):
    def clamp(value: Any) -> float:
        try:
            number = float(value)
        except TypeError as e:
            raise ValueError(f"expected a number, got {type(value).__name__}") from e
        if number != number:  # NaN
            raise ValueError("score is NaN")
        return max(low, min(high, number))
    return clamp


Score = Annotated[float, BeforeValidator(_clamp(0.0, 100.0))]
"""A 0-100 score; out-of-range model values are clamped, non-numbers rejected."""

Confidence = Annotated[float, BeforeValidator(_clamp(0.0, 1.0))]


class _ModelOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Risk scoring
# ---------------------------------------------------------------------------


class RiskFactor(_ModelOutput):
    """One driver of an assessment's score."""

    factor: str = Field(min_length=1)
    score: Score = 0.0
    weight: float = 0.0
    description: str = ""


class SuggestedResource(BaseModel):
    """Resource allocation hint; free-form beyond the documented keys."""

    model_config = ConfigDict(extra="allow")

    type: str | None = None
    quantity: int | None = None
    priority: str | None = None
    rationale: str | None = None


class RiskScoreResult(_ModelOutput):
    overall_score: Score = Field(alias="overallScore")
    quality_score: Score = Field(alias="qualityScore")
    process_score: Score = Field(alias="processScore")
    supplier_score: Score = Field(alias="supplierScore")
    compliance_score: Score = Field(alias="complianceScore")
    factors: list[RiskFactor] = Field(default_factory=list)
    analysis: str | None = None
    recommendations: list[str] = Field(default_factory=list)
    suggested_resources: list[SuggestedResource] = Field(default_factory=list, alias="suggestedResources")

    @classmethod
    def neutral(cls) -> "RiskScoreResult":
        """Default substituted when scoring is unavailable."""
        return cls(
            overall_score=50, quality_score=50, process_score=50,
            supplier_score=50, compliance_score=50,
            analysis="AI analysis unavailable",
        )


class TaskProposal(_ModelOutput):
    """A model-proposed audit task. One invalid item rejects the whole list."""

    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    audit_type: Literal["quality", "process", "supplier", "safety", "compliance"] = Field(
        default="quality", alias="auditType",
    )
    priority: Literal["critical", "high", "medium", "low"] = "medium"
    risk_score: Score | None = Field(default=None, alias="riskScore")
    ai_confidence: Confidence | None = Field(default=None, alias="aiConfidence")
    ai_reasoning: str | None = Field(default=None, alias="aiReasoning")


# ---------------------------------------------------------------------------
# Findings and compliance
# ---------------------------------------------------------------------------


def _at_most_five(items: list[str]) -> list[str]:
    return items[:5]


class FindingAnalysis(_ModelOutput):
    analysis: str = Field(min_length=1)
    recommendations: Annotated[list[str], AfterValidator(_at_most_five)] = Field(default_factory=list)


class ComplianceCheckResult(_ModelOutput):
    overall_status: Literal["compliant", "non_compliant", "partially_compliant"] = Field(
        alias="overallStatus",
    )
    score: Score
    results: list[dict[str, Any]] = Field(default_factory=list)
    analysis: str | None = None
    recommendations: list[str] = Field(default_factory=list)
    requires_action: bool = Field(default=False, alias="requiresAction")
    action_items: list[dict[str, Any]] = Field(default_factory=list, alias="actionItems")

    @classmethod
    def neutral(cls) -> "ComplianceCheckResult":
        return cls(overall_status="partially_compliant", score=75)


# ---------------------------------------------------------------------------
# Commonality agent
# ---------------------------------------------------------------------------


class ActionKind(str, enum.Enum):
    """Closed set of actions the commonality agent may take."""

    ANALYZE_DEFECTS = "ANALYZE_DEFECTS"
    COMPARE_SUPPLIERS = "COMPARE_SUPPLIERS"
    CHECK_PROCESS = "CHECK_PROCESS"
    FIND_ROOT_CAUSE = "FIND_ROOT_CAUSE"
    COMPLETE = "COMPLETE"


def _upper(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


def _or_default(default_factory):
    def replace_null(value: Any) -> Any:
        return default_factory() if value is None else value
    return replace_null


class ReActAction(_ModelOutput):
    type: Annotated[ActionKind, BeforeValidator(_upper)]
    description: Annotated[str, BeforeValidator(_or_default(str))] = ""
    params: Annotated[dict[str, Any], BeforeValidator(_or_default(dict))] = Field(default_factory=dict)

    @classmethod
    def complete(cls, description: str = "Complete analysis") -> "ReActAction":
        """Safety-valve action used whenever selection output is unusable."""
        return cls(type=ActionKind.COMPLETE, description=description)


class SupplierInsight(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    supplier_id: str = Field(alias="supplierId", min_length=1)


def _names_supplier(item: Any) -> bool:
    if isinstance(item, SupplierInsight):
        return True
    if not isinstance(item, dict):
        return False
    supplier_id = item.get("supplierId", item.get("supplier_id"))
    return isinstance(supplier_id, str) and bool(supplier_id.strip())


def _identified_insights(value: Any) -> Any:
    """Drop insights that do not name a supplier; keep the rest."""
    if value is None:
        return []
    if not isinstance(value, list):
        return value
    return [item for item in value if _names_supplier(item)]


class CommonalitySynthesis(_ModelOutput):
    patterns: Annotated[list[dict[str, Any]], BeforeValidator(_or_default(list))] = Field(default_factory=list)
    recommendations: Annotated[list[dict[str, Any] | str], BeforeValidator(_or_default(list))] = Field(
        default_factory=list,
    )
    supplier_insights: Annotated[list[SupplierInsight], BeforeValidator(_identified_insights)] = Field(
        default_factory=list, alias="supplierInsights",
    )
    variant_analysis: dict[str, Any] | None = Field(default=None, alias="variantAnalysis")
