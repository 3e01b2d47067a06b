"""
Audit Orchestration Engine
AI usage and audit trail models.

Models:
    - AIUsageLog: token usage / cost / latency per gateway call.
    - AIAuditLog: immutable record of every inference operation, including
      failed ones, for attributing advisory degradations.
"""

from audit_engine.models import db
from audit_engine.models.base import _utcnow, iso

# Token costs per 1M tokens (input/output)
TOKEN_COSTS = {
    "claude-3-5-haiku-20241022":   {"input": 1.00, "output": 5.00},
    "claude-3-5-sonnet-20241022":  {"input": 3.00, "output": 15.00},
    "gpt-4o-mini":                 {"input": 0.15, "output": 0.60},
    "gpt-4o":                      {"input": 2.50, "output": 10.00},
    "text-embedding-3-small":      {"input": 0.02, "output": 0.00},
    "text-embedding-3-large":      {"input": 0.13, "output": 0.00},
    # Google Gemini, free tier
    "gemini-2.5-flash":            {"input": 0.00, "output": 0.00},
    "gemini-2.5-pro":              {"input": 0.00, "output": 0.00},
    "gemini-embedding-001":        {"input": 0.00, "output": 0.00},
}


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Calculate USD cost for a given model + token counts."""
    costs = TOKEN_COSTS.get(model, {"input": 0.0, "output": 0.0})
    return (prompt_tokens * costs["input"] + completion_tokens * costs["output"]) / 1_000_000


class AIUsageLog(db.Model):
    """
    Tracks token usage and cost for every LLM API call.
    Aggregated for usage dashboards and cost monitoring.
    """

    __tablename__ = "ai_usage_logs"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(30), nullable=False, comment="anthropic / openai / gemini / local")
    model = db.Column(db.String(80), nullable=False)
    prompt_tokens = db.Column(db.Integer, default=0)
    completion_tokens = db.Column(db.Integer, default=0)
    total_tokens = db.Column(db.Integer, default=0)
    cost_usd = db.Column(db.Float, default=0.0)
    latency_ms = db.Column(db.Integer, default=0)

    user = db.Column(db.String(150), default="system")
    purpose = db.Column(db.String(100), default="", comment="e.g. risk_scoring, react_thought")
    organization_id = db.Column(db.String(64), nullable=True, index=True)

    success = db.Column(db.Boolean, default=True)
    error_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "provider": self.provider,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": round(self.cost_usd or 0.0, 6),
            "latency_ms": self.latency_ms,
            "user": self.user,
            "purpose": self.purpose,
            "organization_id": self.organization_id,
            "success": self.success,
            "error_message": self.error_message,
            "created_at": iso(self.created_at),
        }


class AIAuditLog(db.Model):
    """
    Immutable audit trail for every AI operation.
    Used for compliance, debugging, and cost attribution.
    """

    __tablename__ = "ai_audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(50), nullable=False, comment="llm_call, embedding_create")
    provider = db.Column(db.String(30), default="")
    model = db.Column(db.String(80), default="")

    user = db.Column(db.String(150), default="system")
    organization_id = db.Column(db.String(64), nullable=True, index=True)
    purpose = db.Column(db.String(100), default="")
    prompt_hash = db.Column(db.String(64), default="", comment="SHA-256 of prompt for dedup")
    prompt_summary = db.Column(db.String(500), default="", comment="First 500 chars of prompt")

    tokens_used = db.Column(db.Integer, default=0)
    cost_usd = db.Column(db.Float, default=0.0)
    latency_ms = db.Column(db.Integer, default=0)
    response_summary = db.Column(db.String(500), default="", comment="First 500 chars of response")

    success = db.Column(db.Boolean, default=True)
    error_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "provider": self.provider,
            "model": self.model,
            "user": self.user,
            "organization_id": self.organization_id,
            "purpose": self.purpose,
            "prompt_summary": self.prompt_summary,
            "tokens_used": self.tokens_used,
            "cost_usd": round(self.cost_usd or 0.0, 6),
            "latency_ms": self.latency_ms,
            "response_summary": self.response_summary,
            "success": self.success,
            "error_message": self.error_message,
            "created_at": iso(self.created_at),
        }
