"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in audit_engine/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from audit_engine.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Blueprints whose write routes call the inference service
AI_BLUEPRINTS = ("audit_risk", "audit_compliance", "audit_commonality")

# Plain CRUD / bookkeeping blueprints
WRITE_BLUEPRINTS = ("audit_tasks", "audit_settings")

DEFAULT_AI_LIMIT = "30 per minute"
DEFAULT_WRITE_LIMIT = "120 per minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to the audit blueprints.

    Limits (per remote IP):
        - Inference-backed blueprints: AUDIT_AI_RATE_LIMIT (default 30/minute)
        - CRUD blueprints:             AUDIT_WRITE_RATE_LIMIT (default 120/minute)

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    ai_limit = app.config.get("AUDIT_AI_RATE_LIMIT", DEFAULT_AI_LIMIT)
    write_limit = app.config.get("AUDIT_WRITE_RATE_LIMIT", DEFAULT_WRITE_LIMIT)

    for bp_name in AI_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(ai_limit)(bp)

    for bp_name in WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit)(bp)

    app.logger.info("Rate limiter configured: AI=%s, write=%s", ai_limit, write_limit)
