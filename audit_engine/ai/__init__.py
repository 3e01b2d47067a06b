"""
Audit Orchestration Engine
AI module.

Submodules:
    - gateway: LLM Gateway (provider routing, cost tracking, audit logging)
    - prompt_registry: prompt templates (built-in defaults + YAML overrides)
    - structured: parse-then-validate-then-default helper for model output
    - schemas: Pydantic schemas for every structured model response
    - rag: lexical / semantic ranking of knowledge entries
    - conversation: compliance copilot message assembly
    - assistants: risk scorer, finding analyst, compliance auditor, commonality agent
"""

from flask import current_app


def get_gateway():
    """Return the app-wide LLMGateway, creating it on first use."""
    gw = current_app.extensions.get("audit_llm_gateway")
    if gw is None:
        from audit_engine.ai.gateway import LLMGateway
        gw = LLMGateway()
        current_app.extensions["audit_llm_gateway"] = gw
    return gw


def get_prompt_registry():
    """Return the app-wide PromptRegistry, creating it on first use."""
    registry = current_app.extensions.get("audit_prompt_registry")
    if registry is None:
        from audit_engine.ai.prompt_registry import PromptRegistry
        registry = PromptRegistry(current_app.config.get("AUDIT_PROMPTS_DIR"))
        current_app.extensions["audit_prompt_registry"] = registry
    return registry
