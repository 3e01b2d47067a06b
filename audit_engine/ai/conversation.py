"""
Audit Orchestration Engine
Compliance Copilot conversation assembly.

Builds the message list for one copilot turn and calls the gateway:
    - system preamble (kept apart from the stored transcript)
    - retrieval context block built from knowledge entries
    - full user/assistant transcript
    - apologetic fallback when the inference call fails

Persistence (loading, ownership checks, appending turns) lives in
audit_engine.services.compliance_service.
"""

import json
import logging

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "I apologize, but I was unable to generate a response."

TITLE_LENGTH = 100
SNIPPET_LENGTH = 500


class ComplianceCopilot:
    """Stateless helper for multi-turn compliance Q&A."""

    def __init__(self, gateway=None, prompt_registry=None):
        self.gateway = gateway
        self.prompt_registry = prompt_registry

    def system_preamble(self) -> str:
        """System prompt stored on a new conversation."""
        tpl = self.prompt_registry.get("compliance_copilot") if self.prompt_registry else None
        if tpl is None:
            return "You are a compliance copilot for quality management systems."
        return tpl.system

    @staticmethod
    def title_for(message: str) -> str:
        return message.strip()[:TITLE_LENGTH]

    @staticmethod
    def build_context_block(entries: list, extra_context: dict | None = None) -> str:
        """One line per knowledge entry: ``[title]: summary-or-content-prefix``."""
        lines = []
        if entries:
            lines.append("Relevant compliance knowledge:")
            for entry in entries:
                lines.append(entry.context_snippet(SNIPPET_LENGTH))
        if extra_context:
            lines.append(f"Caller context: {json.dumps(extra_context, default=str)}")
        return "\n".join(lines)

    @staticmethod
    def build_messages(system_prompt: str | None, context_block: str, transcript: list[dict]) -> list[dict]:
        """
        Assemble gateway messages: preamble, context, then every turn.

        ``transcript`` entries carry extra keys (timestamp, sources) that the
        gateway does not need; only role and content are forwarded.
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if context_block:
            messages.append({"role": "system", "content": context_block})
        for turn in transcript:
            messages.append({"role": turn["role"], "content": turn["content"]})
        return messages

    def reply(self, messages: list[dict], *, organization_id: str, user_id: str) -> tuple[str, bool]:
        """
        Ask the gateway for the assistant turn.

        Returns:
            (content, degraded): degraded is True when the fallback reply was used.
        """
        if self.gateway is None:
            return FALLBACK_REPLY, True
        try:
            result = self.gateway.chat(
                messages,
                purpose="compliance_copilot",
                user=user_id,
                organization_id=organization_id,
                max_retries=1,
            )
        except Exception as e:
            logger.warning("Copilot reply failed: %s", e,
                           extra={"organization_id": organization_id, "purpose": "compliance_copilot"})
            return FALLBACK_REPLY, True

        content = (result.get("content") or "").strip()
        if not content:
            return FALLBACK_REPLY, True
        return content, False
