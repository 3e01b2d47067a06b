"""
Compliance copilot and compliance check tests.

Tests cover:
  - New conversation: title, preamble kept out of the transcript, sources
  - Continuation appends user/assistant turns in order, title unchanged
  - Conversations are private to their user and organization
  - Apology fallback when inference fails
  - Compliance checks: parsed verdict, neutral verdict, default standards
"""
import pytest

from audit_engine.ai.conversation import FALLBACK_REPLY, ComplianceCopilot
from audit_engine.core.exceptions import NotFoundError, ValidationError
from audit_engine.services import compliance_service, configuration_service, knowledge_service

from conftest import ORG, OTHER_ORG, USER, reply


@pytest.fixture()
def knowledge(gateway):
    return knowledge_service.add_entry(ORG, USER, {
        "title": "Supplier approval procedure",
        "content": "New suppliers require an on-site qualification before approval.",
        "summary": "Suppliers are qualified on site.",
        "category": "procedure",
    }, gateway=gateway)


# ═════════════════════════════════════════════════════════════════════════
# CHAT
# ═════════════════════════════════════════════════════════════════════════

class TestChat:
    def test_first_turn_creates_conversation(self, gateway, knowledge):
        gateway.chat.return_value = reply("Qualify them on site first.")

        result = compliance_service.chat(ORG, USER, {"message": "How do we approve new suppliers?"},
                                         gateway=gateway)

        assert result["message"] == "Qualify them on site first."
        assert result["degraded"] is False
        assert [s["id"] for s in result["sources"]] == [knowledge.id]
        assert result["sources"][0]["title"] == "Supplier approval procedure"

        conv = compliance_service.get_conversation(ORG, USER, result["conversation_id"])
        assert conv.title == "How do we approve new suppliers?"
        assert conv.system_prompt
        assert [m["role"] for m in conv.messages] == ["user", "assistant"]
        assert conv.messages[1]["sources"] == [knowledge.id]

    def test_prompt_carries_preamble_context_and_transcript(self, gateway, knowledge):
        gateway.chat.return_value = reply("Answer")
        compliance_service.chat(ORG, USER, {"message": "supplier approval steps?"}, gateway=gateway)

        messages = gateway.chat.call_args[0][0]
        assert messages[0]["role"] == "system"
        assert "Relevant compliance knowledge" in messages[1]["content"]
        assert "[Supplier approval procedure]: Suppliers are qualified on site." in messages[1]["content"]
        assert messages[-1] == {"role": "user", "content": "supplier approval steps?"}

    def test_continuation_appends_in_order(self, gateway):
        gateway.chat.side_effect = [reply("First answer"), reply("Second answer")]
        first = compliance_service.chat(ORG, USER, {"message": "First question"}, gateway=gateway)
        second = compliance_service.chat(ORG, USER, {"message": "Second question",
                                                     "conversation_id": first["conversation_id"]},
                                         gateway=gateway)

        assert second["conversation_id"] == first["conversation_id"]
        conv = compliance_service.get_conversation(ORG, USER, first["conversation_id"])
        assert [(m["role"], m["content"]) for m in conv.messages] == [
            ("user", "First question"),
            ("assistant", "First answer"),
            ("user", "Second question"),
            ("assistant", "Second answer"),
        ]
        assert conv.title == "First question"

        sent = gateway.chat.call_args_list[1][0][0]
        assert [m["content"] for m in sent if m["role"] != "system"] == [
            "First question", "First answer", "Second question",
        ]

    def test_other_user_cannot_continue(self, gateway):
        first = compliance_service.chat(ORG, USER, {"message": "Mine"}, gateway=gateway)
        with pytest.raises(NotFoundError):
            compliance_service.chat(ORG, "user-2", {"message": "Hijack",
                                                    "conversation_id": first["conversation_id"]},
                                    gateway=gateway)
        with pytest.raises(NotFoundError):
            compliance_service.get_conversation(OTHER_ORG, USER, first["conversation_id"])

    def test_failure_returns_apology(self, failing_gateway):
        result = compliance_service.chat(ORG, USER, {"message": "Anything?"}, gateway=failing_gateway)
        assert result["message"] == FALLBACK_REPLY
        assert result["degraded"] is True
        conv = compliance_service.get_conversation(ORG, USER, result["conversation_id"])
        assert conv.messages[-1]["content"] == FALLBACK_REPLY

    def test_empty_answer_returns_apology(self, gateway):
        gateway.chat.return_value = reply("   ")
        result = compliance_service.chat(ORG, USER, {"message": "Anything?"}, gateway=gateway)
        assert result["message"] == FALLBACK_REPLY

    def test_long_message_title_truncated(self, gateway):
        result = compliance_service.chat(ORG, USER, {"message": "q" * 250}, gateway=gateway)
        conv = compliance_service.get_conversation(ORG, USER, result["conversation_id"])
        assert len(conv.title) == 100

    def test_context_is_merged(self, gateway):
        first = compliance_service.chat(ORG, USER, {"message": "Hi", "context": {"plant": "P1"}},
                                        gateway=gateway)
        compliance_service.chat(ORG, USER, {"message": "Again", "conversation_id": first["conversation_id"],
                                            "context": {"line": "L2"}}, gateway=gateway)
        conv = compliance_service.get_conversation(ORG, USER, first["conversation_id"])
        assert conv.context == {"plant": "P1", "line": "L2"}

    @pytest.mark.parametrize("payload", [{}, {"message": "  "}, {"message": "Hi", "context": "plant"}])
    def test_validation(self, gateway, payload):
        with pytest.raises(ValidationError):
            compliance_service.chat(ORG, USER, payload, gateway=gateway)

    def test_list_is_per_user(self, gateway):
        compliance_service.chat(ORG, USER, {"message": "One"}, gateway=gateway)
        compliance_service.chat(ORG, "user-2", {"message": "Two"}, gateway=gateway)
        assert [c.title for c in compliance_service.list_conversations(ORG, USER)] == ["One"]


class TestCopilotHelpers:
    def test_build_messages_strips_transcript_metadata(self):
        msgs = ComplianceCopilot.build_messages("sys", "", [
            {"role": "user", "content": "q", "timestamp": "t"},
            {"role": "assistant", "content": "a", "timestamp": "t", "sources": ["x"]},
        ])
        assert msgs == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "a"},
        ]

    def test_no_gateway_degrades(self):
        content, degraded = ComplianceCopilot(None).reply([], organization_id=ORG, user_id=USER)
        assert (content, degraded) == (FALLBACK_REPLY, True)


# ═════════════════════════════════════════════════════════════════════════
# COMPLIANCE CHECKS
# ═════════════════════════════════════════════════════════════════════════

class TestComplianceCheck:
    def test_parsed_verdict_is_stored(self, gateway, knowledge):
        gateway.chat.return_value = reply({
            "overallStatus": "non_compliant", "score": 35,
            "results": [{"requirement": "7.1.5", "status": "non_compliant"}],
            "recommendations": ["Calibrate"], "requiresAction": True,
            "actionItems": [{"description": "Calibrate gauges"}],
        })
        check = compliance_service.run_compliance_check(ORG, USER, {
            "entity_type": "process", "entity_id": "P-1", "standards": ["IATF 16949"],
        }, gateway=gateway)

        assert check.overall_status == "non_compliant"
        assert check.compliance_score == 35
        assert check.requires_action is True
        assert check.standards_checked == ["IATF 16949"]
        assert check.degraded is False
        assert check.check_number.startswith("CMP-")
        assert check.performed_by == USER
        prompt = gateway.chat.call_args[0][0][-1]["content"]
        assert "[Supplier approval procedure]" in prompt

    def test_failure_gives_neutral_verdict(self, failing_gateway):
        check = compliance_service.run_compliance_check(ORG, USER, {
            "entity_type": "supplier", "entity_id": "S-1",
        }, gateway=failing_gateway)
        assert check.overall_status == "partially_compliant"
        assert check.compliance_score == 75
        assert check.degraded is True
        assert check.check_results == []

    def test_invalid_status_gives_neutral_verdict(self, gateway):
        gateway.chat.return_value = reply({"overallStatus": "mostly_fine", "score": 90})
        check = compliance_service.run_compliance_check(ORG, USER, {
            "entity_type": "supplier", "entity_id": "S-1",
        }, gateway=gateway)
        assert check.overall_status == "partially_compliant"
        assert check.degraded is True

    def test_default_standards_from_configuration(self, failing_gateway):
        configuration_service.update_configuration(ORG, {"default_standards": ["ISO 9001", "ISO 14001"]})
        check = compliance_service.run_compliance_check(ORG, USER, {
            "entity_type": "site", "entity_id": "S-1",
        }, gateway=failing_gateway)
        assert check.standards_checked == ["ISO 9001", "ISO 14001"]

    def test_missing_entity_rejected(self, gateway):
        with pytest.raises(ValidationError):
            compliance_service.run_compliance_check(ORG, USER, {"entity_type": "site"}, gateway=gateway)

    def test_list_and_scope(self, failing_gateway):
        check = compliance_service.run_compliance_check(ORG, USER, {
            "entity_type": "site", "entity_id": "S-1",
        }, gateway=failing_gateway)
        result = compliance_service.list_compliance_checks(ORG, {"overall_status": "partially_compliant"})
        assert result["total"] == 1
        with pytest.raises(NotFoundError):
            compliance_service.get_compliance_check(OTHER_ORG, check.id)
        with pytest.raises(ValidationError):
            compliance_service.list_compliance_checks(ORG, {"overall_status": "unknown"})
