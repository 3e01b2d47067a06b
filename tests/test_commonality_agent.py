"""
Commonality agent (bounded ReAct loop) and study service tests.

Tests cover:
  - Immediate COMPLETE gives a one-step trace
  - Never completing runs exactly max_iterations steps
  - Wall-clock budget stops the loop between steps
  - Unusable action output falls back to COMPLETE; failed thought uses the generic sentence
  - Every ActionKind has a handler
  - Study persistence, iteration bounds, sign-off and supplier insights
"""
import json

import pytest

from audit_engine.ai.assistants.commonality_agent import (
    ACTION_HANDLERS,
    FALLBACK_THOUGHT,
    CommonalityAgent,
    execute_action,
)
from audit_engine.ai.prompt_registry import PromptRegistry
from audit_engine.ai.schemas import ActionKind, ReActAction
from audit_engine.core.exceptions import NotFoundError, ValidationError
from audit_engine.services import commonality_service

from conftest import ORG, USER, reply


def _scripted(action_type="ANALYZE_DEFECTS", synthesis=None):
    """chat side_effect answering by purpose."""
    def answer(messages, **kwargs):
        purpose = kwargs.get("purpose")
        if purpose == "react_thought":
            return reply("Look at supplier lots.")
        if purpose == "react_action":
            return reply({"type": action_type, "description": f"Run {action_type}", "params": {}})
        return reply(synthesis or {"patterns": [], "recommendations": [], "supplierInsights": []})
    return answer


def _agent(gateway, clock=None):
    if clock is None:
        return CommonalityAgent(gateway, PromptRegistry())
    return CommonalityAgent(gateway, PromptRegistry(), clock=clock)


def _run(agent, **kwargs):
    params = {"study_type": "defect", "filters": {"plant": "P1"},
              "organization_id": ORG, "user_id": USER, "max_iterations": 5,
              "wall_clock_seconds": 120}
    params.update(kwargs)
    return agent.run(**params)


# ═════════════════════════════════════════════════════════════════════════
# AGENT LOOP
# ═════════════════════════════════════════════════════════════════════════

class TestReActLoop:
    def test_immediate_complete(self, gateway):
        gateway.chat.side_effect = _scripted("COMPLETE")
        run = _run(_agent(gateway))
        assert len(run.trace) == 1
        assert run.stop_reason == "complete"
        step = run.trace[0]
        assert step["step"] == 1
        assert step["action_type"] == "COMPLETE"
        assert step["thought"] == "Look at supplier lots."
        assert step["observation"] == "Analysis complete"

    def test_never_complete_hits_max_iterations(self, gateway):
        gateway.chat.side_effect = _scripted("ANALYZE_DEFECTS")
        run = _run(_agent(gateway), max_iterations=3)
        assert [s["step"] for s in run.trace] == [1, 2, 3]
        assert run.stop_reason == "max_iterations"
        # thought + action per step, one synthesis
        assert gateway.chat.call_count == 7

    def test_lowercase_action_accepted(self, gateway):
        gateway.chat.side_effect = _scripted("compare_suppliers")
        run = _run(_agent(gateway), max_iterations=1)
        assert run.trace[0]["action_type"] == "COMPARE_SUPPLIERS"
        assert run.context["supplierInsights"] == []

    def test_wall_clock_budget(self, gateway):
        gateway.chat.side_effect = _scripted("CHECK_PROCESS")
        ticks = iter([0.0, 10.0, 200.0, 400.0])
        run = _run(_agent(gateway, clock=lambda: next(ticks)), max_iterations=5, wall_clock_seconds=120)
        assert len(run.trace) == 2
        assert run.stop_reason == "time_budget"

    def test_unknown_action_becomes_complete(self, gateway):
        def answer(messages, **kwargs):
            if kwargs["purpose"] == "react_action":
                return reply({"type": "CALL_SUPPLIER"})
            return reply("thinking")
        gateway.chat.side_effect = answer
        run = _run(_agent(gateway))
        assert len(run.trace) == 1
        assert run.trace[0]["action_type"] == "COMPLETE"

    def test_null_description_and_params_keep_the_loop_going(self, gateway):
        def answer(messages, **kwargs):
            if kwargs["purpose"] == "react_action":
                return reply({"type": "CHECK_PROCESS", "description": None, "params": None})
            return reply("thinking")
        gateway.chat.side_effect = answer
        run = _run(_agent(gateway), max_iterations=3)
        assert [s["action_type"] for s in run.trace] == ["CHECK_PROCESS"] * 3
        assert run.stop_reason == "max_iterations"

    def test_total_failure_still_finishes(self, failing_gateway):
        run = _run(_agent(failing_gateway))
        assert len(run.trace) == 1
        assert run.trace[0]["thought"] == FALLBACK_THOUGHT
        assert run.stop_reason == "complete"
        assert run.synthesis.patterns == []
        assert run.synthesis.supplier_insights == []

    def test_findings_accumulate_in_context(self, gateway):
        gateway.chat.side_effect = _scripted("FIND_ROOT_CAUSE")
        run = _run(_agent(gateway), max_iterations=2)
        assert [f["step"] for f in run.context["findings"]] == [1, 2]
        assert run.context["rootCauses"] == []
        assert run.context["filters"] == {"plant": "P1"}

    def test_thought_prompt_sees_previous_findings(self, gateway):
        gateway.chat.side_effect = _scripted("ANALYZE_DEFECTS")
        _run(_agent(gateway), max_iterations=2)
        thought_calls = [c for c in gateway.chat.call_args_list if c.kwargs["purpose"] == "react_thought"]
        assert "Analyzed defect patterns" in thought_calls[1].args[0][-1]["content"]


class TestActionHandlers:
    def test_every_action_kind_has_a_handler(self):
        assert set(ACTION_HANDLERS) == set(ActionKind)

    def test_execute_merges_without_overwriting(self):
        context = {"patterns": [{"pattern": "existing"}]}
        obs = execute_action(ReActAction(type="ANALYZE_DEFECTS"), context)
        assert obs.complete is False
        assert context["patterns"] == [{"pattern": "existing"}]

    def test_complete_handler_stops(self):
        assert execute_action(ReActAction.complete(), {}).complete is True


# ═════════════════════════════════════════════════════════════════════════
# STUDY SERVICE
# ═════════════════════════════════════════════════════════════════════════

SYNTHESIS = {
    "patterns": [{"pattern": "Porosity on lot 7", "frequency": 4}],
    "recommendations": ["Tighten incoming inspection", {"action": "Supplier visit"}],
    "supplierInsights": [{"supplierId": "S-7", "riskLevel": "high", "issues": ["porosity"]}],
    "variantAnalysis": {"variant": "B"},
}


class TestStudyService:
    def test_study_persisted_once_completed(self, gateway):
        gateway.chat.side_effect = _scripted("COMPLETE", SYNTHESIS)
        study = commonality_service.run_commonality_analysis(ORG, USER, {
            "title": "Porosity study", "study_type": "defect", "entity_filters": {"plant": "P1"},
        }, gateway=gateway)

        assert study.status == "completed"
        assert study.approval_status == "pending"
        assert study.requires_approval is True
        assert study.stop_reason == "complete"
        assert len(study.react_trace) == 1
        assert study.patterns_found == SYNTHESIS["patterns"]
        assert study.recommendations == SYNTHESIS["recommendations"]
        assert study.supplier_insights[0]["supplierId"] == "S-7"
        assert study.supplier_insights[0]["riskLevel"] == "high"
        assert study.variant_analysis == {"variant": "B"}
        assert study.study_number.startswith("CMN-")

    def test_insight_without_supplier_keeps_rest_of_synthesis(self, gateway):
        synthesis = {**SYNTHESIS, "supplierInsights": [{"supplierName": "no id"}, {"supplierId": "S-7"}]}
        gateway.chat.side_effect = _scripted("COMPLETE", synthesis)
        study = commonality_service.run_commonality_analysis(ORG, USER, {"title": "Partial"}, gateway=gateway)
        assert study.patterns_found == SYNTHESIS["patterns"]
        assert study.recommendations == SYNTHESIS["recommendations"]
        assert study.supplier_insights == [{"supplierId": "S-7"}]

    def test_unparseable_synthesis_gives_empty_result(self, gateway):
        def answer(messages, **kwargs):
            if kwargs["purpose"] == "react_action":
                return reply({"type": "COMPLETE"})
            return reply("not json at all")
        gateway.chat.side_effect = answer
        study = commonality_service.run_commonality_analysis(ORG, USER, {"title": "T"}, gateway=gateway)
        assert study.patterns_found == []
        assert study.recommendations == []
        assert study.supplier_insights == []
        assert study.variant_analysis is None

    def test_iteration_bound_capped_by_hard_limit(self, app, gateway):
        gateway.chat.side_effect = _scripted("ANALYZE_DEFECTS")
        study = commonality_service.run_commonality_analysis(
            ORG, USER, {"title": "Long", "max_iterations": 50}, gateway=gateway,
        )
        assert len(study.react_trace) == app.config["AUDIT_REACT_HARD_LIMIT"]
        assert study.stop_reason == "max_iterations"

    def test_default_iteration_bound(self, app, gateway):
        gateway.chat.side_effect = _scripted("ANALYZE_DEFECTS")
        study = commonality_service.run_commonality_analysis(ORG, USER, {"title": "Default"}, gateway=gateway)
        assert len(study.react_trace) == app.config["AUDIT_REACT_MAX_ITERATIONS"]

    def test_injected_agent_clock(self, gateway):
        gateway.chat.side_effect = _scripted("ANALYZE_DEFECTS")
        ticks = iter([0.0, 1000.0])
        agent = _agent(gateway, clock=lambda: next(ticks))
        study = commonality_service.run_commonality_analysis(ORG, USER, {"title": "Timed"}, agent=agent)
        assert study.stop_reason == "time_budget"
        assert len(study.react_trace) == 1

    @pytest.mark.parametrize("payload", [
        {"title": ""},
        {"title": "T", "study_type": "financial"},
        {"title": "T", "max_iterations": 0},
        {"title": "T", "max_iterations": "five"},
        {"title": "T", "entity_filters": ["plant"]},
        {"title": "T", "analysis_start_date": "2026-03-01", "analysis_end_date": "2026-01-01"},
    ])
    def test_validation(self, gateway, payload):
        with pytest.raises(ValidationError):
            commonality_service.run_commonality_analysis(ORG, USER, payload, gateway=gateway)
        gateway.chat.assert_not_called()

    def test_approve_and_reject_study(self, gateway):
        gateway.chat.side_effect = _scripted("COMPLETE")
        study = commonality_service.run_commonality_analysis(ORG, USER, {"title": "T"}, gateway=gateway)

        approved = commonality_service.approve_study(ORG, "manager", study.id,
                                                     {"approved": True, "comments": "ok"})
        assert approved.approval_status == "approved"
        assert approved.approved_by == "manager"
        assert approved.approval_comments == "ok"

        with pytest.raises(ValidationError):
            commonality_service.approve_study(ORG, "manager", study.id, {"approved": "yes"})
        with pytest.raises(NotFoundError):
            commonality_service.approve_study("org-x", "manager", study.id, {"approved": False})

    def test_list_studies(self, gateway):
        gateway.chat.side_effect = _scripted("COMPLETE")
        commonality_service.run_commonality_analysis(ORG, USER, {"title": "A", "study_type": "supplier"},
                                                     gateway=gateway)
        commonality_service.run_commonality_analysis(ORG, USER, {"title": "B"}, gateway=gateway)
        assert commonality_service.list_studies(ORG, {"study_type": "supplier"})["total"] == 1
        assert commonality_service.list_studies(ORG)["total"] == 2
        with pytest.raises(ValidationError):
            commonality_service.list_studies(ORG, {"status": "paused"})

    def test_supplier_insights_across_studies(self, gateway):
        first = {**SYNTHESIS, "supplierInsights": [
            {"supplierId": "S-7", "riskLevel": "high"}, {"supplierId": "S-8", "riskLevel": "low"},
        ]}
        second = {**SYNTHESIS, "supplierInsights": [{"supplierId": "S-7", "riskLevel": "medium"}]}
        gateway.chat.side_effect = _scripted("COMPLETE", first)
        commonality_service.run_commonality_analysis(ORG, USER, {"title": "One"}, gateway=gateway)
        gateway.chat.side_effect = _scripted("COMPLETE", second)
        commonality_service.run_commonality_analysis(ORG, USER, {"title": "Two"}, gateway=gateway)

        insights = {i["supplierId"]: i for i in commonality_service.get_supplier_insights(ORG)}
        assert insights["S-7"]["study_count"] == 2
        assert insights["S-7"]["riskLevel"] == "high"
        assert insights["S-8"]["study_count"] == 1

        only = commonality_service.get_supplier_insights(ORG, "S-8")
        assert [i["supplierId"] for i in only] == ["S-8"]

    def test_trace_is_json_serialisable(self, gateway):
        gateway.chat.side_effect = _scripted("COMPLETE")
        study = commonality_service.run_commonality_analysis(ORG, USER, {"title": "T"}, gateway=gateway)
        json.dumps(study.to_dict())
