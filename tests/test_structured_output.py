"""
Structured model output parsing, response schemas and the prompt registry.
"""
import pytest

from audit_engine.ai.gateway import LocalStubProvider
from audit_engine.ai.prompt_registry import PromptRegistry, PromptTemplate
from audit_engine.ai.schemas import (
    ActionKind,
    CommonalitySynthesis,
    ComplianceCheckResult,
    FindingAnalysis,
    ReActAction,
    RiskScoreResult,
    TaskProposal,
)
from audit_engine.ai.structured import extract_json, strip_code_fences, try_parse_structured


SENTINEL = object()


class TestExtraction:
    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences("```\n[1]\n```") == "[1]"
        assert strip_code_fences("  plain  ") == "plain"
        assert strip_code_fences(None) == ""

    def test_extract_plain_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_extract_json_wrapped_in_prose(self):
        text = 'Here is the result: {"overallStatus": "compliant", "score": 90}. Hope it helps.'
        assert extract_json(text) == {"overallStatus": "compliant", "score": 90}

    def test_extract_skips_undecodable_brackets(self):
        assert extract_json('See [section 4] then [{"title": "T"}]') == [{"title": "T"}]

    def test_no_json_raises(self):
        with pytest.raises(ValueError):
            extract_json("nothing structured here")


class TestTryParseStructured:
    @pytest.mark.parametrize("text", [None, "", "no json", '{"analysis": ""}', "[1, 2]"])
    def test_fallback(self, text):
        assert try_parse_structured(text, FindingAnalysis, SENTINEL) is SENTINEL

    def test_valid_object(self):
        result = try_parse_structured(
            '```json\n{"analysis": "Worn tooling", "recommendations": ["a","b","c","d","e","f"]}\n```',
            FindingAnalysis, None,
        )
        assert result.analysis == "Worn tooling"
        assert result.recommendations == ["a", "b", "c", "d", "e"]

    def test_list_schema_is_all_or_nothing(self):
        good = '[{"title": "A", "auditType": "process"}, {"title": "B"}]'
        parsed = try_parse_structured(good, list[TaskProposal], [])
        assert [t.title for t in parsed] == ["A", "B"]
        assert parsed[0].audit_type == "process"
        assert parsed[1].priority == "medium"

        bad = '[{"title": "A"}, {"title": "B", "priority": "urgent"}]'
        assert try_parse_structured(bad, list[TaskProposal], []) == []


class TestSchemas:
    def test_scores_clamped(self):
        result = RiskScoreResult.model_validate({
            "overallScore": 140, "qualityScore": -5, "processScore": "55",
            "supplierScore": 50, "complianceScore": 50,
        })
        assert (result.overall_score, result.quality_score, result.process_score) == (100.0, 0.0, 55.0)

    @pytest.mark.parametrize("bad", ["high", None, float("nan")])
    def test_non_numeric_score_rejected(self, bad):
        with pytest.raises(ValueError):
            RiskScoreResult.model_validate({
                "overallScore": bad, "qualityScore": 1, "processScore": 1,
                "supplierScore": 1, "complianceScore": 1,
            })

    def test_confidence_clamped(self):
        assert TaskProposal.model_validate({"title": "T", "aiConfidence": 3}).ai_confidence == 1.0

    def test_neutral_defaults(self):
        risk = RiskScoreResult.neutral()
        assert {risk.overall_score, risk.quality_score, risk.process_score,
                risk.supplier_score, risk.compliance_score} == {50.0}
        assert risk.analysis == "AI analysis unavailable"
        verdict = ComplianceCheckResult.neutral()
        assert (verdict.overall_status, verdict.score) == ("partially_compliant", 75.0)

    def test_react_action_normalised(self):
        assert ReActAction.model_validate({"type": " find_root_cause "}).type is ActionKind.FIND_ROOT_CAUSE
        with pytest.raises(ValueError):
            ReActAction.model_validate({"type": "PHONE_SUPPLIER"})
        assert ReActAction.complete().type is ActionKind.COMPLETE

    def test_synthesis_keeps_extra_insight_fields(self):
        synthesis = CommonalitySynthesis.model_validate({
            "supplierInsights": [{"supplierId": "S-1", "riskLevel": "high"}],
        })
        dumped = synthesis.supplier_insights[0].model_dump(by_alias=True)
        assert dumped == {"supplierId": "S-1", "riskLevel": "high"}

    def test_insight_without_supplier_is_dropped_alone(self):
        synthesis = try_parse_structured(
            '{"patterns": [{"patternId": "P1"}], "recommendations": ["Fix weld"],'
            ' "supplierInsights": [{"supplierName": "no id"}, {"supplierId": " "}, "S-9",'
            ' {"supplierId": "S-1"}]}',
            CommonalitySynthesis, None,
        )
        assert synthesis.patterns == [{"patternId": "P1"}]
        assert synthesis.recommendations == ["Fix weld"]
        assert [i.supplier_id for i in synthesis.supplier_insights] == ["S-1"]

    def test_synthesis_null_lists_become_empty(self):
        synthesis = CommonalitySynthesis.model_validate({
            "patterns": None, "recommendations": None, "supplierInsights": None,
        })
        assert (synthesis.patterns, synthesis.recommendations, synthesis.supplier_insights) == ([], [], [])

    def test_react_action_null_description_and_params(self):
        action = try_parse_structured(
            '{"type": "ANALYZE_DEFECTS", "description": null, "params": null}', ReActAction, None,
        )
        assert action.type is ActionKind.ANALYZE_DEFECTS
        assert (action.description, action.params) == ("", {})


# ═════════════════════════════════════════════════════════════════════════
# PROMPT REGISTRY
# ═════════════════════════════════════════════════════════════════════════

CALL_SITES = [
    "risk_assessment", "task_generation", "finding_analysis", "compliance_copilot",
    "compliance_check", "kb_summary", "react_thought", "react_action", "commonality_synthesis",
]


class TestPromptRegistry:
    def test_defaults_cover_every_call_site(self):
        registry = PromptRegistry()
        for name in CALL_SITES:
            assert registry.get(name) is not None, name

    def test_render_substitutes_and_keeps_unknown_placeholders(self):
        tpl = PromptTemplate(name="t", version="v1", system="Hello {{ who }}", user="{{missing}} x")
        assert tpl.render(who="auditor") == [
            {"role": "system", "content": "Hello auditor"},
            {"role": "user", "content": "{{missing}} x"},
        ]

    def test_empty_user_part_omitted(self):
        messages = PromptRegistry().render("compliance_copilot")
        assert [m["role"] for m in messages] == ["system"]

    def test_unknown_template(self):
        with pytest.raises(KeyError):
            PromptRegistry().render("does_not_exist")

    def test_yaml_override_replaces_default(self, tmp_path):
        (tmp_path / "summary.yaml").write_text(
            "name: kb_summary\nversion: v1\nsystem: Be brief.\nuser: 'Shorten: {{content}}'\n",
            encoding="utf-8",
        )
        (tmp_path / "summary_v2.yaml").write_text(
            "name: kb_summary\nversion: v2\nuser: 'V2 {{content}}'\n", encoding="utf-8",
        )
        registry = PromptRegistry(prompts_dir=str(tmp_path))
        assert registry.render("kb_summary", content="doc")[-1]["content"] == "Shorten: doc"
        assert sorted(registry.get_versions("kb_summary")) == ["v1", "v2"]

    def test_invalid_yaml_is_skipped(self, tmp_path):
        (tmp_path / "broken.yaml").write_text("name: [unclosed\n", encoding="utf-8")
        (tmp_path / "list.yaml").write_text("- a\n- b\n", encoding="utf-8")
        registry = PromptRegistry(prompts_dir=str(tmp_path))
        assert len(registry.list_templates()) == len(CALL_SITES)

    def test_missing_directory_uses_defaults(self, tmp_path):
        registry = PromptRegistry(prompts_dir=str(tmp_path / "nope"))
        assert registry.get("react_action") is not None


class TestLocalStubShapes:
    """The stub's canned answers satisfy the schemas of the prompts that trigger them."""

    def _answer(self, name, **variables):
        messages = PromptRegistry().render(name, **variables)
        return LocalStubProvider().chat(messages)["content"]

    def test_risk_assessment(self):
        result = try_parse_structured(self._answer("risk_assessment"), RiskScoreResult, None)
        assert result.overall_score == 58

    def test_task_generation(self):
        tasks = try_parse_structured(self._answer("task_generation"), list[TaskProposal], None)
        assert tasks[0].audit_type == "supplier"

    def test_finding_analysis(self):
        analysis = try_parse_structured(self._answer("finding_analysis"), FindingAnalysis, None)
        assert len(analysis.recommendations) == 3

    def test_react_action(self):
        action = try_parse_structured(self._answer("react_action"), ReActAction, None)
        assert action.type is ActionKind.COMPLETE

    def test_synthesis(self):
        synthesis = try_parse_structured(self._answer("commonality_synthesis"), CommonalitySynthesis, None)
        assert synthesis.patterns == []

    def test_embeddings_are_deterministic(self):
        stub = LocalStubProvider()
        assert stub.embed(["a"]) == stub.embed(["a"])
        assert len(stub.embed(["a"])[0]) == LocalStubProvider.EMBEDDING_DIM
