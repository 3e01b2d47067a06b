"""
Compliance knowledge store tests.

Tests cover:
  - Entry creation with embedding and generated summary, and degraded enrichment
  - Keyword ranking order and deterministic tie-breaking
  - usage_count bumps on every search, cached or not
  - Expired / archived entries excluded; cache invalidated on change
  - Semantic re-ranking and its keyword fallback
"""
from datetime import datetime, timedelta, timezone

import pytest

from audit_engine.ai.rag import KnowledgeRanker, cosine_similarity, keyword_scores, query_terms, rrf_fusion
from audit_engine.core.exceptions import NotFoundError, ValidationError
from audit_engine.models import db
from audit_engine.models.compliance import ComplianceKnowledgeEntry
from audit_engine.services import knowledge_service as kb

from conftest import ORG, OTHER_ORG, USER, reply


def _entry(gateway, title, content, **extra):
    return kb.add_entry(ORG, USER, {"title": title, "content": content, "summary": extra.pop("summary", "s"),
                                    **extra}, gateway=gateway)


@pytest.fixture()
def corpus(gateway):
    return {
        "calibration": _entry(gateway, "Calibration procedure",
                              "Calibration of gauges every six months. Calibration records kept.",
                              category="procedure", document_type="sop"),
        "training": _entry(gateway, "Training policy",
                           "Operators receive training before calibration tasks.",
                           category="policy"),
        "welding": _entry(gateway, "Welding standard", "Weld seam inspection rules."),
    }


# ═════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════

class TestAddEntry:
    def test_embedding_and_summary_generated(self, gateway):
        gateway.chat.return_value = reply("Short summary.")
        gateway.embed.return_value = [[0.1, 0.2, 0.3]]
        e = kb.add_entry(ORG, USER, {"title": "ISO 9001 clause 7.1.5", "content": "Monitoring resources."},
                         gateway=gateway)
        assert e.embedding == [0.1, 0.2, 0.3]
        assert e.embedding_model == "mock-embed"
        assert e.summary == "Short summary."
        assert e.status == "active"
        assert e.usage_count == 0
        assert e.version == 1

    def test_supplied_summary_skips_model(self, gateway):
        kb.add_entry(ORG, USER, {"title": "T", "content": "C", "summary": "Given"}, gateway=gateway)
        gateway.chat.assert_not_called()

    def test_enrichment_failure_still_stores_entry(self, failing_gateway):
        e = kb.add_entry(ORG, USER, {"title": "T", "content": "C"}, gateway=failing_gateway)
        assert e.embedding is None
        assert e.embedding_model is None
        assert e.summary is None
        assert kb.get_entry(ORG, e.id).title == "T"

    @pytest.mark.parametrize("payload", [
        {"title": "", "content": "C"},
        {"title": "T"},
        {"title": "T", "content": "C", "category": "rumour"},
        {"title": "T", "content": "C", "document_type": "memo"},
        {"title": "T", "content": "C", "tags": "iso"},
    ])
    def test_validation(self, gateway, payload):
        with pytest.raises(ValidationError):
            kb.add_entry(ORG, USER, payload, gateway=gateway)

    def test_update_content_bumps_version(self, gateway):
        e = _entry(gateway, "T", "v1 text")
        gateway.embed.reset_mock()
        kb.update_entry(ORG, USER, e.id, {"content": "v2 text"}, gateway=gateway)
        e = kb.get_entry(ORG, e.id)
        assert e.version == 2
        gateway.embed.assert_called_once()

    def test_update_metadata_keeps_version(self, gateway):
        e = _entry(gateway, "T", "text")
        kb.update_entry(ORG, USER, e.id, {"tags": ["iso"], "status": "archived"}, gateway=gateway)
        e = kb.get_entry(ORG, e.id)
        assert e.version == 1
        assert e.tags == ["iso"]

    def test_delete_and_scope(self, gateway):
        e = _entry(gateway, "T", "text")
        with pytest.raises(NotFoundError):
            kb.delete_entry(OTHER_ORG, e.id)
        kb.delete_entry(ORG, e.id)
        with pytest.raises(NotFoundError):
            kb.get_entry(ORG, e.id)


# ═════════════════════════════════════════════════════════════════════════
# SEARCH
# ═════════════════════════════════════════════════════════════════════════

class TestSearch:
    def test_ranking_prefers_more_relevant_entry(self, corpus):
        results = kb.search(ORG, {"query": "calibration records"})
        titles = [e.title for e, _ in results]
        assert titles[0] == "Calibration procedure"
        assert "Welding standard" not in titles
        scores = [s for _, s in results]
        assert scores == sorted(scores, reverse=True)

    def test_usage_count_bumped_on_every_call(self, corpus):
        first = [e.id for e, _ in kb.search(ORG, {"query": "calibration"})]
        second = [e.id for e, _ in kb.search(ORG, {"query": "calibration"})]
        assert first == second

        for entry_id in first:
            assert db.session.get(ComplianceKnowledgeEntry, entry_id).usage_count == 2
        assert kb.get_entry(ORG, corpus["welding"].id).usage_count == 0

    def test_ranking_stable_as_usage_grows(self, corpus):
        orders = set()
        for _ in range(3):
            orders.add(tuple(e.id for e, _ in kb.search(ORG, {"query": "training calibration"})))
            kb.update_entry(ORG, USER, corpus["welding"].id, {"tags": ["x"]})
        assert len(orders) == 1

    def test_expired_entries_excluded(self, gateway, corpus):
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        _entry(gateway, "Old calibration guide", "calibration", expiry_date=past)
        titles = [e.title for e, _ in kb.search(ORG, {"query": "calibration"})]
        assert "Old calibration guide" not in titles

    def test_archived_entries_excluded(self, corpus):
        kb.update_entry(ORG, USER, corpus["calibration"].id, {"status": "archived"})
        titles = [e.title for e, _ in kb.search(ORG, {"query": "calibration"})]
        assert "Calibration procedure" not in titles

    def test_new_entry_invalidates_cached_ranking(self, gateway, corpus):
        kb.search(ORG, {"query": "welding"})
        _entry(gateway, "Welding procedure", "welding parameters")
        titles = [e.title for e, _ in kb.search(ORG, {"query": "welding"})]
        assert "Welding procedure" in titles

    def test_category_filter_and_limit(self, corpus):
        results = kb.search(ORG, {"query": "calibration", "category": "policy"})
        assert [e.title for e, _ in results] == ["Training policy"]
        assert len(kb.search(ORG, {"query": "calibration", "limit": 1})) == 1

    def test_other_organization_sees_nothing(self, corpus):
        assert kb.search(OTHER_ORG, {"query": "calibration"}) == []

    def test_empty_query_rejected(self):
        with pytest.raises(ValidationError):
            kb.search(ORG, {"query": "  "})

    def test_semantic_search_uses_embeddings(self, gateway):
        gateway.embed.side_effect = [[[1.0, 0.0]], [[0.0, 1.0]], [[0.0, 1.0]]]
        a = _entry(gateway, "Audit plan A", "audit plan")
        b = _entry(gateway, "Audit plan B", "audit plan")
        results = kb.search(ORG, {"query": "audit plan", "semantic": True}, gateway=gateway)
        assert [e.id for e, _ in results] == [b.id, a.id]

    def test_semantic_failure_falls_back_to_keywords(self, gateway, corpus):
        gateway.embed.side_effect = RuntimeError("down")
        results = kb.search(ORG, {"query": "calibration records", "semantic": True}, gateway=gateway)
        assert results[0][0].title == "Calibration procedure"


class TestRankingHelpers:
    def test_query_terms_drop_stopwords_and_duplicates(self):
        assert query_terms("What are the calibration calibration rules for us?") == ["calibration", "rules"]

    def test_keyword_scores_normalised(self):
        class E:
            def __init__(self, id, title):
                self.id, self.title, self.summary, self.content = id, title, None, None
        scores = keyword_scores("gauge", [E("1", "gauge gauge"), E("2", "gauge"), E("3", "other")])
        assert scores["1"] == 1.0
        assert 0 < scores["2"] < 1
        assert "3" not in scores

    def test_cosine_similarity_edges(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 0]) == 0.0
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0

    def test_rrf_prefers_items_in_both_lists(self):
        fused = rrf_fusion({"a": 0.9, "b": 0.5}, {"b": 1.0, "c": 0.2})
        assert max(fused, key=fused.get) == "b"

    def test_ranker_breaks_ties_by_title_then_id(self):
        class E:
            def __init__(self, id, title):
                self.id, self.title, self.summary, self.content, self.embedding = id, title, None, "same", None
        ranked = KnowledgeRanker().rank("same", [E("2", "beta"), E("9", "Alpha"), E("1", "beta")])
        assert [e.id for e, _ in ranked] == ["9", "1", "2"]
