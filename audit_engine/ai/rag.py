"""
Audit Orchestration Engine
Knowledge retrieval ranking.

Lexical baseline plus optional semantic re-ranking over knowledge entries:
    - query_terms: query → lexical match terms (used for the SQL prefilter)
    - keyword_scores: BM25 over title + summary + content
    - cosine_similarity / rrf_fusion: semantic ranking fused with keywords
    - KnowledgeRanker: orders a candidate set deterministically

Usage:
    from audit_engine.ai.rag import KnowledgeRanker
    ranker = KnowledgeRanker(gateway)
    ranked = ranker.rank("calibration records", candidates, semantic=True)
"""

import logging
import math
import re
from collections import defaultdict

logger = logging.getLogger(__name__)

MAX_QUERY_TERMS = 8
MIN_TERM_LENGTH = 3

STOPWORDS = frozenset({
    "the", "and", "for", "are", "what", "which", "with", "that", "this", "from",
    "how", "does", "our", "your", "have", "has", "into", "about", "when", "who",
    "why", "can", "should", "must", "will", "required", "need", "needs",
})


def _tokenize(text: str) -> list[str]:
    """Simple whitespace + punctuation tokenizer, lowercased."""
    return re.findall(r'\b\w+\b', (text or "").lower())


def query_terms(query: str) -> list[str]:
    """Distinct, meaningful query terms in first-seen order."""
    terms = []
    for token in _tokenize(query):
        if len(token) < MIN_TERM_LENGTH or token in STOPWORDS or token in terms:
            continue
        terms.append(token)
        if len(terms) == MAX_QUERY_TERMS:
            break
    return terms


def _entry_text(entry) -> str:
    return " ".join(filter(None, [entry.title, entry.summary, entry.content]))


def keyword_scores(query: str, candidates: list) -> dict[str, float]:
    """
    BM25 keyword scoring, normalized to [0, 1].

    Entries with no query term get no score.
    """
    terms = set(_tokenize(query))
    if not terms or not candidates:
        return {}

    df = defaultdict(int)
    doc_tokens = {}
    for entry in candidates:
        tokens = _tokenize(_entry_text(entry))
        doc_tokens[entry.id] = tokens
        for t in set(tokens):
            df[t] += 1

    n = len(candidates)
    avg_dl = sum(len(t) for t in doc_tokens.values()) / max(n, 1)
    k1 = 1.2
    b = 0.75

    scores = {}
    for entry in candidates:
        tokens = doc_tokens[entry.id]
        if not tokens:
            continue
        tf_map = defaultdict(int)
        for t in tokens:
            tf_map[t] += 1
        dl = len(tokens)

        score = 0.0
        for qt in terms:
            if qt in tf_map:
                tf = tf_map[qt]
                idf = math.log((n - df[qt] + 0.5) / (df[qt] + 0.5) + 1)
                score += idf * (tf * (k1 + 1)) / (tf + k1 * (1 - b + b * dl / max(avg_dl, 1)))
        if score > 0:
            scores[entry.id] = score

    max_score = max(scores.values()) if scores else 1.0
    return {k: v / max_score for k, v in scores.items()}


def cosine_similarity(vec_a: list[float], vec_b: list[float]) -> float:
    """Compute cosine similarity between two vectors."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0

    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))

    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def rrf_fusion(
    semantic: dict[str, float],
    keyword: dict[str, float],
    *,
    semantic_weight: float = 0.6,
    keyword_weight: float = 0.4,
    k: int = 60,
) -> dict[str, float]:
    """
    Reciprocal Rank Fusion for combining two ranked lists.

    RRF score = Σ weight / (k + rank)
    """
    rank_a = _scores_to_ranks(semantic)
    rank_b = _scores_to_ranks(keyword)

    combined = {}
    for doc_id in set(semantic) | set(keyword):
        score = 0.0
        if doc_id in rank_a:
            score += semantic_weight / (k + rank_a[doc_id])
        if doc_id in rank_b:
            score += keyword_weight / (k + rank_b[doc_id])
        combined[doc_id] = score
    return combined


def _scores_to_ranks(scores: dict[str, float]) -> dict[str, int]:
    """Convert score dict to rank dict (1-based); ties broken by id."""
    ordered = sorted(scores.items(), key=lambda x: (-x[1], x[0]))
    return {doc_id: rank + 1 for rank, (doc_id, _) in enumerate(ordered)}


class KnowledgeRanker:
    """
    Orders knowledge-entry candidates for a query.

    The ordering is a pure function of the query and the candidates'
    text/embeddings, so repeated searches over unchanged entries return
    the same order.
    """

    def __init__(self, gateway=None):
        self.gateway = gateway

    def rank(self, query: str, candidates: list, *, semantic: bool = False,
             organization_id: str | None = None) -> list[tuple]:
        """
        Returns:
            List of (entry, relevance_score) sorted best first.
        """
        if not candidates:
            return []

        scores = keyword_scores(query, candidates)

        if semantic and self.gateway is not None:
            semantic_scores = self._semantic_scores(query, candidates, organization_id)
            if semantic_scores:
                scores = rrf_fusion(semantic_scores, scores)

        ordered = sorted(
            candidates,
            key=lambda e: (-scores.get(e.id, 0.0), (e.title or "").lower(), e.id),
        )
        return [(e, round(scores.get(e.id, 0.0), 4)) for e in ordered]

    def _semantic_scores(self, query, candidates, organization_id) -> dict[str, float]:
        embedded = [e for e in candidates if e.embedding]
        if not embedded:
            return {}
        try:
            vectors = self.gateway.embed([query], purpose="kb_search",
                                         organization_id=organization_id)
        except Exception as e:
            logger.warning("Query embedding failed, using keyword ranking: %s", e,
                           extra={"organization_id": organization_id})
            return {}
        if not vectors:
            return {}
        query_vec = vectors[0]
        return {e.id: cosine_similarity(query_vec, e.embedding) for e in embedded}
