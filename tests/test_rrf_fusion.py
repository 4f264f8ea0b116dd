# File: tests/test_rrf_fusion.py
"""
Tests for RRF fusion and the adaptive multi-query retriever.

Covers:
  1. rrf_fuse: formula, weights, tie order, duplicates, truncation, provenance
  2. AdaptiveRRFRetriever against a fake index: dynamic K, search_k,
     failure policy (failed / timed-out queries, escaping errors), hybrid
  3. Utilities: statistics, namespaces, K achievement, debug dump,
     module-level search helpers

The fake index ignores vector maths: embed_fn returns (query,) and the
index looks the query up in a canned table, so ranked lists are exact.
"""

from __future__ import annotations

import time
from typing import Optional

import pytest

from ssr.contracts.schemas import QueryEnhancementConfig, RetrievedChunk, Stakeholder
from ssr.query.enhancer import QueryEnhancer
from ssr.retrieval.rrf_fusion import (
    CONTENT_SEPARATOR,
    SEARCH_FAILED,
    AdaptiveRRFRetriever,
    FusedDocument,
    debug_rrf_results,
    generate_namespace,
    get_rrf_statistics,
    log_k_achievement_rate,
    perform_adaptive_rrf_search,
    perform_rag_search,
    perform_rag_search_with_hybrid,
    rrf_fuse,
)
from ssr.retrieval.sparse_vector import SparseVectorBuilder
from ssr.retrieval.vector_index import IndexMatch, IndexStats
from ssr.stakeholders import get_predefined_stakeholder

GENERAL = Stakeholder(id="custom_x", role="Observer", concerns=["weekly schedule", "staffing"])


# ── Fixtures ──────────────────────────────────────────────────────────────────

def _match(i: int, score: Optional[float] = None) -> IndexMatch:
    return IndexMatch(
        id=f"d{i}",
        score=1.0 - i / 100 if score is None else score,
        metadata={"text": f"chunk {i}", "file_name": f"f{i % 3}.md", "chunk_index": i},
    )


class FakeIndex:
    store_type = "qdrant"

    def __init__(self, n: int = 30, by_query: Optional[dict] = None, fail_sparse: bool = False):
        self.n = n
        self.by_query = by_query or {}
        self.fail_sparse = fail_sparse
        self.calls: list[dict] = []
        self.closed = False

    def describe_stats(self, namespace):
        return IndexStats(record_count=self.n)

    def query(self, namespace, dense_vector, sparse_vector=None, top_k=10):
        query = dense_vector[0]
        self.calls.append({"namespace": namespace, "query": query, "top_k": top_k, "sparse": sparse_vector})
        if sparse_vector is not None and self.fail_sparse:
            raise RuntimeError("sparse index unavailable")
        matches = self.by_query.get(query, [_match(i) for i in range(self.n)])
        return matches[:top_k]

    def close(self):
        self.closed = True


def _embed(query: str):
    return (query,)


def _queries(stakeholder: Stakeholder) -> list[str]:
    return QueryEnhancer().enhance_query(stakeholder, QueryEnhancementConfig(max_queries=5))


def _retriever(index: FakeIndex, embed_fn=_embed, **kwargs) -> AdaptiveRRFRetriever:
    return AdaptiveRRFRetriever(embed_fn=embed_fn, index=index, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════════
# RRF FUSION
# ═══════════════════════════════════════════════════════════════════════════════

class TestRRFFuse:

    def test_symmetric_lists_tie_in_first_seen_order(self):
        fused = rrf_fuse([("q1", [_match(1), _match(2)]), ("q2", [_match(2), _match(1)])], [1.0, 1.0])
        assert [d.id for d in fused] == ["d1", "d2"]
        assert fused[0].rrf_score == pytest.approx(1 / 61 + 1 / 62)
        assert fused[0].rrf_score == fused[1].rrf_score

    @pytest.mark.parametrize("weights,first", [([2.0, 1.0], "d1"), ([1.0, 2.0], "d2")])
    def test_weights_break_symmetry(self, weights, first):
        fused = rrf_fuse([("q1", [_match(1), _match(2)]), ("q2", [_match(2), _match(1)])], weights)
        assert fused[0].id == first

    def test_weighted_score(self):
        fused = rrf_fuse([("q1", [_match(1)]), ("q2", [_match(1)])], [1.5, 0.5])
        assert fused[0].rrf_score == pytest.approx(1.5 / 61 + 0.5 / 61)

    def test_missing_weight_counts_as_one(self):
        fused = rrf_fuse([("q1", [_match(1)]), ("q2", [_match(1)])], [1.0])
        assert fused[0].rrf_score == pytest.approx(2 / 61)

    def test_duplicate_within_list_counted_once(self):
        fused = rrf_fuse([("q1", [_match(1), _match(1), _match(2)])], [1.0])
        by_id = {d.id: d for d in fused}
        assert by_id["d1"].rrf_score == pytest.approx(1 / 61)
        assert by_id["d1"].ranks == {"q1": 1}
        assert by_id["d2"].rrf_score == pytest.approx(1 / 63)

    def test_custom_rrf_k(self):
        fused = rrf_fuse([("q1", [_match(1)])], [1.0], rrf_k=10)
        assert fused[0].rrf_score == pytest.approx(1 / 11)

    def test_top_k_truncates(self):
        fused = rrf_fuse([("q1", [_match(i) for i in range(10)])], [1.0], top_k=3)
        assert [d.id for d in fused] == ["d0", "d1", "d2"]

    def test_provenance(self):
        fused = rrf_fuse(
            [("q1", [_match(1, 0.9), _match(2, 0.8)]), ("q2", []), ("q3", [_match(2, 0.7)])],
            [1.0, 1.0, 1.0],
        )
        d2 = next(d for d in fused if d.id == "d2")
        assert d2.query_scores == {"q1": 0.8, "q3": 0.7}
        assert d2.ranks == {"q1": 2, "q3": 1}
        assert d2.query_coverage == 2
        assert d2.content == "chunk 2"
        assert d2.file_name == "f2.md"
        assert d2.chunk_index == 2

    def test_empty(self):
        assert rrf_fuse([], []) == []
        assert rrf_fuse([("q1", [])], [1.0]) == []


# ═══════════════════════════════════════════════════════════════════════════════
# RETRIEVER
# ═══════════════════════════════════════════════════════════════════════════════

class TestRetrieverSearch:

    def test_dynamic_k_and_search_k(self):
        index = FakeIndex(n=30)
        cxo = get_predefined_stakeholder("cxo")
        result = _retriever(index).search(cxo, "cxo")

        assert result.metadata.dynamic_k == 15
        assert result.metadata.search_k == 23
        assert result.metadata.total_chunks == 30
        assert result.metadata.queries_used == _queries(cxo)
        assert result.metadata.error is None
        assert result.metadata.k_achievement_rate == 1.0
        assert result.metadata.search_id
        assert [d.id for d in result.documents] == [f"d{i}" for i in range(15)]
        assert {c["top_k"] for c in index.calls} == {23}
        assert {c["namespace"] for c in index.calls} == {"cxo"}

    def test_content_joined_in_rank_order(self):
        result = _retriever(FakeIndex(n=3)).search(GENERAL, "ns", top_k=2)
        assert result.content == CONTENT_SEPARATOR.join(["chunk 0", "chunk 1"])

    def test_statistics(self):
        result = _retriever(FakeIndex(n=30)).search(GENERAL, "ns", top_k=6)
        stats = result.statistics
        assert stats.total_unique_documents == 6
        assert stats.documents_by_file == {"f0.md": 2, "f1.md": 2, "f2.md": 2}
        assert stats.average_query_coverage == len(_queries(GENERAL))

    def test_empty_namespace_is_not_an_error(self):
        index = FakeIndex(n=0)
        result = _retriever(index).search(GENERAL, "ns")
        assert result.documents == []
        assert result.content is None
        assert result.metadata.error is None
        assert index.calls == []

    def test_stats_failure_returns_search_failed(self, caplog):
        index = FakeIndex()

        def broken(namespace):
            raise ConnectionError("store down")

        index.describe_stats = broken
        with caplog.at_level("ERROR", logger="ssr.retrieval.rrf_fusion"):
            result = _retriever(index).search(GENERAL, "ns")
        assert result.documents == []
        assert result.content is None
        assert result.metadata.error == SEARCH_FAILED
        assert "RRF search failed" in caplog.text

    def test_one_failed_query_is_skipped(self):
        queries = _queries(GENERAL)
        bad = queries[1]

        def embed(query):
            if query == bad:
                raise RuntimeError("embedding failed")
            return (query,)

        result = _retriever(FakeIndex(n=30), embed_fn=embed).search(GENERAL, "ns", top_k=5)
        assert result.metadata.failed_queries == [bad]
        assert result.metadata.error is None
        assert len(result.documents) == 5
        assert all(bad not in d.query_scores for d in result.documents)
        assert result.documents[0].query_coverage == len(queries) - 1

    def test_all_queries_failed(self):
        def embed(query):
            raise RuntimeError("model not loaded")

        result = _retriever(FakeIndex(n=30), embed_fn=embed).search(GENERAL, "ns")
        assert result.documents == []
        assert result.content is None
        assert result.metadata.error is None
        assert result.metadata.failed_queries == _queries(GENERAL)
        assert result.metadata.k_achievement_rate == 0.0

    def test_timed_out_query_is_skipped(self):
        slow = _queries(GENERAL)[0]

        def embed(query):
            if query == slow:
                time.sleep(1.0)
            return (query,)

        retriever = _retriever(FakeIndex(n=30), embed_fn=embed, query_timeout_s=0.1)
        result = retriever.search(GENERAL, "ns", top_k=5)
        assert result.metadata.failed_queries == [slow]
        assert len(result.documents) == 5

    def test_timeout_is_one_deadline_for_all_queries(self):
        cxo = get_predefined_stakeholder("cxo")
        queries = _queries(cxo)

        def embed(query):
            time.sleep(0.5)
            return (query,)

        retriever = _retriever(FakeIndex(n=30), embed_fn=embed, query_timeout_s=0.2, max_workers=6)
        started = time.perf_counter()
        result = retriever.search(cxo, "ns")
        elapsed = time.perf_counter() - started

        # equal latency: every query misses the shared deadline, not just the first
        assert result.metadata.failed_queries == queries
        assert result.documents == []
        assert elapsed < 0.45

    def test_fixed_top_k_and_search_k(self):
        index = FakeIndex(n=50)
        result = _retriever(index).search(GENERAL, "ns", top_k=7, search_k=9)
        assert result.metadata.dynamic_k == 7
        assert result.metadata.search_k == 9
        assert len(result.documents) == 7
        assert {c["top_k"] for c in index.calls} == {9}

    def test_rrf_k_override(self):
        n_queries = len(_queries(GENERAL))
        result = _retriever(FakeIndex(n=30)).search(GENERAL, "ns", rrf_k=10, top_k=1)
        assert result.documents[0].rrf_score == pytest.approx(n_queries / 11)

    def test_memory_store_ceiling(self):
        index = FakeIndex(n=1000)
        index.store_type = "memory"
        result = _retriever(index).search(get_predefined_stakeholder("r-and-d"), "ns")
        assert result.metadata.dynamic_k == 20

    def test_per_query_lists_fused_by_weight(self):
        cxo = get_predefined_stakeholder("cxo")
        queries = _queries(cxo)
        # d1 leads every list except the first two; d0 leads only those two
        by_query = {q: [_match(1), _match(0)] for q in queries}
        by_query[queries[0]] = [_match(0), _match(1)]
        by_query[queries[1]] = [_match(0), _match(1)]
        result = _retriever(FakeIndex(n=2, by_query=by_query)).search(cxo, "cxo")
        assert len(queries) == 6
        # weights 1.2, 1.2, 0.8, 0.8, 0.8, 0.8: d1 gets 3.2 at rank 1, d0 gets 2.4
        assert [d.id for d in result.documents] == ["d1", "d0"]


class TestHybrid:

    def test_sparse_vectors_sent(self):
        index = FakeIndex(n=10)
        retriever = _retriever(index, sparse_builder=SparseVectorBuilder(), enable_hybrid=True)
        result = retriever.search(GENERAL, "ns")
        assert result.metadata.hybrid_search_enabled is True
        assert all(c["sparse"] is not None for c in index.calls)

    def test_per_call_override(self):
        index = FakeIndex(n=10)
        retriever = _retriever(index, sparse_builder=SparseVectorBuilder())
        retriever.search(GENERAL, "ns", enable_hybrid=True)
        assert all(c["sparse"] is not None for c in index.calls)

    def test_falls_back_to_dense(self, caplog):
        index = FakeIndex(n=10, fail_sparse=True)
        retriever = _retriever(index, sparse_builder=SparseVectorBuilder(), enable_hybrid=True)
        with caplog.at_level("WARNING", logger="ssr.retrieval.rrf_fusion"):
            result = retriever.search(GENERAL, "ns", top_k=3)
        assert result.metadata.failed_queries == []
        assert len(result.documents) == 3
        assert any(c["sparse"] is None for c in index.calls)
        assert "falling back to dense" in caplog.text

    def test_dense_by_default(self):
        index = FakeIndex(n=10)
        _retriever(index, sparse_builder=SparseVectorBuilder()).search(GENERAL, "ns")
        assert all(c["sparse"] is None for c in index.calls)


# ═══════════════════════════════════════════════════════════════════════════════
# UTILITIES
# ═══════════════════════════════════════════════════════════════════════════════

class TestUtilities:

    def test_generate_namespace(self):
        assert generate_namespace("cxo", "u123") == "cxo_u123"
        assert generate_namespace("cxo") == "cxo"
        assert generate_namespace("cxo", "") == "cxo"

    def test_statistics_empty(self):
        stats = get_rrf_statistics([])
        assert stats.total_unique_documents == 0
        assert stats.documents_by_file == {}

    def test_k_achievement_rate(self, caplog):
        with caplog.at_level("WARNING", logger="ssr.retrieval.rrf_fusion"):
            assert log_k_achievement_rate(5, 10, GENERAL) == 0.5
            assert "K achievement" not in caplog.text
            assert log_k_achievement_rate(4, 10, GENERAL) == 0.4
            assert "K achievement 40.0%" in caplog.text
        warnings = [r for r in caplog.records if r.levelname == "WARNING"]
        assert len(warnings) == 1
        assert warnings[0].event == "k_achievement"
        assert warnings[0].returned == 4
        assert log_k_achievement_rate(0, 0, GENERAL) == 0.0

    def test_debug_dump(self):
        docs = [
            FusedDocument(id="a", content="Goal G1 and G1 with E2", rrf_score=0.05,
                          query_scores={"q1": 0.9}, metadata={"file_name": "gsn.md", "chunk_index": 4}),
            FusedDocument(id="b", content="plain", rrf_score=0.01,
                          query_scores={"q1": 0.5, "q2": 0.4}, metadata={"file_name": "gsn.md"}),
        ]
        report = debug_rrf_results(docs, ["q1", "q2"])
        assert "Total documents: 2" in report
        assert "  - gsn.md: 2 chunks" in report
        assert "1. gsn.md (chunk 4)" in report
        assert "Query coverage: 2/2 queries" in report
        assert "Structured ids: G1, E2" in report

    def test_to_retrieved_chunks(self):
        result = _retriever(FakeIndex(n=5)).search(GENERAL, "ns", top_k=2)
        chunks = result.to_retrieved_chunks()
        assert all(isinstance(c, RetrievedChunk) for c in chunks)
        assert [(c.chunk_id, c.rank) for c in chunks] == [("d0", 1), ("d1", 2)]
        assert chunks[0].file_name == "f0.md"
        assert chunks[0].score == result.documents[0].rrf_score

    def test_close_closes_index(self):
        index = FakeIndex()
        _retriever(index).close()
        assert index.closed


class TestModuleLevelSearch:

    def test_perform_rag_search(self):
        index = FakeIndex(n=2)
        content = perform_rag_search(GENERAL, "ns", retriever=_retriever(index))
        assert content == CONTENT_SEPARATOR.join(["chunk 0", "chunk 1"])
        assert all(c["sparse"] is None for c in index.calls)

    def test_perform_rag_search_with_hybrid(self):
        index = FakeIndex(n=2)
        retriever = _retriever(index, sparse_builder=SparseVectorBuilder())
        assert perform_rag_search_with_hybrid(GENERAL, "ns", retriever=retriever)
        assert all(c["sparse"] is not None for c in index.calls)

    def test_empty_namespace_returns_none(self):
        assert perform_rag_search(GENERAL, "ns", retriever=_retriever(FakeIndex(n=0))) is None

    def test_adaptive_search_passes_options(self):
        index = FakeIndex(n=30)
        result = perform_adaptive_rrf_search(
            GENERAL, "ns", retriever=_retriever(index), search_k=4, rrf_k=1,
        )
        assert {c["top_k"] for c in index.calls} == {4}
        assert result.documents[0].rrf_score == pytest.approx(len(_queries(GENERAL)) / 2)

    def test_adaptive_search_defaults_to_retriever_hybrid_setting(self):
        index = FakeIndex(n=30)
        retriever = _retriever(index, sparse_builder=SparseVectorBuilder(), enable_hybrid=True)
        result = perform_adaptive_rrf_search(GENERAL, "ns", retriever=retriever)
        assert result.metadata.hybrid_search_enabled
        assert all(c["sparse"] is not None for c in index.calls)

        index.calls.clear()
        perform_adaptive_rrf_search(GENERAL, "ns", retriever=retriever, enable_hybrid=False)
        assert all(c["sparse"] is None for c in index.calls)
