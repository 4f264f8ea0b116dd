# File: src/ssr/evaluation/metrics.py
"""
Retrieval quality metrics against labeled ground truth.

Per query (top K of the retrieved list):
  Precision@K   |hits(K)| / |retrieved(K)|
  Recall@K      |hits(K)| / |relevant|
  F1@K          2PR / (P + R)
  RR            1 / rank of the first relevant chunk (whole list)
  nDCG@K        DCG@K / IDCG@K with graded relevance 0-3 and a
                log2(i + 2) discount (i 0-based)

Across queries:
  coverage            distinct files hit / files in the knowledge base
  K achievement rate  share of queries that returned at least their K

All functions are pure; empty denominators give 0.0.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence, Union

from ssr.contracts.schemas import (
    EvaluationReport,
    EvaluationSummary,
    QueryEvaluationResult,
    QueryMetrics,
    RelevantChunk,
    RetrievedChunk,
)


def _hits(retrieved: Sequence[RetrievedChunk], relevant_ids: set[str], k: int) -> int:
    return sum(1 for c in retrieved[:k] if c.chunk_id in relevant_ids)


def precision_at_k(retrieved: Sequence[RetrievedChunk], relevant_ids: set[str], k: int) -> float:
    top = retrieved[:k]
    if not top:
        return 0.0
    return _hits(retrieved, relevant_ids, k) / len(top)


def recall_at_k(retrieved: Sequence[RetrievedChunk], relevant_ids: set[str], k: int) -> float:
    if not relevant_ids:
        return 0.0
    return _hits(retrieved, relevant_ids, k) / len(relevant_ids)


def f1_at_k(precision: float, recall: float) -> float:
    if precision + recall == 0:
        return 0.0
    return 2 * precision * recall / (precision + recall)


def reciprocal_rank(retrieved: Sequence[RetrievedChunk], relevant_ids: set[str]) -> float:
    for i, chunk in enumerate(retrieved):
        if chunk.chunk_id in relevant_ids:
            return 1.0 / (i + 1)
    return 0.0


def dcg_at_k(retrieved: Sequence[RetrievedChunk], relevance: Mapping[str, int], k: int) -> float:
    return sum(
        relevance.get(c.chunk_id, 0) / math.log2(i + 2)
        for i, c in enumerate(retrieved[:k])
    )


def idcg_at_k(relevance: Mapping[str, int], k: int) -> float:
    ideal = sorted(relevance.values(), reverse=True)[:k]
    return sum(rel / math.log2(i + 2) for i, rel in enumerate(ideal))


def ndcg_at_k(retrieved: Sequence[RetrievedChunk], relevance: Mapping[str, int], k: int) -> float:
    ideal = idcg_at_k(relevance, k)
    if ideal == 0:
        return 0.0
    return dcg_at_k(retrieved, relevance, k) / ideal


def coverage(retrieved_lists: Sequence[Sequence[RetrievedChunk]], all_files: Sequence[str]) -> float:
    if not all_files:
        return 0.0
    hit_files = {c.file_name for chunks in retrieved_lists for c in chunks}
    return len(hit_files) / len(all_files)


def k_achievement_rate(
    retrieved_lists: Sequence[Sequence[RetrievedChunk]],
    k: Union[int, Sequence[int]],
) -> float:
    """k may be one value for every list or one per list (dynamic K)."""
    if not retrieved_lists:
        return 0.0
    targets = [k] * len(retrieved_lists) if isinstance(k, int) else list(k)
    if len(targets) != len(retrieved_lists):
        raise ValueError("k values must align with retrieved lists")
    achieved = sum(1 for chunks, target in zip(retrieved_lists, targets) if len(chunks) >= target)
    return achieved / len(retrieved_lists)


# ── Per-query / report ────────────────────────────────────────────────────────

def evaluate_query(
    query_id: str,
    query: str,
    stakeholder_id: str,
    retrieved: Sequence[RetrievedChunk],
    relevant: Sequence[RelevantChunk],
    k: int,
) -> QueryEvaluationResult:
    relevant_ids = {c.chunk_id for c in relevant}
    relevance = {c.chunk_id: c.relevance_score for c in relevant}

    p = precision_at_k(retrieved, relevant_ids, k)
    r = recall_at_k(retrieved, relevant_ids, k)

    return QueryEvaluationResult(
        query_id=query_id,
        query=query,
        stakeholder_id=stakeholder_id,
        metrics=QueryMetrics(
            precision_at_k=p,
            recall_at_k=r,
            f1_at_k=f1_at_k(p, r),
            reciprocal_rank=reciprocal_rank(retrieved, relevant_ids),
            ndcg_at_k=ndcg_at_k(retrieved, relevance, k),
        ),
        retrieved_chunks=list(retrieved),
        relevant_chunks=list(relevant),
        hits=[c.chunk_id for c in retrieved[:k] if c.chunk_id in relevant_ids],
    )


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def generate_evaluation_report(
    query_results: Sequence[QueryEvaluationResult],
    retrieved_lists: Sequence[Sequence[RetrievedChunk]],
    all_files: Sequence[str],
    ground_truth_version: str,
    k: Union[int, Sequence[int]],
    namespace: str,
    dynamic_k_values: Optional[list[dict[str, Any]]] = None,
) -> EvaluationReport:
    """
    Aggregate per-query results. With per-stakeholder K values the report's
    headline K is their rounded mean.
    """
    report_k = k if isinstance(k, int) else (round(_mean(list(k))) if k else 0)
    return EvaluationReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        k=report_k,
        namespace=namespace,
        ground_truth_version=ground_truth_version,
        summary=EvaluationSummary(
            total_queries=len(query_results),
            avg_precision_at_k=_mean([q.metrics.precision_at_k for q in query_results]),
            avg_recall_at_k=_mean([q.metrics.recall_at_k for q in query_results]),
            avg_f1_at_k=_mean([q.metrics.f1_at_k for q in query_results]),
            mrr=_mean([q.metrics.reciprocal_rank for q in query_results]),
            avg_ndcg_at_k=_mean([q.metrics.ndcg_at_k for q in query_results]),
            coverage=coverage(retrieved_lists, all_files),
            k_achievement_rate=k_achievement_rate(retrieved_lists, k),
        ),
        query_results=list(query_results),
        dynamic_k_values=dynamic_k_values or [],
    )


def format_evaluation_report(report: EvaluationReport) -> str:
    s = report.summary
    k = report.k
    bar = "━" * 68
    lines = [
        "",
        "RAG evaluation report",
        "",
        f"Timestamp:            {report.timestamp}",
        f"K:                    {k}",
        f"Namespace:            {report.namespace}",
        f"Ground truth version: {report.ground_truth_version}",
        "",
        bar,
        "Summary",
        bar,
        f"  Precision@{k:<4}      {s.avg_precision_at_k * 100:7.2f}%   share of retrieved chunks that are relevant",
        f"  Recall@{k:<4}         {s.avg_recall_at_k * 100:7.2f}%   share of relevant chunks retrieved",
        f"  F1@{k:<4}             {s.avg_f1_at_k * 100:7.2f}%   precision/recall balance",
        f"  MRR                {s.mrr:8.4f}    how early the first relevant chunk appears",
        f"  nDCG@{k:<4}           {s.avg_ndcg_at_k:8.4f}    graded ranking quality",
        f"  Coverage           {s.coverage * 100:7.2f}%   share of files reached",
        f"  K achievement      {s.k_achievement_rate * 100:7.2f}%   queries that returned their K",
        "",
        f"Queries evaluated: {s.total_queries}",
        "",
        bar,
        "Per query",
        bar,
        "",
    ]

    for r in report.query_results:
        m = r.metrics
        query = r.query if len(r.query) <= 60 else r.query[:60] + "..."
        lines += [
            f"{r.query_id} ({r.stakeholder_id})",
            f"   Query: {query}",
            f"   P@K: {m.precision_at_k * 100:.1f}% | R@K: {m.recall_at_k * 100:.1f}% | F1: {m.f1_at_k * 100:.1f}%",
            f"   RR: {m.reciprocal_rank:.4f} | nDCG: {m.ndcg_at_k:.4f}",
            f"   Hits: {len(r.hits)}/{len(r.relevant_chunks)} ({', '.join(r.hits) or 'none'})",
            "",
        ]

    return "\n".join(lines)
