# File: src/ssr/retrieval/rrf_fusion.py
"""
Adaptive multi-query RRF search over one stakeholder namespace.

Pipeline (one call = one search_id in the logs):
  1. describe_stats(namespace); an empty namespace returns the empty result
     with no error code, since "no knowledge base yet" is a normal state
  2. dynamic K from corpus size and stakeholder
  3. enhanced queries (QueryEnhancer), positional weights per stakeholder
  4. search_k = max(MIN_SEARCH_K, ceil(K × 1.5)) per query, unless given
  5. per-query embed + index query on a small thread pool; hybrid mode adds
     a sparse vector and falls back to dense-only if that path fails
  6. join, then fold the ranked lists sequentially in query order:
         rrf(doc) = Σ_q  weight[q] / (rrf_k + rank_q(doc))     rank 1-based
  7. stable sort by rrf_score (descending), truncate to K
  8. statistics + K achievement rate (warning below 50%)

Failure policy:
  - a query whose embedding or search raises or times out is logged, listed
    in metadata.failed_queries, and contributes nothing
  - any exception escaping the pipeline returns the empty result with
    metadata.error = "search_failed"; search() never raises to its caller
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from ssr.contracts.schemas import QueryEnhancementConfig, RetrievedChunk, Stakeholder
from ssr.observability.logging import log_event
from ssr.query.enhancer import QueryEnhancer
from ssr.retrieval.dynamic_k import (
    DEFAULT_STORE,
    DynamicKConfig,
    get_dynamic_k,
    get_weights_for_stakeholder,
)
from ssr.retrieval.sparse_vector import SparseVectorBuilder, extract_structured_ids
from ssr.retrieval.vector_index import (
    IndexMatch,
    VectorIndex,
    metadata_chunk_index,
    metadata_file_name,
    metadata_text,
)

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────
RRF_K = 60
SEARCH_K_MULTIPLIER = 1.5
MIN_SEARCH_K = 20
MAX_QUERIES = 5
CONTENT_SEPARATOR = "\n\n---\n\n"
SEARCH_FAILED = "search_failed"

EmbedFn = Callable[[str], Sequence[float]]


# ── Data classes ──────────────────────────────────────────────────────────────

@dataclass
class FusedDocument:
    """One chunk after fusion, with per-query provenance."""
    id: str
    content: str
    rrf_score: float = 0.0
    query_scores: dict[str, float] = field(default_factory=dict)   # query → native score
    ranks: dict[str, int] = field(default_factory=dict)            # query → 1-based rank
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def file_name(self) -> str:
        return metadata_file_name(self.metadata)

    @property
    def chunk_index(self) -> int:
        return metadata_chunk_index(self.metadata)

    @property
    def query_coverage(self) -> int:
        return len(self.query_scores)

    def to_retrieved_chunk(self, rank: int) -> RetrievedChunk:
        return RetrievedChunk(
            chunk_id=self.id,
            file_name=self.file_name,
            content=self.content,
            rank=rank,
            score=self.rrf_score,
            metadata=dict(self.metadata),
        )


@dataclass
class RRFStatistics:
    average_rrf_score: float = 0.0
    average_query_coverage: float = 0.0
    documents_by_file: dict[str, int] = field(default_factory=dict)
    total_unique_documents: int = 0


@dataclass
class SearchMetadata:
    dynamic_k: int = 0
    queries_used: list[str] = field(default_factory=list)
    total_chunks: int = 0
    search_duration_ms: int = 0
    hybrid_search_enabled: bool = False
    search_k: int = 0
    k_achievement_rate: Optional[float] = None
    failed_queries: list[str] = field(default_factory=list)
    search_id: str = ""
    error: Optional[str] = None


@dataclass
class RAGSearchResult:
    """
    content:   fused chunk texts joined with CONTENT_SEPARATOR, or None when
               nothing was found (prompt assembly substitutes its own notice)
    documents: FusedDocument list, best first, at most dynamic_k long
    """
    content: Optional[str]
    documents: list[FusedDocument]
    statistics: RRFStatistics
    metadata: SearchMetadata

    def to_retrieved_chunks(self) -> list[RetrievedChunk]:
        return [doc.to_retrieved_chunk(rank) for rank, doc in enumerate(self.documents, 1)]


# ── RRF fusion ────────────────────────────────────────────────────────────────

def rrf_fuse(
    ranked_lists: Sequence[tuple[str, Sequence[IndexMatch]]],
    weights: Sequence[float],
    rrf_k: int = RRF_K,
    top_k: Optional[int] = None,
) -> list[FusedDocument]:
    """
    Weighted Reciprocal Rank Fusion over per-query ranked lists.

    ranked_lists: (query, matches best-first) pairs; weights align with them
    by position, and a missing weight counts as 1.0. A failed query is
    passed as (query, []) so positions stay aligned.

    A document repeated within one list is counted once, at its best rank.
    Ties keep first-seen order (sorted() is stable).
    """
    docs: dict[str, FusedDocument] = {}

    for position, (query, matches) in enumerate(ranked_lists):
        weight = weights[position] if position < len(weights) else 1.0
        seen: set[str] = set()
        for rank, match in enumerate(matches, 1):
            if match.id in seen:
                continue
            seen.add(match.id)

            doc = docs.get(match.id)
            if doc is None:
                doc = FusedDocument(
                    id=match.id,
                    content=metadata_text(match.metadata),
                    metadata=dict(match.metadata or {}),
                )
                docs[match.id] = doc

            doc.query_scores[query] = match.score
            doc.ranks[query] = rank
            doc.rrf_score += weight / (rrf_k + rank)

    fused = sorted(docs.values(), key=lambda d: d.rrf_score, reverse=True)
    return fused if top_k is None else fused[:top_k]


# ── Utilities ─────────────────────────────────────────────────────────────────

def get_rrf_statistics(documents: Sequence[FusedDocument]) -> RRFStatistics:
    if not documents:
        return RRFStatistics()

    by_file: dict[str, int] = {}
    for doc in documents:
        by_file[doc.file_name] = by_file.get(doc.file_name, 0) + 1

    n = len(documents)
    return RRFStatistics(
        average_rrf_score=sum(d.rrf_score for d in documents) / n,
        average_query_coverage=sum(d.query_coverage for d in documents) / n,
        documents_by_file=by_file,
        total_unique_documents=n,
    )


def format_search_results(documents: Sequence[FusedDocument]) -> str:
    return CONTENT_SEPARATOR.join(doc.content for doc in documents)


def generate_namespace(stakeholder_id: str, user_identifier: Optional[str] = None) -> str:
    """Per-user partitions are "{stakeholder_id}_{user_identifier}"."""
    if not user_identifier:
        return stakeholder_id
    return f"{stakeholder_id}_{user_identifier}"


def log_k_achievement_rate(
    actual_count: int,
    target_k: int,
    stakeholder: Stakeholder,
    search_id: Optional[str] = None,
    warn_rate: float = 0.5,
) -> float:
    """returned / dynamic_k. Below warn_rate usually means a thin knowledge base."""
    rate = actual_count / target_k if target_k > 0 else 0.0
    fields = {
        "stakeholder_id": stakeholder.id,
        "dynamic_k": target_k,
        "returned": actual_count,
        "rate": round(rate, 3),
    }
    if rate >= warn_rate:
        log_event(logger, "k_achievement", search_id, level=logging.DEBUG, **fields)
        return rate

    extra = {"event": "k_achievement", **fields}
    if search_id:
        extra["search_id"] = search_id
    logger.warning(
        "K achievement %.1f%% (%d/%d) for %s; check the knowledge base size",
        rate * 100, actual_count, target_k, stakeholder.id,
        extra=extra,
    )
    return rate


def debug_rrf_results(documents: Sequence[FusedDocument], queries: Sequence[str]) -> str:
    """Readable dump of a fused result set; logged at INFO and returned."""
    stats = get_rrf_statistics(documents)
    lines = [
        "=" * 50,
        "RRF debug",
        "=" * 50,
        f"Total documents: {len(documents)}",
        f"Average RRF score: {stats.average_rrf_score:.4f}",
        f"Average query coverage: {stats.average_query_coverage:.2f}/{len(queries)}",
        "Documents by file:",
    ]
    lines += [f"  - {name}: {count} chunks" for name, count in stats.documents_by_file.items()]
    lines.append("Top 5 documents:")
    for i, doc in enumerate(documents[:5], 1):
        lines.append(f"  {i}. {doc.file_name} (chunk {doc.chunk_index})")
        lines.append(f"     RRF score: {doc.rrf_score:.4f}")
        lines.append(f"     Query coverage: {doc.query_coverage}/{len(queries)} queries")
        ids = list(dict.fromkeys(extract_structured_ids(doc.content)))
        if ids:
            more = "..." if len(ids) > 5 else ""
            lines.append(f"     Structured ids: {', '.join(ids[:5])}{more}")
    lines.append("=" * 50)

    report = "\n".join(lines)
    logger.info("%s", report)
    return report


def _empty_result(
    started: float,
    hybrid: bool,
    search_id: str,
    error: Optional[str] = None,
) -> RAGSearchResult:
    return RAGSearchResult(
        content=None,
        documents=[],
        statistics=get_rrf_statistics([]),
        metadata=SearchMetadata(
            search_duration_ms=int((time.perf_counter() - started) * 1000),
            hybrid_search_enabled=hybrid,
            search_id=search_id,
            error=error,
        ),
    )


# ── Retriever ─────────────────────────────────────────────────────────────────

class AdaptiveRRFRetriever:
    """
    Multi-query RRF retriever for one vector index.

    Heavy collaborators (embedding function, index, sparse builder) are
    injected so the class is testable without a model or a Qdrant store.
    Holds no per-search state; one instance serves every request.
    """

    def __init__(
        self,
        embed_fn: EmbedFn,
        index: VectorIndex,
        enhancer: Optional[QueryEnhancer] = None,
        sparse_builder: Optional[SparseVectorBuilder] = None,
        *,
        store_type: Optional[str] = None,
        dynamic_k_config: Optional[DynamicKConfig] = None,
        rrf_k: int = RRF_K,
        search_k_multiplier: float = SEARCH_K_MULTIPLIER,
        min_search_k: int = MIN_SEARCH_K,
        max_queries: int = MAX_QUERIES,
        enable_hybrid: bool = False,
        max_workers: int = 4,
        query_timeout_s: float = 20.0,
        k_warn_rate: float = 0.5,
    ) -> None:
        self.embed_fn = embed_fn
        self.index = index
        self.enhancer = enhancer or QueryEnhancer()
        self._sparse_builder = sparse_builder
        self.store_type = store_type or getattr(index, "store_type", DEFAULT_STORE)
        self.dynamic_k_config = dynamic_k_config or DynamicKConfig()
        self.rrf_k = rrf_k
        self.search_k_multiplier = search_k_multiplier
        self.min_search_k = min_search_k
        self.max_queries = max_queries
        self.enable_hybrid = enable_hybrid
        self.max_workers = max_workers
        self.query_timeout_s = query_timeout_s
        self.k_warn_rate = k_warn_rate

    # ── Lazy loaders ──────────────────────────────────────────────────────────

    def _get_sparse_builder(self) -> SparseVectorBuilder:
        if self._sparse_builder is None:
            from ssr.retrieval.sparse_vector import build_sparse_vector_builder
            self._sparse_builder = build_sparse_vector_builder()
        return self._sparse_builder

    def close(self) -> None:
        close = getattr(self.index, "close", None)
        if close is not None:
            close()

    # ── Per-query search ──────────────────────────────────────────────────────

    def _search_one(
        self, namespace: str, query: str, search_k: int, hybrid: bool
    ) -> list[IndexMatch]:
        dense = self.embed_fn(query)
        if hybrid:
            try:
                sparse = self._get_sparse_builder().create_sparse_vector_auto(query)
                return self.index.query(namespace, dense, sparse_vector=sparse, top_k=search_k)
            except Exception as e:
                logger.warning("Hybrid search failed, falling back to dense: %s", e)
        return self.index.query(namespace, dense, top_k=search_k)

    def _run_queries(
        self,
        search_id: str,
        namespace: str,
        queries: Sequence[str],
        search_k: int,
        hybrid: bool,
    ) -> tuple[list[tuple[str, list[IndexMatch]]], list[str]]:
        """
        Fan out, then join in query order. Failed queries yield empty lists.

        All queries share one deadline, query_timeout_s after submission;
        anything still running then counts as timed out.
        """
        ranked: list[tuple[str, list[IndexMatch]]] = []
        failed: list[str] = []

        executor = ThreadPoolExecutor(
            max_workers=max(1, min(self.max_workers, len(queries))),
            thread_name_prefix="rrf-query",
        )
        try:
            futures = [
                executor.submit(self._search_one, namespace, q, search_k, hybrid)
                for q in queries
            ]
            _, pending = wait(futures, timeout=self.query_timeout_s)

            for i, (query, future) in enumerate(zip(queries, futures), 1):
                matches = None
                if future in pending:
                    future.cancel()
                    logger.warning(
                        "Query %d timed out after %.1fs: search_id=%s query=%r",
                        i, self.query_timeout_s, search_id, query[:50],
                    )
                else:
                    try:
                        matches = future.result()
                    except Exception as e:
                        logger.warning(
                            "Query %d failed: search_id=%s query=%r error=%s",
                            i, search_id, query[:50], e,
                        )

                if matches is None:
                    failed.append(query)
                    ranked.append((query, []))
                else:
                    logger.debug("Query %d %r: %d matches", i, query[:50], len(matches))
                    ranked.append((query, list(matches)))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return ranked, failed

    # ── Main search ───────────────────────────────────────────────────────────

    def search(
        self,
        stakeholder: Stakeholder,
        namespace: str,
        enable_hybrid: Optional[bool] = None,
        search_k: Optional[int] = None,
        rrf_k: Optional[int] = None,
        top_k: Optional[int] = None,
        debug: bool = False,
    ) -> RAGSearchResult:
        """
        Run the full adaptive RRF pipeline. Never raises.

        Args:
            stakeholder:   report audience; drives queries, K and weights
            namespace:     index partition (see generate_namespace)
            enable_hybrid: dense + sparse per query (default: instance setting)
            search_k:      per-query fetch size (default: derived from K)
            rrf_k:         RRF constant (default: instance setting, 60)
            top_k:         fixed result size instead of dynamic K (evaluation)
            debug:         log a readable dump of the fused results
        """
        started = time.perf_counter()
        search_id = uuid.uuid4().hex
        hybrid = self.enable_hybrid if enable_hybrid is None else enable_hybrid

        try:
            total_chunks = self.index.describe_stats(namespace).record_count
            if total_chunks == 0:
                log_event(
                    logger, "rrf_search_empty_namespace", search_id,
                    stakeholder_id=stakeholder.id, namespace=namespace,
                )
                return _empty_result(started, hybrid, search_id)

            dynamic_k = top_k or get_dynamic_k(
                total_chunks, stakeholder, self.store_type, self.dynamic_k_config
            )
            queries = self.enhancer.enhance_query(
                stakeholder, QueryEnhancementConfig(max_queries=self.max_queries)
            )
            weights = get_weights_for_stakeholder(
                stakeholder, len(queries), self.enhancer.lexicons
            )
            actual_search_k = search_k or max(
                self.min_search_k, math.ceil(dynamic_k * self.search_k_multiplier)
            )

            log_event(
                logger, "rrf_search_started", search_id,
                stakeholder_id=stakeholder.id,
                namespace=namespace,
                dynamic_k=dynamic_k,
                queries=len(queries),
            )
            logger.info(
                "Adaptive RRF search (%s): stakeholder=%s namespace=%s chunks=%d K=%d "
                "search_k=%d weights=[%s]",
                "hybrid" if hybrid else "dense", stakeholder.id, namespace, total_chunks,
                dynamic_k, actual_search_k, ", ".join(f"{w:.1f}" for w in weights),
            )

            ranked_lists, failed = self._run_queries(
                search_id, namespace, queries, actual_search_k, hybrid
            )
            documents = rrf_fuse(
                ranked_lists,
                weights,
                rrf_k=self.rrf_k if rrf_k is None else rrf_k,
                top_k=dynamic_k,
            )

            if debug and documents:
                debug_rrf_results(documents, queries)

            rate = log_k_achievement_rate(
                len(documents), dynamic_k, stakeholder, search_id, self.k_warn_rate
            )
            duration_ms = int((time.perf_counter() - started) * 1000)
            log_event(
                logger, "rrf_search_completed", search_id,
                stakeholder_id=stakeholder.id,
                namespace=namespace,
                dynamic_k=dynamic_k,
                returned=len(documents),
                duration_ms=duration_ms,
                failed_queries=len(failed),
            )

            return RAGSearchResult(
                content=format_search_results(documents) if documents else None,
                documents=documents,
                statistics=get_rrf_statistics(documents),
                metadata=SearchMetadata(
                    dynamic_k=dynamic_k,
                    queries_used=list(queries),
                    total_chunks=total_chunks,
                    search_duration_ms=duration_ms,
                    hybrid_search_enabled=hybrid,
                    search_k=actual_search_k,
                    k_achievement_rate=rate,
                    failed_queries=failed,
                    search_id=search_id,
                ),
            )

        except Exception:
            logger.exception(
                "RRF search failed: search_id=%s stakeholder=%s namespace=%s",
                search_id, stakeholder.id, namespace,
            )
            return _empty_result(started, hybrid, search_id, error=SEARCH_FAILED)


# ── Wiring / module-level entry points ────────────────────────────────────────

def build_retriever(index: Optional[VectorIndex] = None) -> AdaptiveRRFRetriever:
    """Retriever wired from settings: e5 embedder, Qdrant index, janome-backed sparse builder."""
    from ssr.retrieval.embedder import get_embedder
    from ssr.settings import settings

    embedder = get_embedder()
    if index is None:
        from ssr.retrieval.qdrant_index import get_index
        index = get_index(vector_dim=embedder.embedding_dim)

    return AdaptiveRRFRetriever(
        embed_fn=embedder.embed_query,
        index=index,
        dynamic_k_config=DynamicKConfig.from_settings(),
        rrf_k=settings.RRF_K,
        search_k_multiplier=settings.SEARCH_K_MULTIPLIER,
        min_search_k=settings.MIN_SEARCH_K,
        max_queries=settings.MAX_QUERIES,
        enable_hybrid=settings.ENABLE_HYBRID_SEARCH,
        max_workers=settings.SEARCH_MAX_WORKERS,
        query_timeout_s=settings.QUERY_TIMEOUT_S,
        k_warn_rate=settings.K_ACHIEVEMENT_WARN_RATE,
    )


_default_retriever: Optional[AdaptiveRRFRetriever] = None


def get_retriever() -> AdaptiveRRFRetriever:
    global _default_retriever
    if _default_retriever is None:
        _default_retriever = build_retriever()
    return _default_retriever


def reset_retriever() -> None:
    global _default_retriever
    if _default_retriever is not None:
        _default_retriever.close()
    _default_retriever = None


def perform_adaptive_rrf_search(
    stakeholder: Stakeholder,
    namespace: str,
    *,
    retriever: Optional[AdaptiveRRFRetriever] = None,
    enable_hybrid: Optional[bool] = None,
    search_k: Optional[int] = None,
    rrf_k: Optional[int] = None,
    debug: bool = False,
) -> RAGSearchResult:
    r = retriever or get_retriever()
    return r.search(
        stakeholder, namespace,
        enable_hybrid=enable_hybrid, search_k=search_k, rrf_k=rrf_k, debug=debug,
    )


def perform_rag_search(
    stakeholder: Stakeholder,
    namespace: str,
    retriever: Optional[AdaptiveRRFRetriever] = None,
) -> Optional[str]:
    """Dense-only search returning just the prompt content (None when empty)."""
    return perform_adaptive_rrf_search(
        stakeholder, namespace,
        retriever=retriever,
        enable_hybrid=False,
        debug=logger.isEnabledFor(logging.DEBUG),
    ).content


def perform_rag_search_with_hybrid(
    stakeholder: Stakeholder,
    namespace: str,
    retriever: Optional[AdaptiveRRFRetriever] = None,
) -> Optional[str]:
    """Hybrid (dense + sparse) variant of perform_rag_search."""
    return perform_adaptive_rrf_search(
        stakeholder, namespace,
        retriever=retriever,
        enable_hybrid=True,
        debug=logger.isEnabledFor(logging.DEBUG),
    ).content
