# File: src/ssr/evaluation/evaluator.py
"""
Offline evaluation of the RRF retriever against labeled ground truth.

Uses the same query generation, dynamic K and fusion as production
(AdaptiveRRFRetriever.search), so numbers reflect what a report would see.

Namespaces:
  namespace given        every stakeholder is searched in that namespace
  user_identifier given  per-stakeholder "{stakeholder_id}_{user_identifier}"
  neither                the bare stakeholder id
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from ssr.contracts.schemas import (
    EvaluationReport,
    GroundTruth,
    QueryEnhancementConfig,
    QueryEvaluationResult,
    RelevantChunk,
    RetrievedChunk,
    Stakeholder,
)
from ssr.errors import SSRError
from ssr.evaluation.labeling import export_chunks_to_csv, to_labeling_rows
from ssr.evaluation.metrics import (
    evaluate_query,
    format_evaluation_report,
    generate_evaluation_report,
)
from ssr.query.enhancer import enhance_query
from ssr.retrieval.dynamic_k import get_dynamic_k
from ssr.retrieval.rrf_fusion import AdaptiveRRFRetriever, generate_namespace

logger = logging.getLogger(__name__)


def load_stakeholders(path: Path) -> list[Stakeholder]:
    """JSON list of {id, role, concerns[, kind]}; kind is inferred when absent."""
    data = json.loads(Path(path).read_text(encoding="utf-8-sig"))
    if not isinstance(data, list):
        raise SSRError(f"{path}: expected a JSON list of stakeholders")
    return [Stakeholder.model_validate(item) for item in data]


def show_queries(
    stakeholders: Sequence[Stakeholder],
    config: Optional[QueryEnhancementConfig] = None,
) -> dict[str, list[str]]:
    """stakeholder id → queries the retriever would issue."""
    return {s.id: enhance_query(s, config) for s in stakeholders}


def _namespace_for(
    stakeholder: Stakeholder, namespace: Optional[str], user_identifier: Optional[str]
) -> str:
    return namespace or generate_namespace(stakeholder.id, user_identifier)


def _retrieve(
    retriever: AdaptiveRRFRetriever,
    stakeholder: Stakeholder,
    namespace: str,
    fixed_k: Optional[int],
) -> Optional[tuple[int, list[RetrievedChunk]]]:
    """(K, chunks) for one stakeholder; None when the namespace is empty."""
    total = retriever.index.describe_stats(namespace).record_count
    if total == 0:
        logger.warning("Namespace %s has no chunks, skipping %s", namespace, stakeholder.id)
        return None

    k = fixed_k or get_dynamic_k(
        total, stakeholder, retriever.store_type, retriever.dynamic_k_config
    )
    result = retriever.search(stakeholder, namespace, top_k=k)
    if result.metadata.error:
        raise SSRError(f"search failed for {stakeholder.id} in {namespace}: {result.metadata.error}")

    chunks = result.to_retrieved_chunks()
    logger.info(
        "%s: namespace=%s chunks=%d K=%d retrieved=%d",
        stakeholder.id, namespace, total, k, len(chunks),
    )
    return k, chunks


def export_for_labeling(
    retriever: AdaptiveRRFRetriever,
    stakeholders: Sequence[Stakeholder],
    output_path: Path,
    namespace: Optional[str] = None,
    user_identifier: Optional[str] = None,
    fixed_k: Optional[int] = None,
) -> int:
    """
    Retrieve per stakeholder and write the labeling CSV, plus a
    "<name>-queries.json" sidecar listing each stakeholder's queries.
    Returns the number of rows written.
    """
    output_path = Path(output_path)
    rows = []
    query_info: list[dict[str, Any]] = []

    for n, stakeholder in enumerate(stakeholders, 1):
        ns = _namespace_for(stakeholder, namespace, user_identifier)
        queries = enhance_query(stakeholder)
        query_info.append({
            "stakeholder": stakeholder.model_dump(mode="json"),
            "namespace": ns,
            "generated_queries": queries,
        })

        retrieved = _retrieve(retriever, stakeholder, ns, fixed_k)
        if retrieved is None:
            continue
        _, chunks = retrieved
        rows.extend(to_labeling_rows(
            f"q{n}_{stakeholder.id}", " | ".join(queries), stakeholder.id, chunks,
        ))

    if not rows:
        raise SSRError("no chunks retrieved; check the namespaces")

    written = export_chunks_to_csv(rows, output_path)
    sidecar = output_path.with_name(f"{output_path.stem}-queries.json")
    sidecar.write_text(json.dumps(query_info, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info("Query info written: %s", sidecar)
    return written


def _relevant_for(ground_truth: GroundTruth, stakeholder_id: str) -> list[RelevantChunk]:
    """All labeled chunks for a stakeholder, one per chunk id (last label wins)."""
    merged: dict[str, RelevantChunk] = {}
    for entry in ground_truth.entries:
        if entry.stakeholder_id == stakeholder_id:
            for chunk in entry.relevant_chunks:
                merged[chunk.chunk_id] = chunk
    return list(merged.values())


def evaluate_rrf(
    retriever: AdaptiveRRFRetriever,
    stakeholders: Sequence[Stakeholder],
    ground_truth: GroundTruth,
    namespace: Optional[str] = None,
    user_identifier: Optional[str] = None,
    fixed_k: Optional[int] = None,
) -> EvaluationReport:
    """One evaluation row per stakeholder ("rrf_<id>"), K per stakeholder."""
    results: list[QueryEvaluationResult] = []
    retrieved_lists: list[list[RetrievedChunk]] = []
    k_values: list[int] = []
    k_info: list[dict[str, Any]] = []
    all_files: set[str] = set()

    for stakeholder in stakeholders:
        ns = _namespace_for(stakeholder, namespace, user_identifier)
        retrieved = _retrieve(retriever, stakeholder, ns, fixed_k)
        if retrieved is None:
            continue
        k, chunks = retrieved

        list_files = getattr(retriever.index, "list_file_names", None)
        if list_files is not None:
            all_files.update(list_files(ns))

        result = evaluate_query(
            f"rrf_{stakeholder.id}",
            f"[RRF] {stakeholder.role}",
            stakeholder.id,
            chunks,
            _relevant_for(ground_truth, stakeholder.id),
            k,
        )
        results.append(result)
        retrieved_lists.append(chunks)
        k_values.append(k)
        k_info.append({"stakeholder_id": stakeholder.id, "namespace": ns, "k": k})

        m = result.metrics
        logger.info(
            "%s: P@K=%.1f%% R@K=%.1f%% F1=%.1f%%",
            stakeholder.id, m.precision_at_k * 100, m.recall_at_k * 100, m.f1_at_k * 100,
        )

    if not results:
        raise SSRError("no stakeholder could be evaluated; check the namespaces")

    return generate_evaluation_report(
        results,
        retrieved_lists,
        sorted(all_files),
        ground_truth.version,
        k_values,
        user_identifier or namespace or "unknown",
        dynamic_k_values=k_info,
    )


def write_report(
    report: EvaluationReport,
    output_dir: Path,
    prefix: str = "evaluation-rrf",
) -> tuple[Path, Path]:
    """Write <prefix>-result-<ts>.json and <prefix>-report-<ts>.txt."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")

    json_path = output_dir / f"{prefix}-result-{stamp}.json"
    text_path = output_dir / f"{prefix}-report-{stamp}.txt"
    json_path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    text_path.write_text(format_evaluation_report(report), encoding="utf-8")
    logger.info("Evaluation written: %s, %s", json_path, text_path)
    return json_path, text_path
