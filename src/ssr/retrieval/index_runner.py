# File: src/ssr/retrieval/index_runner.py
"""
Index loader: chunks.jsonl → Embedder (+ sparse vectors) → vector index.

Chunking happens upstream; this only loads already-chunked documents into a
namespace. Each JSONL line is one chunk:
    {"chunk_id": "...", "text": "...", "file_name": "...", "chunk_index": 0}
The camelCase keys of older exports (pageContent, fileName, chunkIndex) are
accepted. A missing chunk_id becomes "{file_name}_{chunk_index}".

Usage (CLI):
    ssr index load --namespace cxo_u123 --chunks data/chunks/kb.jsonl

Usage (Python):
    from ssr.retrieval.index_runner import load_namespace
    result = load_namespace("cxo", Path("kb.jsonl"))
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from ssr.retrieval.vector_index import (
    MetadataField,
    metadata_chunk_index,
    metadata_file_name,
    metadata_text,
)

logger = logging.getLogger(__name__)


# ── Result type ───────────────────────────────────────────────────────────────

@dataclass
class LoadResult:
    namespace: str
    chunks_read: int = 0
    upserted: int = 0
    skipped: int = 0
    sparse: bool = False
    collection_info: dict[str, Any] = field(default_factory=dict)


# ── Chunk loading ─────────────────────────────────────────────────────────────

def _normalize_chunk(raw: dict[str, Any]) -> dict[str, Any]:
    file_name = metadata_file_name(raw)
    chunk_index = metadata_chunk_index(raw)
    return {
        MetadataField.CHUNK_ID: str(raw.get("chunk_id") or raw.get("id") or f"{file_name}_{chunk_index}"),
        MetadataField.TEXT: metadata_text(raw),
        MetadataField.FILE_NAME: file_name,
        MetadataField.CHUNK_INDEX: chunk_index,
    }


def _iter_jsonl_files(path: Path) -> Iterator[Path]:
    if path.is_dir():
        yield from sorted(path.rglob("*.jsonl"))
    elif path.exists():
        yield path
    else:
        logger.warning("Chunks path does not exist: %s", path)


def load_chunks(path: Path) -> list[dict[str, Any]]:
    """Read chunks from a .jsonl file, or every .jsonl file under a directory."""
    chunks: list[dict[str, Any]] = []
    for jsonl in _iter_jsonl_files(Path(path)):
        with jsonl.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    chunks.append(_normalize_chunk(json.loads(line)))
                except json.JSONDecodeError as e:
                    logger.warning("Invalid JSON at %s line %d: %s", jsonl, line_no, e)
    return chunks


# ── Load ──────────────────────────────────────────────────────────────────────

def load_namespace(
    namespace: str,
    chunks_path: Path,
    *,
    embedder=None,
    index=None,
    sparse_builder=None,
    with_sparse: bool = True,
    upsert_batch_size: int = 256,
) -> LoadResult:
    """
    Embed and upsert one namespace.

    embedder / index / sparse_builder default to the settings-wired
    singletons. Sparse vectors are stored alongside the dense ones so hybrid
    search can be switched on without reloading.
    """
    if embedder is None:
        from ssr.retrieval.embedder import get_embedder
        embedder = get_embedder()
    if index is None:
        from ssr.retrieval.qdrant_index import get_index
        index = get_index(vector_dim=embedder.embedding_dim)

    chunks = load_chunks(chunks_path)
    result = LoadResult(namespace=namespace, chunks_read=len(chunks), sparse=with_sparse)
    if not chunks:
        logger.warning("No chunks found in %s", chunks_path)
        return result

    texts = [c[MetadataField.TEXT] for c in chunks]
    logger.info("Embedding %d chunks for namespace: %s", len(chunks), namespace)
    vectors = embedder.embed_passages(texts)

    sparse_vectors = None
    if with_sparse:
        if sparse_builder is None:
            from ssr.retrieval.sparse_vector import build_sparse_vector_builder
            sparse_builder = build_sparse_vector_builder()
        sparse_vectors = [sparse_builder.create_sparse_vector_auto(t) for t in texts]

    if hasattr(index, "upsert_chunks"):
        index.ensure_collection()
        stats = index.upsert_chunks(
            namespace, chunks, vectors, sparse_vectors, batch_size=upsert_batch_size
        )
        result.upserted, result.skipped = stats["upserted"], stats["skipped"]
        result.collection_info = index.collection_info()
    else:
        result.upserted = index.add(namespace, chunks, vectors, sparse_vectors)
        result.collection_info = {
            "store": index.store_type,
            "namespace": namespace,
            "points_count": index.describe_stats(namespace).record_count,
        }

    logger.info(
        "Namespace %s loaded: chunks=%d upserted=%d skipped=%d sparse=%s",
        namespace, result.chunks_read, result.upserted, result.skipped, with_sparse,
    )
    return result
