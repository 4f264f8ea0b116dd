# File: src/ssr/retrieval/vector_index.py
"""
Vector index boundary used by the RRF retriever.

Two capabilities, both scoped to a namespace (stakeholder, or
"{stakeholder}_{user}" partition):
  describe_stats(namespace)                          → IndexStats(record_count)
  query(namespace, dense, sparse=None, top_k)        → [IndexMatch], best first

QdrantIndex (qdrant_index.py) is the production implementation.
InMemoryVectorIndex below is the "memory" store: numpy cosine over a small
corpus, used for demos, tests and the evaluation harness when no Qdrant
collection is available. Its dynamic-K ceiling is lower (20) because it is
only meant for small document sets.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Protocol, Sequence

import numpy as np

from ssr.retrieval.sparse_vector import SparseVector

logger = logging.getLogger(__name__)


# ── Metadata conventions ──────────────────────────────────────────────────────

class MetadataField:
    CHUNK_ID = "chunk_id"
    NAMESPACE = "namespace"
    FILE_NAME = "file_name"
    TEXT = "text"
    CHUNK_INDEX = "chunk_index"
    CONTENT_SHA = "content_sha"


# Older exports wrote camelCase keys; readers accept both
_LEGACY_TEXT = "pageContent"
_LEGACY_FILE_NAME = "fileName"
_LEGACY_CHUNK_INDEX = "chunkIndex"

UNKNOWN_FILE = "unknown"


def content_sha(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def metadata_text(metadata: Optional[dict[str, Any]]) -> str:
    md = metadata or {}
    return md.get(MetadataField.TEXT) or md.get(_LEGACY_TEXT) or ""


def metadata_file_name(metadata: Optional[dict[str, Any]]) -> str:
    md = metadata or {}
    return md.get(MetadataField.FILE_NAME) or md.get(_LEGACY_FILE_NAME) or UNKNOWN_FILE


def metadata_chunk_index(metadata: Optional[dict[str, Any]]) -> int:
    md = metadata or {}
    value = md.get(MetadataField.CHUNK_INDEX, md.get(_LEGACY_CHUNK_INDEX, 0))
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


# ── Boundary types ────────────────────────────────────────────────────────────

@dataclass
class IndexMatch:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IndexStats:
    record_count: int


class VectorIndex(Protocol):
    store_type: str

    def describe_stats(self, namespace: str) -> IndexStats: ...

    def query(
        self,
        namespace: str,
        dense_vector: Sequence[float],
        sparse_vector: Optional[SparseVector] = None,
        top_k: int = 10,
    ) -> list[IndexMatch]: ...


# ── In-memory implementation ──────────────────────────────────────────────────

@dataclass
class _Record:
    chunk_id: str
    vector: np.ndarray
    sparse: Optional[SparseVector]
    metadata: dict[str, Any]


class InMemoryVectorIndex:
    """
    Brute-force cosine index, partitioned by namespace.

    Hybrid score = dense cosine + sparse dot product (both ≤ 1 for
    normalised inputs). Records without a sparse vector score dense-only.
    """

    store_type = "memory"

    def __init__(self) -> None:
        self._records: dict[str, dict[str, _Record]] = {}
        self._lock = threading.Lock()

    def add(
        self,
        namespace: str,
        chunks: Sequence[dict[str, Any]],
        vectors: np.ndarray,
        sparse_vectors: Optional[Sequence[Optional[SparseVector]]] = None,
    ) -> int:
        """Add or replace chunks (keyed by chunk_id) in a namespace. Returns count added."""
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must be same length")
        if sparse_vectors is not None and len(sparse_vectors) != len(chunks):
            raise ValueError("chunks and sparse_vectors must be same length")

        with self._lock:
            bucket = self._records.setdefault(namespace, {})
            for i, chunk in enumerate(chunks):
                text = chunk.get(MetadataField.TEXT, "")
                metadata = {
                    **chunk,
                    MetadataField.NAMESPACE: namespace,
                    MetadataField.CONTENT_SHA: content_sha(text),
                }
                bucket[chunk["chunk_id"]] = _Record(
                    chunk_id=chunk["chunk_id"],
                    vector=np.asarray(vectors[i], dtype=np.float32),
                    sparse=sparse_vectors[i] if sparse_vectors is not None else None,
                    metadata=metadata,
                )
        logger.debug("In-memory index: namespace=%s added=%d", namespace, len(chunks))
        return len(chunks)

    def describe_stats(self, namespace: str) -> IndexStats:
        return IndexStats(record_count=len(self._records.get(namespace, {})))

    def query(
        self,
        namespace: str,
        dense_vector: Sequence[float],
        sparse_vector: Optional[SparseVector] = None,
        top_k: int = 10,
    ) -> list[IndexMatch]:
        records = list(self._records.get(namespace, {}).values())
        if not records:
            return []

        q = np.asarray(dense_vector, dtype=np.float32)
        matrix = np.stack([r.vector for r in records])
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(q) or 1.0)
        norms[norms == 0] = 1.0
        scores = (matrix @ q) / norms

        if sparse_vector is not None:
            scores = scores + np.array(
                [r.sparse.dot(sparse_vector) if r.sparse is not None else 0.0 for r in records],
                dtype=np.float32,
            )

        # Stable argsort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            IndexMatch(
                id=records[i].chunk_id,
                score=float(scores[i]),
                metadata=dict(records[i].metadata),
            )
            for i in order
        ]

    def list_file_names(self, namespace: str) -> list[str]:
        names = {metadata_file_name(r.metadata) for r in self._records.get(namespace, {}).values()}
        return sorted(names)

    def iter_chunks(self, namespace: str) -> Iterator[dict[str, Any]]:
        for r in self._records.get(namespace, {}).values():
            yield dict(r.metadata)

    def close(self) -> None:
        pass
