# File: src/ssr/retrieval/qdrant_index.py
"""
Qdrant-backed vector index: namespaced collection with dense + sparse vectors.

Layout:
  One collection (QDRANT_COLLECTION) for every stakeholder/user partition.
  The partition lives in the "namespace" payload field (keyword-indexed) and
  every count/query/scroll carries a namespace filter, so partitions never
  leak into each other's results.

  Named vectors per point:
    "dense"   COSINE, dim = embedder dimension (384 for multilingual-e5-small)
    "sparse"  hashed term weights from SparseVectorBuilder (optional per point)

Point ids:
  uuid5(NAMESPACE_URL, "{namespace}:{chunk_id}"), so the same chunk id can
  exist in several namespaces. The caller's chunk_id is kept in the payload
  and returned as IndexMatch.id.

Querying:
  dense   query_points(query=vector, using="dense")
  hybrid  prefetch dense + sparse (both filtered), fused server-side with
          FusionQuery(RRF); the retriever's own cross-query RRF then fuses
          these per-query lists

Notes:
  - Filter(must=[...]) takes conditions directly; qdrant-client >= 1.7 has no
    Must wrapper.
  - client.search() is gone in qdrant-client >= 1.10; query_points() returns a
    QueryResponse whose .points are ScoredPoint.
  - close() explicitly; relying on __del__ in embedded mode warns at
    interpreter shutdown.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Iterator, Optional, Sequence

import numpy as np

from ssr.retrieval.sparse_vector import SparseVector
from ssr.retrieval.vector_index import (
    IndexMatch,
    IndexStats,
    MetadataField,
    content_sha,
    metadata_file_name,
)

logger = logging.getLogger(__name__)

DENSE_VECTOR = "dense"
SPARSE_VECTOR = "sparse"


def point_id(namespace: str, chunk_id: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{namespace}:{chunk_id}"))


def _to_qdrant_sparse(vector: SparseVector):
    from qdrant_client.models import SparseVector as QdrantSparseVector
    return QdrantSparseVector(indices=list(vector.indices), values=list(vector.values))


class QdrantIndex:
    """
    Wraps qdrant-client:
      - embedded or server mode (configured via settings)
      - idempotent collection creation with named dense + sparse vectors
      - namespaced upsert with SHA-based dedup
      - dense or hybrid query scoped to one namespace
    """

    store_type = "qdrant"

    def __init__(
        self,
        *,
        mode: str = "embedded",
        path: Optional[str] = None,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        collection_name: str = "ssr_chunks",
        vector_dim: int = 384,
        hnsw_m: int = 16,
        hnsw_ef_construct: int = 100,
    ) -> None:
        self.mode = mode
        self.path = path
        self.url = url
        self.api_key = api_key
        self.collection_name = collection_name
        self.vector_dim = vector_dim
        self.hnsw_m = hnsw_m
        self.hnsw_ef_construct = hnsw_ef_construct
        self._client = None

    # ── Client ────────────────────────────────────────────────────────────────

    def _get_client(self):
        if self._client is not None:
            return self._client

        from qdrant_client import QdrantClient

        if self.mode == "embedded":
            if not self.path:
                raise ValueError("QDRANT_PATH must be set for embedded mode")
            os.makedirs(self.path, exist_ok=True)
            logger.info("Qdrant embedded mode: path=%s", self.path)
            self._client = QdrantClient(path=self.path)
        else:
            logger.info("Qdrant server mode: url=%s", self.url)
            self._client = QdrantClient(url=self.url, api_key=self.api_key, timeout=30)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug("Qdrant client close: %s", e)
            self._client = None

    # ── Collection management ─────────────────────────────────────────────────

    def collection_exists(self) -> bool:
        return self._get_client().collection_exists(self.collection_name)

    def ensure_collection(self) -> bool:
        """Create the collection if missing. Returns True if it was created."""
        from qdrant_client.models import (
            Distance,
            HnswConfigDiff,
            SparseVectorParams,
            VectorParams,
        )

        client = self._get_client()
        if client.collection_exists(self.collection_name):
            logger.info("Collection '%s' already exists", self.collection_name)
            return False

        logger.info(
            "Creating collection '%s' dim=%d hnsw_m=%d ef=%d",
            self.collection_name, self.vector_dim, self.hnsw_m, self.hnsw_ef_construct,
        )
        client.create_collection(
            collection_name=self.collection_name,
            vectors_config={
                DENSE_VECTOR: VectorParams(size=self.vector_dim, distance=Distance.COSINE),
            },
            sparse_vectors_config={SPARSE_VECTOR: SparseVectorParams()},
            hnsw_config=HnswConfigDiff(m=self.hnsw_m, ef_construct=self.hnsw_ef_construct),
        )
        self._create_payload_indexes()
        return True

    def _create_payload_indexes(self) -> None:
        from qdrant_client.models import PayloadSchemaType

        client = self._get_client()
        for field_name in (MetadataField.NAMESPACE, MetadataField.FILE_NAME):
            try:
                client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field_name,
                    field_schema=PayloadSchemaType.KEYWORD,
                )
            except Exception as e:
                # Embedded mode has no payload indexes and reports that here
                logger.debug("Payload index %s: %s", field_name, e)

    def delete_collection(self) -> None:
        self._get_client().delete_collection(self.collection_name)
        logger.info("Deleted collection '%s'", self.collection_name)

    def collection_info(self) -> dict[str, Any]:
        client = self._get_client()
        try:
            info = client.get_collection(self.collection_name)
            return {
                "name": self.collection_name,
                "points_count": info.points_count,
                "status": str(info.status),
                "vector_dim": self.vector_dim,
                "mode": self.mode,
            }
        except Exception as e:
            return {"name": self.collection_name, "error": str(e)}

    @staticmethod
    def _namespace_filter(namespace: str):
        from qdrant_client.models import FieldCondition, Filter, MatchValue
        return Filter(must=[
            FieldCondition(key=MetadataField.NAMESPACE, match=MatchValue(value=namespace)),
        ])

    # ── Upsert with dedup ─────────────────────────────────────────────────────

    def upsert_chunks(
        self,
        namespace: str,
        chunks: Sequence[dict[str, Any]],
        vectors: np.ndarray,
        sparse_vectors: Optional[Sequence[Optional[SparseVector]]] = None,
        batch_size: int = 256,
    ) -> dict[str, int]:
        """
        Upsert chunks into a namespace.

        Skips any chunk whose point already exists with the same content SHA.
        Returns {"upserted": N, "skipped": N, "total": N}.
        """
        from qdrant_client.models import PointStruct

        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must be same length")
        if sparse_vectors is not None and len(sparse_vectors) != len(chunks):
            raise ValueError("chunks and sparse_vectors must be same length")
        if not chunks:
            return {"upserted": 0, "skipped": 0, "total": 0}

        client = self._get_client()
        shas = [content_sha(c.get(MetadataField.TEXT, "")) for c in chunks]
        ids = [point_id(namespace, c["chunk_id"]) for c in chunks]

        existing: dict[str, str] = {}
        for i in range(0, len(ids), 512):
            try:
                found = client.retrieve(
                    collection_name=self.collection_name,
                    ids=ids[i: i + 512],
                    with_payload=[MetadataField.CONTENT_SHA],
                    with_vectors=False,
                )
                for r in found:
                    existing[str(r.id)] = (r.payload or {}).get(MetadataField.CONTENT_SHA, "")
            except Exception as e:
                logger.warning("Dedup fetch failed (will upsert all): %s", e)

        points: list[PointStruct] = []
        skipped = 0
        for i, chunk in enumerate(chunks):
            if existing.get(ids[i]) == shas[i]:
                skipped += 1
                continue
            vector: dict[str, Any] = {DENSE_VECTOR: np.asarray(vectors[i]).tolist()}
            if sparse_vectors is not None and sparse_vectors[i] is not None:
                vector[SPARSE_VECTOR] = _to_qdrant_sparse(sparse_vectors[i])
            points.append(PointStruct(
                id=ids[i],
                vector=vector,
                payload={
                    MetadataField.CHUNK_ID:    chunk["chunk_id"],
                    MetadataField.NAMESPACE:   namespace,
                    MetadataField.FILE_NAME:   metadata_file_name(chunk),
                    MetadataField.TEXT:        chunk.get(MetadataField.TEXT, ""),
                    MetadataField.CHUNK_INDEX: chunk.get(MetadataField.CHUNK_INDEX, 0),
                    MetadataField.CONTENT_SHA: shas[i],
                },
            ))

        for start in range(0, len(points), batch_size):
            client.upsert(
                collection_name=self.collection_name,
                points=points[start: start + batch_size],
                wait=True,
            )

        logger.info(
            "Upsert complete: namespace=%s upserted=%d skipped=%d total=%d",
            namespace, len(points), skipped, len(chunks),
        )
        return {"upserted": len(points), "skipped": skipped, "total": len(chunks)}

    # ── Vector index boundary ─────────────────────────────────────────────────

    def describe_stats(self, namespace: str) -> IndexStats:
        client = self._get_client()
        if not client.collection_exists(self.collection_name):
            return IndexStats(record_count=0)
        result = client.count(
            collection_name=self.collection_name,
            count_filter=self._namespace_filter(namespace),
            exact=True,
        )
        return IndexStats(record_count=result.count)

    def query(
        self,
        namespace: str,
        dense_vector: Sequence[float],
        sparse_vector: Optional[SparseVector] = None,
        top_k: int = 10,
    ) -> list[IndexMatch]:
        from qdrant_client.models import Fusion, FusionQuery, Prefetch

        client = self._get_client()
        ns_filter = self._namespace_filter(namespace)
        dense = np.asarray(dense_vector, dtype=np.float32).tolist()

        if sparse_vector is None:
            response = client.query_points(
                collection_name=self.collection_name,
                query=dense,
                using=DENSE_VECTOR,
                query_filter=ns_filter,
                limit=top_k,
                with_payload=True,
                with_vectors=False,
            )
        else:
            response = client.query_points(
                collection_name=self.collection_name,
                prefetch=[
                    Prefetch(query=dense, using=DENSE_VECTOR, filter=ns_filter, limit=top_k),
                    Prefetch(
                        query=_to_qdrant_sparse(sparse_vector),
                        using=SPARSE_VECTOR,
                        filter=ns_filter,
                        limit=top_k,
                    ),
                ],
                query=FusionQuery(fusion=Fusion.RRF),
                limit=top_k,
                with_payload=True,
                with_vectors=False,
            )

        return [
            IndexMatch(
                id=p.get(MetadataField.CHUNK_ID) or str(r.id),
                score=float(r.score),
                metadata=p,
            )
            for r in response.points
            for p in [dict(r.payload or {})]
        ]

    # ── Browsing ──────────────────────────────────────────────────────────────

    def iter_chunks(self, namespace: str, page_size: int = 256) -> Iterator[dict[str, Any]]:
        client = self._get_client()
        offset = None
        while True:
            points, offset = client.scroll(
                collection_name=self.collection_name,
                scroll_filter=self._namespace_filter(namespace),
                limit=page_size,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            for p in points:
                yield dict(p.payload or {})
            if offset is None:
                break

    def list_file_names(self, namespace: str) -> list[str]:
        return sorted({metadata_file_name(c) for c in self.iter_chunks(namespace)})


# ── Module-level singleton (lazy) ─────────────────────────────────────────────

_default_index: Optional[QdrantIndex] = None


def get_index(vector_dim: Optional[int] = None) -> QdrantIndex:
    """Return the module-level singleton QdrantIndex, built from settings."""
    global _default_index

    if _default_index is None:
        from ssr.settings import settings
        _default_index = QdrantIndex(
            mode=settings.QDRANT_MODE,
            path=str(settings.qdrant_path) if settings.QDRANT_MODE == "embedded" else None,
            url=settings.QDRANT_URL if settings.QDRANT_MODE == "server" else None,
            api_key=settings.QDRANT_API_KEY,
            collection_name=settings.QDRANT_COLLECTION,
            vector_dim=vector_dim or 384,
            hnsw_m=settings.QDRANT_HNSW_M,
            hnsw_ef_construct=settings.QDRANT_HNSW_EF_CONSTRUCT,
        )
    return _default_index


def reset_index() -> None:
    """Reset the singleton (useful in tests)."""
    global _default_index
    if _default_index is not None:
        _default_index.close()
    _default_index = None
