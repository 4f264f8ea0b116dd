# File: src/ssr/retrieval/embedder.py
"""
Batched, cached, deterministic text embedder.

Design decisions:
  - Model: intfloat/multilingual-e5-small (default), 384-dim, Japanese + English
  - Batching: configurable batch size
  - Disk cache: SHA256(prefixed text) → .npy file, so re-indexing never
    re-embeds known text
  - Normalisation: L2-normalised so cosine similarity == dot product

E5 prompt prefixes:
  E5 models are trained with "query: " on queries and "passage: " on
  documents; leaving them out costs noticeable recall. embed_query() and
  embed_passages() apply the right one. Because the prefix is part of the
  cached text, a query and a passage with the same body cache separately.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

_QUERY_PREFIX = "query: "
_PASSAGE_PREFIX = "passage: "

_KNOWN_DIMS = {
    "intfloat/multilingual-e5-small": 384,
    "intfloat/multilingual-e5-base": 768,
    "intfloat/multilingual-e5-large": 1024,
}


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _cache_path(cache_dir: Path, model_slug: str, text_sha: str) -> Path:
    """<cache_dir>/<model_slug>/<first2>/<sha256>.npy"""
    return cache_dir / model_slug / text_sha[:2] / f"{text_sha}.npy"


def _uses_e5_prefixes(model_name: str) -> bool:
    return "e5" in model_name.lower()


class Embedder:
    """
    Wraps a SentenceTransformer model with lazy loading, batched encoding,
    an optional disk cache and separate query/passage entry points.
    """

    def __init__(
        self,
        model_name: str = "intfloat/multilingual-e5-small",
        *,
        device: str = "cpu",
        batch_size: int = 64,
        max_length: int = 512,
        normalize: bool = True,
        cache_dir: Optional[Path] = None,
    ) -> None:
        self.model_name = model_name
        self.device = device
        self.batch_size = batch_size
        self.max_length = max_length
        self.normalize = normalize
        self.cache_dir = cache_dir
        self._model = None
        self._load_lock = threading.Lock()
        self._model_slug = model_name.replace("/", "_")
        if _uses_e5_prefixes(model_name):
            self.query_prefix, self.passage_prefix = _QUERY_PREFIX, _PASSAGE_PREFIX
        else:
            self.query_prefix, self.passage_prefix = "", ""

    # ── Model loading ─────────────────────────────────────────────────────────

    def _load_model(self):
        if self._model is not None:
            return
        from sentence_transformers import SentenceTransformer

        # The retriever embeds from worker threads; load once
        with self._load_lock:
            if self._model is not None:
                return
            logger.info("Loading embedding model: %s on device=%s", self.model_name, self.device)
            model = SentenceTransformer(self.model_name, device=self.device)
            model.max_seq_length = self.max_length
            self._model = model
        logger.info("Embedding model loaded. Vector dim=%d", self.embedding_dim)

    @property
    def embedding_dim(self) -> int:
        if self.model_name in _KNOWN_DIMS:
            return _KNOWN_DIMS[self.model_name]
        self._load_model()
        return self._model.get_sentence_embedding_dimension()  # type: ignore[union-attr]

    # ── Cache helpers ─────────────────────────────────────────────────────────

    def _cache_get(self, text_sha: str) -> Optional[np.ndarray]:
        if self.cache_dir is None:
            return None
        p = _cache_path(self.cache_dir, self._model_slug, text_sha)
        if not p.exists():
            return None
        try:
            return np.load(str(p))
        except (OSError, ValueError):
            logger.warning("Cache read failed for %s, will re-embed", p)
            return None

    def _cache_put(self, text_sha: str, vec: np.ndarray) -> None:
        if self.cache_dir is None:
            return
        p = _cache_path(self.cache_dir, self._model_slug, text_sha)
        p.parent.mkdir(parents=True, exist_ok=True)
        # np.save appends ".npy" unless the name already ends with it
        tmp = p.with_name(p.stem + ".tmp.npy")
        try:
            np.save(str(tmp), vec)
            tmp.replace(p)
        except OSError:
            logger.warning("Cache write failed for %s", p)
            tmp.unlink(missing_ok=True)

    # ── Core encode ───────────────────────────────────────────────────────────

    def _encode_batch(self, texts: list[str]) -> np.ndarray:
        """float32 (N, dim); only cache misses reach the model."""
        n = len(texts)
        shas = [_sha256(t) for t in texts]
        cached: dict[int, np.ndarray] = {}
        miss_indices: list[int] = []

        for i, sha in enumerate(shas):
            hit = self._cache_get(sha)
            if hit is not None:
                cached[i] = hit
            else:
                miss_indices.append(i)

        if cached:
            logger.debug("Embedding cache: %d hits, %d misses out of %d", len(cached), len(miss_indices), n)

        if miss_indices:
            self._load_model()
        result = np.zeros((n, self.embedding_dim), dtype=np.float32)
        for i, vec in cached.items():
            result[i] = vec

        for start in range(0, len(miss_indices), self.batch_size):
            batch = miss_indices[start: start + self.batch_size]
            vecs: np.ndarray = self._model.encode(  # type: ignore[union-attr]
                [texts[j] for j in batch],
                batch_size=self.batch_size,
                normalize_embeddings=self.normalize,
                show_progress_bar=False,
                convert_to_numpy=True,
            )
            for j, vec in zip(batch, vecs):
                result[j] = vec
                self._cache_put(shas[j], vec)

        return result

    # ── Public API ────────────────────────────────────────────────────────────

    def embed_passages(self, texts: Sequence[str]) -> np.ndarray:
        """Embed document chunks for indexing. Returns (N, dim)."""
        if not texts:
            return np.zeros((0, self.embedding_dim), dtype=np.float32)
        return self._encode_batch([self.passage_prefix + t for t in texts])

    def embed_query(self, query: str) -> np.ndarray:
        """Embed one search query. Returns (dim,)."""
        return self._encode_batch([self.query_prefix + query])[0]

    def embed_queries(self, queries: Sequence[str]) -> np.ndarray:
        return self._encode_batch([self.query_prefix + q for q in queries])

    def cache_stats(self) -> dict:
        if self.cache_dir is None:
            return {"enabled": False}
        model_cache = self.cache_dir / self._model_slug
        if not model_cache.exists():
            return {"enabled": True, "files": 0, "size_mb": 0.0}
        files = list(model_cache.rglob("*.npy"))
        size = sum(f.stat().st_size for f in files)
        return {
            "enabled": True,
            "model": self.model_name,
            "files": len(files),
            "size_mb": round(size / 1024 / 1024, 2),
        }


# ── Module-level singleton (lazy) ─────────────────────────────────────────────

_default_embedder: Optional[Embedder] = None


def _embedder_from_settings(**overrides) -> Embedder:
    from ssr.settings import settings

    kwargs = dict(
        model_name=settings.EMBED_MODEL,
        device=settings.EMBED_DEVICE,
        batch_size=settings.EMBED_BATCH_SIZE,
        max_length=settings.EMBED_MAX_LENGTH,
        normalize=settings.EMBED_NORMALIZE,
        cache_dir=settings.embed_cache_dir,
    )
    kwargs.update({k: v for k, v in overrides.items() if v is not None})
    return Embedder(**kwargs)


def get_embedder(
    model_name: Optional[str] = None,
    device: Optional[str] = None,
    cache_dir: Optional[Path] = None,
) -> Embedder:
    """
    The shared settings-built Embedder. Passing any override returns a
    fresh, unshared instance instead.
    """
    global _default_embedder

    if any(v is not None for v in (model_name, device, cache_dir)):
        return _embedder_from_settings(model_name=model_name, device=device, cache_dir=cache_dir)
    if _default_embedder is None:
        _default_embedder = _embedder_from_settings()
    return _default_embedder


def reset_embedder() -> None:
    global _default_embedder
    _default_embedder = None
