# File: tests/test_embedder.py
"""
Tests for the Embedder class.

A mock model stands in for SentenceTransformer: it produces deterministic
unit vectors seeded from each input text and records what it was asked to
encode, so the E5 prefixes can be checked. No network, no weights.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest

from ssr.retrieval.embedder import (
    Embedder,
    _cache_path,
    _sha256,
    get_embedder,
    reset_embedder,
)


# ── Fixtures ──────────────────────────────────────────────────────────────────

def _make_mock_model(dim: int = 384) -> MagicMock:
    mock = MagicMock()
    mock.max_seq_length = 512
    mock.get_sentence_embedding_dimension.return_value = dim

    def fake_encode(texts, **kwargs):
        vecs = []
        for t in texts:
            seed = int(hashlib.sha256(t.encode("utf-8")).hexdigest()[:8], 16)
            v = np.random.default_rng(seed).standard_normal(dim).astype(np.float32)
            vecs.append(v / np.linalg.norm(v))
        return np.array(vecs, dtype=np.float32)

    mock.encode.side_effect = fake_encode
    return mock


def _encoded_texts(model: MagicMock) -> list[str]:
    return [t for call in model.encode.call_args_list for t in call.args[0]]


@pytest.fixture()
def tmp_cache(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture()
def e5_embedder(tmp_cache: Path) -> Embedder:
    e = Embedder(model_name="intfloat/multilingual-e5-small", batch_size=8, cache_dir=tmp_cache)
    e._model = _make_mock_model(dim=384)
    return e


@pytest.fixture()
def plain_embedder() -> Embedder:
    e = Embedder(model_name="acme/plain-minilm", batch_size=8, cache_dir=None)
    e._model = _make_mock_model(dim=16)
    return e


# ── Helpers ───────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_cache_path_structure(self, tmp_path: Path):
        p = _cache_path(tmp_path, "intfloat_multilingual-e5-small", "abcdef1234567890")
        assert p.parent.name == "ab"
        assert p.parent.parent.name == "intfloat_multilingual-e5-small"
        assert p.name == "abcdef1234567890.npy"

    def test_sha256_is_deterministic(self):
        assert _sha256("安全") == _sha256("安全")
        assert _sha256("a") != _sha256("b")


# ── Prefixes ──────────────────────────────────────────────────────────────────

class TestPrefixes:
    def test_e5_query_prefix(self, e5_embedder: Embedder):
        e5_embedder.embed_query("ブレーキの安全性")
        assert _encoded_texts(e5_embedder._model) == ["query: ブレーキの安全性"]

    def test_e5_passage_prefix(self, e5_embedder: Embedder):
        e5_embedder.embed_passages(["本文 A", "本文 B"])
        assert _encoded_texts(e5_embedder._model) == ["passage: 本文 A", "passage: 本文 B"]

    def test_query_and_passage_differ(self, e5_embedder: Embedder):
        q = e5_embedder.embed_query("same text")
        p = e5_embedder.embed_passages(["same text"])[0]
        assert not np.allclose(q, p)

    def test_non_e5_model_has_no_prefix(self, plain_embedder: Embedder):
        plain_embedder.embed_query("hello")
        assert _encoded_texts(plain_embedder._model) == ["hello"]


# ── Shapes / dimensions ───────────────────────────────────────────────────────

class TestShapes:
    def test_passages_shape(self, e5_embedder: Embedder):
        vecs = e5_embedder.embed_passages(["a", "b", "c"])
        assert vecs.shape == (3, 384)
        assert vecs.dtype == np.float32

    def test_empty_passages(self, e5_embedder: Embedder):
        assert e5_embedder.embed_passages([]).shape == (0, 384)

    def test_query_is_1d_unit_vector(self, e5_embedder: Embedder):
        vec = e5_embedder.embed_query("q")
        assert vec.shape == (384,)
        assert abs(np.linalg.norm(vec) - 1.0) < 1e-5

    def test_embed_queries(self, e5_embedder: Embedder):
        assert e5_embedder.embed_queries(["q1", "q2"]).shape == (2, 384)

    @pytest.mark.parametrize("model,dim", [
        ("intfloat/multilingual-e5-small", 384),
        ("intfloat/multilingual-e5-base", 768),
        ("intfloat/multilingual-e5-large", 1024),
    ])
    def test_known_dims_without_loading(self, model, dim):
        assert Embedder(model_name=model).embedding_dim == dim

    def test_unknown_model_dim_from_model(self, plain_embedder: Embedder):
        assert plain_embedder.embedding_dim == 16
        assert plain_embedder.embed_passages(["x"]).shape == (1, 16)


# ── Disk cache / batching ─────────────────────────────────────────────────────

class TestCache:
    def test_miss_then_hit(self, e5_embedder: Embedder):
        v1 = e5_embedder.embed_passages(["リスク評価"])
        calls = e5_embedder._model.encode.call_count
        v2 = e5_embedder.embed_passages(["リスク評価"])
        assert e5_embedder._model.encode.call_count == calls
        np.testing.assert_array_almost_equal(v1, v2)

    def test_query_and_passage_cached_separately(self, e5_embedder: Embedder, tmp_cache: Path):
        e5_embedder.embed_passages(["text"])
        e5_embedder.embed_query("text")
        slug = "intfloat_multilingual-e5-small"
        assert _cache_path(tmp_cache, slug, _sha256("passage: text")).exists()
        assert _cache_path(tmp_cache, slug, _sha256("query: text")).exists()
        assert e5_embedder.cache_stats()["files"] == 2

    def test_only_misses_reach_model(self, e5_embedder: Embedder):
        e5_embedder.embed_passages(["a", "b"])
        e5_embedder._model.encode.reset_mock()
        e5_embedder.embed_passages(["a", "b", "c"])
        assert _encoded_texts(e5_embedder._model) == ["passage: c"]

    def test_corrupt_cache_file_re_embeds(self, e5_embedder: Embedder, tmp_cache: Path):
        e5_embedder.embed_passages(["x"])
        path = _cache_path(tmp_cache, "intfloat_multilingual-e5-small", _sha256("passage: x"))
        path.write_bytes(b"not a numpy file")
        e5_embedder._model.encode.reset_mock()
        assert e5_embedder.embed_passages(["x"]).shape == (1, 384)
        assert e5_embedder._model.encode.call_count == 1

    def test_no_cache(self, plain_embedder: Embedder):
        assert plain_embedder.cache_stats() == {"enabled": False}

    def test_batches(self, plain_embedder: Embedder):
        plain_embedder.embed_passages([f"t{i}" for i in range(20)])
        assert plain_embedder._model.encode.call_count == 3


# ── Singleton ─────────────────────────────────────────────────────────────────

class TestSingleton:
    def test_shared_instance(self):
        reset_embedder()
        try:
            assert get_embedder() is get_embedder()
        finally:
            reset_embedder()

    def test_override_creates_new_instance(self, tmp_path: Path):
        reset_embedder()
        try:
            shared = get_embedder()
            override = get_embedder(cache_dir=tmp_path)
            assert override is not shared
            assert override.cache_dir == tmp_path
            assert get_embedder() is shared
        finally:
            reset_embedder()
