# File: tests/test_sparse_vector.py
"""
Tests for sparse vector construction.

Covers:
  1. simple_hash stability (31-polynomial over UTF-16 code units)
  2. Structured id extraction, including ids inline in Japanese text
  3. Term weighting and max-normalisation
  4. Degradation: no tokenizer / uninitialised tokenizer / lite / auto
  5. Morphological analysis with janome (skipped when not installed)
"""

from __future__ import annotations

import pytest

from ssr.errors import TokenizerUnavailableError
from ssr.retrieval.sparse_vector import (
    HASH_BUCKETS,
    KeywordLexicon,
    SparseVector,
    SparseVectorBuilder,
    describe_sparse_vector,
    extract_structured_ids,
    simple_hash,
)
from ssr.retrieval.tokenizers import JapaneseTokenizer, LatinTokenizer


def _values_by_index(vector: SparseVector) -> dict[int, float]:
    return dict(zip(vector.indices, vector.values))


# ═══════════════════════════════════════════════════════════════════════════════
# HASHING
# ═══════════════════════════════════════════════════════════════════════════════

class TestSimpleHash:

    @pytest.mark.parametrize("term,expected", [
        ("a", 97),
        ("ab", 3105),
        ("hello", 162322),
        ("安", 23433),
    ])
    def test_known_values(self, term, expected):
        assert simple_hash(term) == expected

    def test_empty_string(self):
        assert simple_hash("") == 0

    def test_range_and_stability(self):
        for term in ["safety", "リスク", "H-104", "x" * 500, "🙂"]:
            h = simple_hash(term)
            assert 0 <= h < HASH_BUCKETS
            assert simple_hash(term) == h


# ═══════════════════════════════════════════════════════════════════════════════
# STRUCTURED IDS
# ═══════════════════════════════════════════════════════════════════════════════

class TestStructuredIds:

    def test_uppercased_in_order(self):
        assert extract_structured_ids("see h-104 and G1, then sr12") == ["H-104", "G1", "SR12"]

    def test_inline_in_japanese(self):
        assert extract_structured_ids("ゴールG1の根拠はE12です") == ["G1", "E12"]

    def test_repeats_kept(self):
        assert extract_structured_ids("G1 G1") == ["G1", "G1"]

    def test_embedded_in_longer_token_ignored(self):
        assert extract_structured_ids("ABCD12 x12345") == []

    def test_empty(self):
        assert extract_structured_ids("") == []


# ═══════════════════════════════════════════════════════════════════════════════
# LATIN TOKENIZER
# ═══════════════════════════════════════════════════════════════════════════════

class TestLatinTokenizer:

    def test_technical_tokens_whole_and_ordered(self):
        tokens = LatinTokenizer().tokenize("ASIL-D on H100 with FP8")
        assert tokens == ["asil-d", "on", "h100", "with", "fp8"]

    def test_versions_and_decimals(self):
        assert LatinTokenizer().tokenize("v1.5 at 0.25") == ["v1.5", "at", "0.25"]

    def test_markdown_markers_stripped(self):
        assert LatinTokenizer().tokenize("**Safety** `risk`") == ["safety", "risk"]

    def test_repeats_kept(self):
        assert LatinTokenizer().tokenize("risk risk") == ["risk", "risk"]

    def test_empty(self):
        assert LatinTokenizer().tokenize("") == []


# ═══════════════════════════════════════════════════════════════════════════════
# WEIGHTING
# ═══════════════════════════════════════════════════════════════════════════════

class TestWeighting:

    def test_keyword_boost_and_normalisation(self):
        vec = SparseVectorBuilder().create_sparse_vector("Safety risk safety")
        values = _values_by_index(vec)
        assert values[simple_hash("safety")] == pytest.approx(1.0)
        assert values[simple_hash("risk")] == pytest.approx(0.5)

    def test_structured_id_dominates(self):
        vec = SparseVectorBuilder().create_sparse_vector("H-104 の対策")
        values = _values_by_index(vec)
        assert values[simple_hash("H-104")] == pytest.approx(1.0)
        assert values[simple_hash("h-104")] == pytest.approx(1 / 3)

    def test_values_in_unit_interval(self):
        text = "GSN goal G1 supported by evidence E3; ROI and cost are tracked. 安全 リスク"
        vec = SparseVectorBuilder().create_sparse_vector(text)
        assert max(vec.values) == pytest.approx(1.0)
        assert all(0.0 < v <= 1.0 for v in vec.values)
        assert len(set(vec.indices)) == len(vec.indices)

    def test_single_characters_dropped(self):
        weights = SparseVectorBuilder().term_weights("a b c risk")
        assert set(weights) == {"risk"}

    def test_custom_keyword_lexicon(self):
        builder = SparseVectorBuilder(keywords=KeywordLexicon(english={"brake": 4.0}))
        assert builder.term_weights("brake brake") == {"brake": 10.0}
        assert builder.term_weights("safety") == {"safety": 1.0}


class TestFallback:

    def test_empty_text(self):
        vec = SparseVectorBuilder().create_sparse_vector("")
        assert vec.indices == (simple_hash("fallback"),)
        assert vec.values == (1.0,)

    def test_text_without_terms_uses_prefix(self):
        vec = SparseVectorBuilder().create_sparse_vector("a")
        assert vec.indices == (97,)
        assert vec.values == (1.0,)

    def test_prefix_truncated(self):
        text = "!" * 250
        vec = SparseVectorBuilder().create_sparse_vector(text)
        assert vec.indices == (simple_hash("!" * 100),)

    def test_lite_empty(self):
        vec = SparseVectorBuilder().create_sparse_vector_lite("")
        assert vec.indices == (simple_hash("fallback"),)


# ═══════════════════════════════════════════════════════════════════════════════
# DEGRADATION
# ═══════════════════════════════════════════════════════════════════════════════

class TestDegradation:

    def test_no_tokenizer_uses_keyword_scan(self, caplog):
        builder = SparseVectorBuilder()
        assert not builder.morphology_ready
        with caplog.at_level("WARNING", logger="ssr.retrieval.sparse_vector"):
            weights = builder.term_weights("安全性の確認とリスク評価")
        assert weights == {"安全": 2.5, "リスク": 2.5}
        assert "keyword scan" in caplog.text

    def test_uninitialised_tokenizer_raises(self):
        tok = JapaneseTokenizer()
        assert not tok.ready
        with pytest.raises(TokenizerUnavailableError):
            tok.tokenize("安全")

    def test_uninitialised_tokenizer_in_builder_degrades(self):
        builder = SparseVectorBuilder(ja_tokenizer=JapaneseTokenizer())
        assert not builder.morphology_ready
        assert builder.term_weights("品質の確認") == {"品質": 1.8}

    def test_lite_keywords_and_katakana(self):
        weights = SparseVectorBuilder().lite_term_weights("セキュリティとパフォーマンス")
        assert weights["セキュリティ"] == pytest.approx(3.5)
        assert weights["パフォーマンス"] == pytest.approx(3.3)
        assert set(weights) == {"セキュリティ", "パフォーマンス"}

    def test_lite_katakana_run_without_keyword(self):
        weights = SparseVectorBuilder().lite_term_weights("ブレーキ制御")
        assert weights == {"ブレーキ": 1.5}

    def test_auto_falls_back_to_lite(self, monkeypatch, caplog):
        builder = SparseVectorBuilder()

        def boom(text):
            raise RuntimeError("tokenizer crashed")

        monkeypatch.setattr(builder, "term_weights", boom)
        with caplog.at_level("WARNING", logger="ssr.retrieval.sparse_vector"):
            vec = builder.create_sparse_vector_auto("ブレーキ制御")
        assert vec.indices == (simple_hash("ブレーキ"),)
        assert "lite" in caplog.text

    def test_auto_uses_full_path_when_healthy(self):
        builder = SparseVectorBuilder()
        text = "Safety risk safety"
        assert builder.create_sparse_vector_auto(text) == builder.create_sparse_vector(text)


class TestJanome:

    def test_init_and_morphology(self, tmp_path):
        pytest.importorskip("janome")
        tok = JapaneseTokenizer([tmp_path / "missing.csv"])
        assert tok.init()
        assert tok.ready
        assert tok.user_dict is None
        assert tok.init()

        builder = SparseVectorBuilder(ja_tokenizer=tok)
        assert builder.morphology_ready
        weights = builder.term_weights("安全を確認する")
        assert weights["安全"] == pytest.approx(3.5)
        assert "確認" in weights
        assert "を" not in weights

    def test_latin_words_not_counted_twice(self):
        pytest.importorskip("janome")
        tok = JapaneseTokenizer()
        tok.init()
        weights = SparseVectorBuilder(ja_tokenizer=tok).term_weights("risk の評価")
        assert weights["risk"] == pytest.approx(3.5)


# ═══════════════════════════════════════════════════════════════════════════════
# VECTOR TYPE
# ═══════════════════════════════════════════════════════════════════════════════

class TestSparseVector:

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            SparseVector(indices=(), values=())

    def test_length_mismatch_rejected(self):
        with pytest.raises(ValueError):
            SparseVector(indices=(1, 2), values=(1.0,))

    @pytest.mark.parametrize("value", [0.0, -0.5, 1.5])
    def test_value_range(self, value):
        with pytest.raises(ValueError):
            SparseVector(indices=(1,), values=(value,))

    def test_dot(self):
        a = SparseVector(indices=(1, 2), values=(1.0, 0.5))
        b = SparseVector(indices=(2, 3), values=(0.5, 1.0))
        assert a.dot(b) == pytest.approx(0.25)
        assert a.dot(SparseVector(indices=(9,), values=(1.0,))) == 0.0

    def test_as_dict(self):
        vec = SparseVector(indices=(5, 7), values=(1.0, 0.25))
        assert vec.as_dict() == {"indices": [5, 7], "values": [1.0, 0.25]}

    def test_describe(self):
        text = "G1 and G1 with risk"
        vec = SparseVectorBuilder().create_sparse_vector(text)
        info = describe_sparse_vector(vec, text)
        assert info["structured_ids"] == ["G1"]
        assert info["max_value"] == 1.0
        assert info["dimensions"] == len(vec.indices)
        assert info["text_length"] == len(text)
