# File: tests/test_query_enhancer.py
"""
Tests for the query enhancer.

Covers:
  1. Output contract: deterministic, no duplicates, no empties, length cap
  2. The guaranteed English slot for Japanese-leaning stakeholders
  3. Predefined path: concretized concerns, synonyms, role terms
  4. Custom path: translation, field queries, concern triggers
  5. Injected lexicons
"""

from __future__ import annotations

import pytest

from ssr.contracts.schemas import QueryEnhancementConfig, Stakeholder, StakeholderKind
from ssr.query.enhancer import QueryEnhancer, describe_query_enhancement, enhance_query
from ssr.query.language import contains_japanese
from ssr.query.lexicons import DEFAULT_LEXICONS, ENGLISH_QUERY_TEMPLATES
from ssr.stakeholders import (
    PREDEFINED_STAKEHOLDERS_EN,
    PREDEFINED_STAKEHOLDERS_JA,
    get_predefined_stakeholder,
)

ALL_PREDEFINED = PREDEFINED_STAKEHOLDERS_JA + PREDEFINED_STAKEHOLDERS_EN


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT CONTRACT
# ═══════════════════════════════════════════════════════════════════════════════

class TestOutputContract:

    @pytest.mark.parametrize("stakeholder", ALL_PREDEFINED, ids=lambda s: f"{s.id}:{s.role}")
    def test_no_duplicates_or_empties(self, stakeholder):
        queries = enhance_query(stakeholder)
        assert queries
        assert len(queries) == len(set(queries))
        assert all(q.strip() == q and q for q in queries)

    @pytest.mark.parametrize("stakeholder", ALL_PREDEFINED, ids=lambda s: f"{s.id}:{s.role}")
    def test_length_cap(self, stakeholder):
        assert len(enhance_query(stakeholder)) <= 6

    @pytest.mark.parametrize("max_queries", [1, 2, 3, 5])
    def test_cap_plus_english_slot(self, max_queries):
        cxo = get_predefined_stakeholder("cxo")
        queries = enhance_query(cxo, QueryEnhancementConfig(max_queries=max_queries))
        assert len(queries) == max_queries + 1

    def test_deterministic(self):
        s = get_predefined_stakeholder("architect")
        assert enhance_query(s) == enhance_query(s)
        enhancer = QueryEnhancer()
        assert enhancer.enhance_query(s) == enhancer.enhance_query(s)

    def test_whitespace_concern_yields_no_empty_query(self):
        s = Stakeholder(id="custom_w", role="担当者", concerns=["  "])
        queries = enhance_query(s)
        assert queries
        assert all(q.strip() for q in queries)

    def test_predefined_without_concerns(self):
        s = Stakeholder(id="cxo", role="経営層", concerns=[])
        queries = enhance_query(s)
        assert queries[0] == "経営層"
        assert all(q for q in queries)


# ═══════════════════════════════════════════════════════════════════════════════
# ENGLISH SLOT
# ═══════════════════════════════════════════════════════════════════════════════

class TestEnglishSlot:

    @pytest.mark.parametrize("stakeholder", PREDEFINED_STAKEHOLDERS_JA, ids=lambda s: s.id)
    def test_japanese_predefined_ends_with_template(self, stakeholder):
        queries = enhance_query(stakeholder)
        assert queries[-1] == ENGLISH_QUERY_TEMPLATES[stakeholder.id]

    def test_disabled(self):
        cxo = get_predefined_stakeholder("cxo")
        queries = enhance_query(cxo, QueryEnhancementConfig(include_english=False))
        assert ENGLISH_QUERY_TEMPLATES["cxo"] not in queries
        assert len(queries) <= 5

    @pytest.mark.parametrize("stakeholder", PREDEFINED_STAKEHOLDERS_EN, ids=lambda s: s.id)
    def test_english_input_gets_no_extra_slot(self, stakeholder):
        assert len(enhance_query(stakeholder)) <= 5

    def test_custom_uses_field_template(self):
        s = Stakeholder(id="custom_qa", role="品質保証マネージャー", concerns=["品質基準の遵守"])
        assert enhance_query(s)[-1] == "quality assurance testing verification QA"

    def test_custom_keywords_when_no_field(self):
        s = Stakeholder(id="custom_x", role="担当者", concerns=["安全とコストの課題"])
        assert enhance_query(s)[-1] == "safety cost issue"

    def test_last_resort_query(self):
        s = Stakeholder(id="custom_x", role="担当者", concerns=["  "])
        assert enhance_query(s)[-1] == "safety risk quality management"


# ═══════════════════════════════════════════════════════════════════════════════
# PREDEFINED PATH
# ═══════════════════════════════════════════════════════════════════════════════

class TestPredefinedQueries:

    def test_cxo_primary_query(self):
        queries = enhance_query(get_predefined_stakeholder("cxo"))
        assert queries[0] == "経営層 経営方針 事業戦略 コスト ROI 投資対効果 リスク管理"
        assert queries[1] == "経営方針 事業戦略 コスト ROI 投資対効果 リスク管理"
        assert queries[2] == "経営方針 事業戦略 コスト ROI 投資対効果"

    def test_role_synonym_query(self):
        queries = enhance_query(get_predefined_stakeholder("cxo"))
        assert "経営 経営方針 事業戦略" in queries

    def test_english_concerns_are_translated(self):
        cxo_en = get_predefined_stakeholder("cxo", "en")
        queries = enhance_query(cxo_en)
        assert any(contains_japanese(q) for q in queries)
        assert any("リスク管理" in q for q in queries)

    def test_role_terms_and_assurance_case(self):
        s = Stakeholder(id="architect", role="アーキテクト", concerns=["設計"])
        queries = enhance_query(s, QueryEnhancementConfig(max_queries=10, include_synonyms=False))
        assert "設計 設計" in queries
        assert "GSN アシュアランスケース 設計" in queries

    def test_role_terms_disabled(self):
        s = Stakeholder(id="architect", role="アーキテクト", concerns=["設計"])
        config = QueryEnhancementConfig(max_queries=10, include_synonyms=False, include_role_terms=False)
        assert not any(q.startswith("GSN") for q in enhance_query(s, config))


# ═══════════════════════════════════════════════════════════════════════════════
# CUSTOM PATH
# ═══════════════════════════════════════════════════════════════════════════════

class TestCustomQueries:

    def test_quality_manager(self):
        s = Stakeholder(
            id="custom_qa",
            role="品質保証マネージャー",
            concerns=["品質基準の遵守", "コスト削減"],
        )
        queries = enhance_query(s)
        assert queries[:4] == [
            "品質保証マネージャー 品質基準の遵守 コスト削減",
            "品質基準の遵守 コスト削減",
            "品質保証 品質基準の遵守",
            "テスト バグ",
        ]
        assert "品質向上 不具合削減 テスト" in queries
        assert len(queries) == 6

    def test_english_custom_translated_without_english_slot(self):
        s = Stakeholder(id="custom_sec", role="Security Lead", concerns=["cost", "quality"])
        queries = enhance_query(s)
        assert queries == [
            "Security Lead cost quality",
            "cost quality",
            "Security Lead コスト 品質",
            "コスト 品質",
            "security cost",
        ]

    def test_mixed_concerns_are_translated(self):
        s = Stakeholder(id="custom_m", role="品質マネージャー", concerns=["quality 改善"])
        queries = enhance_query(s)
        assert "品質 改善" in queries
        assert queries[-1] == "quality assurance testing verification QA"

    def test_concern_triggers(self):
        s = Stakeholder(id="custom_pm", role="担当者", concerns=["予算", "納期"])
        queries = enhance_query(s, QueryEnhancementConfig(max_queries=10))
        assert "コスト削減 効率化 ROI" in queries
        assert "プロジェクト管理 マイルストーン 進捗" in queries

    def test_custom_concerns_not_concretized(self):
        s = Stakeholder(id="custom_1", role="担当者", concerns=["戦略的整合性"])
        queries = enhance_query(s)
        assert queries[0] == "担当者 戦略的整合性"
        assert not any("経営方針" in q for q in queries)

    def test_kind_tag_drives_path(self):
        raw = Stakeholder(id="cxo", role="経営層", concerns=["戦略的整合性"], kind=StakeholderKind.CUSTOM)
        assert enhance_query(raw)[0] == "経営層 戦略的整合性"


# ═══════════════════════════════════════════════════════════════════════════════
# LEXICON INJECTION / DEBUG
# ═══════════════════════════════════════════════════════════════════════════════

class TestLexicons:

    def test_injected_template(self):
        lex = DEFAULT_LEXICONS.replace(english_query_templates={"cxo": "board level summary"})
        queries = QueryEnhancer(lex).enhance_query(get_predefined_stakeholder("cxo"))
        assert queries[-1] == "board level summary"
        assert enhance_query(get_predefined_stakeholder("cxo"))[-1] == ENGLISH_QUERY_TEMPLATES["cxo"]

    def test_tables_are_read_only(self):
        with pytest.raises(TypeError):
            DEFAULT_LEXICONS.english_query_templates["cxo"] = "x"  # type: ignore[index]
        lex = DEFAULT_LEXICONS.replace(role_translations={"a": "b"})
        with pytest.raises(TypeError):
            lex.role_translations["c"] = "d"  # type: ignore[index]

    def test_describe_query_enhancement(self):
        record = describe_query_enhancement(get_predefined_stakeholder("product"))
        assert record["stakeholder_id"] == "product"
        assert record["kind"] == "predefined"
        assert record["query_count"] == len(record["enhanced_queries"])
        assert record["query_lengths"] == [len(q) for q in record["enhanced_queries"]]
        assert record["original_query"].startswith("Product Division / 製品部門")
