# File: src/ssr/query/enhancer.py
"""
Query enhancement: one stakeholder → an ordered list of diversified queries.

Why several queries
───────────────────
A single "role + concerns" string embeds to one point in vector space and
misses chunks that talk about the same topic in other words or in the other
language. The RRF fusion step rewards chunks that several queries agree on,
so the enhancer produces a small, deliberately varied set:

  base         role + top concerns, concerns alone, top-2 concerns
  translated   English concerns/role rendered in Japanese
  synonyms     role and concern synonyms (JA + EN tables)
  role terms   per-stakeholder domain terms (+ GSN assurance-case query
                for the technical kinds)
  english      exactly one English query appended after the cap when the
                input is Japanese-leaning, so every Japanese stakeholder also
                reaches English sections of the corpus

Output contract:
  - deterministic for a given (stakeholder, config, lexicons)
  - no duplicates, no empty / whitespace-only strings
  - at most max_queries, plus the one English slot (max_queries + 1)

Predefined vs custom:
  A single QueryEnhancer handles both. The stakeholder's kind selects the
  candidate generator; the classifier strategy supplies the RoleAnalysis
  (field for custom roles, category for both). Position 0 is the primary
  query; weighting in the fusion step depends on that order.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from ssr.contracts.schemas import Language, QueryEnhancementConfig, Stakeholder
from ssr.query.classifier import (
    RoleAnalysis,
    classifier_for,
    clean_role,
    concretize_concerns,
    prioritize_concerns,
)
from ssr.query.language import detect_language
from ssr.query.lexicons import DEFAULT_LEXICONS, Lexicons

logger = logging.getLogger(__name__)

# Input languages that trigger the guaranteed English slot
_JAPANESE_LEANING: frozenset[str] = frozenset({"ja", "mixed"})
# Concern languages that get Japanese-translated variants
_TRANSLATABLE: frozenset[str] = frozenset({"en", "mixed"})


def _normalize(query: str) -> str:
    return " ".join(query.split())


def _dedup(queries: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for q in queries:
        q = _normalize(q)
        if q and q not in seen:
            seen.add(q)
            out.append(q)
    return out


class QueryEnhancer:
    """
    Expands a stakeholder into search queries.

    Stateless apart from the injected lexicons; safe to share across threads
    and reuse for every retrieval call.
    """

    def __init__(self, lexicons: Lexicons = DEFAULT_LEXICONS) -> None:
        self.lexicons = lexicons

    # ── Public API ────────────────────────────────────────────────────────────

    def enhance_query(
        self,
        stakeholder: Stakeholder,
        config: Optional[QueryEnhancementConfig] = None,
    ) -> list[str]:
        config = config or QueryEnhancementConfig()
        analysis = classifier_for(stakeholder, self.lexicons).classify(stakeholder)

        role_lang = detect_language(stakeholder.role)
        concerns_lang = detect_language(" ".join(stakeholder.concerns))

        if stakeholder.is_custom:
            candidates = self._custom_candidates(
                stakeholder, analysis, config, role_lang, concerns_lang
            )
        else:
            candidates = self._predefined_candidates(
                stakeholder, config, role_lang, concerns_lang
            )

        queries = _dedup(candidates)[: config.max_queries]

        if config.include_english and (
            role_lang in _JAPANESE_LEANING or concerns_lang in _JAPANESE_LEANING
        ):
            english = _normalize(self.english_query(stakeholder, analysis))
            if english and english not in queries:
                queries.append(english)

        logger.debug(
            "Enhanced %s (%s) into %d queries", stakeholder.id, stakeholder.kind.value, len(queries)
        )
        return queries

    # ── Candidate generators ──────────────────────────────────────────────────

    def _predefined_candidates(
        self,
        stakeholder: Stakeholder,
        config: QueryEnhancementConfig,
        role_lang: Language,
        concerns_lang: Language,
    ) -> list[str]:
        role = clean_role(stakeholder.role, self.lexicons)
        concerns = prioritize_concerns(
            concretize_concerns(stakeholder.concerns, self.lexicons), self.lexicons
        )

        queries = self.base_queries(role, concerns)
        if role_lang == "en" or concerns_lang in _TRANSLATABLE:
            queries += self.translated_queries(role, concerns, role_lang, concerns_lang)
        if config.include_synonyms:
            queries += self.synonym_queries(role, concerns)
        if config.include_role_terms:
            queries += self.role_term_queries(stakeholder)
        return queries

    def _custom_candidates(
        self,
        stakeholder: Stakeholder,
        analysis: RoleAnalysis,
        config: QueryEnhancementConfig,
        role_lang: Language,
        concerns_lang: Language,
    ) -> list[str]:
        # User-authored concerns are never in the concretization table
        role = clean_role(stakeholder.role, self.lexicons)
        concerns = prioritize_concerns(stakeholder.concerns, self.lexicons)
        joined = " ".join(concerns)

        queries = [f"{role} {joined}", joined]
        if role_lang == "en" or concerns_lang in _TRANSLATABLE:
            queries += self.translated_queries(role, concerns, role_lang, concerns_lang)
        if analysis.field:
            queries += self.field_queries(analysis.field, concerns)
        queries += self.concern_trigger_queries(stakeholder.concerns)
        if config.include_synonyms and analysis.field:
            queries += self.field_synonym_queries(analysis.field, concerns)
        return queries

    # ── Query families ────────────────────────────────────────────────────────

    @staticmethod
    def base_queries(role: str, concerns: Sequence[str]) -> list[str]:
        """Branches on concern count so short inputs don't yield near-duplicates."""
        if len(concerns) >= 3:
            return [
                f"{role} {' '.join(concerns)}",
                " ".join(concerns),
                " ".join(concerns[:2]),
            ]
        if len(concerns) == 2:
            return [
                f"{role} {' '.join(concerns)}",
                " ".join(concerns),
                f"{role} {concerns[0]}",
            ]
        if len(concerns) == 1:
            return [f"{role} {concerns[0]}", concerns[0]]
        return [role]

    def translate_concerns(self, concerns: Sequence[str]) -> list[str]:
        """English concern → Japanese; exact match first, then first partial match."""
        table = self.lexicons.concern_translations
        translated: list[str] = []
        for concern in concerns:
            lowered = concern.lower()
            if lowered in table:
                translated.append(table[lowered])
                continue
            for english, japanese in table.items():
                if english in lowered:
                    translated.append(lowered.replace(english, japanese, 1))
                    break
            else:
                translated.append(concern)
        return translated

    def translated_queries(
        self,
        role: str,
        concerns: Sequence[str],
        role_lang: Language,
        concerns_lang: Language,
    ) -> list[str]:
        queries: list[str] = []
        if concerns_lang in _TRANSLATABLE:
            translated = self.translate_concerns(concerns)
            if any(t != c for t, c in zip(translated, concerns)):
                queries.append(f"{role} {' '.join(translated)}")
                queries.append(" ".join(translated))
        if role_lang == "en":
            translated_role = clean_role(role, self.lexicons)
            if translated_role != role:
                queries.append(f"{translated_role} {' '.join(concerns)}")
        return queries

    def synonym_queries(self, role: str, concerns: Sequence[str]) -> list[str]:
        lex = self.lexicons
        first = concerns[0] if concerns else ""
        role_lower = role.lower()
        queries: list[str] = []

        for key, synonyms in lex.role_synonyms_ja.items():
            if key in role:
                queries.append(f"{synonyms[0]} {first}")
        for key, synonyms in lex.role_synonyms_en.items():
            if key in role_lower:
                queries.append(f"{synonyms[0]} {first}")

        for concern in concerns:
            concern_lower = concern.lower()
            for key, synonyms in lex.concern_synonyms_ja.items():
                if key in concern:
                    queries.append(f"{role} {synonyms[0]}")
            for key, synonyms in lex.concern_synonyms_en.items():
                if key in concern_lower:
                    queries.append(f"{role} {synonyms[0]}")
        return queries

    def role_term_queries(self, stakeholder: Stakeholder) -> list[str]:
        terms = self.lexicons.role_specific_terms.get(stakeholder.id)
        if not terms:
            return []
        # Raw (unconcretized) first concern, as authored
        main_concern = stakeholder.concerns[0] if stakeholder.concerns else ""
        queries = [f"{terms[0]} {main_concern}"]
        if stakeholder.id in self.lexicons.assurance_case_stakeholders:
            queries.append(f"{self.lexicons.assurance_case_query_prefix} {main_concern}")
        return queries

    def field_queries(self, field: str, concerns: Sequence[str]) -> list[str]:
        lex = self.lexicons
        table = lex.field_terms_en if detect_language(" ".join(concerns)) == "en" else lex.field_terms_ja
        terms = table.get(field)
        if not terms:
            return []
        first = concerns[0] if concerns else ""

        def term(i: int) -> str:
            return terms[i] if i < len(terms) else ""

        return [f"{term(0)} {first}".strip(), f"{term(1)} {term(2)}".strip()]

    def concern_trigger_queries(self, concerns: Sequence[str]) -> list[str]:
        queries: list[str] = []
        for concern in concerns:
            lowered = concern.lower()
            for fragments, canned in self.lexicons.concern_trigger_queries:
                if any(f in lowered for f in fragments) and canned not in queries:
                    queries.append(canned)
        return queries

    def field_synonym_queries(self, field: str, concerns: Sequence[str]) -> list[str]:
        synonyms = self.lexicons.field_synonyms.get(field)
        if not synonyms:
            return []
        first = concerns[0] if concerns else ""
        return [f"{synonyms[0]} {first}".strip()]

    # ── English slot ──────────────────────────────────────────────────────────

    def english_query(self, stakeholder: Stakeholder, analysis: RoleAnalysis) -> str:
        """
        Template (predefined id, or inferred field for custom roles), else
        English keywords derived from the concerns, else a generic query.
        """
        lex = self.lexicons
        if stakeholder.is_custom:
            template = lex.field_english_templates.get(analysis.field or "")
        else:
            template = lex.english_query_templates.get(stakeholder.id)
        if template:
            return template

        terms: list[str] = []
        for concern in stakeholder.concerns:
            for japanese, english in lex.concern_keywords_to_english.items():
                if japanese in concern and english not in terms:
                    terms.append(english)
        if terms:
            return " ".join(terms[: lex.max_english_fallback_terms])
        return lex.english_last_resort_query


# ── Module-level convenience functions ────────────────────────────────────────

def enhance_query(
    stakeholder: Stakeholder,
    config: Optional[QueryEnhancementConfig] = None,
    lexicons: Lexicons = DEFAULT_LEXICONS,
) -> list[str]:
    """Side-effect-free entry point used by the retriever and the evaluation harness."""
    return QueryEnhancer(lexicons).enhance_query(stakeholder, config)


def describe_query_enhancement(
    stakeholder: Stakeholder,
    config: Optional[QueryEnhancementConfig] = None,
    lexicons: Lexicons = DEFAULT_LEXICONS,
) -> dict[str, Any]:
    """Original single query vs enhanced list, for debugging query quality."""
    original = f"{stakeholder.role} {' '.join(stakeholder.concerns)}".strip()
    enhanced = enhance_query(stakeholder, config, lexicons)
    record = {
        "stakeholder_id": stakeholder.id,
        "kind": stakeholder.kind.value,
        "original_query": original,
        "original_length": len(original),
        "enhanced_queries": enhanced,
        "query_count": len(enhanced),
        "query_lengths": [len(q) for q in enhanced],
    }
    logger.debug("Query enhancement: %s", record)
    return record
