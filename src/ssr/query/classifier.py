# File: src/ssr/query/classifier.py
"""
Role and concern normalisation plus stakeholder classification.

Pure helpers (no state, lexicons passed in):
  clean_role            split bilingual "EN / JA" titles, translate common
                         English titles to their Japanese canonical form
  concretize_concern    abstract concern phrase → retrieval-friendly keywords
  prioritize_concerns   rank concerns by priority-keyword hits, keep top 3

Classifier strategies:
  A StakeholderClassifier turns a Stakeholder into a RoleAnalysis
  (category, field, level). The query enhancer, the dynamic-K sizer and the
  per-query weighting all read the category from here, so predefined and
  custom stakeholders share one code path and only the strategy differs.

    PredefinedClassifier  category from the fixed id table
    CustomClassifier      field/level/category inferred from free-text role

  `classifier_for(stakeholder)` picks the strategy from stakeholder.kind.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from ssr.contracts.schemas import Stakeholder, StakeholderKind
from ssr.query.language import contains_japanese
from ssr.query.lexicons import DEFAULT_LEXICONS, Lexicons

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"
MAX_PRIORITIZED_CONCERNS = 3

_ROLE_PUNCTUATION = re.compile(r"[/\-()]")
_ROLE_SUFFIXES = ("", " team", " division")


# ── Role / concern helpers ────────────────────────────────────────────────────

def clean_role(role: str, lexicons: Lexicons = DEFAULT_LEXICONS) -> str:
    """
    Normalise a role title.

    "CxO / 経営層"        → "経営層"         (Japanese segment wins)
    "Product Manager"     → "プロダクトマネージャー"
    "QA Team"             → "QAチーム"
    "Safety Lead"         → "Safety Lead"    (no translation, returned cleaned)
    """
    if "/" in role:
        parts = [p.strip() for p in role.split("/")]
        for part in parts:
            if contains_japanese(part):
                return part
        longest = parts[0]
        for part in parts[1:]:
            if len(part) > len(longest):
                longest = part
        return longest

    cleaned = _ROLE_PUNCTUATION.sub(" ", role).strip()
    lowered = cleaned.lower()
    for english, localized in lexicons.role_translations.items():
        if any(lowered == english + suffix for suffix in _ROLE_SUFFIXES):
            return localized
    return cleaned


def concretize_concern(concern: str, lexicons: Lexicons = DEFAULT_LEXICONS) -> str:
    return lexicons.concern_concretization.get(concern, concern)


def concretize_concerns(
    concerns: Sequence[str], lexicons: Lexicons = DEFAULT_LEXICONS
) -> list[str]:
    return [concretize_concern(c, lexicons) for c in concerns]


def score_concern(concern: str, lexicons: Lexicons = DEFAULT_LEXICONS) -> int:
    """Japanese keyword hits count 2, English hits (case-insensitive) count 1."""
    lowered = concern.lower()
    ja_hits = sum(1 for kw in lexicons.priority_keywords_ja if kw in concern)
    en_hits = sum(1 for kw in lexicons.priority_keywords_en if kw in lowered)
    return ja_hits * 2 + en_hits


def prioritize_concerns(
    concerns: Sequence[str],
    lexicons: Lexicons = DEFAULT_LEXICONS,
    max_count: int = MAX_PRIORITIZED_CONCERNS,
) -> list[str]:
    """Top `max_count` concerns by score; sorted() is stable so ties keep input order."""
    ranked = sorted(concerns, key=lambda c: score_concern(c, lexicons), reverse=True)
    return ranked[:max_count]


# ── Classification ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RoleAnalysis:
    category: str = DEFAULT_CATEGORY     # technical | executive | product | risk | general
    field: Optional[str] = None          # business function, custom stakeholders only
    level: Optional[str] = None          # manager | leader | staff (not used for ranking yet)


class StakeholderClassifier(Protocol):
    def classify(self, stakeholder: Stakeholder) -> RoleAnalysis: ...


class PredefinedClassifier:
    def __init__(self, lexicons: Lexicons = DEFAULT_LEXICONS) -> None:
        self.lexicons = lexicons

    def classify(self, stakeholder: Stakeholder) -> RoleAnalysis:
        category = self.lexicons.predefined_categories.get(stakeholder.id, DEFAULT_CATEGORY)
        return RoleAnalysis(category=category)


class CustomClassifier:
    """
    Heuristic classification of user-defined stakeholders.

    Field and level come from the role string alone; the category also looks
    at the id, since the UI sometimes encodes a hint there
    (e.g. "custom_security_lead").
    """

    def __init__(self, lexicons: Lexicons = DEFAULT_LEXICONS) -> None:
        self.lexicons = lexicons

    def detect_field(self, role: str) -> Optional[str]:
        lowered = role.lower()
        for field_name, keywords in self.lexicons.field_detection_keywords.items():
            if any(kw in lowered for kw in keywords):
                return field_name
        return None

    def detect_level(self, role: str) -> Optional[str]:
        lowered = role.lower()
        for level, keywords in self.lexicons.level_keywords.items():
            if any(kw in lowered for kw in keywords):
                return level
        return None

    def detect_category(self, stakeholder: Stakeholder) -> str:
        haystack = f"{stakeholder.role} {stakeholder.id}".lower()
        for category, keywords in self.lexicons.category_keywords.items():
            if any(kw in haystack for kw in keywords):
                return category
        return DEFAULT_CATEGORY

    def classify(self, stakeholder: Stakeholder) -> RoleAnalysis:
        analysis = RoleAnalysis(
            category=self.detect_category(stakeholder),
            field=self.detect_field(stakeholder.role),
            level=self.detect_level(stakeholder.role),
        )
        logger.debug(
            "Custom stakeholder %s → category=%s field=%s level=%s",
            stakeholder.id, analysis.category, analysis.field, analysis.level,
        )
        return analysis


def classifier_for(
    stakeholder: Stakeholder, lexicons: Lexicons = DEFAULT_LEXICONS
) -> StakeholderClassifier:
    if stakeholder.kind is StakeholderKind.CUSTOM:
        return CustomClassifier(lexicons)
    return PredefinedClassifier(lexicons)


def classify_stakeholder(
    stakeholder: Stakeholder, lexicons: Lexicons = DEFAULT_LEXICONS
) -> RoleAnalysis:
    return classifier_for(stakeholder, lexicons).classify(stakeholder)
