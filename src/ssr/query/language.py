# File: src/ssr/query/language.py
"""
Script-based language detection for stakeholder roles and concerns.

This is a heuristic, not a language-ID model:
  - Japanese script = hiragana, katakana (incl. the long-vowel mark ー), kanji
  - Latin script    = ASCII letters
  - both present → "mixed", Japanese only → "ja", anything else → "en"

Text with zero Japanese characters is "en" even when it is, say, Chinese
without kana; the corpus is Japanese/English only so that case does not occur.
"""

from __future__ import annotations

import re

from ssr.contracts.schemas import Language

_JAPANESE = re.compile(r"[ぁ-ん]|[ァ-ヴー]|[一-龠]")
_LATIN = re.compile(r"[a-zA-Z]")
_ENGLISH_ONLY = re.compile(r"^[a-zA-Z0-9\s\-_.,;:!?()&/]+$")

# Acronyms / product tokens that read as "English" but are language-neutral
_TECHNICAL_TERM = re.compile(r"^[A-Z0-9][A-Z0-9&/\-]{1,9}$")


def contains_japanese(text: str) -> bool:
    return bool(_JAPANESE.search(text or ""))


def contains_latin(text: str) -> bool:
    return bool(_LATIN.search(text or ""))


def detect_language(text: str) -> Language:
    """Classify text as "ja", "en" or "mixed" by the scripts it contains."""
    has_ja = contains_japanese(text)
    has_latin = contains_latin(text)
    if has_ja and has_latin:
        return "mixed"
    if has_ja:
        return "ja"
    return "en"


def is_english_only(text: str) -> bool:
    """True for plain ASCII prose (letters, digits, common punctuation)."""
    return bool(text) and bool(_ENGLISH_ONLY.match(text.strip()))


def is_technical_term(text: str) -> bool:
    """Short uppercase tokens such as ROI, KPI, CI/CD, R&D, ASIL-D."""
    return bool(_TECHNICAL_TERM.match((text or "").strip()))
