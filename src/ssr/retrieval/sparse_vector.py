# File: src/ssr/retrieval/sparse_vector.py
"""
Sparse term-weight vectors for hybrid (dense + lexical) search.

No vocabulary service: every term is hashed into one of 1,000,000 buckets
with a 31-polynomial string hash over UTF-16 code units. Collisions are
accepted; the vector store only needs stable indices between indexing and
query time, and both sides use simple_hash().

Weighting (per occurrence, accumulated per term):
  structured ids   +3.0        "H-104", "G1", "SR12" (uppercased)
  latin tokens     +1.0        len ≥ 2, plus the English keyword boost
  japanese lemmas  +1.0        nouns/verbs/adjectives, len ≥ 2, Japanese
                               script only, plus the Japanese keyword boost
  keyword scan     +boost      only when the morphological tokenizer is
                               unavailable or fails

Japanese lemmas are restricted to Japanese script because janome also
emits Latin words as nouns; counting them again would double the weight of
every English term in mixed text.

Output is max-normalised so values lie in (0, 1]. An input that yields no
terms (e.g. "") gets a single fallback entry, since the vector store rejects
empty sparse vectors.

Variants:
  create_sparse_vector       full path (morphology when available)
  create_sparse_vector_lite  no morphology: keyword scan + katakana runs,
                             for runtimes without the tokenizer assets
  create_sparse_vector_auto  full path, lite on any failure
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence

from ssr.errors import TokenizerUnavailableError
from ssr.query.language import contains_japanese
from ssr.retrieval.tokenizers import JapaneseTokenizer, LatinTokenizer

logger = logging.getLogger(__name__)

HASH_BUCKETS = 1_000_000
FALLBACK_TERM = "fallback"
FALLBACK_PREFIX_CHARS = 100
MIN_TERM_LENGTH = 2
CONTENT_POS = frozenset({"名詞", "動詞", "形容詞"})

# Short letter prefix + up to 4 digits, bounded by non-alphanumerics.
# Explicit ASCII lookarounds: \b would treat adjacent kana/kanji as word
# characters and miss ids written inline in Japanese text ("ゴールG1の").
_STRUCTURED_ID = re.compile(
    r"(?<![A-Za-z0-9])([A-Za-z]{1,3}-?\d{1,4})(?![A-Za-z0-9])",
    re.IGNORECASE,
)
_KATAKANA_RUN = re.compile(r"[ァ-ヴー]{3,}")


# ── Lexicon ───────────────────────────────────────────────────────────────────

IMPORTANT_KEYWORDS: Mapping[str, float] = MappingProxyType({
    # technology
    "api": 2.0, "ml": 2.0, "ai": 2.0,
    "iot": 1.5, "cicd": 1.5, "devops": 1.5, "cloud": 1.5,
    # business
    "roi": 2.0, "kpi": 2.0, "revenue": 1.5, "cost": 1.5, "profit": 1.5,
    # assurance case
    "gsn": 3.0, "goal": 2.0, "strategy": 2.0, "evidence": 2.0,
    # safety
    "safety": 2.5, "risk": 2.5, "hazard": 2.0,
})

JAPANESE_KEYWORDS: Mapping[str, float] = MappingProxyType({
    "セキュリティ": 2.0,
    "パフォーマンス": 1.8,
    "スケーラビリティ": 1.8,
    "コスト": 1.5,
    "安全": 2.5,
    "品質": 1.8,
    "効率": 1.5,
    "リスク": 2.5,
    "ゴール": 2.0,
    "戦略": 2.0,
    "証拠": 2.0,
    "アシュアランス": 2.0,
    "ハザード": 2.0,
})


@dataclass(frozen=True)
class KeywordLexicon:
    english: Mapping[str, float] = field(default_factory=lambda: IMPORTANT_KEYWORDS)
    japanese: Mapping[str, float] = field(default_factory=lambda: JAPANESE_KEYWORDS)
    structured_id_weight: float = 3.0
    katakana_weight: float = 1.5
    token_weight: float = 1.0


DEFAULT_KEYWORDS = KeywordLexicon()


# ── Vector type ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SparseVector:
    indices: tuple[int, ...]
    values: tuple[float, ...]

    def __post_init__(self) -> None:
        if not self.indices:
            raise ValueError("sparse vector must not be empty")
        if len(self.indices) != len(self.values):
            raise ValueError(
                f"indices/values length mismatch: {len(self.indices)} != {len(self.values)}"
            )
        if any(not 0.0 < v <= 1.0 for v in self.values):
            raise ValueError("sparse vector values must lie in (0, 1]")

    def as_dict(self) -> dict[str, list]:
        return {"indices": list(self.indices), "values": list(self.values)}

    def dot(self, other: "SparseVector") -> float:
        mine = dict(zip(self.indices, self.values))
        return sum(mine.get(i, 0.0) * v for i, v in zip(other.indices, other.values))


# ── Hashing / extraction ──────────────────────────────────────────────────────

def simple_hash(term: str) -> int:
    """
    h = h*31 + code_unit over UTF-16 code units, wrapped to signed 32 bits,
    then abs(h) % 1_000_000. Stable across processes (unlike hash()).
    """
    data = term.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        h = (h * 31 + (data[i] | (data[i + 1] << 8))) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) % HASH_BUCKETS


def extract_structured_ids(text: str) -> list[str]:
    """Uppercased structured ids in order of appearance (repeats kept)."""
    return [m.group(1).upper() for m in _STRUCTURED_ID.finditer(text or "")]


def _add(weights: dict[str, float], term: str, amount: float) -> None:
    weights[term] = weights.get(term, 0.0) + amount


def _vectorize(weights: Mapping[str, float], text: str) -> SparseVector:
    buckets: dict[int, float] = defaultdict(float)
    for term, weight in weights.items():
        if weight > 0:
            buckets[simple_hash(term)] += weight

    if not buckets:
        fallback = text[:FALLBACK_PREFIX_CHARS] or FALLBACK_TERM
        return SparseVector(indices=(simple_hash(fallback),), values=(1.0,))

    max_value = max(buckets.values())
    return SparseVector(
        indices=tuple(buckets),
        values=tuple(v / max_value for v in buckets.values()),
    )


# ── Builder ───────────────────────────────────────────────────────────────────

class SparseVectorBuilder:
    """
    Builds sparse vectors from text.

    The Japanese tokenizer handle is injected and may be absent or not ready;
    the builder then degrades to the keyword substring scan on its own.
    """

    def __init__(
        self,
        ja_tokenizer: Optional[JapaneseTokenizer] = None,
        latin_tokenizer: Optional[LatinTokenizer] = None,
        keywords: KeywordLexicon = DEFAULT_KEYWORDS,
    ) -> None:
        self.ja_tokenizer = ja_tokenizer
        self.latin_tokenizer = latin_tokenizer or LatinTokenizer()
        self.keywords = keywords

    @property
    def morphology_ready(self) -> bool:
        return self.ja_tokenizer is not None and self.ja_tokenizer.ready

    # ── Term weights ──────────────────────────────────────────────────────────

    def _structured_id_weights(self, text: str, weights: dict[str, float]) -> None:
        for sid in extract_structured_ids(text):
            _add(weights, sid, self.keywords.structured_id_weight)

    def _latin_weights(self, text: str, weights: dict[str, float]) -> None:
        for token in self.latin_tokenizer.tokenize(text.lower()):
            if len(token) < MIN_TERM_LENGTH:
                continue
            _add(weights, token, self.keywords.token_weight + self.keywords.english.get(token, 0.0))

    def _morph_weights(self, text: str, weights: dict[str, float]) -> None:
        if self.ja_tokenizer is None:
            raise TokenizerUnavailableError("no Japanese tokenizer configured")
        for token in self.ja_tokenizer.tokenize(text):
            if token.pos not in CONTENT_POS:
                continue
            lemma = token.lemma
            if len(lemma) < MIN_TERM_LENGTH or not contains_japanese(lemma):
                continue
            _add(
                weights,
                lemma.lower(),
                self.keywords.token_weight + self.keywords.japanese.get(lemma, 0.0),
            )

    def _keyword_scan_weights(self, text: str, weights: dict[str, float]) -> None:
        for keyword, boost in self.keywords.japanese.items():
            if keyword in text:
                _add(weights, keyword, boost)

    def term_weights(self, text: str) -> dict[str, float]:
        """Raw (unnormalised) weight per term, before hashing."""
        weights: dict[str, float] = {}
        if not text:
            return weights

        self._structured_id_weights(text, weights)
        self._latin_weights(text, weights)

        if contains_japanese(text):
            morph: dict[str, float] = {}
            try:
                self._morph_weights(text, morph)
            except Exception as e:
                logger.warning("Morphological analysis unavailable, using keyword scan: %s", e)
                morph = {}
                self._keyword_scan_weights(text, morph)
            for term, w in morph.items():
                _add(weights, term, w)
        return weights

    def lite_term_weights(self, text: str) -> dict[str, float]:
        weights: dict[str, float] = {}
        if not text:
            return weights
        self._structured_id_weights(text, weights)
        self._latin_weights(text, weights)
        self._keyword_scan_weights(text, weights)
        for run in _KATAKANA_RUN.findall(text):
            _add(weights, run, self.keywords.katakana_weight)
        return weights

    # ── Vectors ───────────────────────────────────────────────────────────────

    def create_sparse_vector(self, text: str) -> SparseVector:
        return _vectorize(self.term_weights(text), text)

    def create_sparse_vector_lite(self, text: str) -> SparseVector:
        return _vectorize(self.lite_term_weights(text), text)

    def create_sparse_vector_auto(self, text: str) -> SparseVector:
        try:
            return self.create_sparse_vector(text)
        except Exception as e:
            logger.warning("Full sparse vector failed, using lite version: %s", e)
            return self.create_sparse_vector_lite(text)


# ── Construction / debugging ──────────────────────────────────────────────────

def build_sparse_vector_builder(
    user_dict_paths: Optional[Sequence[str]] = None,
) -> SparseVectorBuilder:
    """Create the process-wide builder with an initialised Japanese tokenizer."""
    from ssr.settings import settings

    paths = settings.JA_USER_DICT_PATHS if user_dict_paths is None else user_dict_paths
    tokenizer = JapaneseTokenizer(paths)
    if not tokenizer.init():
        logger.warning("Sparse vectors will use keyword scan for Japanese text")
    return SparseVectorBuilder(ja_tokenizer=tokenizer)


def describe_sparse_vector(vector: SparseVector, text: str) -> dict[str, Any]:
    info = {
        "text_length": len(text),
        "dimensions": len(vector.indices),
        "max_value": round(max(vector.values), 4),
        "min_value": round(min(vector.values), 4),
        "structured_ids": list(dict.fromkeys(extract_structured_ids(text))),
    }
    logger.debug("Sparse vector: %s", info)
    return info
