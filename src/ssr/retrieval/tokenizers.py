# File: src/ssr/retrieval/tokenizers.py
"""
Tokenizers feeding the sparse vector builder.

LatinTokenizer
  Technical-aware regex tokenizer for the Latin-script part of a text.
  Keeps hyphenated / versioned / unit tokens whole, so "H-104", "ASIL-D",
  "v1.5" and "fp8" survive as single terms:
    "ASIL-D on H100 with FP8" → ["asil-d", "on", "h100", "with", "fp8"]
  Unlike a set-of-words tokenizer, repeats are kept: term frequency is the
  base weight in the sparse vector.

JapaneseTokenizer
  Resource handle around janome's morphological analyser.
    - init() loads the system dictionary (and an optional user dictionary,
      taken from the first candidate path that exists)
    - ready tells callers whether init() succeeded
    - tokenize() returns MorphToken(lemma, pos) and raises
      TokenizerUnavailableError when the handle is not ready
  Created once at process start and passed into SparseVectorBuilder.
  janome's Tokenizer is not safe to share across threads, and the retriever
  builds sparse vectors from worker threads, so tokenize() holds a lock.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from ssr.errors import TokenizerUnavailableError

logger = logging.getLogger(__name__)


# ── Latin tokenizer ───────────────────────────────────────────────────────────

# Markdown noise: strip markers but keep inner text
_MD_NOISE = re.compile(
    r"```.*?```"                  # fenced code blocks: removed
    r"|`([^`\n]+)`"               # inline code: inner text (group 1)
    r"|\*{1,3}([^*\n]+)\*{1,3}"   # bold/italic: inner text (group 2)
    r"|#{1,6}\s"                  # heading markers
    r"|\[([^\]]+)\]\([^)]+\)"     # links: link text (group 3)
    r"|!\[[^\]]*\]\([^)]+\)"      # images: removed
    r"|\|[-:]+\|"                 # table separators
    r"|---+|===+",
    re.DOTALL,
)

# Hyphenated / dotted terms, letter+digit units, digit+letter units, decimals
_TECH_TOKEN = re.compile(
    r"[a-z0-9]+(?:[-_.][a-z0-9]+)+"
    r"|[a-z]+\d+"
    r"|\d+[a-z]+"
    r"|\d+\.\d+"
)

_WORD = re.compile(r"[a-z0-9]{2,}")


def _md_sub(m: re.Match) -> str:
    for g in m.groups():
        if g is not None:
            return f" {g} "
    return " "


class LatinTokenizer:
    def tokenize(self, text: str) -> list[str]:
        """Lowercased tokens in text order; hyphenated and unit tokens stay whole."""
        if not text:
            return []
        cleaned = _MD_NOISE.sub(_md_sub, text).lower()

        found: list[tuple[int, str]] = []
        residual = list(cleaned)
        for m in _TECH_TOKEN.finditer(cleaned):
            found.append((m.start(), m.group(0)))
            residual[m.start():m.end()] = " " * (m.end() - m.start())

        for m in _WORD.finditer("".join(residual)):
            found.append((m.start(), m.group(0)))

        found.sort(key=lambda t: t[0])
        return [tok for _, tok in found]


# ── Japanese morphological tokenizer ──────────────────────────────────────────

@dataclass(frozen=True)
class MorphToken:
    lemma: str
    pos: str          # top-level part of speech: 名詞, 動詞, 形容詞, 助詞, ...
    surface: str = ""


class JapaneseTokenizer:
    def __init__(
        self,
        user_dict_paths: Sequence[str | Path] = (),
        *,
        user_dict_type: str = "simpledic",
        mmap: bool = True,
    ) -> None:
        self.user_dict_paths = [Path(p) for p in user_dict_paths]
        self.user_dict_type = user_dict_type
        self.mmap = mmap
        self.user_dict: Optional[Path] = None
        self._tokenizer = None
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._tokenizer is not None

    def _find_user_dict(self) -> Optional[Path]:
        for path in self.user_dict_paths:
            if path.is_file():
                return path
        return None

    def init(self) -> bool:
        """
        Load janome. Idempotent; returns the resulting ready state.

        Failures are logged and leave the handle not-ready, so callers can
        degrade to the keyword scan instead of failing the search.
        """
        if self.ready:
            return True
        try:
            from janome.tokenizer import Tokenizer
        except ImportError as e:
            logger.warning("janome not importable, morphological analysis disabled: %s", e)
            return False

        self.user_dict = self._find_user_dict()
        try:
            if self.user_dict is not None:
                logger.info("Loading janome with user dictionary: %s", self.user_dict)
                self._tokenizer = Tokenizer(
                    str(self.user_dict),
                    udic_type=self.user_dict_type,
                    udic_enc="utf8",
                    mmap=self.mmap,
                )
            else:
                self._tokenizer = Tokenizer(mmap=self.mmap)
        except Exception as e:
            logger.warning("janome initialisation failed: %s", e)
            self._tokenizer = None
            return False

        logger.info("Japanese tokenizer ready (user_dict=%s)", self.user_dict)
        return True

    def tokenize(self, text: str) -> list[MorphToken]:
        if self._tokenizer is None:
            raise TokenizerUnavailableError("Japanese tokenizer is not initialised; call init() first")
        with self._lock:
            raw = list(self._tokenizer.tokenize(text))
        return [
            MorphToken(
                lemma=t.base_form if t.base_form and t.base_form != "*" else t.surface,
                pos=t.part_of_speech.split(",")[0],
                surface=t.surface,
            )
            for t in raw
        ]
