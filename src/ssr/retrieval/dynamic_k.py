# File: src/ssr/retrieval/dynamic_k.py
"""
Dynamic K: how many fused documents to return for a stakeholder.

Formula (ratio with guarded bounds):
    raw_min = ceil(n × RATIO_MIN)          n = chunks in the namespace
    raw_max = ceil(n × RATIO_MAX)
    min_k   = min(abs_max, max(ABS_MIN, raw_min))
    max_k   = max(min_k, min(abs_max, raw_max))
    K       = clamp(ceil(n × ratio), min_k, max_k)

  ratio    per stakeholder: executives want a concise top slice, technical
           roles want broad coverage. Custom stakeholders get the ratio of
           their inferred category.
  abs_max  per store: the full vector service pages up to 100 hits, the
           in-process index is capped at 20. Unknown store → vector service.
  ABS_MIN  15 chunks, so tiny corpora still feed the prompt something.

The outer min(abs_max, …) on min_k keeps K inside [ABS_MIN, abs_max] even
for stores whose ceiling is below the floor arithmetic; with the default
constants it only engages for the memory store.

Weights:
  The fusion step multiplies each query's RRF contribution by a per-position
  weight. Technical roles trust the first (most specific) query; executives
  trust the two broad leading queries and discount the tail.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Mapping, Optional

from ssr.contracts.schemas import Stakeholder
from ssr.query.classifier import DEFAULT_CATEGORY, classify_stakeholder
from ssr.query.lexicons import DEFAULT_LEXICONS, Lexicons

logger = logging.getLogger(__name__)

DEFAULT_STORE = "qdrant"

# Predefined stakeholder id → fraction of the corpus to return
STAKEHOLDER_RATIOS: Mapping[str, float] = {
    "cxo": 0.08,
    "business": 0.09,
    "product": 0.11,
    "technical-fellows": 0.14,
    "architect": 0.14,
    "r-and-d": 0.15,
}

# Custom stakeholder category → ratio
CATEGORY_RATIOS: Mapping[str, float] = {
    "technical": 0.14,
    "executive": 0.08,
    "risk": 0.12,
    DEFAULT_CATEGORY: 0.11,
}


@dataclass(frozen=True)
class DynamicKConfig:
    ratio_min: float = 0.08
    ratio_max: float = 0.15
    absolute_min: int = 15
    store_limits: Mapping[str, int] = field(
        default_factory=lambda: {"qdrant": 100, "memory": 20}
    )
    default_store: str = DEFAULT_STORE

    def __post_init__(self) -> None:
        if not 0 < self.ratio_min <= self.ratio_max:
            raise ValueError(
                f"ratio bounds must satisfy 0 < min <= max, got {self.ratio_min}/{self.ratio_max}"
            )
        if self.default_store not in self.store_limits:
            raise ValueError(f"default_store {self.default_store!r} has no limit")
        for store, limit in self.store_limits.items():
            if limit < self.absolute_min:
                raise ValueError(
                    f"store limit for {store!r} ({limit}) is below absolute_min ({self.absolute_min})"
                )

    @classmethod
    def from_settings(cls) -> "DynamicKConfig":
        from ssr.settings import settings
        return cls(
            ratio_min=settings.DYNAMIC_K_RATIO_MIN,
            ratio_max=settings.DYNAMIC_K_RATIO_MAX,
            absolute_min=settings.DYNAMIC_K_ABSOLUTE_MIN,
            store_limits=settings.dynamic_k_store_limits,
        )

    def absolute_max(self, store_type: str) -> int:
        return self.store_limits.get(store_type, self.store_limits[self.default_store])


def get_stakeholder_ratio(
    stakeholder: Stakeholder, lexicons: Lexicons = DEFAULT_LEXICONS
) -> float:
    if not stakeholder.is_custom and stakeholder.id in STAKEHOLDER_RATIOS:
        return STAKEHOLDER_RATIOS[stakeholder.id]
    category = classify_stakeholder(stakeholder, lexicons).category
    return CATEGORY_RATIOS.get(category, CATEGORY_RATIOS[DEFAULT_CATEGORY])


def get_dynamic_k(
    total_chunks: int,
    stakeholder: Stakeholder,
    store_type: str = DEFAULT_STORE,
    config: Optional[DynamicKConfig] = None,
) -> int:
    """Pure function of its inputs; see module docstring for the formula."""
    if total_chunks < 0:
        raise ValueError(f"total_chunks must be >= 0, got {total_chunks}")
    cfg = config or DynamicKConfig()
    abs_max = cfg.absolute_max(store_type)

    raw_min = math.ceil(total_chunks * cfg.ratio_min)
    raw_max = math.ceil(total_chunks * cfg.ratio_max)
    min_k = min(abs_max, max(cfg.absolute_min, raw_min))
    max_k = max(min_k, min(abs_max, raw_max))

    ratio = get_stakeholder_ratio(stakeholder)
    target = math.ceil(total_chunks * ratio)
    k = max(min_k, min(target, max_k))

    logger.debug(
        "Dynamic K: n=%d stakeholder=%s ratio=%.2f store=%s bounds=[%d, %d] target=%d → %d",
        total_chunks, stakeholder.id, ratio, store_type, min_k, max_k, target, k,
    )
    return k


# ── Per-query weights ─────────────────────────────────────────────────────────

def _lead_weights(query_count: int, lead: float, lead_n: int = 1, rest: float = 1.0) -> list[float]:
    return [lead if i < lead_n else rest for i in range(query_count)]


def custom_weight_category(stakeholder: Stakeholder, lexicons: Lexicons = DEFAULT_LEXICONS) -> str:
    """
    Weight profile for a custom stakeholder: technical, risk, executive or
    general. Checks id fragments and role fragments per category, in table
    order, so a role hitting both risk and business terms weighs as risk.
    """
    sid = stakeholder.id.lower()
    role = stakeholder.role.lower()
    for category, id_keywords in lexicons.custom_weight_id_keywords.items():
        role_keywords = lexicons.custom_weight_role_keywords.get(category, ())
        if any(kw in sid for kw in id_keywords) or any(kw in role for kw in role_keywords):
            return category
    return DEFAULT_CATEGORY


def get_weights_for_stakeholder(
    stakeholder: Stakeholder,
    query_count: int,
    lexicons: Lexicons = DEFAULT_LEXICONS,
) -> list[float]:
    """
    Positional RRF weights.

      predefined technical   [1.5, 1.0, 1.0, ...]
      predefined executive   [1.2, 1.2, 0.8, ...]
      product                [1.2, 1.0, ...]
      custom technical/risk  [1.4, 1.0, ...]
      custom executive       [1.2, 1.2, 0.9, ...]
      anything else          uniform 1.0
    """
    if stakeholder.is_custom:
        category = custom_weight_category(stakeholder, lexicons)
        if category in ("technical", "risk"):
            return _lead_weights(query_count, 1.4)
        if category == "executive":
            return _lead_weights(query_count, 1.2, lead_n=2, rest=0.9)
        return [1.0] * query_count

    category = classify_stakeholder(stakeholder, lexicons).category
    if category == "technical":
        return _lead_weights(query_count, 1.5)
    if category == "executive":
        return _lead_weights(query_count, 1.2, lead_n=2, rest=0.8)
    if category == "product":
        return _lead_weights(query_count, 1.2)
    return [1.0] * query_count
