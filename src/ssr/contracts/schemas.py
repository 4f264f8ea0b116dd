from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Id prefix used by the report-configuration UI for user-defined stakeholders.
# Only consulted when raw input arrives without an explicit kind.
CUSTOM_ID_PREFIX = "custom_"

Language = Literal["ja", "en", "mixed"]


# ── Stakeholder ───────────────────────────────────────────────────────────────

class StakeholderKind(str, Enum):
    PREDEFINED = "predefined"
    CUSTOM = "custom"


class Stakeholder(BaseModel):
    """
    Report audience: a role plus ranked concerns.

    `kind` is the tag the query enhancer, dynamic-K sizer and weighting
    switch on. Raw input without a kind (JSON files written by the UI,
    evaluation stakeholder lists) is tagged once here from the id prefix.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    role: str
    concerns: tuple[str, ...] = ()
    kind: StakeholderKind = StakeholderKind.PREDEFINED

    @model_validator(mode="before")
    @classmethod
    def _tag_kind(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("kind") is None:
            data = dict(data)
            sid = str(data.get("id", ""))
            data["kind"] = (
                StakeholderKind.CUSTOM if sid.startswith(CUSTOM_ID_PREFIX)
                else StakeholderKind.PREDEFINED
            )
        return data

    @field_validator("concerns", mode="before")
    @classmethod
    def _concerns_tuple(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, str):
            return (v,)
        return tuple(v)

    @property
    def is_custom(self) -> bool:
        return self.kind is StakeholderKind.CUSTOM


class QueryEnhancementConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_queries: int = Field(default=5, ge=1)
    include_english: bool = True
    include_synonyms: bool = True
    include_role_terms: bool = True


# ── Retrieval boundary ────────────────────────────────────────────────────────

class RetrievedChunk(BaseModel):
    """One ranked hit for one query; rank is 1-based within that query."""
    chunk_id: str
    file_name: str = "unknown"
    content: str = ""
    rank: int = Field(ge=1)
    score: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Evaluation: ground truth ──────────────────────────────────────────────────

class RelevantChunk(BaseModel):
    chunk_id: str = Field(alias="chunkId")
    file_name: str = Field(default="", alias="fileName")
    relevance_score: int = Field(alias="relevanceScore")   # 0=none 1=low 2=mid 3=high

    model_config = ConfigDict(populate_by_name=True)


class GroundTruthEntry(BaseModel):
    query_id: str = Field(alias="queryId")
    query: str
    stakeholder_id: str = Field(default="", alias="stakeholderId")
    relevant_chunks: list[RelevantChunk] = Field(default_factory=list, alias="relevantChunks")

    model_config = ConfigDict(populate_by_name=True)


class GroundTruth(BaseModel):
    """
    Labeled relevance judgements. Serialised with camelCase keys so files
    stay interchangeable with the labeling spreadsheets' JSON exports.
    """
    version: str = "1.0"
    created_at: str = Field(default="", alias="createdAt")
    description: str = ""
    entries: list[GroundTruthEntry] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class ChunkForLabeling(BaseModel):
    """One row of the labeling CSV."""
    query_id: str
    query: str
    stakeholder_id: str
    chunk_id: str
    file_name: str
    chunk_index: int = 0
    rank: int
    score: float
    content_preview: str = ""
    relevance_score: Optional[int] = None


# ── Evaluation: results ───────────────────────────────────────────────────────

class QueryMetrics(BaseModel):
    precision_at_k: float = 0.0
    recall_at_k: float = 0.0
    f1_at_k: float = 0.0
    reciprocal_rank: float = 0.0
    ndcg_at_k: float = 0.0


class QueryEvaluationResult(BaseModel):
    query_id: str
    query: str
    stakeholder_id: str
    metrics: QueryMetrics
    retrieved_chunks: list[RetrievedChunk] = Field(default_factory=list)
    relevant_chunks: list[RelevantChunk] = Field(default_factory=list)
    hits: list[str] = Field(default_factory=list)


class EvaluationSummary(BaseModel):
    total_queries: int = 0
    avg_precision_at_k: float = 0.0
    avg_recall_at_k: float = 0.0
    avg_f1_at_k: float = 0.0
    mrr: float = 0.0
    avg_ndcg_at_k: float = 0.0
    coverage: float = 0.0
    k_achievement_rate: float = 0.0


class EvaluationReport(BaseModel):
    timestamp: str
    k: int
    namespace: str
    ground_truth_version: str
    summary: EvaluationSummary
    query_results: list[QueryEvaluationResult] = Field(default_factory=list)
    dynamic_k_values: list[dict[str, Any]] = Field(default_factory=list)
