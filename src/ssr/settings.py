from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Core ──────────────────────────────────────────────────────────────────
    app_env: str = "dev"
    log_level: str = "INFO"
    service_name: str = "ssr-retrieval"

    # ── Embedding model ───────────────────────────────────────────────────────
    # intfloat/multilingual-e5-small - 118M params, 384-dim, JA + EN
    # Corpus is Japanese-first with English sections, so an English-only
    # model is not an option here.
    EMBED_MODEL: str = "intfloat/multilingual-e5-small"
    EMBED_BATCH_SIZE: int = 64
    EMBED_MAX_LENGTH: int = 512
    EMBED_DEVICE: str = "cpu"           # "cpu" | "cuda" | "mps"
    EMBED_NORMALIZE: bool = True

    # Disk cache for embeddings - SHA256(text) → numpy file
    # Set to empty string "" to disable caching
    EMBED_CACHE_DIR: str = "data/cache/embeddings"

    # ── Vector store ──────────────────────────────────────────────────────────
    # "qdrant" - full vector service (dense + sparse hybrid)
    # "memory" - in-process numpy index, small corpora only
    VECTOR_STORE: Literal["qdrant", "memory"] = "qdrant"

    # QDRANT_MODE:
    #   "embedded"  - runs in-process, persists to QDRANT_PATH
    #   "server"    - connects to a running Qdrant server
    QDRANT_MODE: Literal["embedded", "server"] = "embedded"
    QDRANT_PATH: str = "data/qdrant"
    QDRANT_URL: str = "http://localhost:6333"
    QDRANT_API_KEY: str | None = None

    # Single collection; stakeholder/user partitions live in the payload
    QDRANT_COLLECTION: str = "ssr_chunks"
    QDRANT_HNSW_M: int = 16
    QDRANT_HNSW_EF_CONSTRUCT: int = 100

    # ── RRF search ────────────────────────────────────────────────────────────
    RRF_K: int = 60                      # standard RRF constant
    SEARCH_K_MULTIPLIER: float = 1.5     # per-query over-fetch beyond dynamic K
    MIN_SEARCH_K: int = 20               # per-query fetch floor
    MAX_QUERIES: int = 5                 # enhanced queries before the English slot
    ENABLE_HYBRID_SEARCH: bool = False
    SEARCH_MAX_WORKERS: int = 4          # concurrent per-query searches
    QUERY_TIMEOUT_S: float = 20.0        # per-query embed + search budget
    K_ACHIEVEMENT_WARN_RATE: float = 0.5 # warn when returned/dynamic_k is below

    # ── Dynamic K ─────────────────────────────────────────────────────────────
    # K = clamp(ceil(n × stakeholder_ratio), min_k, max_k) where
    #   min_k = min(abs_max, max(ABSOLUTE_MIN, ceil(n × RATIO_MIN)))
    #   max_k = max(min_k, min(abs_max, ceil(n × RATIO_MAX)))
    DYNAMIC_K_RATIO_MIN: float = 0.08
    DYNAMIC_K_RATIO_MAX: float = 0.15
    DYNAMIC_K_ABSOLUTE_MIN: int = 15
    DYNAMIC_K_MAX_QDRANT: int = 100
    DYNAMIC_K_MAX_MEMORY: int = 20

    # ── Japanese tokenizer ────────────────────────────────────────────────────
    # janome ships its own system dictionary; an optional user dictionary
    # (janome "simpledic" CSV) is picked from the first path that exists.
    JA_USER_DICT_PATHS: list[str] = [
        "/opt/ssr/dict/userdic.csv",
        "data/dict/userdic.csv",
    ]

    # ── Evaluation ────────────────────────────────────────────────────────────
    EVAL_OUTPUT_DIR: str = "data/evaluation"

    # ── Derived helpers ───────────────────────────────────────────────────────
    @property
    def embed_cache_dir(self) -> Path | None:
        if not self.EMBED_CACHE_DIR:
            return None
        return Path(self.EMBED_CACHE_DIR)

    @property
    def qdrant_path(self) -> Path:
        return Path(self.QDRANT_PATH)

    @property
    def eval_output_dir(self) -> Path:
        return Path(self.EVAL_OUTPUT_DIR)

    @property
    def dynamic_k_store_limits(self) -> dict[str, int]:
        return {"qdrant": self.DYNAMIC_K_MAX_QDRANT, "memory": self.DYNAMIC_K_MAX_MEMORY}


settings = Settings()
