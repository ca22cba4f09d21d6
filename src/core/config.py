"""Configuration from environment variables (.env)."""

import os
from pathlib import Path
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    project_root: Path
    logs_dir: Path
    prompts_dir: Path
    llm_url: str
    llm_model: str
    llm_api_key: str
    embedding_url: str
    embedding_model: str
    embedding_api_key: str
    embedding_dimensions: int
    data_store_url: str
    data_store_key: str
    default_user_id: str
    user_timezone: str
    default_currency: str
    pipeline_budget_seconds: float
    preprocess_timeout_seconds: float
    embedding_timeout_seconds: float
    hybrid_search_timeout_seconds: float
    temporal_search_timeout_seconds: float
    rerank_timeout_seconds: float
    rerank_strategy: str  # feature_based | cross_encoder | hybrid
    preprocess_cache_ttl_seconds: int

    @classmethod
    def load(cls) -> "Config":
        project_root = Path(__file__).parent.parent.parent
        return cls(
            project_root=project_root,
            logs_dir=Path(os.getenv("LOGS_DIR", str(project_root / "logs"))),
            prompts_dir=project_root / "prompts",
            llm_url=os.getenv("LLM_URL", "http://localhost:6001"),
            llm_model=os.getenv("LLM_MODEL", "gemini-1.5-flash"),
            llm_api_key=os.getenv("LLM_API_KEY", ""),
            embedding_url=os.getenv("EMBEDDING_URL", "http://localhost:6005"),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-004"),
            embedding_api_key=os.getenv("EMBEDDING_API_KEY", ""),
            embedding_dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", "1536")),
            data_store_url=os.getenv("DATA_STORE_URL", "http://localhost:54321"),
            data_store_key=os.getenv("DATA_STORE_KEY", ""),
            default_user_id=os.getenv("RAG_USER_ID", ""),
            user_timezone=os.getenv("USER_TIMEZONE", os.getenv("TZ", "UTC")),
            default_currency=os.getenv("DEFAULT_CURRENCY", "MYR").upper(),
            pipeline_budget_seconds=float(os.getenv("PIPELINE_BUDGET_SECONDS", "75")),
            preprocess_timeout_seconds=float(os.getenv("PREPROCESS_TIMEOUT_SECONDS", "10")),
            embedding_timeout_seconds=float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "15")),
            hybrid_search_timeout_seconds=float(os.getenv("HYBRID_SEARCH_TIMEOUT_SECONDS", "30")),
            temporal_search_timeout_seconds=float(os.getenv("TEMPORAL_SEARCH_TIMEOUT_SECONDS", "25")),
            rerank_timeout_seconds=float(os.getenv("RERANK_TIMEOUT_SECONDS", "15")),
            rerank_strategy=os.getenv("RERANK_STRATEGY", "hybrid").strip().lower(),
            preprocess_cache_ttl_seconds=int(os.getenv("PREPROCESS_CACHE_TTL_SECONDS", "3600")),
        )

    def validate(self) -> list[str]:
        errors = []
        if not self.prompts_dir.exists():
            errors.append(f"Prompts directory not found: {self.prompts_dir}")
        if self.embedding_dimensions <= 0:
            errors.append(f"EMBEDDING_DIMENSIONS must be positive, got {self.embedding_dimensions}")
        if self.rerank_strategy not in ("feature_based", "cross_encoder", "hybrid"):
            errors.append(f"Unknown RERANK_STRATEGY: {self.rerank_strategy}")
        if not self.llm_api_key:
            errors.append("LLM_API_KEY not set; preprocessing and cross-encoder re-ranking run degraded")
        return errors


config = Config.load()
