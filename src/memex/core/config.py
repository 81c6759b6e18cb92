"""
Configuration management.

Loads settings from environment variables and .env file.
Prefix: MEMEX_
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MEMEX_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Storage
    data_dir: Path = Field(default=Path("data"), description="Data storage directory")
    db_name: str = Field(default="memex.db", description="SQLite database name")

    # Providers
    local_llm_url: str = Field(
        default="http://localhost:1234/v1",
        description="On-device LLM endpoint (OpenAI-compatible)",
    )
    local_model: str = Field(default="local", description="Chat model served on-device")
    local_embedding_model: str = Field(
        default="nomic-embed-text", description="Embedding model served on-device"
    )
    remote_model: str = Field(
        default="", description="LiteLLM model name for off-device generation (empty = disabled)"
    )
    remote_api_key: str = Field(default="", description="API key for the remote model")
    on_device_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    remote_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    request_timeout: float = Field(default=120.0, description="Provider request timeout, seconds")

    # Agent options
    enable_rag: bool = True
    enable_consolidation: bool = True
    max_context_size: int = Field(default=8192, description="Max prompt context characters")
    consolidation_interval_seconds: float = Field(default=24 * 60 * 60)
    consolidation_age_hours: float = Field(default=24.0)
    action_confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    enable_autonomous_actions: bool = True
    enable_proactive_insights: bool = True
    insight_interval_seconds: float = Field(default=60 * 60)
    max_proactive_insights: int = Field(default=10, ge=1)
    history_size: int = Field(default=50, ge=1)
    debounce_seconds: float = Field(default=0.3, ge=0.0)
    log_level: str = Field(default="INFO", description="Logging level name")

    # Retrieval weights
    retrieval_max_results: int = Field(default=15, ge=1)
    retrieval_recency_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    retrieval_relevance_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    retrieval_relevance_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    retrieval_include_stm: bool = True
    retrieval_include_ltm: bool = True
    retrieval_include_episodic: bool = True
    retrieval_include_entities: bool = True
    retrieval_include_notes: bool = True
    retrieval_enable_semantic: bool = True
    retrieval_semantic_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    retrieval_keyword_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    retrieval_semantic_similarity_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    retrieval_embedding_max_age_seconds: float = Field(default=14 * 24 * 3600)

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @property
    def log_path(self) -> Path:
        return self.data_dir / "memex.log"


def get_settings() -> Settings:
    """Get settings instance."""
    return Settings()
