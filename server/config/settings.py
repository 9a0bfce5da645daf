"""
Iterative RAG Server Settings Configuration
Configuration management for the codebase memory / iterative RAG server
"""

from typing import Dict, Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from pathlib import Path

from core.exceptions import ConfigurationError


class RagServerSettings(BaseSettings):
    """Configuration settings for the iterative RAG server"""

    # Server Configuration
    host: str = "localhost"
    port: int = 8001
    debug: bool = False
    environment: str = "development"

    # Knowledge store (codebase retrieval + knowledge graph)
    knowledge_store_url: str = "http://localhost:8002"
    knowledge_store_timeout: float = 30.0

    # Oracle (Ollama-compatible language model endpoint)
    oracle_host: str = "localhost"
    oracle_port: int = 11434
    oracle_model: str = "qwen3:8b"
    oracle_temperature: float = 0.2
    oracle_max_tokens: int = 2048

    # Web search (Tavily)
    tavily_api_key: Optional[str] = None
    tavily_mock_mode: bool = False
    tavily_search_depth: str = "basic"  # basic or advanced
    tavily_max_results: int = 5

    # Iterative loop
    repeated_query_limit: int = 2
    stable_turn_limit: int = 2
    max_accumulated_context: int = 200
    diversity_threshold: float = 0.5
    diversity_cap: int = 10
    max_diversification_queries: int = 2
    prompt_item_char_limit: int = 1500
    keyword_extraction_via_oracle: bool = False

    # Quality gate
    quality_threshold: float = 0.55
    low_context_count: int = 6
    low_confidence_threshold: float = 0.6
    citation_quality_threshold: float = 0.6
    reflection_quality_floor: float = 0.5

    # Session context cache
    context_cache_ttl_seconds: int = 600  # 10 minutes
    context_cache_max_entries: int = 50
    context_cache_evict_fraction: float = 0.3

    # Context flow
    older_context_limit: int = 10
    older_context_keep: int = 5
    older_context_min_relevance: float = 0.8

    # Hybrid fusion
    rrf_k: int = 60
    vector_weight: float = 1.0
    keyword_weight: float = 0.8
    graph_weight: float = 0.9

    # Per-call deadlines in seconds (0 disables)
    oracle_timeout_seconds: float = 120.0
    retrieval_timeout_seconds: float = 30.0
    web_search_timeout_seconds: float = 30.0

    # Storage Paths
    log_path: str = "./logs"

    # Monitoring
    log_level: str = "INFO"
    structured_logging: bool = False
    enable_decision_audit: bool = True

    @property
    def oracle_base_url(self) -> str:
        """Construct oracle base URL"""
        return f"http://{self.oracle_host}:{self.oracle_port}"

    @property
    def channel_weights(self) -> Dict[str, float]:
        """RRF weights keyed by retrieval channel"""
        return {
            "vector": self.vector_weight,
            "keyword": self.keyword_weight,
            "graph": self.graph_weight,
        }

    @field_validator("log_path")
    @classmethod
    def ensure_paths_exist(cls, v):
        """Ensure log path exists"""
        path = Path(v)
        path.mkdir(parents=True, exist_ok=True)
        return str(path.absolute())

    @field_validator(
        "diversity_threshold",
        "quality_threshold",
        "low_confidence_threshold",
        "citation_quality_threshold",
        "reflection_quality_floor",
        "context_cache_evict_fraction",
        "older_context_min_relevance",
    )
    @classmethod
    def validate_unit_interval(cls, v):
        """Thresholds and fractions live in [0, 1]"""
        if not 0.0 <= v <= 1.0:
            raise ValueError("value must be between 0.0 and 1.0")
        return v

    @field_validator("tavily_search_depth")
    @classmethod
    def validate_search_depth(cls, v):
        if v not in ("basic", "advanced"):
            raise ValueError("tavily_search_depth must be 'basic' or 'advanced'")
        return v

    @model_validator(mode="after")
    def validate_loop_limits(self):
        """Loop limits must leave room for at least one turn"""
        if self.repeated_query_limit < 1 or self.stable_turn_limit < 1:
            raise ValueError("repeated_query_limit and stable_turn_limit must be at least 1")
        if self.older_context_keep > self.older_context_limit:
            raise ValueError("older_context_keep cannot exceed older_context_limit")
        if self.context_cache_max_entries < 1:
            raise ValueError("context_cache_max_entries must be at least 1")
        return self

    model_config = {
        "env_file": ".env",
        "env_prefix": "RAGMEM_",
        "case_sensitive": False,
        "extra": "ignore",
    }


# Global settings instance
settings = RagServerSettings()


def get_settings() -> RagServerSettings:
    """Get settings instance (for dependency injection)"""
    return settings


# Validation for production environment
def validate_production_config(config: Optional[RagServerSettings] = None):
    """Validate configuration is ready for production deployment"""
    config = config or settings
    issues = {}

    if config.debug:
        issues["debug"] = "Debug mode should be disabled in production"

    if config.tavily_mock_mode:
        issues["tavily_mock_mode"] = "Tavily mock mode must be disabled in production"

    if config.oracle_timeout_seconds <= 0:
        issues["oracle_timeout_seconds"] = "Oracle calls need a deadline in production"

    if issues:
        raise ConfigurationError(
            f"Production configuration issues: {'; '.join(issues.values())}",
            setting=", ".join(issues),
        )

    return True


if __name__ == "__main__":
    print("Iterative RAG Server Configuration:")
    print(f"Oracle URL: {settings.oracle_base_url} (model: {settings.oracle_model})")
    print(f"Knowledge store URL: {settings.knowledge_store_url}")
    print(f"Web search: {'mock' if settings.tavily_mock_mode else ('enabled' if settings.tavily_api_key else 'disabled')}")
    print(f"Quality gate: quality >= {settings.quality_threshold}, citations >= {settings.citation_quality_threshold}")
    print(f"Log directory: {settings.log_path}")
