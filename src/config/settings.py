"""
Centralized settings management using pydantic-settings.

All environment variables and configuration values are defined here.
Use get_settings() to access the singleton settings instance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every value has a default so the service boots without credentials;
    search and embedding calls fail with ExternalServiceError until
    the backend settings are provided.

    Common environment variables:
        - SEARCH_ENDPOINT / SEARCH_API_KEY: vehicle index REST endpoint + key
        - OPENAI_API_KEY: key for the embedding provider
        - ENVIRONMENT: Environment name (development, staging, production)
        - QUALITATIVE_TERMS_FILE: JSON overrides for qualitative-term defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Environment
    # ==========================================================================
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Debug mode")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    # ==========================================================================
    # Server Configuration
    # ==========================================================================
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    workers: int = Field(default=4, description="Number of uvicorn workers")

    # CORS Configuration
    cors_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        description="Allowed CORS origins"
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # ==========================================================================
    # Search Backend (vehicle index)
    # ==========================================================================
    search_endpoint: str = Field(default="", description="Vehicle index REST endpoint")
    search_api_key: str = Field(default="", description="Vehicle index API key")
    search_index_name: str = Field(default="vehicles", description="Vehicle index name")
    search_api_version: str = Field(
        default="2024-07-01",
        description="REST API version sent with every index request"
    )
    search_vector_field: str = Field(
        default="descriptionVector",
        description="Vector field used for k-NN queries"
    )
    search_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for a single index request (seconds)"
    )

    @property
    def search_configured(self) -> bool:
        return bool(self.search_endpoint and self.search_api_key)

    # ==========================================================================
    # OpenAI (Embeddings)
    # ==========================================================================
    openai_api_key: str = Field(default="", description="OpenAI API key for query embeddings")
    openai_base_url: Optional[str] = Field(
        default=None,
        description="Override base URL (Azure OpenAI or a compatible gateway)"
    )
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model name"
    )
    embedding_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout for a single embedding call (seconds)"
    )
    embedding_max_concurrency: int = Field(
        default=8,
        ge=1,
        description="Maximum concurrent embedding calls per process"
    )

    @property
    def embeddings_configured(self) -> bool:
        return bool(self.openai_api_key)

    # ==========================================================================
    # Embedding Cache
    # ==========================================================================
    embedding_cache_ttl_seconds: int = Field(
        default=86400,
        ge=1,
        description="Embedding cache TTL in seconds (24 hours)"
    )
    embedding_cache_max_entries: int = Field(
        default=1000,
        ge=1,
        description="Maximum cached query embeddings"
    )

    # ==========================================================================
    # Retry Policy (external calls)
    # ==========================================================================
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per external call, including the first"
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Initial backoff delay, doubled on each retry"
    )
    retry_max_delay_seconds: float = Field(
        default=8.0,
        ge=0.0,
        description="Upper bound for a single backoff delay"
    )

    # ==========================================================================
    # Search Pipeline
    # ==========================================================================
    request_deadline_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Deadline for one search pipeline invocation (seconds)"
    )
    default_max_results: int = Field(default=10, ge=1, le=100)
    max_results_limit: int = Field(default=100, ge=1)
    semantic_min_relevance: float = Field(
        default=0.50,
        ge=0.0,
        le=1.0,
        description="Vector hits below this similarity are discarded"
    )
    semantic_overfetch_factor: int = Field(
        default=3,
        ge=3,
        description="k-NN over-fetch multiplier relative to max_results"
    )
    rrf_k: int = Field(default=60, ge=1, description="RRF smoothing constant")
    approximate_band: float = Field(
        default=0.10,
        gt=0.0,
        lt=1.0,
        description="+/- fraction applied to 'around'/'about' values"
    )
    max_per_make: int = Field(default=3, ge=1, description="Diversity cap per make")
    max_per_model: int = Field(default=2, ge=1, description="Diversity cap per make+model")

    qualitative_terms_file: Optional[str] = Field(
        default=None,
        description="Path to a JSON file overriding qualitative-term defaults"
    )

    @field_validator("qualitative_terms_file", mode="before")
    @classmethod
    def parse_qualitative_terms_file(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def qualitative_terms_path(self) -> Optional[Path]:
        if self.qualitative_terms_file:
            return Path(self.qualitative_terms_file)
        return None


@lru_cache
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses lru_cache to ensure only one instance is created.
    Settings are loaded from environment variables and .env file.

    Returns:
        Settings: The application settings instance
    """
    # Try to find .env file in project root
    env_file = Path(__file__).parent.parent.parent / ".env"
    if env_file.exists():
        os.environ.setdefault("ENV_FILE", str(env_file))

    return Settings(_env_file=env_file if env_file.exists() else None)


def get_settings_for_testing(**overrides) -> Settings:
    """
    Create a settings instance for testing with optional overrides.

    This bypasses the cache to allow different settings in tests.

    Args:
        **overrides: Setting values to override

    Returns:
        Settings: A new settings instance with overrides applied
    """
    test_defaults = {
        "environment": "testing",
        "debug": True,
        "retry_base_delay_seconds": 0.0,
    }
    test_defaults.update(overrides)

    return Settings(_env_file=None, **test_defaults)
